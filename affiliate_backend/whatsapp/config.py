from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Optional
from urllib.parse import urlencode

if TYPE_CHECKING:
    from typing import Protocol

    class YAMLValidationError(Exception):
        pass

    class _YamlDoc(Protocol):
        data: Any

    def load_yaml(_text: str) -> _YamlDoc:
        raise NotImplementedError
else:
    from strictyaml import YAMLValidationError, load as load_yaml

from .errors import ConfigError


@dataclass(frozen=True)
class EvolutionSettings:
    base_url: str = ""
    api_key: str = ""
    webhook_base_url: str = ""
    webhook_secret: str = ""
    timeout_s: float = 30.0

    def webhook_url(self, webhook_path: str) -> str:
        path = (webhook_path or "").strip()
        if not (path.startswith("http://") or path.startswith("https://")):
            base = (self.webhook_base_url or "").rstrip("/")
            path = f"{base}/{path.lstrip('/')}" if base else path
        if not self.webhook_secret:
            return path
        sep = "&" if "?" in path else "?"
        return f"{path}{sep}{urlencode({'secret': self.webhook_secret})}"


@dataclass(frozen=True)
class ConnectionRules:
    realtime_enabled: bool = True
    auto_sync_enabled: bool = True
    periodic_check_enabled: bool = True
    periodic_check_interval_s: float = 30.0
    visibility_check_enabled: bool = True
    visibility_debounce_s: float = 1.0
    manual_disconnect_protection: bool = True
    manual_disconnect_guard_s: float = 5.0
    auto_cleanup_on_disconnect: bool = True
    webhook_fallback_auto_bind: bool = False
    wizard_poll_interval_s: float = 10.0
    wizard_max_attempts: int = 3


@dataclass(frozen=True)
class ConnectionConfig:
    evolution: EvolutionSettings = field(default_factory=EvolutionSettings)
    rules: ConnectionRules = field(default_factory=ConnectionRules)


# system_configurations key -> (section, attribute, parser)
_TABLE_KEYS: dict[str, tuple[str, str, str]] = {
    "evolution_api_url": ("evolution", "base_url", "str"),
    "evolution_api_key": ("evolution", "api_key", "str"),
    "evolution_webhook_base_url": ("evolution", "webhook_base_url", "str"),
    "evolution_webhook_secret": ("evolution", "webhook_secret", "str"),
    "evolution_realtime_enabled": ("rules", "realtime_enabled", "bool"),
    "auto_sync_enabled": ("rules", "auto_sync_enabled", "bool"),
    "evolution_periodic_check_enabled": ("rules", "periodic_check_enabled", "bool"),
    "evolution_periodic_check_interval": ("rules", "periodic_check_interval_s", "ms"),
    "evolution_visibility_check_enabled": ("rules", "visibility_check_enabled", "bool"),
    "evolution_manual_disconnect_protection": ("rules", "manual_disconnect_protection", "bool"),
    "evolution_manual_disconnect_guard": ("rules", "manual_disconnect_guard_s", "ms"),
    "evolution_auto_cleanup_on_disconnect": ("rules", "auto_cleanup_on_disconnect", "bool"),
    "evolution_webhook_fallback_auto_bind": ("rules", "webhook_fallback_auto_bind", "opt_in"),
}

SYSTEM_CONFIGURATION_KEYS: tuple[str, ...] = tuple(_TABLE_KEYS.keys())

# Rules that stay off unless set to an explicit true value.
_OPT_IN_RULES = frozenset({"webhook_fallback_auto_bind"})

_TRUE_VALUES = frozenset({"true", "1", "yes", "y", "on"})
_FALSE_VALUES = frozenset({"false", "0", "no", "n", "off"})


def load_connection_config(table_rows: Optional[Iterable[Mapping[str, Any]]] = None) -> ConnectionConfig:
    """Build the configuration object once for a process or request.

    Precedence (lowest first): defaults, environment, inline/file JSON or YAML
    (``EVOLUTION_CONFIG_INLINE`` / ``EVOLUTION_CONFIG``), then the
    ``system_configurations`` rows passed in by the caller.
    """
    evolution = EvolutionSettings(
        base_url=(
            (os.getenv("EVOLUTION_API_BASE_URL") or "").strip()
            or (os.getenv("EVOLUTION_BASE_URL") or "").strip()
            or (os.getenv("EVOLUTION_URL") or "").strip()
        ),
        api_key=(
            (os.getenv("EVOLUTION_API_KEY") or "").strip()
            or (os.getenv("EVOLUTION_KEY") or "").strip()
        ),
        webhook_base_url=(os.getenv("EVOLUTION_WEBHOOK_BASE_URL") or "").strip(),
        webhook_secret=(os.getenv("EVOLUTION_WEBHOOK_SECRET") or "").strip(),
    )
    cfg = ConnectionConfig(evolution=evolution, rules=ConnectionRules())

    inline = (os.getenv("EVOLUTION_CONFIG_INLINE") or "").strip()
    path = (os.getenv("EVOLUTION_CONFIG") or "").strip()
    if inline:
        cfg = _apply_mapping(cfg, _parse_text(inline))
    elif path:
        cfg = _apply_mapping(cfg, _parse_file(path))

    if table_rows:
        overrides: dict[str, Any] = {}
        for row in table_rows:
            key = str(row.get("key") or "").strip()
            if key in _TABLE_KEYS:
                overrides[key] = row.get("value")
        cfg = _apply_table(cfg, overrides)
    return cfg


def _apply_table(cfg: ConnectionConfig, values: Mapping[str, Any]) -> ConnectionConfig:
    evolution_changes: dict[str, Any] = {}
    rules_changes: dict[str, Any] = {}
    for key, raw in values.items():
        section, attr, kind = _TABLE_KEYS[key]
        parsed = _coerce(raw, kind, key)
        if parsed is None:
            continue
        if section == "evolution":
            evolution_changes[attr] = parsed
        else:
            rules_changes[attr] = parsed
    return ConnectionConfig(
        evolution=replace(cfg.evolution, **evolution_changes),
        rules=replace(cfg.rules, **rules_changes),
    )


def _apply_mapping(cfg: ConnectionConfig, data: Mapping[str, Any]) -> ConnectionConfig:
    evolution_raw = data.get("evolution") or {}
    rules_raw = data.get("rules") or {}
    if not isinstance(evolution_raw, dict) or not isinstance(rules_raw, dict):
        raise ConfigError("Seções evolution/rules devem ser mapas.")

    evolution_changes: dict[str, Any] = {}
    for attr in ("base_url", "api_key", "webhook_base_url", "webhook_secret"):
        if attr in evolution_raw:
            evolution_changes[attr] = str(evolution_raw.get(attr) or "").strip()
    if "timeout_s" in evolution_raw:
        evolution_changes["timeout_s"] = _coerce(evolution_raw["timeout_s"], "float", "evolution.timeout_s")

    defaults = ConnectionRules()
    rules_changes: dict[str, Any] = {}
    for attr, raw in rules_raw.items():
        if not hasattr(defaults, attr):
            raise ConfigError("Regra de conexão desconhecida.", details={"rule": attr})
        current = getattr(defaults, attr)
        if attr in _OPT_IN_RULES:
            kind = "opt_in"
        elif isinstance(current, bool):
            kind = "bool"
        elif isinstance(current, int):
            kind = "int"
        else:
            kind = "float"
        parsed = _coerce(raw, kind, f"rules.{attr}")
        if parsed is not None:
            rules_changes[attr] = parsed

    return ConnectionConfig(
        evolution=replace(cfg.evolution, **evolution_changes),
        rules=replace(cfg.rules, **rules_changes),
    )


def _coerce(raw: Any, kind: str, name: str) -> Any:
    if raw is None:
        return None
    if kind == "str":
        value = str(raw).strip()
        return value or None
    if kind in ("bool", "opt_in"):
        if isinstance(raw, bool):
            return raw
        value = str(raw).strip().lower()
        if not value:
            return None
        if kind == "opt_in":
            return value in _TRUE_VALUES
        # Flags are on unless explicitly switched off.
        return value not in _FALSE_VALUES
    try:
        if kind == "int":
            return int(str(raw).strip())
        if kind == "ms":
            return float(str(raw).strip()) / 1000.0
        return float(str(raw).strip())
    except ValueError:
        raise ConfigError("Valor numérico inválido em configuração.", details={"key": name, "value": raw})


def _parse_file(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except Exception as e:
        raise ConfigError("Falha ao ler arquivo de configuração.", details={"path": path, "error": str(e)})
    return _parse_text(text, source=path)


def _parse_text(text: str, source: str = "inline") -> dict[str, Any]:
    raw = (text or "").lstrip()
    if not raw:
        return {}
    if raw.startswith("{"):
        try:
            data = json.loads(raw)
        except Exception as e:
            raise ConfigError("JSON inválido em configuração.", details={"source": source, "error": str(e)})
    else:
        try:
            data = load_yaml(raw).data
        except YAMLValidationError as e:
            raise ConfigError("YAML inválido em configuração.", details={"source": source, "error": str(e)})
    if not isinstance(data, dict):
        raise ConfigError("Configuração deve ser um mapa.", details={"source": source})
    return data
