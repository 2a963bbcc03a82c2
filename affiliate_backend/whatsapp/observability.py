from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class LogContext:
    user_id: Optional[str] = None
    provider: Optional[str] = None
    instance_name: Optional[str] = None
    correlation_id: Optional[str] = None

    def child(self, **changes: Any) -> "LogContext":
        return replace(self, **changes)


class Observability:
    """Writes one ``event key=value ...`` line per domain event."""

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def debug(self, event: str, *, ctx: Optional[LogContext] = None, **fields: Any) -> None:
        if self._logger.isEnabledFor(logging.DEBUG):
            self._logger.debug(self._format(event, ctx=ctx, fields=fields))

    def info(self, event: str, *, ctx: Optional[LogContext] = None, **fields: Any) -> None:
        self._logger.info(self._format(event, ctx=ctx, fields=fields))

    def warning(self, event: str, *, ctx: Optional[LogContext] = None, **fields: Any) -> None:
        self._logger.warning(self._format(event, ctx=ctx, fields=fields))

    def error(self, event: str, *, ctx: Optional[LogContext] = None, **fields: Any) -> None:
        self._logger.error(self._format(event, ctx=ctx, fields=fields))

    def exception(self, event: str, *, ctx: Optional[LogContext] = None, **fields: Any) -> None:
        self._logger.exception(self._format(event, ctx=ctx, fields=fields))

    def _format(self, event: str, *, ctx: Optional[LogContext], fields: Mapping[str, Any]) -> str:
        parts: list[str] = [event]
        if ctx:
            for key, value in (
                ("user", ctx.user_id),
                ("provider", ctx.provider),
                ("instance", ctx.instance_name),
                ("corr", ctx.correlation_id),
            ):
                if value:
                    parts.append(f"{key}={_render(value)}")
        for k, v in fields.items():
            if v is None:
                continue
            parts.append(f"{k}={_render(v)}")
        return " ".join(parts)


def _render(value: Any) -> str:
    text = str(value)
    # Provider error messages carry spaces; keep each pair splittable.
    if not text or any(ch.isspace() for ch in text) or "=" in text:
        return '"' + text.replace('"', '\\"') + '"'
    return text
