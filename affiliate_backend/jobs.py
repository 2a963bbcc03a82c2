# Usage:
#   python -m affiliate_backend.jobs                 # one scheduled reconciliation pass
#   python -m affiliate_backend.jobs sync --manual   # same, recorded as a manual run
#   python -m affiliate_backend.jobs watch <user_id> # follow one tenant's connection status

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .connection.status import utc_now_iso
from .connection.subscriber import ConnectionStatusSubscriber, SupabaseRealtimeFeed, store_status_fetcher
from .whatsapp.container import EvolutionContainer, get_evolution_container
from .whatsapp.errors import WhatsAppError

logger = logging.getLogger(__name__)


async def run_reconciliation(
    container: EvolutionContainer,
    *,
    automatic: bool,
    source: str,
) -> Dict[str, Any]:
    """Build config, then run one pass. Never raises."""
    try:
        cfg = container.load_config()
        if automatic and not cfg.rules.auto_sync_enabled:
            logger.info("Automatic sync disabled by configuration; skipping")
            return {
                "success": True,
                "skipped": True,
                "message": "Sincronização automática desativada",
                "timestamp": utc_now_iso(),
            }
        job = container.reconciliation_job(cfg)
    except Exception as e:
        timestamp = utc_now_iso()
        if isinstance(e, WhatsAppError):
            container.obs.error("evolution.sync.config_failed", code=e.code, error=str(e))
        else:
            container.obs.exception("evolution.sync.config_failed", error=str(e))
        try:
            container.store.save_job_status("last_sync_error", {"timestamp": timestamp, "error": str(e), "source": source})
        except Exception as persist_error:
            logger.error(f"Failed to persist last_sync_error: {persist_error}")
        return {"success": False, "error": str(e), "timestamp": timestamp}
    return await job.run(automatic=automatic, source=source)


async def watch_user(container: EvolutionContainer, user_id: str, *, duration_s: Optional[float] = None) -> None:
    from .supabase_client import create_realtime_client

    cfg = container.load_config()
    feed = None
    if cfg.rules.realtime_enabled:
        feed = SupabaseRealtimeFeed(await create_realtime_client())

    def on_status(status):
        print(json.dumps({"userId": user_id, "status": status}, default=str), flush=True)

    subscriber = ConnectionStatusSubscriber(
        user_id,
        fetch_status=store_status_fetcher(container.store, user_id),
        feed=feed,
        rules=cfg.rules,
        on_status=on_status,
        on_notice=lambda n: logger.warning(f"{n.title}: {n.message}"),
    )
    await subscriber.start()
    on_status(subscriber.status)
    try:
        if duration_s is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration_s)
    finally:
        await subscriber.stop()


def main(argv=None) -> int:
    load_dotenv(Path(__file__).parent / '.env')
    logging.basicConfig(level=logging.INFO)

    parser = argparse.ArgumentParser(description="Evolution instance connection jobs")
    sub = parser.add_subparsers(dest="command")
    sync_parser = sub.add_parser("sync", help="Run one reconciliation pass")
    sync_parser.add_argument("--manual", action="store_true", help="Record the run as manual instead of auto-sync")
    watch_parser = sub.add_parser("watch", help="Print connection status changes for one tenant")
    watch_parser.add_argument("user_id")
    watch_parser.add_argument("--duration", type=float, default=None, help="Stop after N seconds")
    args = parser.parse_args(argv)

    container = get_evolution_container()
    if args.command == "watch":
        try:
            asyncio.run(watch_user(container, args.user_id, duration_s=args.duration))
        except KeyboardInterrupt:
            pass
        return 0

    manual = bool(getattr(args, "manual", False))
    result = asyncio.run(
        run_reconciliation(
            container,
            automatic=not manual,
            source="manual" if manual else "auto-sync",
        )
    )
    print(json.dumps(result, default=str, ensure_ascii=False))
    return 0 if result.get("success") else 1


if __name__ == "__main__":
    sys.exit(main())
