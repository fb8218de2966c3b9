"""ARQ job definitions."""

import uuid
from typing import Any

from arq.connections import RedisSettings

from app.core.config import get_settings
from app.core.logging import get_logger

log = get_logger(__name__)


async def _run_with_dlq(job_name: str, job_id: str | None, coro) -> Any:
    """Run coroutine; on exception log with job context then re-raise so ARQ records the failure."""
    try:
        return await coro
    except Exception as e:
        fid = job_id or str(uuid.uuid4())
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e)[:2000])
        raise


async def retry_reconciliation_issues(ctx: dict[str, Any]) -> dict[str, int]:
    """Cron job: retry open order_update_failed issues."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None
    from app.worker.cron import run_retry_reconciliation_issues
    return await _run_with_dlq("retry_reconciliation_issues", job_id, run_retry_reconciliation_issues())


async def sweep_stale_pending(ctx: dict[str, Any]) -> dict[str, int]:
    """Cron job: STK status query for long-pending transactions."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None
    from app.worker.cron import run_sweep_stale_pending
    return await _run_with_dlq("sweep_stale_pending", job_id, run_sweep_stale_pending())


async def sweep_unsynced_transactions(ctx: dict[str, Any]) -> dict[str, int]:
    """Cron job: finalized Transactions whose Order was never updated."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None
    from app.worker.cron import run_sweep_unsynced_transactions
    return await _run_with_dlq("sweep_unsynced_transactions", job_id, run_sweep_unsynced_transactions())


async def startup(ctx: dict) -> None:
    from app.core.logging import configure_logging
    from app.db.init import init_db
    configure_logging(debug=get_settings().debug)
    await init_db()


async def shutdown(ctx: dict) -> None:
    pass


def get_redis_settings() -> RedisSettings:
    from urllib.parse import urlparse
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path and u.path != "/" else 0,
    )
