"""Cron: order reconciliation retries and stale pending sweep."""

from app.core.config import get_settings
from app.services import reconciliation
from app.services.daraja import build_daraja_client
from app.services.stk_query import sweep_stale_pending


async def run_retry_reconciliation_issues() -> dict[str, int]:
    """Re-apply Order updates for finalized Transactions that could not be reconciled inline."""
    return await reconciliation.retry_open_issues()


async def run_sweep_stale_pending() -> dict[str, int]:
    """Query the gateway for pushes whose callback never arrived."""
    settings = get_settings()
    client = build_daraja_client(settings)
    try:
        return await sweep_stale_pending(client, settings.stale_pending_minutes)
    finally:
        await client.aclose()


async def run_sweep_unsynced_transactions() -> dict[str, int]:
    """Repair Orders that missed the update for a finalized Transaction."""
    return await reconciliation.sweep_unsynced_transactions(get_settings().unsynced_lookback_hours)
