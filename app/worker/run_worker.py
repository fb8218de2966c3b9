"""Run ARQ worker. Usage: python -m app.worker.run_worker"""

from arq import run_worker
from arq.cron import cron

from app.worker.tasks import (
    get_redis_settings,
    retry_reconciliation_issues,
    shutdown,
    startup,
    sweep_stale_pending,
    sweep_unsynced_transactions,
)


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions = [retry_reconciliation_issues, sweep_stale_pending, sweep_unsynced_transactions]
    cron_jobs = [
        cron(retry_reconciliation_issues, second=0),  # every minute at :00
        cron(sweep_stale_pending, minute={0, 5, 10, 15, 20, 25, 30, 35, 40, 45, 50, 55}, second=30),
        cron(sweep_unsynced_transactions, minute={2, 12, 22, 32, 42, 52}, second=0),
    ]
    on_startup = startup
    on_shutdown = shutdown


def main():
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
