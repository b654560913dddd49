"""
Celery Tasks

Background side of the settlement coordinator: retries events whose inline
settlement failed, sweeps deliveries nobody moved in time, and replays every
wallet against its ledger.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from uuid import UUID

from app.workers.celery_app import celery_app
from app.db.database import get_task_session
from app.db.models.domain_event import SettlementStatus
from app.domain.services.dispatch_service import DispatchService
from app.domain.services.settlement_service import SettlementCoordinator
from app.domain.services.wallet_service import WalletService
from app.core.exceptions import AppException
from app.core.logging import get_logger, set_correlation_id

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # סגירת Redis singleton לפני סגירת ה-loop - מונע שימוש חוזר
            # ב-client שמחובר ל-event loop סגור בהרצה הבאה
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


async def _settle_pending(limit: int) -> dict:
    async with get_task_session() as db:
        results = await SettlementCoordinator(db).settle_pending(limit=limit)

    summary = {
        "processed": len(results),
        "settled": sum(1 for r in results if r.status == SettlementStatus.SETTLED and not r.duplicate),
        "duplicates": sum(1 for r in results if r.duplicate),
        "pending": sum(1 for r in results if r.status == SettlementStatus.PENDING),
    }
    if results:
        logger.info("Pending settlements processed", extra_data=summary)
    return summary


async def _settle_event(event_id: int) -> dict:
    async with get_task_session() as db:
        try:
            result = await SettlementCoordinator(db).settle(event_id)
        except AppException as e:
            # נרשם על האירוע עם backoff - ה-beat ינסה שוב
            return {"event_id": event_id, "status": SettlementStatus.PENDING.value, "error": e.message}
    return {
        "event_id": event_id,
        "status": result.status.value,
        "duplicate": result.duplicate,
        "entries_written": result.entries_written,
    }


async def _expire_stale() -> dict:
    async with get_task_session() as db:
        return await DispatchService(db).expire_stale()


async def _reconcile_all() -> dict:
    async with get_task_session() as db:
        reports = await WalletService(db).reconcile_all()

    inconsistent = [str(r.wallet_id) for r in reports if not r.consistent]
    if inconsistent:
        logger.error(
            "Wallet reconciliation found mismatches",
            extra_data={"wallet_ids": inconsistent, "checked": len(reports)},
        )
    return {"checked": len(reports), "inconsistent": inconsistent}


async def _complete_payout(payout_id: str, processor_reference: str | None) -> dict:
    async with get_task_session() as db:
        payout = await WalletService(db).complete_payout(UUID(payout_id), processor_reference)
        return {"payout_id": payout_id, "status": payout.status.value}


@celery_app.task(name="app.workers.tasks.settle_pending_events")
def settle_pending_events(limit: int = 100):
    """
    Settle due events in commit order.
    Runs periodically so a failed inline settlement is retried after its backoff.
    """
    return run_async(_settle_pending(limit))


@celery_app.task(name="app.workers.tasks.settle_event")
def settle_event(event_id: int):
    """Settle one specific event by id"""
    return run_async(_settle_event(event_id))


@celery_app.task(name="app.workers.tasks.expire_stale_deliveries")
def expire_stale_deliveries():
    """Expire unaccepted deliveries and release idle accepted ones, republishing both"""
    return run_async(_expire_stale())


@celery_app.task(name="app.workers.tasks.reconcile_wallets")
def reconcile_wallets():
    """Replay every wallet against its ledger; mismatches are logged at error"""
    return run_async(_reconcile_all())


@celery_app.task(name="app.workers.tasks.complete_payout")
def complete_payout(payout_id: str, processor_reference: str | None = None):
    """Complete a payout confirmed out of band (e.g. by a manual bank transfer)"""
    return run_async(_complete_payout(payout_id, processor_reference))
