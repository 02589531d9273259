"""Outbox delivery and bulk reprocessing tasks."""

import asyncio
import logging

from churnpilot.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def deliver_outbox_task(self, limit: int | None = None):
    """Deliver every due outbox message once."""
    return asyncio.run(_deliver_outbox(limit))


async def _deliver_outbox(limit: int | None = None) -> dict:
    from churnpilot.database import async_session
    from churnpilot.services.outbox import OutboxWorker

    async with async_session() as db:
        return await OutboxWorker(db).deliver_due(limit)


@celery_app.task(bind=True, max_retries=1, default_retry_delay=300)
def reprocess_owner_task(self, owner_id: str):
    """Re-score an owner's customers outside the request cycle."""
    report = asyncio.run(_reprocess_owner(owner_id))
    logger.info(f"Reprocessed owner {owner_id}: {report}")
    return report


async def _reprocess_owner(owner_id: str) -> dict:
    from churnpilot.database import async_session
    from churnpilot.services.ingestion import reprocess_owner

    async with async_session() as db:
        report = await reprocess_owner(db, owner_id)
    return report.to_dict()
