"""Billing background tasks.

Scheduled by Celery beat (see ``researchhub.core.celery_app``). Each task
opens its own session and delegates to the billing facade.
"""

import asyncio
import logging

from researchhub.core.celery_app import celery_app
from researchhub.core.database import async_session_maker
from researchhub.modules.billing.service import BillingFacade

logger = logging.getLogger(__name__)


@celery_app.task(name="billing.process_retry_queue")
def process_retry_queue() -> dict:
    """Re-attempt failed charges whose backoff has elapsed."""
    return asyncio.run(_process_retry_queue_async())


async def _process_retry_queue_async() -> dict:
    async with async_session_maker() as session:
        facade = BillingFacade(session)
        return await facade.process_retry_queue()


@celery_app.task(name="billing.expire_stale_payments")
def expire_stale_payments() -> dict:
    """Fail pending payments stuck past the configured timeout."""
    return asyncio.run(_expire_stale_payments_async())


async def _expire_stale_payments_async() -> dict:
    async with async_session_maker() as session:
        facade = BillingFacade(session)
        return await facade.expire_stale_pending_payments()


@celery_app.task(name="billing.process_subscription_periods")
def process_subscription_periods() -> dict:
    """Apply deferred cancellations and end finished trials."""
    return asyncio.run(_process_subscription_periods_async())


async def _process_subscription_periods_async() -> dict:
    async with async_session_maker() as session:
        facade = BillingFacade(session)
        return await facade.process_subscription_periods()


@celery_app.task(name="billing.deactivate_expired_credit_accounts")
def deactivate_expired_credit_accounts() -> dict:
    return asyncio.run(_deactivate_expired_credit_accounts_async())


async def _deactivate_expired_credit_accounts_async() -> dict:
    async with async_session_maker() as session:
        facade = BillingFacade(session)
        return await facade.deactivate_expired_credit_accounts()


async def run_all_billing_sweeps() -> dict:
    """Run every sweep once, in dependency order."""
    results = {
        "expire_stale_payments": await _expire_stale_payments_async(),
        "process_retry_queue": await _process_retry_queue_async(),
        "process_subscription_periods": await _process_subscription_periods_async(),
        "deactivate_expired_credit_accounts": await _deactivate_expired_credit_accounts_async(),
    }
    logger.info("Billing sweeps completed", extra={"results": results})
    return results
