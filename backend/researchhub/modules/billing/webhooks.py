"""Dispatch of normalized gateway events to the billing facade.

Delivery is at-least-once. Replays are absorbed by the facade's event-id
dedup and acknowledged as duplicates, never surfaced as errors.
"""

import logging
from typing import Any

from pydantic import TypeAdapter

from researchhub.core.logging import log_info, log_warning
from researchhub.modules.billing.schemas import (
    ChargeFailedEvent,
    ChargeRefundedEvent,
    ChargeSucceededEvent,
    GatewayEvent,
    OperationResult,
    SubscriptionUpdatedEvent,
    UnknownGatewayEvent,
    WebhookAck,
)
from researchhub.modules.billing.service import BillingFacade

logger = logging.getLogger(__name__)

_event_adapter = TypeAdapter(GatewayEvent)

KNOWN_EVENT_TYPES = {
    "charge.succeeded",
    "charge.failed",
    "charge.refunded",
    "subscription.updated",
}


def parse_event(payload: dict[str, Any]):
    """Parse a raw event body into its typed model."""
    if payload.get("type") in KNOWN_EVENT_TYPES:
        return _event_adapter.validate_python(payload)
    return UnknownGatewayEvent.model_validate(payload)


def _ack(result: OperationResult) -> WebhookAck:
    if result.ok:
        return WebhookAck(duplicate=bool(result.data.get("duplicate", False)))
    return WebhookAck(handled=False, error_code=result.error_code)


class WebhookDispatcher:
    """Routes each normalized gateway event to its facade operation."""

    def __init__(self, facade: BillingFacade):
        self.facade = facade

    async def dispatch(self, event) -> WebhookAck:
        if isinstance(event, dict):
            event = parse_event(event)

        if isinstance(event, SubscriptionUpdatedEvent):
            result = await self.facade.handle_subscription_updated(
                event.subscription_id,
                event.status,
                event.current_period_start,
                event.current_period_end,
            )
            return _ack(result)

        if isinstance(event, (ChargeSucceededEvent, ChargeFailedEvent, ChargeRefundedEvent)):
            payment = await self.facade.payments.get_by_intent_id(event.payment_intent_id)
            if payment is None:
                log_warning(
                    logger,
                    "Gateway event for unknown payment",
                    event_type=event.type,
                    event_id=event.event_id,
                    payment_intent_id=event.payment_intent_id,
                )
                return WebhookAck(handled=False, error_code="not_found")

            if isinstance(event, ChargeSucceededEvent):
                result = await self.facade.record_success(
                    payment.id,
                    event.charge_id,
                    event.amount_received,
                    event.fees,
                    event.application_fee,
                    event_id=event.event_id,
                )
            elif isinstance(event, ChargeFailedEvent):
                result = await self.facade.record_failure(
                    payment.id,
                    event.failure_code,
                    event.failure_message,
                    event_id=event.event_id,
                )
            else:
                result = await self.facade.record_refund(
                    payment.id,
                    event.refund_amount,
                    event.reason,
                    event_id=event.event_id,
                )
            return _ack(result)

        log_info(
            logger,
            "Ignoring unhandled gateway event",
            event_type=event.type,
            event_id=event.event_id,
        )
        return WebhookAck(handled=False)
