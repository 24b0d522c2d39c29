"""Inbound payment processor webhook events.

Delivery is at-least-once and may be reordered. Each event id is recorded
once in ``payment_events``; a redelivery of an event that was already
processed is acknowledged without touching the ledger again.
"""

import logging
import uuid
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.models.payment_event import PaymentEvent, PaymentEventStatus
from marketplace.models.user import PayoutStatus, User
from marketplace.services import escrow as escrow_service
from marketplace.services.gateway import GatewayEvent

logger = logging.getLogger(__name__)

_DONE = (PaymentEventStatus.PROCESSED, PaymentEventStatus.IGNORED)


async def _get_event(db: AsyncSession, event_id: str) -> PaymentEvent | None:
    result = await db.execute(
        select(PaymentEvent)
        .where(PaymentEvent.event_id == event_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def handle_event(db: AsyncSession, event: GatewayEvent) -> tuple[PaymentEvent, bool]:
    """Record and apply a verified event. Returns (event row, was_duplicate)."""
    record = await _get_event(db, event.id)
    if record is not None and record.status in _DONE:
        logger.info("Duplicate delivery of event %s (%s), ignoring", event.id, event.type)
        return record, True

    if record is None:
        record = PaymentEvent(
            payment_event_id=uuid.uuid4(),
            event_id=event.id,
            event_type=event.type,
            payload=event.data,
            status=PaymentEventStatus.RECEIVED,
        )
        db.add(record)
        try:
            await db.commit()
        except IntegrityError:
            # A concurrent delivery of the same event won the insert.
            await db.rollback()
            logger.info("Concurrent delivery of event %s, ignoring", event.id)
            return await _get_event(db, event.id), True

    try:
        status = await _dispatch(db, event)
    except SQLAlchemyError as exc:
        await db.rollback()
        record = await _get_event(db, event.id)
        record.status = PaymentEventStatus.FAILED
        record.error = str(exc)[:2000]
        await db.commit()
        logger.exception("Processing event %s (%s) failed", event.id, event.type)
        raise

    record = await _get_event(db, event.id)
    record.status = status
    record.error = None
    record.processed_at = datetime.now(UTC)
    await db.commit()
    return record, False


async def _dispatch(db: AsyncSession, event: GatewayEvent) -> PaymentEventStatus:
    obj = event.data.get("object") or {}

    if event.type == "payment_intent.succeeded":
        metadata = obj.get("metadata") or {}
        if metadata.get("type") != "escrow":
            logger.info("Ignoring non-escrow payment intent %s", obj.get("id"))
            return PaymentEventStatus.IGNORED
        project_id = None
        if metadata.get("project_id"):
            try:
                project_id = uuid.UUID(metadata["project_id"])
            except ValueError:
                logger.warning("Event %s carries malformed project_id %r", event.id, metadata["project_id"])
        await escrow_service.confirm_funding(
            db,
            payment_intent_id=obj.get("id"),
            project_id=project_id,
            amount_minor=obj.get("amount_received", obj.get("amount")),
            event_id=event.id,
        )
        return PaymentEventStatus.PROCESSED

    if event.type == "payment_intent.payment_failed":
        error = (obj.get("last_payment_error") or {}).get("message")
        logger.warning("Escrow payment %s failed: %s", obj.get("id"), error)
        return PaymentEventStatus.PROCESSED

    if event.type == "account.updated":
        await _update_payout_status(
            db,
            obj.get("id"),
            bool(obj.get("details_submitted")) and bool(obj.get("payouts_enabled")),
        )
        return PaymentEventStatus.PROCESSED

    logger.debug("Unhandled event type %s", event.type)
    return PaymentEventStatus.IGNORED


async def _update_payout_status(db: AsyncSession, account_id: str | None, ready: bool) -> None:
    if not account_id:
        return
    result = await db.execute(select(User).where(User.payout_account_id == account_id))
    user = result.scalar_one_or_none()
    if user is None:
        logger.warning("account.updated for unknown connected account %s", account_id)
        return
    user.payout_status = PayoutStatus.ACTIVE if ready else PayoutStatus.PENDING
    await db.commit()
    logger.info("Payout account %s for user %s is %s", account_id, user.user_id, user.payout_status.value)
