"""Reconciliation of processor-side money movement with the local ledger.

When the processor confirms a transfer, payout or refund but the local commit
that records it fails, the session is rolled back and an open
``ReconciliationRecord`` is written instead. ``reconcile`` re-applies the
local half idempotently; the background worker retries open records.
"""

import asyncio
import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import settings
from marketplace.errors import ConsistencyError, ExternalServiceError, NotFound, StateError
from marketplace.models.dispute import Dispute
from marketplace.models.escrow import Escrow, EscrowMilestoneStatus, EscrowStatus
from marketplace.models.project import Project
from marketplace.models.reconciliation import (
    ReconciliationKind,
    ReconciliationRecord,
    ReconciliationStatus,
)
from marketplace.services.gateway import PaymentGateway

logger = logging.getLogger(__name__)


async def flag(
    db: AsyncSession,
    kind: ReconciliationKind,
    project_id: uuid.UUID,
    escrow_id: uuid.UUID,
    processor_reference: str,
    amount: Decimal,
    milestone_id: uuid.UUID | None = None,
    dispute_id: uuid.UUID | None = None,
    actor_id: uuid.UUID | None = None,
    reason: str | None = None,
    error: str | None = None,
) -> uuid.UUID:
    """Persist an open reconciliation record in its own transaction."""
    record = ReconciliationRecord(
        record_id=uuid.uuid4(),
        kind=kind,
        status=ReconciliationStatus.OPEN,
        project_id=project_id,
        escrow_id=escrow_id,
        milestone_id=milestone_id,
        dispute_id=dispute_id,
        processor_reference=processor_reference,
        amount=amount,
        actor_id=actor_id,
        reason=reason,
        error=error,
    )
    db.add(record)
    await db.commit()
    return record.record_id


async def commit_or_flag(
    db: AsyncSession,
    kind: ReconciliationKind,
    project_id: uuid.UUID,
    escrow_id: uuid.UUID,
    processor_reference: str,
    amount: Decimal,
    milestone_id: uuid.UUID | None = None,
    dispute_id: uuid.UUID | None = None,
    actor_id: uuid.UUID | None = None,
    reason: str | None = None,
) -> None:
    """Commit local writes that follow a confirmed processor side effect.

    Arguments are plain values captured before the commit: after a rollback
    the ORM instances are expired and must not be touched.
    """
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        record_id = await flag(
            db,
            kind,
            project_id=project_id,
            escrow_id=escrow_id,
            processor_reference=processor_reference,
            amount=amount,
            milestone_id=milestone_id,
            dispute_id=dispute_id,
            actor_id=actor_id,
            reason=reason,
            error=str(exc),
        )
        logger.critical(
            "Ledger write failed after processor %s %s (project=%s escrow=%s milestone=%s amount=%s); "
            "reconciliation record %s opened",
            kind.value, processor_reference, project_id, escrow_id, milestone_id, amount, record_id,
        )
        raise ConsistencyError(
            f"Processor {kind.value} {processor_reference} succeeded but the ledger update failed; "
            f"queued for reconciliation ({record_id})",
            reconciliation_id=record_id,
        ) from exc


async def list_open(db: AsyncSession) -> list[ReconciliationRecord]:
    result = await db.execute(
        select(ReconciliationRecord)
        .where(ReconciliationRecord.status == ReconciliationStatus.OPEN)
        .order_by(ReconciliationRecord.created_at)
    )
    return list(result.scalars().all())


async def get_record(db: AsyncSession, record_id: uuid.UUID) -> ReconciliationRecord:
    result = await db.execute(
        select(ReconciliationRecord).where(ReconciliationRecord.record_id == record_id)
    )
    record = result.scalar_one_or_none()
    if record is None:
        raise NotFound("Reconciliation record not found")
    return record


def _plan(record: ReconciliationRecord, project: Project, escrow: Escrow) -> str:
    """Compare a record with the ledger: "apply", "consistent" or "conflict"."""
    if record.kind == ReconciliationKind.RELEASE:
        entry = escrow.entry(record.milestone_id)
        if entry is None or project.milestone(record.milestone_id) is None:
            return "conflict"
        if entry.status == EscrowMilestoneStatus.PENDING:
            if escrow.status == EscrowStatus.FUNDED and escrow.held_amount >= entry.amount:
                return "apply"
            return "conflict"
        if entry.status == EscrowMilestoneStatus.RELEASED and entry.transfer_id == record.processor_reference:
            return "consistent"
        return "conflict"

    if record.kind == ReconciliationKind.REFUND:
        if record.processor_reference in {r.processor_refund_id for r in escrow.refunds}:
            return "consistent"
        if escrow.status == EscrowStatus.FUNDED and escrow.held_amount >= record.amount:
            return "apply"
        return "conflict"

    if record.kind == ReconciliationKind.SETTLEMENT:
        if any(e.transfer_id == record.processor_reference for e in escrow.entries):
            return "consistent"
        if escrow.status == EscrowStatus.FUNDED and escrow.held_amount >= record.amount:
            return "apply"
        return "conflict"

    # Late funding: the refund is issued by ``reconcile`` itself.
    return "apply"


async def reconcile(
    db: AsyncSession, record_id: uuid.UUID, gateway: PaymentGateway | None = None
) -> ReconciliationRecord:
    """Apply the missing local write for a record. Safe to call repeatedly.

    A record the ledger contradicts (the same funds were moved some other way)
    stays open and is logged at critical level for manual follow-up.
    ``gateway`` is only needed for late funding, which is refunded here.
    """
    from marketplace.services import escrow as escrow_service
    from marketplace.services.aggregate import lock_project

    record = await get_record(db, record_id)
    if record.status == ReconciliationStatus.RESOLVED:
        return record

    project = await lock_project(db, record.project_id)
    escrow = project.escrow
    if escrow is None or escrow.escrow_id != record.escrow_id:
        raise NotFound("Escrow for reconciliation record not found")

    dispute = None
    if record.dispute_id is not None:
        result = await db.execute(select(Dispute).where(Dispute.dispute_id == record.dispute_id))
        dispute = result.scalar_one_or_none()

    plan = _plan(record, project, escrow)
    if plan == "conflict":
        record.error = (
            f"Ledger contradicts processor {record.kind.value} {record.processor_reference}; "
            "manual review required"
        )
        await db.commit()
        await db.refresh(record)
        logger.critical(
            "Reconciliation record %s conflicts with the ledger (project=%s escrow=%s %s %s %s); left open",
            record.record_id, record.project_id, record.escrow_id,
            record.kind.value, record.processor_reference, record.amount,
        )
        return record

    if plan == "apply":
        if record.kind == ReconciliationKind.RELEASE:
            escrow_service.apply_release(
                db, project, escrow, project.milestone(record.milestone_id),
                escrow.entry(record.milestone_id), record.actor_id, record.processor_reference,
            )
        elif record.kind == ReconciliationKind.REFUND:
            escrow_service.apply_refund(
                db, escrow, record.amount, record.processor_reference, record.reason, record.actor_id
            )
        elif record.kind == ReconciliationKind.SETTLEMENT:
            escrow_service.apply_settlement(
                db, project, escrow, record.amount, record.processor_reference, record.actor_id
            )
        else:
            if gateway is None:
                raise StateError("Refunding late funding needs a payment gateway")
            await escrow_service.refund_late_funding(db, escrow, record.amount, gateway)

    if dispute is not None:
        if record.kind == ReconciliationKind.REFUND and dispute.refund_reference is None:
            dispute.refund_reference = record.processor_reference
        if record.kind == ReconciliationKind.SETTLEMENT and dispute.settlement_reference is None:
            dispute.settlement_reference = record.processor_reference

    record.status = ReconciliationStatus.RESOLVED
    record.resolved_at = datetime.now(UTC)
    await db.commit()
    await db.refresh(record)
    logger.info(
        "Reconciled %s record %s (%s)",
        record.kind.value, record.record_id, "applied" if plan == "apply" else "already consistent",
    )
    return record


async def run_reconciliation_worker() -> None:
    """Periodically retry open reconciliation records."""
    from marketplace.database import async_session_factory
    from marketplace.services.gateway import get_gateway

    while True:
        try:
            async with async_session_factory() as db:
                records = await list_open(db)
                record_ids = [r.record_id for r in records]
            gateway = get_gateway() if record_ids else None
            for record_id in record_ids:
                async with async_session_factory() as db:
                    try:
                        await reconcile(db, record_id, gateway)
                    except (SQLAlchemyError, ExternalServiceError):
                        logger.exception("Reconciliation of %s failed, will retry", record_id)
            await asyncio.sleep(settings.reconciliation_interval_seconds)
        except asyncio.CancelledError:
            logger.info("Reconciliation worker shutting down")
            break
        except Exception:
            logger.exception("Reconciliation worker error, retrying in 5s")
            await asyncio.sleep(5)
