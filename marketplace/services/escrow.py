"""Escrow ledger: create, confirm funding, release per milestone, refund.

The only module that asks the payment gateway to move money. Every operation
locks the owning project row, re-checks its preconditions under that lock,
and only then calls the gateway. Local writes that follow a confirmed
processor side effect go through ``reconciliation.commit_or_flag``.
"""

import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.errors import (
    AuthorizationError,
    ExternalServiceError,
    NotFound,
    StateError,
    ValidationError,
)
from marketplace.models.escrow import (
    Escrow,
    EscrowAction,
    EscrowAuditLog,
    EscrowMilestone,
    EscrowMilestoneStatus,
    EscrowRefund,
    EscrowStatus,
)
from marketplace.models.project import (
    Milestone,
    MilestoneStatus,
    Project,
    ProjectStatus,
    WORKING_STATUSES,
)
from marketplace.models.reconciliation import (
    ReconciliationKind,
    ReconciliationRecord,
    ReconciliationStatus,
)
from marketplace.models.user import User
from marketplace.services.aggregate import (
    assert_reconciled,
    get_user,
    is_admin,
    lock_project,
    lock_project_for_escrow,
)
from marketplace.services.gateway import PaymentGateway
from marketplace.services.reconciliation import commit_or_flag
from marketplace.utils.money import from_minor_units, quantize, to_minor_units

logger = logging.getLogger(__name__)


def _log_audit(
    db: AsyncSession,
    escrow_id: uuid.UUID,
    action: EscrowAction,
    amount: Decimal,
    actor_id: uuid.UUID | None = None,
    metadata: dict | None = None,
) -> None:
    """Append to the immutable audit log."""
    entry = EscrowAuditLog(
        escrow_audit_id=uuid.uuid4(),
        escrow_id=escrow_id,
        action=action,
        actor_id=actor_id,
        amount=amount,
        metadata_=metadata,
    )
    db.add(entry)


async def _reload(db: AsyncSession, escrow_id: uuid.UUID) -> Escrow:
    result = await db.execute(
        select(Escrow)
        .where(Escrow.escrow_id == escrow_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def get_escrow(db: AsyncSession, escrow_id: uuid.UUID) -> Escrow:
    result = await db.execute(select(Escrow).where(Escrow.escrow_id == escrow_id))
    escrow = result.scalar_one_or_none()
    if escrow is None:
        raise NotFound("Escrow not found")
    return escrow


async def get_escrow_for_project(db: AsyncSession, project_id: uuid.UUID) -> Escrow:
    result = await db.execute(select(Escrow).where(Escrow.project_id == project_id))
    escrow = result.scalar_one_or_none()
    if escrow is None:
        raise NotFound("Escrow not found for this project")
    return escrow


async def list_audit_log(db: AsyncSession, escrow_id: uuid.UUID) -> list[EscrowAuditLog]:
    result = await db.execute(
        select(EscrowAuditLog)
        .where(EscrowAuditLog.escrow_id == escrow_id)
        .order_by(EscrowAuditLog.timestamp)
    )
    return list(result.scalars().all())


async def require_payout_account(db: AsyncSession, project: Project) -> User:
    freelancer = await get_user(db, project.freelancer_id)
    if freelancer is None or not freelancer.can_receive_funds:
        raise ValidationError("Freelancer has no active payout account")
    return freelancer


def _close_if_drained(escrow: Escrow) -> None:
    """Move a funded escrow to its terminal status once nothing is held.

    Entries still pending at that point can no longer be paid and become refunded.
    """
    if escrow.status != EscrowStatus.FUNDED or escrow.held_amount > 0:
        return
    now = datetime.now(UTC)
    for e in escrow.pending_entries():
        e.status = EscrowMilestoneStatus.REFUNDED
    if escrow.refunded_amount > 0:
        escrow.status = EscrowStatus.REFUNDED
        escrow.refunded_at = escrow.refunded_at or now
    else:
        escrow.status = EscrowStatus.RELEASED
        escrow.released_at = now


# ---------------------------------------------------------------------------
# Creation and funding
# ---------------------------------------------------------------------------

async def create_escrow(
    db: AsyncSession,
    project_id: uuid.UUID,
    gateway: PaymentGateway,
    actor_id: uuid.UUID | None = None,
) -> Escrow:
    """Create the project's escrow and its payment intent. Returns an existing one unchanged.

    One EscrowMilestone per milestone is created with the milestone's amount.
    A gateway failure leaves the project without an escrow and raises
    ExternalServiceError; the call can simply be retried.
    """
    project = await lock_project(db, project_id)
    if project.escrow is not None:
        return project.escrow
    if project.status not in WORKING_STATUSES or project.freelancer_id is None:
        raise StateError(
            f"Escrow can only be created for an assigned project, currently {project.status.value}"
        )
    if actor_id is not None and actor_id != project.employer_id:
        raise AuthorizationError("Only the employer can create the escrow")

    # Derived from the project so a retried call sends identical intent parameters.
    escrow_id = uuid.uuid5(uuid.NAMESPACE_URL, f"escrow:{project.project_id}")
    try:
        intent = await gateway.create_payment_intent(
            to_minor_units(project.budget),
            project.currency,
            {"type": "escrow", "project_id": str(project.project_id), "escrow_id": str(escrow_id)},
            idempotency_key=f"escrow:{project.project_id}",
        )
    except ExternalServiceError:
        await db.rollback()
        logger.warning("Escrow creation for project %s failed at the processor", project_id)
        raise

    escrow = Escrow(
        escrow_id=escrow_id,
        project_id=project.project_id,
        amount=project.budget,
        currency=project.currency,
        status=EscrowStatus.PENDING,
        payment_intent_id=intent.id,
        client_secret=intent.client_secret,
        released_amount=Decimal("0.00"),
        refunded_amount=Decimal("0.00"),
    )
    escrow.entries = [
        EscrowMilestone(
            milestone_id=m.milestone_id,
            position=m.position,
            amount=m.amount,
            status=EscrowMilestoneStatus.PENDING,
        )
        for m in project.milestones
    ]
    db.add(escrow)
    _log_audit(
        db, escrow.escrow_id, EscrowAction.CREATED, escrow.amount, actor_id,
        {"payment_intent_id": intent.id},
    )
    await db.commit()
    logger.info("Created escrow %s for project %s (intent %s)", escrow.escrow_id, project_id, intent.id)
    return await _reload(db, escrow.escrow_id)


async def confirm_funding(
    db: AsyncSession,
    escrow_id: uuid.UUID | None = None,
    *,
    payment_intent_id: str | None = None,
    project_id: uuid.UUID | None = None,
    amount_minor: int | None = None,
    event_id: str | None = None,
) -> Escrow | None:
    """Mark an escrow funded after the processor reports the payment succeeded.

    Unknown escrows and escrows that are no longer pending are logged no-ops,
    so duplicate or reordered deliveries leave state unchanged.
    """
    stmt = select(Escrow.escrow_id)
    if escrow_id is not None:
        stmt = stmt.where(Escrow.escrow_id == escrow_id)
    elif payment_intent_id is not None:
        stmt = stmt.where(Escrow.payment_intent_id == payment_intent_id)
    elif project_id is not None:
        stmt = stmt.where(Escrow.project_id == project_id)
    else:
        logger.warning("confirm_funding called without an escrow reference")
        return None
    found = (await db.execute(stmt)).scalar_one_or_none()
    if found is None:
        logger.warning(
            "Funding confirmation for unknown escrow (escrow=%s intent=%s project=%s)",
            escrow_id, payment_intent_id, project_id,
        )
        return None

    _, escrow = await lock_project_for_escrow(db, found)
    if escrow.status != EscrowStatus.PENDING:
        if escrow.status == EscrowStatus.CANCELLED:
            await _flag_late_funding(db, escrow, payment_intent_id, amount_minor, event_id)
        else:
            logger.info(
                "Escrow %s already %s, ignoring funding confirmation",
                escrow.escrow_id, escrow.status.value,
            )
        await db.commit()
        return escrow

    if amount_minor is not None and amount_minor != to_minor_units(escrow.amount):
        logger.warning(
            "Escrow %s funded with %s minor units, expected %s",
            escrow.escrow_id, amount_minor, to_minor_units(escrow.amount),
        )

    escrow.status = EscrowStatus.FUNDED
    escrow.funded_at = datetime.now(UTC)
    _log_audit(
        db, escrow.escrow_id, EscrowAction.FUNDED, escrow.amount, None,
        {"payment_intent_id": escrow.payment_intent_id, "event_id": event_id},
    )
    await db.commit()
    logger.info("Escrow %s funded", escrow.escrow_id)
    return await _reload(db, escrow.escrow_id)


async def _flag_late_funding(
    db: AsyncSession,
    escrow: Escrow,
    payment_intent_id: str | None,
    amount_minor: int | None,
    event_id: str | None,
) -> None:
    """Funds collected for a cancelled escrow are owed back; queue their refund."""
    existing = await db.execute(
        select(ReconciliationRecord.record_id).where(
            ReconciliationRecord.kind == ReconciliationKind.LATE_FUNDING,
            ReconciliationRecord.escrow_id == escrow.escrow_id,
        )
    )
    if existing.scalar_one_or_none() is not None:
        return
    amount = from_minor_units(amount_minor) if amount_minor is not None else escrow.amount
    record = ReconciliationRecord(
        record_id=uuid.uuid4(),
        kind=ReconciliationKind.LATE_FUNDING,
        status=ReconciliationStatus.OPEN,
        project_id=escrow.project_id,
        escrow_id=escrow.escrow_id,
        processor_reference=payment_intent_id or escrow.payment_intent_id,
        amount=amount,
        reason=f"Funds received after the escrow was cancelled (event {event_id})",
    )
    db.add(record)
    logger.error(
        "Funds received for cancelled escrow %s (intent %s); refund queued as %s",
        escrow.escrow_id, record.processor_reference, record.record_id,
    )


async def refund_late_funding(
    db: AsyncSession, escrow: Escrow, amount: Decimal, gateway: PaymentGateway
) -> str:
    """Refund the whole payment that arrived for a cancelled escrow. The caller commits.

    The funds never entered the ledger, so only the audit trail records them.
    """
    try:
        result = await gateway.create_refund(
            escrow.payment_intent_id,
            None,
            "Escrow was cancelled before the payment arrived",
            idempotency_key=f"refund:{escrow.escrow_id}:late-funding",
        )
    except ExternalServiceError:
        await db.rollback()
        raise
    _log_audit(
        db, escrow.escrow_id, EscrowAction.REFUNDED, amount, None,
        {"refund_id": result.id, "late_funding": True},
    )
    logger.info("Refunded late funding for cancelled escrow %s (refund %s)", escrow.escrow_id, result.id)
    return result.id


def cancel_escrow(db: AsyncSession, escrow: Escrow, actor_id: uuid.UUID | None) -> None:
    """Void an unfunded escrow. The caller commits."""
    if escrow.status != EscrowStatus.PENDING:
        raise StateError(f"Only a pending escrow can be cancelled, currently {escrow.status.value}")
    escrow.status = EscrowStatus.CANCELLED
    _log_audit(db, escrow.escrow_id, EscrowAction.CANCELLED, escrow.amount, actor_id)


# ---------------------------------------------------------------------------
# Release
# ---------------------------------------------------------------------------

def apply_release(
    db: AsyncSession,
    project: Project,
    escrow: Escrow,
    milestone: Milestone,
    entry: EscrowMilestone,
    approver_id: uuid.UUID | None,
    reference: str,
) -> None:
    """Record a confirmed milestone transfer on both facets of the milestone."""
    now = datetime.now(UTC)
    entry.status = EscrowMilestoneStatus.RELEASED
    entry.release_date = now
    entry.approved_by = approver_id
    entry.approved_at = milestone.reviewed_at or now
    entry.transfer_id = reference

    milestone.status = MilestoneStatus.PAID
    milestone.payment_id = reference

    escrow.released_amount = escrow.released_amount + entry.amount
    project.total_paid = project.total_paid + entry.amount
    _log_audit(
        db, escrow.escrow_id, EscrowAction.RELEASED, entry.amount, approver_id,
        {"milestone_id": str(milestone.milestone_id), "transfer_id": reference},
    )
    _close_if_drained(escrow)

    if all(m.status == MilestoneStatus.PAID for m in project.milestones) and (
        project.status in WORKING_STATUSES
    ):
        project.status = ProjectStatus.COMPLETED
        logger.info("Project %s completed: all milestones paid", project.project_id)


async def release_milestone(
    db: AsyncSession,
    escrow_id: uuid.UUID,
    milestone_id: uuid.UUID,
    approver_id: uuid.UUID,
    gateway: PaymentGateway,
) -> Escrow:
    """Pay out one approved milestone from a funded escrow.

    All preconditions are checked under the project lock before the gateway
    is called; a failure leaves no side effect.
    """
    project, escrow = await lock_project_for_escrow(db, escrow_id)
    milestone = project.milestone(milestone_id)
    entry = escrow.entry(milestone_id)
    if milestone is None or entry is None:
        raise NotFound("Milestone not found in this escrow")

    if approver_id != project.employer_id and not await is_admin(db, approver_id):
        raise AuthorizationError("Only the employer or an administrator can release funds")
    if project.status == ProjectStatus.DISPUTED:
        raise StateError("Project is disputed; releases are frozen")
    if project.status not in WORKING_STATUSES:
        raise StateError(f"Cannot release funds for a project in status {project.status.value}")
    if escrow.status != EscrowStatus.FUNDED:
        raise StateError(f"Escrow must be funded, currently {escrow.status.value}")
    if entry.status != EscrowMilestoneStatus.PENDING:
        raise StateError(f"Milestone funds already {entry.status.value}")
    if milestone.status != MilestoneStatus.APPROVED:
        raise StateError(f"Milestone must be approved, currently {milestone.status.value}")
    if escrow.held_amount < entry.amount:
        raise StateError(f"Insufficient held funds: {escrow.held_amount} < {entry.amount}")
    await assert_reconciled(db, project.project_id)
    freelancer = await require_payout_account(db, project)

    amount = entry.amount
    try:
        reference = await gateway.send_funds(
            to_minor_units(amount),
            escrow.currency,
            freelancer.payout_account_id,
            idempotency_key=f"release:{milestone_id}",
            metadata={"project_id": str(project.project_id), "milestone_id": str(milestone_id)},
        )
    except ExternalServiceError:
        await db.rollback()
        raise

    apply_release(db, project, escrow, milestone, entry, approver_id, reference)
    await commit_or_flag(
        db,
        ReconciliationKind.RELEASE,
        project_id=project.project_id,
        escrow_id=escrow_id,
        processor_reference=reference,
        amount=amount,
        milestone_id=milestone_id,
        actor_id=approver_id,
    )
    logger.info("Released %s for milestone %s (transfer %s)", amount, milestone_id, reference)
    return await _reload(db, escrow_id)


# ---------------------------------------------------------------------------
# Refund and settlement
# ---------------------------------------------------------------------------

def apply_refund(
    db: AsyncSession,
    escrow: Escrow,
    amount: Decimal,
    processor_refund_id: str,
    reason: str | None,
    actor_id: uuid.UUID | None,
) -> None:
    """Record a confirmed refund against the escrow's refund history."""
    escrow.refunds.append(
        EscrowRefund(
            refund_id=uuid.uuid4(),
            escrow_id=escrow.escrow_id,
            processor_refund_id=processor_refund_id,
            amount=amount,
            reason=reason,
        )
    )
    escrow.refunded_amount = escrow.refunded_amount + amount
    escrow.refunded_at = datetime.now(UTC)
    _log_audit(
        db, escrow.escrow_id, EscrowAction.REFUNDED, amount, actor_id,
        {"refund_id": processor_refund_id, "reason": reason},
    )
    _close_if_drained(escrow)


async def issue_refund(
    db: AsyncSession,
    escrow: Escrow,
    amount: Decimal | None,
    reason: str | None,
    actor_id: uuid.UUID | None,
    gateway: PaymentGateway,
    idempotency_key: str,
) -> tuple[Decimal, str]:
    """Refund against the funding payment and apply it locally. The caller commits.

    ``amount`` defaults to everything still held. Returns (amount, refund id).
    """
    held = escrow.held_amount
    amount = held if amount is None else quantize(amount)
    if amount <= 0:
        raise ValidationError("Refund amount must be positive")
    if amount > held:
        raise ValidationError(f"Refund amount {amount} exceeds held funds {held}")

    nothing_moved = escrow.released_amount == 0 and escrow.refunded_amount == 0
    full_intent = nothing_moved and amount == escrow.amount
    try:
        result = await gateway.create_refund(
            escrow.payment_intent_id,
            None if full_intent else to_minor_units(amount),
            reason,
            idempotency_key=idempotency_key,
        )
    except ExternalServiceError:
        await db.rollback()
        raise

    apply_refund(db, escrow, amount, result.id, reason, actor_id)
    return amount, result.id


async def refund_escrow(
    db: AsyncSession,
    escrow_id: uuid.UUID,
    reason: str | None,
    gateway: PaymentGateway,
    amount: Decimal | None = None,
    actor_id: uuid.UUID | None = None,
) -> Escrow:
    """Refund held funds to the employer: all of them, or a partial ``amount``."""
    project, escrow = await lock_project_for_escrow(db, escrow_id)
    if project.status == ProjectStatus.DISPUTED:
        raise StateError("Project is disputed; refunds go through dispute resolution")
    if project.status not in WORKING_STATUSES:
        raise StateError(f"Cannot refund a project in status {project.status.value}")
    if escrow.status != EscrowStatus.FUNDED:
        raise StateError(f"Escrow must be funded, currently {escrow.status.value}")

    project_id = project.project_id
    await assert_reconciled(db, project_id)
    key = f"refund:{escrow_id}:{len(escrow.refunds) + 1}"
    refunded, refund_id = await issue_refund(db, escrow, amount, reason, actor_id, gateway, key)
    await commit_or_flag(
        db,
        ReconciliationKind.REFUND,
        project_id=project_id,
        escrow_id=escrow_id,
        processor_reference=refund_id,
        amount=refunded,
        actor_id=actor_id,
        reason=reason,
    )
    logger.info("Refunded %s from escrow %s (refund %s)", refunded, escrow_id, refund_id)
    return await _reload(db, escrow_id)


def apply_settlement(
    db: AsyncSession,
    project: Project,
    escrow: Escrow,
    amount: Decimal,
    reference: str,
    actor_id: uuid.UUID | None,
) -> None:
    """Record a confirmed transfer of all remaining held funds to the freelancer.

    Entries are marked released; milestone work status is left alone.
    """
    now = datetime.now(UTC)
    for e in escrow.pending_entries():
        e.status = EscrowMilestoneStatus.RELEASED
        e.release_date = now
        e.approved_by = actor_id
        e.approved_at = now
        e.transfer_id = reference
    escrow.released_amount = escrow.released_amount + amount
    project.total_paid = project.total_paid + amount
    _log_audit(
        db, escrow.escrow_id, EscrowAction.SETTLED, amount, actor_id, {"transfer_id": reference}
    )
    _close_if_drained(escrow)


async def settle_remainder(
    db: AsyncSession,
    project: Project,
    escrow: Escrow,
    actor_id: uuid.UUID | None,
    gateway: PaymentGateway,
    idempotency_key: str,
) -> tuple[Decimal, str | None]:
    """Transfer everything still held to the freelancer. The caller commits.

    Returns (amount, transfer reference); the reference is None when nothing was held.
    """
    amount = escrow.held_amount
    if amount <= 0:
        return Decimal("0.00"), None
    freelancer = await require_payout_account(db, project)
    try:
        reference = await gateway.send_funds(
            to_minor_units(amount),
            escrow.currency,
            freelancer.payout_account_id,
            idempotency_key=idempotency_key,
            metadata={"project_id": str(project.project_id), "type": "settlement"},
        )
    except ExternalServiceError:
        await db.rollback()
        raise
    apply_settlement(db, project, escrow, amount, reference, actor_id)
    return amount, reference


def record_dispute_event(
    db: AsyncSession,
    escrow: Escrow,
    action: EscrowAction,
    actor_id: uuid.UUID,
    dispute_id: uuid.UUID,
    outcome: str | None = None,
) -> None:
    """Audit a dispute opening or closing against the project's escrow."""
    _log_audit(
        db, escrow.escrow_id, action, escrow.held_amount, actor_id,
        {"dispute_id": str(dispute_id), "outcome": outcome},
    )
