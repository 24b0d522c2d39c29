"""Dispute resolution: raising a dispute freezes the project's money movement
until an administrator dismisses or resolves it."""

import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.errors import AuthorizationError, NotFound, StateError, ValidationError
from marketplace.models.dispute import Dispute, DisputeDecision, DisputeStatus
from marketplace.models.escrow import EscrowAction, EscrowStatus
from marketplace.models.project import (
    MilestoneStatus,
    Project,
    ProjectStatus,
    WORKING_STATUSES,
)
from marketplace.models.reconciliation import ReconciliationKind
from marketplace.schemas.dispute import DisputeCreate, DisputeMessageCreate, DisputeResolution
from marketplace.services import escrow as escrow_service
from marketplace.services.aggregate import assert_reconciled, is_admin, lock_project
from marketplace.services.gateway import PaymentGateway
from marketplace.services.reconciliation import commit_or_flag
from marketplace.utils.money import quantize

logger = logging.getLogger(__name__)

# Project status each decision settles the project into.
DECISION_OUTCOMES: dict[DisputeDecision, ProjectStatus] = {
    DisputeDecision.REFUND: ProjectStatus.CANCELLED,
    DisputeDecision.EMPLOYER_FAVOR: ProjectStatus.CANCELLED,
    DisputeDecision.FREELANCER_FAVOR: ProjectStatus.COMPLETED,
    DisputeDecision.COMPROMISE: ProjectStatus.COMPLETED,
}

DISPUTABLE_MILESTONE_STATUSES = frozenset(
    {MilestoneStatus.SUBMITTED, MilestoneStatus.APPROVED, MilestoneStatus.REJECTED}
)


async def get_dispute(db: AsyncSession, dispute_id: uuid.UUID) -> Dispute:
    result = await db.execute(
        select(Dispute)
        .where(Dispute.dispute_id == dispute_id)
        .execution_options(populate_existing=True)
    )
    dispute = result.scalar_one_or_none()
    if dispute is None:
        raise NotFound("Dispute not found")
    return dispute


async def list_disputes(
    db: AsyncSession,
    status: DisputeStatus | None = None,
    project_id: uuid.UUID | None = None,
    participant_id: uuid.UUID | None = None,
) -> list[Dispute]:
    """Disputes by filter; ``participant_id`` limits them to that user's projects."""
    stmt = select(Dispute).order_by(Dispute.created_at)
    if participant_id is not None:
        stmt = stmt.join(Project, Project.project_id == Dispute.project_id).where(
            or_(Project.employer_id == participant_id, Project.freelancer_id == participant_id)
        )
    if status is not None:
        stmt = stmt.where(Dispute.status == status)
    if project_id is not None:
        stmt = stmt.where(Dispute.project_id == project_id)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def _require_admin(db: AsyncSession, user_id: uuid.UUID) -> None:
    if not await is_admin(db, user_id):
        raise AuthorizationError("Only an administrator can perform this action")


async def _lock_for_dispute(db: AsyncSession, dispute_id: uuid.UUID) -> tuple[Project, Dispute]:
    dispute = await get_dispute(db, dispute_id)
    project = await lock_project(db, dispute.project_id)
    # Re-read under the project lock.
    dispute = await get_dispute(db, dispute_id)
    return project, dispute


async def raise_dispute(
    db: AsyncSession, raised_by: uuid.UUID, data: DisputeCreate
) -> Dispute:
    """A participant disputes an active project, optionally naming one milestone."""
    project = await lock_project(db, data.project_id)
    if not project.is_participant(raised_by):
        raise AuthorizationError("Only the employer or the assigned freelancer can raise a dispute")
    if project.status == ProjectStatus.DISPUTED:
        raise StateError("Project already has an open dispute")
    if project.status not in WORKING_STATUSES:
        raise StateError(f"Cannot dispute a project in status {project.status.value}")

    milestone_prior = None
    if data.milestone_id is not None:
        milestone = project.milestone(data.milestone_id)
        if milestone is None:
            raise NotFound("Milestone not found in this project")
        if milestone.status not in DISPUTABLE_MILESTONE_STATUSES:
            raise StateError(f"Cannot dispute a milestone in status {milestone.status.value}")
        milestone_prior = milestone.status.value
        milestone.status = MilestoneStatus.DISPUTED

    dispute = Dispute(
        dispute_id=uuid.uuid4(),
        project_id=project.project_id,
        milestone_id=data.milestone_id,
        raised_by=raised_by,
        category=data.category,
        description=data.description,
        evidence=list(data.evidence),
        messages=[],
        status=DisputeStatus.OPEN,
        project_prior_status=project.status.value,
        milestone_prior_status=milestone_prior,
    )
    db.add(dispute)
    project.status = ProjectStatus.DISPUTED
    if project.escrow is not None:
        escrow_service.record_dispute_event(
            db, project.escrow, EscrowAction.DISPUTED, raised_by, dispute.dispute_id
        )
    await db.commit()
    logger.info("Dispute %s raised on project %s by %s", dispute.dispute_id, project.project_id, raised_by)
    return await get_dispute(db, dispute.dispute_id)


async def add_message(
    db: AsyncSession, dispute_id: uuid.UUID, sender_id: uuid.UUID, data: DisputeMessageCreate
) -> Dispute:
    project, dispute = await _lock_for_dispute(db, dispute_id)
    if not project.is_participant(sender_id) and not await is_admin(db, sender_id):
        raise AuthorizationError("Not a party to this dispute")
    if not dispute.is_active:
        raise StateError(f"Dispute is {dispute.status.value}")
    message = {
        "sender_id": str(sender_id),
        "content": data.content,
        "attachments": list(data.attachments),
        "created_at": datetime.now(UTC).isoformat(),
    }
    dispute.messages = [*(dispute.messages or []), message]
    await db.commit()
    return await get_dispute(db, dispute_id)


async def start_review(db: AsyncSession, dispute_id: uuid.UUID, admin_id: uuid.UUID) -> Dispute:
    await _require_admin(db, admin_id)
    _, dispute = await _lock_for_dispute(db, dispute_id)
    if dispute.status != DisputeStatus.OPEN:
        raise StateError(f"Only open disputes can be taken into review, currently {dispute.status.value}")
    dispute.status = DisputeStatus.IN_REVIEW
    await db.commit()
    return await get_dispute(db, dispute_id)


def _restore_milestone(project: Project, dispute: Dispute) -> None:
    if dispute.milestone_id is None or dispute.milestone_prior_status is None:
        return
    milestone = project.milestone(dispute.milestone_id)
    if milestone is not None and milestone.status == MilestoneStatus.DISPUTED:
        milestone.status = MilestoneStatus(dispute.milestone_prior_status)


async def dismiss(
    db: AsyncSession, dispute_id: uuid.UUID, admin_id: uuid.UUID, notes: str | None = None
) -> Dispute:
    """Reject the dispute and put the project back where it was."""
    await _require_admin(db, admin_id)
    project, dispute = await _lock_for_dispute(db, dispute_id)
    if not dispute.is_active:
        raise StateError(f"Dispute is already {dispute.status.value}")
    if dispute.refund_reference or dispute.settlement_reference:
        raise StateError("Dispute resolution has already moved funds; it must be resolved")

    project.status = ProjectStatus(dispute.project_prior_status)
    _restore_milestone(project, dispute)
    dispute.status = DisputeStatus.REJECTED
    dispute.resolution_notes = notes
    dispute.resolved_by = admin_id
    dispute.resolved_at = datetime.now(UTC)
    if project.escrow is not None:
        escrow_service.record_dispute_event(
            db, project.escrow, EscrowAction.RESOLVED, admin_id, dispute_id, "dismissed"
        )
    await db.commit()
    logger.info("Dispute %s dismissed by %s", dispute_id, admin_id)
    return await get_dispute(db, dispute_id)


def _refund_for_decision(
    decision: DisputeDecision, requested: Decimal | None, held: Decimal, funded: bool
) -> Decimal:
    """Apply the refund policy for a decision. Returns the amount to refund."""
    requested = None if requested is None else quantize(requested)
    if not funded:
        if requested:
            raise ValidationError("Nothing is held in escrow; refund amount must be zero")
        return Decimal("0.00")
    if requested is not None and requested > held:
        raise ValidationError(f"Refund amount {requested} exceeds held funds {held}")

    if decision in (DisputeDecision.REFUND, DisputeDecision.EMPLOYER_FAVOR):
        return held if requested is None else requested
    if decision == DisputeDecision.FREELANCER_FAVOR:
        if requested:
            raise ValidationError("A freelancer_favor decision cannot refund the employer")
        return Decimal("0.00")
    # Compromise: a genuine split of what is held.
    if requested is None or requested <= 0 or requested >= held:
        raise ValidationError("A compromise must refund part, but not all, of the held funds")
    return requested


async def resolve(
    db: AsyncSession,
    dispute_id: uuid.UUID,
    admin_id: uuid.UUID,
    data: DisputeResolution,
    gateway: PaymentGateway,
) -> Dispute:
    """Resolve a dispute, moving money as the decision requires.

    The refund (if any) goes back to the employer; anything still held after
    it is settled to the freelancer. Each processor call is committed with its
    reference on the dispute, so a retried resolution skips steps already done.
    """
    await _require_admin(db, admin_id)
    project, dispute = await _lock_for_dispute(db, dispute_id)
    if dispute.status == DisputeStatus.RESOLVED:
        raise StateError("Dispute is already resolved")
    if not dispute.is_active:
        raise StateError(f"Dispute is {dispute.status.value}")
    if project.status != ProjectStatus.DISPUTED:
        raise StateError(f"Project is not disputed, currently {project.status.value}")
    await assert_reconciled(db, project.project_id)

    project_id = project.project_id
    escrow = project.escrow
    funded = escrow is not None and escrow.status == EscrowStatus.FUNDED
    held = escrow.held_amount if funded else Decimal("0.00")

    if dispute.decision is not None:
        # A previous attempt already moved money; finish it as decided.
        if dispute.decision != data.decision:
            raise StateError(f"Resolution already in progress as {dispute.decision.value}")
        refund_amount = dispute.refund_amount or Decimal("0.00")
    else:
        refund_amount = _refund_for_decision(data.decision, data.refund_amount, held, funded)
        remainder = held - refund_amount
        if remainder > 0:
            await escrow_service.require_payout_account(db, project)
        dispute.decision = data.decision
        dispute.refund_amount = refund_amount

    if refund_amount > 0 and dispute.refund_reference is None:
        escrow_id = escrow.escrow_id
        reason = f"Dispute {dispute_id} resolved: {data.decision.value}"
        refunded, refund_id = await escrow_service.issue_refund(
            db, escrow, refund_amount, reason, admin_id, gateway, f"dispute-refund:{dispute_id}"
        )
        dispute.refund_reference = refund_id
        await commit_or_flag(
            db,
            ReconciliationKind.REFUND,
            project_id=project_id,
            escrow_id=escrow_id,
            processor_reference=refund_id,
            amount=refunded,
            dispute_id=dispute_id,
            actor_id=admin_id,
            reason=reason,
        )
        project, dispute = await _lock_for_dispute(db, dispute_id)
        escrow = project.escrow

    if (
        escrow is not None
        and escrow.status == EscrowStatus.FUNDED
        and escrow.held_amount > 0
        and dispute.settlement_reference is None
    ):
        escrow_id = escrow.escrow_id
        settled, reference = await escrow_service.settle_remainder(
            db, project, escrow, admin_id, gateway, f"settlement:{dispute_id}"
        )
        dispute.settlement_reference = reference
        await commit_or_flag(
            db,
            ReconciliationKind.SETTLEMENT,
            project_id=project_id,
            escrow_id=escrow_id,
            processor_reference=reference,
            amount=settled,
            dispute_id=dispute_id,
            actor_id=admin_id,
        )
        project, dispute = await _lock_for_dispute(db, dispute_id)
        escrow = project.escrow

    if escrow is not None:
        if escrow.status == EscrowStatus.PENDING:
            escrow_service.cancel_escrow(db, escrow, admin_id)
        escrow_service.record_dispute_event(
            db, escrow, EscrowAction.RESOLVED, admin_id, dispute_id, dispute.decision.value
        )
    _restore_milestone(project, dispute)
    project.status = DECISION_OUTCOMES[dispute.decision]
    dispute.status = DisputeStatus.RESOLVED
    dispute.resolution_notes = data.notes
    dispute.resolved_by = admin_id
    dispute.resolved_at = datetime.now(UTC)
    await db.commit()
    logger.info(
        "Dispute %s resolved by %s: %s (refund %s)",
        dispute_id, admin_id, dispute.decision.value, dispute.refund_amount,
    )
    return await get_dispute(db, dispute_id)
