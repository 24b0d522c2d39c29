"""Project lifecycle: creation, applications, assignment, rejection, cancellation.

Completion is never requested by a client: the escrow ledger marks a project
completed when its last milestone is paid.
"""

import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import settings
from marketplace.errors import (
    AuthorizationError,
    ExternalServiceError,
    NotFound,
    StateError,
    ValidationError,
)
from marketplace.models.escrow import Escrow, EscrowStatus
from marketplace.models.project import (
    PROJECT_TRANSITIONS,
    Application,
    ApplicationStatus,
    Milestone,
    MilestoneStatus,
    Project,
    ProjectStatus,
    WORKING_STATUSES,
)
from marketplace.models.reconciliation import ReconciliationKind
from marketplace.models.user import User, UserRole
from marketplace.schemas.project import ApplicationCreate, ProjectCreate
from marketplace.services import escrow as escrow_service
from marketplace.services.aggregate import assert_reconciled, get_user, load_project, lock_project
from marketplace.services.gateway import PaymentGateway
from marketplace.services.reconciliation import commit_or_flag

logger = logging.getLogger(__name__)


def _assert_transition(current: ProjectStatus, target: ProjectStatus) -> None:
    """Raise 409 if the state transition is not valid."""
    if target not in PROJECT_TRANSITIONS.get(current, set()):
        raise StateError(f"Cannot transition project from {current.value} to {target.value}")


def _assert_employer(project: Project, user_id: uuid.UUID) -> None:
    if project.employer_id != user_id:
        raise AuthorizationError("Only the project's employer can perform this action")


async def _require_role(db: AsyncSession, user_id: uuid.UUID, role: UserRole) -> User:
    user = await get_user(db, user_id)
    if user is None or user.role != role:
        raise AuthorizationError(f"Only a {role.value} can perform this action")
    return user


async def get_project(db: AsyncSession, project_id: uuid.UUID) -> Project:
    return await load_project(db, project_id)


async def create_project(
    db: AsyncSession, employer_id: uuid.UUID, data: ProjectCreate
) -> Project:
    """Employer posts a project with its milestones."""
    await _require_role(db, employer_id, UserRole.EMPLOYER)

    total = sum((m.amount for m in data.milestones), Decimal("0.00"))
    if total != data.budget:
        raise ValidationError(
            f"Milestone amounts ({total}) must add up to the budget ({data.budget})"
        )
    if data.budget > settings.max_project_budget:
        raise ValidationError(f"Budget may not exceed {settings.max_project_budget}")

    project = Project(
        project_id=uuid.uuid4(),
        employer_id=employer_id,
        title=data.title,
        description=data.description,
        category=data.category,
        budget=data.budget,
        currency=settings.currency,
        deadline=data.deadline,
        required_skills=list(data.required_skills),
        status=ProjectStatus.OPEN,
        total_paid=Decimal("0.00"),
    )
    project.milestones = [
        Milestone(
            milestone_id=uuid.uuid4(),
            project_id=project.project_id,
            position=i,
            title=m.title,
            description=m.description,
            amount=m.amount,
            due_date=m.due_date,
            status=MilestoneStatus.PENDING,
        )
        for i, m in enumerate(data.milestones)
    ]
    db.add(project)
    await db.commit()
    logger.info("Project %s created by %s (budget %s)", project.project_id, employer_id, data.budget)
    return await load_project(db, project.project_id)


async def list_applications(
    db: AsyncSession, project_id: uuid.UUID, employer_id: uuid.UUID
) -> list[Application]:
    project = await load_project(db, project_id)
    _assert_employer(project, employer_id)
    return list(project.applications)


async def apply(
    db: AsyncSession,
    project_id: uuid.UUID,
    freelancer_id: uuid.UUID,
    data: ApplicationCreate,
) -> Application:
    """Freelancer applies to an open project. One application per freelancer."""
    await _require_role(db, freelancer_id, UserRole.FREELANCER)
    project = await lock_project(db, project_id)
    if project.status != ProjectStatus.OPEN:
        raise StateError(f"Project is not accepting applications, currently {project.status.value}")
    if any(a.applicant_id == freelancer_id for a in project.applications):
        raise StateError("You have already applied to this project")

    application = Application(
        application_id=uuid.uuid4(),
        project_id=project_id,
        applicant_id=freelancer_id,
        proposal=data.proposal,
        resume_url=data.resume_url,
        status=ApplicationStatus.PENDING,
    )
    db.add(application)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise StateError("You have already applied to this project")
    await db.refresh(application)
    return application


async def approve_application(
    db: AsyncSession,
    project_id: uuid.UUID,
    application_id: uuid.UUID,
    employer_id: uuid.UUID,
    gateway: PaymentGateway,
) -> tuple[Project, Escrow | None, str | None]:
    """Assign the applicant, reject every sibling, activate, then create the escrow.

    Returns (project, escrow, escrow_error). An escrow failure does not undo
    the assignment; the employer can retry escrow creation later.
    """
    project = await lock_project(db, project_id)
    _assert_employer(project, employer_id)
    if project.status != ProjectStatus.OPEN:
        raise StateError(f"Project must be open to approve an application, currently {project.status.value}")
    chosen = next((a for a in project.applications if a.application_id == application_id), None)
    if chosen is None:
        raise NotFound("Application not found")
    if chosen.status != ApplicationStatus.PENDING:
        raise StateError(f"Application is already {chosen.status.value}")
    _assert_transition(project.status, ProjectStatus.ACTIVE)

    for application in project.applications:
        application.status = (
            ApplicationStatus.APPROVED
            if application.application_id == application_id
            else ApplicationStatus.REJECTED
        )
    project.freelancer_id = chosen.applicant_id
    project.status = ProjectStatus.ACTIVE
    await db.commit()
    logger.info("Project %s assigned to %s", project_id, chosen.applicant_id)

    escrow = None
    escrow_error = None
    try:
        escrow = await escrow_service.create_escrow(db, project_id, gateway, employer_id)
    except ExternalServiceError as exc:
        escrow_error = str(exc.detail)
        logger.error("Project %s is active without an escrow: %s", project_id, escrow_error)
    return await load_project(db, project_id), escrow, escrow_error


async def reject_application(
    db: AsyncSession,
    project_id: uuid.UUID,
    application_id: uuid.UUID,
    employer_id: uuid.UUID,
) -> Application:
    project = await lock_project(db, project_id)
    _assert_employer(project, employer_id)
    application = next((a for a in project.applications if a.application_id == application_id), None)
    if application is None:
        raise NotFound("Application not found")
    if application.status != ApplicationStatus.PENDING:
        raise StateError(f"Application is already {application.status.value}")
    application.status = ApplicationStatus.REJECTED
    await db.commit()
    await db.refresh(application)
    return application


async def reject(
    db: AsyncSession,
    project_id: uuid.UUID,
    employer_id: uuid.UUID,
    reason: str,
    gateway: PaymentGateway,
) -> Project:
    """Employer rejects an assigned project. Held escrow funds are refunded first."""
    project = await lock_project(db, project_id)
    _assert_employer(project, employer_id)
    if project.status not in WORKING_STATUSES:
        raise StateError(f"Only active projects can be rejected, currently {project.status.value}")
    _assert_transition(project.status, ProjectStatus.REJECTED)
    await assert_reconciled(db, project_id)

    escrow = project.escrow
    refund: tuple[Decimal, str] | None = None
    if escrow is not None and escrow.status == EscrowStatus.FUNDED and escrow.held_amount > 0:
        key = f"refund:{escrow.escrow_id}:{len(escrow.refunds) + 1}"
        escrow_id = escrow.escrow_id
        refund = await escrow_service.issue_refund(
            db, escrow, None, f"Project rejected: {reason}", employer_id, gateway, key
        )
    elif escrow is not None and escrow.status == EscrowStatus.PENDING:
        escrow_service.cancel_escrow(db, escrow, employer_id)

    project.status = ProjectStatus.REJECTED
    project.rejection_reason = reason
    project.rejected_at = datetime.now(UTC)
    project.rejected_by = employer_id

    if refund is not None:
        await commit_or_flag(
            db,
            ReconciliationKind.REFUND,
            project_id=project_id,
            escrow_id=escrow_id,
            processor_reference=refund[1],
            amount=refund[0],
            actor_id=employer_id,
            reason=f"Project rejected: {reason}",
        )
    else:
        await db.commit()
    logger.info("Project %s rejected by %s", project_id, employer_id)
    return await load_project(db, project_id)


async def cancel(
    db: AsyncSession,
    project_id: uuid.UUID,
    employer_id: uuid.UUID,
    reason: str | None = None,
) -> Project:
    """Cancel before any money is held: open projects, or active ones with an unfunded escrow."""
    project = await lock_project(db, project_id)
    _assert_employer(project, employer_id)
    escrow = project.escrow
    if project.status == ProjectStatus.ACTIVE:
        if escrow is not None and escrow.status != EscrowStatus.PENDING:
            raise StateError(f"Cannot cancel a project whose escrow is {escrow.status.value}")
    elif project.status != ProjectStatus.OPEN:
        raise StateError(f"Cannot cancel a project in status {project.status.value}")
    _assert_transition(project.status, ProjectStatus.CANCELLED)

    if escrow is not None:
        escrow_service.cancel_escrow(db, escrow, employer_id)
    for application in project.applications:
        if application.status == ApplicationStatus.PENDING:
            application.status = ApplicationStatus.REJECTED
    project.status = ProjectStatus.CANCELLED
    project.rejection_reason = reason
    await db.commit()
    logger.info("Project %s cancelled by %s", project_id, employer_id)
    return await load_project(db, project_id)

