"""Milestone work workflow: submit, approve, reject, and editing while open.

Approval never moves money; paying an approved milestone is an explicit
escrow release.
"""

import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import settings
from marketplace.errors import AuthorizationError, NotFound, StateError, ValidationError
from marketplace.models.project import (
    MILESTONE_TRANSITIONS,
    Milestone,
    MilestoneStatus,
    Project,
    ProjectStatus,
    WORKING_STATUSES,
)
from marketplace.schemas.project import MilestoneCreate, MilestoneSubmission, MilestoneUpdate
from marketplace.services.aggregate import load_project, lock_project, lock_project_for_milestone

logger = logging.getLogger(__name__)


def _assert_transition(current: MilestoneStatus, target: MilestoneStatus) -> None:
    """Raise 409 if the milestone transition is not valid."""
    if target not in MILESTONE_TRANSITIONS.get(current, set()):
        raise StateError(f"Cannot transition milestone from {current.value} to {target.value}")


def _assert_working(project: Project) -> None:
    if project.status == ProjectStatus.DISPUTED:
        raise StateError("Project is disputed; milestone review is frozen")
    if project.status not in WORKING_STATUSES:
        raise StateError(f"Project is not active, currently {project.status.value}")


def _assert_editable(project: Project, employer_id: uuid.UUID) -> None:
    if project.employer_id != employer_id:
        raise AuthorizationError("Only the employer can edit milestones")
    if project.status != ProjectStatus.OPEN:
        raise StateError(f"Milestones can only be edited while the project is open, currently {project.status.value}")


async def _reloaded(db: AsyncSession, project_id: uuid.UUID, milestone_id: uuid.UUID) -> Milestone:
    project = await load_project(db, project_id)
    return project.milestone(milestone_id)


def _rederive_budget(project: Project) -> None:
    """Budget always equals the sum of milestone amounts."""
    project.budget = sum((m.amount for m in project.milestones), Decimal("0.00"))
    if project.budget > settings.max_project_budget:
        raise ValidationError(f"Budget may not exceed {settings.max_project_budget}")


async def submit(
    db: AsyncSession,
    milestone_id: uuid.UUID,
    freelancer_id: uuid.UUID,
    data: MilestoneSubmission,
) -> Milestone:
    """Assigned freelancer submits work (first time or after a rejection)."""
    project, milestone = await lock_project_for_milestone(db, milestone_id)
    if project.freelancer_id is None or project.freelancer_id != freelancer_id:
        raise AuthorizationError("Only the assigned freelancer can submit work")
    _assert_working(project)
    if milestone.status not in (MilestoneStatus.PENDING, MilestoneStatus.REJECTED):
        raise StateError(f"Cannot submit a milestone in status {milestone.status.value}")

    milestone.status = MilestoneStatus.SUBMITTED
    milestone.submission_description = data.description
    milestone.submission_attachments = list(data.attachments)
    milestone.submitted_at = datetime.now(UTC)
    if project.status == ProjectStatus.ACTIVE:
        project.status = ProjectStatus.IN_PROGRESS

    await db.commit()
    logger.info("Milestone %s submitted by %s", milestone_id, freelancer_id)
    return await _reloaded(db, project.project_id, milestone_id)


async def approve(
    db: AsyncSession, milestone_id: uuid.UUID, employer_id: uuid.UUID
) -> Milestone:
    project, milestone = await lock_project_for_milestone(db, milestone_id)
    if project.employer_id != employer_id:
        raise AuthorizationError("Only the employer can approve work")
    _assert_working(project)
    if milestone.status != MilestoneStatus.SUBMITTED:
        raise StateError(f"Only submitted milestones can be approved, currently {milestone.status.value}")
    _assert_transition(milestone.status, MilestoneStatus.APPROVED)

    milestone.status = MilestoneStatus.APPROVED
    milestone.reviewed_at = datetime.now(UTC)
    milestone.feedback = None
    await db.commit()
    return await _reloaded(db, project.project_id, milestone_id)


async def reject(
    db: AsyncSession, milestone_id: uuid.UUID, employer_id: uuid.UUID, reason: str
) -> Milestone:
    project, milestone = await lock_project_for_milestone(db, milestone_id)
    if project.employer_id != employer_id:
        raise AuthorizationError("Only the employer can reject work")
    _assert_working(project)
    if milestone.status != MilestoneStatus.SUBMITTED:
        raise StateError(f"Only submitted milestones can be rejected, currently {milestone.status.value}")
    _assert_transition(milestone.status, MilestoneStatus.REJECTED)

    milestone.status = MilestoneStatus.REJECTED
    milestone.feedback = reason
    milestone.reviewed_at = datetime.now(UTC)
    await db.commit()
    return await _reloaded(db, project.project_id, milestone_id)


async def add_milestone(
    db: AsyncSession, project_id: uuid.UUID, employer_id: uuid.UUID, data: MilestoneCreate
) -> Project:
    project = await lock_project(db, project_id)
    _assert_editable(project, employer_id)
    if len(project.milestones) >= settings.max_milestones_per_project:
        raise ValidationError(f"A project may have at most {settings.max_milestones_per_project} milestones")

    position = max((m.position for m in project.milestones), default=-1) + 1
    project.milestones.append(
        Milestone(
            milestone_id=uuid.uuid4(),
            project_id=project.project_id,
            position=position,
            title=data.title,
            description=data.description,
            amount=data.amount,
            due_date=data.due_date,
            status=MilestoneStatus.PENDING,
        )
    )
    _rederive_budget(project)
    await db.commit()
    return await load_project(db, project_id)


async def update_milestone(
    db: AsyncSession,
    project_id: uuid.UUID,
    milestone_id: uuid.UUID,
    employer_id: uuid.UUID,
    data: MilestoneUpdate,
) -> Project:
    project = await lock_project(db, project_id)
    _assert_editable(project, employer_id)
    milestone = project.milestone(milestone_id)
    if milestone is None:
        raise NotFound("Milestone not found")
    if milestone.status != MilestoneStatus.PENDING:
        raise StateError("Only pending milestones can be edited")

    for field, value in data.model_dump(exclude_unset=True).items():
        if field in ("title", "amount") and value is None:
            raise ValidationError(f"{field} cannot be null")
        setattr(milestone, field, value)
    _rederive_budget(project)
    await db.commit()
    return await load_project(db, project_id)


async def remove_milestone(
    db: AsyncSession, project_id: uuid.UUID, milestone_id: uuid.UUID, employer_id: uuid.UUID
) -> Project:
    project = await lock_project(db, project_id)
    _assert_editable(project, employer_id)
    milestone = project.milestone(milestone_id)
    if milestone is None:
        raise NotFound("Milestone not found")
    if milestone.status != MilestoneStatus.PENDING:
        raise StateError("Only pending milestones can be removed")
    if len(project.milestones) == 1:
        raise ValidationError("A project must keep at least one milestone")

    project.milestones.remove(milestone)
    _rederive_budget(project)
    await db.commit()
    return await load_project(db, project_id)
