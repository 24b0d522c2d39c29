"""Loading and locking the Project aggregate.

Every mutation of a project, its milestones, escrow, applications or
disputes first locks the owning ``projects`` row. Loading always uses
``populate_existing`` so the identity map never serves state read before the
lock was taken.
"""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.errors import NotFound, StateError
from marketplace.models.escrow import Escrow
from marketplace.models.project import Milestone, Project
from marketplace.models.reconciliation import ReconciliationRecord, ReconciliationStatus
from marketplace.models.user import User, UserRole


async def load_project(
    db: AsyncSession, project_id: uuid.UUID, lock: bool = False
) -> Project:
    stmt = (
        select(Project)
        .where(Project.project_id == project_id)
        .execution_options(populate_existing=True)
    )
    if lock:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    project = result.scalar_one_or_none()
    if project is None:
        raise NotFound("Project not found")
    return project


async def lock_project(db: AsyncSession, project_id: uuid.UUID) -> Project:
    """SELECT ... FOR UPDATE on the aggregate root; serializes writers per project."""
    return await load_project(db, project_id, lock=True)


async def lock_project_for_milestone(
    db: AsyncSession, milestone_id: uuid.UUID
) -> tuple[Project, Milestone]:
    result = await db.execute(
        select(Milestone.project_id).where(Milestone.milestone_id == milestone_id)
    )
    project_id = result.scalar_one_or_none()
    if project_id is None:
        raise NotFound("Milestone not found")
    project = await lock_project(db, project_id)
    milestone = project.milestone(milestone_id)
    if milestone is None:
        raise NotFound("Milestone not found")
    return project, milestone


async def lock_project_for_escrow(
    db: AsyncSession, escrow_id: uuid.UUID
) -> tuple[Project, Escrow]:
    result = await db.execute(select(Escrow.project_id).where(Escrow.escrow_id == escrow_id))
    project_id = result.scalar_one_or_none()
    if project_id is None:
        raise NotFound("Escrow not found")
    project = await lock_project(db, project_id)
    return project, project.escrow


async def get_user(db: AsyncSession, user_id: uuid.UUID | None) -> User | None:
    if user_id is None:
        return None
    result = await db.execute(select(User).where(User.user_id == user_id))
    return result.scalar_one_or_none()


async def is_admin(db: AsyncSession, user_id: uuid.UUID) -> bool:
    user = await get_user(db, user_id)
    return user is not None and user.role == UserRole.ADMIN


async def assert_reconciled(db: AsyncSession, project_id: uuid.UUID) -> None:
    """Refuse to move money while a processor side effect on the project is unrecorded."""
    result = await db.execute(
        select(ReconciliationRecord.record_id)
        .where(
            ReconciliationRecord.project_id == project_id,
            ReconciliationRecord.status == ReconciliationStatus.OPEN,
        )
        .limit(1)
    )
    record_id = result.scalar_one_or_none()
    if record_id is not None:
        raise StateError(
            f"Project has an unreconciled payment ({record_id}); funds are frozen until it is reconciled"
        )
