"""Project, milestone editing, application and project-escrow endpoints."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.auth.middleware import Principal, get_principal
from marketplace.auth.rate_limit import check_rate_limit
from marketplace.database import get_db
from marketplace.errors import AuthorizationError
from marketplace.schemas.escrow import EscrowResponse
from marketplace.schemas.project import (
    ApplicationApproval,
    ApplicationCreate,
    ApplicationResponse,
    MilestoneCreate,
    MilestoneUpdate,
    ProjectCancellation,
    ProjectCreate,
    ProjectRejection,
    ProjectResponse,
)
from marketplace.services import escrow as escrow_service
from marketplace.services import milestone as milestone_service
from marketplace.services import project as project_service
from marketplace.services.gateway import PaymentGateway, get_gateway

router = APIRouter(prefix="/projects", tags=["projects"])


@router.post("", response_model=ProjectResponse, status_code=201, dependencies=[Depends(check_rate_limit)])
async def create_project(
    data: ProjectCreate,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> ProjectResponse:
    """Employer posts a project. Milestone amounts must add up to the budget."""
    project = await project_service.create_project(db, auth.user_id, data)
    return ProjectResponse.model_validate(project)


@router.get("/{project_id}", response_model=ProjectResponse, dependencies=[Depends(check_rate_limit)])
async def get_project(
    project_id: uuid.UUID,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> ProjectResponse:
    project = await project_service.get_project(db, project_id)
    return ProjectResponse.model_validate(project)


@router.post("/{project_id}/milestones", response_model=ProjectResponse, status_code=201, dependencies=[Depends(check_rate_limit)])
async def add_milestone(
    project_id: uuid.UUID,
    data: MilestoneCreate,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> ProjectResponse:
    """Add a milestone to an open project. The budget follows the milestone total."""
    project = await milestone_service.add_milestone(db, project_id, auth.user_id, data)
    return ProjectResponse.model_validate(project)


@router.patch("/{project_id}/milestones/{milestone_id}", response_model=ProjectResponse, dependencies=[Depends(check_rate_limit)])
async def update_milestone(
    project_id: uuid.UUID,
    milestone_id: uuid.UUID,
    data: MilestoneUpdate,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> ProjectResponse:
    project = await milestone_service.update_milestone(db, project_id, milestone_id, auth.user_id, data)
    return ProjectResponse.model_validate(project)


@router.delete("/{project_id}/milestones/{milestone_id}", response_model=ProjectResponse, dependencies=[Depends(check_rate_limit)])
async def remove_milestone(
    project_id: uuid.UUID,
    milestone_id: uuid.UUID,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> ProjectResponse:
    project = await milestone_service.remove_milestone(db, project_id, milestone_id, auth.user_id)
    return ProjectResponse.model_validate(project)


@router.post("/{project_id}/applications", response_model=ApplicationResponse, status_code=201, dependencies=[Depends(check_rate_limit)])
async def apply(
    project_id: uuid.UUID,
    data: ApplicationCreate,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> ApplicationResponse:
    """Freelancer applies to an open project."""
    application = await project_service.apply(db, project_id, auth.user_id, data)
    return ApplicationResponse.model_validate(application)


@router.get("/{project_id}/applications", response_model=list[ApplicationResponse], dependencies=[Depends(check_rate_limit)])
async def list_applications(
    project_id: uuid.UUID,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> list[ApplicationResponse]:
    applications = await project_service.list_applications(db, project_id, auth.user_id)
    return [ApplicationResponse.model_validate(a) for a in applications]


@router.post("/{project_id}/applications/{application_id}/approve", response_model=ApplicationApproval, dependencies=[Depends(check_rate_limit)])
async def approve_application(
    project_id: uuid.UUID,
    application_id: uuid.UUID,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> ApplicationApproval:
    """Assign the freelancer and create the escrow.

    If the processor is unavailable the assignment still stands and
    ``escrow_error`` explains why; POST /projects/{id}/escrow retries it.
    """
    project, escrow, escrow_error = await project_service.approve_application(
        db, project_id, application_id, auth.user_id, gateway
    )
    return ApplicationApproval(
        project=ProjectResponse.model_validate(project),
        escrow=EscrowResponse.for_viewer(escrow, auth.user_id, project.employer_id) if escrow is not None else None,
        escrow_error=escrow_error,
    )


@router.post("/{project_id}/applications/{application_id}/reject", response_model=ApplicationResponse, dependencies=[Depends(check_rate_limit)])
async def reject_application(
    project_id: uuid.UUID,
    application_id: uuid.UUID,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> ApplicationResponse:
    application = await project_service.reject_application(db, project_id, application_id, auth.user_id)
    return ApplicationResponse.model_validate(application)


@router.post("/{project_id}/reject", response_model=ProjectResponse, dependencies=[Depends(check_rate_limit)])
async def reject_project(
    project_id: uuid.UUID,
    data: ProjectRejection,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> ProjectResponse:
    """Employer rejects an assigned project; held funds are refunded."""
    project = await project_service.reject(db, project_id, auth.user_id, data.reason, gateway)
    return ProjectResponse.model_validate(project)


@router.post("/{project_id}/cancel", response_model=ProjectResponse, dependencies=[Depends(check_rate_limit)])
async def cancel_project(
    project_id: uuid.UUID,
    data: ProjectCancellation | None = None,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> ProjectResponse:
    reason = data.reason if data is not None else None
    project = await project_service.cancel(db, project_id, auth.user_id, reason)
    return ProjectResponse.model_validate(project)


@router.post("/{project_id}/escrow", response_model=EscrowResponse, status_code=201, dependencies=[Depends(check_rate_limit)])
async def create_escrow(
    project_id: uuid.UUID,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> EscrowResponse:
    """Create (or return the existing) escrow for an assigned project."""
    escrow = await escrow_service.create_escrow(db, project_id, gateway, auth.user_id)
    project = await project_service.get_project(db, project_id)
    return EscrowResponse.for_viewer(escrow, auth.user_id, project.employer_id)


@router.get("/{project_id}/escrow", response_model=EscrowResponse, dependencies=[Depends(check_rate_limit)])
async def get_project_escrow(
    project_id: uuid.UUID,
    auth: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> EscrowResponse:
    """Escrow details. Only the project's participants and administrators can view them."""
    project = await project_service.get_project(db, project_id)
    if not project.is_participant(auth.user_id) and not auth.is_admin:
        raise AuthorizationError("Not a party to this project")
    escrow = await escrow_service.get_escrow_for_project(db, project_id)
    return EscrowResponse.for_viewer(escrow, auth.user_id, project.employer_id)
