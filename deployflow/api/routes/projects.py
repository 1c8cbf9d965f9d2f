"""Projects API endpoints.

Project configuration, deployment triggers, teardown and deployment logs.
"""
from fastapi import APIRouter, Depends, Response, status

from deployflow.api.dependencies import get_current_owner, get_orchestrator, get_store
from deployflow.schemas import (
    ContainerStatusResponse,
    DeploymentAccepted,
    DeploymentListResponse,
    DeploymentResponse,
    LogEntryResponse,
    ProjectCreate,
    ProjectListResponse,
    ProjectResponse,
    ProjectUpdate,
)
from deployflow.services.orchestrator import DeploymentOrchestrator
from deployflow.services.project_store import ProjectStore

router = APIRouter(prefix="/projects", tags=["Projects"])


@router.get("", response_model=ProjectListResponse)
async def list_projects(
    store: ProjectStore = Depends(get_store),
    owner_id: int = Depends(get_current_owner),
) -> ProjectListResponse:
    """List all projects of the current owner, newest first."""
    projects = await store.list_projects(owner_id)
    return ProjectListResponse(
        projects=[ProjectResponse.model_validate(p) for p in projects],
        total=len(projects),
    )


@router.post("", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
async def create_project(
    project_data: ProjectCreate,
    store: ProjectStore = Depends(get_store),
    owner_id: int = Depends(get_current_owner),
) -> ProjectResponse:
    """Create a new project.

    The subdomain is normalized before it is checked for uniqueness.

    Args:
        project_data: Project creation data
        store: Project store
        owner_id: Authenticated owner

    Returns:
        Created project
    """
    project = await store.create_project(owner_id, project_data)
    return ProjectResponse.model_validate(project)


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: int,
    store: ProjectStore = Depends(get_store),
    owner_id: int = Depends(get_current_owner),
) -> ProjectResponse:
    """Get a project with its current deployment."""
    project = await store.get_project(project_id, owner_id)
    return ProjectResponse.model_validate(project)


@router.patch("/{project_id}", response_model=ProjectResponse)
async def update_project(
    project_id: int,
    project_data: ProjectUpdate,
    store: ProjectStore = Depends(get_store),
    owner_id: int = Depends(get_current_owner),
) -> ProjectResponse:
    """Edit project configuration. Changes apply on the next deployment."""
    project = await store.update_project(project_id, owner_id, project_data)
    return ProjectResponse.model_validate(project)


@router.delete("/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_project(
    project_id: int,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
    owner_id: int = Depends(get_current_owner),
) -> Response:
    """Tear down a project's published artifacts, then delete it."""
    await orchestrator.delete(project_id, owner_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{project_id}/deploy", response_model=DeploymentAccepted, status_code=status.HTTP_202_ACCEPTED)
async def deploy_project(
    project_id: int,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
    owner_id: int = Depends(get_current_owner),
) -> DeploymentAccepted:
    """Start a deployment. Progress is reported through the log and status events.

    Returns:
        Acknowledgment with the new deployment id

    Raises:
        409 if a deployment is already running for the project
    """
    return await orchestrator.deploy(project_id, owner_id)


@router.post("/{project_id}/stop", response_model=ProjectResponse)
async def stop_project(
    project_id: int,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
    owner_id: int = Depends(get_current_owner),
) -> ProjectResponse:
    """Tear down a project's published artifacts and mark it stopped."""
    project = await orchestrator.stop(project_id, owner_id)
    return ProjectResponse.model_validate(project)


@router.get("/{project_id}/logs", response_model=list[LogEntryResponse])
async def get_deployment_logs(
    project_id: int,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
    owner_id: int = Depends(get_current_owner),
) -> list[LogEntryResponse]:
    """Log entries of the current deployment, oldest first."""
    entries = await orchestrator.get_logs(project_id, owner_id)
    return [LogEntryResponse.model_validate(entry) for entry in entries]


@router.get("/{project_id}/deployments", response_model=DeploymentListResponse)
async def list_deployments(
    project_id: int,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
    owner_id: int = Depends(get_current_owner),
) -> DeploymentListResponse:
    """Deployment history of a project, oldest first."""
    deployments = await orchestrator.list_deployments(project_id, owner_id)
    return DeploymentListResponse(
        deployments=[DeploymentResponse.model_validate(d) for d in deployments],
        total=len(deployments),
    )


@router.get("/{project_id}/container", response_model=ContainerStatusResponse)
async def get_container_status(
    project_id: int,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
    owner_id: int = Depends(get_current_owner),
) -> ContainerStatusResponse:
    """Live status and recent output of a server project's container."""
    return await orchestrator.container_status(project_id, owner_id)
