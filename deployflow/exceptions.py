"""Error taxonomy for the deployment pipeline and its API surface."""
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse


class DeployFlowError(Exception):
    """Base exception for DeployFlow errors."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class FetchError(DeployFlowError):
    """Repository clone failed (bad URL, auth, network, timeout)."""


class BuildError(DeployFlowError):
    """A build command or image build exited unsuccessfully."""

    def __init__(
        self,
        message: str,
        command: Optional[str] = None,
        exit_code: Optional[int] = None,
        output: str = "",
    ) -> None:
        self.command = command
        self.exit_code = exit_code
        self.output = output
        super().__init__(
            message,
            details={"command": command, "exit_code": exit_code},
        )


class PublishError(DeployFlowError):
    """Object storage upload/list/delete failed."""


class ContainerError(DeployFlowError):
    """Container start, health or readiness failure."""

    def __init__(self, message: str, logs: str = "") -> None:
        self.logs = logs
        super().__init__(message)

    def __str__(self) -> str:
        if self.logs:
            return f"{self.message}\nLogs:\n{self.logs}"
        return self.message


class ProxyError(DeployFlowError):
    """Reverse proxy validation or reload failed."""


class PollTimeoutError(DeployFlowError):
    """A bounded poll ran out of time."""

    def __init__(self, description: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:g}s waiting for {description}")


class ConfigConflictError(DeployFlowError):
    """Subdomain is already taken."""

    status_code = 409


class DeploymentInProgressError(DeployFlowError):
    """A deployment is already running for this project."""

    status_code = 409

    def __init__(self, project_id: int) -> None:
        super().__init__(
            f"A deployment is already in progress for project {project_id}",
            details={"project_id": project_id},
        )


class ProjectNotFoundError(DeployFlowError):
    """Project does not exist (or is not visible to the caller)."""

    status_code = 404

    def __init__(self, project_id: int) -> None:
        super().__init__(
            f"Project with id '{project_id}' not found",
            details={"resource": "project", "id": project_id},
        )


async def deployflow_exception_handler(request: Request, exc: DeployFlowError) -> JSONResponse:
    """Render our exceptions as JSON error responses."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": exc.message,
                "details": exc.details,
            }
        },
    )
