"""Project-related Pydantic schemas."""
import re
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from deployflow.models.project import BuildMode, ProjectStatus
from deployflow.schemas.deployment import DeploymentResponse
from deployflow.services.domain.subdomain import is_safe_relative_path, normalize_subdomain

ENV_VAR_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Injected by the runtime; users cannot override them
RESERVED_ENV_VARS = {"PORT", "PROJECT_ID"}


def _normalized_subdomain(value: str) -> str:
    normalized = normalize_subdomain(value)
    if not normalized:
        raise ValueError("subdomain must contain at least one letter or digit")
    return normalized


def _checked_directory(value: str) -> str:
    if not is_safe_relative_path(value):
        raise ValueError("must be a relative path inside the repository")
    return value


def _checked_env_vars(value: Dict[str, str]) -> Dict[str, str]:
    for name in value:
        if not ENV_VAR_NAME.match(name):
            raise ValueError(f"invalid environment variable name: {name!r}")
        if name in RESERVED_ENV_VARS:
            raise ValueError(f"{name} is set by the platform and cannot be overridden")
    return value


class ProjectCreate(BaseModel):
    """Schema for creating a new project."""

    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    repo_url: str = Field(..., min_length=1, max_length=500)
    subdomain: str = Field(..., min_length=1, max_length=255)
    build_mode: BuildMode
    root_directory: str = "."
    build_command: str = Field("npm run build", min_length=1, max_length=1000)
    start_command: Optional[str] = Field(None, max_length=1000)
    publish_directory: str = "dist"
    env_vars: Dict[str, str] = Field(default_factory=dict)

    @field_validator("subdomain")
    @classmethod
    def normalize(cls, v: str) -> str:
        return _normalized_subdomain(v)

    @field_validator("root_directory", "publish_directory")
    @classmethod
    def check_directory(cls, v: str) -> str:
        return _checked_directory(v)

    @field_validator("env_vars")
    @classmethod
    def check_env_vars(cls, v: Dict[str, str]) -> Dict[str, str]:
        return _checked_env_vars(v)

    @model_validator(mode="after")
    def drop_server_only_fields(self) -> "ProjectCreate":
        """Environment variables and start command only apply to server mode."""
        if self.build_mode == BuildMode.STATIC:
            self.env_vars = {}
            self.start_command = None
        return self


class ProjectUpdate(BaseModel):
    """Schema for editing project configuration."""

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    repo_url: Optional[str] = Field(None, min_length=1, max_length=500)
    subdomain: Optional[str] = Field(None, min_length=1, max_length=255)
    build_mode: Optional[BuildMode] = None
    root_directory: Optional[str] = None
    build_command: Optional[str] = Field(None, min_length=1, max_length=1000)
    start_command: Optional[str] = Field(None, max_length=1000)
    publish_directory: Optional[str] = None
    env_vars: Optional[Dict[str, str]] = None

    @field_validator("subdomain")
    @classmethod
    def normalize(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else _normalized_subdomain(v)

    @field_validator("root_directory", "publish_directory")
    @classmethod
    def check_directory(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else _checked_directory(v)

    @field_validator("env_vars")
    @classmethod
    def check_env_vars(cls, v: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
        return None if v is None else _checked_env_vars(v)


class ProjectResponse(BaseModel):
    """Schema for project API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: int
    name: str
    description: Optional[str] = None
    repo_url: str
    subdomain: str
    build_mode: BuildMode
    root_directory: str
    build_command: str
    start_command: Optional[str] = None
    publish_directory: str
    env_var_names: List[str] = Field(default_factory=list)
    status: ProjectStatus
    deploy_url: Optional[str] = None
    current_deployment: Optional[DeploymentResponse] = None
    created_at: datetime
    updated_at: datetime


class ProjectListResponse(BaseModel):
    """Schema for project list response."""

    projects: List[ProjectResponse]
    total: int
