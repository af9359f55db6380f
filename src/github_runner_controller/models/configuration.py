"""
Controller configuration models.

Every tunable the controller consumes is declared here with validation,
so a configuration file is rejected at load time rather than failing
halfway through a scaling cycle.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PositiveInt,
    SecretStr,
    field_validator,
    model_validator,
)

from .runner import RepositoryPool, normalize_labels

REPOSITORY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


class ReapPolicy(str, Enum):
    """
    Which idle dynamic runner to terminate when several are past their
    idle timeout.
    """

    OLDEST_LAST_BUSY = "oldest_last_busy"   # Coldest runner first (default)
    OLDEST_CREATED = "oldest_created"       # Longest-lived runner first
    NEWEST_CREATED = "newest_created"       # Most recently added runner first


class SecurityContext(BaseModel):
    """Container security context applied to every runner pod."""

    run_as_non_root: bool = True
    run_as_user: PositiveInt = 1001
    run_as_group: PositiveInt = 1001
    allow_privilege_escalation: bool = False
    capabilities_drop: List[str] = Field(default_factory=lambda: ["ALL"])
    seccomp_profile_type: str = "RuntimeDefault"


class ResourceRequirements(BaseModel):
    """CPU and memory requests/limits for a runner container."""

    cpu_request: str = "500m"
    cpu_limit: str = "2000m"
    memory_request: str = "1Gi"
    memory_limit: str = "2Gi"

    @field_validator("cpu_request", "cpu_limit")
    @classmethod
    def validate_cpu_format(cls, v: str) -> str:
        if not (v.endswith("m") or v.isdigit()):
            raise ValueError("CPU must be in millicores (e.g., '500m') or cores (e.g., '2')")
        return v

    @field_validator("memory_request", "memory_limit")
    @classmethod
    def validate_memory_format(cls, v: str) -> str:
        if not any(v.endswith(suffix) for suffix in ("Mi", "Gi", "Ki", "M", "G", "K")):
            raise ValueError("Memory must have a valid suffix (Mi, Gi, Ki, M, G, K)")
        return v


class RunnerProfile(BaseModel):
    """Image and resource shape shared by the runners of one or more pools."""

    name: str = Field(..., pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
    image: str = "ghcr.io/actions/actions-runner:2.319.1"
    labels: List[str] = Field(default_factory=lambda: ["self-hosted", "linux", "x64"])
    resources: ResourceRequirements = Field(default_factory=ResourceRequirements)
    security_context: SecurityContext = Field(default_factory=SecurityContext)
    environment_variables: Dict[str, str] = Field(default_factory=dict)

    @field_validator("labels", mode="before")
    @classmethod
    def validate_labels(cls, v: Any) -> List[str]:
        return normalize_labels(v)

    @field_validator("image")
    @classmethod
    def validate_image(cls, v: str) -> str:
        if v.endswith(":latest") or ":" not in v.split("/")[-1]:
            raise ValueError("Runner image must be pinned to an explicit tag")
        if "/" not in v:
            raise ValueError("Runner image must include a registry or organisation")
        return v


class PoolConfiguration(BaseModel):
    """Per-repository pool settings."""

    repository: str
    dedicated_runners: int = Field(default=1, ge=0, le=10)
    dynamic_ceiling: int = Field(default=3, ge=0, le=100)
    scale_up_threshold: float = Field(default=1.0, gt=0.0, le=1.0)
    idle_timeout: PositiveInt = Field(default=300, description="Seconds before an idle dynamic runner is reaped")
    cooldown: int = Field(default=60, ge=0, description="Seconds between scaling actions of one direction")
    labels: List[str] = Field(default_factory=list)
    blocked_job_types: List[str] = Field(default_factory=list)
    profile: Optional[str] = None

    @field_validator("repository")
    @classmethod
    def validate_repository(cls, v: str) -> str:
        if not REPOSITORY_PATTERN.match(v):
            raise ValueError("Repository must be in 'owner/name' form")
        return v

    @field_validator("labels", "blocked_job_types", mode="before")
    @classmethod
    def validate_labels(cls, v: Any) -> List[str]:
        return normalize_labels(v)

    def to_pool(self, default_profile: str) -> RepositoryPool:
        return RepositoryPool(
            repository=self.repository,
            dedicated_count=self.dedicated_runners,
            dynamic_ceiling=self.dynamic_ceiling,
            scale_up_threshold=self.scale_up_threshold,
            idle_timeout=float(self.idle_timeout),
            cooldown=float(self.cooldown),
            labels=self.labels,
            blocked_job_types=self.blocked_job_types,
            profile=self.profile or default_profile,
        )


class ScalingConfiguration(BaseModel):
    evaluation_interval: PositiveInt = Field(default=30, description="Seconds between scaling cycles")
    reap_policy: ReapPolicy = ReapPolicy.OLDEST_LAST_BUSY
    immediate_scale_up: bool = Field(
        default=True,
        description="Let the job router trigger a scale-up out of band instead of waiting for the next cycle",
    )


class CredentialConfiguration(BaseModel):
    refresh_fraction: float = Field(default=0.75, gt=0.0, lt=1.0)
    max_refresh_attempts: PositiveInt = Field(default=3, le=10)
    backoff_base: float = Field(default=5.0, gt=0)
    backoff_max: float = Field(default=60.0, gt=0)
    expiry_margin: float = Field(default=60.0, ge=0, description="Seconds before expiry by which refresh must settle")
    encryption_key: Optional[SecretStr] = Field(
        default=None,
        description="Fernet key for credentials at rest; generated per process when unset",
    )


class HealthConfiguration(BaseModel):
    heartbeat_interval: PositiveInt = 30
    miss_threshold: int = Field(default=2, ge=2)
    provisioning_timeout: PositiveInt = 600
    max_recovery_attempts: int = Field(default=1, ge=0)
    assignment_grace: PositiveInt = 60


class RoutingConfiguration(BaseModel):
    queue_poll_interval: PositiveInt = 15
    job_queue_timeout: PositiveInt = Field(default=24 * 3600, description="Platform-level queue timeout in seconds")


class GitHubConfiguration(BaseModel):
    """GitHub API endpoint and authentication."""

    model_config = ConfigDict(hide_input_in_errors=True)

    api_url: str = "https://api.github.com"
    token: SecretStr
    request_timeout: float = Field(default=10.0, gt=0)
    tls_verify: bool = True
    max_requests_per_minute: PositiveInt = 60

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        if not (v.startswith("https://") or v.startswith("http://")):
            raise ValueError("GitHub API URL must include protocol (https:// or http://)")
        if v.startswith("http://") and "localhost" not in v:
            raise ValueError("HTTP connections not allowed for non-localhost GitHub endpoints")
        return v.rstrip("/")


class KubernetesConfiguration(BaseModel):
    namespace: str = Field(default="github-runners", pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
    call_timeout: float = Field(default=20.0, gt=0)
    service_account: str = "github-runner"


class StorageConfiguration(BaseModel):
    database_url: str = "sqlite:///runner-controller.db"


class ControllerConfiguration(BaseModel):
    """Main controller configuration."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    github: GitHubConfiguration
    kubernetes: KubernetesConfiguration = Field(default_factory=KubernetesConfiguration)
    storage: StorageConfiguration = Field(default_factory=StorageConfiguration)
    default_profile: str = "default"
    profiles: Dict[str, RunnerProfile] = Field(default_factory=dict)
    pools: List[PoolConfiguration] = Field(default_factory=list)
    scaling: ScalingConfiguration = Field(default_factory=ScalingConfiguration)
    credentials: CredentialConfiguration = Field(default_factory=CredentialConfiguration)
    health: HealthConfiguration = Field(default_factory=HealthConfiguration)
    routing: RoutingConfiguration = Field(default_factory=RoutingConfiguration)
    monitoring_port: PositiveInt = 8080
    log_level: str = Field(default="INFO", pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    enable_metrics: bool = True

    @model_validator(mode="after")
    def validate_references(self) -> "ControllerConfiguration":
        if not self.profiles:
            self.profiles[self.default_profile] = RunnerProfile(name=self.default_profile)
        if self.default_profile not in self.profiles:
            raise ValueError(f"Default profile '{self.default_profile}' not found in profiles")

        seen = set()
        for pool in self.pools:
            if pool.repository in seen:
                raise ValueError(f"Repository '{pool.repository}' configured more than once")
            seen.add(pool.repository)
            if pool.profile and pool.profile not in self.profiles:
                raise ValueError(f"Pool '{pool.repository}' references unknown profile '{pool.profile}'")
        return self

    def profile_for(self, pool: RepositoryPool) -> RunnerProfile:
        return self.profiles.get(pool.profile) or self.profiles[self.default_profile]
