"""
Error kinds raised by the GitHub Runner Controller.

Local recovery (retries, re-registration) is preferred over surfacing
errors. Only capacity backpressure and unrecoverable instances are meant
to reach an operator.
"""

from enum import Enum
from typing import Optional


class RunnerControllerError(Exception):
    """Base class for all controller errors."""
    pass


class NotFound(RunnerControllerError):
    """Raised for unknown pools or instances. Never retried."""

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class UnknownRepository(NotFound):
    """The CI platform has no repository by that name, or hides it from the controller."""

    def __init__(self, repository: str) -> None:
        super().__init__("repository", repository)
        self.repository = repository


class TransientPlatformError(RunnerControllerError):
    """Rate limiting, timeouts or 5xx from the CI platform or container runtime."""
    pass


class PlatformAuthenticationError(RunnerControllerError):
    """Raised when the CI platform rejects the controller's credentials."""
    pass


class CredentialExhausted(RunnerControllerError):
    """Credential refresh ran out of attempts before the old credential expired."""

    def __init__(self, instance_id: str, attempts: int) -> None:
        super().__init__(
            f"Credential refresh for {instance_id} exhausted after {attempts} attempts"
        )
        self.instance_id = instance_id
        self.attempts = attempts


class CapacityExceeded(RunnerControllerError):
    """Scale-up requested while the pool is at its dynamic ceiling."""

    def __init__(self, repository: str, ceiling: int) -> None:
        super().__init__(f"Pool {repository} is at its dynamic ceiling ({ceiling})")
        self.repository = repository
        self.ceiling = ceiling


class UnrecoverableInstance(RunnerControllerError):
    """Instance kept failing health checks after recovery and was quarantined."""

    def __init__(self, instance_id: str, reason: str) -> None:
        super().__init__(f"Runner {instance_id} quarantined: {reason}")
        self.instance_id = instance_id
        self.reason = reason


class ConcurrencyConflict(RunnerControllerError):
    """A snapshot taken before an external call no longer matches the registry."""
    pass


class CreateFailure(str, Enum):
    """Why the container runtime refused to create a unit."""

    RESOURCE_EXHAUSTED = "resource_exhausted"   # Quota or capacity; retry later
    CONFIGURATION = "configuration"             # Bad spec; retrying will not help
    TRANSIENT = "transient"                     # Timeout or server error


class ContainerCreateError(RunnerControllerError):
    """Raised by the container driver when a unit cannot be created."""

    def __init__(self, failure: CreateFailure, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.failure = failure
        self.status = status

    @property
    def retryable(self) -> bool:
        return self.failure is not CreateFailure.CONFIGURATION
