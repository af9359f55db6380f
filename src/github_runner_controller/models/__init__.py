"""
Data models for GitHub Runner Controller.

Runner, pool and credential records plus the validated configuration
surface.
"""

from .configuration import ControllerConfiguration, PoolConfiguration, ReapPolicy
from .runner import (
    Credential,
    JobRequest,
    RepositoryPool,
    RunnerInstance,
    RunnerKind,
    RunnerState,
    ScalingEvent,
)

__all__ = [
    "ControllerConfiguration",
    "Credential",
    "JobRequest",
    "PoolConfiguration",
    "ReapPolicy",
    "RepositoryPool",
    "RunnerInstance",
    "RunnerKind",
    "RunnerState",
    "ScalingEvent",
]
