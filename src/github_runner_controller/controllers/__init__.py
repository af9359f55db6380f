"""
Controller components for GitHub Runner Controller.

The pool registry owns runner records; the provisioner, token manager,
health supervisor, scaling engine and job router act on them, and the
runner controller wires them together.
"""

from .health_supervisor import HealthSupervisor
from .job_router import JobRouter
from .pool_registry import PoolRegistry
from .provisioner import RunnerProvisioner
from .runner_controller import GitHubRunnerController
from .scaling_engine import ScalingDecisionEngine
from .token_manager import TokenLifecycleManager

__all__ = [
    "GitHubRunnerController",
    "HealthSupervisor",
    "JobRouter",
    "PoolRegistry",
    "RunnerProvisioner",
    "ScalingDecisionEngine",
    "TokenLifecycleManager",
]
