"""
GitHub Runner Controller for Kubernetes.

Keeps a fleet of self-hosted GitHub Actions runners per repository:
a fixed set of dedicated runners plus dynamic runners that scale with
demand, with credential refresh, heartbeat supervision and job routing.

This package implements:
- Per-repository pools with dedicated and dynamic runners
- Scale-up on utilization or queued jobs, idle reaping with cooldowns
- Registration credential refresh and forced re-registration
- Heartbeat health checks, recovery and quarantine
- Label-aware job routing
"""

__version__ = "0.1.0"

from .controllers.runner_controller import GitHubRunnerController
from .models.configuration import ControllerConfiguration, RunnerProfile
from .models.runner import RunnerInstance, RunnerState

__all__ = [
    "ControllerConfiguration",
    "GitHubRunnerController",
    "RunnerInstance",
    "RunnerProfile",
    "RunnerState",
]
