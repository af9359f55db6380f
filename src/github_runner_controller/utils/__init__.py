"""
Utility modules for GitHub Runner Controller.

Security validation, the GitHub API client, the Kubernetes container
driver, per-instance timers and the status event channel.
"""

from .github_client import GitHubPlatformClient
from .kubernetes_client import KubernetesContainerDriver
from .security import CredentialCipher, RateLimiter, SecurityValidator
from .status_channel import StatusChannel
from .timers import InstanceTimers

__all__ = [
    "CredentialCipher",
    "GitHubPlatformClient",
    "InstanceTimers",
    "KubernetesContainerDriver",
    "RateLimiter",
    "SecurityValidator",
    "StatusChannel",
]
