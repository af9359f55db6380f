"""
Security utilities for GitHub Runner Controller.

Client-side rate limiting for platform calls, validation of names, labels
and pod specifications handed to Kubernetes, and at-rest encryption of
runner credentials.
"""

import time
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional

import structlog
from cryptography.fernet import Fernet, InvalidToken


class SecurityError(Exception):
    """Raised when security validation fails."""
    pass


class RateLimiter:
    """
    Sliding-window rate limiter.

    Keeps the controller inside the CI platform's API budget; callers treat
    a refusal as a transient failure and retry on their own schedule.
    """

    def __init__(self, max_requests: int = 60, window_seconds: int = 60) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.requests: Dict[str, Deque[float]] = defaultdict(deque)
        self.logger = structlog.get_logger().bind(component="rate_limiter")

    def allow_request(self, identifier: str, weight: int = 1) -> bool:
        """Record and allow a request unless it would exceed the window budget."""
        now = time.monotonic()
        request_times = self._prune(identifier, now)

        if len(request_times) + weight > self.max_requests:
            self.logger.warning(
                "Rate limit reached",
                identifier=identifier,
                max_requests=self.max_requests,
                window_seconds=self.window_seconds,
            )
            return False

        for _ in range(weight):
            request_times.append(now)
        return True

    def _prune(self, identifier: str, now: float) -> Deque[float]:
        request_times = self.requests[identifier]
        window_start = now - self.window_seconds
        while request_times and request_times[0] < window_start:
            request_times.popleft()
        return request_times


class SecurityValidator:
    """Validates values and pod specifications before they reach Kubernetes."""

    DANGEROUS_MOUNTS = ("/var/run/docker.sock", "/dev", "/proc", "/sys")
    DANGEROUS_CHARS = ("<", ">", "&", '"', "'", "`", "$", "\x00")

    def __init__(self) -> None:
        self.logger = structlog.get_logger().bind(component="security_validator")

    def sanitize_input(self, input_str: str, max_length: int = 1000) -> str:
        """Strip characters that have no business in names, labels or URLs."""
        if not isinstance(input_str, str):
            raise SecurityError("Input must be a string")

        if len(input_str) > max_length:
            self.logger.warning(
                "Input truncated due to excessive length",
                original_length=len(input_str),
                max_length=max_length,
            )
            input_str = input_str[:max_length]

        for char in self.DANGEROUS_CHARS:
            input_str = input_str.replace(char, "")
        input_str = "".join(char for char in input_str if ord(char) >= 32 or char in "\t\n\r")
        return input_str.strip()

    def kubernetes_name(self, *parts: str, max_length: int = 63) -> str:
        """Build a DNS-1123 compatible resource name from arbitrary parts."""
        raw = "-".join(part for part in parts if part)
        name = "".join(char if char.isalnum() else "-" for char in raw.lower())
        while "--" in name:
            name = name.replace("--", "-")
        name = name[:max_length].strip("-")
        if not self.validate_kubernetes_name(name):
            raise SecurityError(f"Cannot derive a valid Kubernetes name from {raw!r}")
        return name

    def validate_kubernetes_name(self, name: str) -> bool:
        """Validate DNS-1123 label format."""
        if not name or len(name) > 63:
            return False
        if not (name[0].isalnum() and name[-1].isalnum()):
            return False
        return all(char.islower() or char.isdigit() or char == "-" for char in name)

    def validate_label_value(self, value: str) -> bool:
        """Kubernetes label values: <= 63 chars, alphanumerics plus -_. inside."""
        if len(value) > 63:
            return False
        if not value:
            return True
        if not (value[0].isalnum() and value[-1].isalnum()):
            return False
        return all(char.isalnum() or char in "-_." for char in value)

    def validate_pod_spec(self, pod_spec: Dict[str, Any]) -> List[str]:
        """Return hardening issues found in a pod manifest."""
        issues = []
        spec = pod_spec.get("spec", {})

        if spec.get("hostNetwork", False):
            issues.append("Pod uses host network")
        if spec.get("hostPID", False):
            issues.append("Pod uses host PID namespace")
        if spec.get("hostIPC", False):
            issues.append("Pod uses host IPC namespace")

        for container in spec.get("containers", []):
            name = container.get("name", "unknown")
            security_context = container.get("securityContext", {})
            if security_context.get("privileged", False):
                issues.append(f"Privileged container: {name}")
            if security_context.get("allowPrivilegeEscalation", False):
                issues.append(f"Privilege escalation allowed in container: {name}")
            for mount in container.get("volumeMounts", []):
                if mount.get("mountPath", "") in self.DANGEROUS_MOUNTS:
                    issues.append(f"Dangerous volume mount: {mount['mountPath']}")
            for env in container.get("env", []):
                if "value" in env and "token" in env.get("name", "").lower():
                    issues.append(f"Plain-text credential in environment: {env['name']}")

        return issues


class CredentialCipher:
    """
    Fernet encryption for credential values persisted in the state store.

    Without a configured key a fresh one is generated, which makes stored
    credentials unreadable after a restart; those runners get a fresh
    credential when the controller restores them.
    """

    def __init__(self, key: Optional[str] = None) -> None:
        self.ephemeral = key is None
        self._fernet = Fernet(key.encode() if key else Fernet.generate_key())

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> Optional[str]:
        """Decrypt a stored value, or None if it was written under another key."""
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken:
            return None
