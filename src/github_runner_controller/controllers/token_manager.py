"""
Token lifecycle management for GitHub Runner Controller.

Every runner holds a time-limited registration credential. A per-instance
timer refreshes it at a fixed fraction of its lifetime; when refresh keeps
failing until the credential is about to expire the runner is forcibly
re-registered (destroyed and recreated with a fresh credential).
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from ..exceptions import (
    ConcurrencyConflict,
    CredentialExhausted,
    NotFound,
    PlatformAuthenticationError,
    RunnerControllerError,
    TransientPlatformError,
)
from ..metrics import CREDENTIAL_REFRESHES
from ..models.configuration import CredentialConfiguration
from ..models.runner import Credential, RunnerInstance, RunnerState, ScalingReason, utcnow
from ..utils.timers import InstanceTimers
from .pool_registry import PoolRegistry

REFRESH_TIMER = "credential-refresh"

# Refreshing a credential makes no sense once the runner is on its way out
NON_REFRESHABLE_STATES = frozenset({RunnerState.DRAINING, RunnerState.TERMINATED})

RecoveryCallback = Callable[[str, ScalingReason], Awaitable[Any]]


class TokenLifecycleManager:
    """Issues registration credentials and keeps them fresh."""

    def __init__(self,
                 registry: PoolRegistry,
                 platform: Any,
                 driver: Any,
                 timers: InstanceTimers,
                 config: CredentialConfiguration,
                 clock: Callable[[], datetime] = utcnow,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 logger: Any = None) -> None:
        self.registry = registry
        self.platform = platform
        self.driver = driver
        self.timers = timers
        self.config = config
        self.clock = clock
        self._sleep = sleep
        self._recover: Optional[RecoveryCallback] = None
        self.logger = (logger or structlog.get_logger()).bind(component="token_manager")

    def bind_recovery(self, recover: RecoveryCallback) -> None:
        """Set the callback used to force re-registration of an instance."""
        self._recover = recover

    async def issue(self, repository: str, runner_name: str) -> Credential:
        """
        Issue a fresh credential, retrying transient failures with backoff.

        Raises:
            TransientPlatformError: every attempt failed
            PlatformAuthenticationError: the platform rejected the controller
        """
        credential = await self._issue_with_backoff(repository, runner_name, deadline=None)
        if credential is None:
            raise TransientPlatformError(
                f"Could not issue a credential for {runner_name} after {self.config.max_refresh_attempts} attempts"
            )
        return credential

    def schedule(self, instance: RunnerInstance) -> None:
        """Arm the refresh timer for an instance's current credential."""
        if instance.credential is None:
            return
        due = instance.credential.refresh_due_at(self.config.refresh_fraction)
        delay = max(0.0, (due - self.clock()).total_seconds())
        self.timers.schedule(
            instance.id,
            REFRESH_TIMER,
            delay,
            lambda instance_id=instance.id: self.refresh(instance_id),
        )
        self.logger.debug(
            "Credential refresh scheduled",
            instance_id=instance.id,
            refresh_in=round(delay, 1),
            expires_at=instance.credential.expires_at.isoformat(),
        )

    def cancel(self, instance_id: str) -> None:
        self.timers.cancel(instance_id, REFRESH_TIMER)

    async def restore(self, instance: RunnerInstance) -> None:
        """
        Re-arm refresh for an instance loaded from the store.

        A running instance whose stored credential could not be decrypted
        gets a fresh one right away.
        """
        if instance.credential is not None:
            self.schedule(instance)
            return
        if instance.handle is None or instance.quarantined:
            return

        self.logger.warning("Instance has no readable credential, reissuing", instance_id=instance.id)
        try:
            credential = await self.issue(instance.repository, instance.runner_name)
            updated = await self.registry.update_instance(
                instance.id,
                expected_generation=instance.generation,
                credential=credential,
            )
            await self.driver.rotate_credential(updated.handle, credential)
        except RunnerControllerError as e:
            self.logger.error("Credential reissue failed, forcing re-registration", instance_id=instance.id, error=str(e))
            await self._force_reregistration(instance.id)
            return
        self.schedule(updated)

    async def refresh(self, instance_id: str) -> bool:
        """
        Refresh one instance's credential.

        Returns True when a new credential was installed. Exhaustion forces
        re-registration through the recovery callback.
        """
        instance = await self.registry.find_instance(instance_id)
        if instance is None or instance.credential is None:
            return False
        if instance.quarantined or instance.state in NON_REFRESHABLE_STATES:
            self.logger.debug("Skipping credential refresh", instance_id=instance_id, state=instance.state.value)
            return False

        try:
            credential = await self._refresh_or_exhaust(instance)
        except CredentialExhausted as e:
            CREDENTIAL_REFRESHES.labels(result="exhausted").inc()
            self.logger.error(
                "Credential refresh exhausted, forcing re-registration",
                instance_id=instance_id,
                attempts=e.attempts,
            )
            await self._force_reregistration(instance_id)
            return False

        try:
            updated = await self.registry.update_instance(
                instance_id,
                expected_generation=instance.generation,
                credential=credential,
            )
        except (ConcurrencyConflict, NotFound):
            # Instance was recreated or removed meanwhile; its new life has its own credential
            self.logger.info("Discarding refreshed credential for changed instance", instance_id=instance_id)
            return False

        if updated.handle is not None:
            try:
                await self.driver.rotate_credential(updated.handle, credential)
            except TransientPlatformError as e:
                self.logger.warning("Failed to push refreshed credential", instance_id=instance_id, error=str(e))

        CREDENTIAL_REFRESHES.labels(result="success").inc()
        self.logger.info(
            "Credential refreshed",
            instance_id=instance_id,
            expires_at=credential.expires_at.isoformat(),
        )
        self.schedule(updated)
        return True

    def status(self, instances: List[RunnerInstance]) -> Dict[str, Dict[str, Any]]:
        """Per-instance credential expiry and whether a refresh is due."""
        now = self.clock()
        report = {}
        for instance in instances:
            credential = instance.credential
            if credential is None:
                report[instance.id] = {"has_credential": False}
                continue
            report[instance.id] = {
                "has_credential": True,
                "expires_at": credential.expires_at.isoformat(),
                "refresh_due": now >= credential.refresh_due_at(self.config.refresh_fraction),
                "expired": credential.is_expired(now),
                "refresh_scheduled": self.timers.is_scheduled(instance.id, REFRESH_TIMER),
            }
        return report

    async def _refresh_or_exhaust(self, instance: RunnerInstance) -> Credential:
        deadline = instance.credential.expires_at - timedelta(seconds=self.config.expiry_margin)
        try:
            credential = await self._issue_with_backoff(instance.repository, instance.runner_name, deadline)
        except (PlatformAuthenticationError, NotFound):
            credential = None
        if credential is None:
            raise CredentialExhausted(instance.id, self.config.max_refresh_attempts)
        return credential

    async def _issue_with_backoff(self,
                                  repository: str,
                                  runner_name: str,
                                  deadline: Optional[datetime]) -> Optional[Credential]:
        """
        Try up to ``max_refresh_attempts`` times with exponential backoff.

        Stops early when the next wait would end past ``deadline``. Returns
        None when every attempt failed.
        """
        for attempt in range(self.config.max_refresh_attempts):
            try:
                return await self.platform.issue_registration_token(repository, runner_name)
            except TransientPlatformError as e:
                CREDENTIAL_REFRESHES.labels(result="retry").inc()
                delay = min(self.config.backoff_base * 2 ** attempt, self.config.backoff_max)
                self.logger.warning(
                    "Credential issue failed",
                    repository=repository,
                    runner_name=runner_name,
                    attempt=attempt + 1,
                    max_attempts=self.config.max_refresh_attempts,
                    error=str(e),
                )
                if attempt + 1 >= self.config.max_refresh_attempts:
                    break
                if deadline is not None and self.clock() + timedelta(seconds=delay) >= deadline:
                    self.logger.warning(
                        "Credential expiry too close for another attempt",
                        runner_name=runner_name,
                        deadline=deadline.isoformat(),
                    )
                    break
                await self._sleep(delay)
        return None

    async def _force_reregistration(self, instance_id: str) -> None:
        if self._recover is None:
            self.logger.error("No recovery callback bound, cannot re-register", instance_id=instance_id)
            return
        try:
            await self._recover(instance_id, ScalingReason.FORCED_RECREATE)
        except RunnerControllerError as e:
            self.logger.error("Forced re-registration failed", instance_id=instance_id, error=str(e))
