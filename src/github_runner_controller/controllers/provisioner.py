"""
Runner provisioning for GitHub Runner Controller.

Create, destroy and recreate paths shared by the scaling engine, the
health supervisor and the token manager. No registry lock is held while
the platform or the container runtime is called: a record is reserved
under the lock, the lock is released for the external call, then the
record is re-validated on ``generation`` before the result is committed.
"""

import secrets
import time
from datetime import datetime
from typing import Any, Callable, List, Optional, Set

import structlog

from ..exceptions import (
    ConcurrencyConflict,
    ContainerCreateError,
    NotFound,
    PlatformAuthenticationError,
    RunnerControllerError,
    TransientPlatformError,
    UnknownRepository,
)
from ..metrics import RUNNER_LIFECYCLE_DURATION, RUNNER_OPERATIONS, SCALING_DECISIONS
from ..models.configuration import ControllerConfiguration
from ..models.runner import (
    ContainerHandle,
    ContainerSpec,
    EventOutcome,
    RepositoryPool,
    RunnerInstance,
    RunnerKind,
    RunnerState,
    ScalingEvent,
    ScalingReason,
    normalize_labels,
    utcnow,
)
from .pool_registry import PoolRegistry, PoolTransaction

ReadyHook = Callable[[RunnerInstance], None]
RemovedHook = Callable[[str], None]

# Base labels every runner advertises, matching GitHub's self-hosted defaults
BASE_LABELS = ["self-hosted", "linux", "x64"]


class RunnerProvisioner:
    """Launches, tears down and recreates runner containers."""

    def __init__(self,
                 registry: PoolRegistry,
                 platform: Any,
                 driver: Any,
                 token_manager: Any,
                 config: ControllerConfiguration,
                 clock: Callable[[], datetime] = utcnow,
                 logger: Any = None) -> None:
        self.registry = registry
        self.platform = platform
        self.driver = driver
        self.token_manager = token_manager
        self.config = config
        self.clock = clock
        self.logger = (logger or structlog.get_logger()).bind(component="provisioner")

        self._ready_hooks: List[ReadyHook] = []
        self._removed_hooks: List[RemovedHook] = []
        self._launching: Set[str] = set()

    def add_listener(self, on_ready: Optional[ReadyHook] = None, on_removed: Optional[RemovedHook] = None) -> None:
        """Register callbacks fired when a runner is launched or about to be removed."""
        if on_ready is not None:
            self._ready_hooks.append(on_ready)
        if on_removed is not None:
            self._removed_hooks.append(on_removed)

    def labels_for(self, pool: RepositoryPool, kind: RunnerKind) -> List[str]:
        profile = self.config.profile_for(pool)
        return normalize_labels(BASE_LABELS + profile.labels + pool.labels + [kind.value, pool.short_name])

    def reserve(self, tx: PoolTransaction, kind: RunnerKind, slot: Optional[int] = None) -> RunnerInstance:
        """Add a provisioning record to ``tx``; the container is created by ``launch``."""
        instance = RunnerInstance(
            repository=tx.repository,
            kind=kind,
            slot=slot,
            labels=self.labels_for(tx.pool, kind),
            blocked_job_types=tx.pool.blocked_job_types,
            created_at=self.clock(),
        )
        instance.runner_name = self._runner_name(tx.pool, instance)
        return tx.add(instance)

    async def launch(self, instance_id: str, reason: ScalingReason) -> RunnerInstance:
        """
        Issue a credential and create the container for a provisioning record.

        Raises:
            ConcurrencyConflict: the record changed while the container was
                being created (the new container is destroyed again)
            TransientPlatformError: no credential could be issued
            ContainerCreateError: the runtime refused the container
        """
        if instance_id in self._launching:
            raise ConcurrencyConflict(f"Instance {instance_id} is already being launched")

        self._launching.add(instance_id)
        try:
            return await self._launch(instance_id, reason)
        finally:
            self._launching.discard(instance_id)

    async def _launch(self, instance_id: str, reason: ScalingReason) -> RunnerInstance:
        instance = await self.registry.get_instance(instance_id)
        if instance.state != RunnerState.PROVISIONING or instance.handle is not None:
            raise ConcurrencyConflict(f"Instance {instance_id} is not awaiting a container")

        generation = instance.generation
        pool = await self.registry.get_pool(instance.repository)
        profile = self.config.profile_for(pool)
        started = time.monotonic()

        try:
            credential = await self.token_manager.issue(instance.repository, instance.runner_name)
            handle = await self.driver.create(ContainerSpec(
                name=instance.runner_name,
                instance_id=instance.id,
                repository=instance.repository,
                kind=instance.kind,
                image=profile.image,
                labels=instance.labels,
                credential=credential,
                profile=profile.name,
            ))
        except (TransientPlatformError, PlatformAuthenticationError, UnknownRepository, ContainerCreateError) as e:
            await self._launch_failed(instance, reason, e)
            raise

        now = self.clock()
        try:
            async with self.registry.transaction(instance.repository) as tx:
                current = tx.find(instance_id)
                if current is None or current.generation != generation or current.state != RunnerState.PROVISIONING:
                    raise ConcurrencyConflict(f"Instance {instance_id} changed while its container was created")
                current.handle = handle
                current.credential = credential
                current.provisioned_at = now
                tx.record(ScalingEvent(
                    repository=instance.repository,
                    action=reason.launch_action,
                    reason=reason,
                    instance_id=instance_id,
                    timestamp=now,
                ))
                if reason.counts_toward_cooldown:
                    tx.pool.last_scale_up_at = now
                launched = current.model_copy(deep=True)
        except ConcurrencyConflict:
            self.logger.warning("Discarding container of a changed record", instance_id=instance_id)
            await self._destroy_quietly(handle)
            raise

        RUNNER_OPERATIONS.labels(operation="create", result="success", kind=instance.kind.value).inc()
        RUNNER_LIFECYCLE_DURATION.labels(phase="provision", kind=instance.kind.value).observe(
            time.monotonic() - started
        )
        SCALING_DECISIONS.labels(
            repository=instance.repository,
            direction=reason.launch_action.value,
            reason=reason.value,
            outcome=EventOutcome.SUCCEEDED.value,
        ).inc()
        self.logger.info(
            "Runner launched",
            instance_id=instance_id,
            repository=instance.repository,
            kind=instance.kind.value,
            runner_name=instance.runner_name,
            reason=reason.value,
        )

        for hook in self._ready_hooks:
            hook(launched)
        return launched

    async def _launch_failed(self, instance: RunnerInstance, reason: ScalingReason, error: Exception) -> None:
        RUNNER_OPERATIONS.labels(operation="create", result="failure", kind=instance.kind.value).inc()
        SCALING_DECISIONS.labels(
            repository=instance.repository,
            direction=reason.launch_action.value,
            reason=reason.value,
            outcome=EventOutcome.FAILED.value,
        ).inc()
        self.logger.error(
            "Runner launch failed",
            instance_id=instance.id,
            repository=instance.repository,
            kind=instance.kind.value,
            error=str(error),
        )

        async with self.registry.transaction(instance.repository) as tx:
            tx.record(ScalingEvent(
                repository=instance.repository,
                action=reason.launch_action,
                reason=reason,
                outcome=EventOutcome.FAILED,
                instance_id=instance.id,
                detail=str(error)[:500],
                timestamp=self.clock(),
            ))
            current = tx.find(instance.id)
            # Dedicated slots stay reserved and are relaunched by ensure_dedicated
            if current is not None and current.kind == RunnerKind.DYNAMIC and current.generation == instance.generation:
                tx.remove(instance.id)

    async def teardown(self,
                       instance_id: str,
                       reason: ScalingReason,
                       revert_state: Optional[RunnerState] = None) -> bool:
        """
        Deregister, destroy and forget an instance.

        Returns False if the instance was already gone. When the container
        cannot be destroyed the record is kept (optionally moved back to
        ``revert_state``) and the error propagates.
        """
        instance = await self.registry.find_instance(instance_id)
        if instance is None:
            return False

        await self._deregister(instance)
        if instance.handle is not None:
            try:
                await self.driver.destroy(instance.handle)
            except TransientPlatformError as e:
                await self._teardown_failed(instance, reason, revert_state, e)
                raise

        for hook in self._removed_hooks:
            hook(instance_id)

        now = self.clock()
        async with self.registry.transaction(instance.repository) as tx:
            current = tx.find(instance_id)
            if current is None:
                return False
            tx.remove(instance_id)
            tx.record(ScalingEvent(
                repository=instance.repository,
                action=reason.teardown_action,
                reason=reason,
                instance_id=instance_id,
                timestamp=now,
            ))
            if reason.counts_toward_cooldown:
                tx.pool.last_scale_down_at = now

        RUNNER_OPERATIONS.labels(operation="destroy", result="success", kind=instance.kind.value).inc()
        RUNNER_LIFECYCLE_DURATION.labels(phase="lifetime", kind=instance.kind.value).observe(
            (now - instance.created_at).total_seconds()
        )
        SCALING_DECISIONS.labels(
            repository=instance.repository,
            direction=reason.teardown_action.value,
            reason=reason.value,
            outcome=EventOutcome.SUCCEEDED.value,
        ).inc()
        self.logger.info(
            "Runner terminated",
            instance_id=instance_id,
            repository=instance.repository,
            kind=instance.kind.value,
            reason=reason.value,
        )
        return True

    async def recreate(self, instance_id: str, reason: ScalingReason) -> RunnerInstance:
        """
        Replace an instance's container in place.

        The record keeps its id and slot; ``generation`` is bumped so any
        in-flight operation on the old container fails re-validation.
        """
        instance = await self.registry.get_instance(instance_id)
        generation = instance.generation

        await self._deregister(instance)
        if instance.handle is not None:
            try:
                await self.driver.destroy(instance.handle)
            except TransientPlatformError as e:
                await self._teardown_failed(instance, reason, None, e)
                raise

        for hook in self._removed_hooks:
            hook(instance_id)

        now = self.clock()
        async with self.registry.transaction(instance.repository) as tx:
            current = tx.find(instance_id)
            if current is None or current.generation != generation:
                raise ConcurrencyConflict(f"Instance {instance_id} changed during recreation")
            current.generation += 1
            current.state = RunnerState.PROVISIONING
            current.handle = None
            current.credential = None
            current.provisioned_at = None
            current.last_heartbeat_at = None
            current.missed_heartbeats = 0
            current.current_job_id = None
            current.assigned_at = None
            current.created_at = now
            current.runner_name = self._runner_name(tx.pool, current)
            tx.record(ScalingEvent(
                repository=instance.repository,
                action=reason.teardown_action,
                reason=reason,
                instance_id=instance_id,
                detail="recreate",
                timestamp=now,
            ))

        self.logger.info(
            "Recreating runner",
            instance_id=instance_id,
            repository=instance.repository,
            generation=generation + 1,
            reason=reason.value,
        )
        return await self.launch(instance_id, reason)

    async def ensure_dedicated(self, repository: str) -> List[RunnerInstance]:
        """
        Bring the pool's dedicated slots to their configured count.

        Missing slots are reserved and launched, slots left without a
        container by an earlier failure are relaunched, and slots beyond
        ``dedicated_count`` are torn down.

        Raises:
            UnknownRepository: the platform does not know the pool's repository
        """
        async with self.registry.transaction(repository) as tx:
            dedicated = tx.of_kind(RunnerKind.DEDICATED)
            used_slots = {instance.slot for instance in dedicated}
            for slot in range(tx.pool.dedicated_count):
                if slot not in used_slots:
                    self.reserve(tx, RunnerKind.DEDICATED, slot)

            pending = [
                instance.id for instance in tx.of_kind(RunnerKind.DEDICATED)
                if instance.state == RunnerState.PROVISIONING
                and instance.handle is None
                and not instance.quarantined
                and instance.id not in self._launching
                and (instance.slot or 0) < tx.pool.dedicated_count
            ]
            surplus = [
                instance.id for instance in dedicated
                if instance.slot is not None and instance.slot >= tx.pool.dedicated_count
            ]

        for instance_id in surplus:
            try:
                await self.teardown(instance_id, ScalingReason.OPERATOR)
            except RunnerControllerError as e:
                self.logger.warning("Failed to remove surplus dedicated runner", instance_id=instance_id, error=str(e))

        launched = []
        for instance_id in pending:
            try:
                launched.append(await self.launch(instance_id, ScalingReason.INITIALIZATION))
            except UnknownRepository:
                # Every other slot of the pool would fail the same way
                raise
            except RunnerControllerError as e:
                self.logger.warning(
                    "Dedicated runner launch deferred",
                    instance_id=instance_id,
                    repository=repository,
                    error=str(e),
                )
        return launched

    async def _deregister(self, instance: RunnerInstance) -> None:
        if not instance.runner_name:
            return
        try:
            await self.platform.remove_runner(instance.repository, instance.runner_name)
        except (TransientPlatformError, PlatformAuthenticationError) as e:
            # The platform drops offline runners on its own eventually
            self.logger.warning(
                "Runner deregistration failed",
                instance_id=instance.id,
                runner_name=instance.runner_name,
                error=str(e),
            )

    async def _teardown_failed(self,
                               instance: RunnerInstance,
                               reason: ScalingReason,
                               revert_state: Optional[RunnerState],
                               error: Exception) -> None:
        RUNNER_OPERATIONS.labels(operation="destroy", result="failure", kind=instance.kind.value).inc()
        SCALING_DECISIONS.labels(
            repository=instance.repository,
            direction=reason.teardown_action.value,
            reason=reason.value,
            outcome=EventOutcome.FAILED.value,
        ).inc()
        self.logger.error(
            "Runner container destroy failed",
            instance_id=instance.id,
            repository=instance.repository,
            error=str(error),
        )

        async with self.registry.transaction(instance.repository) as tx:
            tx.record(ScalingEvent(
                repository=instance.repository,
                action=reason.teardown_action,
                reason=reason,
                outcome=EventOutcome.FAILED,
                instance_id=instance.id,
                detail=str(error)[:500],
                timestamp=self.clock(),
            ))
            current = tx.find(instance.id)
            if revert_state is not None and current is not None and current.generation == instance.generation:
                current.state = revert_state

    async def _destroy_quietly(self, handle: ContainerHandle) -> None:
        try:
            await self.driver.destroy(handle)
        except TransientPlatformError as e:
            self.logger.error("Failed to destroy discarded container", container=handle.name, error=str(e))

    def _runner_name(self, pool: RepositoryPool, instance: RunnerInstance) -> str:
        if instance.kind == RunnerKind.DEDICATED:
            name = f"gh-{pool.short_name}-dedicated-{instance.slot or 0}"
        else:
            name = f"gh-{pool.short_name}-dynamic-{secrets.token_hex(3)}"
        if instance.generation:
            name = f"{name}-r{instance.generation}"
        return name
