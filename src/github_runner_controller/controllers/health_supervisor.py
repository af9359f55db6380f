"""
Health supervision for GitHub Runner Controller.

Each runner gets a periodic heartbeat: the container runtime says whether
the unit is running, the platform says whether the runner is online and
busy. Missed heartbeats move a runner to unhealthy, after which dedicated
runners are recreated in place and dynamic runners are torn down. A
dedicated runner that keeps failing is quarantined for the operator.
"""

from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from ..exceptions import (
    NotFound,
    PlatformAuthenticationError,
    RunnerControllerError,
    TransientPlatformError,
    UnrecoverableInstance,
)
from ..metrics import HEALTH_TRANSITIONS
from ..models.configuration import HealthConfiguration
from ..models.runner import (
    HEARTBEAT_STATES,
    ContainerStatus,
    Heartbeat,
    RunnerInstance,
    RunnerKind,
    RunnerState,
    ScalingReason,
    utcnow,
)
from ..utils.timers import InstanceTimers
from .pool_registry import PoolRegistry
from .provisioner import RunnerProvisioner

HEARTBEAT_TIMER = "heartbeat"

IdleListener = Callable[[str], Awaitable[Any]]


class HealthSupervisor:
    """Heartbeat state machine and recovery for runner instances."""

    def __init__(self,
                 registry: PoolRegistry,
                 platform: Any,
                 driver: Any,
                 provisioner: RunnerProvisioner,
                 timers: InstanceTimers,
                 config: HealthConfiguration,
                 clock: Callable[[], datetime] = utcnow,
                 logger: Any = None) -> None:
        self.registry = registry
        self.platform = platform
        self.driver = driver
        self.provisioner = provisioner
        self.timers = timers
        self.config = config
        self.clock = clock
        self.logger = (logger or structlog.get_logger()).bind(component="health_supervisor")

        self.quarantined: Dict[str, UnrecoverableInstance] = {}
        self._idle_listeners: List[IdleListener] = []

    def add_idle_listener(self, listener: IdleListener) -> None:
        """Called with the repository whenever one of its runners turns idle."""
        self._idle_listeners.append(listener)

    def track(self, instance: RunnerInstance) -> None:
        self.timers.schedule_periodic(
            instance.id,
            HEARTBEAT_TIMER,
            self.config.heartbeat_interval,
            lambda instance_id=instance.id: self.check_instance(instance_id),
        )

    def untrack(self, instance_id: str) -> None:
        self.timers.cancel(instance_id, HEARTBEAT_TIMER)

    async def probe(self, instance: RunnerInstance) -> Optional[Heartbeat]:
        """
        Ask the runtime and the platform about one runner.

        Returns None when the answer is inconclusive (platform or runtime
        outage); such a probe neither counts as a miss nor resets the
        miss counter.
        """
        if instance.handle is None:
            return Heartbeat(alive=False, detail="no container")

        try:
            status = await self.driver.status(instance.handle)
        except TransientPlatformError as e:
            self.logger.debug("Container status inconclusive", instance_id=instance.id, error=str(e))
            return None
        if status != ContainerStatus.RUNNING:
            return Heartbeat(alive=False, detail=f"container {status.value}")

        try:
            runner = await self.platform.find_runner(instance.repository, instance.runner_name)
        except (TransientPlatformError, PlatformAuthenticationError, NotFound) as e:
            self.logger.debug("Platform status inconclusive", instance_id=instance.id, error=str(e))
            return None
        if runner is None or not runner.online:
            return Heartbeat(alive=False, detail="runner offline on platform")
        return Heartbeat(alive=True, busy=runner.busy)

    async def check_instance(self, instance_id: str) -> Optional[RunnerState]:
        """Run one heartbeat for an instance and act on the outcome."""
        instance = await self.registry.find_instance(instance_id)
        if instance is None:
            self.untrack(instance_id)
            return None
        if instance.quarantined or instance.state in (RunnerState.DRAINING, RunnerState.TERMINATED):
            return instance.state
        if instance.state == RunnerState.UNHEALTHY:
            await self.recover(instance)
            return instance.state

        heartbeat = await self.probe(instance)
        if heartbeat is None:
            return instance.state

        now = self.clock()
        async with self.registry.transaction(instance.repository) as tx:
            current = tx.find(instance_id)
            if current is None or current.generation != instance.generation:
                return None
            previous = current.state
            self.apply_heartbeat(current, heartbeat, now)
            snapshot = current.model_copy(deep=True)

        if snapshot.state != previous:
            HEALTH_TRANSITIONS.labels(from_state=previous.value, to_state=snapshot.state.value).inc()
            log = self.logger.warning if snapshot.state == RunnerState.UNHEALTHY else self.logger.info
            log(
                "Runner state changed",
                instance_id=instance_id,
                repository=snapshot.repository,
                from_state=previous.value,
                to_state=snapshot.state.value,
                detail=heartbeat.detail,
            )

        if snapshot.state == RunnerState.IDLE and previous != RunnerState.IDLE:
            for listener in self._idle_listeners:
                await listener(snapshot.repository)
        if snapshot.state == RunnerState.UNHEALTHY:
            await self.recover(snapshot)
        return snapshot.state

    def apply_heartbeat(self, instance: RunnerInstance, heartbeat: Heartbeat, now: datetime) -> None:
        """Advance the state machine of ``instance`` (a transaction copy) by one heartbeat."""
        if instance.state not in HEARTBEAT_STATES and instance.state != RunnerState.PROVISIONING:
            return

        if not heartbeat.alive:
            if instance.state == RunnerState.PROVISIONING:
                waited = (now - instance.created_at).total_seconds()
                if waited > self.config.provisioning_timeout:
                    instance.state = RunnerState.UNHEALTHY
                return
            instance.missed_heartbeats += 1
            if instance.missed_heartbeats >= self.config.miss_threshold:
                instance.state = RunnerState.UNHEALTHY
            return

        instance.last_heartbeat_at = now
        instance.missed_heartbeats = 0
        if instance.state == RunnerState.PROVISIONING:
            instance.state = RunnerState.ONLINE
            return

        if heartbeat.busy:
            instance.state = RunnerState.BUSY
            instance.last_busy_at = now
            instance.recovery_attempts = 0
            return

        if instance.state == RunnerState.BUSY:
            # The platform may not yet report a job the router just handed out
            if instance.assigned_at is not None and \
                    (now - instance.assigned_at).total_seconds() < self.config.assignment_grace:
                return
            instance.last_busy_at = now
        instance.state = RunnerState.IDLE
        instance.current_job_id = None
        instance.assigned_at = None

    async def recover(self, instance: RunnerInstance) -> None:
        """Recreate an unhealthy dedicated runner, or tear down a dynamic one."""
        if instance.kind == RunnerKind.DYNAMIC:
            try:
                await self.provisioner.teardown(instance.id, ScalingReason.RECOVERY)
            except RunnerControllerError as e:
                self.logger.error("Failed to remove unhealthy runner", instance_id=instance.id, error=str(e))
            return

        if instance.recovery_attempts >= self.config.max_recovery_attempts:
            await self.quarantine(
                instance,
                f"unhealthy after {instance.recovery_attempts} recovery attempt(s)",
            )
            return

        try:
            await self.registry.update_instance(
                instance.id,
                expected_generation=instance.generation,
                recovery_attempts=instance.recovery_attempts + 1,
            )
            self.logger.warning(
                "Recreating unhealthy dedicated runner",
                instance_id=instance.id,
                repository=instance.repository,
                attempt=instance.recovery_attempts + 1,
            )
            await self.provisioner.recreate(instance.id, ScalingReason.RECOVERY)
        except RunnerControllerError as e:
            self.logger.error("Runner recovery failed", instance_id=instance.id, error=str(e))

    async def quarantine(self, instance: RunnerInstance, reason: str) -> None:
        """Take a runner out of service for the operator; it is never retried automatically."""
        await self.registry.update_instance(
            instance.id,
            quarantined=True,
            quarantine_reason=reason,
        )
        self.timers.cancel(instance.id)
        error = UnrecoverableInstance(instance.id, reason)
        self.quarantined[instance.id] = error
        self.logger.error(
            "Runner quarantined",
            instance_id=instance.id,
            repository=instance.repository,
            error=str(error),
        )

    def release(self, instance_id: str) -> None:
        self.quarantined.pop(instance_id, None)
