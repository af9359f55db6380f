"""
Scaling decisions for GitHub Runner Controller.

One cycle per pool at a fixed interval: make sure the dedicated runners
exist, add a dynamic runner when every active runner is busy or jobs are
waiting, and reap one dynamic runner that has been idle too long. The
decision and the reservation of the new record happen under the pool
lock, so the dynamic ceiling holds even when the router requests a
scale-up at the same moment a cycle runs.
"""

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog

from ..exceptions import (
    CapacityExceeded,
    ContainerCreateError,
    CreateFailure,
    RunnerControllerError,
    UnknownRepository,
)
from ..models.configuration import ReapPolicy, ScalingConfiguration
from ..models.runner import (
    ACTIVE_STATES,
    RepositoryPool,
    RunnerInstance,
    RunnerKind,
    RunnerState,
    ScaleUpResult,
    ScalingReason,
    utcnow,
)
from .pool_registry import PoolRegistry, PoolTransaction
from .provisioner import RunnerProvisioner

PendingDemand = Callable[[RepositoryPool, List[RunnerInstance]], int]


def reap_key(policy: ReapPolicy) -> Callable[[RunnerInstance], Any]:
    """Sort key whose minimum is the runner to terminate first."""
    if policy == ReapPolicy.OLDEST_CREATED:
        return lambda runner: (runner.created_at, runner.id)
    if policy == ReapPolicy.NEWEST_CREATED:
        return lambda runner: (-runner.created_at.timestamp(), runner.id)
    return lambda runner: (runner.last_busy_at or runner.created_at, runner.created_at, runner.id)


class CycleResult:
    """What one scaling cycle did for one pool."""

    def __init__(self, repository: str) -> None:
        self.repository = repository
        self.skipped = False
        self.dedicated_launched: List[str] = []
        self.scale_up: Optional[ScaleUpResult] = None
        self.scaled_down: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "repository": self.repository,
            "skipped": self.skipped,
            "dedicated_launched": self.dedicated_launched,
            "scale_up": self.scale_up.value if self.scale_up else None,
            "scaled_down": self.scaled_down,
        }


class ScalingDecisionEngine:
    """Per-pool scale-up and scale-down decisions."""

    def __init__(self,
                 registry: PoolRegistry,
                 provisioner: RunnerProvisioner,
                 config: ScalingConfiguration,
                 pending_demand: Optional[PendingDemand] = None,
                 clock: Callable[[], datetime] = utcnow,
                 logger: Any = None) -> None:
        self.registry = registry
        self.provisioner = provisioner
        self.config = config
        self.pending_demand = pending_demand
        self.clock = clock
        self.logger = (logger or structlog.get_logger()).bind(component="scaling_engine")

        self.blocked: Dict[str, str] = {}
        self._cycle_guards: Dict[str, asyncio.Lock] = {}

    def is_cycle_active(self, repository: str) -> bool:
        return self._guard(repository).locked()

    async def run_cycle(self, repository: str) -> CycleResult:
        """Run one full scaling cycle; skipped if one is already active for the pool."""
        result = CycleResult(repository)
        guard = self._guard(repository)
        if guard.locked():
            result.skipped = True
            return result

        async with guard:
            if repository not in self.blocked:
                try:
                    launched = await self.provisioner.ensure_dedicated(repository)
                except UnknownRepository as e:
                    self.block(repository, str(e))
                else:
                    result.dedicated_launched = [instance.id for instance in launched]
            result.scale_up = await self._scale_up(repository, ScalingReason.UTILIZATION)
            result.scaled_down = await self._scale_down(repository)

        self.logger.debug("Scaling cycle completed", **result.as_dict())
        return result

    async def run_all(self) -> List[CycleResult]:
        results = []
        for pool in await self.registry.list_pools():
            try:
                results.append(await self.run_cycle(pool.repository))
            except RunnerControllerError as e:
                self.logger.error("Scaling cycle failed", repository=pool.repository, error=str(e))
        return results

    async def request_scale_up(self, repository: str, reason: ScalingReason = ScalingReason.JOB_QUEUED) -> ScaleUpResult:
        """
        Out-of-band scale-up, used by the job router.

        Returns ``deferred`` when a cycle for the pool is already running;
        that cycle (or the next) sees the queued demand.

        Raises:
            NotFound: unknown repository
        """
        await self.registry.get_pool(repository)
        if not self.config.immediate_scale_up:
            return ScaleUpResult.DEFERRED

        guard = self._guard(repository)
        if guard.locked():
            return ScaleUpResult.DEFERRED
        async with guard:
            return await self._scale_up(repository, reason)

    def evaluate_scale_up(self, tx: PoolTransaction, uncovered: int, now: datetime) -> ScaleUpResult:
        """
        Scale-up rule over a pool transaction; pure, reserves nothing.

        ``uncovered`` is the number of waiting jobs that no starting or
        idle runner of the pool will take.
        """
        pool = tx.pool
        active = tx.in_states(ACTIVE_STATES)
        busy = sum(1 for instance in active if instance.state == RunnerState.BUSY)

        utilization_demand = bool(active) and busy / len(active) >= pool.scale_up_threshold
        if not (utilization_demand or uncovered > 0):
            return ScaleUpResult.NO_DEMAND
        if pool.dynamic_count >= pool.dynamic_ceiling:
            return ScaleUpResult.CAPACITY_EXCEEDED
        if pool.repository in self.blocked:
            return ScaleUpResult.BLOCKED
        if not pool.cooldown_elapsed(pool.last_scale_up_at, now):
            return ScaleUpResult.DEFERRED
        return ScaleUpResult.ACCEPTED

    def select_victim(self, candidates: List[RunnerInstance]) -> RunnerInstance:
        return min(candidates, key=reap_key(self.config.reap_policy))

    def block(self, repository: str, reason: str) -> None:
        self.blocked[repository] = reason
        self.logger.error("Scale-up blocked for pool", repository=repository, reason=reason)

    def resume_pool(self, repository: str) -> bool:
        """Lift a configuration block; returns False if the pool was not blocked."""
        reason = self.blocked.pop(repository, None)
        if reason is None:
            return False
        self.logger.info("Scale-up resumed for pool", repository=repository)
        return True

    async def _scale_up(self, repository: str, reason: ScalingReason) -> ScaleUpResult:
        now = self.clock()
        pending = 0

        try:
            async with self.registry.transaction(repository) as tx:
                if self.pending_demand is not None:
                    pending = self.pending_demand(tx.pool, list(tx.instances.values()))
                decision = self.evaluate_scale_up(tx, pending, now)
                if decision != ScaleUpResult.ACCEPTED:
                    return decision
                instance = self.provisioner.reserve(tx, RunnerKind.DYNAMIC)
        except CapacityExceeded:
            return ScaleUpResult.CAPACITY_EXCEEDED

        self.logger.info(
            "Scaling up",
            repository=repository,
            instance_id=instance.id,
            reason=reason.value,
            uncovered_jobs=pending,
        )
        try:
            await self.provisioner.launch(instance.id, reason)
        except ContainerCreateError as e:
            if e.failure == CreateFailure.CONFIGURATION:
                self.block(repository, str(e))
                return ScaleUpResult.BLOCKED
            # Quota and transient failures are retried on the next interval
            self.logger.warning("Scale-up failed", repository=repository, failure=e.failure.value, error=str(e))
        except UnknownRepository as e:
            self.block(repository, str(e))
            return ScaleUpResult.BLOCKED
        except RunnerControllerError as e:
            self.logger.warning("Scale-up failed", repository=repository, error=str(e))
        return ScaleUpResult.ACCEPTED

    async def _scale_down(self, repository: str) -> Optional[str]:
        now = self.clock()
        async with self.registry.transaction(repository) as tx:
            pool = tx.pool
            if not pool.cooldown_elapsed(pool.last_scale_down_at, now):
                return None
            candidates = [
                instance for instance in tx.of_kind(RunnerKind.DYNAMIC)
                if instance.state == RunnerState.IDLE
                and not instance.quarantined
                and instance.idle_for(now).total_seconds() > pool.idle_timeout
            ]
            if not candidates:
                return None
            victim = self.select_victim(candidates)
            victim.state = RunnerState.DRAINING

        self.logger.info(
            "Scaling down idle runner",
            repository=repository,
            instance_id=victim.id,
            idle_seconds=round(victim.idle_for(now).total_seconds()),
        )
        try:
            await self.provisioner.teardown(victim.id, ScalingReason.IDLE_TIMEOUT, revert_state=RunnerState.IDLE)
        except RunnerControllerError as e:
            self.logger.warning("Scale-down failed", repository=repository, instance_id=victim.id, error=str(e))
            return None
        return victim.id

    def _guard(self, repository: str) -> asyncio.Lock:
        return self._cycle_guards.setdefault(repository, asyncio.Lock())
