"""
Job routing for GitHub Runner Controller.

Matches queued jobs to idle runners of their repository's pool. Eligibility
is a list of predicates so the rules read as data; a job nobody can take
right now is queued and a scale-up is requested, a job nobody could ever
take is reported as unschedulable.
"""

from collections import OrderedDict
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import structlog

from ..metrics import JOB_QUEUE_DEPTH, ROUTING_OUTCOMES
from ..models.configuration import RoutingConfiguration
from ..models.runner import (
    JobRequest,
    RepositoryPool,
    RoutingDecision,
    RoutingOutcome,
    RunnerInstance,
    RunnerKind,
    RunnerState,
    ScaleUpResult,
    ScalingReason,
    utcnow,
)
from .pool_registry import PoolRegistry

Eligibility = Callable[[RunnerInstance, JobRequest], bool]
ScaleUpRequest = Callable[[str, ScalingReason], Awaitable[ScaleUpResult]]


def _job_type(job: JobRequest) -> Optional[str]:
    return job.job_type.lower() if job.job_type else None


# Every rule must hold for a runner to take a job
ELIGIBILITY_RULES: Tuple[Tuple[str, Eligibility], ...] = (
    ("idle", lambda runner, job: runner.state == RunnerState.IDLE),
    ("not quarantined", lambda runner, job: not runner.quarantined),
    ("labels", lambda runner, job: set(job.labels) <= set(runner.labels)),
    ("anti-affinity", lambda runner, job: not set(job.anti_affinity) & set(runner.labels)),
    ("job type", lambda runner, job: _job_type(job) not in runner.blocked_job_types),
)


# Runners that will take a job without another scale-up once they are idle
SPARE_STATES = frozenset({RunnerState.PROVISIONING, RunnerState.ONLINE, RunnerState.IDLE})


def is_eligible(runner: RunnerInstance, job: JobRequest) -> bool:
    return all(rule(runner, job) for _, rule in ELIGIBILITY_RULES)


def accepts_when_idle(runner: RunnerInstance, job: JobRequest) -> bool:
    """Every eligibility rule except the runner's current state."""
    return all(rule(runner, job) for name, rule in ELIGIBILITY_RULES if name != "idle")


def preference_key(runner: RunnerInstance) -> Tuple[int, float]:
    """Dedicated runners first, then the most recently busy dynamic runner."""
    last_busy = runner.last_busy_at.timestamp() if runner.last_busy_at else 0.0
    return (0 if runner.kind == RunnerKind.DEDICATED else 1, -last_busy)


class JobRouter:
    """Routes jobs to runners and holds the per-pool queue of waiting jobs."""

    def __init__(self,
                 registry: PoolRegistry,
                 config: RoutingConfiguration,
                 labels_for: Callable[[RepositoryPool, RunnerKind], List[str]],
                 request_scale_up: Optional[ScaleUpRequest] = None,
                 clock: Callable[[], datetime] = utcnow,
                 logger: Any = None) -> None:
        self.registry = registry
        self.config = config
        self.labels_for = labels_for
        self.request_scale_up = request_scale_up
        self.clock = clock
        self.logger = (logger or structlog.get_logger()).bind(component="job_router")

        self._queues: Dict[str, "OrderedDict[str, JobRequest]"] = {}
        # job id -> (repository, instance id) for jobs handed to a runner
        self._assigned: Dict[str, Tuple[str, str]] = {}
        # job id -> repository for jobs reported unschedulable, so polls do not re-report them
        self._rejected: Dict[str, str] = {}

    def pending_count(self, repository: str) -> int:
        return len(self._queues.get(repository, ()))

    def pending_jobs(self, repository: str) -> List[JobRequest]:
        return list(self._queues.get(repository, {}).values())

    async def route(self, job: JobRequest) -> RoutingDecision:
        """
        Assign ``job`` to an eligible runner, or queue it.

        Raises:
            NotFound: the job's repository has no pool
        """
        decision = await self._try_assign(job)
        if decision is not None:
            self._dequeue(job)
            return self._finish(decision)

        pool = await self.registry.get_pool(job.repository)
        if not self.could_ever_run(pool, job):
            self._dequeue(job)
            self._rejected[job.job_id] = job.repository
            return self._finish(RoutingDecision(
                job_id=job.job_id,
                repository=job.repository,
                outcome=RoutingOutcome.UNSCHEDULABLE,
                reason="no runner of this pool can satisfy the job's labels or type",
            ))

        self._enqueue(job)
        outcome = RoutingOutcome.QUEUED
        reason = "waiting for an idle runner"
        if self.request_scale_up is not None:
            result = await self.request_scale_up(job.repository, ScalingReason.JOB_QUEUED)
            if result == ScaleUpResult.CAPACITY_EXCEEDED:
                outcome = RoutingOutcome.BACKPRESSURE
                reason = "pool is at its dynamic ceiling"
            else:
                reason = f"scale-up {ScaleUpResult(result).value}"

        return self._finish(RoutingDecision(
            job_id=job.job_id,
            repository=job.repository,
            outcome=outcome,
            reason=reason,
        ))

    async def ingest(self, jobs: Iterable[JobRequest]) -> List[RoutingDecision]:
        """Route a platform queue snapshot, skipping jobs already handled."""
        decisions = []
        for job in jobs:
            if job.job_id in self._assigned or job.job_id in self._rejected:
                continue
            if job.job_id in self._queues.get(job.repository, {}):
                continue
            decisions.append(await self.route(job))
        return decisions

    async def dispatch_pending(self, repository: str) -> List[RoutingDecision]:
        """Retry queued jobs of one pool in arrival order; expire the stale ones."""
        queue = self._queues.get(repository)
        if not queue:
            return []

        decisions = []
        now = self.clock()
        for job in list(queue.values()):
            if (now - job.queued_at).total_seconds() > self.config.job_queue_timeout:
                self._dequeue(job)
                decisions.append(self._finish(RoutingDecision(
                    job_id=job.job_id,
                    repository=repository,
                    outcome=RoutingOutcome.EXPIRED,
                    reason="job exceeded the platform queue timeout",
                )))
                continue

            decision = await self._try_assign(job)
            if decision is None:
                continue
            self._dequeue(job)
            decisions.append(self._finish(decision))
        return decisions

    async def reconcile_snapshot(self, repository: str, jobs: List[JobRequest]) -> List[RoutingDecision]:
        """
        Apply one platform queue snapshot for a repository.

        Jobs that left the platform queue (picked up or cancelled) are
        forgotten, new ones are routed.
        """
        seen = {job.job_id for job in jobs}
        for job_id, (job_repository, _) in list(self._assigned.items()):
            if job_repository == repository and job_id not in seen:
                del self._assigned[job_id]
        for job_id, job_repository in list(self._rejected.items()):
            if job_repository == repository and job_id not in seen:
                del self._rejected[job_id]
        queue = self._queues.get(repository)
        if queue is not None:
            for job_id in [job_id for job_id in queue if job_id not in seen]:
                del queue[job_id]
            JOB_QUEUE_DEPTH.labels(repository=repository).set(len(queue))
        return await self.ingest(jobs)

    def uncovered_demand(self, pool: RepositoryPool, instances: Iterable[RunnerInstance]) -> int:
        """
        Count waiting jobs that only a new dynamic runner would serve.

        A job counts when a dynamic runner of ``pool`` would accept it and
        no provisioning, online or idle runner is left over to take it.
        Each spare runner covers at most one job.
        """
        if not pool.dynamic_ceiling:
            return 0
        template = self._idle_runner(pool, RunnerKind.DYNAMIC)
        spare = [instance for instance in instances if instance.state in SPARE_STATES and not instance.quarantined]
        uncovered = 0
        for job in self.pending_jobs(pool.repository):
            if not is_eligible(template, job):
                continue
            runner = next((instance for instance in spare if accepts_when_idle(instance, job)), None)
            if runner is None:
                uncovered += 1
            else:
                spare.remove(runner)
        return uncovered

    def could_ever_run(self, pool: RepositoryPool, job: JobRequest) -> bool:
        """Whether an idle runner of any kind ``pool`` is allowed to have would accept ``job``."""
        kinds = []
        if pool.dedicated_count:
            kinds.append(RunnerKind.DEDICATED)
        if pool.dynamic_ceiling:
            kinds.append(RunnerKind.DYNAMIC)
        return any(is_eligible(self._idle_runner(pool, kind), job) for kind in kinds)

    def _idle_runner(self, pool: RepositoryPool, kind: RunnerKind) -> RunnerInstance:
        return RunnerInstance(
            repository=pool.repository,
            kind=kind,
            state=RunnerState.IDLE,
            labels=self.labels_for(pool, kind),
            blocked_job_types=pool.blocked_job_types,
        )

    async def _try_assign(self, job: JobRequest) -> Optional[RoutingDecision]:
        now = self.clock()
        async with self.registry.transaction(job.repository) as tx:
            eligible = [runner for runner in tx.instances.values() if is_eligible(runner, job)]
            if not eligible:
                return None
            runner = min(eligible, key=preference_key)
            runner.state = RunnerState.BUSY
            runner.current_job_id = job.job_id
            runner.assigned_at = now
            runner.last_busy_at = now

        self._assigned[job.job_id] = (job.repository, runner.id)
        self.logger.info(
            "Job assigned",
            job_id=job.job_id,
            repository=job.repository,
            instance_id=runner.id,
            kind=runner.kind.value,
        )
        return RoutingDecision(
            job_id=job.job_id,
            repository=job.repository,
            outcome=RoutingOutcome.ASSIGNED,
            instance_id=runner.id,
        )

    def _enqueue(self, job: JobRequest) -> None:
        queue = self._queues.setdefault(job.repository, OrderedDict())
        queue.setdefault(job.job_id, job)
        JOB_QUEUE_DEPTH.labels(repository=job.repository).set(len(queue))

    def _dequeue(self, job: JobRequest) -> None:
        queue = self._queues.get(job.repository)
        if queue is not None and queue.pop(job.job_id, None) is not None:
            JOB_QUEUE_DEPTH.labels(repository=job.repository).set(len(queue))

    def _finish(self, decision: RoutingDecision) -> RoutingDecision:
        ROUTING_OUTCOMES.labels(repository=decision.repository, outcome=decision.outcome.value).inc()
        if decision.outcome in (RoutingOutcome.UNSCHEDULABLE, RoutingOutcome.EXPIRED, RoutingOutcome.BACKPRESSURE):
            self.logger.warning(
                "Job not routed",
                job_id=decision.job_id,
                repository=decision.repository,
                outcome=decision.outcome.value,
                reason=decision.reason,
            )
        return decision
