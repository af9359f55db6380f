"""
Pool registry for GitHub Runner Controller.

The registry is the single owner of pool and runner instance records.
Other components read copies and write back through transactions that
hold the pool's lock, so two concurrent scaling decisions can never both
observe spare capacity and overshoot the dynamic ceiling.
"""

import asyncio
import copy
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Deque, Dict, Iterable, List, Optional, Set

import structlog

from ..exceptions import CapacityExceeded, ConcurrencyConflict, NotFound
from ..metrics import QUARANTINED_RUNNERS, RUNNER_COUNT
from ..models.runner import (
    RepositoryPool,
    RunnerInstance,
    RunnerKind,
    RunnerState,
    ScalingEvent,
    StatusEvent,
    StatusEventKind,
)
from ..storage.state_store import SqlStateStore
from ..utils.status_channel import StatusChannel

EVENT_HISTORY_LIMIT = 1000


class PoolTransaction:
    """
    Working copy of one pool and its instances.

    Mutate ``pool`` and the instances returned by ``get``/``instances``
    freely; nothing is visible to other components until the transaction
    commits.
    """

    def __init__(self, pool: RepositoryPool, instances: Dict[str, RunnerInstance]) -> None:
        self.pool = copy.deepcopy(pool)
        self.instances: Dict[str, RunnerInstance] = copy.deepcopy(instances)
        self._original_pool = pool
        self._original = instances
        self._removed: Set[str] = set()
        self.events: List[ScalingEvent] = []

    @property
    def repository(self) -> str:
        return self.pool.repository

    def get(self, instance_id: str) -> RunnerInstance:
        instance = self.instances.get(instance_id)
        if instance is None:
            raise NotFound("runner instance", instance_id)
        return instance

    def find(self, instance_id: str) -> Optional[RunnerInstance]:
        return self.instances.get(instance_id)

    def add(self, instance: RunnerInstance) -> RunnerInstance:
        if instance.repository != self.repository:
            raise ValueError(f"Instance {instance.id} belongs to {instance.repository}, not {self.repository}")
        self.instances[instance.id] = instance
        self._removed.discard(instance.id)
        return instance

    def remove(self, instance_id: str) -> RunnerInstance:
        instance = self.get(instance_id)
        del self.instances[instance_id]
        if instance_id in self._original:
            self._removed.add(instance_id)
        return instance

    def record(self, event: ScalingEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: RunnerKind) -> List[RunnerInstance]:
        return [instance for instance in self.instances.values() if instance.kind == kind]

    def in_states(self, states: Iterable[RunnerState]) -> List[RunnerInstance]:
        states = set(states)
        return [
            instance for instance in self.instances.values()
            if instance.state in states and not instance.quarantined
        ]

    def changed_instances(self) -> List[RunnerInstance]:
        return [
            instance for instance_id, instance in self.instances.items()
            if instance_id not in self._original or instance != self._original[instance_id]
        ]

    @property
    def removed(self) -> Set[str]:
        return set(self._removed)

    def pool_changed(self) -> bool:
        return self.pool != self._original_pool


class PoolRegistry:
    """In-memory pool and instance records, persisted through ``SqlStateStore``."""

    def __init__(self,
                 store: Optional[SqlStateStore] = None,
                 channel: Optional[StatusChannel] = None,
                 logger: Any = None) -> None:
        self.store = store
        self.channel = channel
        self.logger = (logger or structlog.get_logger()).bind(component="pool_registry")

        self._pools: Dict[str, RepositoryPool] = {}
        self._instances: Dict[str, Dict[str, RunnerInstance]] = {}
        self._instance_index: Dict[str, str] = {}
        self._events: Dict[str, Deque[ScalingEvent]] = defaultdict(lambda: deque(maxlen=EVENT_HISTORY_LIMIT))
        self._locks: Dict[str, asyncio.Lock] = {}

    async def load(self) -> None:
        """Populate the registry from the durable store."""
        if self.store is None:
            return

        pools = await asyncio.to_thread(self.store.load_pools)
        instances = await asyncio.to_thread(self.store.load_instances)
        for pool in pools:
            self._pools[pool.repository] = pool
            self._instances.setdefault(pool.repository, {})
            self._locks.setdefault(pool.repository, asyncio.Lock())
            events = await asyncio.to_thread(self.store.load_scaling_events, pool.repository, EVENT_HISTORY_LIMIT)
            self._events[pool.repository].extend(reversed(events))

        for instance in instances:
            if instance.repository not in self._pools:
                self.logger.warning(
                    "Stored instance belongs to unknown pool",
                    instance_id=instance.id,
                    repository=instance.repository,
                )
                continue
            self._instances[instance.repository][instance.id] = instance
            self._instance_index[instance.id] = instance.repository

        for repository in self._pools:
            self._update_gauges(repository)

        self.logger.info("Registry loaded", pools=len(pools), instances=len(self._instance_index))

    async def register_pool(self, pool: RepositoryPool) -> RepositoryPool:
        """
        Create or reconfigure a pool.

        Counters and cooldown timestamps of an existing pool are kept; only
        its configuration is replaced.
        """
        repository = pool.repository
        lock = self._locks.setdefault(repository, asyncio.Lock())
        async with lock:
            existing = self._pools.get(repository)
            if existing is not None:
                pool = pool.model_copy(update={
                    "dynamic_count": existing.dynamic_count,
                    "last_scale_up_at": existing.last_scale_up_at,
                    "last_scale_down_at": existing.last_scale_down_at,
                })
            if self.store is not None:
                await asyncio.to_thread(self.store.commit, pools=[pool])
            self._pools[repository] = pool
            self._instances.setdefault(repository, {})

        self.logger.info(
            "Pool registered",
            repository=repository,
            dedicated=pool.dedicated_count,
            dynamic_ceiling=pool.dynamic_ceiling,
        )
        return copy.deepcopy(pool)

    async def get_pool(self, repository: str) -> RepositoryPool:
        return copy.deepcopy(self._require_pool(repository))

    async def list_pools(self) -> List[RepositoryPool]:
        return [copy.deepcopy(pool) for pool in self._pools.values()]

    async def list_instances(self, repository: Optional[str] = None) -> List[RunnerInstance]:
        if repository is not None:
            self._require_pool(repository)
            return [copy.deepcopy(instance) for instance in self._instances[repository].values()]
        return [
            copy.deepcopy(instance)
            for instances in self._instances.values()
            for instance in instances.values()
        ]

    async def get_instance(self, instance_id: str) -> RunnerInstance:
        repository = self.repository_of(instance_id)
        return copy.deepcopy(self._instances[repository][instance_id])

    async def find_instance(self, instance_id: str) -> Optional[RunnerInstance]:
        repository = self._instance_index.get(instance_id)
        if repository is None:
            return None
        return copy.deepcopy(self._instances[repository][instance_id])

    def repository_of(self, instance_id: str) -> str:
        repository = self._instance_index.get(instance_id)
        if repository is None:
            raise NotFound("runner instance", instance_id)
        return repository

    async def upsert_instance(self, instance: RunnerInstance) -> RunnerInstance:
        async with self.transaction(instance.repository) as tx:
            tx.add(copy.deepcopy(instance))
        return copy.deepcopy(instance)

    async def remove_instance(self, instance_id: str) -> RunnerInstance:
        async with self.transaction(self.repository_of(instance_id)) as tx:
            removed = tx.remove(instance_id)
        return removed

    async def update_instance(self,
                              instance_id: str,
                              *,
                              expected_states: Optional[Iterable[RunnerState]] = None,
                              expected_generation: Optional[int] = None,
                              **changes: Any) -> RunnerInstance:
        """
        Compare-and-set update of one instance.

        Raises:
            NotFound: the instance no longer exists
            ConcurrencyConflict: state or generation differ from what the
                caller observed before its external call
        """
        async with self.transaction(self.repository_of(instance_id)) as tx:
            instance = tx.get(instance_id)
            if expected_states is not None and instance.state not in set(expected_states):
                raise ConcurrencyConflict(
                    f"Instance {instance_id} is {instance.state.value}, expected one of "
                    f"{sorted(state.value for state in expected_states)}"
                )
            if expected_generation is not None and instance.generation != expected_generation:
                raise ConcurrencyConflict(
                    f"Instance {instance_id} is at generation {instance.generation}, expected {expected_generation}"
                )
            for field, value in changes.items():
                setattr(instance, field, value)
        return copy.deepcopy(instance)

    async def append_scaling_event(self, event: ScalingEvent) -> None:
        async with self.transaction(event.repository) as tx:
            tx.record(event)

    async def scaling_events(self, repository: Optional[str] = None, limit: int = 50) -> List[ScalingEvent]:
        """Most recent events first."""
        if repository is not None:
            self._require_pool(repository)
            events = list(self._events[repository])
        else:
            events = [event for history in self._events.values() for event in history]
            events.sort(key=lambda event: event.timestamp)
        return [copy.deepcopy(event) for event in reversed(events[-limit:])] if limit else []

    @asynccontextmanager
    async def transaction(self, repository: str) -> AsyncIterator[PoolTransaction]:
        """
        Hold the pool lock and yield a working copy.

        On clean exit every change is persisted in one store transaction,
        then swapped into memory, then published. On exception nothing is
        written.
        """
        self._require_pool(repository)
        async with self._locks[repository]:
            tx = PoolTransaction(self._pools[repository], self._instances[repository])
            yield tx
            await self._commit(tx)

    async def _commit(self, tx: PoolTransaction) -> None:
        repository = tx.repository
        original_count = tx._original_pool.dynamic_count
        tx.pool.dynamic_count = sum(
            1 for instance in tx.of_kind(RunnerKind.DYNAMIC)
            if instance.state != RunnerState.TERMINATED
        )
        if tx.pool.dynamic_count > tx.pool.dynamic_ceiling and tx.pool.dynamic_count > original_count:
            self.logger.warning(
                "Commit rejected, dynamic ceiling reached",
                repository=repository,
                dynamic_count=tx.pool.dynamic_count,
                ceiling=tx.pool.dynamic_ceiling,
            )
            raise CapacityExceeded(repository, tx.pool.dynamic_ceiling)

        changed = tx.changed_instances()
        removed = tx.removed
        pool_changed = tx.pool_changed()
        if not (changed or removed or tx.events or pool_changed):
            return

        if self.store is not None:
            await asyncio.to_thread(
                self.store.commit,
                pools=[tx.pool] if pool_changed else [],
                upserts=changed,
                removals=removed,
                events=tx.events,
            )

        previous = self._instances[repository]
        self._pools[repository] = tx.pool
        self._instances[repository] = tx.instances
        for instance_id in removed:
            self._instance_index.pop(instance_id, None)
        for instance in changed:
            self._instance_index[instance.id] = repository
        self._events[repository].extend(tx.events)

        self._update_gauges(repository)
        self._publish(repository, previous, changed, removed, tx.events)

    def _publish(self,
                 repository: str,
                 previous: Dict[str, RunnerInstance],
                 changed: List[RunnerInstance],
                 removed: Set[str],
                 events: List[ScalingEvent]) -> None:
        if self.channel is None:
            return

        for instance in changed:
            before = previous.get(instance.id)
            from_state = before.state if before is not None else None
            if from_state != instance.state:
                self.channel.publish(StatusEvent(
                    kind=StatusEventKind.INSTANCE_STATE,
                    repository=repository,
                    instance_id=instance.id,
                    from_state=from_state,
                    to_state=instance.state,
                ))
            if instance.quarantined and not (before is not None and before.quarantined):
                self.channel.publish(StatusEvent(
                    kind=StatusEventKind.QUARANTINE,
                    repository=repository,
                    instance_id=instance.id,
                    from_state=from_state,
                    to_state=instance.state,
                    detail=instance.quarantine_reason,
                ))

        for instance_id in removed:
            before = previous.get(instance_id)
            self.channel.publish(StatusEvent(
                kind=StatusEventKind.INSTANCE_STATE,
                repository=repository,
                instance_id=instance_id,
                from_state=before.state if before is not None else None,
                to_state=RunnerState.TERMINATED,
            ))

        for event in events:
            self.channel.publish(StatusEvent(
                kind=StatusEventKind.SCALING_EVENT,
                repository=repository,
                instance_id=event.instance_id,
                scaling_event=event,
            ))

    def _update_gauges(self, repository: str) -> None:
        counts: Dict[tuple, int] = defaultdict(int)
        quarantined = 0
        for instance in self._instances.get(repository, {}).values():
            counts[(instance.kind, instance.state)] += 1
            quarantined += int(instance.quarantined)
        for kind in RunnerKind:
            for state in RunnerState:
                RUNNER_COUNT.labels(repository=repository, kind=kind.value, state=state.value).set(
                    counts[(kind, state)]
                )
        QUARANTINED_RUNNERS.labels(repository=repository).set(quarantined)

    def _require_pool(self, repository: str) -> RepositoryPool:
        pool = self._pools.get(repository)
        if pool is None:
            raise NotFound("pool", repository)
        return pool
