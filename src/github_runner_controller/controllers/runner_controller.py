"""
GitHub Runner Controller for Kubernetes.

Wires the pool registry, provisioner, token manager, health supervisor,
scaling engine and job router together, restores state on startup and
runs the background loops: scaling cycles, queued-job polling and the
metrics endpoint.
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from kubernetes import config as kube_config
from prometheus_client import start_http_server

from ..exceptions import (
    NotFound,
    PlatformAuthenticationError,
    RunnerControllerError,
    TransientPlatformError,
    UnknownRepository,
)
from ..models.configuration import ControllerConfiguration
from ..models.runner import (
    RoutingDecision,
    RunnerInstance,
    RunnerKind,
    RunnerState,
    ScalingReason,
    utcnow,
)
from ..storage.state_store import SqlStateStore
from ..utils.github_client import GitHubPlatformClient
from ..utils.kubernetes_client import KubernetesContainerDriver
from ..utils.security import CredentialCipher
from ..utils.status_channel import StatusChannel
from ..utils.timers import InstanceTimers
from .health_supervisor import HealthSupervisor
from .job_router import JobRouter
from .pool_registry import PoolRegistry
from .provisioner import RunnerProvisioner
from .scaling_engine import ScalingDecisionEngine
from .token_manager import TokenLifecycleManager


class GitHubRunnerController:
    """
    Runner fleet controller for one or more GitHub repositories.

    Platform client, container driver and state store can be injected;
    otherwise they are built from the configuration on ``initialize``.
    """

    def __init__(self,
                 config: ControllerConfiguration,
                 platform: Any = None,
                 driver: Any = None,
                 store: Optional[SqlStateStore] = None,
                 clock: Callable[[], datetime] = utcnow,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> None:
        self.config = config
        self.platform = platform
        self.driver = driver
        self.store = store
        self.clock = clock
        self._sleep = sleep
        self.logger = structlog.get_logger().bind(component="runner_controller")

        self.channel: Optional[StatusChannel] = None
        self.timers: Optional[InstanceTimers] = None
        self.registry: Optional[PoolRegistry] = None
        self.token_manager: Optional[TokenLifecycleManager] = None
        self.provisioner: Optional[RunnerProvisioner] = None
        self.supervisor: Optional[HealthSupervisor] = None
        self.engine: Optional[ScalingDecisionEngine] = None
        self.router: Optional[JobRouter] = None

        self._initialized = False
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.logger.info(
            "GitHub runner controller initialized",
            pools=[pool.repository for pool in config.pools],
            profiles=list(config.profiles),
        )

    async def initialize(self) -> None:
        """Build components, restore state, register pools and reconcile with the runtime."""
        if self._initialized:
            return

        if self.driver is None:
            self._initialize_kubernetes_client()
        if self.platform is None:
            self.platform = GitHubPlatformClient(
                api_url=self.config.github.api_url,
                token=self.config.github.token.get_secret_value(),
                request_timeout=self.config.github.request_timeout,
                tls_verify=self.config.github.tls_verify,
                max_requests_per_minute=self.config.github.max_requests_per_minute,
            )
        if self.store is None:
            key = self.config.credentials.encryption_key
            cipher = CredentialCipher(key.get_secret_value() if key else None)
            if cipher.ephemeral:
                self.logger.warning("No credential encryption key configured, stored credentials will not survive a restart")
            self.store = await asyncio.to_thread(SqlStateStore.from_url, self.config.storage.database_url, cipher)

        self._build_components()
        await self.registry.load()
        for pool_config in self.config.pools:
            await self.registry.register_pool(pool_config.to_pool(self.config.default_profile))

        await self.reconcile()
        for pool in await self.registry.list_pools():
            try:
                await self.provisioner.ensure_dedicated(pool.repository)
            except UnknownRepository as e:
                self.engine.block(pool.repository, str(e))

        self._initialized = True

    async def start(self) -> None:
        """
        Start the controller and block until ``stop`` is called.

        Raises:
            RuntimeError: If controller is already running
        """
        if self._running:
            raise RuntimeError("Controller is already running")

        self.logger.info("Starting GitHub runner controller")
        tasks: List[asyncio.Task] = []
        try:
            await self.initialize()

            if self.config.enable_metrics:
                start_http_server(self.config.monitoring_port)
                self.logger.info("Metrics server started", port=self.config.monitoring_port)

            tasks = [
                asyncio.create_task(self._scaling_loop()),
                asyncio.create_task(self._queue_poll_loop()),
            ]
            self._running = True
            self.logger.info("GitHub runner controller started successfully")

            await self._shutdown_event.wait()

        except Exception as e:
            self.logger.error("Failed to start controller", error=str(e))
            raise
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._running = False

    def request_shutdown(self) -> None:
        """Make ``start`` return; safe to call from a signal handler."""
        self._shutdown_event.set()

    async def stop(self, terminate_runners: bool = False) -> None:
        """
        Stop background work and release connections.

        Runners keep running unless ``terminate_runners`` is set; their
        records are persisted and picked up again on the next start.
        """
        self.logger.info("Stopping GitHub runner controller", terminate_runners=terminate_runners)
        self.request_shutdown()

        try:
            if terminate_runners and self.provisioner is not None:
                await self.emergency_shutdown()
            if self.timers is not None:
                self.timers.cancel_all()
            if self.channel is not None:
                await self.channel.close()
            if isinstance(self.platform, GitHubPlatformClient):
                await self.platform.close()
            if self.store is not None:
                self.store.close()
            self.logger.info("GitHub runner controller stopped successfully")
        except Exception as e:
            self.logger.error("Error during controller shutdown", error=str(e))

    async def reconcile(self) -> None:
        """
        Align registry records with what the container runtime actually runs.

        Containers without a record are destroyed. Records whose container
        vanished are marked unhealthy so the supervisor recovers them.
        Timers are re-armed for everything that survived.
        """
        instances = await self.registry.list_instances()
        try:
            containers = await self.driver.list()
        except TransientPlatformError as e:
            self.logger.error("Could not list runner containers, skipping reconciliation", error=str(e))
            containers = None

        if containers is not None:
            known = {instance.handle.name for instance in instances if instance.handle is not None}
            present = {handle.name for handle in containers}
            for handle in containers:
                if handle.name not in known:
                    self.logger.warning("Destroying orphaned runner container", container=handle.name)
                    try:
                        await self.driver.destroy(handle)
                    except TransientPlatformError as e:
                        self.logger.error("Failed to destroy orphaned container", container=handle.name, error=str(e))

            for instance in instances:
                if instance.handle is not None and instance.handle.name not in present and not instance.quarantined:
                    self.logger.warning("Runner container missing", instance_id=instance.id, container=instance.handle.name)
                    await self.registry.update_instance(instance.id, state=RunnerState.UNHEALTHY)

        for instance in await self.registry.list_instances():
            if instance.kind == RunnerKind.DYNAMIC and instance.handle is None:
                # Interrupted launch; the scaling engine will ask again if still needed
                await self.registry.remove_instance(instance.id)
                continue
            if instance.state == RunnerState.DRAINING:
                await self._resume_teardown(instance)
                continue
            if instance.quarantined or instance.handle is None:
                continue
            self.supervisor.track(instance)
            await self.token_manager.restore(instance)

    async def poll_queued_jobs(self) -> List[RoutingDecision]:
        """Fetch each pool's queued jobs from the platform and route them."""
        decisions: List[RoutingDecision] = []
        for pool in await self.registry.list_pools():
            try:
                jobs = await self.platform.list_queued_jobs(pool.repository)
            except (TransientPlatformError, PlatformAuthenticationError, NotFound) as e:
                self.logger.warning("Failed to poll queued jobs", repository=pool.repository, error=str(e))
                continue
            decisions.extend(await self.router.reconcile_snapshot(pool.repository, jobs))
            decisions.extend(await self.router.dispatch_pending(pool.repository))
        return decisions

    async def get_status(self) -> Dict[str, Dict[str, Any]]:
        """Per-repository runner summary."""
        summary = {}
        for pool in await self.registry.list_pools():
            instances = await self.registry.list_instances(pool.repository)
            summary[pool.repository] = {
                "dedicated": sum(1 for i in instances if i.kind == RunnerKind.DEDICATED),
                "dynamic": sum(1 for i in instances if i.kind == RunnerKind.DYNAMIC),
                "busy": sum(1 for i in instances if i.state == RunnerState.BUSY),
                "idle": sum(1 for i in instances if i.state == RunnerState.IDLE),
                "unhealthy": sum(1 for i in instances if i.state == RunnerState.UNHEALTHY),
                "quarantined": sum(1 for i in instances if i.quarantined),
                "total": len(instances),
                "dynamic_ceiling": pool.dynamic_ceiling,
                "pending_jobs": self.router.pending_count(pool.repository),
                "blocked": self.engine.blocked.get(pool.repository),
            }
        return summary

    async def token_status(self) -> Dict[str, Dict[str, Any]]:
        return self.token_manager.status(await self.registry.list_instances())

    async def clear_quarantine(self, instance_id: str) -> RunnerInstance:
        """Operator action: destroy and recreate a quarantined runner."""
        instance = await self.registry.get_instance(instance_id)
        if not instance.quarantined:
            return instance

        await self.registry.update_instance(
            instance_id,
            quarantined=False,
            quarantine_reason=None,
            recovery_attempts=0,
        )
        self.supervisor.release(instance_id)
        self.logger.info("Quarantine cleared", instance_id=instance_id, repository=instance.repository)
        return await self.provisioner.recreate(instance_id, ScalingReason.OPERATOR)

    async def resume_pool(self, repository: str) -> bool:
        """Operator action: lift a configuration block on scale-ups."""
        await self.registry.get_pool(repository)
        return self.engine.resume_pool(repository)

    async def emergency_shutdown(self) -> Dict[str, List[str]]:
        """Terminate every runner of every pool."""
        self.logger.warning("Emergency shutdown, terminating all runners")
        result: Dict[str, List[str]] = {"terminated": [], "failed": []}
        for instance in await self.registry.list_instances():
            try:
                await self.provisioner.teardown(instance.id, ScalingReason.OPERATOR)
                result["terminated"].append(instance.id)
            except RunnerControllerError as e:
                self.logger.error("Failed to terminate runner", instance_id=instance.id, error=str(e))
                result["failed"].append(instance.id)
        return result

    def _build_components(self) -> None:
        self.channel = StatusChannel(sleep=self._sleep)
        self.timers = InstanceTimers(sleep=self._sleep)
        self.registry = PoolRegistry(store=self.store, channel=self.channel)
        self.token_manager = TokenLifecycleManager(
            self.registry, self.platform, self.driver, self.timers, self.config.credentials,
            clock=self.clock, sleep=self._sleep,
        )
        self.provisioner = RunnerProvisioner(
            self.registry, self.platform, self.driver, self.token_manager, self.config, clock=self.clock,
        )
        self.supervisor = HealthSupervisor(
            self.registry, self.platform, self.driver, self.provisioner, self.timers, self.config.health,
            clock=self.clock,
        )
        self.engine = ScalingDecisionEngine(self.registry, self.provisioner, self.config.scaling, clock=self.clock)
        self.router = JobRouter(
            self.registry, self.config.routing, self.provisioner.labels_for,
            request_scale_up=self.engine.request_scale_up, clock=self.clock,
        )
        self.engine.pending_demand = self.router.uncovered_demand

        self.provisioner.add_listener(on_ready=self.token_manager.schedule, on_removed=self.token_manager.cancel)
        self.provisioner.add_listener(on_ready=self.supervisor.track, on_removed=self.supervisor.untrack)
        self.token_manager.bind_recovery(self.provisioner.recreate)
        self.supervisor.add_idle_listener(self.router.dispatch_pending)

    def _initialize_kubernetes_client(self) -> None:
        try:
            kube_config.load_incluster_config()
            self.logger.info("Loaded in-cluster Kubernetes configuration")
        except kube_config.ConfigException:
            kube_config.load_kube_config()
            self.logger.info("Loaded local Kubernetes configuration")

        self.driver = KubernetesContainerDriver(
            namespace=self.config.kubernetes.namespace,
            profiles=self.config.profiles,
            service_account=self.config.kubernetes.service_account,
            call_timeout=self.config.kubernetes.call_timeout,
        )

    async def _resume_teardown(self, instance: RunnerInstance) -> None:
        try:
            await self.provisioner.teardown(instance.id, ScalingReason.IDLE_TIMEOUT, revert_state=RunnerState.IDLE)
        except RunnerControllerError as e:
            self.logger.error("Failed to finish interrupted teardown", instance_id=instance.id, error=str(e))

    async def _scaling_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await self.engine.run_all()
            except Exception as e:
                self.logger.error("Error in scaling loop", error=str(e))
            await self._wait(self.config.scaling.evaluation_interval)

    async def _queue_poll_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await self.poll_queued_jobs()
            except Exception as e:
                self.logger.error("Error in queue poll loop", error=str(e))
            await self._wait(self.config.routing.queue_poll_interval)

    async def _wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
