"""
Shared fixtures for GitHub Runner Controller tests.

Fakes stand in for the GitHub API, the Kubernetes runtime, the clock and
sleeping, so nothing here needs a network or a cluster.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from github_runner_controller.controllers.runner_controller import GitHubRunnerController
from github_runner_controller.exceptions import TransientPlatformError
from github_runner_controller.models.configuration import ControllerConfiguration
from github_runner_controller.models.runner import (
    ContainerHandle,
    ContainerSpec,
    ContainerStatus,
    Credential,
    JobRequest,
    PlatformRunner,
    RunnerInstance,
    RunnerKind,
)
from github_runner_controller.storage.state_store import SqlStateStore
from github_runner_controller.utils.security import CredentialCipher

REPO = "acme/widgets"
START = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class ParkedSleep:
    """Sleep that never returns: timers stay armed but never fire on their own."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.Event().wait()


class ClockSleep:
    """Sleep that returns at once after moving the fake clock forward."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        self.clock.advance(delay)


class FakePlatform:
    """In-memory GitHub: registration tokens, queued jobs and runner presence."""

    def __init__(self, clock: FakeClock, token_ttl: float = 3600) -> None:
        self.clock = clock
        self.token_ttl = token_ttl
        self.issue_failures = 0
        self.issue_error: Optional[Exception] = None
        self.issue_attempts = 0
        self.issued: List[str] = []
        self.queued: Dict[str, List[JobRequest]] = {}
        self.runners: Dict[str, PlatformRunner] = {}
        self.removed: List[str] = []
        self.find_error: Optional[Exception] = None
        self._next_id = 1

    async def issue_registration_token(self, repository: str, runner_name: str) -> Credential:
        self.issue_attempts += 1
        if self.issue_error is not None:
            raise self.issue_error
        if self.issue_failures > 0:
            self.issue_failures -= 1
            raise TransientPlatformError("rate limited")
        self.issued.append(runner_name)
        now = self.clock()
        return Credential(
            value=f"token-{len(self.issued)}",
            issued_at=now,
            expires_at=now + timedelta(seconds=self.token_ttl),
            repository=repository,
            runner_name=runner_name,
        )

    async def list_queued_jobs(self, repository: str) -> List[JobRequest]:
        return list(self.queued.get(repository, []))

    async def find_runner(self, repository: str, runner_name: str) -> Optional[PlatformRunner]:
        if self.find_error is not None:
            raise self.find_error
        return self.runners.get(runner_name)

    async def remove_runner(self, repository: str, runner_name: str) -> bool:
        self.removed.append(runner_name)
        self.runners.pop(runner_name, None)
        return True

    def set_runner(self, runner_name: str, status: str = "online", busy: bool = False) -> None:
        existing = self.runners.get(runner_name)
        runner_id = existing.id if existing else self._next_id
        self._next_id += 1
        self.runners[runner_name] = PlatformRunner(id=runner_id, name=runner_name, status=status, busy=busy)


class FakeDriver:
    """In-memory container runtime with idempotent destroy."""

    def __init__(self) -> None:
        self.containers: Dict[str, ContainerHandle] = {}
        self.statuses: Dict[str, ContainerStatus] = {}
        self.specs: List[ContainerSpec] = []
        self.destroyed: List[str] = []
        self.rotations: List[str] = []
        self.create_error: Optional[Exception] = None
        self.destroy_error: Optional[Exception] = None
        self.create_gate: Optional[asyncio.Event] = None

    async def create(self, spec: ContainerSpec) -> ContainerHandle:
        if self.create_gate is not None:
            await self.create_gate.wait()
        if self.create_error is not None:
            raise self.create_error
        handle = ContainerHandle(name=spec.name, namespace="runners", secret_name=f"{spec.name}-token")
        self.specs.append(spec)
        self.containers[spec.name] = handle
        self.statuses[spec.name] = ContainerStatus.RUNNING
        return handle

    async def destroy(self, handle: ContainerHandle) -> None:
        if self.destroy_error is not None:
            raise self.destroy_error
        self.destroyed.append(handle.name)
        self.containers.pop(handle.name, None)
        self.statuses.pop(handle.name, None)

    async def list(self, selector: Optional[Dict[str, str]] = None) -> List[ContainerHandle]:
        return list(self.containers.values())

    async def status(self, handle: ContainerHandle) -> ContainerStatus:
        if handle.name not in self.containers:
            return ContainerStatus.ABSENT
        return self.statuses.get(handle.name, ContainerStatus.RUNNING)

    async def rotate_credential(self, handle: ContainerHandle, credential: Credential) -> None:
        self.rotations.append(handle.name)


def make_config(pools: Optional[List[dict]] = None, **overrides) -> ControllerConfiguration:
    """Controller configuration with one pool and test-friendly defaults."""
    if pools is None:
        pools = [{"repository": REPO}]
    data = {
        "github": {"token": "ghp_test"},
        "storage": {"database_url": "sqlite://"},
        "pools": pools,
        "enable_metrics": False,
    }
    data.update(overrides)
    return ControllerConfiguration(**data)


def pool_config(**overrides) -> dict:
    pool = {
        "repository": REPO,
        "dedicated_runners": 1,
        "dynamic_ceiling": 3,
        "idle_timeout": 300,
        "cooldown": 60,
    }
    pool.update(overrides)
    return pool


async def instances_of(controller: GitHubRunnerController, kind: RunnerKind, repository: str = REPO) -> List[RunnerInstance]:
    return [i for i in await controller.registry.list_instances(repository) if i.kind == kind]


async def bring_idle(controller: GitHubRunnerController, platform: FakePlatform, instance_id: str) -> RunnerInstance:
    """Report the runner online on the platform and heartbeat it to idle."""
    instance = await controller.registry.get_instance(instance_id)
    platform.set_runner(instance.runner_name)
    await controller.supervisor.check_instance(instance_id)
    await controller.supervisor.check_instance(instance_id)
    return await controller.registry.get_instance(instance_id)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def platform(clock):
    return FakePlatform(clock)


@pytest.fixture
def driver():
    return FakeDriver()


@pytest.fixture
def parked_sleep():
    return ParkedSleep()


@pytest.fixture
def cipher():
    return CredentialCipher()


@pytest.fixture
def pool_settings():
    """Pool used by the ``controller`` fixture; override in a test module to change it."""
    return pool_config()


@pytest_asyncio.fixture
async def controller(pool_settings, platform, driver, clock, parked_sleep, cipher):
    """Initialized controller backed by fakes and an in-memory store."""
    store = SqlStateStore.from_url("sqlite://", cipher)
    controller = GitHubRunnerController(
        make_config(pools=[pool_settings]),
        platform=platform,
        driver=driver,
        store=store,
        clock=clock,
        sleep=parked_sleep,
    )
    await controller.initialize()
    controller.token_manager._sleep = ClockSleep(clock)
    yield controller
    await controller.stop()
