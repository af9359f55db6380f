"""
Job router tests: eligibility, preference, queueing and snapshot handling.
"""

from datetime import timedelta

import pytest

from conftest import REPO, bring_idle, instances_of, pool_config
from github_runner_controller.controllers.job_router import is_eligible, preference_key
from github_runner_controller.exceptions import NotFound
from github_runner_controller.models.runner import (
    JobRequest,
    RoutingOutcome,
    RunnerInstance,
    RunnerKind,
    RunnerState,
    ScalingReason,
)


def make_job(clock, job_id: str = "1", **kwargs) -> JobRequest:
    kwargs.setdefault("repository", REPO)
    kwargs.setdefault("labels", ["self-hosted", "linux"])
    return JobRequest(job_id=job_id, queued_at=clock(), **kwargs)


async def launch_dynamic(controller):
    async with controller.registry.transaction(REPO) as tx:
        instance = controller.provisioner.reserve(tx, RunnerKind.DYNAMIC)
    return await controller.provisioner.launch(instance.id, ScalingReason.UTILIZATION)


class TestEligibility:
    """Test the routing rules on bare records."""

    def setup_method(self):
        self.runner = RunnerInstance(
            repository=REPO,
            kind=RunnerKind.DYNAMIC,
            state=RunnerState.IDLE,
            labels=["self-hosted", "linux", "x64", "dynamic"],
            blocked_job_types=["release"],
        )

    def test_idle_runner_with_superset_labels_is_eligible(self):
        assert is_eligible(self.runner, JobRequest(job_id="1", repository=REPO, labels=["Linux"]))

    @pytest.mark.parametrize("job", [
        JobRequest(job_id="1", repository=REPO, labels=["gpu"]),
        JobRequest(job_id="1", repository=REPO, anti_affinity=["dynamic"]),
        JobRequest(job_id="1", repository=REPO, job_type="Release"),
    ])
    def test_rule_violations(self, job):
        assert not is_eligible(self.runner, job)

    def test_busy_or_quarantined_runner_is_not_eligible(self):
        job = JobRequest(job_id="1", repository=REPO)

        assert not is_eligible(self.runner.model_copy(update={"state": RunnerState.BUSY}), job)
        assert not is_eligible(self.runner.model_copy(update={"quarantined": True}), job)

    def test_dedicated_preferred_then_most_recently_busy(self, clock):
        dedicated = self.runner.model_copy(update={"kind": RunnerKind.DEDICATED})
        warm = self.runner.model_copy(update={"last_busy_at": clock()})
        cold = self.runner.model_copy(update={"last_busy_at": clock() - timedelta(hours=1)})

        assert min([cold, warm, dedicated], key=preference_key) is dedicated
        assert min([cold, warm], key=preference_key) is warm


class TestRouting:
    """Test routing against a live pool."""

    async def test_job_goes_to_idle_dedicated_runner(self, controller, platform, clock):
        [dedicated] = await instances_of(controller, RunnerKind.DEDICATED)
        dynamic = await launch_dynamic(controller)
        await bring_idle(controller, platform, dedicated.id)
        await bring_idle(controller, platform, dynamic.id)

        decision = await controller.router.route(make_job(clock))

        assert decision.outcome == RoutingOutcome.ASSIGNED
        assert decision.instance_id == dedicated.id
        assigned = await controller.registry.get_instance(dedicated.id)
        assert assigned.state == RunnerState.BUSY
        assert assigned.current_job_id == "1"
        assert assigned.assigned_at == clock()

    async def test_most_recently_busy_dynamic_runner_is_chosen(self, controller, platform, clock):
        [dedicated] = await instances_of(controller, RunnerKind.DEDICATED)
        cold = await bring_idle(controller, platform, (await launch_dynamic(controller)).id)
        warm = await bring_idle(controller, platform, (await launch_dynamic(controller)).id)
        await controller.registry.update_instance(cold.id, last_busy_at=clock() - timedelta(minutes=10))
        await controller.registry.update_instance(warm.id, last_busy_at=clock() - timedelta(minutes=1))
        await controller.registry.update_instance(dedicated.id, state=RunnerState.BUSY)

        decision = await controller.router.route(make_job(clock))

        assert decision.instance_id == warm.id

    async def test_anti_affinity_queues_and_requests_scale_up(self, controller, platform, clock):
        [dedicated] = await instances_of(controller, RunnerKind.DEDICATED)
        await bring_idle(controller, platform, dedicated.id)

        decision = await controller.router.route(make_job(clock, anti_affinity=["dedicated"]))

        assert decision.outcome == RoutingOutcome.QUEUED
        assert decision.reason == "scale-up accepted"
        assert controller.router.pending_count(REPO) == 1
        assert (await controller.registry.get_pool(REPO)).dynamic_count == 1

    async def test_unknown_labels_are_unschedulable(self, controller, clock):
        decision = await controller.router.route(make_job(clock, labels=["gpu"]))

        assert decision.outcome == RoutingOutcome.UNSCHEDULABLE
        assert controller.router.pending_count(REPO) == 0
        assert (await controller.registry.get_pool(REPO)).dynamic_count == 0

    async def test_unknown_repository_raises(self, controller, clock):
        with pytest.raises(NotFound):
            await controller.router.route(make_job(clock, repository="acme/other"))

    async def test_reconcile_snapshot_reports_unschedulable_once(self, controller, clock):
        job = make_job(clock, labels=["gpu"])

        first = await controller.router.reconcile_snapshot(REPO, [job])
        second = await controller.router.reconcile_snapshot(REPO, [job])

        assert [d.outcome for d in first] == [RoutingOutcome.UNSCHEDULABLE]
        assert second == []


class TestBlockedJobTypes:
    """Test a pool that refuses a job type."""

    @pytest.fixture
    def pool_settings(self):
        return pool_config(blocked_job_types=["pull_request"])

    async def test_blocked_job_type_is_unschedulable(self, controller, platform, clock):
        [dedicated] = await instances_of(controller, RunnerKind.DEDICATED)
        await bring_idle(controller, platform, dedicated.id)

        decision = await controller.router.route(make_job(clock, job_type="pull_request"))
        allowed = await controller.router.route(make_job(clock, job_id="2", job_type="push"))

        assert decision.outcome == RoutingOutcome.UNSCHEDULABLE
        assert allowed.outcome == RoutingOutcome.ASSIGNED


class TestQueueing:
    """Test the waiting queue of a pool that cannot grow."""

    @pytest.fixture
    def pool_settings(self):
        return pool_config(dynamic_ceiling=0)

    async def test_full_pool_reports_backpressure(self, controller, clock):
        [dedicated] = await instances_of(controller, RunnerKind.DEDICATED)
        await controller.registry.update_instance(dedicated.id, state=RunnerState.BUSY)

        decision = await controller.router.route(make_job(clock))

        assert decision.outcome == RoutingOutcome.BACKPRESSURE
        assert controller.router.pending_count(REPO) == 1

    async def test_idle_runner_takes_oldest_waiting_job(self, controller, platform, clock):
        [dedicated] = await instances_of(controller, RunnerKind.DEDICATED)
        await controller.router.route(make_job(clock, job_id="1"))
        await controller.router.route(make_job(clock, job_id="2"))

        await bring_idle(controller, platform, dedicated.id)

        busy = await controller.registry.get_instance(dedicated.id)
        assert busy.state == RunnerState.BUSY
        assert busy.current_job_id == "1"
        assert [job.job_id for job in controller.router.pending_jobs(REPO)] == ["2"]

    async def test_each_spare_runner_covers_one_waiting_job(self, controller, clock):
        await controller.router.route(make_job(clock, job_id="1"))
        await controller.router.route(make_job(clock, job_id="2"))
        growable = (await controller.registry.get_pool(REPO)).model_copy(update={"dynamic_ceiling": 3})
        instances = await controller.registry.list_instances(REPO)

        # The provisioning dedicated runner takes one of the two
        assert controller.router.uncovered_demand(growable, instances) == 1
        assert controller.router.uncovered_demand(growable, []) == 2
        assert controller.router.uncovered_demand(await controller.registry.get_pool(REPO), []) == 0

    async def test_stale_jobs_expire(self, controller, clock):
        await controller.router.route(make_job(clock))
        clock.advance(24 * 3600 + 1)

        [decision] = await controller.router.dispatch_pending(REPO)

        assert decision.outcome == RoutingOutcome.EXPIRED
        assert controller.router.pending_count(REPO) == 0

    async def test_ingest_skips_known_jobs(self, controller, clock):
        job = make_job(clock)

        assert len(await controller.router.ingest([job])) == 1
        assert await controller.router.ingest([job]) == []

    async def test_snapshot_forgets_jobs_that_left_the_platform_queue(self, controller, clock):
        await controller.router.reconcile_snapshot(REPO, [make_job(clock, job_id="1"), make_job(clock, job_id="2")])

        decisions = await controller.router.reconcile_snapshot(REPO, [make_job(clock, job_id="2")])

        assert decisions == []
        assert [job.job_id for job in controller.router.pending_jobs(REPO)] == ["2"]
