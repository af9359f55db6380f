"""
End-to-end fleet scenarios against the fake platform and runtime.

Each test drives the controller the way the background loops would:
queue polls, heartbeats, refresh timers and scaling cycles, one step at
a time on a fake clock.
"""

from conftest import REPO, bring_idle, instances_of
from github_runner_controller.models.runner import (
    EventOutcome,
    JobRequest,
    RoutingOutcome,
    RunnerKind,
    RunnerState,
    ScaleUpResult,
    ScalingAction,
    ScalingReason,
)


def job(clock, job_id: str) -> JobRequest:
    return JobRequest(job_id=job_id, repository=REPO, labels=["self-hosted", "linux"], queued_at=clock())


class TestFleetScenarios:
    """Test the controller's behaviour across components."""

    async def test_second_job_triggers_single_scale_up(self, controller, platform, clock):
        [dedicated] = await instances_of(controller, RunnerKind.DEDICATED)
        await bring_idle(controller, platform, dedicated.id)
        platform.queued[REPO] = [job(clock, "1"), job(clock, "2")]

        decisions = {d.job_id: d for d in await controller.poll_queued_jobs()}

        assert decisions["1"].outcome == RoutingOutcome.ASSIGNED
        assert decisions["1"].instance_id == dedicated.id
        assert decisions["2"].outcome == RoutingOutcome.QUEUED
        pool = await controller.registry.get_pool(REPO)
        assert pool.dynamic_count == 1
        scale_ups = [
            e for e in await controller.registry.scaling_events(REPO)
            if e.action == ScalingAction.SCALE_UP and e.reason == ScalingReason.JOB_QUEUED
        ]
        assert len(scale_ups) == 1

        # The provisioning runner already covers the waiting job
        assert (await controller.engine.run_cycle(REPO)).scale_up == ScaleUpResult.NO_DEMAND

        [dynamic] = await instances_of(controller, RunnerKind.DYNAMIC)
        busy = await bring_idle(controller, platform, dynamic.id)
        assert busy.state == RunnerState.BUSY
        assert busy.current_job_id == "2"
        assert controller.router.pending_count(REPO) == 0

    async def test_idle_dynamic_runner_reaped_dedicated_kept(self, controller, platform, clock):
        [dedicated] = await instances_of(controller, RunnerKind.DEDICATED)
        await bring_idle(controller, platform, dedicated.id)
        async with controller.registry.transaction(REPO) as tx:
            reserved = controller.provisioner.reserve(tx, RunnerKind.DYNAMIC)
        await controller.provisioner.launch(reserved.id, ScalingReason.UTILIZATION)
        await bring_idle(controller, platform, reserved.id)

        clock.advance(360)
        result = await controller.engine.run_cycle(REPO)

        assert result.scaled_down == reserved.id
        for _ in range(5):
            clock.advance(3600)
            await controller.engine.run_cycle(REPO)
        remaining = await controller.registry.list_instances(REPO)
        assert [instance.id for instance in remaining] == [dedicated.id]
        assert (await controller.registry.get_pool(REPO)).dynamic_count == 0

    async def test_failed_refresh_recreates_before_expiry(self, controller, platform, clock, driver):
        [dedicated] = await instances_of(controller, RunnerKind.DEDICATED)
        clock.advance(45 * 60)
        platform.issue_failures = 3

        await controller.token_manager.refresh(dedicated.id)

        recreated = await controller.registry.get_instance(dedicated.id)
        assert clock() < dedicated.credential.expires_at
        assert recreated.generation == dedicated.generation + 1
        assert recreated.credential.expires_at > clock()
        assert dedicated.runner_name in driver.destroyed
        assert len(driver.specs) == 2

    async def test_offline_dynamic_runner_replaced_by_nothing(self, controller, platform, driver):
        async with controller.registry.transaction(REPO) as tx:
            reserved = controller.provisioner.reserve(tx, RunnerKind.DYNAMIC)
        dynamic = await controller.provisioner.launch(reserved.id, ScalingReason.UTILIZATION)
        await bring_idle(controller, platform, dynamic.id)
        platform.set_runner(dynamic.runner_name, status="offline")

        await controller.supervisor.check_instance(dynamic.id)
        await controller.supervisor.check_instance(dynamic.id)

        assert await controller.registry.find_instance(dynamic.id) is None
        assert (await controller.registry.get_pool(REPO)).dynamic_count == 0
        assert len(driver.specs) == 2
        latest = (await controller.registry.scaling_events(REPO))[0]
        assert (latest.action, latest.reason, latest.outcome) == (
            ScalingAction.RETIRE, ScalingReason.RECOVERY, EventOutcome.SUCCEEDED,
        )
