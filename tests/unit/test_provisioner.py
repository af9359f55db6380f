"""
Runner provisioner tests: launch, teardown and in-place recreation.
"""

import asyncio

import pytest

from conftest import REPO, bring_idle, instances_of
from github_runner_controller.controllers.health_supervisor import HEARTBEAT_TIMER
from github_runner_controller.controllers.token_manager import REFRESH_TIMER
from github_runner_controller.exceptions import (
    ConcurrencyConflict,
    ContainerCreateError,
    CreateFailure,
    TransientPlatformError,
)
from github_runner_controller.models.runner import (
    EventOutcome,
    RunnerKind,
    RunnerState,
    ScalingAction,
    ScalingReason,
)


async def reserve_dynamic(controller):
    async with controller.registry.transaction(REPO) as tx:
        instance = controller.provisioner.reserve(tx, RunnerKind.DYNAMIC)
    return instance


class TestProvisioning:
    """Test the shared create and destroy paths."""

    async def test_initialization_launches_dedicated_runner(self, controller, driver, platform):
        [dedicated] = await instances_of(controller, RunnerKind.DEDICATED)

        assert dedicated.slot == 0
        assert dedicated.runner_name == "gh-widgets-dedicated-0"
        assert dedicated.handle is not None
        assert dedicated.credential is not None
        assert driver.specs[0].labels == ["self-hosted", "linux", "x64", "dedicated", "widgets"]
        assert platform.issued == ["gh-widgets-dedicated-0"]
        assert controller.timers.is_scheduled(dedicated.id, REFRESH_TIMER)
        assert controller.timers.is_scheduled(dedicated.id, HEARTBEAT_TIMER)

        [event] = await controller.registry.scaling_events(REPO)
        assert event.reason == ScalingReason.INITIALIZATION
        assert event.outcome == EventOutcome.SUCCEEDED

    async def test_launch_failure_drops_dynamic_reservation(self, controller, driver):
        driver.create_error = ContainerCreateError(CreateFailure.RESOURCE_EXHAUSTED, "quota")
        instance = await reserve_dynamic(controller)

        with pytest.raises(ContainerCreateError):
            await controller.provisioner.launch(instance.id, ScalingReason.UTILIZATION)

        assert await controller.registry.find_instance(instance.id) is None
        assert (await controller.registry.get_pool(REPO)).dynamic_count == 0
        latest = (await controller.registry.scaling_events(REPO))[0]
        assert latest.outcome == EventOutcome.FAILED
        assert latest.action == ScalingAction.SCALE_UP

    async def test_launch_failure_keeps_dedicated_slot(self, controller, driver):
        [dedicated] = await instances_of(controller, RunnerKind.DEDICATED)
        driver.create_error = TransientPlatformError("api down")

        with pytest.raises(TransientPlatformError):
            await controller.provisioner.recreate(dedicated.id, ScalingReason.RECOVERY)

        slot = await controller.registry.get_instance(dedicated.id)
        assert slot.state == RunnerState.PROVISIONING
        assert slot.handle is None

        driver.create_error = None
        [relaunched] = await controller.provisioner.ensure_dedicated(REPO)
        assert relaunched.id == dedicated.id
        assert relaunched.handle is not None

    async def test_concurrent_launch_of_same_record_is_rejected(self, controller, driver):
        driver.create_gate = asyncio.Event()
        instance = await reserve_dynamic(controller)
        first = asyncio.create_task(controller.provisioner.launch(instance.id, ScalingReason.UTILIZATION))
        await asyncio.sleep(0)

        with pytest.raises(ConcurrencyConflict):
            await controller.provisioner.launch(instance.id, ScalingReason.UTILIZATION)

        driver.create_gate.set()
        launched = await first
        assert launched.handle is not None

    async def test_container_of_removed_record_is_discarded(self, controller, driver):
        driver.create_gate = asyncio.Event()
        instance = await reserve_dynamic(controller)
        task = asyncio.create_task(controller.provisioner.launch(instance.id, ScalingReason.UTILIZATION))
        await asyncio.sleep(0)

        await controller.registry.remove_instance(instance.id)
        driver.create_gate.set()

        with pytest.raises(ConcurrencyConflict):
            await task
        assert instance.runner_name in driver.destroyed
        assert instance.runner_name not in driver.containers

    async def test_teardown_destroys_before_forgetting(self, controller, driver, platform):
        instance = await reserve_dynamic(controller)
        await controller.provisioner.launch(instance.id, ScalingReason.UTILIZATION)
        await bring_idle(controller, platform, instance.id)

        assert await controller.provisioner.teardown(instance.id, ScalingReason.IDLE_TIMEOUT)

        assert driver.destroyed == [instance.runner_name]
        assert platform.removed == [instance.runner_name]
        assert await controller.registry.find_instance(instance.id) is None
        assert not controller.timers.is_scheduled(instance.id, REFRESH_TIMER)
        assert not controller.timers.is_scheduled(instance.id, HEARTBEAT_TIMER)

    async def test_teardown_twice_records_one_event(self, controller, driver):
        instance = await reserve_dynamic(controller)
        await controller.provisioner.launch(instance.id, ScalingReason.UTILIZATION)

        assert await controller.provisioner.teardown(instance.id, ScalingReason.OPERATOR)
        assert not await controller.provisioner.teardown(instance.id, ScalingReason.OPERATOR)

        downs = [e for e in await controller.registry.scaling_events(REPO) if e.action == ScalingAction.RETIRE]
        assert len(downs) == 1

    async def test_failed_destroy_keeps_record(self, controller, driver):
        instance = await reserve_dynamic(controller)
        await controller.provisioner.launch(instance.id, ScalingReason.UTILIZATION)
        await controller.registry.update_instance(instance.id, state=RunnerState.DRAINING)
        driver.destroy_error = TransientPlatformError("timeout")

        with pytest.raises(TransientPlatformError):
            await controller.provisioner.teardown(instance.id, ScalingReason.IDLE_TIMEOUT, revert_state=RunnerState.IDLE)

        kept = await controller.registry.get_instance(instance.id)
        assert kept.state == RunnerState.IDLE
        latest = (await controller.registry.scaling_events(REPO))[0]
        assert latest.outcome == EventOutcome.FAILED

    async def test_recreate_bumps_generation_in_place(self, controller, driver):
        [dedicated] = await instances_of(controller, RunnerKind.DEDICATED)

        recreated = await controller.provisioner.recreate(dedicated.id, ScalingReason.RECOVERY)

        assert recreated.id == dedicated.id
        assert recreated.slot == 0
        assert recreated.generation == 1
        assert recreated.runner_name == "gh-widgets-dedicated-0-r1"
        assert dedicated.runner_name in driver.destroyed
        assert recreated.handle.name == "gh-widgets-dedicated-0-r1"
        reasons = [(e.action, e.reason) for e in await controller.registry.scaling_events(REPO)]
        assert (ScalingAction.RETIRE, ScalingReason.RECOVERY) in reasons
        assert (ScalingAction.PROVISION, ScalingReason.RECOVERY) in reasons

    async def test_recovery_does_not_start_cooldown(self, controller):
        [dedicated] = await instances_of(controller, RunnerKind.DEDICATED)

        await controller.provisioner.recreate(dedicated.id, ScalingReason.RECOVERY)

        pool = await controller.registry.get_pool(REPO)
        assert pool.last_scale_up_at is None
        assert pool.last_scale_down_at is None

    async def test_only_load_driven_launches_are_logged_as_scale_ups(self, controller, clock):
        [dedicated] = await instances_of(controller, RunnerKind.DEDICATED)
        dynamic = await reserve_dynamic(controller)
        await controller.provisioner.launch(dynamic.id, ScalingReason.UTILIZATION)
        clock.advance(10)
        await controller.provisioner.recreate(dedicated.id, ScalingReason.RECOVERY)

        events = await controller.registry.scaling_events(REPO)
        scale_ups = [(e.reason, e.instance_id) for e in events if e.action == ScalingAction.SCALE_UP]
        provisioned = [(e.reason, e.instance_id) for e in events if e.action == ScalingAction.PROVISION]

        assert scale_ups == [(ScalingReason.UTILIZATION, dynamic.id)]
        assert provisioned == [
            (ScalingReason.RECOVERY, dedicated.id),
            (ScalingReason.INITIALIZATION, dedicated.id),
        ]

    async def test_ensure_dedicated_removes_surplus_slots(self, controller, driver):
        pool = await controller.registry.get_pool(REPO)
        await controller.registry.register_pool(pool.model_copy(update={"dedicated_count": 2}))
        launched = await controller.provisioner.ensure_dedicated(REPO)
        assert [instance.slot for instance in launched] == [1]

        await controller.registry.register_pool(pool.model_copy(update={"dedicated_count": 1}))
        await controller.provisioner.ensure_dedicated(REPO)

        slots = sorted(i.slot for i in await instances_of(controller, RunnerKind.DEDICATED))
        assert slots == [0]
        assert "gh-widgets-dedicated-1" in driver.destroyed
