"""Tests for the idle reaper."""

import asyncio

from gateway_service.reaper import IdleReaper
from gateway_service.supervisor.instance import InstanceState


async def test_busy_instances_are_never_reaped(supervisor, fake_clock):
    handle = await supervisor.ensure_running("infra", "gate")
    fake_clock.advance(10_000)
    reaper = IdleReaper(supervisor, idle_timeout=60, interval=5, clock=fake_clock)

    assert await reaper.reap_once() == []
    assert supervisor.get_instance(handle.instance_id).state == InstanceState.HEALTHY
    supervisor.release_handle(handle)


async def test_idle_timeout_counts_from_last_completed_request(supervisor, fake_clock):
    handle = await supervisor.ensure_running("infra", "docker-ps")
    fake_clock.advance(50)
    supervisor.release_handle(handle)
    reaper = IdleReaper(supervisor, idle_timeout=60, interval=5, clock=fake_clock)

    fake_clock.advance(30)
    assert await reaper.reap_once() == []

    fake_clock.advance(31)
    assert await reaper.reap_once() == [handle.instance_id]
    assert supervisor.instances() == []


async def test_sweep_reports_dead_instances(supervisor, fake_runtime, fake_clock):
    handle = await supervisor.ensure_running("infra", "docker-ps")
    supervisor.release_handle(handle)
    fake_runtime.backend(handle.instance_id).exited = True
    reaper = IdleReaper(supervisor, idle_timeout=60, interval=5, clock=fake_clock)

    assert await reaper.reap_once() == []
    assert supervisor.get_instance(handle.instance_id) is None


async def test_start_and_stop(supervisor, fake_clock):
    handle = await supervisor.ensure_running("infra", "docker-ps")
    supervisor.release_handle(handle)
    fake_clock.advance(120)
    reaper = IdleReaper(supervisor, idle_timeout=60, interval=0.01, clock=fake_clock)

    reaper.start()
    assert reaper.running
    for _ in range(100):
        if not supervisor.instances():
            break
        await asyncio.sleep(0.01)
    await reaper.stop()

    assert not reaper.running
    assert supervisor.instances() == []
