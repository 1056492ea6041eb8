import asyncio

import pytest

from conftest import FakeRegistry, registry_down, wait_until
from poolsync.models.schemas import ApplyAction, PollingState, PoolSpec
from poolsync.services.polling import PollingRegistry
from poolsync.services.pool_applier import PoolApplier
from poolsync.services.reconciler import ReconciliationLoop, TickOutcome

pytestmark = pytest.mark.anyio

SPEC = PoolSpec(name="poolA", load_balancing_mode="round-robin", monitor="http")


def _loop(tmsh, registry, interval_s=10.0, polling=None, **kwargs):
    return ReconciliationLoop(
        SPEC,
        "svcA",
        registry,
        PoolApplier(tmsh),
        polling if polling is not None else PollingRegistry(),
        interval_s,
        grace_s=kwargs.pop("grace_s", 0),
        **kwargs,
    )


# --- single cycles ----------------------------------------------------------

async def test_creates_pool_from_registry_value(tmsh):
    loop = _loop(tmsh, FakeRegistry("10.0.0.1:8080,10.0.0.2:8080\n"))
    assert await loop.run_once() == TickOutcome.APPLIED
    assert loop.last_action == ApplyAction.CREATED
    assert tmsh.pools["poolA"]["members"] == ("10.0.0.1:8080", "10.0.0.2:8080")
    assert ("create", "ltm", "pool", "poolA") == tmsh.calls[-1][:4]


async def test_empty_value_deletes_existing_pool(tmsh):
    tmsh.pools["poolA"] = {"monitor": "http", "mode": "round-robin", "members": ("10.0.0.1:8080",)}
    loop = _loop(tmsh, FakeRegistry(""))
    assert await loop.run_once() == TickOutcome.APPLIED
    assert loop.last_action == ApplyAction.DELETED
    assert "poolA" not in tmsh.pools


async def test_registry_failure_skips_cycle(tmsh):
    tmsh.pools["poolA"] = {"monitor": "http", "mode": "round-robin", "members": ("10.0.0.1:8080",)}
    before = dict(tmsh.pools)
    loop = _loop(tmsh, FakeRegistry(error=registry_down()))
    assert await loop.run_once() == TickOutcome.REGISTRY_ERROR
    assert tmsh.calls == []
    assert tmsh.pools == before


async def test_apply_failure_is_absorbed(tmsh):
    tmsh.fail("create")
    loop = _loop(tmsh, FakeRegistry("10.0.0.1:8080"))
    assert await loop.run_once() == TickOutcome.APPLY_ERROR
    assert "poolA" not in tmsh.pools


async def test_out_of_band_edits_are_overwritten(tmsh):
    loop = _loop(tmsh, FakeRegistry("10.0.0.1:8080"))
    await loop.run_once()
    tmsh.pools["poolA"]["members"] = ("6.6.6.6:666", "10.0.0.1:8080")
    await loop.run_once()
    assert tmsh.pools["poolA"]["members"] == ("10.0.0.1:8080",)


async def test_cycle_after_stop_does_no_external_work(tmsh):
    registry = FakeRegistry("10.0.0.1:8080")
    loop = _loop(tmsh, registry)
    loop.stop()
    assert await loop.run_once() == TickOutcome.SKIPPED
    assert registry.reads == 0
    assert tmsh.calls == []


# --- running loop -----------------------------------------------------------

async def test_loop_registers_ticks_and_stops_with_cleanup(tmsh):
    polling = PollingRegistry()
    registry = FakeRegistry("10.0.0.1:8080")
    loop = _loop(tmsh, registry, interval_s=0.01, polling=polling)
    loop.start()
    assert polling.is_active("poolA")
    assert polling.get("poolA").name == loop.instance_name

    await wait_until(lambda: loop.ticks >= 3)
    assert "poolA" in tmsh.pools

    loop.stop(cleanup=True)
    await asyncio.wait_for(loop.wait(), timeout=2)
    assert not polling.is_active("poolA")
    assert loop.cleanup_attempts == 1
    assert "poolA" not in tmsh.pools
    assert registry.closed


async def test_at_most_one_tick_after_stop(tmsh):
    loop = _loop(tmsh, FakeRegistry("10.0.0.1:8080"), interval_s=0.001)
    loop.start()
    await wait_until(lambda: loop.ticks >= 2)
    ticks_at_stop = loop.ticks
    loop.stop(cleanup=True)
    await asyncio.wait_for(loop.wait(), timeout=2)
    assert loop.ticks <= ticks_at_stop + 1
    assert tmsh.verbs().count("delete") == 1


async def test_final_delete_waits_for_grace_delay(tmsh):
    loop = _loop(tmsh, FakeRegistry("10.0.0.1:8080"), interval_s=10, grace_s=0.2)
    loop.start()
    await wait_until(lambda: "poolA" in tmsh.pools)
    loop.stop(cleanup=True)
    await asyncio.sleep(0.05)
    assert "poolA" in tmsh.pools
    await asyncio.wait_for(loop.wait(), timeout=2)
    assert "poolA" not in tmsh.pools


async def test_handover_during_grace_delay_cancels_final_delete(tmsh):
    loop = _loop(tmsh, FakeRegistry("10.0.0.1:8080"), interval_s=10, grace_s=5)
    loop.start()
    await wait_until(lambda: "poolA" in tmsh.pools)
    loop.stop(cleanup=True)
    await asyncio.sleep(0.05)
    loop.stop(cleanup=False)
    await asyncio.wait_for(loop.wait(), timeout=1)
    assert "poolA" in tmsh.pools
    assert "delete" not in tmsh.verbs()
    assert loop.cleanup_attempts == 0


async def test_first_cycle_waits_for_earlier_loop(tmsh):
    tmsh.delays["create"] = 0.2
    polling = PollingRegistry()
    old = _loop(tmsh, FakeRegistry("10.0.0.1:8080"), polling=polling)
    old.start()
    await wait_until(lambda: "create" in tmsh.verbs())
    old.stop(cleanup=False)

    new = _loop(tmsh, FakeRegistry("10.0.0.2:8080"), polling=polling, after=[old])
    new.start()
    await wait_until(lambda: new.last_outcome is TickOutcome.APPLIED)
    assert old.task.done()
    assert tmsh.max_in_flight == 1
    assert tmsh.verbs() == ["list", "create", "list", "modify"]
    assert tmsh.pools["poolA"]["members"] == ("10.0.0.2:8080",)
    new.stop(cleanup=False)
    await asyncio.wait_for(new.wait(), timeout=1)


async def test_stop_without_cleanup_leaves_pool(tmsh):
    loop = _loop(tmsh, FakeRegistry("10.0.0.1:8080"), interval_s=0.01)
    loop.start()
    await wait_until(lambda: "poolA" in tmsh.pools)
    loop.stop(cleanup=False)
    await asyncio.wait_for(loop.wait(), timeout=2)
    assert "poolA" in tmsh.pools
    assert loop.cleanup_attempts == 0


async def test_failed_final_delete_is_not_raised(tmsh):
    tmsh.fail("delete")
    loop = _loop(tmsh, FakeRegistry("10.0.0.1:8080"), interval_s=0.01)
    loop.start()
    await wait_until(lambda: "poolA" in tmsh.pools)
    loop.stop(cleanup=True)
    await asyncio.wait_for(loop.wait(), timeout=2)
    assert loop.cleanup_attempts == 1
    assert "poolA" in tmsh.pools


async def test_interval_paces_the_next_cycle(tmsh):
    loop = _loop(tmsh, FakeRegistry("10.0.0.1:8080"), interval_s=30)
    loop.start()
    await wait_until(lambda: loop.ticks == 1)
    await asyncio.sleep(0.05)
    assert loop.ticks == 1
    loop.stop(cleanup=False)
    await asyncio.wait_for(loop.wait(), timeout=2)


async def test_loop_survives_registry_outage(tmsh):
    registry = FakeRegistry(error=registry_down())
    loop = _loop(tmsh, registry, interval_s=0.01)
    loop.start()
    await wait_until(lambda: registry.reads >= 3)
    assert loop.last_outcome == TickOutcome.REGISTRY_ERROR
    registry.error = None
    registry.value = "10.0.0.9:80"
    await wait_until(lambda: "poolA" in tmsh.pools)
    loop.stop(cleanup=False)
    await asyncio.wait_for(loop.wait(), timeout=2)


async def test_loop_survives_unexpected_errors(tmsh):
    registry = FakeRegistry(error=RuntimeError("boom"))
    loop = _loop(tmsh, registry, interval_s=0.01)
    loop.start()
    await wait_until(lambda: registry.reads >= 3)
    assert loop.is_running
    loop.stop(cleanup=False)
    await asyncio.wait_for(loop.wait(), timeout=2)


async def test_updating_entry_becomes_polling_after_first_apply(tmsh):
    polling = PollingRegistry()
    loop = _loop(tmsh, FakeRegistry("10.0.0.1:8080"), polling=polling, initial_state=PollingState.UPDATING)
    loop.start()
    assert polling.get("poolA").state == PollingState.UPDATING
    await wait_until(lambda: loop.ticks == 1 and loop.last_outcome is not None)
    assert polling.get("poolA").state == PollingState.POLLING
    loop.stop(cleanup=False)
    await asyncio.wait_for(loop.wait(), timeout=2)


async def test_on_exit_callback_runs(tmsh):
    exited = []
    loop = _loop(tmsh, FakeRegistry(""), interval_s=0.01, on_exit=exited.append)
    loop.start()
    loop.stop(cleanup=False)
    await asyncio.wait_for(loop.wait(), timeout=2)
    assert exited == [loop]
