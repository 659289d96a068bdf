import asyncio
import time

import pytest

from flatten_service.conversion import (
    DelayedTaskScheduler,
    DuplicateArtifactError,
    ExpirationRegistry,
    NotFoundError,
)
from flatten_service.conversion.adapters import SystemClock


def _registry(store, clock):
    scheduler = DelayedTaskScheduler(clock)
    return ExpirationRegistry(store, clock, scheduler), scheduler


def test_register_returns_absolute_expiry(memory_store, clock):
    registry, scheduler = _registry(memory_store, clock)

    expires_at = registry.register("a.pdf", 300)

    assert expires_at == clock.now() + 300
    assert "a.pdf" in registry
    assert scheduler.next_due() == expires_at


def test_time_remaining_is_bounded_by_ttl_right_after_register(memory_store, clock):
    registry, _ = _registry(memory_store, clock)
    registry.register("a.pdf", 300)

    remaining = registry.time_remaining("a.pdf")

    assert 0 < remaining <= 300


def test_time_remaining_for_unknown_id_is_not_found(memory_store, clock):
    registry, _ = _registry(memory_store, clock)

    with pytest.raises(NotFoundError):
        registry.time_remaining("converted_0_deadbeef0000.pdf")
    assert registry.is_available("converted_0_deadbeef0000.pdf") is False


def test_duplicate_registration_is_rejected(memory_store, clock):
    registry, _ = _registry(memory_store, clock)
    registry.register("a.pdf", 300)

    with pytest.raises(DuplicateArtifactError):
        registry.register("a.pdf", 60)
    assert registry.time_remaining("a.pdf") == 300


def test_time_remaining_clamps_at_zero_before_reaper_runs(memory_store, clock):
    registry, _ = _registry(memory_store, clock)
    registry.register("a.pdf", 10)

    clock.advance(15)

    assert registry.time_remaining("a.pdf") == 0


@pytest.mark.asyncio
async def test_time_remaining_is_non_increasing_until_not_found(memory_store, clock):
    registry, scheduler = _registry(memory_store, clock)
    memory_store.objects["a.pdf"] = b"%PDF"
    registry.register("a.pdf", 300)

    seen = []
    for _ in range(10):
        seen.append(registry.time_remaining("a.pdf"))
        clock.advance(29)
        await scheduler.run_pending()

    assert seen == sorted(seen, reverse=True)

    clock.advance(30)
    await scheduler.run_pending()
    for _ in range(3):
        with pytest.raises(NotFoundError):
            registry.time_remaining("a.pdf")
        clock.advance(1000)
        await scheduler.run_pending()


@pytest.mark.asyncio
async def test_expiry_deletes_artifact_and_page_images(memory_store, clock, tmp_path):
    registry, scheduler = _registry(memory_store, clock)
    work_dir = tmp_path / "converted_1"
    work_dir.mkdir()
    (work_dir / "page-0001.png").write_bytes(b"png")
    memory_store.objects["a.pdf"] = b"%PDF"
    registry.register("a.pdf", 300, work_dir=work_dir)

    clock.advance(299)
    assert await scheduler.run_pending() == 0
    assert memory_store.objects == {"a.pdf": b"%PDF"}
    assert work_dir.exists()

    clock.advance(1)
    assert await scheduler.run_pending() == 1
    assert memory_store.objects == {}
    assert not work_dir.exists()
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_record_removed_even_when_artifact_deletion_fails(memory_store, clock):
    registry, scheduler = _registry(memory_store, clock)
    memory_store.fail_delete = True
    registry.register("a.pdf", 5, work_dir=None)

    clock.advance(5)
    await scheduler.run_pending()

    assert memory_store.deleted == ["a.pdf"]
    assert "a.pdf" not in registry
    with pytest.raises(NotFoundError):
        registry.time_remaining("a.pdf")


@pytest.mark.asyncio
async def test_expiring_record_is_not_reported_while_deletion_runs(clock):
    release = asyncio.Event()
    started = asyncio.Event()

    class SlowStore:
        requires_auth = True

        async def delete(self, artifact_id):
            started.set()
            await release.wait()

    registry, scheduler = _registry(SlowStore(), clock)
    registry.register("a.pdf", 1)
    clock.advance(1)

    reaper = asyncio.create_task(scheduler.run_pending())
    await started.wait()

    assert "a.pdf" in registry
    with pytest.raises(NotFoundError):
        registry.time_remaining("a.pdf")

    release.set()
    await reaper
    assert "a.pdf" not in registry


@pytest.mark.asyncio
async def test_expire_of_unknown_id_is_a_noop(memory_store, clock):
    registry, _ = _registry(memory_store, clock)

    await registry.expire("missing.pdf")

    assert memory_store.deleted == []


@pytest.mark.asyncio
async def test_scheduler_runs_due_actions_in_order_and_survives_failures(clock):
    scheduler = DelayedTaskScheduler(clock)
    ran = []

    def action(name, fail=False):
        async def run():
            ran.append(name)
            if fail:
                raise RuntimeError(name)
        return run

    now = clock.now()
    scheduler.call_at(now + 30, action("third"))
    scheduler.call_at(now + 10, action("first", fail=True))
    scheduler.call_at(now + 20, action("second"))
    scheduler.call_at(now + 99, action("later"))

    clock.advance(30)
    assert await scheduler.run_pending() == 3

    assert ran == ["first", "second", "third"]
    assert len(scheduler) == 1
    assert scheduler.next_due() == now + 99


@pytest.mark.asyncio
async def test_background_loop_fires_actions_on_wall_clock():
    clock = SystemClock()
    scheduler = DelayedTaskScheduler(clock)
    fired = asyncio.Event()

    async def action():
        fired.set()

    await scheduler.start()
    try:
        scheduler.call_at(time.time() + 0.05, action)
        await asyncio.wait_for(fired.wait(), timeout=2)
    finally:
        await scheduler.stop()

    assert len(scheduler) == 0
