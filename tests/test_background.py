import asyncio

from dualwrite.core.background import BackgroundTasks


async def _ok():
    await asyncio.sleep(0)


async def _boom():
    raise ValueError("boom")


async def _sleep(sec):
    await asyncio.sleep(sec)


def test_completed_and_failed_are_counted():
    bg = BackgroundTasks(max_lifetime_sec=1.0, max_pending=10)

    async def _go():
        bg.spawn(_ok(), name="ok")
        bg.spawn(_boom(), name="boom")
        return await bg.drain(2)

    assert asyncio.run(_go()) is True
    assert bg.stats.spawned == 2
    assert bg.stats.completed == 1
    assert bg.stats.failed == 1
    assert "boom" in bg.stats.last_error
    assert bg.pending == 0


def test_lifetime_bound_cancels_stuck_work():
    bg = BackgroundTasks(max_lifetime_sec=0.05, max_pending=10)

    async def _go():
        bg.spawn(_sleep(5), name="stuck")
        return await bg.drain(2)

    assert asyncio.run(_go()) is True
    assert bg.stats.timed_out == 1
    assert "stuck" in bg.stats.last_error


def test_full_queue_drops_new_work():
    bg = BackgroundTasks(max_lifetime_sec=1.0, max_pending=1)

    async def _go():
        first = bg.spawn(_sleep(0.05), name="first")
        second = bg.spawn(_ok(), name="second")
        await bg.drain(2)
        return first, second

    first, second = asyncio.run(_go())
    assert first is not None
    assert second is None
    assert bg.stats.dropped == 1
    assert bg.stats.completed == 1


def test_drain_timeout_and_shutdown():
    bg = BackgroundTasks(max_lifetime_sec=10.0, max_pending=10)

    async def _go():
        bg.spawn(_sleep(5), name="slow")
        idle = await bg.drain(0.05)
        await bg.shutdown()
        return idle

    assert asyncio.run(_go()) is False
    assert bg.stats.cancelled == 1
    assert bg.pending == 0
