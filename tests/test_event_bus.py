import asyncio

from summon.event_bus import ProgressChannel, ProgressEvent

from conftest import run


def _event(step: str, status: str = "in_progress", message: str | None = None) -> ProgressEvent:
    return ProgressEvent(step_key=step, status=status, message=message)


def test_event_fields():
    first = _event("Running backend")
    second = _event("Running backend", "completed")

    assert second.seq > first.seq
    assert first.timestamp is not None
    assert first.message is None


def test_channel_coalesces_per_step():
    channel = ProgressChannel()
    channel.publish(_event("Code generation", "in_progress"))
    channel.publish(_event("Code generation", "completed"))
    channel.publish(_event("Git commit", "in_progress"))

    batch = run(channel.drain())

    assert [(e.step_key, e.status) for e in batch] == [
        ("Code generation", "completed"),
        ("Git commit", "in_progress"),
    ]


def test_channel_drops_new_keys_when_full():
    channel = ProgressChannel(maxsize=2)
    assert channel.publish(_event("a"))
    assert channel.publish(_event("b"))
    assert channel.publish(_event("c")) is False
    # Existing keys still update when full.
    assert channel.publish(_event("a", "completed"))

    assert channel.dropped == 1
    assert len(channel) == 2


def test_close_flushes_pending_then_ends():
    async def scenario():
        channel = ProgressChannel()
        channel.publish(_event("a"))
        channel.close()
        first = await channel.drain()
        second = await channel.drain()
        return first, second, channel.publish(_event("b"))

    first, second, accepted = run(scenario())
    assert [e.step_key for e in first] == ["a"]
    assert second == []
    assert accepted is False


def test_drain_waits_for_publish():
    async def scenario():
        channel = ProgressChannel()

        async def producer():
            await asyncio.sleep(0.05)
            channel.publish(_event("late"))

        task = asyncio.create_task(producer())
        batch = await asyncio.wait_for(channel.drain(), timeout=2)
        await task
        return batch

    assert [e.step_key for e in run(scenario())] == ["late"]
