import asyncio

import pytest

from batcher.channel import MessageChannel, wait_any


def test_fifo_and_drain():
    ch = MessageChannel("t")
    assert ch.empty()
    assert ch.read() is None
    for m in ("a", "b", "c"):
        assert ch.write(m)
    assert ch.read() == "a"
    assert ch.drain() == ["b", "c"]
    assert ch.empty()


def test_full_channel_refuses_writes():
    ch = MessageChannel("t", capacity=2)
    assert ch.write("1") and ch.write("2")
    assert ch.write("3") is False
    assert ch.dropped == 1
    assert len(ch) == 2


@pytest.mark.asyncio
async def test_wait_times_out_without_writes():
    ch = MessageChannel("t")
    assert await ch.wait(0.01) is False


@pytest.mark.asyncio
async def test_wait_wakes_on_write():
    ch = MessageChannel("t")

    async def _writer():
        await asyncio.sleep(0.01)
        ch.write("x")

    task = asyncio.create_task(_writer())
    assert await ch.wait(1.0) is True
    await task
    assert ch.read() == "x"


@pytest.mark.asyncio
async def test_wait_any_returns_immediately_with_unread_data():
    a, b = MessageChannel("a"), MessageChannel("b")
    b.write("ready")
    assert await wait_any([a, b], 5.0) is True


@pytest.mark.asyncio
async def test_wait_any_wakes_on_either_channel():
    a, b = MessageChannel("a"), MessageChannel("b")

    async def _writer():
        await asyncio.sleep(0.01)
        b.write("y")

    task = asyncio.create_task(_writer())
    assert await wait_any([a, b], 1.0) is True
    await task
    assert await wait_any([MessageChannel("c")], 0.01) is False
