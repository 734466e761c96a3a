from __future__ import annotations

import asyncio

import pytest

from procpipe import InputSink, OutputStream


def test_output_stream_is_awaitable_twice():
    async def main():
        stream = OutputStream(name="out")
        stream.write(b"line one\n")
        stream.write(b"line two\n")
        stream.close()
        return await stream, await stream, await stream.text()

    first, second, text = asyncio.run(main())

    assert first == second == b"line one\nline two\n"
    assert text.splitlines() == ["line one", "line two"]


def test_output_stream_iterates_lines():
    async def main():
        stream = OutputStream()
        stream.write(b"a\nb\n")
        stream.close()
        return [line async for line in stream]

    assert asyncio.run(main()) == [b"a\n", b"b\n"]


def test_closed_output_stream_refuses_writes():
    async def main():
        stream = OutputStream.empty(name="out")
        with pytest.raises(BrokenPipeError):
            stream.write(b"late")
        return await stream

    assert asyncio.run(main()) == b""


def test_input_sink_forwards_buffered_writes():
    async def main():
        sink = InputSink(name="cat")
        sink.write(b"before ")
        target = OutputStream(name="stdin")
        task = asyncio.get_running_loop().create_task(sink.forward(target))
        sink.write(b"after")
        sink.close()
        await sink.wait_closed()
        await task
        return await target

    assert asyncio.run(main()) == b"before after"


def test_aborted_input_sink_behaves_like_broken_pipe():
    async def main():
        sink = InputSink(name="gone")
        sink.write(b"dropped")
        sink.abort()
        with pytest.raises(BrokenPipeError):
            sink.write(b"x")
        with pytest.raises(BrokenPipeError):
            await sink.drain()
        target = OutputStream()
        await sink.forward(target)
        return sink, await target

    sink, data = asyncio.run(main())

    assert sink.aborted
    assert sink.is_closing()
    assert data == b""


def test_input_sink_write_after_close_raises():
    async def main():
        sink = InputSink()
        sink.close()
        with pytest.raises(RuntimeError):
            sink.write(b"x")

    asyncio.run(main())


def test_input_sink_drain_waits_above_limit():
    async def main():
        sink = InputSink(name="slow", limit=4)
        sink.write(b"0123456789")
        waiter = asyncio.get_running_loop().create_task(sink.drain())
        await asyncio.sleep(0.01)
        blocked = not waiter.done()
        target = OutputStream()
        forwarder = asyncio.get_running_loop().create_task(sink.forward(target))
        await asyncio.wait_for(waiter, timeout=1)
        sink.close()
        await forwarder
        return blocked, sink.pending_bytes, await target

    blocked, pending, data = asyncio.run(main())

    assert blocked is True
    assert pending == 0
    assert data == b"0123456789"


def test_abort_wakes_blocked_writer():
    async def main():
        sink = InputSink(name="gone", limit=1)
        sink.write(b"too much")
        waiter = asyncio.get_running_loop().create_task(sink.drain())
        await asyncio.sleep(0)
        sink.abort()
        with pytest.raises(BrokenPipeError):
            await asyncio.wait_for(waiter, timeout=1)
        return sink.pending_bytes

    assert asyncio.run(main()) == 0
