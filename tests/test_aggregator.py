from __future__ import annotations

import asyncio

import pytest

from procpipe.aggregate import StderrAggregator, collect_into


def test_closes_only_after_seal_and_all_releases():
    async def main():
        aggregator = StderrAggregator(name="agg")
        aggregator.register()
        aggregator.register()
        aggregator.feed(b"one ")
        aggregator.release()
        aggregator.seal()
        assert not aggregator.closed
        aggregator.feed(b"two")
        aggregator.release()
        assert aggregator.closed
        return await aggregator.output

    assert asyncio.run(main()) == b"one two"


def test_unsealed_aggregator_stays_open_at_zero():
    async def main():
        aggregator = StderrAggregator()
        aggregator.register()
        aggregator.release()
        assert aggregator.pending == 0
        assert not aggregator.closed
        aggregator.seal()
        return aggregator.closed

    assert asyncio.run(main()) is True


def test_no_contributors_closes_on_seal():
    async def main():
        aggregator = StderrAggregator()
        aggregator.seal()
        return await aggregator.output

    assert asyncio.run(main()) == b""


def test_register_after_close_is_refused():
    async def main():
        aggregator = StderrAggregator()
        aggregator.seal()
        with pytest.raises(RuntimeError):
            aggregator.register()

    asyncio.run(main())


def test_collect_into_fans_out_and_waits_for_exit():
    async def main():
        loop = asyncio.get_running_loop()
        source = asyncio.StreamReader()
        source.feed_data(b"err")
        source.feed_eof()
        exited = loop.create_future()
        own, downstream = StderrAggregator(name="own"), StderrAggregator(name="down")
        for aggregator in (own, downstream):
            aggregator.register()
            aggregator.seal()
        task = loop.create_task(collect_into(source, (own, downstream), name="1:x", exited=exited))
        await asyncio.sleep(0.01)
        # EOF alone does not release while the process may still run.
        assert not own.closed
        exited.set_result(0)
        await task
        return await own.output, await downstream.output

    assert asyncio.run(main()) == (b"err", b"err")


def test_attach_sums_contributors():
    async def main():
        aggregator = StderrAggregator()
        for payload in (b"ab", b"cde"):
            source = asyncio.StreamReader()
            source.feed_data(payload)
            source.feed_eof()
            aggregator.attach(source, name="stage")
        aggregator.seal()
        return await aggregator.output

    assert len(asyncio.run(main())) == 5
