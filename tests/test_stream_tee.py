"""Tests for the async stream tee."""

import asyncio

from app.utils.stream_tee import tee_stream


async def _source(chunks, delay=0.0, fail_after=None):
    for i, chunk in enumerate(chunks):
        if fail_after is not None and i == fail_after:
            raise RuntimeError("upstream reset")
        if delay:
            await asyncio.sleep(delay)
        yield chunk


async def _drain(branch):
    return [chunk async for chunk in branch]


class TestStreamTee:
    def test_every_branch_sees_every_chunk(self):
        async def scenario():
            _tee, branches = tee_stream(_source([b"a", b"b", b"c"]), branches=3)
            return await asyncio.gather(*(_drain(b) for b in branches))

        results = asyncio.run(scenario())
        assert results == [[b"a", b"b", b"c"]] * 3

    def test_abandoned_branch_does_not_stop_the_other(self):
        async def scenario():
            tee, (first, second) = tee_stream(_source([b"1", b"2", b"3"], delay=0.01))
            # Read one chunk from the first branch, then walk away.
            got = await first.__anext__()
            await first.aclose()
            rest = await _drain(second)
            await tee.wait_closed()
            return got, rest, tee.finished

        got, rest, finished = asyncio.run(scenario())
        assert got == b"1"
        assert rest == [b"1", b"2", b"3"]
        assert finished is True

    def test_slow_reader_does_not_hold_back_fast_reader(self):
        async def scenario():
            tee, (fast, slow) = tee_stream(_source([b"x"] * 5))
            fast_chunks = await _drain(fast)
            # The pump has drained the source even though `slow` has read nothing.
            await tee.wait_closed()
            slow_chunks = await _drain(slow)
            return fast_chunks, slow_chunks

        fast_chunks, slow_chunks = asyncio.run(scenario())
        assert fast_chunks == slow_chunks == [b"x"] * 5

    def test_upstream_failure_truncates_and_is_recorded(self):
        async def scenario():
            tee, branches = tee_stream(_source([b"a", b"b", b"c"], fail_after=2))
            results = await asyncio.gather(*(_drain(b) for b in branches))
            await tee.wait_closed()
            return results, tee.error

        results, error = asyncio.run(scenario())
        assert results == [[b"a", b"b"], [b"a", b"b"]]
        assert isinstance(error, RuntimeError)

    def test_upstream_failure_is_logged_with_its_cause(self, caplog):
        async def scenario():
            tee, branches = tee_stream(_source([b"a", b"b"], fail_after=1))
            await asyncio.gather(*(_drain(b) for b in branches))
            await tee.wait_closed()

        with caplog.at_level("WARNING", logger="app.utils.stream_tee"):
            asyncio.run(scenario())

        assert "Upstream stream failed mid-transfer: upstream reset" in caplog.messages
