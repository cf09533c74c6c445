"""Tests for Fanout, the bounded gather used for reads and scans."""

from __future__ import annotations

import asyncio

import pytest

from image_promoter.engine.fanout import Fanout, FanoutItem


# ── Helpers ──────────────────────────────────────────────────────────────


async def _echo(arg):
    return arg


async def _failing(arg):
    raise ValueError(f"boom: {arg}")


class TestFanoutItem:
    def test_defaults(self):
        item = FanoutItem(name="x", handler=_echo)
        assert item.status == "pending"
        assert item.duration_seconds is None


class TestFanout:
    def test_rejects_zero_concurrency(self):
        with pytest.raises(ValueError):
            Fanout(max_concurrency=0)

    @pytest.mark.asyncio
    async def test_collects_results_and_failures(self):
        fanout = Fanout(max_concurrency=2).add("a", _echo, 1).add("b", _failing, 2).add("c", _echo, 3)
        result = await fanout.run_all()

        assert result.total == 3
        assert result.succeeded == 2
        assert result.failed == 1
        assert result.results() == {"a": 1, "c": 3}
        [failed] = result.failures()
        assert failed.name == "b"
        assert isinstance(failed.error, ValueError)
        assert failed.duration_seconds is not None

    @pytest.mark.asyncio
    async def test_concurrency_bound(self):
        in_flight = 0
        peak = 0

        async def _track(arg):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return arg

        fanout = Fanout(max_concurrency=3)
        for i in range(10):
            fanout.add(str(i), _track, i)
        result = await fanout.run_all()

        assert result.succeeded == 10
        assert peak == 3

    @pytest.mark.asyncio
    async def test_empty(self):
        result = await Fanout().run_all()
        assert result.total == 0
