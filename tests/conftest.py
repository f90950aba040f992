import asyncio
from collections import deque
from typing import List, Optional

import pytest

from tourfeed.models.dto import Coordinate, KeywordQuery, LocationQuery, PageResult, SiteSummary


def make_site(n: int, prefix: str = "Site") -> SiteSummary:
    return SiteSummary(
        title=f"{prefix} {n}",
        address=f"{n} Sejong-daero, Jung-gu, Seoul",
        coordinate=Coordinate(latitude=37.5 + n * 0.001, longitude=127.0 + n * 0.001),
        content_id=str(100000 + n),
    )


def make_page(numbers, page_no: int, total_count: int, prefix: str = "Site") -> PageResult:
    return PageResult(items=[make_site(n, prefix) for n in numbers], page_no=page_no, total_count=total_count)


class Gate:
    """A provider outcome that blocks until released.

    With ignore_cancel=True the fetch keeps running after being cancelled and
    still delivers its result, like a provider that cannot be interrupted.
    """

    def __init__(self, result, ignore_cancel: bool = False):
        self.result = result
        self.ignore_cancel = ignore_cancel
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.cancelled = False

    async def run(self):
        self.started.set()
        try:
            await self.release.wait()
        except asyncio.CancelledError:
            self.cancelled = True
            if not self.ignore_cancel:
                raise
            await self.release.wait()
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class FakeProvider:
    """Scripted SiteSearchProvider: each call consumes the next queued outcome."""

    def __init__(self, *outcomes):
        self.outcomes = deque(outcomes)
        self.calls: List[tuple] = []
        self.fresh: List[bool] = []

    def queue(self, *outcomes) -> None:
        self.outcomes.extend(outcomes)

    async def _next(self):
        if not self.outcomes:
            raise AssertionError("unexpected provider call")
        outcome = self.outcomes.popleft()
        if isinstance(outcome, Gate):
            return await outcome.run()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def fetch_by_location(self, coordinate, radius_m, category, page_no, page_size, fresh=False):
        self.calls.append(("location", coordinate, radius_m, category, page_no, page_size))
        self.fresh.append(fresh)
        return await self._next()

    async def fetch_by_keyword(self, keyword, category, page_no, page_size, fresh=False):
        self.calls.append(("keyword", keyword, category, page_no, page_size))
        self.fresh.append(fresh)
        return await self._next()

    def pages_requested(self) -> List[int]:
        return [call[-2] for call in self.calls]


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def seoul():
    return Coordinate(latitude=37.5665, longitude=126.9780)


@pytest.fixture
def location_anchor(seoul):
    return LocationQuery(coordinate=seoul, radius_m=5000)


@pytest.fixture
def keyword_anchor():
    return KeywordQuery(keyword="palace")


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)
