# tourfeed/services/feed_controller.py
"""Infinite-scroll feed over a paged site search provider.

The controller owns one listing at a time: the active anchor (location or
keyword query), the accumulated rows, the page cursor and the load state.

State machine::

    idle --set_anchor--> loading_first_page --ok--> ready --more--> loading_next_page --ok--> ready
                                  |                                        |
                                  +--fail (rows cleared)--> error <--------+--fail (rows kept)
    error --refresh--> loading_first_page     error --retry_next_page--> loading_next_page

A new anchor supersedes whatever is in flight. Every fetch is tagged with the
generation it was issued under and its result is dropped if the generation
has moved on, whether or not the provider honoured cancellation.
"""
import asyncio
import uuid
from typing import AsyncIterator, Callable, List, Optional, Set

import structlog

from tourfeed.core.config import settings
from tourfeed.core.errors import FeedError, StaleResponseDiscarded
from tourfeed.models.dto import (
    Anchor,
    CategoryFilter,
    Coordinate,
    ErrorInfo,
    FeedSnapshot,
    FeedState,
    LocationQuery,
    PageResult,
    PermissionStatus,
    SiteSummary,
)
from tourfeed.services.location import LocationSource
from tourfeed.services.tour_api import SiteSearchProvider

logger = structlog.get_logger(__name__)

Subscriber = Callable[[FeedSnapshot], None]

_UNAVAILABLE_PERMISSIONS = (PermissionStatus.DENIED, PermissionStatus.RESTRICTED)


class FeedController:
    def __init__(
        self,
        provider: SiteSearchProvider,
        page_size: int = settings.FEED_PAGE_SIZE,
        prefetch_distance: Optional[int] = settings.FEED_PREFETCH_DISTANCE,
        default_radius_m: int = settings.DEFAULT_RADIUS_M,
        feed_id: Optional[str] = None,
    ):
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self.provider = provider
        self.page_size = page_size
        self.prefetch_distance = prefetch_distance
        self.default_radius_m = default_radius_m
        self.feed_id = feed_id or uuid.uuid4().hex
        self._log = logger.bind(feed_id=self.feed_id)

        self._state = FeedState.IDLE
        self._anchor: Optional[Anchor] = None
        self._items: List[SiteSummary] = []
        self._keys: Set[str] = set()
        self._current_page = 1
        self._total_count = 0
        self._can_load_more = True
        self._last_error: Optional[ErrorInfo] = None
        self._failed_page: Optional[int] = None

        self._generation = 0
        # Set by refresh() and forced anchors: every page of that generation skips provider caches
        self._fresh = False
        self._op: Optional[asyncio.Task] = None
        self._fetch: Optional[asyncio.Future] = None

        self._user_anchored = False
        self.location_category: Optional[CategoryFilter] = None
        self._location_task: Optional[asyncio.Task] = None
        self._pending_location: Optional[Coordinate] = None
        self._background: Set[asyncio.Task] = set()

        self._subscribers: List[Subscriber] = []
        self._change_queues: List[asyncio.Queue] = []
        self._closed = False

    # --- Observation ---

    @property
    def state(self) -> FeedState:
        return self._state

    @property
    def anchor(self) -> Optional[Anchor]:
        return self._anchor

    @property
    def items(self) -> List[SiteSummary]:
        return list(self._items)

    @property
    def is_loading(self) -> bool:
        return self._state == FeedState.LOADING_FIRST_PAGE

    @property
    def is_loading_more(self) -> bool:
        return self._state == FeedState.LOADING_NEXT_PAGE

    @property
    def is_busy(self) -> bool:
        return self.is_loading or self.is_loading_more

    def snapshot(self) -> FeedSnapshot:
        return FeedSnapshot(
            state=self._state,
            anchor=self._anchor,
            items=list(self._items),
            current_page=self._current_page,
            total_count=self._total_count,
            can_load_more=self._can_load_more,
            is_loading=self.is_loading,
            is_loading_more=self.is_loading_more,
            last_error=self._last_error,
        )

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Call `callback` with a fresh snapshot after every state change. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def changes(self) -> AsyncIterator[FeedSnapshot]:
        """Async stream of snapshots, one per state change, ending when the controller closes."""
        queue: asyncio.Queue = asyncio.Queue()
        self._change_queues.append(queue)
        try:
            while True:
                snapshot = await queue.get()
                if snapshot is None:
                    return
                yield snapshot
        finally:
            if queue in self._change_queues:
                self._change_queues.remove(queue)

    def _notify(self) -> None:
        if not self._subscribers and not self._change_queues:
            return
        snapshot = self.snapshot()
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                self._log.exception("feed_subscriber_failed")
        for queue in self._change_queues:
            queue.put_nowait(snapshot)

    # --- Operations ---

    async def set_anchor(self, anchor: Anchor, *, force: bool = False, user_initiated: bool = True) -> None:
        """
        Make `anchor` the active query and load its first page.

        An anchor equal to the current one is a no-op while the feed is ready or
        still loading its first page, unless forced. Location-driven calls (`user_initiated=False`)
        never override an anchor the user chose, and wait their turn while a
        fetch is in flight.
        """
        if self._closed:
            raise RuntimeError("feed controller is closed")

        if not user_initiated:
            if self._user_anchored:
                self._log.debug("location_anchor_ignored", reason="user_anchored")
                return
            if self.is_busy:
                self._pending_location = anchor.coordinate if isinstance(anchor, LocationQuery) else None
                self._log.debug("location_anchor_deferred")
                return

        if not force and anchor == self._anchor and self._state in (FeedState.READY, FeedState.LOADING_FIRST_PAGE):
            self._log.debug("feed_anchor_unchanged", state=self._state.value)
            return

        if user_initiated:
            self._user_anchored = True
            self._pending_location = None

        generation = self._reset(anchor, fresh=force)
        self._log.info("feed_anchor_set", kind=anchor.kind, generation=generation, forced=force)
        await self._run(generation, 1)

    async def refresh(self) -> None:
        """Reload page 1 of the current anchor, whatever the current state, bypassing provider caches."""
        if self._anchor is None:
            self._log.warning("feed_refresh_without_anchor")
            return
        generation = self._reset(self._anchor, fresh=True)
        self._log.info("feed_refresh", kind=self._anchor.kind, generation=generation)
        await self._run(generation, 1)

    async def request_more_if_needed(self, visible_index: int) -> bool:
        """Fetch the next page if the load-more guard passes. Returns whether a fetch was issued."""
        if not self._load_more_allowed(visible_index):
            return False

        self._current_page += 1
        self._state = FeedState.LOADING_NEXT_PAGE
        self._log.info("feed_load_more", page=self._current_page, items=len(self._items), total_count=self._total_count)
        self._notify()
        await self._run(self._generation, self._current_page)
        return True

    async def retry_next_page(self) -> bool:
        """Re-issue the page whose fetch failed, without advancing the cursor a second time."""
        if self._state != FeedState.ERROR or self._failed_page is None:
            return False

        self._current_page = self._failed_page
        self._failed_page = None
        self._last_error = None
        self._state = FeedState.LOADING_NEXT_PAGE
        self._log.info("feed_retry_next_page", page=self._current_page)
        self._notify()
        await self._run(self._generation, self._current_page)
        return True

    async def wait(self) -> None:
        """Wait until no fetch is in flight."""
        while self._op is not None and not self._op.done():
            await asyncio.shield(self._op)

    def _load_more_allowed(self, visible_index: int) -> bool:
        count = len(self._items)
        if self._state != FeedState.READY:
            return False
        if not self._can_load_more or count == 0 or count >= self._total_count:
            return False
        if self.prefetch_distance is not None and (count - 1 - visible_index) > self.prefetch_distance:
            return False
        return True

    # --- Loading ---

    def _reset(self, anchor: Anchor, fresh: bool = False) -> int:
        self._generation += 1
        if self._fetch is not None and not self._fetch.done():
            self._fetch.cancel()

        self._anchor = anchor
        self._fresh = fresh
        self._items = []
        self._keys = set()
        self._current_page = 1
        self._total_count = 0
        self._can_load_more = True
        self._last_error = None
        self._failed_page = None
        self._state = FeedState.LOADING_FIRST_PAGE
        self._notify()
        return self._generation

    async def _run(self, generation: int, page: int) -> None:
        # Issue the request now so it is bound to the anchor active at this moment
        fetch = asyncio.ensure_future(self._request(self._anchor, page))
        self._fetch = fetch
        task = asyncio.create_task(self._load(generation, page, fetch))
        self._op = task
        # Shielded so a caller that goes away does not abort the controller's own load
        await asyncio.shield(task)

    def _request(self, anchor: Anchor, page: int):
        if isinstance(anchor, LocationQuery):
            return self.provider.fetch_by_location(
                anchor.coordinate, anchor.radius_m, anchor.category, page, self.page_size, fresh=self._fresh
            )
        return self.provider.fetch_by_keyword(anchor.keyword, anchor.category, page, self.page_size, fresh=self._fresh)

    def _check_generation(self, generation: int) -> None:
        if generation != self._generation:
            raise StaleResponseDiscarded(generation, self._generation)

    async def _load(self, generation: int, page: int, fetch: asyncio.Future) -> None:
        try:
            try:
                result = await fetch
            except asyncio.CancelledError:
                if fetch.cancelled() and generation != self._generation:
                    raise StaleResponseDiscarded(generation, self._generation)
                raise
            except FeedError as e:
                self._check_generation(generation)
                self._fail(page, e)
                return
            except Exception as e:
                self._check_generation(generation)
                self._log.exception("feed_fetch_unexpected_error", page=page)
                self._fail(page, FeedError(str(e) or e.__class__.__name__))
                return

            self._check_generation(generation)
            self._merge(result)
        except StaleResponseDiscarded as e:
            self._log.debug(
                "feed_stale_response_discarded",
                page=page,
                issued_generation=e.issued_generation,
                current_generation=e.current_generation,
            )
        finally:
            if self._fetch is fetch:
                self._fetch = None
            self._apply_pending_location()

    def _merge(self, result: PageResult) -> None:
        page_items = result.items
        if result.page_no == 1:
            self._items = []
            self._keys = set()

        added = 0
        for site in page_items:
            key = site.stable_key
            if key in self._keys:
                continue
            self._keys.add(key)
            self._items.append(site)
            added += 1

        self._current_page = result.page_no
        self._total_count = result.total_count
        # A short page ends the listing even when totalCount claims otherwise
        self._can_load_more = (
            len(page_items) > 0
            and len(self._items) < self._total_count
            and len(page_items) == self.page_size
        )
        self._state = FeedState.READY

        duplicates = len(page_items) - added
        self._log.info(
            "feed_page_merged",
            page=result.page_no,
            received=len(page_items),
            added=added,
            duplicates=duplicates,
            items=len(self._items),
            total_count=self._total_count,
            can_load_more=self._can_load_more,
        )
        self._notify()

    def _fail(self, page: int, error: FeedError) -> None:
        self._last_error = ErrorInfo(kind=error.kind, detail=error.detail, code=error.code, page=page)
        if page == 1:
            self._items = []
            self._keys = set()
            self._total_count = 0
            self._can_load_more = False
            self._current_page = 1
        else:
            # Earlier pages are still good; roll the cursor back so a retry asks for the same page
            self._failed_page = page
            self._current_page = page - 1
        self._state = FeedState.ERROR
        self._log.warning(
            "feed_fetch_failed",
            page=page,
            kind=error.kind,
            code=error.code,
            detail=error.detail,
            items_kept=len(self._items),
        )
        self._notify()

    # --- Location ---

    def attach_location(self, source: LocationSource, category: Optional[CategoryFilter] = None) -> None:
        """Let `source` drive the anchor until the user sets one explicitly."""
        self.detach_location()
        self.location_category = category
        if source.permission in _UNAVAILABLE_PERMISSIONS:
            self._spawn(self._anchor_on_default())
        self._location_task = asyncio.create_task(self._follow_location(source))

    def detach_location(self) -> None:
        if self._location_task is not None:
            self._location_task.cancel()
            self._location_task = None
        self._pending_location = None

    def location_anchor(self, coordinate: Coordinate) -> LocationQuery:
        return LocationQuery(coordinate=coordinate, radius_m=self.default_radius_m, category=self.location_category)

    async def _follow_location(self, source: LocationSource) -> None:
        async for event in source.updates():
            if isinstance(event, PermissionStatus):
                if event in _UNAVAILABLE_PERMISSIONS:
                    self._log.info("location_permission_unavailable", permission=event.value)
                    await self._anchor_on_default()
                continue
            await self.set_anchor(self.location_anchor(event), user_initiated=False)

    async def _anchor_on_default(self) -> None:
        if self._anchor is not None:
            return
        fallback = Coordinate(latitude=settings.DEFAULT_LATITUDE, longitude=settings.DEFAULT_LONGITUDE)
        await self.set_anchor(self.location_anchor(fallback), user_initiated=False)

    def _apply_pending_location(self) -> None:
        coordinate = self._pending_location
        if coordinate is None or self._user_anchored or self._closed:
            return
        self._pending_location = None
        self._spawn(self.set_anchor(self.location_anchor(coordinate), user_initiated=False))

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # --- Teardown ---

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.detach_location()
        tasks = list(self._background)
        if self._op is not None and not self._op.done():
            tasks.append(self._op)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for queue in self._change_queues:
            queue.put_nowait(None)
        self._log.info("feed_closed")
