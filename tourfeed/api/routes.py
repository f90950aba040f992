# tourfeed/api/routes.py
# HTTP surface for hosted feed sessions. Provider failures are reported in the
# snapshot's last_error, never as HTTP errors.

import asyncio
from typing import Awaitable, Set

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from tourfeed.core.config import settings
from tourfeed.core.constants import CONTENT_TYPES, MAJOR_CITIES, RADIUS_OPTIONS
from tourfeed.models.dto import (
    CityPreset,
    Coordinate,
    CreateFeedRequest,
    ErrorResponse,
    FeedSessionResponse,
    FeedSnapshot,
    LoadMoreRequest,
    LocationUpdateRequest,
    PresetsResponse,
    SetAnchorRequest,
)
from tourfeed.services.feed_registry import FeedLimitReached, FeedRegistry, FeedSession

router = APIRouter()
logger = structlog.get_logger(__name__)

# Strong references to fire-and-forget operations (wait=false)
_detached: Set[asyncio.Task] = set()


def get_registry(request: Request) -> FeedRegistry:
    return request.app.state.feeds


def get_session(feed_id: str, registry: FeedRegistry = Depends(get_registry)) -> FeedSession:
    session = registry.get(feed_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=ErrorResponse(
                error="FEED_NOT_FOUND",
                detail=f"No feed session with id {feed_id}.",
            ).model_dump(),
        )
    return session


def _detached_done(task: asyncio.Task) -> None:
    _detached.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error("detached_operation_failed", error=str(error), error_type=type(error).__name__)


async def _drive(operation: Awaitable, wait: bool) -> None:
    """Run a controller operation, either to completion or just far enough to enter its loading state."""
    if wait:
        await operation
        return
    task = asyncio.ensure_future(operation)
    _detached.add(task)
    task.add_done_callback(_detached_done)
    await asyncio.sleep(0)


def _response(session: FeedSession) -> FeedSessionResponse:
    return FeedSessionResponse(feed_id=session.feed_id, snapshot=session.controller.snapshot())


# ----------------------------------------------------------------------
# Presets
# ----------------------------------------------------------------------
@router.get("/presets", response_model=PresetsResponse)
async def presets():
    """Lookup tables a client needs to build anchors."""
    return PresetsResponse(
        content_types=CONTENT_TYPES,
        radius_options=RADIUS_OPTIONS,
        major_cities=[
            CityPreset(name=name, coordinate=Coordinate(latitude=lat, longitude=lon))
            for name, lat, lon in MAJOR_CITIES
        ],
        page_size=settings.FEED_PAGE_SIZE,
    )


# ----------------------------------------------------------------------
# Feed sessions
# ----------------------------------------------------------------------
@router.post(
    "/feeds",
    response_model=FeedSessionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={503: {"model": ErrorResponse}},
)
async def create_feed(
    data: CreateFeedRequest,
    registry: FeedRegistry = Depends(get_registry),
    wait: bool = Query(True, description="Wait for the first page before answering."),
):
    try:
        session = registry.create(follow_location=data.follow_location)
    except FeedLimitReached as e:
        logger.warning("feed_limit_reached", limit=registry.max_sessions)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=ErrorResponse(error="FEED_LIMIT_REACHED", detail=str(e)).model_dump(),
        )

    if data.anchor is not None:
        await _drive(session.controller.set_anchor(data.anchor), wait)
    return _response(session)


@router.get("/feeds/{feed_id}", response_model=FeedSessionResponse, responses={404: {"model": ErrorResponse}})
async def get_feed(session: FeedSession = Depends(get_session)):
    return _response(session)


@router.put("/feeds/{feed_id}/anchor", response_model=FeedSessionResponse, responses={404: {"model": ErrorResponse}})
async def set_anchor(
    data: SetAnchorRequest,
    session: FeedSession = Depends(get_session),
    wait: bool = Query(True),
):
    await _drive(session.controller.set_anchor(data.anchor), wait)
    return _response(session)


@router.post("/feeds/{feed_id}/refresh", response_model=FeedSessionResponse, responses={404: {"model": ErrorResponse}})
async def refresh_feed(session: FeedSession = Depends(get_session), wait: bool = Query(True)):
    await _drive(session.controller.refresh(), wait)
    return _response(session)


@router.post("/feeds/{feed_id}/more", response_model=FeedSessionResponse, responses={404: {"model": ErrorResponse}})
async def load_more(
    data: LoadMoreRequest,
    session: FeedSession = Depends(get_session),
    wait: bool = Query(True),
):
    await _drive(session.controller.request_more_if_needed(data.visible_index), wait)
    return _response(session)


@router.post("/feeds/{feed_id}/retry", response_model=FeedSessionResponse, responses={404: {"model": ErrorResponse}})
async def retry_feed(session: FeedSession = Depends(get_session), wait: bool = Query(True)):
    """Retry whatever failed last: the next page if earlier pages survived, otherwise the whole listing."""
    controller = session.controller
    snapshot: FeedSnapshot = controller.snapshot()
    if snapshot.last_error is None:
        return _response(session)

    if snapshot.last_error.page > 1:
        await _drive(controller.retry_next_page(), wait)
    else:
        await _drive(controller.refresh(), wait)
    return _response(session)


@router.post("/feeds/{feed_id}/location", response_model=FeedSessionResponse, responses={404: {"model": ErrorResponse}})
async def push_location(
    data: LocationUpdateRequest,
    session: FeedSession = Depends(get_session),
    wait: bool = Query(True),
):
    if data.permission is not None:
        session.location.set_permission(data.permission)
    if data.coordinate is not None:
        session.location.push(data.coordinate)

    # Let the controller's location task pick the events up
    await asyncio.sleep(0)
    if wait:
        await session.controller.wait()
    return _response(session)


@router.delete("/feeds/{feed_id}", status_code=status.HTTP_204_NO_CONTENT, responses={404: {"model": ErrorResponse}})
async def delete_feed(feed_id: str, registry: FeedRegistry = Depends(get_registry)):
    if not await registry.close(feed_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=ErrorResponse(
                error="FEED_NOT_FOUND",
                detail=f"No feed session with id {feed_id}.",
            ).model_dump(),
        )
