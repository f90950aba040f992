import asyncio
from typing import AsyncIterator, Protocol, Union

import structlog

from tourfeed.models.dto import Coordinate, PermissionStatus

logger = structlog.get_logger(__name__)

_CLOSED = object()

# A fix, or a change of authorization
LocationEvent = Union[Coordinate, PermissionStatus]


class LocationSource(Protocol):
    """Best-effort stream of device positions. May never yield anything."""

    permission: PermissionStatus

    def updates(self) -> AsyncIterator[LocationEvent]: ...


class QueueLocationSource:
    """
    Push-based location source.

    Producers call `push()` with each fix (or `set_permission()` when the user
    answers the permission prompt); a single consumer iterates `updates()`,
    which yields both kinds of event in arrival order.
    """

    def __init__(self, permission: PermissionStatus = PermissionStatus.NOT_DETERMINED):
        self.permission = permission
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def push(self, coordinate: Coordinate) -> None:
        if self._closed:
            logger.warning("location_push_after_close")
            return
        if self.permission != PermissionStatus.AUTHORIZED:
            # A fix implies the platform granted access
            self.permission = PermissionStatus.AUTHORIZED
        self._queue.put_nowait(coordinate)

    def set_permission(self, status: PermissionStatus) -> None:
        self.permission = status
        if not self._closed:
            self._queue.put_nowait(status)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    async def updates(self) -> AsyncIterator[LocationEvent]:
        while True:
            event = await self._queue.get()
            if event is _CLOSED:
                return
            yield event
