from typing import Dict, Optional

import structlog

from tourfeed.core.config import settings
from tourfeed.services.feed_controller import FeedController
from tourfeed.services.location import QueueLocationSource
from tourfeed.services.tour_api import SiteSearchProvider

logger = structlog.get_logger(__name__)


class FeedLimitReached(Exception):
    pass


class FeedSession:
    """A hosted feed: its controller plus the location source clients push into."""

    def __init__(self, controller: FeedController, location: QueueLocationSource):
        self.controller = controller
        self.location = location

    @property
    def feed_id(self) -> str:
        return self.controller.feed_id

    async def close(self) -> None:
        self.location.close()
        await self.controller.close()


class FeedRegistry:
    """In-process registry of feed sessions sharing one site search provider."""

    def __init__(self, provider: SiteSearchProvider, max_sessions: int = settings.MAX_FEED_SESSIONS):
        self.provider = provider
        self.max_sessions = max_sessions
        self._sessions: Dict[str, FeedSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self, follow_location: bool = True) -> FeedSession:
        if len(self._sessions) >= self.max_sessions:
            raise FeedLimitReached(f"{self.max_sessions} feed sessions already open")

        controller = FeedController(self.provider)
        location = QueueLocationSource()
        if follow_location:
            controller.attach_location(location)
        session = FeedSession(controller, location)
        self._sessions[session.feed_id] = session
        logger.info("feed_session_created", feed_id=session.feed_id, sessions=len(self._sessions))
        return session

    def get(self, feed_id: str) -> Optional[FeedSession]:
        return self._sessions.get(feed_id)

    async def close(self, feed_id: str) -> bool:
        session = self._sessions.pop(feed_id, None)
        if session is None:
            return False
        await session.close()
        logger.info("feed_session_closed", feed_id=feed_id, sessions=len(self._sessions))
        return True

    async def close_all(self) -> None:
        for feed_id in list(self._sessions):
            await self.close(feed_id)
