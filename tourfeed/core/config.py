from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional

class Settings(BaseSettings):
    PROJECT_NAME: str = "tourfeed"
    VERSION: str = "0.1.0"
    BRIEF_DESCRIPTION: str = "Paginated, deduplicating feed of nearby and searched tourist sites backed by the Korea Tourism Organization TourAPI."

    ENV: str = Field("development", description="Application environment (e.g., production, development)")
    LOG_LEVEL: str = Field("INFO", description="Root log level; DEBUG shows anchor and stale-response decisions")

    # --- TourAPI (KorService2) ---
    TOUR_API_BASE_URL: str = Field("https://apis.data.go.kr/B551011/KorService2", description="TourAPI base URL")
    TOUR_API_SERVICE_KEY: Optional[str] = Field(None, description="data.go.kr service key (already URL-decoded)")
    TOUR_API_MOBILE_OS: str = "IOS"
    TOUR_API_MOBILE_APP: str = "BeenThere"
    TOUR_API_TIMEOUT: float = 15.0 # seconds

    # --- Feed behaviour ---
    FEED_PAGE_SIZE: int = Field(10, ge=1, le=100, description="Rows requested per page (TourAPI caps numOfRows at 100)")
    FEED_PREFETCH_DISTANCE: Optional[int] = Field(
        None,
        ge=0,
        description="Only load more when the visible index is within this many rows of the end. None disables the check.",
    )
    DEFAULT_RADIUS_M: int = Field(5000, description="Radius used for location-driven anchors")
    DEFAULT_CONTENT_TYPE_ID: int = Field(12, description="TourAPI content type used when no category is selected (12 = tourist spot)")

    # Fallback anchor when location permission is denied (Seoul City Hall)
    DEFAULT_LATITUDE: float = 37.5665
    DEFAULT_LONGITUDE: float = 126.9780

    MAX_FEED_SESSIONS: int = Field(1000, description="Upper bound on concurrently hosted feed sessions")

    # --- Response cache ---
    ENABLE_CACHE: bool = Field(True, description="Feature flag for caching TourAPI pages")
    ENABLE_REDIS: bool = Field(False, description="Use Redis for the response cache instead of process memory")
    REDIS_URL: Optional[str] = Field(None, description="Redis URL for the response cache")
    CACHE_TTL_SECONDS: int = 60 * 60 * 24 # one day
    CACHE_MAX_ENTRIES: int = Field(2000, ge=1, description="Upper bound on pages kept by the in-memory cache")

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore"
    )

settings = Settings()
