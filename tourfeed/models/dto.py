from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, computed_field
from typing import Annotated, List, Literal, Optional, Union

from tourfeed.core.constants import MAX_RADIUS_M

# --- Query anchors ---

class Coordinate(BaseModel):
    """WGS84 point. Compared with exact float equality, never rounded."""
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90, le=90, description="Latitude.")
    longitude: float = Field(..., ge=-180, le=180, description="Longitude.")

class CategoryFilter(BaseModel):
    """TourAPI classification filters. Every field is optional."""
    model_config = ConfigDict(frozen=True)

    content_type_id: Optional[int] = Field(None, description="TourAPI contentTypeId (12 tourist spot, 39 restaurant, ...).")
    cat1: Optional[str] = Field(None, description="Large classification, e.g. A01.")
    cat2: Optional[str] = Field(None, description="Medium classification, e.g. A0101.")
    cat3: Optional[str] = Field(None, description="Small classification.")
    area_code: Optional[int] = Field(None, description="Region code (keyword/area queries only).")
    sigungu_code: Optional[int] = Field(None, description="District code (keyword/area queries only).")

class LocationQuery(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["location"] = "location"
    coordinate: Coordinate
    radius_m: int = Field(..., gt=0, le=MAX_RADIUS_M, description="Search radius in meters.")
    category: Optional[CategoryFilter] = None

class KeywordQuery(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["keyword"] = "keyword"
    keyword: Optional[str] = Field(None, description="Free-text keyword. None or empty lists everything.")
    category: Optional[CategoryFilter] = None

Anchor = Annotated[Union[LocationQuery, KeywordQuery], Field(discriminator="kind")]

# --- Results ---

class SiteSummary(BaseModel):
    """One row of a site listing. Immutable once fetched."""
    model_config = ConfigDict(frozen=True)

    title: str
    address: str = ""
    coordinate: Optional[Coordinate] = None
    content_id: Optional[str] = None
    content_type_id: Optional[int] = None
    thumbnail_url: Optional[str] = None
    distance_m: Optional[float] = None
    modified_time: Optional[str] = None

    @computed_field
    @property
    def stable_key(self) -> str:
        # TourAPI gives no per-item id we trust across list endpoints, so
        # identity is title + position. content_id is display-only.
        lat = self.coordinate.latitude if self.coordinate else 0.0
        lon = self.coordinate.longitude if self.coordinate else 0.0
        return f"{self.title}-{lat}-{lon}"

class PageResult(BaseModel):
    items: List[SiteSummary] = Field(default_factory=list)
    page_no: int = Field(..., ge=1)
    total_count: int = Field(..., ge=0)

# --- Feed state ---

class FeedState(str, Enum):
    IDLE = "idle"
    LOADING_FIRST_PAGE = "loading_first_page"
    READY = "ready"
    LOADING_NEXT_PAGE = "loading_next_page"
    ERROR = "error"

class PermissionStatus(str, Enum):
    NOT_DETERMINED = "not_determined"
    AUTHORIZED = "authorized"
    DENIED = "denied"
    RESTRICTED = "restricted"

class ErrorInfo(BaseModel):
    """Surfaced form of a provider failure."""
    kind: str = Field(..., description="network, upstream or unexpected.")
    detail: str
    code: Optional[Union[int, str]] = None
    page: int = Field(..., description="Page whose fetch failed. 1 means the whole listing is invalid.")

class FeedSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: FeedState
    anchor: Optional[Anchor] = None
    items: List[SiteSummary] = Field(default_factory=list)
    current_page: int = 1
    total_count: int = 0
    can_load_more: bool = True
    is_loading: bool = False
    is_loading_more: bool = False
    last_error: Optional[ErrorInfo] = None

# --- API Request Models ---

class CreateFeedRequest(BaseModel):
    anchor: Optional[Anchor] = Field(None, description="Initial anchor. Omit to wait for location updates.")
    follow_location: bool = Field(True, description="Let pushed locations drive the anchor until one is set explicitly.")

class SetAnchorRequest(BaseModel):
    anchor: Anchor

class LoadMoreRequest(BaseModel):
    visible_index: int = Field(..., ge=0, description="Index of the rendered row nearest the end of the list.")

class LocationUpdateRequest(BaseModel):
    coordinate: Optional[Coordinate] = None
    permission: Optional[PermissionStatus] = Field(None, description="Report a permission change instead of, or along with, a fix.")

# --- API Response Models ---

class FeedSessionResponse(BaseModel):
    feed_id: str
    snapshot: FeedSnapshot

class CityPreset(BaseModel):
    name: str
    coordinate: Coordinate

class PresetsResponse(BaseModel):
    content_types: dict
    radius_options: dict
    major_cities: List[CityPreset]
    page_size: int

# --- Error Response Model ---

class ErrorResponse(BaseModel):
    """Standardized error response model."""
    error: str = Field(..., description="A machine-readable error code.")
    detail: str = Field(..., description="A human-readable explanation.")
