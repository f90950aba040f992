# tourfeed/services/tour_api.py
"""Site search providers backed by the Korea Tourism Organization TourAPI (KorService2).

- `locationBasedList2` for radius searches around a coordinate (distance order)
- `searchKeyword2` for keyword searches, `areaBasedList2` for plain category browsing

Failures are mapped onto NetworkError / UpstreamError. Nothing here retries:
the caller decides when to ask again.
"""
import hashlib
import json
import time
from typing import Any, Dict, List, Optional, Protocol

import httpx
import structlog

from tourfeed.core.config import settings
from tourfeed.core.constants import ARRANGE_DISTANCE, ARRANGE_MODIFIED, RESULT_CODE_OK
from tourfeed.core.errors import NetworkError, UpstreamError
from tourfeed.models.dto import CategoryFilter, Coordinate, PageResult, SiteSummary
from tourfeed.services.cache import ResponseCache
from tourfeed.utils.haversine import distance_between

logger = structlog.get_logger(__name__)

LOCATION_ENDPOINT = "/locationBasedList2"
AREA_ENDPOINT = "/areaBasedList2"
KEYWORD_ENDPOINT = "/searchKeyword2"


class SiteSearchProvider(Protocol):
    """Paged site search. `fresh=True` asks for an answer straight from upstream, skipping any cache."""

    async def fetch_by_location(
        self,
        coordinate: Coordinate,
        radius_m: int,
        category: Optional[CategoryFilter],
        page_no: int,
        page_size: int,
        fresh: bool = False,
    ) -> PageResult: ...

    async def fetch_by_keyword(
        self,
        keyword: Optional[str],
        category: Optional[CategoryFilter],
        page_no: int,
        page_size: int,
        fresh: bool = False,
    ) -> PageResult: ...


def _parse_float(raw: Any) -> Optional[float]:
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def _parse_int(raw: Any, default: int) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def parse_site(item: Dict[str, Any], origin: Optional[Coordinate] = None) -> SiteSummary:
    """Convert one raw TourAPI list item into a SiteSummary."""
    lon = _parse_float(item.get("mapx"))
    lat = _parse_float(item.get("mapy"))
    coordinate = None
    if lat is not None and lon is not None and -90 <= lat <= 90 and -180 <= lon <= 180:
        coordinate = Coordinate(latitude=lat, longitude=lon)

    distance = _parse_float(item.get("dist"))
    if distance is None and origin is not None and coordinate is not None:
        distance = round(distance_between(origin, coordinate), 1)

    address = " ".join(part for part in (item.get("addr1"), item.get("addr2")) if part).strip()
    content_type = _parse_float(item.get("contenttypeid"))

    return SiteSummary(
        title=str(item.get("title") or "").strip(),
        address=address,
        coordinate=coordinate,
        content_id=str(item["contentid"]) if item.get("contentid") else None,
        content_type_id=int(content_type) if content_type is not None else None,
        thumbnail_url=item.get("firstimage2") or item.get("firstimage") or None,
        distance_m=distance,
        modified_time=item.get("modifiedtime") or None,
    )


def parse_page(payload: Any, requested_page: int, origin: Optional[Coordinate] = None) -> PageResult:
    """
    Decode a TourAPI JSON envelope.

    The API is loose about shapes: `items` is "" on an empty page and `item`
    is a bare object when only one row matches. Error payloads either carry a
    non-"0000" header.resultCode or skip the `response` envelope entirely.
    """
    if not isinstance(payload, dict):
        raise UpstreamError("MALFORMED_RESPONSE", "TourAPI returned a non-object payload")

    response = payload.get("response")
    if not isinstance(response, dict):
        code = payload.get("resultCode") or "MALFORMED_RESPONSE"
        raise UpstreamError(str(code), payload.get("resultMsg") or "TourAPI response envelope missing")

    header = response.get("header") or {}
    result_code = header.get("resultCode")
    if result_code is not None and str(result_code) != RESULT_CODE_OK:
        raise UpstreamError(str(result_code), header.get("resultMsg") or "TourAPI reported an error")

    body = response.get("body")
    if not isinstance(body, dict):
        raise UpstreamError("MALFORMED_RESPONSE", "TourAPI response body missing")

    items = body.get("items")
    raw_items: List[Dict[str, Any]] = []
    if isinstance(items, dict):
        item = items.get("item")
        if isinstance(item, list):
            raw_items = [i for i in item if isinstance(i, dict)]
        elif isinstance(item, dict):
            raw_items = [item]

    return PageResult(
        items=[parse_site(i, origin) for i in raw_items],
        page_no=_parse_int(body.get("pageNo"), requested_page),
        total_count=max(0, _parse_int(body.get("totalCount"), 0)),
    )


class TourAPIClient:
    """SiteSearchProvider that talks to TourAPI over httpx. Every call goes upstream, so `fresh` changes nothing here."""

    def __init__(
        self,
        base_url: str = settings.TOUR_API_BASE_URL,
        service_key: Optional[str] = settings.TOUR_API_SERVICE_KEY,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = settings.TOUR_API_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _common_params(self, category: Optional[CategoryFilter], page_no: int, page_size: int, arrange: str) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "serviceKey": self.service_key or "",
            "MobileOS": settings.TOUR_API_MOBILE_OS,
            "MobileApp": settings.TOUR_API_MOBILE_APP,
            "_type": "json",
            "arrange": arrange,
            "pageNo": page_no,
            "numOfRows": page_size,
            "contentTypeId": settings.DEFAULT_CONTENT_TYPE_ID,
        }
        if category is not None:
            if category.content_type_id is not None:
                params["contentTypeId"] = category.content_type_id
            for name in ("cat1", "cat2", "cat3"):
                value = getattr(category, name)
                if value:
                    params[name] = value
        return params

    async def fetch_by_location(
        self,
        coordinate: Coordinate,
        radius_m: int,
        category: Optional[CategoryFilter],
        page_no: int,
        page_size: int,
        fresh: bool = False,
    ) -> PageResult:
        params = self._common_params(category, page_no, page_size, ARRANGE_DISTANCE)
        params.update({
            "mapX": coordinate.longitude,
            "mapY": coordinate.latitude,
            "radius": radius_m,
        })
        payload = await self._get(LOCATION_ENDPOINT, params)
        return parse_page(payload, page_no, origin=coordinate)

    async def fetch_by_keyword(
        self,
        keyword: Optional[str],
        category: Optional[CategoryFilter],
        page_no: int,
        page_size: int,
        fresh: bool = False,
    ) -> PageResult:
        params = self._common_params(category, page_no, page_size, ARRANGE_MODIFIED)
        if category is not None:
            if category.area_code is not None:
                params["areaCode"] = category.area_code
            if category.sigungu_code is not None:
                params["sigunguCode"] = category.sigungu_code

        endpoint = AREA_ENDPOINT
        if keyword and keyword.strip():
            endpoint = KEYWORD_ENDPOINT
            params["keyword"] = keyword.strip()

        payload = await self._get(endpoint, params)
        return parse_page(payload, page_no)

    async def _get(self, endpoint: str, params: Dict[str, Any]) -> Any:
        url = self.base_url + endpoint
        log = logger.bind(endpoint=endpoint, page_no=params.get("pageNo"))
        start_time = time.perf_counter()
        try:
            response = await self._client.get(url, params=params)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            log.warning("tour_api_timeout", error=str(e))
            raise NetworkError(f"TourAPI request timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            log.error("tour_api_status_error", status_code=status_code)
            raise UpstreamError(status_code, f"TourAPI returned HTTP {status_code}") from e
        except httpx.TransportError as e:
            log.warning("tour_api_transport_error", error=str(e))
            raise NetworkError(f"TourAPI unreachable: {e}") from e

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        log.info("tour_api_request", status_code=response.status_code, elapsed_ms=round(elapsed_ms, 2))

        try:
            return response.json()
        except ValueError as e:
            # data.go.kr answers gateway-level errors (bad key, quota) with XML and HTTP 200
            log.error("tour_api_decoding_error", body_preview=response.text[:200])
            raise UpstreamError("DECODING_ERROR", "TourAPI returned a body that is not JSON") from e


class CachedSiteSearchProvider:
    """Wraps any SiteSearchProvider with a ResponseCache. Failures are never cached."""

    def __init__(self, provider: SiteSearchProvider, cache: ResponseCache, ttl: int = settings.CACHE_TTL_SECONDS):
        self.provider = provider
        self.cache = cache
        self.ttl = ttl

    @staticmethod
    def cache_key(shape: str, **query: Any) -> str:
        canonical = json.dumps(query, sort_keys=True, default=str)
        digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        return f"tourfeed:page:{shape}:{digest}"

    async def _cached(self, key: str, fetch, fresh: bool = False) -> PageResult:
        if fresh:
            # Explicit refresh: skip the read, but store the new answer for later readers
            logger.debug("cache_bypassed", key=key)
        else:
            raw = await self.cache.get(key)
            if raw is not None:
                try:
                    page = PageResult.model_validate_json(raw)
                    logger.debug("cache_hit", key=key)
                    return page
                except ValueError:
                    logger.warning("cache_entry_invalid", key=key)
                    await self.cache.delete(key)

        page = await fetch()
        await self.cache.setex(key, self.ttl, page.model_dump_json())
        return page

    async def fetch_by_location(
        self,
        coordinate: Coordinate,
        radius_m: int,
        category: Optional[CategoryFilter],
        page_no: int,
        page_size: int,
        fresh: bool = False,
    ) -> PageResult:
        key = self.cache_key(
            "location",
            coordinate=coordinate.model_dump(),
            radius_m=radius_m,
            category=category.model_dump() if category else None,
            page_no=page_no,
            page_size=page_size,
        )
        return await self._cached(
            key,
            lambda: self.provider.fetch_by_location(coordinate, radius_m, category, page_no, page_size, fresh=fresh),
            fresh,
        )

    async def fetch_by_keyword(
        self,
        keyword: Optional[str],
        category: Optional[CategoryFilter],
        page_no: int,
        page_size: int,
        fresh: bool = False,
    ) -> PageResult:
        key = self.cache_key(
            "keyword",
            keyword=keyword,
            category=category.model_dump() if category else None,
            page_no=page_no,
            page_size=page_size,
        )
        return await self._cached(
            key,
            lambda: self.provider.fetch_by_keyword(keyword, category, page_no, page_size, fresh=fresh),
            fresh,
        )
