from typing import Optional, Union


class FeedError(Exception):
    """Base class for failures raised by site search providers."""

    kind = "unexpected"

    def __init__(self, detail: str, code: Optional[Union[int, str]] = None):
        super().__init__(detail)
        self.detail = detail
        self.code = code


class NetworkError(FeedError):
    """Connectivity failure (DNS, connect, read timeout). Recoverable by retry."""

    kind = "network"


class UpstreamError(FeedError):
    """Non-2xx status, an API-level error payload or an undecodable body.

    `code` carries the HTTP status (int) or the TourAPI resultCode (str).
    """

    kind = "upstream"

    def __init__(self, code: Union[int, str], detail: Optional[str] = None):
        super().__init__(detail or f"Upstream error ({code})", code=code)


class StaleResponseDiscarded(FeedError):
    """Raised inside the feed controller when a response belongs to a superseded anchor.

    Never leaves the controller.
    """

    kind = "stale"

    def __init__(self, issued_generation: int, current_generation: int):
        super().__init__(
            f"response for generation {issued_generation} discarded (current {current_generation})"
        )
        self.issued_generation = issued_generation
        self.current_generation = current_generation
