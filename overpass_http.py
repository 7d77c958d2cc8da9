"""
Overpass API client (the secondary, live POI source).

All Overpass HTTP requests go through OverpassClient. It provides:
- Process-local rate limiting: minimum spacing between requests, shared
  by every thread using the same RateLimiter
- Thread-safe request execution (fresh requests.Session per request)
- Retry with exponential backoff on 429/502/503/504, timeouts and
  server-side body errors; 4xx failures are not retried
- Cancellation: backoff and spacing waits stop when the token fires
- hm_trace integration for observability

Once the retry budget is spent the client raises FetchError with
source="secondary".

When self-hosting Overpass, set OVERPASS_BASE_URL and lower
OVERPASS_MIN_SPACING.
"""

import logging
import threading
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from cancellation import CancellationToken, check_cancelled
from errors import FetchError
from geo import POI, Bounds
from heatmap_config import Factor, OverpassConfig
from hm_trace import get_trace

logger = logging.getLogger(__name__)

SOURCE_NAME = "secondary"
RETRYABLE_STATUSES = frozenset({429, 502, 503, 504})
_BODY_ERROR_INDICATORS = ("runtime error", "timed out", "out of memory")


class OverpassQueryError(Exception):
    """A single Overpass attempt failed."""

    def __init__(self, message: str, retryable: bool, status_code: int = 0):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class OverpassRateLimitError(OverpassQueryError):
    """Overpass returned 429 or a rate-limit remark."""

    def __init__(self, message: str, status_code: int = 429):
        super().__init__(message, retryable=True, status_code=status_code)


def _sleep(seconds: float, cancel: Optional[CancellationToken]) -> None:
    if seconds <= 0:
        return
    if cancel is None:
        time.sleep(seconds)
    else:
        cancel.sleep(seconds)


class RateLimiter:
    """Enforces a minimum interval between requests across threads."""

    def __init__(self, min_interval: float):
        self.min_interval = min_interval
        self._lock = threading.Lock()
        self._last_request_time = 0.0

    def wait(self, cancel: Optional[CancellationToken] = None) -> None:
        with self._lock:
            elapsed = time.monotonic() - self._last_request_time
            if elapsed < self.min_interval:
                _sleep(self.min_interval - elapsed, cancel)
            self._last_request_time = time.monotonic()


# =============================================================================
# Query building and parsing
# =============================================================================

def parse_osm_tag(tag: str) -> Tuple[str, str]:
    """Split "key=value" on the first '='. A bare key has an empty value."""
    key, sep, value = tag.partition("=")
    return (key, value) if sep else (tag, "")


def _quote(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


def format_bbox(bounds: Bounds) -> str:
    return f"{bounds.south},{bounds.west},{bounds.north},{bounds.east}"


def build_query(factors: Sequence[Factor], bounds: Bounds, timeout: int = 60) -> str:
    """Combined Overpass QL for every tag of every factor, with way centers."""
    bbox = format_bbox(bounds)
    seen = set()
    statements = []
    for factor in factors:
        for tag in factor.osm_tags:
            if tag in seen:
                continue
            seen.add(tag)
            key, value = parse_osm_tag(tag)
            selector = f'["{_quote(key)}"="{_quote(value)}"]' if value else f'["{_quote(key)}"]'
            statements.append(f"  node{selector}({bbox});")
            statements.append(f"  way{selector}({bbox});")
    body = "\n".join(statements)
    return f"[out:json][timeout:{timeout}];\n(\n{body}\n);\nout center;"


def parse_elements(data: Dict[str, Any]) -> List[POI]:
    """Convert Overpass elements to POIs. Ways use their center; elements
    without coordinates are skipped."""
    pois = []
    for element in data.get("elements", []) or []:
        center = element.get("center") or {}
        lat = center.get("lat", element.get("lat"))
        lng = center.get("lon", element.get("lon"))
        if lat is None or lng is None:
            continue
        tags = element.get("tags") or {}
        pois.append(POI(
            id=f"{element.get('type', 'node')}/{element.get('id')}",
            lat=float(lat),
            lng=float(lng),
            tags={str(k): str(v) for k, v in tags.items()},
            name=tags.get("name"),
        ))
    return pois


def matches_any_tag(tags: Dict[str, str], osm_tags: Sequence[str]) -> bool:
    for tag in osm_tags:
        key, value = parse_osm_tag(tag)
        if key in tags and (not value or tags[key] == value):
            return True
    return False


def categorize_pois(pois: Sequence[POI], factors: Sequence[Factor]) -> Dict[str, List[POI]]:
    """Assign each POI to the first factor whose tags it matches."""
    result: Dict[str, List[POI]] = {f.id: [] for f in factors}
    for poi in pois:
        for factor in factors:
            if matches_any_tag(poi.tags, factor.osm_tags):
                result[factor.id].append(poi)
                break
    return result


# =============================================================================
# Client
# =============================================================================

class OverpassClient:
    def __init__(
        self,
        config: Optional[OverpassConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.config = config or OverpassConfig()
        self.base_url = self.config.base_url
        self.rate_limiter = rate_limiter or RateLimiter(self.config.min_spacing)

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (0-based)."""
        delay = self.config.retry_base_delay * (2 ** attempt)
        return min(delay, self.config.retry_max_delay)

    def fetch_pois(
        self,
        factors: Sequence[Factor],
        bounds: Bounds,
        cancel: Optional[CancellationToken] = None,
    ) -> Dict[str, List[POI]]:
        """Fetch and categorize POIs for all factors in one combined query."""
        if not factors:
            return {}
        ql = build_query(factors, bounds, self.config.timeout)
        data = self.query(ql, caller="fetch_pois", cancel=cancel)
        pois = parse_elements(data)
        grouped = categorize_pois(pois, factors)
        logger.info(
            "Overpass returned %d elements for %d factors",
            len(pois),
            len(factors),
        )
        return grouped

    def query(
        self,
        overpass_ql: str,
        caller: str = "unknown",
        cancel: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        """
        Execute an Overpass QL query with rate limiting and retries.

        Raises:
            FetchError: After max_retries retryable failures, or on the
                first non-retryable failure.
            CancellationSignal: If cancel fires before or between attempts.
        """
        attempts = 1 + self.config.max_retries
        for attempt in range(attempts):
            check_cancelled(cancel)
            try:
                return self._do_request(overpass_ql, caller, cancel)
            except OverpassQueryError as e:
                if e.retryable and attempt < attempts - 1:
                    delay = self.backoff_delay(attempt)
                    logger.info(
                        "Overpass %s (attempt %d/%d), sleeping %.1fs before retry [caller=%s]",
                        e,
                        attempt + 1,
                        attempts,
                        delay,
                        caller,
                    )
                    _sleep(delay, cancel)
                    continue
                raise FetchError(
                    f"Overpass query failed after {attempt + 1} attempt(s)",
                    source=SOURCE_NAME,
                    cause=e,
                ) from e

        raise FetchError("Overpass query failed after all retries", source=SOURCE_NAME)

    def _record(self, caller: str, elapsed_ms: int, status_code: int, provider_status: str):
        trace = get_trace()
        if trace:
            trace.record_api_call(
                service="overpass",
                endpoint=caller,
                elapsed_ms=elapsed_ms,
                status_code=status_code,
                provider_status=provider_status,
            )

    def _do_request(
        self,
        overpass_ql: str,
        caller: str,
        cancel: Optional[CancellationToken],
    ) -> Dict[str, Any]:
        """Make a single rate-limited HTTP request to Overpass."""
        self.rate_limiter.wait(cancel)

        start = time.monotonic()
        try:
            session = requests.Session()
            session.trust_env = False
            resp = session.post(
                self.base_url,
                data={"data": overpass_ql},
                timeout=self.config.timeout,
            )
        except requests.exceptions.Timeout:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            self._record(caller, elapsed_ms, 0, "timeout")
            raise OverpassQueryError(
                f"request timeout after {self.config.timeout}s", retryable=True
            )
        except requests.exceptions.ConnectionError as e:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            self._record(caller, elapsed_ms, 0, "connection_error")
            raise OverpassQueryError(f"connection error: {e}", retryable=True)
        except requests.exceptions.RequestException as e:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            self._record(caller, elapsed_ms, 0, "exception")
            raise OverpassQueryError(f"request failed: {e}", retryable=False)

        elapsed_ms = int((time.monotonic() - start) * 1000)
        status_code = resp.status_code

        if status_code == 429:
            self._record(caller, elapsed_ms, status_code, "rate_limit")
            raise OverpassRateLimitError("HTTP 429 Too Many Requests")
        if status_code in RETRYABLE_STATUSES:
            self._record(caller, elapsed_ms, status_code, "unavailable")
            raise OverpassQueryError(
                f"HTTP {status_code}", retryable=True, status_code=status_code
            )
        if status_code >= 400:
            self._record(caller, elapsed_ms, status_code, "http_error")
            raise OverpassQueryError(
                f"HTTP {status_code}", retryable=False, status_code=status_code
            )

        try:
            data = resp.json()
        except ValueError:
            self._record(caller, elapsed_ms, status_code, "parse_error")
            raise OverpassQueryError(
                f"non-JSON response (HTTP {status_code})",
                retryable=False,
                status_code=status_code,
            )

        # Overpass may put errors in osm3s.remark or top-level remark
        remark = ""
        if isinstance(data, dict):
            osm3s = data.get("osm3s", {}) or {}
            remark = str(osm3s.get("remark") or data.get("remark") or "")
        remark_lower = remark.lower()
        if "too many requests" in remark_lower:
            self._record(caller, elapsed_ms, status_code, "rate_limit")
            raise OverpassRateLimitError("rate limit in response body", status_code)
        if any(indicator in remark_lower for indicator in _BODY_ERROR_INDICATORS):
            self._record(caller, elapsed_ms, status_code, "body_error")
            raise OverpassQueryError(
                f"server error in response body: {remark[:100]}",
                retryable=True,
                status_code=status_code,
            )

        self._record(caller, elapsed_ms, status_code, "ok")
        return data
