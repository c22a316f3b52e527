"""Shared HTTP client for storefront and ledger APIs.

Low-level client used by every connector. Handles:
- Session lifecycle and per-request timeout
- Retries with exponential backoff on 429 (honouring Retry-After) and 5xx
- Retries on network errors, except DNS resolution failures
- Rate-limit snapshots parsed from platform-specific response headers
- Normalizing every failure into ConnectorError
"""

import asyncio
import json
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import aiohttp

from core.observability import get_logger, get_metrics

logger = get_logger(__name__)


# =============================================================================
# Errors
# =============================================================================

class ConnectorError(Exception):
    """Normalized error for any platform API failure.

    Attributes:
        message: Human-readable description
        code: Platform error code, HTTP_<status>, NETWORK_ERROR, DNS_ERROR or UNKNOWN_ERROR
        http_status: HTTP status (0 when no response was received)
        raw_details: Parsed response body or exception detail
    """

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        http_status: int = 0,
        raw_details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.http_status = http_status
        self.raw_details = raw_details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "status": self.http_status,
            "details": self.raw_details,
        }


class ConnectorAuthError(ConnectorError):
    """Authentication failed (401/403)."""
    pass


class ConnectorNotFoundError(ConnectorError):
    """Resource not found (404)."""
    pass


class ConnectorConflictError(ConnectorError):
    """Conflict (409), e.g. the resource already exists."""
    pass


class ConnectorRateLimitError(ConnectorError):
    """Rate limit exceeded (429) after all retries."""
    def __init__(self, message: str, retry_after: Optional[float] = None, raw_details: Any = None):
        super().__init__(message, "RATE_LIMITED", 429, raw_details)
        self.retry_after = retry_after


class ConnectorNetworkError(ConnectorError):
    """No response received (connection, timeout or DNS failure)."""
    pass


_STATUS_ERRORS = {
    401: ConnectorAuthError,
    403: ConnectorAuthError,
    404: ConnectorNotFoundError,
    409: ConnectorConflictError,
}


# =============================================================================
# Configuration
# =============================================================================

@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 8.0   # seconds
    exponential_base: float = 2.0
    retry_on_status: Tuple[int, ...] = (429, 500, 502, 503, 504)

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for retry attempt (exponential backoff)."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        return min(delay, self.max_delay)


@dataclass
class RateLimitInfo:
    """Snapshot of the platform's rate-limit budget after the last response."""
    remaining: int
    limit: int
    reset_time: datetime

    @property
    def ratio_remaining(self) -> float:
        if self.limit <= 0:
            return 1.0
        return self.remaining / self.limit


@dataclass
class ApiResponse:
    status: int
    data: Any
    headers: Mapping[str, str] = field(default_factory=dict)


# =============================================================================
# Rate-limit header parsers
# =============================================================================

def _int_header(headers: Mapping[str, str], name: str) -> Optional[int]:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return int(float(value))
    except ValueError:
        return None


def _reset_from(headers: Mapping[str, str], name: str) -> datetime:
    """Reset header as epoch seconds or seconds-from-now; default one hour."""
    value = _int_header(headers, name)
    now = datetime.utcnow()
    if value is None:
        return now + timedelta(hours=1)
    if value > 1_000_000_000:
        return datetime.utcfromtimestamp(value)
    return now + timedelta(seconds=value)


def parse_shopify_rate_limit(headers: Mapping[str, str]) -> Optional[RateLimitInfo]:
    """X-Shopify-Shop-Api-Call-Limit: "used/total" (leaky bucket, ~1s reset)."""
    value = headers.get("X-Shopify-Shop-Api-Call-Limit")
    if not value or "/" not in value:
        return None
    used, _, total = value.partition("/")
    try:
        used_n, total_n = int(used), int(total)
    except ValueError:
        return None
    return RateLimitInfo(
        remaining=max(total_n - used_n, 0),
        limit=total_n,
        reset_time=datetime.utcnow() + timedelta(seconds=1),
    )


def parse_woocommerce_rate_limit(headers: Mapping[str, str]) -> Optional[RateLimitInfo]:
    remaining = _int_header(headers, "X-WP-RateLimit-Remaining")
    limit = _int_header(headers, "X-WP-RateLimit-Limit")
    if remaining is None or limit is None:
        return None
    return RateLimitInfo(remaining, limit, _reset_from(headers, "X-WP-RateLimit-Reset"))


def parse_generic_rate_limit(headers: Mapping[str, str]) -> Optional[RateLimitInfo]:
    """X-Rate-Limit-* or X-RateLimit-* families."""
    for prefix in ("X-Rate-Limit-", "X-RateLimit-"):
        remaining = _int_header(headers, prefix + "Remaining")
        limit = _int_header(headers, prefix + "Limit")
        if remaining is not None and limit is not None:
            return RateLimitInfo(remaining, limit, _reset_from(headers, prefix + "Reset"))
    return None


def parse_ledger_rate_limit(headers: Mapping[str, str]) -> Optional[RateLimitInfo]:
    """X-API-Calls-Remaining, falling back to the generic headers."""
    remaining = _int_header(headers, "X-API-Calls-Remaining")
    if remaining is not None:
        limit = _int_header(headers, "X-API-Calls-Limit") or max(remaining, 1)
        return RateLimitInfo(remaining, limit, _reset_from(headers, "X-API-Calls-Reset"))
    return parse_generic_rate_limit(headers)


RateLimitParser = Callable[[Mapping[str, str]], Optional[RateLimitInfo]]


def _is_dns_error(exc: BaseException) -> bool:
    """DNS failures surface as ClientConnectorError wrapping socket.gaierror."""
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, socket.gaierror):
            return True
        os_error = getattr(current, "os_error", None)
        if isinstance(os_error, socket.gaierror):
            return True
        current = current.__cause__ or current.__context__
    return False


def _error_message(data: Any, default: str) -> str:
    """Pull a readable message out of a platform error body."""
    if isinstance(data, dict):
        for key in ("message", "mensaje", "detail", "error", "errors"):
            value = data.get(key)
            if value:
                return value if isinstance(value, str) else json.dumps(value)
    if isinstance(data, str) and data.strip():
        return data.strip()[:500]
    return default


def _error_code(data: Any, status: int) -> str:
    if isinstance(data, dict) and isinstance(data.get("code"), str) and data["code"]:
        return data["code"]
    return f"HTTP_{status}"


# =============================================================================
# Client
# =============================================================================

class ApiClient:
    """HTTP client shared by the platform connectors.

    Usage:
        client = ApiClient("https://shop.myshopify.com/admin/api/2024-10",
                           headers={"X-Shopify-Access-Token": token},
                           rate_limit_parser=parse_shopify_rate_limit)
        async with client:
            response = await client.get("products.json", params={"limit": 250})
    """

    def __init__(
        self,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        auth: Optional[aiohttp.BasicAuth] = None,
        timeout_seconds: float = 30,
        retry_config: Optional[RetryConfig] = None,
        rate_limit_parser: RateLimitParser = parse_generic_rate_limit,
        name: str = "api",
    ):
        self.base_url = base_url.rstrip("/")
        self.headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            **(headers or {}),
        }
        self.auth = auth
        self.timeout_seconds = timeout_seconds
        self.retry_config = retry_config or RetryConfig()
        self.rate_limit_parser = rate_limit_parser
        self.name = name
        self.rate_limit_info: Optional[RateLimitInfo] = None
        self._session: Optional[aiohttp.ClientSession] = None

    async def connect(self) -> None:
        """Open the HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers=self.headers,
                auth=self.auth,
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            )

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "ApiClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def build_url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def is_approaching_rate_limit(self, threshold: float = 0.1) -> bool:
        """True when less than `threshold` of the budget remains."""
        if self.rate_limit_info is None:
            return False
        return self.rate_limit_info.ratio_remaining < threshold

    def _update_rate_limit(self, headers: Mapping[str, str]) -> None:
        info = self.rate_limit_parser(headers)
        if info is not None:
            self.rate_limit_info = info

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Any] = None,
    ) -> ApiResponse:
        """Make a request with automatic retries.

        Raises:
            ConnectorAuthError: 401/403
            ConnectorNotFoundError: 404
            ConnectorConflictError: 409
            ConnectorRateLimitError: 429 after all retries
            ConnectorNetworkError: no response (NETWORK_ERROR or DNS_ERROR)
            ConnectorError: any other failure
        """
        if self._session is None:
            raise ConnectorError("Not connected. Call connect() first.", "NOT_CONNECTED")

        url = self.build_url(path)
        retry_config = self.retry_config
        metrics = get_metrics()

        for attempt in range(retry_config.max_retries + 1):
            started = time.monotonic()
            try:
                async with self._session.request(method, url, params=params, json=json_body) as response:
                    text = await response.text()
                    headers = response.headers
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                metrics.record_http_error(self.name)
                if _is_dns_error(e):
                    raise ConnectorNetworkError(
                        f"DNS resolution failed for {url}: {e}", "DNS_ERROR", 0, repr(e)
                    ) from e
                if attempt < retry_config.max_retries:
                    delay = retry_config.get_delay(attempt)
                    logger.warning(
                        f"{self.name} {method} {url} failed with {type(e).__name__}: {e}, "
                        f"retrying in {delay:.1f}s (attempt {attempt + 1}/{retry_config.max_retries})"
                    )
                    metrics.record_http_retry(self.name)
                    await asyncio.sleep(delay)
                    continue
                raise ConnectorNetworkError(
                    f"Request failed after {retry_config.max_retries} retries: {type(e).__name__}: {e}",
                    "NETWORK_ERROR",
                    0,
                    repr(e),
                ) from e

            metrics.record_http_request(self.name, (time.monotonic() - started) * 1000)
            self._update_rate_limit(headers)
            data = self._decode(text)

            if response.status < 400:
                return ApiResponse(response.status, data, headers)

            if response.status in retry_config.retry_on_status and attempt < retry_config.max_retries:
                if response.status == 429:
                    retry_after = _int_header(headers, "Retry-After")
                    delay = float(retry_after) if retry_after is not None else retry_config.get_delay(attempt)
                else:
                    delay = retry_config.get_delay(attempt)
                logger.warning(
                    f"{self.name} {method} {url} returned {response.status}, "
                    f"retrying in {delay:.1f}s (attempt {attempt + 1}/{retry_config.max_retries})"
                )
                metrics.record_http_retry(self.name, rate_limited=response.status == 429)
                await asyncio.sleep(delay)
                continue

            metrics.record_http_error(self.name)
            raise self._error_for(response.status, data, headers, url)

        # Loop always returns or raises; kept for type checkers
        raise ConnectorError(f"Request to {url} exhausted retries")

    @staticmethod
    def _decode(text: str) -> Any:
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError:
            return text

    def _error_for(self, status: int, data: Any, headers: Mapping[str, str], url: str) -> ConnectorError:
        message = _error_message(data, f"{self.name} API error {status} for {url}")
        if status == 429:
            return ConnectorRateLimitError(
                f"Rate limit exceeded: {message}",
                retry_after=_int_header(headers, "Retry-After"),
                raw_details=data,
            )
        error_class = _STATUS_ERRORS.get(status, ConnectorError)
        return error_class(message, _error_code(data, status), status, data)

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> ApiResponse:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json_body: Any = None, params: Optional[Dict[str, Any]] = None) -> ApiResponse:
        return await self.request("POST", path, params=params, json_body=json_body)

    async def put(self, path: str, json_body: Any = None, params: Optional[Dict[str, Any]] = None) -> ApiResponse:
        return await self.request("PUT", path, params=params, json_body=json_body)
