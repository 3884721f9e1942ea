from __future__ import annotations

import asyncio
import json
import time
import zlib
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

from authpipe.config import Settings
from authpipe.logging import get_logger, log_auth_event, sanitize_error_message, set_request_id
from authpipe.service.credentials import CredentialStore
from authpipe.service.errors import (
    AuthError,
    NetworkError,
    RateLimitExceededError,
    ServiceError,
    TokenExpiredError,
    retry_after_from_header,
)
from authpipe.service.rate_limit import RateLimiter
from authpipe.service.retry import RetryPolicy
from authpipe.service.tokens import TokenLifecycleManager
from authpipe.service.transport import Transport, TransportResponse

logger = get_logger(__name__)

STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def freshness_token(install_id: str, now_ms: Optional[int] = None) -> str:
    """CRC-32 of ``<epoch ms>_<install id>`` in base 36.

    This is a freshness tag for the X-CSRF-Token header. It is not
    cryptographic and gives no protection against forged or replayed requests.
    """
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return _to_base36(zlib.crc32(f"{stamp}_{install_id}".encode("utf-8")))


@dataclass
class RequestOptions:
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    body: Union[Mapping[str, Any], str, None] = None
    skip_auth: bool = False

    @classmethod
    def coerce(
        cls, options: Union["RequestOptions", Mapping[str, Any], None]
    ) -> "RequestOptions":
        if options is None:
            return cls()
        if isinstance(options, RequestOptions):
            return options
        return cls(
            method=str(options.get("method", "GET")),
            headers=dict(options.get("headers") or {}),
            body=options.get("body"),
            skip_auth=bool(options.get("skip_auth", options.get("skipAuth", False))),
        )

    def encoded_body(self) -> Optional[str]:
        if self.body is None or isinstance(self.body, str):
            return self.body
        return json.dumps(self.body)


class RequestPipeline:
    """Root orchestrator for every outbound call.

    Per call: rate-limit admission, token attachment, transport call, response
    classification, then retry with backoff or surface the classified error.
    """

    def __init__(
        self,
        settings: Settings,
        transport: Transport,
        credentials: CredentialStore,
        tokens: TokenLifecycleManager,
        rate_limiter: RateLimiter,
        retry_policy: RetryPolicy,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.transport = transport
        self.credentials = credentials
        self.tokens = tokens
        self.rate_limiter = rate_limiter
        self.retry_policy = retry_policy
        self._sleep = sleep
        self._clock = clock

    async def send(
        self,
        endpoint: str,
        options: Union[RequestOptions, Mapping[str, Any], None] = None,
        attempt: int = 0,
    ) -> Any:
        """Issue ``endpoint`` and return the parsed body or raise a ServiceError."""
        options = RequestOptions.coerce(options)
        request_id = set_request_id()
        started = time.monotonic()
        try:
            self.rate_limiter.admit(endpoint)
            headers = await self._prepare_headers(options, request_id)
            method = options.method.upper()
            log_auth_event(
                "api_request_start",
                endpoint=endpoint,
                method=method,
                request_id=request_id,
                retry_count=attempt,
            )
            response = await self.transport.request(
                self.settings.endpoint_url(endpoint),
                method=method,
                headers=headers,
                body=options.encoded_body(),
            )
            duration_ms = int((time.monotonic() - started) * 1000)
            return await self._handle_response(response, endpoint, request_id, duration_ms)
        except ServiceError as exc:
            return await self._handle_request_error(exc, endpoint, options, attempt, request_id)

    async def _prepare_headers(
        self, options: RequestOptions, request_id: str
    ) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-Request-ID": request_id,
            "X-Client-Version": self.settings.client_version,
            "X-Environment": self.settings.environment.value,
        }
        headers.update(options.headers)
        if not options.skip_auth:
            token = await self.tokens.get_valid_token()
            if token is not None:
                headers["Authorization"] = f"Bearer {token.value}"
        if options.method.upper() in STATE_CHANGING_METHODS:
            headers["X-CSRF-Token"] = freshness_token(
                self.settings.install_id, int(self._clock() * 1000)
            )
        return headers

    async def _handle_response(
        self,
        response: TransportResponse,
        endpoint: str,
        request_id: str,
        duration_ms: int,
    ) -> Any:
        status = response.status
        log_auth_event(
            "api_response_received",
            endpoint=endpoint,
            status_code=status,
            request_id=request_id,
            duration_ms=duration_ms,
        )

        if status == 429:
            retry_after = retry_after_from_header(
                response.header("Retry-After"),
                self.settings.default_retry_after_seconds,
            )
            raise RateLimitExceededError(
                "Rate limit exceeded",
                retry_after=retry_after,
                detail={"endpoint": endpoint},
            )

        if status == 401:
            await self.credentials.clear_stored_auth()
            raise TokenExpiredError("Authentication token expired")

        if status >= 500:
            raise NetworkError(
                "Server error occurred",
                status_code=status,
                detail={"endpoint": endpoint},
            )

        if not response.ok:
            data = self._parse_lenient(response)
            message = None
            if isinstance(data, dict):
                message = data.get("message") or data.get("error")
            raise AuthError(
                str(message or f"Request failed with status {status}"),
                status_code=status,
                error_code=f"HTTP_{status}",
                detail={"data": data, "endpoint": endpoint},
            )

        return self._parse_body(response, endpoint)

    @staticmethod
    def _declares_json(response: TransportResponse) -> bool:
        content_type = (response.header("Content-Type") or "").lower()
        return "application/json" in content_type or "+json" in content_type

    def _parse_body(self, response: TransportResponse, endpoint: str) -> Any:
        if not self._declares_json(response):
            return response.body
        if not response.body.strip():
            return None
        try:
            return json.loads(response.body)
        except ValueError as exc:
            raise NetworkError(
                "Invalid JSON response",
                status_code=response.status,
                detail={
                    "endpoint": endpoint,
                    "parse_error": str(exc),
                    "raw": response.body[:1000],
                },
            ) from exc

    def _parse_lenient(self, response: TransportResponse) -> Any:
        if self._declares_json(response) and response.body.strip():
            try:
                return json.loads(response.body)
            except ValueError:
                return response.body
        return response.body or None

    async def _handle_request_error(
        self,
        error: ServiceError,
        endpoint: str,
        options: RequestOptions,
        attempt: int,
        request_id: str,
    ) -> Any:
        log_auth_event(
            "api_request_error",
            endpoint=endpoint,
            error=sanitize_error_message(error.message),
            error_kind=error.kind.value,
            retry_count=attempt,
            request_id=request_id,
        )

        if not self.retry_policy.should_retry(error, attempt):
            log_auth_event(
                "api_request_failed_final",
                endpoint=endpoint,
                error=sanitize_error_message(error.message),
                total_attempts=attempt + 1,
                request_id=request_id,
            )
            raise error

        delay_ms = self.retry_policy.backoff_delay(attempt)
        log_auth_event(
            "api_request_retry_scheduled",
            endpoint=endpoint,
            retry_count=attempt + 1,
            delay_ms=int(delay_ms),
            request_id=request_id,
        )
        await self._sleep(delay_ms / 1000.0)
        return await self.send(endpoint, options, attempt + 1)
