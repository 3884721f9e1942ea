from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol

import httpx

from authpipe.logging import get_logger
from authpipe.service.errors import NetworkError

logger = get_logger(__name__)


@dataclass
class TransportResponse:
    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: str = ""

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class Transport(Protocol):
    """Performs one network call; never retries and never injects auth."""

    async def request(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[str] = None,
    ) -> TransportResponse: ...


class HttpxTransport:
    """Transport backed by a lazily created ``httpx.AsyncClient``."""

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        connect_timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout
        self.connect_timeout = min(connect_timeout, timeout)
        self._client = client
        self._transport = transport

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            kwargs: dict[str, Any] = {
                "timeout": httpx.Timeout(self.timeout, connect=self.connect_timeout),
                "follow_redirects": False,
            }
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._client = httpx.AsyncClient(**kwargs)
        return self._client

    async def request(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[str] = None,
    ) -> TransportResponse:
        client = await self._get_client()
        try:
            response = await client.request(
                method,
                url,
                headers=dict(headers or {}),
                content=body.encode("utf-8") if body is not None else None,
            )
        except httpx.TimeoutException as exc:
            logger.warning("transport_timeout", url=url, method=method, error=str(exc))
            raise NetworkError(
                "Request timed out", detail={"url": url, "timeout": self.timeout}
            ) from exc
        except httpx.TransportError as exc:
            logger.warning(
                "transport_error",
                url=url,
                method=method,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise NetworkError(
                "Failed to connect to authentication service", detail={"url": url}
            ) from exc
        return TransportResponse(
            status=response.status_code,
            headers=dict(response.headers),
            body=response.text,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
