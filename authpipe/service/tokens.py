from __future__ import annotations

import asyncio
import json
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from authpipe.config import API_ENDPOINTS, Settings
from authpipe.logging import generate_request_id, get_logger, log_auth_event
from authpipe.service.credentials import CredentialStore
from authpipe.service.errors import ServiceError, TokenExpiredError
from authpipe.service.transport import Transport
from authpipe.storage.errors import StorageError
from authpipe.storage.models import Token

logger = get_logger(__name__)


class TokenLifecycleManager:
    """Token validity checks and single-flight refresh.

    At most one refresh runs at a time. Callers that arrive while a refresh is
    pending await the same task, so N concurrent callers produce exactly one
    refresh request. The task clears the pending marker itself when it
    finishes, whether it succeeded or not.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        transport: Transport,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.credentials = credentials
        self.transport = transport
        self.settings = settings
        self._clock = clock
        self._refresh_buffer = timedelta(milliseconds=settings.token_refresh_buffer_ms)
        self._pending: Optional[asyncio.Task[Token]] = None

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    @property
    def refresh_in_flight(self) -> bool:
        return self._pending is not None

    def is_expired(self, token: Optional[Token]) -> bool:
        """True once ``now`` is within the refresh buffer of ``expires_at``."""
        if token is None:
            return True
        return self._now() >= token.expires_at - self._refresh_buffer

    async def get_valid_token(self) -> Optional[Token]:
        """Return a usable token, refreshing if needed; never raises.

        Any failure clears stored credentials and yields None.
        """
        try:
            stored = await self.credentials.get_stored_token()
            if not stored:
                return None
            token = Token.from_value(stored)
            if token is not None and not self.is_expired(token):
                return token
            return await self.refresh_if_needed()
        except (ServiceError, StorageError) as exc:
            log_auth_event("token_validation_failed", error=str(exc))
            try:
                await self.credentials.clear_stored_auth()
            except StorageError as clear_exc:
                logger.error("token_clear_failed", error=str(clear_exc))
            return None

    async def refresh_if_needed(self) -> Token:
        """Refresh the access token, sharing an in-flight refresh if one exists."""
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._run_refresh())
        # Shield so an abandoned caller does not cancel the shared refresh
        return await asyncio.shield(self._pending)

    async def _run_refresh(self) -> Token:
        try:
            return await self._perform_refresh()
        finally:
            self._pending = None

    async def _perform_refresh(self) -> Token:
        try:
            refresh_token = await self.credentials.get_stored_refresh_token()
            if not refresh_token:
                raise TokenExpiredError("No refresh token available")
            payload = await self._request_refresh(refresh_token)
            access_token = payload.get("access_token") or payload.get("token")
            token = Token.from_value(access_token) if isinstance(access_token, str) else None
            if token is None:
                raise TokenExpiredError("Refresh response did not contain a usable token")
            user = payload.get("user")
            if user is None:
                user = (await self.credentials.get_stored_user_data()).user
            await self.credentials.store_auth_data(
                user,
                token.value,
                payload.get("refresh_token") or refresh_token,
            )
        except (ServiceError, StorageError) as exc:
            log_auth_event("token_refresh_failed", error=str(exc))
            await self.credentials.clear_stored_auth()
            if isinstance(exc, TokenExpiredError):
                raise
            raise TokenExpiredError("Session expired; please sign in again") from exc
        log_auth_event("token_refreshed_successfully")
        return token

    async def _request_refresh(self, refresh_token: str) -> dict:
        # Sent without the bearer header: the expired token is not a credential
        response = await self.transport.request(
            self.settings.endpoint_url(API_ENDPOINTS["refresh"]),
            method="POST",
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "X-Request-ID": generate_request_id(),
                "X-Client-Version": self.settings.client_version,
                "X-Environment": self.settings.environment.value,
            },
            body=json.dumps({"refresh_token": refresh_token}),
        )
        if not response.ok:
            raise TokenExpiredError(
                f"Token refresh rejected with status {response.status}",
                status_code=response.status,
            )
        try:
            payload = json.loads(response.body)
        except ValueError as exc:
            raise TokenExpiredError("Token refresh returned malformed JSON") from exc
        if not isinstance(payload, dict):
            raise TokenExpiredError("Token refresh returned an unexpected payload")
        return payload
