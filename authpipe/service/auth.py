from __future__ import annotations

import asyncio
import random
import time
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from authpipe.config import API_ENDPOINTS, Settings
from authpipe.logging import get_logger, log_auth_event, sanitize_error_message
from authpipe.service.credentials import CredentialStore
from authpipe.service.errors import AuthError, ServiceError
from authpipe.service.lockout import LockoutGuard
from authpipe.service.pipeline import RequestOptions, RequestPipeline
from authpipe.service.rate_limit import RateLimiter
from authpipe.service.retry import RetryPolicy
from authpipe.service.tokens import TokenLifecycleManager
from authpipe.service.transport import Transport
from authpipe.service.validation import (
    validate_email,
    validate_password,
    validate_username,
)
from authpipe.storage.common import AuthStorage
from authpipe.storage.errors import StorageError
from authpipe.storage.models import StoredUserData

logger = get_logger(__name__)


class AuthClient:
    """Caller-facing auth operations built on the request pipeline.

    ``login`` layers the lockout guard beneath the pipeline: the lockout is
    checked first, a failure is recorded before the error is re-raised, and a
    success clears the record.
    """

    def __init__(
        self,
        settings: Settings,
        pipeline: RequestPipeline,
        credentials: CredentialStore,
        tokens: TokenLifecycleManager,
        lockout: LockoutGuard,
    ) -> None:
        self.settings = settings
        self.pipeline = pipeline
        self.credentials = credentials
        self.tokens = tokens
        self.lockout = lockout
        self.logger = logger

    @classmethod
    def build(
        cls,
        settings: Settings,
        storage: AuthStorage,
        transport: Transport,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[Callable[[float, float], float]] = None,
    ) -> "AuthClient":
        """Wire every pipeline component from ``settings``."""
        credentials = CredentialStore(storage, settings, clock=clock)
        tokens = TokenLifecycleManager(credentials, transport, settings, clock=clock)
        rate_limiter = RateLimiter(
            settings.max_requests_per_window,
            settings.rate_limit_window_ms,
            clock=clock,
        )
        retry_policy = RetryPolicy(
            settings.max_retry_attempts,
            settings.retry_delay_base_ms,
            settings.retry_delay_max_ms,
            rng=rng or random.uniform,
        )
        pipeline = RequestPipeline(
            settings,
            transport,
            credentials,
            tokens,
            rate_limiter,
            retry_policy,
            sleep=sleep,
            clock=clock,
        )
        lockout = LockoutGuard(
            storage,
            max_attempts=settings.max_login_attempts,
            lockout_window_ms=settings.login_lockout_ms,
            clock=clock,
        )
        return cls(settings, pipeline, credentials, tokens, lockout)

    async def secure_request(
        self,
        endpoint: str,
        options: Union[RequestOptions, Mapping[str, Any], None] = None,
    ) -> Any:
        return await self.pipeline.send(endpoint, options)

    async def store_auth_data(
        self,
        user: Optional[dict[str, Any]],
        access_token: str,
        refresh_token: Optional[str],
    ) -> None:
        await self.credentials.store_auth_data(user, access_token, refresh_token)

    async def get_stored_user_data(self) -> StoredUserData:
        return await self.credentials.get_stored_user_data()

    async def login(self, identifier: str, secret: str) -> dict[str, Any]:
        email = validate_email(identifier, self.settings)
        validate_password(secret, self.settings)

        await self.lockout.check_lockout(email)

        try:
            log_auth_event("login_attempt_started", email=email)
            response = await self.pipeline.send(
                API_ENDPOINTS["login"],
                RequestOptions(
                    method="POST",
                    body={"email": email, "password": secret},
                    skip_auth=True,
                ),
            )
            user, access_token, refresh_token = self._extract_credentials(response)
            if user is None or access_token is None:
                raise AuthError(
                    "Login response did not include credentials",
                    detail={"endpoint": API_ENDPOINTS["login"]},
                )
            await self.credentials.store_auth_data(user, access_token, refresh_token)
        except (ServiceError, StorageError) as exc:
            attempts = None
            try:
                attempts = (await self.lockout.record_failure(email)).count
            except StorageError as record_exc:
                # The login error is what the caller must see
                self.logger.error("login_failure_record_failed", error=str(record_exc))
            log_auth_event(
                "login_failed",
                email=email,
                error=sanitize_error_message(str(exc)),
                error_kind=getattr(getattr(exc, "kind", None), "value", type(exc).__name__),
                attempts=attempts,
            )
            raise

        await self.lockout.clear(email)
        log_auth_event(
            "login_successful", user_id=user.get("id"), username=user.get("username")
        )
        return {"success": True, "user": user, "message": "Login successful"}

    async def register(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        email = validate_email(fields.get("email"), self.settings)
        username = validate_username(fields.get("username"), self.settings)
        password = fields.get("password")
        validate_password(password, self.settings)
        role = fields.get("role") or "user"

        await self.lockout.check_lockout(email)

        try:
            log_auth_event(
                "registration_attempt_started", email=email, username=username, role=role
            )
            response = await self.pipeline.send(
                API_ENDPOINTS["register"],
                RequestOptions(
                    method="POST",
                    body={
                        "email": email,
                        "password": password,
                        "username": username,
                        "role": role,
                    },
                    skip_auth=True,
                ),
            )
        except ServiceError as exc:
            log_auth_event(
                "registration_failed",
                email=email,
                error=sanitize_error_message(exc.message),
                error_kind=exc.kind.value,
            )
            raise

        data = response if isinstance(response, dict) else {}
        user, access_token, refresh_token = self._extract_credentials(data)
        auto_login = bool(data.get("access_token") and user)
        if auto_login:
            await self.credentials.store_auth_data(user, access_token, refresh_token)
            await self.lockout.clear(email)

        log_auth_event(
            "registration_successful",
            user_id=(user or {}).get("id"),
            username=(user or {}).get("username"),
            auto_login=auto_login,
        )
        return {
            "success": True,
            "user": user,
            "message": data.get("message") or "Registration successful",
            "requires_verification": bool(
                data.get("requiresVerification", data.get("requires_verification", False))
            ),
        }

    async def logout(self) -> dict[str, Any]:
        """Notify the service, then always clear local credentials."""
        try:
            token = await self.credentials.get_stored_token()
            if token:
                try:
                    await self.pipeline.send(
                        API_ENDPOINTS["logout"], RequestOptions(method="POST")
                    )
                except ServiceError as exc:
                    # Local cleanup below still signs the user out
                    log_auth_event(
                        "server_logout_failed",
                        error=sanitize_error_message(exc.message),
                        error_kind=exc.kind.value,
                    )
            await self.credentials.clear_stored_auth()
        except StorageError as exc:
            self.logger.error("logout_failed", error=str(exc))
            await self.credentials.clear_stored_auth()
            return {
                "success": False,
                "error": str(exc),
                "message": "Logout completed (with errors)",
            }

        log_auth_event("logout_successful")
        return {"success": True, "message": "Logged out successfully"}

    async def check_auth_status(self) -> dict[str, Any]:
        try:
            token = await self.tokens.get_valid_token()
            stored = await self.credentials.get_stored_user_data()
        except StorageError as exc:
            log_auth_event("auth_status_check_failed", error=str(exc))
            return {
                "success": False,
                "is_logged_in": False,
                "user": None,
                "token": None,
                "error": str(exc),
            }

        auth_state = stored.auth_state
        is_authenticated = bool(
            token is not None
            and stored.user
            and auth_state is not None
            and auth_state.is_logged_in
        )
        return {
            "success": True,
            "is_logged_in": is_authenticated,
            "user": stored.user if is_authenticated else None,
            "token": token.value if is_authenticated and token is not None else None,
            "last_activity": auth_state.last_update if auth_state else None,
        }

    @staticmethod
    def _extract_credentials(
        response: Any,
    ) -> tuple[Optional[dict], Optional[str], Optional[str]]:
        if not isinstance(response, dict):
            return None, None, None
        user = response.get("user")
        access_token = response.get("access_token") or response.get("token")
        return (
            user if isinstance(user, dict) else None,
            access_token if isinstance(access_token, str) else None,
            response.get("refresh_token"),
        )
