from __future__ import annotations

import time
from typing import Any, Callable, Optional

from authpipe.config import Settings
from authpipe.logging import log_auth_event
from authpipe.storage.common import AuthStorage
from authpipe.storage.models import AuthStateSnapshot, StoredUserData, Token


class CredentialStore:
    """Owns the access token, refresh token, user record and auth snapshot.

    All four keys are written in one ``set_many`` call and removed in one
    ``remove`` call so the snapshot never disagrees with the token about
    login state.
    """

    def __init__(
        self,
        storage: AuthStorage,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.settings = settings
        self._clock = clock

    @property
    def _keys(self) -> list[str]:
        return [
            self.settings.auth_state_key,
            self.settings.token_storage_key,
            self.settings.refresh_token_key,
            self.settings.user_data_key,
        ]

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def store_auth_data(
        self,
        user: Optional[dict[str, Any]],
        access_token: str,
        refresh_token: Optional[str],
    ) -> AuthStateSnapshot:
        snapshot = AuthStateSnapshot(
            is_logged_in=True, user=user, last_update=self._now_ms()
        )
        await self.storage.set_many(
            {
                self.settings.auth_state_key: snapshot.to_dict(),
                self.settings.token_storage_key: access_token,
                self.settings.refresh_token_key: refresh_token,
                self.settings.user_data_key: user,
            }
        )
        log_auth_event(
            "auth_data_stored",
            user_id=(user or {}).get("id"),
            username=(user or {}).get("username"),
        )
        return snapshot

    async def get_stored_token(self) -> Optional[str]:
        value = await self.storage.get(self.settings.token_storage_key)
        return value or None

    async def get_stored_refresh_token(self) -> Optional[str]:
        value = await self.storage.get(self.settings.refresh_token_key)
        return value or None

    async def get_stored_user_data(self) -> StoredUserData:
        result = await self.storage.get_many(
            [
                self.settings.user_data_key,
                self.settings.auth_state_key,
                self.settings.token_storage_key,
            ]
        )
        token_value = result.get(self.settings.token_storage_key)
        return StoredUserData(
            user=result.get(self.settings.user_data_key) or None,
            auth_state=AuthStateSnapshot.from_dict(
                result.get(self.settings.auth_state_key)
            ),
            token=Token.from_value(token_value) if isinstance(token_value, str) else None,
        )

    async def clear_stored_auth(self) -> None:
        await self.storage.remove(self._keys)
        log_auth_event("auth_data_cleared")
