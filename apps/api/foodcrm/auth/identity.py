from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Protocol

from supabase import AuthError, Client, create_client

from foodcrm.core.config import Settings, get_settings

logger = logging.getLogger("foodcrm.auth.identity")


class IdentityError(Exception):
    """Raised when the hosted identity provider rejects or fails a call."""


@dataclass
class IdentityUser:
    id: str
    email: str
    email_confirmed: bool


class IdentityProvider(Protocol):
    def sign_in(self, email: str, password: str) -> IdentityUser: ...

    def create_user(self, email: str, password: str, metadata: dict[str, Any]) -> IdentityUser: ...

    def delete_user(self, user_id: str) -> None: ...

    def update_password(self, user_id: str, password: str) -> None: ...

    def send_password_reset(self, email: str) -> None: ...


def _identity_user(user: Any) -> IdentityUser:
    return IdentityUser(
        id=str(user.id),
        email=str(user.email or ""),
        email_confirmed=getattr(user, "email_confirmed_at", None) is not None,
    )


class SupabaseIdentityProvider:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._admin_client: Client | None = None

    def _public_client(self) -> Client:
        # sign-in stores the provider session on the client, so each call gets its own
        return create_client(self.settings.supabase_url, self.settings.supabase_anon_key)

    def _admin(self) -> Client:
        if self._admin_client is None:
            self._admin_client = create_client(self.settings.supabase_url, self.settings.supabase_service_role_key)
        return self._admin_client

    def sign_in(self, email: str, password: str) -> IdentityUser:
        try:
            response = self._public_client().auth.sign_in_with_password({"email": email, "password": password})
        except AuthError as exc:
            raise IdentityError(str(exc)) from exc
        if response.user is None:
            raise IdentityError("Invalid credentials")
        return _identity_user(response.user)

    def create_user(self, email: str, password: str, metadata: dict[str, Any]) -> IdentityUser:
        try:
            response = self._admin().auth.admin.create_user(
                {"email": email, "password": password, "email_confirm": False, "user_metadata": metadata}
            )
        except AuthError as exc:
            raise IdentityError(str(exc)) from exc
        return _identity_user(response.user)

    def delete_user(self, user_id: str) -> None:
        try:
            self._admin().auth.admin.delete_user(user_id)
        except AuthError as exc:
            raise IdentityError(str(exc)) from exc

    def update_password(self, user_id: str, password: str) -> None:
        try:
            self._admin().auth.admin.update_user_by_id(user_id, {"password": password})
        except AuthError as exc:
            raise IdentityError(str(exc)) from exc

    def send_password_reset(self, email: str) -> None:
        try:
            self._public_client().auth.reset_password_for_email(email)
        except AuthError as exc:
            raise IdentityError(str(exc)) from exc


@lru_cache
def get_identity_provider() -> IdentityProvider:
    return SupabaseIdentityProvider(get_settings())
