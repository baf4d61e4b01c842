"""
User Directory client (Supabase Auth).
"""

import logging
import time
from typing import Optional, Protocol

import httpx

from .errors import AuthorizationError, BillingError
from .logging_utils import log_external_call
from .models import UserIdentity
from .request_utils import BEARER_PREFIX

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10.0


class UserDirectory(Protocol):
    def verify_credential(self, token: str) -> Optional[UserIdentity]: ...


def authenticate_user(directory: UserDirectory, auth_token: Optional[str]) -> UserIdentity:
    """
    Resolve an Authorization value (with or without the `Bearer ` prefix) to a user.

    Raises:
        AuthorizationError: the credential is missing or the directory rejects it
    """
    token = auth_token or ""
    if token.startswith(BEARER_PREFIX):
        token = token[len(BEARER_PREFIX):]
    token = token.strip()
    if not token:
        raise AuthorizationError()

    user = directory.verify_credential(token)
    if user is None:
        raise AuthorizationError("Invalid or expired authorization token")
    return user


class DirectoryUnavailableError(BillingError):
    """The user directory could not be reached, so the credential was not judged."""

    status_code = 502
    code = "directory_unavailable"
    retryable = True


class SupabaseUserDirectory:
    """Verifies bearer tokens against `GET {SUPABASE_URL}/auth/v1/user`."""

    def __init__(self, base_url: str, anon_key: str, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.anon_key = anon_key
        self._client = client

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=REQUEST_TIMEOUT)
        return self._client

    def verify_credential(self, token: str) -> Optional[UserIdentity]:
        """
        Resolve a bearer token to the user it was issued for.

        Returns:
            UserIdentity, or None when the directory rejects the token

        Raises:
            DirectoryUnavailableError: on transport failures and 5xx answers
        """
        if not token:
            return None

        start = time.time()
        try:
            response = self.client.get(
                f"{self.base_url}/auth/v1/user",
                headers={"apikey": self.anon_key, "Authorization": f"Bearer {token}"},
            )
        except httpx.RequestError as e:
            log_external_call(logger, "supabase", "auth.get_user", False, (time.time() - start) * 1000, str(e))
            raise DirectoryUnavailableError("User directory unavailable") from e

        latency_ms = (time.time() - start) * 1000
        if response.status_code >= 500:
            log_external_call(
                logger, "supabase", "auth.get_user", False, latency_ms, f"HTTP {response.status_code}"
            )
            raise DirectoryUnavailableError("User directory unavailable")
        if response.status_code != 200:
            log_external_call(
                logger, "supabase", "auth.get_user", False, latency_ms, f"HTTP {response.status_code}"
            )
            return None

        log_external_call(logger, "supabase", "auth.get_user", True, latency_ms)
        try:
            user = response.json()
        except ValueError:
            logger.warning("User directory returned a non-JSON body")
            return None
        if not isinstance(user, dict) or not user.get("id"):
            return None

        metadata = user.get("user_metadata") or {}
        return UserIdentity(
            user_id=user["id"],
            email=user.get("email"),
            full_name=metadata.get("full_name") or metadata.get("name"),
        )
