from __future__ import annotations

import getpass
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

import requests

from .config import RestoreConfig, SecretRef
from .errors import AuthError, MissingCredential, TransientNetworkError
from .models import BackendKind
from .transport import build_session, translate_errors

LOG = logging.getLogger(__name__)

Prompt = Callable[[str, bool], str]


@dataclass(frozen=True)
class OAuthCredential:
    client_id: str
    client_secret: str = field(repr=False)
    refresh_token: str = field(repr=False)


@dataclass(frozen=True)
class TokenCredential:
    token: str = field(repr=False)


Credential = Union[OAuthCredential, TokenCredential]


@dataclass(frozen=True)
class AccessToken:
    value: str = field(repr=False)
    expires_at: datetime

    @property
    def expired(self) -> bool:
        return datetime.now(timezone.utc) >= self.expires_at


class CredentialSource(str, Enum):
    ENV = "env"
    PROMPT = "prompt"


def default_prompt(label: str, secret: bool) -> str:
    if secret:
        return getpass.getpass(f"{label}: ")
    return input(f"{label}: ")


class CredentialStore:
    """Resolves backend credentials and exchanges OAuth refresh tokens.

    Credentials live only on the returned objects; nothing is written to disk
    and access tokens are handed back to the caller rather than cached here.
    """

    def __init__(
        self,
        config: RestoreConfig,
        prompt: Optional[Prompt] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._config = config
        self._prompt = prompt or default_prompt
        self._session = session or build_session()
        self._timeout = config.timeouts.http

    def resolve(self, backend_kind: BackendKind, source: CredentialSource = CredentialSource.ENV) -> Credential:
        if backend_kind is BackendKind.CLOUD_STORAGE:
            drive = self._config.google_drive
            values = self._collect(
                {
                    "client_id": (drive.client_id, "Google Client ID", False),
                    "client_secret": (drive.client_secret, "Google Client Secret", True),
                    "refresh_token": (drive.refresh_token, "Google Refresh Token", True),
                },
                source,
            )
            self._require(backend_kind, values)
            return OAuthCredential(**values)

        github = self._config.github
        token = github.token.resolve() or github.fallback_token.resolve()
        if not token and source is CredentialSource.PROMPT:
            token = self._ask("GitHub Personal Access Token", secret=True)
        if not token:
            raise MissingCredential(
                f"GitHub token not set (looked in {github.token.describe()}, {github.fallback_token.describe()})"
            )
        return TokenCredential(token=token)

    def refresh(self, credential: OAuthCredential) -> AccessToken:
        if not credential.refresh_token.strip():
            raise MissingCredential("OAuth refresh token is empty")
        if not credential.client_id.strip() or not credential.client_secret.strip():
            raise MissingCredential("OAuth client id/secret is empty")

        token_url = self._config.google_drive.token_url
        LOG.info("Requesting access token from %s", token_url)
        with translate_errors("Token exchange"):
            response = self._session.post(
                token_url,
                data={
                    "client_id": credential.client_id,
                    "client_secret": credential.client_secret,
                    "refresh_token": credential.refresh_token,
                    "grant_type": "refresh_token",
                },
                timeout=self._timeout,
            )

        if response.status_code in (400, 401, 403):
            raise AuthError(f"Token exchange rejected: HTTP {response.status_code} {_error_code(response)}")
        if response.status_code >= 400:
            raise TransientNetworkError(f"Token exchange failed: HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthError("Token endpoint returned a non-JSON response") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            raise AuthError("Token endpoint response did not include an access_token")
        try:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(payload.get("expires_in") or 3600))
        except (TypeError, ValueError, OverflowError) as exc:
            raise AuthError(f"Token endpoint returned an invalid expires_in: {payload.get('expires_in')!r}") from exc
        return AccessToken(value=access_token, expires_at=expires_at)

    # Internal helpers ------------------------------------------------------
    def _collect(self, fields: Dict[str, tuple], source: CredentialSource) -> Dict[str, str]:
        values: Dict[str, str] = {}
        for key, (ref, label, secret) in fields.items():
            value = _resolve_ref(ref)
            if not value and source is CredentialSource.PROMPT:
                value = self._ask(label, secret=secret)
            values[key] = value or ""
        return values

    def _ask(self, label: str, secret: bool) -> str:
        try:
            return self._prompt(label, secret).strip()
        except EOFError:
            return ""

    @staticmethod
    def _require(backend_kind: BackendKind, values: Dict[str, str]) -> None:
        missing: List[str] = [key for key, value in values.items() if not value]
        if missing:
            raise MissingCredential(
                f"{backend_kind.label} credential incomplete: missing {', '.join(missing)}"
            )


def _resolve_ref(ref: SecretRef) -> Optional[str]:
    value = ref.resolve()
    return value.strip() if value else None


def _error_code(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return ""
    return str(payload.get("error", "")) if isinstance(payload, dict) else ""
