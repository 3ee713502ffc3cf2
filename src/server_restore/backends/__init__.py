from __future__ import annotations

from typing import Callable, Dict

from ..config import RestoreConfig
from ..credentials import Credential, CredentialStore, OAuthCredential, TokenCredential
from ..errors import MissingCredential
from ..models import BackendKind
from .base import BackendAdapter, merge_artifacts
from .github import GitHubAPI, GitHubBackend
from .google_drive import GoogleDriveBackend

BackendBuilder = Callable[[RestoreConfig, Credential, CredentialStore], BackendAdapter]


def _google_drive(config: RestoreConfig, credential: Credential, store: CredentialStore) -> BackendAdapter:
    if not isinstance(credential, OAuthCredential):
        raise MissingCredential("Google Drive requires an OAuth client id, secret and refresh token")
    return GoogleDriveBackend(config.google_drive, credential, store, config.timeouts)


def _github(config: RestoreConfig, credential: Credential, store: CredentialStore) -> BackendAdapter:  # noqa: ARG001
    if not isinstance(credential, TokenCredential):
        raise MissingCredential("GitHub requires a personal access token")
    return GitHubBackend(config.github, credential, config.timeouts)


BACKENDS: Dict[BackendKind, BackendBuilder] = {
    BackendKind.CLOUD_STORAGE: _google_drive,
    BackendKind.SOURCE_HOSTING: _github,
}


def create_backend(
    kind: BackendKind,
    config: RestoreConfig,
    credential: Credential,
    store: CredentialStore,
) -> BackendAdapter:
    return BACKENDS[kind](config, credential, store)


__all__ = [
    "BACKENDS",
    "BackendAdapter",
    "GitHubAPI",
    "GitHubBackend",
    "GoogleDriveBackend",
    "create_backend",
    "merge_artifacts",
]
