from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterator, Optional
from urllib.parse import quote

import requests

from ..config import GoogleDriveConfig, TimeoutsConfig
from ..credentials import AccessToken, CredentialStore, OAuthCredential
from ..errors import ConfigurationError, TransientNetworkError
from ..models import BackendKind, BackupArtifact
from ..transport import build_session, check_response, iter_content, translate_errors
from .base import EPOCH, filename_timestamp, merge_artifacts, name_matches, parse_timestamp

LOG = logging.getLogger(__name__)

LIST_FIELDS = "nextPageToken,files(id,name,createdTime,modifiedTime,size,md5Checksum)"


class GoogleDriveBackend:
    """Lists and downloads backup archives kept in a single Drive folder."""

    kind = BackendKind.CLOUD_STORAGE

    def __init__(
        self,
        config: GoogleDriveConfig,
        credential: OAuthCredential,
        store: CredentialStore,
        timeouts: TimeoutsConfig,
        session: Optional[requests.Session] = None,
    ) -> None:
        folder_id = config.resolved_folder_id()
        if not folder_id:
            raise ConfigurationError(
                f"Google Drive folder id not configured (set google_drive.folder_id or {config.folder_id_env})"
            )
        self._config = config
        self._folder_id = folder_id
        self._credential = credential
        self._store = store
        self._timeouts = timeouts
        self._session = session or build_session()
        self._pattern = re.compile(config.file_pattern) if config.file_pattern else None
        self._base_url = config.api_url.rstrip("/")
        self._token: Optional[AccessToken] = None

    def list_artifacts(self) -> Iterator[BackupArtifact]:
        yield from merge_artifacts(self._iterate_files())

    def fetch(self, artifact_id: str) -> Iterator[bytes]:
        url = f"{self._base_url}/files/{quote(artifact_id, safe='')}"
        context = f"Drive download of {artifact_id}"
        LOG.info("Downloading Drive file %s", artifact_id)
        with translate_errors(context):
            response = self._session.get(
                url,
                params={"alt": "media", "supportsAllDrives": "true"},
                headers=self._auth_headers(),
                stream=True,
                timeout=(self._timeouts.http, self._timeouts.download),
            )
        check_response(response, context)
        return iter_content(response, context)

    # Internal helpers ------------------------------------------------------
    def _auth_headers(self) -> Dict[str, str]:
        if self._token is None or self._token.expired:
            self._token = self._store.refresh(self._credential)
        return {"Authorization": f"Bearer {self._token.value}"}

    def _iterate_files(self) -> Iterator[BackupArtifact]:
        params: Dict[str, Any] = {
            "q": f"'{self._folder_id}' in parents and trashed = false",
            "fields": LIST_FIELDS,
            "pageSize": self._config.page_size,
            "supportsAllDrives": "true",
            "includeItemsFromAllDrives": "true",
        }
        page = 0
        while True:
            page += 1
            with translate_errors("Drive listing"):
                response = self._session.get(
                    f"{self._base_url}/files",
                    params=params,
                    headers=self._auth_headers(),
                    timeout=self._timeouts.http,
                )
            check_response(response, "Drive listing")
            try:
                payload = response.json()
            except ValueError as exc:
                raise TransientNetworkError("Drive listing returned a non-JSON response") from exc

            files = payload.get("files", [])
            LOG.debug("Drive listing page %d returned %d file(s)", page, len(files))
            for item in files:
                name = item.get("name", "")
                if item.get("id") and name_matches(self._pattern, name):
                    yield self._to_artifact(item)

            next_token = payload.get("nextPageToken")
            if not next_token:
                break
            params["pageToken"] = next_token

    def _to_artifact(self, item: Dict[str, Any]) -> BackupArtifact:
        name = item["name"]
        created_at = (
            parse_timestamp(item.get("createdTime"))
            or parse_timestamp(item.get("modifiedTime"))
            or filename_timestamp(name)
            or EPOCH
        )
        md5 = item.get("md5Checksum")
        return BackupArtifact(
            id=item["id"],
            display_name=name,
            backend_kind=self.kind,
            size=int(item.get("size") or 0),
            created_at=created_at,
            checksum=f"md5:{md5}" if md5 else None,
        )
