from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional
from urllib.parse import quote

import requests

from ..config import GitHubConfig, TimeoutsConfig
from ..credentials import TokenCredential
from ..errors import ConfigurationError, MissingCredential, TransientNetworkError
from ..models import BackendKind, BackupArtifact
from ..transport import build_session, check_response, iter_content, translate_errors
from .base import EPOCH, filename_timestamp, merge_artifacts, name_matches, parse_timestamp

LOG = logging.getLogger(__name__)

DEFAULT_ACCEPT_HEADER = "application/vnd.github+json"
RAW_ACCEPT_HEADER = "application/vnd.github.raw"


class GitHubAPI:
    def __init__(
        self,
        token: Optional[str],
        base_url: str = "https://api.github.com",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not token:
            raise MissingCredential("GitHub token must be provided via environment variable or prompt")
        self._session = session or build_session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": DEFAULT_ACCEPT_HEADER,
                "X-GitHub-Api-Version": "2022-11-28",
            }
        )
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._log = logging.getLogger(self.__class__.__name__)

    def url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        context = f"GitHub GET {path}"
        with translate_errors(context):
            response = self._session.get(self.url(path), params=params, timeout=self._timeout)
        check_response(response, context)
        return _json(response, context)

    def iterate(self, path: str, params: Optional[Dict[str, Any]] = None) -> Iterable[Dict[str, Any]]:
        next_url: Optional[str] = self.url(path)
        request_params = params.copy() if params else {}
        request_params.setdefault("per_page", 100)
        context = f"GitHub listing {path}"

        while next_url:
            with translate_errors(context):
                response = self._session.get(next_url, params=request_params, timeout=self._timeout)
            check_response(response, context)

            payload = _json(response, context)
            if isinstance(payload, dict):
                # A single object (e.g. a contents path that is a file).
                yield payload
                return
            for item in payload:
                yield item

            next_url = self._extract_next_link(response.headers.get("Link"))
            request_params = {}

    def stream(self, url: str, read_timeout: float, accept: Optional[str] = None) -> requests.Response:
        context = f"GitHub download {url.split('?', 1)[0]}"
        headers = {"Accept": accept} if accept else None
        with translate_errors(context):
            response = self._session.get(
                url,
                headers=headers,
                stream=True,
                timeout=(self._timeout, read_timeout),
            )
        return check_response(response, context)

    @staticmethod
    def _extract_next_link(link_header: Optional[str]) -> Optional[str]:
        if not link_header:
            return None
        parts = [p.strip() for p in link_header.split(",")]
        for part in parts:
            if 'rel="next"' in part:
                start = part.find("<") + 1
                end = part.find(">")
                return part[start:end]
        return None


class GitHubBackend:
    """Lists backup archives committed to a repository branch and downloads their raw content."""

    kind = BackendKind.SOURCE_HOSTING

    def __init__(
        self,
        config: GitHubConfig,
        credential: TokenCredential,
        timeouts: TimeoutsConfig,
        api: Optional[GitHubAPI] = None,
    ) -> None:
        repository = config.resolved_repository()
        if not repository or repository.count("/") != 1:
            raise ConfigurationError(
                f"GitHub repository must be given as owner/repo (set github.repository or {config.repository_env})"
            )
        self._repository = repository
        self._branch = config.resolved_branch()
        self._path = config.path.strip("/")
        self._max_workers = config.max_workers
        self._timeouts = timeouts
        self._pattern = re.compile(config.file_pattern) if config.file_pattern else None
        self._api = api or GitHubAPI(credential.token, base_url=config.api_url, timeout=timeouts.http)
        self._download_urls: Dict[str, str] = {}

    @property
    def repository(self) -> str:
        return self._repository

    @property
    def branch(self) -> str:
        return self._branch

    def list_artifacts(self) -> Iterator[BackupArtifact]:
        contents_path = f"repos/{self._repository}/contents/{self._path}".rstrip("/")
        entries = [
            entry
            for entry in self._api.iterate(contents_path, {"ref": self._branch})
            if entry.get("type") == "file" and name_matches(self._pattern, entry.get("name", ""))
        ]
        LOG.debug("GitHub listing of %s@%s matched %d file(s)", self._repository, self._branch, len(entries))
        yield from merge_artifacts(self._with_dates(entries))

    def fetch(self, artifact_id: str) -> Iterator[bytes]:
        url = self._download_urls.get(artifact_id)
        if url:
            response = self._api.stream(url, read_timeout=self._timeouts.download)
        else:
            path = quote(artifact_id.lstrip("/"))
            response = self._api.stream(
                self._api.url(f"repos/{self._repository}/contents/{path}?ref={quote(self._branch)}"),
                read_timeout=self._timeouts.download,
                accept=RAW_ACCEPT_HEADER,
            )
        LOG.info("Downloading %s from %s@%s", artifact_id, self._repository, self._branch)
        return iter_content(response, f"GitHub download of {artifact_id}")

    # Internal helpers ------------------------------------------------------
    def _with_dates(self, entries: List[Dict[str, Any]]) -> List[BackupArtifact]:
        artifacts: List[BackupArtifact] = []
        undated: List[Dict[str, Any]] = []
        for entry in entries:
            stamp = filename_timestamp(entry["name"])
            if stamp:
                artifacts.append(self._to_artifact(entry, stamp))
            else:
                undated.append(entry)

        if undated:
            workers = min(self._max_workers, len(undated))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = {pool.submit(self._commit_date, entry["path"]): entry for entry in undated}
                for future in as_completed(futures):
                    entry = futures[future]
                    artifacts.append(self._to_artifact(entry, future.result() or EPOCH))
        return artifacts

    def _commit_date(self, path: str) -> Optional[datetime]:
        commits = self._api.get(
            f"repos/{self._repository}/commits",
            {"path": path, "sha": self._branch, "per_page": 1},
        )
        if not commits:
            return None
        commit = commits[0].get("commit", {})
        return parse_timestamp(commit.get("committer", {}).get("date"))

    def _to_artifact(self, entry: Dict[str, Any], created_at: datetime) -> BackupArtifact:
        path = entry.get("path") or entry["name"]
        if entry.get("download_url"):
            self._download_urls[path] = entry["download_url"]
        sha = entry.get("sha")
        return BackupArtifact(
            id=path,
            display_name=entry["name"],
            backend_kind=self.kind,
            size=int(entry.get("size") or 0),
            created_at=created_at,
            checksum=f"git-blob-sha1:{sha}" if sha else None,
        )


def _json(response: requests.Response, context: str) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise TransientNetworkError(f"{context} returned a non-JSON response") from exc
