from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

import requests

from .errors import AuthError, NotFound, OperationTimeout, TransientNetworkError

LOG = logging.getLogger(__name__)

USER_AGENT = "server-restore"
DEFAULT_CHUNK_SIZE = 1024 * 1024


def build_session(headers: Optional[Dict[str, str]] = None) -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": USER_AGENT})
    if headers:
        session.headers.update(headers)
    return session


@contextmanager
def translate_errors(context: str) -> Iterator[None]:
    """Map ``requests`` failures onto the restore error taxonomy."""
    try:
        yield
    except requests.Timeout as exc:
        raise OperationTimeout(f"{context} timed out: {exc}") from exc
    except requests.ConnectionError as exc:
        raise TransientNetworkError(f"{context} failed to connect: {exc}") from exc
    except requests.RequestException as exc:
        raise TransientNetworkError(f"{context} failed: {exc}") from exc


def check_response(response: requests.Response, context: str) -> requests.Response:
    status = response.status_code
    if status < 400:
        return response

    detail = (response.text or "")[:200].strip()
    LOG.error("%s failed: HTTP %s %s", context, status, detail)
    response.close()
    message = f"{context} failed: HTTP {status}"
    if status in (401, 403):
        raise AuthError(message)
    if status == 404:
        raise NotFound(message)
    raise TransientNetworkError(f"{message} {detail}".strip())


def iter_content(
    response: requests.Response,
    context: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Iterator[bytes]:
    """Yield the body of a streamed response, failing on short reads."""
    expected = response.headers.get("Content-Length")
    received = 0
    try:
        for chunk in response.iter_content(chunk_size=chunk_size):
            if chunk:
                received += len(chunk)
                yield chunk
    except requests.RequestException as exc:
        raise TransientNetworkError(f"{context} interrupted after {received} bytes: {exc}") from exc
    finally:
        response.close()

    if expected and expected.isdigit() and received < int(expected):
        raise TransientNetworkError(
            f"{context} truncated: received {received} of {expected} bytes"
        )
