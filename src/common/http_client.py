"""HTTP access for registry indexes and package archives.

Both callers go through ``_send``: bounded retries with exponential backoff
on transport errors and 5xx replies, DEBUG traces with credentials stripped
from URLs, and ``RegistryUnavailableError`` once every attempt has failed.
Parsed indexes are cached by the catalog, not here.
"""
from __future__ import annotations

import hashlib
import logging
import time
from typing import Any, Dict, Optional, Tuple

import requests

from constants import Constants
from errors import RegistryUnavailableError
from common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer

logger = logging.getLogger(__name__)

_session: Optional[requests.Session] = None


def _get_session() -> requests.Session:
    global _session  # pylint: disable=global-statement
    if _session is None:
        _session = requests.Session()
        _session.headers["User-Agent"] = Constants.USER_AGENT
    return _session


def _trace(message: str, **fields: Any) -> None:
    if is_debug_enabled(logger):
        logger.debug(message, extra=extra_context(component="http_client", action="GET", **fields))


def _send(url: str, *, context: str, stream: bool = False, headers: Optional[Dict[str, str]] = None) -> requests.Response:
    """GET ``url`` with retries.

    Returns the first response below 500. 4xx replies are returned, not
    raised, so callers can report the status.

    Raises:
        RegistryUnavailableError: When every attempt failed.
    """
    target = safe_url(url)
    failure = "no attempt made"
    for attempt in range(1, Constants.HTTP_RETRY_MAX + 1):
        if attempt > 1:
            time.sleep(Constants.HTTP_RETRY_BASE_DELAY_SEC * (2 ** (attempt - 2)))
        _trace("HTTP request", event="http_request", target=target, attempt=attempt, context=context)
        with Timer() as t:
            try:
                res = _get_session().get(url, timeout=Constants.REQUEST_TIMEOUT, stream=stream, headers=headers)
            except requests.Timeout:
                failure = f"timed out after {Constants.REQUEST_TIMEOUT}s"
                _trace("HTTP timeout", event="http_exception", outcome="timeout", target=target, attempt=attempt)
                continue
            except requests.RequestException as exc:
                failure = str(exc)
                _trace("HTTP request exception", event="http_exception", outcome="request_exception",
                       target=target, attempt=attempt)
                continue
        if res.status_code >= 500:
            failure = f"HTTP {res.status_code}"
            res.close()
            continue
        _trace("HTTP response", event="http_response", outcome="success", status_code=res.status_code,
               duration_ms=t.duration_ms(), target=target, context=context)
        return res

    logger.error("%s request to %s failed after %d attempts: %s", context, target, Constants.HTTP_RETRY_MAX, failure)
    raise RegistryUnavailableError(f"{context} request to {target} failed: {failure}")


def get_json(url: str, *, context: str = "registry") -> Tuple[int, Dict[str, str], Optional[Any]]:
    """Fetch and decode a JSON document.

    Returns:
        Tuple of (status_code, headers, data). ``data`` is None for non-200
        replies and undecodable bodies.

    Raises:
        RegistryUnavailableError: On transport failure.
    """
    res = _send(url, context=context, headers={"Accept": "application/json"})
    if res.status_code != 200:
        return res.status_code, dict(res.headers), None
    try:
        return res.status_code, dict(res.headers), res.json()
    except ValueError:
        _trace("JSON decode error", event="parse", outcome="json_decode_error",
               status_code=res.status_code, target=safe_url(url))
        return res.status_code, dict(res.headers), None


def download(url: str, dest_path: str, *, context: str) -> str:
    """Stream ``url`` into ``dest_path`` and return the sha256 hex digest.

    Raises:
        RegistryUnavailableError: On transport failure or non-200 status.
    """
    digest = hashlib.sha256()
    res = _send(url, context=context, stream=True)
    try:
        if res.status_code != 200:
            raise RegistryUnavailableError(f"{context} download of {safe_url(url)} returned HTTP {res.status_code}")
        with open(dest_path, "wb") as handle:
            for chunk in res.iter_content(chunk_size=Constants.DOWNLOAD_CHUNK_BYTES):
                if chunk:
                    digest.update(chunk)
                    handle.write(chunk)
    finally:
        res.close()
    return digest.hexdigest()
