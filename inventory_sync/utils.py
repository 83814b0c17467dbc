"""Helper utilities.

This module centralises common helper functions such as creating a
configured HTTP session, applying retry policies to webhook calls and
handling the ISO-8601 timestamps stored on inventory items.
"""

from __future__ import annotations

import datetime as _dt
import logging
from typing import Any, Callable, Dict, Optional

import requests
from requests import Response
from tenacity import (after_log, retry, retry_if_exception_type,
                      stop_after_attempt, wait_exponential)


logger = logging.getLogger(__name__)


def get_http_session(api_key: Optional[str] = None) -> requests.Session:
    """Return a new HTTP session with sensible defaults.

    When ``api_key`` is given it is sent as the ``x-api-key`` header on every
    request.  Caller is responsible for closing the session or letting it be
    garbage collected.
    """
    session = requests.Session()
    session.headers.update(
        {
            "User-Agent": "InventorySync/1.0 (+https://github.com/)",
            "Accept": "application/json",
        }
    )
    if api_key:
        session.headers["x-api-key"] = api_key
    return session


class HTTPError(Exception):
    """Raised when an HTTP request fails after retries."""


def _raise_for_status(resp: Response) -> None:
    try:
        resp.raise_for_status()
    except requests.RequestException as e:
        raise HTTPError(str(e)) from e


def retryable_request(method: Callable[[requests.Session, str, Dict[str, Any]], Response]) -> Callable[..., Response]:
    """Decorator factory to apply retry logic to HTTP calls.

    The decorated function must accept a `requests.Session` as its first
    argument, followed by URL and optional kwargs, and return a
    `requests.Response`.  Retries are attempted for network errors or
    HTTP errors (status >= 500).  A maximum of 5 attempts are made with
    exponential back-off between 1 and 10 seconds.

    Only used for webhook delivery; pricing batches are never retried
    within a run.
    """

    @retry(
        reraise=True,
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=(
            retry_if_exception_type(requests.RequestException)
            | retry_if_exception_type(HTTPError)
        ),
        after=after_log(logger, logging.WARNING),
    )
    def wrapper(session: requests.Session, url: str, **kwargs: Any) -> Response:
        response = method(session, url, **kwargs)
        # If server returned >= 500, raise to trigger retry
        if response.status_code >= 500:
            raise HTTPError(f"Server returned status {response.status_code}")
        _raise_for_status(response)
        return response

    return wrapper


def utc_now() -> _dt.datetime:
    return _dt.datetime.now(tz=_dt.timezone.utc)


def to_iso(value: _dt.datetime) -> str:
    """Format as ISO-8601 UTC with millisecond precision and a ``Z`` suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=_dt.timezone.utc)
    value = value.astimezone(_dt.timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_iso(value: Any) -> Optional[_dt.datetime]:
    """Parse an ISO-8601 string, returning an aware UTC datetime or None."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = _dt.datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_dt.timezone.utc)
    return parsed.astimezone(_dt.timezone.utc)


__all__ = [
    "get_http_session",
    "retryable_request",
    "HTTPError",
    "utc_now",
    "to_iso",
    "parse_iso",
]
