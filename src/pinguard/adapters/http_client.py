"""
HTTP adapter — policy document polling via httpx.

Adapter layer — implements the PolicySource port. Sends If-None-Match with
the ETag of the document the store currently trusts, so an unchanged
document costs a 304 and only resets the staleness clock.

Retry/backoff via tenacity on transient errors (network, timeout). Every
HTTP error is captured into a Result failure; nothing leaks into the
refresh pipeline as an exception.
"""

from __future__ import annotations

from collections.abc import Mapping

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from pinguard.domain.models import PolicyFetch
from pinguard.railway import ErrorCode, Result

log = structlog.get_logger()


class HttpPolicySource:
    """
    Poll a policy endpoint.

    Implements the PolicySource port.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._headers = dict(headers or {})

    def fetch(self, etag: str | None = None) -> Result[PolicyFetch]:
        """
        GET the policy document.

        Returns Result[PolicyFetch]: content + ETag on 200, not_modified on 304,
        Result.failure(TIMEOUT) when every attempt timed out, and
        Result.failure(FETCH_FAILED) for any other HTTP or network error.
        """
        try:
            return Result.success(self._do_fetch(etag))
        except httpx.TimeoutException as e:
            return Result.failure(ErrorCode.TIMEOUT, f"Policy fetch timed out after {self._timeout}s", e)
        except httpx.HTTPError as e:
            return Result.failure(ErrorCode.FETCH_FAILED, f"Policy fetch failed: {e}", e)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=0.1, max=30),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    def _do_fetch(self, etag: str | None) -> PolicyFetch:
        """HTTP GET with retry — exceptions are mapped by fetch()."""
        headers = {"Accept": "application/json", **self._headers}
        if etag:
            headers["If-None-Match"] = etag

        with httpx.Client(timeout=self._timeout) as client:
            response = client.get(self._url, headers=headers)

        if response.status_code == httpx.codes.NOT_MODIFIED:
            log.debug("policy_fetch.not_modified", etag=etag)
            return PolicyFetch(content=None, etag=etag, not_modified=True)

        response.raise_for_status()
        log.info("policy_fetch.complete", size_bytes=len(response.content), etag=response.headers.get("ETag"))
        return PolicyFetch(content=response.content, etag=response.headers.get("ETag"))
