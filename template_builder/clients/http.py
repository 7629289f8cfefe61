import logging
import time
from typing import Any

import httpx


logger = logging.getLogger(__name__)

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


class RetryPolicy:
    def __init__(self, attempts: int, sleep_sec: float):
        self.attempts = attempts
        self.sleep_sec = sleep_sec

    def attempts_for(self, method: str) -> int:
        # A repeated POST could create a second VM or clone.
        if method.upper() in IDEMPOTENT_METHODS:
            return self.attempts
        return 1


class RequestFailure(RuntimeError):
    def __init__(
        self,
        *,
        method: str,
        url: str,
        attempts: int,
        error_type: str,
        detail: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ):
        self.method = method
        self.url = url
        self.attempts = attempts
        self.error_type = error_type
        self.detail = detail
        self.status_code = status_code
        self.response_text = response_text
        super().__init__(f"{method} {url} failed after {attempts} attempt(s): {detail}")


def _status_detail(response: httpx.Response) -> str:
    # The API reports most failures in the reason phrase, the body is often just {"data":null}.
    reason = (response.reason_phrase or "").strip()
    body = (response.text or "").strip()
    parts = [f"HTTP {response.status_code}"]
    if reason:
        parts.append(reason)
    if body:
        parts.append(body[:240])
    return " ".join(parts)


def request_with_retry(
    client: httpx.Client, method: str, url: str, retry: RetryPolicy, **kwargs: Any
) -> httpx.Response:
    attempts = retry.attempts_for(method)
    error: Exception | None = None
    status_code: int | None = None
    response_text: str | None = None
    detail = "unknown error"
    error_type = "RuntimeError"
    for attempt in range(1, attempts + 1):
        try:
            response = client.request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as exc:
            error = exc
            status_code = exc.response.status_code
            response_text = exc.response.text
            detail = _status_detail(exc.response)
            error_type = exc.__class__.__name__
            if status_code < 500 and status_code != 429:
                break
        except httpx.RequestError as exc:
            error = exc
            detail = str(exc)
            error_type = exc.__class__.__name__
        if attempt < attempts:
            logger.debug("retrying %s %s after attempt=%s: %s", method, url, attempt, detail)
            time.sleep(retry.sleep_sec)
    raise RequestFailure(
        method=method,
        url=url,
        attempts=attempt,
        error_type=error_type,
        detail=detail,
        status_code=status_code,
        response_text=response_text,
    ) from error
