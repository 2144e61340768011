import hashlib
import logging
import os
import time

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from pricehub.core.logging import _redact


def is_retryable_exception(exception: BaseException) -> bool:
    """Connection problems, timeouts, 5xx and 429 are worth another attempt."""
    if isinstance(exception, (httpx.ConnectError, httpx.TimeoutException)):
        return True
    if isinstance(exception, httpx.HTTPStatusError):
        status = exception.response.status_code
        return status == 429 or 500 <= status < 600
    return False


LOG_SAMPLE_RATE = float(os.getenv("LOG_SAMPLE_RATE", "1.0"))
LOG_BODY_MAX = int(os.getenv("LOG_BODY_MAX", "2000"))


class BaseApiClient:
    def __init__(self, base_url: str, headers: dict[str, str] | None = None, timeout: float = 30.0,
                 tries: int = 3, max_wait: float = 10.0, transport: httpx.AsyncBaseTransport | None = None):
        self.client = httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout, transport=transport)
        self.tries = tries
        self.max_wait = max_wait
        self._logger = logging.getLogger("http")

    def _maybe_hash(self, body: str) -> str:
        return hashlib.sha256(body.encode("utf-8", "ignore")).hexdigest()[:16]

    async def _send(self, method: str, url: str, attempt: int, **kwargs):
        t0 = time.perf_counter()
        req_body = kwargs.get("content") or (kwargs.get("json") and str(kwargs["json"])) or ""
        headers = _redact(dict(self.client.headers) | dict(kwargs.get("headers") or {}))
        self._logger.debug("HTTP %s %s (attempt %d)", method, url, attempt,
                           extra={"extra": {"method": method, "url": url, "attempt": attempt,
                                            "headers": headers, "body_preview": str(req_body)[:LOG_BODY_MAX]}})

        response: httpx.Response = await self.client.request(method, url, **kwargs)
        dt = round((time.perf_counter() - t0) * 1000)

        body_text = response.text or ""
        body_hash = self._maybe_hash(body_text)
        body_preview = body_text[:LOG_BODY_MAX] if LOG_SAMPLE_RATE >= 1.0 else f"[sampled hash:{body_hash}]"
        self._logger.info("HTTP %s %s -> %d in %dms", method, url, response.status_code, dt,
                          extra={"extra": {"method": method, "url": url, "status_code": response.status_code,
                                           "elapsed_ms": dt, "response_preview": body_preview,
                                           "response_hash": body_hash}})
        response.raise_for_status()
        return self._parse_response(response)

    async def _request(self, method: str, url: str, **kwargs):
        """Send a request, retrying transient failures with exponential backoff."""
        t0 = time.perf_counter()
        attempt = 0
        try:
            async for attempt_state in AsyncRetrying(
                wait=wait_exponential(multiplier=0.5, min=0.5, max=self.max_wait),
                stop=stop_after_attempt(self.tries),
                retry=retry_if_exception(is_retryable_exception),
                reraise=True,
            ):
                with attempt_state:
                    attempt = attempt_state.retry_state.attempt_number
                    return await self._send(method, url, attempt, **kwargs)
        except httpx.HTTPError as e:
            dt = round((time.perf_counter() - t0) * 1000)
            self._logger.error("HTTP FAIL %s %s after %d tries: %s", method, url, attempt, repr(e),
                               extra={"extra": {"method": method, "url": url, "elapsed_ms": dt,
                                                "attempts": attempt}})
            raise

    def _parse_response(self, response: httpx.Response):
        """Parse HTTP response with safe JSON handling."""
        if response.status_code == 204 or not response.content:
            return {}
        content_type = response.headers.get("content-type", "").lower()
        if "application/json" in content_type:
            try:
                return response.json()
            except ValueError:
                return {}
        return {}

    async def close(self):
        await self.client.aclose()
