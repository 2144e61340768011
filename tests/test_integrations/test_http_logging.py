import logging

import httpx
import pytest

from pricehub.integrations.base_client import BaseApiClient, is_retryable_exception


def _response(status, request=None):
    return httpx.Response(status, request=request or httpx.Request("GET", "https://api.example.com/x"))


@pytest.mark.parametrize("status,retryable", [(500, True), (503, True), (429, True), (404, False), (400, False)])
def test_retryable_status_codes(status, retryable):
    response = _response(status)
    error = httpx.HTTPStatusError("boom", request=response.request, response=response)
    assert is_retryable_exception(error) is retryable


def test_connection_errors_are_retryable():
    assert is_retryable_exception(httpx.ConnectError("refused")) is True
    assert is_retryable_exception(httpx.ReadTimeout("slow")) is True
    assert is_retryable_exception(ValueError("nope")) is False


@pytest.mark.asyncio
async def test_http_logging_success(caplog):
    """Completed requests are logged with method, status and timing."""
    caplog.set_level(logging.DEBUG, logger="http")
    client = BaseApiClient("https://api.example.com",
                           transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"result": "success"})))

    result = await client._request("GET", "/test")
    await client.close()

    assert result == {"result": "success"}
    success_logs = [r for r in caplog.records if r.name == "http" and "-> 200" in r.message]
    assert len(success_logs) == 1
    extra = success_logs[0].extra
    assert extra["method"] == "GET"
    assert extra["status_code"] == 200
    assert "elapsed_ms" in extra
    assert "response_hash" in extra


@pytest.mark.asyncio
async def test_http_logging_redacts_headers(caplog):
    """Secrets in client and request headers never reach the log."""
    caplog.set_level(logging.DEBUG, logger="http")
    client = BaseApiClient("https://api.example.com", headers={"X-Shopify-Access-Token": "shpat_secret"},
                           transport=httpx.MockTransport(lambda r: httpx.Response(204)))

    result = await client._request("POST", "/test", json={"a": 1},
                                   headers={"Authorization": "Bearer secret-token", "X-Trace": "abc"})
    await client.close()

    assert result == {}
    request_logs = [r for r in caplog.records if r.name == "http" and "attempt" in r.message]
    headers = request_logs[0].extra["headers"]
    assert headers["x-shopify-access-token"] == "***"
    assert headers["Authorization"] == "***"
    assert headers["X-Trace"] == "abc"


@pytest.mark.asyncio
async def test_http_logging_failure(caplog):
    """Exhausted retries are logged once as HTTP FAIL and the error is re-raised."""
    caplog.set_level(logging.DEBUG, logger="http")
    client = BaseApiClient("https://api.example.com", tries=1,
                           transport=httpx.MockTransport(lambda r: httpx.Response(500, text="oops")))

    with pytest.raises(httpx.HTTPStatusError):
        await client._request("GET", "/test")
    await client.close()

    fail_logs = [r for r in caplog.records if r.name == "http" and r.message.startswith("HTTP FAIL")]
    assert len(fail_logs) == 1
    assert fail_logs[0].extra["attempts"] == 1
