"""Tests for the backend client (httpx.MockTransport, no network calls)."""

import json
from urllib.parse import parse_qs

import httpx
import pytest

from modelkit.services.backend_client import BackendFetchError, BackendService, MissingObjectKeyError
from modelkit.services.backend_request import (
    BackendAPIDataRequest,
    BackendAPIHTMLRequest,
    BackendAPIObjectRequest,
    BackendAPIRequest,
    Method,
)

BASE_URL = "https://api.example.test"


def _service(handler, calls=None) -> BackendService:
    def record(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        return handler(request)

    return BackendService(BASE_URL, transport=httpx.MockTransport(record))


@pytest.mark.asyncio
async def test_fetch_get_sends_query_parameters_and_decodes_json():
    calls = []
    service = _service(lambda r: httpx.Response(200, json=[{"id": 1}, {"id": 2}]), calls)

    result = await service.fetch(BackendAPIRequest("/items", parameters={"page": 2}))
    await service.close()

    assert result == [{"id": 1}, {"id": 2}]
    assert len(calls) == 1
    assert calls[0].method == "GET"
    assert calls[0].url.path == "/items"
    assert calls[0].url.params["page"] == "2"


@pytest.mark.asyncio
async def test_fetch_post_sends_form_encoded_body_by_default():
    calls = []
    service = _service(lambda r: httpx.Response(201, json={"ok": True}), calls)

    request = BackendAPIRequest("/login", method=Method.POST, parameters={"user": "ann", "pin": "12"})
    assert await service.fetch(request) == {"ok": True}

    sent = calls[0]
    assert sent.headers["content-type"].startswith("application/x-www-form-urlencoded")
    assert parse_qs(sent.content.decode()) == {"user": ["ann"], "pin": ["12"]}


@pytest.mark.asyncio
async def test_fetch_post_sends_json_body_for_json_content_type():
    calls = []
    service = _service(lambda r: httpx.Response(200, json={"ok": True}), calls)

    request = BackendAPIRequest(
        "/items",
        method="POST",
        parameters={"name": "lamp", "tags": ["a", "b"]},
        headers={"Content-Type": "application/json"},
    )
    await service.fetch(request)

    assert json.loads(calls[0].content) == {"name": "lamp", "tags": ["a", "b"]}


@pytest.mark.asyncio
async def test_fetch_object_request_unwraps_object_key():
    service = _service(lambda r: httpx.Response(200, json={"user": {"id": 7}, "meta": {}}))

    result = await service.fetch(BackendAPIObjectRequest("/me", object_key="user"))

    assert result == {"id": 7}


@pytest.mark.asyncio
async def test_fetch_object_request_without_key_returns_whole_object():
    service = _service(lambda r: httpx.Response(200, json={"user": {"id": 7}}))

    assert await service.fetch(BackendAPIObjectRequest("/me")) == {"user": {"id": 7}}


@pytest.mark.asyncio
async def test_fetch_object_request_missing_key_fails():
    service = _service(lambda r: httpx.Response(200, json={"meta": {}}))
    request = BackendAPIObjectRequest("/me", object_key="user")

    with pytest.raises(BackendFetchError) as exc_info:
        await service.fetch(request)

    assert exc_info.value.request is request
    assert exc_info.value.code == 200
    assert exc_info.value.json == {"meta": {}}
    assert isinstance(exc_info.value.error, MissingObjectKeyError)


@pytest.mark.asyncio
async def test_fetch_data_and_html_requests_skip_json_decoding():
    service = _service(lambda r: httpx.Response(200, content=b"<p>hi</p>"))

    assert await service.fetch(BackendAPIDataRequest("/file")) == b"<p>hi</p>"
    assert await service.fetch(BackendAPIHTMLRequest("/page")) == "<p>hi</p>"


@pytest.mark.asyncio
async def test_fetch_error_status_carries_descriptor_json_and_code():
    service = _service(lambda r: httpx.Response(404, json={"message": "not found"}))
    request = BackendAPIRequest("/missing")

    with pytest.raises(BackendFetchError) as exc_info:
        await service.fetch(request)

    error = exc_info.value
    assert error.request is request
    assert error.code == 404
    assert error.json == {"message": "not found"}
    assert isinstance(error.error, httpx.HTTPStatusError)


@pytest.mark.asyncio
async def test_fetch_error_status_with_non_json_body():
    service = _service(lambda r: httpx.Response(500, text="Internal Server Error"))

    with pytest.raises(BackendFetchError) as exc_info:
        await service.fetch(BackendAPIRequest("/boom"))

    assert exc_info.value.code == 500
    assert exc_info.value.json is None


@pytest.mark.asyncio
async def test_fetch_transport_error_reports_no_status():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    service = _service(handler)
    request = BackendAPIRequest("/items")

    with pytest.raises(BackendFetchError) as exc_info:
        await service.fetch(request)

    assert exc_info.value.request is request
    assert exc_info.value.code == 0
    assert isinstance(exc_info.value.error, httpx.ConnectError)


@pytest.mark.asyncio
async def test_fetch_invalid_json_fails():
    service = _service(lambda r: httpx.Response(200, text="not json"))

    with pytest.raises(BackendFetchError) as exc_info:
        await service.fetch(BackendAPIRequest("/items"))

    assert exc_info.value.code == 200
    assert isinstance(exc_info.value.error, ValueError)


@pytest.mark.asyncio
async def test_fetch_invalid_url_reports_no_status():
    calls = []
    service = _service(lambda r: httpx.Response(200, json={}), calls)
    request = BackendAPIRequest("http://[::1")

    with pytest.raises(BackendFetchError) as exc_info:
        await service.fetch(request)

    assert exc_info.value.request is request
    assert exc_info.value.code == 0
    assert isinstance(exc_info.value.error, httpx.InvalidURL)
    assert calls == []


@pytest.mark.asyncio
async def test_fetch_empty_success_body_returns_none():
    service = _service(lambda r: httpx.Response(204))

    assert await service.fetch(BackendAPIRequest("/items/1", method=Method.DELETE)) is None
    update = BackendAPIObjectRequest("/items/1", method=Method.PUT, object_key="item")
    assert await service.fetch(update) is None


@pytest.mark.asyncio
async def test_fetch_head_request_returns_none():
    calls = []
    service = _service(lambda r: httpx.Response(200), calls)

    assert await service.fetch(BackendAPIRequest("/items", method=Method.HEAD)) is None
    assert calls[0].method == "HEAD"


@pytest.mark.asyncio
async def test_fetch_issues_exactly_one_call_on_failure():
    calls = []
    service = _service(lambda r: httpx.Response(503, json={}), calls)

    with pytest.raises(BackendFetchError):
        await service.fetch(BackendAPIRequest("/flaky"))

    assert len(calls) == 1


def test_fetch_error_renders_structured_error_response():
    request = BackendAPIRequest("/missing", method=Method.DELETE)
    error = BackendFetchError(request, {"message": "gone"}, ValueError("gone"), 410)

    payload = error.to_error_response().model_dump()

    assert payload == {
        "error": {
            "code": "BACKEND_FETCH_ERROR",
            "message": "gone",
            "detail": {
                "endpoint": "/missing",
                "method": "DELETE",
                "status_code": 410,
                "body": {"message": "gone"},
            },
        }
    }


@pytest.mark.asyncio
async def test_service_context_manager_closes_client():
    async with _service(lambda r: httpx.Response(200, json={})) as service:
        await service.fetch(BackendAPIRequest("/ping"))
        assert service._http_client is not None
    assert service._http_client is None
