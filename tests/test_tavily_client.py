import json

import httpx
import pytest
import respx
from httpx import Response

from ella.errors import ProviderError
from ella.tavily import TavilyClient, normalize_search_response
from tests.fakes import DEFAULT_SEARCH_RESPONSE


@pytest.mark.asyncio
async def test_tavily_search_payload_and_headers():
    client = TavilyClient("test-key")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["headers"] = request.headers
                return Response(200, json=DEFAULT_SEARCH_RESPONSE)

            respx_mock.post("https://api.tavily.com/search").mock(side_effect=handler)
            result = await client.search("best hiking trails near Seattle")
    finally:
        await client.close()

    payload = captured["json"]
    assert payload["query"] == "best hiking trails near Seattle"
    assert payload["include_answer"] is True
    assert payload["include_images"] is True
    assert payload["include_image_descriptions"] is True
    assert payload["include_favicon"] is True
    assert payload["include_raw_content"] == "text"
    assert captured["headers"]["Authorization"] == "Bearer test-key"
    assert result.answer == DEFAULT_SEARCH_RESPONSE["answer"]
    assert [r.favicon for r in result.resources] == [
        "https://www.wta.org/favicon.ico",
        "https://www.alltrails.com/favicon.ico",
    ]


@pytest.mark.asyncio
async def test_tavily_http_error_propagates():
    client = TavilyClient("test-key")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("https://api.tavily.com/search").mock(
                return_value=Response(500, json={"error": "boom"})
            )
            with pytest.raises(httpx.HTTPStatusError):
                await client.search("hello")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_tavily_without_key_raises():
    client = TavilyClient(None)
    try:
        with pytest.raises(ProviderError):
            await client.search("hello")
    finally:
        await client.close()


def test_normalize_search_response_keeps_result_order_and_raw_content():
    result = normalize_search_response(DEFAULT_SEARCH_RESPONSE)

    assert result.contents == [
        "Rattlesnake Ledge is a 4 mile round trip hike.",
        "Mount Si gains 3150 feet of elevation.",
    ]
    assert [r.url for r in result.resources] == [r["url"] for r in DEFAULT_SEARCH_RESPONSE["results"]]


def test_normalize_search_response_accepts_bare_image_urls():
    result = normalize_search_response({"results": [], "images": ["https://img.test/a.jpg"], "answer": ""})

    assert result.images[0].url == "https://img.test/a.jpg"
    assert result.images[0].description == ""
    assert result.answer is None
    assert result.contents == []
