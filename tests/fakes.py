import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from ella.db import Database
from ella.errors import ProviderError
from ella.prompts import ASSISTANT_SYSTEM_PROMPT, IMAGE_PROPERTIES_SYSTEM_PROMPT
from ella.schemas import WebSearchResult
from ella.tavily import normalize_search_response


DEFAULT_IMAGE_PROPERTIES = {
    "statusCode": 200,
    "response_extension": "png",
    "width": 1024,
    "height": 1024,
    "negative_prompt": "",
    "prompt": "A red fox standing in fresh snow, soft morning light, ultra-detailed wildlife photography",
}

DEFAULT_SEARCH_RESPONSE = {
    "answer": "Rattlesnake Ledge and Mount Si are popular hikes near Seattle.",
    "results": [
        {
            "url": "https://www.wta.org/go-hiking/hikes/rattlesnake-ledge",
            "title": "Rattlesnake Ledge",
            "content": "A short, steep hike.",
            "raw_content": "Rattlesnake Ledge is a 4 mile round trip hike.",
            "favicon": "https://www.wta.org/favicon.ico",
        },
        {
            "url": "https://www.alltrails.com/trail/us/washington/mount-si",
            "title": "Mount Si",
            "content": "A classic training hike.",
            "raw_content": "Mount Si gains 3150 feet of elevation.",
            "favicon": "https://www.alltrails.com/favicon.ico",
        },
    ],
    "images": [
        {"url": "https://images.test/ledge.jpg", "description": "View from the ledge"},
        {"url": "https://images.test/si.jpg"},
    ],
}


def http_error(status_code: int, payload: Dict[str, Any], url: str = "https://provider.test") -> httpx.HTTPStatusError:
    request = httpx.Request("POST", url)
    response = httpx.Response(status_code, json=payload, request=request)
    return httpx.HTTPStatusError(f"HTTP {status_code}", request=request, response=response)


class FakeGeminiClient:
    def __init__(
        self,
        api_key: Optional[str] = "test-google",
        text_response: str = "Hello! I'm **Ella**. How can I help?",
        web_response: str = "Here are some great hikes near Seattle.",
        title_response: str = "Seattle Hiking Trails",
        image_properties: Optional[Any] = None,
        fail_times: int = 0,
        error: Optional[BaseException] = None,
        before_call: Optional[Callable[[], Awaitable[None]]] = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self.api_key = api_key
        self.text_response = text_response
        self.web_response = web_response
        self.title_response = title_response
        self.image_properties = image_properties
        self.fail_times = fail_times
        self.error = error
        self.before_call = before_call
        self.delay_seconds = delay_seconds
        self.calls: List[Dict[str, Any]] = []

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _image_properties_text(self) -> str:
        value = self.image_properties if self.image_properties is not None else DEFAULT_IMAGE_PROPERTIES
        if isinstance(value, str):
            return value
        return "```json\n" + json.dumps(value) + "\n```"

    async def generate(
        self,
        contents: Any,
        system_instruction: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        top_k: Optional[int] = None,
        top_p: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ) -> str:
        if self.before_call is not None:
            await self.before_call()
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        self.calls.append(
            {
                "contents": contents,
                "system_instruction": system_instruction,
                "temperature": temperature,
                "max_output_tokens": max_output_tokens,
            }
        )
        if self.fail_times > 0:
            self.fail_times -= 1
            raise self.error or ProviderError("boom", provider="gemini")
        if system_instruction == IMAGE_PROPERTIES_SYSTEM_PROMPT:
            return self._image_properties_text()
        if system_instruction == ASSISTANT_SYSTEM_PROMPT:
            return self.text_response
        if system_instruction and "Search Details" in system_instruction:
            return self.web_response
        return self.title_response

    async def close(self) -> None:
        return None


class FakeTavilyClient:
    def __init__(
        self,
        api_key: Optional[str] = "test-tavily",
        search_response: Optional[Dict[str, Any]] = None,
        fail_times: int = 0,
        error: Optional[BaseException] = None,
    ) -> None:
        self.api_key = api_key
        self.search_response = search_response
        self.fail_times = fail_times
        self.error = error
        self.search_calls: List[Dict[str, Any]] = []

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(self, query: str, **options: Any) -> WebSearchResult:
        self.search_calls.append({"query": query, **options})
        if self.fail_times > 0:
            self.fail_times -= 1
            raise self.error or ProviderError("search failed", provider="tavily")
        return normalize_search_response(self.search_response or DEFAULT_SEARCH_RESPONSE)

    async def close(self) -> None:
        return None


class FakeImageClient:
    def __init__(
        self,
        api_key: Optional[str] = "test-nebius",
        url: str = "https://images.test/generated/fox.png",
        fail_times: int = 0,
    ) -> None:
        self.api_key = api_key
        self.url = url
        self.fail_times = fail_times
        self.calls: List[Dict[str, Any]] = []

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def generate(self, prompt: str, **options: Any) -> str:
        self.calls.append({"prompt": prompt, **options})
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ProviderError("image generation failed", provider="images")
        return self.url

    async def close(self) -> None:
        return None


class CountingDatabase(Database):
    """Database that records every update_message call."""

    def __init__(self, path: str):
        super().__init__(path)
        self.updates: List[Dict[str, Any]] = []

    async def update_message(self, message_id: str, **fields: Any) -> dict:
        self.updates.append({"message_id": message_id, **fields})
        return await super().update_message(message_id, **fields)

    def updates_for(self, message_id: str) -> List[Dict[str, Any]]:
        return [u for u in self.updates if u["message_id"] == message_id]


def user_headers(user_id: str = "user_1", plan: str = "pro") -> Dict[str, str]:
    headers = {"X-User-Id": user_id}
    if plan:
        headers["X-User-Plan"] = plan
    return headers
