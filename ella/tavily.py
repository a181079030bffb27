from typing import Any, Dict, List, Optional, Union

import httpx

from .errors import ProviderError
from .schemas import ImageResult, Resource, WebSearchResult


def _normalize_images(raw: Any) -> List[ImageResult]:
    images: List[ImageResult] = []
    for item in raw or []:
        # Tavily returns bare URLs unless image descriptions were requested.
        if isinstance(item, str):
            images.append(ImageResult(url=item))
        elif isinstance(item, dict) and item.get("url"):
            images.append(ImageResult(url=item["url"], description=item.get("description") or ""))
    return images


def normalize_search_response(data: Dict[str, Any]) -> WebSearchResult:
    results = [r for r in data.get("results") or [] if isinstance(r, dict)]
    resources = [Resource(url=r.get("url") or "", favicon=r.get("favicon") or "") for r in results]
    contents = [r.get("raw_content") for r in results]
    answer = data.get("answer")
    return WebSearchResult(
        results=results,
        answer=str(answer) if answer else None,
        images=_normalize_images(data.get("images")),
        resources=resources,
        contents=contents,
    )


class TavilyClient:
    def __init__(self, api_key: Optional[str], base_url: str = "https://api.tavily.com", timeout: float = 60.0):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        # One client per app; web-search steps of every running turn reuse its connections.
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        query: str,
        include_answer: bool = True,
        include_images: bool = True,
        include_image_descriptions: bool = True,
        include_favicon: bool = True,
        include_raw_content: Union[bool, str] = "text",
        search_depth: str = "basic",
        max_results: int = 5,
    ) -> WebSearchResult:
        if not self.enabled:
            raise ProviderError("missing_api_key", provider="tavily")
        payload: Dict[str, Any] = {
            "query": query,
            "search_depth": search_depth,
            "max_results": max_results,
            "include_answer": include_answer,
            "include_images": include_images,
            "include_image_descriptions": include_image_descriptions,
            "include_favicon": include_favicon,
            "include_raw_content": include_raw_content,
        }
        data = await self._post(f"{self.base_url}/search", payload)
        return normalize_search_response(data)

    async def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        resp = await self.client.post(url, json=payload, headers=headers)
        resp.raise_for_status()
        return resp.json()

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
