from typing import Any, Dict, List, Optional

import httpx

from .errors import ProviderError


class ImageClient:
    """OpenAI-compatible text-to-image endpoint (Nebius AI Studio by default)."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.studio.nebius.com/v1",
        model: str = "black-forest-labs/flux-schnell",
        timeout: float = 120.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.client = httpx.AsyncClient(timeout=timeout)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        response_format: str = "url",
        response_extension: str = "png",
        width: int = 1024,
        height: int = 1024,
        num_inference_steps: int = 4,
        negative_prompt: str = "",
        seed: int = -1,
        loras: Optional[List[Dict[str, Any]]] = None,
    ) -> str:
        if not self.enabled:
            raise ProviderError("missing_api_key", provider="images")
        payload = {
            "model": model or self.model,
            "response_format": response_format,
            "response_extension": response_extension,
            "width": width,
            "height": height,
            "num_inference_steps": num_inference_steps,
            "negative_prompt": negative_prompt,
            "seed": seed,
            "loras": loras,
            "prompt": prompt,
        }
        resp = await self.client.post(
            f"{self.base_url}/images/generations",
            json=payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        resp.raise_for_status()
        data = resp.json()
        items = data.get("data") or []
        url = items[0].get("url") if items and isinstance(items[0], dict) else None
        if not url:
            raise ProviderError("no_image_url", provider="images", detail=data)
        return url

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
