from typing import Any, Dict, List, Optional, Union

import httpx

from .errors import ProviderError


Contents = Union[str, List[Dict[str, Any]]]


class GeminiClient:
    """Text generation through the Gemini generateContent REST endpoint."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        model: str = "gemini-2.5-flash",
        timeout: float = 60.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.client = httpx.AsyncClient(timeout=timeout)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    @staticmethod
    def _contents(contents: Contents) -> List[Dict[str, Any]]:
        if isinstance(contents, str):
            return [{"role": "user", "parts": [{"text": contents}]}]
        return contents

    @staticmethod
    def _extract_text(data: Dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts if isinstance(part, dict))

    async def generate(
        self,
        contents: Contents,
        system_instruction: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        top_k: Optional[int] = None,
        top_p: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ) -> str:
        if not self.enabled:
            raise ProviderError("missing_api_key", provider="gemini")
        payload: Dict[str, Any] = {"contents": self._contents(contents)}
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}
        config: Dict[str, Any] = {}
        if temperature is not None:
            config["temperature"] = temperature
        if top_k is not None:
            config["topK"] = top_k
        if top_p is not None:
            config["topP"] = top_p
        if max_output_tokens is not None:
            config["maxOutputTokens"] = max_output_tokens
        if config:
            payload["generationConfig"] = config
        url = f"{self.base_url}/models/{model or self.model}:generateContent"
        resp = await self.client.post(url, json=payload, headers={"x-goog-api-key": str(self.api_key)})
        # Provider errors propagate unmodified; the caller owns retry policy.
        resp.raise_for_status()
        data = resp.json()
        text = self._extract_text(data)
        if not text:
            raise ProviderError("empty_response", provider="gemini", detail=data)
        return text

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
