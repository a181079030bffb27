import json
import logging
from typing import Any, Dict, List

from pydantic import ValidationError

from .config import AppSettings
from .db import Database
from .errors import MalformedOutputError, failure_notice
from .gemini import GeminiClient
from .images import ImageClient
from .jobs import JobContext, JobFunction
from .prompts import (
    ASSISTANT_SYSTEM_PROMPT,
    IMAGE_PROPERTIES_SYSTEM_PROMPT,
    MISSING_IMAGE_PROMPT_NOTICE,
    build_web_prompt,
    strip_code_fences,
)
from .schemas import GENERATE_AI_RESPONSE_EVENT, GenerateResponseEvent, ImageProperties
from .tavily import TavilyClient


logger = logging.getLogger("uvicorn.error")

NUM_INFERENCE_STEPS = 4
RANDOM_SEED = -1


def parse_image_properties(raw: str) -> Dict[str, Any]:
    cleaned = strip_code_fences(raw)
    try:
        parsed = json.loads(cleaned)
    except ValueError as exc:
        raise MalformedOutputError(f"image properties are not valid JSON: {exc}", raw=raw) from exc
    if not isinstance(parsed, dict):
        raise MalformedOutputError("image properties must be a JSON object", raw=raw)
    return parsed


class ResponseGenerator:
    """Background job that answers one chat turn and fills in its placeholder message."""

    function_id = "generate-ai-response"

    def __init__(
        self,
        db: Database,
        gemini: GeminiClient,
        tavily: TavilyClient,
        images: ImageClient,
        settings: AppSettings,
    ):
        self.db = db
        self.gemini = gemini
        self.tavily = tavily
        self.images = images
        self.settings = settings

    def as_job_function(self) -> JobFunction:
        return JobFunction(
            id=self.function_id,
            event=GENERATE_AI_RESPONSE_EVENT,
            handler=self.run,
            on_failure=self.on_failure,
        )

    async def run(self, ctx: JobContext) -> None:
        event = GenerateResponseEvent.model_validate(ctx.data)
        previous_messages = await ctx.step.run(
            "get-previous-messages",
            self.db.get_previous_messages,
            event.conversation_id,
            event.clerk_id,
            self.settings.history_limit,
        )
        logger.info("Job %s dispatching tool %s for message %s", ctx.job_id, event.tool, event.ai_message_id)
        if event.tool == "web":
            await self._web(ctx, event, previous_messages)
        elif event.tool == "image":
            await self._image(ctx, event)
        else:
            await self._text(ctx, event)

    async def _web(self, ctx: JobContext, event: GenerateResponseEvent, previous_messages: List[dict]) -> None:
        async def search() -> Dict[str, Any]:
            result = await self.tavily.search(
                event.message,
                include_answer=True,
                include_images=True,
                include_image_descriptions=True,
                include_favicon=True,
                include_raw_content="text",
            )
            return result.model_dump()

        search_result = await ctx.step.run("generate-web-response", search)
        prompt = await ctx.step.run(
            "get-modified-prompt",
            build_web_prompt,
            search_result["contents"],
            search_result.get("answer"),
            previous_messages,
        )
        text = await ctx.step.run(
            "modify-web-response",
            self.gemini.generate,
            event.message,
            system_instruction=prompt,
        )
        images = [
            {"url": image["url"], "description": image.get("description") or ""}
            for image in search_result.get("images") or []
        ]
        await ctx.step.run(
            "save-to-db",
            self._save,
            event.ai_message_id,
            status="completed",
            type="web",
            text=text,
            resources=search_result.get("resources") or [],
            images=images,
        )

    async def _image(self, ctx: JobContext, event: GenerateResponseEvent) -> None:
        raw = await ctx.step.run(
            "extract-image-properties",
            self.gemini.generate,
            # Gemini rejects empty text parts; the prompt maps blank input to 404.
            event.message or " ",
            system_instruction=IMAGE_PROPERTIES_SYSTEM_PROMPT,
        )
        parsed = await ctx.step.run("clean-the-response", parse_image_properties, raw)
        try:
            properties = ImageProperties.model_validate({k: v for k, v in parsed.items() if v is not None})
        except ValidationError as exc:
            raise MalformedOutputError(f"image properties have invalid fields: {exc}", raw=raw) from exc
        if properties.status_code == 404:
            logger.info("Job %s image prompt missing for message %s", ctx.job_id, event.ai_message_id)
            await ctx.step.run(
                "save-missing-prompt",
                self._save,
                event.ai_message_id,
                status="failed",
                type="text",
                text=MISSING_IMAGE_PROMPT_NOTICE,
            )
            return
        image_url = await ctx.step.run(
            "generate-image-url",
            self.images.generate,
            properties.prompt,
            model=self.settings.image_model,
            response_format="url",
            response_extension=properties.response_extension,
            width=properties.width,
            height=properties.height,
            num_inference_steps=NUM_INFERENCE_STEPS,
            negative_prompt=properties.negative_prompt,
            seed=RANDOM_SEED,
            loras=None,
        )
        await ctx.step.run(
            "save-image-to-db",
            self._save,
            event.ai_message_id,
            status="completed",
            type="image",
            text="",
            image_url=image_url,
        )

    async def _text(self, ctx: JobContext, event: GenerateResponseEvent) -> None:
        text = await ctx.step.run(
            "generate-text-response",
            self.gemini.generate,
            event.message,
            system_instruction=ASSISTANT_SYSTEM_PROMPT,
        )
        await ctx.step.run(
            "save-text-response-to-db",
            self._save,
            event.ai_message_id,
            status="completed",
            type="text",
            text=text,
        )

    async def _save(self, message_id: str, **fields: Any) -> Dict[str, Any]:
        message = await self.db.update_message(message_id, **fields)
        return {"id": message["id"], "status": message["status"]}

    async def on_failure(self, ctx: JobContext, error: BaseException) -> Dict[str, Any]:
        message_id = ctx.data.get("AIMessageId") or ctx.data.get("ai_message_id")
        logger.error("Job %s marking message %s failed: %s", ctx.job_id, message_id, error)
        return await self._save(message_id, status="failed", type=ctx.data.get("tool") or "text", text=failure_notice(error))
