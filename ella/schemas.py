from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


Tool = Literal["text", "web", "image"]
Sender = Literal["user", "assistant"]
MessageStatus = Literal["pending", "completed", "failed"]

GENERATE_AI_RESPONSE_EVENT = "chat/generate-ai-response"


class Resource(BaseModel):
    url: str
    favicon: str = ""


class ImageResult(BaseModel):
    url: str
    description: str = ""


class ChatRequest(BaseModel):
    message: str = ""
    conversation_id: str = Field(alias="conversationId")
    tool: Tool = "text"
    ai_message_id: str = Field(alias="AIMessageId")

    model_config = {"populate_by_name": True}


class GenerateResponseEvent(BaseModel):
    """Payload of the chat/generate-ai-response job."""

    message: str = ""
    conversation_id: str = Field(alias="conversationId")
    clerk_id: str = Field(alias="clerkId")
    tool: Tool = "text"
    ai_message_id: str = Field(alias="AIMessageId")
    has_pro_plan: bool = Field(default=False, alias="hasProPlan")

    model_config = {"populate_by_name": True}


class TitleRequest(BaseModel):
    messages: Any = None


class RenameRequest(BaseModel):
    title: str


class CreateMessageRequest(BaseModel):
    text: str = ""
    type: Tool = "text"
    sender: Sender = "user"
    status: MessageStatus = "completed"
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    resources: Optional[List[Resource]] = None
    images: Optional[List[ImageResult]] = None

    model_config = {"populate_by_name": True}


class TurnRequest(BaseModel):
    message: str


class ImageProperties(BaseModel):
    status_code: int = Field(default=200, alias="statusCode")
    response_extension: str = "png"
    width: int = 1024
    height: int = 1024
    negative_prompt: str = ""
    prompt: str = ""
    message: Optional[str] = None

    model_config = {"populate_by_name": True, "extra": "allow"}


class WebSearchResult(BaseModel):
    results: List[Dict[str, Any]] = Field(default_factory=list)
    answer: Optional[str] = None
    images: List[ImageResult] = Field(default_factory=list)
    resources: List[Resource] = Field(default_factory=list)
    contents: List[Any] = Field(default_factory=list)
