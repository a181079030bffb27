from dataclasses import dataclass

from .schemas import Tool


WEB_PREFIX = "/web"
IMAGE_PREFIX = "/image"


@dataclass(frozen=True)
class ToolDirective:
    tool: Tool
    message: str


def identify_tool(raw: str) -> ToolDirective:
    """Classify raw chat input by its slash prefix and strip the prefix."""
    if raw.startswith(WEB_PREFIX):
        return ToolDirective("web", raw.strip()[len(WEB_PREFIX):].strip())
    if raw.startswith(IMAGE_PREFIX):
        return ToolDirective("image", raw.strip()[len(IMAGE_PREFIX):].strip())
    return ToolDirective("text", raw)
