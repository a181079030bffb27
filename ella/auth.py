from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request

from .config import AppSettings


@dataclass(frozen=True)
class Identity:
    user_id: str
    has_pro_plan: bool = False
    name: str = ""
    email: str = ""
    image_url: str = ""


class HeaderAuth:
    """Read the caller identity from headers set by the fronting auth provider."""

    def __init__(
        self,
        user_header: str = "X-User-Id",
        plan_header: str = "X-User-Plan",
        pro_plan_name: str = "pro",
    ):
        self.user_header = user_header
        self.plan_header = plan_header
        self.pro_plan_name = pro_plan_name

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "HeaderAuth":
        return cls(settings.auth_user_header, settings.auth_plan_header, settings.pro_plan_name)

    async def authenticate(self, request: Request) -> Optional[Identity]:
        user_id = (request.headers.get(self.user_header) or "").strip()
        if not user_id:
            return None
        plan = (request.headers.get(self.plan_header) or "").strip().lower()
        return Identity(
            user_id=user_id,
            has_pro_plan=plan == self.pro_plan_name.lower(),
            name=request.headers.get("X-User-Name", ""),
            email=request.headers.get("X-User-Email", ""),
            image_url=request.headers.get("X-User-Image", ""),
        )


async def require_identity(request: Request) -> Identity:
    identity = await request.app.state.auth.authenticate(request)
    if identity is None:
        raise HTTPException(status_code=401, detail="User not found")
    return identity
