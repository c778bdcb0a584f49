from typing import List, Optional

from pydantic import BaseModel, Field


class MessageRequest(BaseModel):
    message: Optional[str] = None


class RoleMessage(BaseModel):
    role: Optional[str] = None
    text: Optional[str] = None


class StreamRequest(BaseModel):
    messages: List[RoleMessage] = Field(default_factory=list)

    def prompt(self) -> str:
        # Only the first message is relayed; each request is one independent prompt
        if not self.messages:
            return ""
        return self.messages[0].text or ""
