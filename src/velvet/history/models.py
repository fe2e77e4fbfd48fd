# src/velvet/history/models.py
from __future__ import annotations

import time
import uuid
from typing import Literal

from pydantic import BaseModel, Field, field_validator

Role = Literal["system", "user", "assistant"]
Provider = Literal["openai", "openrouter"]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _new_id() -> str:
    return uuid.uuid4().hex


class ChatMessage(BaseModel):
    """One recorded turn of a chat session."""
    id: str = Field(default_factory=_new_id)
    role: Role
    content: str
    timestamp: int = Field(default_factory=_now_ms)

    def to_wire(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class Character(BaseModel):
    """
    A persona the user chats with. ``system_prompt`` is sent as the
    persona instruction on every request.
    """
    id: str = Field(default_factory=_new_id)
    name: str
    description: str = ""
    avatar_url: str | None = None
    system_prompt: str
    first_message: str = ""
    created_at: int = Field(default_factory=_now_ms)

    @field_validator("name", "system_prompt")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


class ChatSession(BaseModel):
    id: str = Field(default_factory=_new_id)
    character_id: str
    messages: list[ChatMessage] = Field(default_factory=list)
    last_message_at: int = Field(default_factory=_now_ms)


class UserSettings(BaseModel):
    """
    User preferences. ``api_key`` holds the key exactly as stored; it is
    turned into plaintext by the credential collaborator before use.
    """
    user_name: str = "Guest"
    api_key: str = ""
    api_provider: Provider = "openrouter"
    model: str = "mythomax-l2-13b"
    custom_logo_url: str | None = None
