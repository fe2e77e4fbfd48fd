"""
Chat Service for Velvet

This module handles the business logic for chat sessions, including:
- Character (persona) management
- Session lifecycle and transcript recording
- User settings with opaque stored credentials
- Streaming replies through the completion client

All state lives in an injected KeyValueStore; the plaintext API key is
obtained per request from an injected ``reveal_api_key`` callable.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict

from velvet.history.models import Character, ChatMessage, ChatSession, UserSettings
from velvet.history.repositories.base import KeyValueStore
from velvet.llm.client import Callback, StreamingCompletionClient
from velvet.llm.streaming.models import CompletionResult
from velvet.logging_utils import log_operation

logger = logging.getLogger(__name__)

SETTINGS_KEY = "velvet_settings"
CHARACTERS_KEY = "velvet_characters"
SESSIONS_KEY = "velvet_sessions"


def _identity(value: str) -> str:
    return value


class ChatService:
    """
    Conversation orchestrator:
    1. Records the user's message in the session
    2. Sends the transcript with the character's persona to the provider
    3. Streams cumulative text back to the caller
    4. Records the assistant's reply once the stream finishes
    """

    class ChatServiceConfig(BaseModel):
        model_config = ConfigDict(arbitrary_types_allowed=True)

        store: Any  # KeyValueStore
        llm_client: Any  # StreamingCompletionClient
        reveal_api_key: Callable[[str], str] = _identity
        default_settings: UserSettings = UserSettings()

    def __init__(self, service_config: ChatService.ChatServiceConfig):
        self.store: KeyValueStore = service_config.store
        self.llm_client: StreamingCompletionClient = service_config.llm_client
        self.reveal_api_key = service_config.reveal_api_key
        self.default_settings = service_config.default_settings
        # One in-flight generation per session.
        self._generating: set[str] = set()
        # Serializes read-modify-write of the stored lists.
        self._characters_lock = asyncio.Lock()
        self._sessions_lock = asyncio.Lock()

    # ------------------------------------------------------------------ #
    # Settings                                                           #
    # ------------------------------------------------------------------ #

    async def get_settings(self) -> UserSettings:
        raw = await self.store.get(SETTINGS_KEY)
        if raw is None:
            return self.default_settings.model_copy()
        return UserSettings.model_validate(raw)

    async def update_settings(self, **changes: Any) -> UserSettings:
        """Merge partial changes into the stored settings."""
        current = await self.get_settings()
        updated = UserSettings.model_validate({**current.model_dump(), **changes})
        await self.store.set(SETTINGS_KEY, updated.model_dump())
        logger.info("Settings updated: %s", sorted(changes))
        return updated

    # ------------------------------------------------------------------ #
    # Characters                                                         #
    # ------------------------------------------------------------------ #

    async def list_characters(self) -> list[Character]:
        raw = await self.store.get(CHARACTERS_KEY, [])
        return [Character.model_validate(item) for item in raw]

    async def get_character(self, character_id: str) -> Character | None:
        for character in await self.list_characters():
            if character.id == character_id:
                return character
        return None

    async def add_character(
        self,
        name: str,
        system_prompt: str,
        description: str = "",
        first_message: str = "",
        avatar_url: str | None = None,
    ) -> Character:
        """Create a character; newest characters are listed first."""
        character = Character(
            name=name,
            system_prompt=system_prompt,
            description=description,
            first_message=first_message,
            avatar_url=avatar_url,
        )
        async with self._characters_lock:
            characters = await self.list_characters()
            await self._save_characters([character, *characters])
        logger.info("Character created: %s (%s)", character.name, character.id)
        return character

    async def delete_character(self, character_id: str) -> None:
        """Delete a character together with all of its sessions."""
        async with self._characters_lock:
            characters = await self.list_characters()
            await self._save_characters(
                [c for c in characters if c.id != character_id]
            )
        async with self._sessions_lock:
            sessions = await self.list_sessions()
            await self._save_sessions(
                [s for s in sessions if s.character_id != character_id]
            )

    async def _save_characters(self, characters: list[Character]) -> None:
        await self.store.set(CHARACTERS_KEY, [c.model_dump() for c in characters])

    # ------------------------------------------------------------------ #
    # Sessions                                                           #
    # ------------------------------------------------------------------ #

    async def list_sessions(self) -> list[ChatSession]:
        raw = await self.store.get(SESSIONS_KEY, [])
        return [ChatSession.model_validate(item) for item in raw]

    async def get_session(self, session_id: str) -> ChatSession | None:
        for session in await self.list_sessions():
            if session.id == session_id:
                return session
        return None

    async def start_session(self, character_id: str) -> ChatSession:
        """
        Return the character's existing session, or create one seeded with
        the character's first message.

        Raises:
            ValueError: If the character does not exist.
        """
        character = await self.get_character(character_id)

        async with self._sessions_lock:
            sessions = await self.list_sessions()
            for session in sessions:
                if session.character_id == character_id:
                    return session

            if character is None:
                raise ValueError(f"Unknown character '{character_id}'")

            messages = []
            if character.first_message:
                messages.append(
                    ChatMessage(role="assistant", content=character.first_message)
                )
            session = ChatSession(character_id=character_id, messages=messages)
            await self._save_sessions([session, *sessions])
        logger.info("Session %s started for character %s", session.id, character_id)
        return session

    async def delete_session(self, session_id: str) -> None:
        async with self._sessions_lock:
            sessions = await self.list_sessions()
            await self._save_sessions([s for s in sessions if s.id != session_id])

    async def add_message(
        self, session_id: str, role: str, content: str
    ) -> ChatMessage:
        """Append a message to a session's transcript."""
        message = ChatMessage(role=role, content=content)
        if not await self._append_message(session_id, message):
            raise ValueError(f"Unknown session '{session_id}'")
        return message

    async def _append_message(self, session_id: str, message: ChatMessage) -> bool:
        async with self._sessions_lock:
            sessions = await self.list_sessions()
            for session in sessions:
                if session.id == session_id:
                    session.messages.append(message)
                    session.last_message_at = int(time.time() * 1000)
                    await self._save_sessions(sessions)
                    return True
        return False

    async def _save_sessions(self, sessions: list[ChatSession]) -> None:
        await self.store.set(SESSIONS_KEY, [s.model_dump() for s in sessions])

    # ------------------------------------------------------------------ #
    # Generation                                                         #
    # ------------------------------------------------------------------ #

    def is_generating(self, session_id: str) -> bool:
        return session_id in self._generating

    @log_operation("send_message", context={"component": "chat_service"})
    async def send_message(
        self,
        session_id: str,
        text: str,
        on_update: Callback | None = None,
        on_finish: Callback | None = None,
        on_error: Callback | None = None,
    ) -> CompletionResult:
        """
        Record ``text`` as the user's turn and stream the assistant's reply.

        Nothing is recorded when no API key is configured; the missing key
        is reported through ``on_error``. The reply is appended to the
        session only when the stream completes, and ``on_finish`` fires even
        if the session was deleted meanwhile.

        Raises:
            ValueError: blank text, unknown session or character, or a
                generation already running for this session.
        """
        text = text.strip()
        if not text:
            raise ValueError("Message text must not be blank")
        if session_id in self._generating:
            raise ValueError(f"Session '{session_id}' is already generating")

        self._generating.add(session_id)
        try:
            session = await self.get_session(session_id)
            if session is None:
                raise ValueError(f"Unknown session '{session_id}'")
            character = await self.get_character(session.character_id)
            if character is None:
                raise ValueError(f"Unknown character '{session.character_id}'")

            settings = await self.get_settings()
            api_key = (
                self.reveal_api_key(settings.api_key) if settings.api_key else ""
            )

            user_message = ChatMessage(role="user", content=text)
            if api_key:
                await self._append_message(session_id, user_message)
            transcript = [m.to_wire() for m in session.messages]
            transcript.append(user_message.to_wire())

            result = await self.llm_client.stream_completion(
                api_key,
                settings.api_provider,
                settings.model,
                transcript,
                system_prompt=character.system_prompt,
                on_update=on_update,
                on_error=on_error,
            )

            if result.ok:
                reply = ChatMessage(role="assistant", content=result.text)
                if not await self._append_message(session_id, reply):
                    logger.warning(
                        "Session %s was deleted during generation; reply dropped",
                        session_id,
                    )
                await self._finish(on_finish, result.text)
            else:
                logger.warning(
                    "Generation failed for session %s: %s", session_id, result.error
                )
            return result
        finally:
            self._generating.discard(session_id)

    @staticmethod
    async def _finish(on_finish: Callback | None, text: str) -> None:
        if on_finish is None:
            return
        try:
            finished = on_finish(text)
            if inspect.isawaitable(finished):
                await finished
        except Exception:
            logger.exception("on_finish callback raised")
