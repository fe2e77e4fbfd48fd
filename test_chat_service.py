"""
Tests for the chat-session caller: characters, sessions and generation.
"""

import asyncio
import json

import httpx
import pytest
from pydantic import ValidationError

from velvet.chat_service import SESSIONS_KEY, ChatService
from velvet.history.models import UserSettings
from velvet.history.repositories.memory_store import InMemoryStore
from velvet.llm.client import StreamingCompletionClient


def sse(*contents: str) -> bytes:
    lines = [
        "data: " + json.dumps({"choices": [{"delta": {"content": c}}]})
        for c in contents
    ]
    return ("\n".join([*lines, "data: [DONE]"]) + "\n").encode()


def build_service(handler, reveal=None, settings=None, store=None):
    requests = []

    def recording_handler(request):
        requests.append(json.loads(request.content))
        return handler(request)

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(recording_handler))
    config_kwargs = {
        "store": store or InMemoryStore(),
        "llm_client": StreamingCompletionClient(http_client=http_client),
        "default_settings": settings
        or UserSettings(api_key="sk-test", api_provider="openai", model="gpt-4o"),
    }
    if reveal is not None:
        config_kwargs["reveal_api_key"] = reveal
    service = ChatService(ChatService.ChatServiceConfig(**config_kwargs))
    return service, requests


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_get_set_delete(self):
        store = InMemoryStore()
        assert await store.get("k", "default") == "default"
        await store.set("k", {"a": [1]})
        value = await store.get("k")
        value["a"].append(2)
        assert await store.get("k") == {"a": [1]}
        assert await store.delete("k") is True
        assert await store.delete("k") is False


class TestCharactersAndSessions:
    @pytest.mark.asyncio
    async def test_character_requires_name_and_persona(self):
        service, _ = build_service(lambda request: httpx.Response(200))
        with pytest.raises(ValidationError):
            await service.add_character(name=" ", system_prompt="You are Atlas.")
        with pytest.raises(ValidationError):
            await service.add_character(name="Atlas", system_prompt="")

    @pytest.mark.asyncio
    async def test_newest_character_listed_first(self):
        service, _ = build_service(lambda request: httpx.Response(200))
        first = await service.add_character("Atlas", "You are Atlas.")
        second = await service.add_character("Nova", "You are Nova.")
        assert [c.id for c in await service.list_characters()] == [second.id, first.id]

    @pytest.mark.asyncio
    async def test_start_session_seeds_first_message(self):
        service, _ = build_service(lambda request: httpx.Response(200))
        character = await service.add_character(
            "Atlas", "You are Atlas.", first_message="Greetings, traveler."
        )
        session = await service.start_session(character.id)
        assert [(m.role, m.content) for m in session.messages] == [
            ("assistant", "Greetings, traveler.")
        ]

    @pytest.mark.asyncio
    async def test_start_session_reuses_existing(self):
        service, _ = build_service(lambda request: httpx.Response(200))
        character = await service.add_character("Atlas", "You are Atlas.")
        first = await service.start_session(character.id)
        second = await service.start_session(character.id)
        assert first.id == second.id
        assert first.messages == []
        assert len(await service.list_sessions()) == 1

    @pytest.mark.asyncio
    async def test_start_session_unknown_character(self):
        service, _ = build_service(lambda request: httpx.Response(200))
        with pytest.raises(ValueError, match="Unknown character"):
            await service.start_session("missing")

    @pytest.mark.asyncio
    async def test_delete_character_removes_sessions(self):
        service, _ = build_service(lambda request: httpx.Response(200))
        keep = await service.add_character("Nova", "You are Nova.")
        drop = await service.add_character("Atlas", "You are Atlas.")
        kept_session = await service.start_session(keep.id)
        await service.start_session(drop.id)

        await service.delete_character(drop.id)

        assert [c.id for c in await service.list_characters()] == [keep.id]
        assert [s.id for s in await service.list_sessions()] == [kept_session.id]

    @pytest.mark.asyncio
    async def test_update_settings_merges(self):
        service, _ = build_service(lambda request: httpx.Response(200))
        updated = await service.update_settings(model="gpt-4o-mini")
        assert updated.model == "gpt-4o-mini"
        assert updated.api_provider == "openai"
        assert (await service.get_settings()).model == "gpt-4o-mini"


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_reply_recorded_after_stream(self):
        service, requests = build_service(
            lambda request: httpx.Response(200, content=sse("Hello", " there"))
        )
        character = await service.add_character(
            "Atlas", "You are Atlas.", first_message="Greetings."
        )
        session = await service.start_session(character.id)
        updates, finished = [], []

        result = await service.send_message(
            session.id, "hi", on_update=updates.append, on_finish=finished.append
        )

        assert result.ok
        assert updates == ["Hello", "Hello there"]
        assert finished == ["Hello there"]
        assert requests[0]["messages"] == [
            {"role": "system", "content": "You are Atlas."},
            {"role": "assistant", "content": "Greetings."},
            {"role": "user", "content": "hi"},
        ]
        stored = await service.get_session(session.id)
        assert [(m.role, m.content) for m in stored.messages] == [
            ("assistant", "Greetings."),
            ("user", "hi"),
            ("assistant", "Hello there"),
        ]

    @pytest.mark.asyncio
    async def test_failed_generation_keeps_only_user_message(self):
        service, _ = build_service(
            lambda request: httpx.Response(401, json={"error": {"message": "bad key"}})
        )
        character = await service.add_character("Atlas", "You are Atlas.")
        session = await service.start_session(character.id)
        errors = []

        result = await service.send_message(session.id, "hi", on_error=errors.append)

        assert not result.ok
        assert errors == ["bad key"]
        stored = await service.get_session(session.id)
        assert [(m.role, m.content) for m in stored.messages] == [("user", "hi")]
        assert not service.is_generating(session.id)

    @pytest.mark.asyncio
    async def test_stored_key_is_revealed_before_use(self):
        seen = []

        def handler(request):
            seen.append(request.headers["Authorization"])
            return httpx.Response(200, content=sse("ok"))

        service, _ = build_service(
            handler,
            reveal=lambda stored: stored[::-1],
            settings=UserSettings(api_key="tset-ks", api_provider="openai", model="m"),
        )
        character = await service.add_character("Atlas", "You are Atlas.")
        session = await service.start_session(character.id)

        await service.send_message(session.id, "hi")

        assert seen == ["Bearer sk-test"]

    @pytest.mark.asyncio
    async def test_missing_key_reports_error(self):
        service, requests = build_service(
            lambda request: httpx.Response(200),
            settings=UserSettings(api_key="", api_provider="openai", model="gpt-4o"),
        )
        character = await service.add_character("Atlas", "You are Atlas.")
        session = await service.start_session(character.id)
        errors = []

        result = await service.send_message(session.id, "hi", on_error=errors.append)

        assert not result.ok
        assert requests == []
        assert len(errors) == 1 and "API key is missing" in errors[0]
        assert (await service.get_session(session.id)).messages == []

    @pytest.mark.asyncio
    async def test_rejects_blank_and_unknown(self):
        service, _ = build_service(lambda request: httpx.Response(200))
        with pytest.raises(ValueError, match="must not be blank"):
            await service.send_message("any", "   ")
        with pytest.raises(ValueError, match="Unknown session"):
            await service.send_message("missing", "hi")
        assert not service.is_generating("missing")

    @pytest.mark.asyncio
    async def test_one_generation_per_session(self):
        release = asyncio.Event()

        async def slow_body():
            await release.wait()
            yield sse("done")

        service, _ = build_service(
            lambda request: httpx.Response(200, content=slow_body())
        )
        character = await service.add_character("Atlas", "You are Atlas.")
        session = await service.start_session(character.id)

        first = asyncio.create_task(service.send_message(session.id, "one"))
        while not service.is_generating(session.id):
            await asyncio.sleep(0)

        with pytest.raises(ValueError, match="already generating"):
            await service.send_message(session.id, "two")

        release.set()
        result = await first
        assert result.ok and result.text == "done"
        assert not service.is_generating(session.id)

        raw_sessions = await service.store.get(SESSIONS_KEY)
        assert [m["content"] for m in raw_sessions[0]["messages"]] == ["one", "done"]

    @pytest.mark.asyncio
    async def test_user_text_is_trimmed(self):
        service, requests = build_service(
            lambda request: httpx.Response(200, content=sse("ok"))
        )
        character = await service.add_character("Atlas", "You are Atlas.")
        session = await service.start_session(character.id)

        await service.send_message(session.id, "  hi there \n")

        assert requests[0]["messages"][-1] == {"role": "user", "content": "hi there"}
        stored = await service.get_session(session.id)
        assert stored.messages[0].content == "hi there"

    @pytest.mark.asyncio
    async def test_finish_fires_when_session_deleted_mid_stream(self):
        release = asyncio.Event()

        async def slow_body():
            await release.wait()
            yield sse("late")

        service, _ = build_service(
            lambda request: httpx.Response(200, content=slow_body())
        )
        character = await service.add_character("Atlas", "You are Atlas.")
        session = await service.start_session(character.id)
        finished, errors = [], []

        task = asyncio.create_task(
            service.send_message(
                session.id, "hi", on_finish=finished.append, on_error=errors.append
            )
        )
        while not service.is_generating(session.id):
            await asyncio.sleep(0)
        await service.delete_session(session.id)
        release.set()
        result = await task

        assert result.ok
        assert finished == ["late"]
        assert errors == []
        assert await service.get_session(session.id) is None

    @pytest.mark.asyncio
    async def test_raising_finish_callback_is_contained(self):
        service, _ = build_service(
            lambda request: httpx.Response(200, content=sse("ok"))
        )
        character = await service.add_character("Atlas", "You are Atlas.")
        session = await service.start_session(character.id)

        def on_finish(text):
            raise RuntimeError("renderer gone")

        result = await service.send_message(session.id, "hi", on_finish=on_finish)

        assert result.ok
        stored = await service.get_session(session.id)
        assert [m.content for m in stored.messages] == ["hi", "ok"]


class YieldingStore(InMemoryStore):
    """Store whose calls suspend, like a store backed by real I/O."""

    async def get(self, key, default=None):
        await asyncio.sleep(0)
        return await super().get(key, default)

    async def set(self, key, value):
        await asyncio.sleep(0)
        await super().set(key, value)


class TestConcurrentWrites:
    @pytest.mark.asyncio
    async def test_messages_from_parallel_sessions_are_kept(self):
        service, _ = build_service(
            lambda request: httpx.Response(200), store=YieldingStore()
        )
        atlas = await service.add_character("Atlas", "You are Atlas.")
        nova = await service.add_character("Nova", "You are Nova.")
        first = await service.start_session(atlas.id)
        second = await service.start_session(nova.id)

        await asyncio.gather(
            service.add_message(first.id, "user", "to atlas"),
            service.add_message(second.id, "user", "to nova"),
            service.add_message(first.id, "user", "again atlas"),
        )

        stored = {
            s.id: [m.content for m in s.messages]
            for s in await service.list_sessions()
        }
        assert sorted(stored[first.id]) == ["again atlas", "to atlas"]
        assert stored[second.id] == ["to nova"]

    @pytest.mark.asyncio
    async def test_parallel_character_creation_keeps_all(self):
        service, _ = build_service(
            lambda request: httpx.Response(200), store=YieldingStore()
        )

        await asyncio.gather(
            *(service.add_character(f"C{i}", "You are a character.") for i in range(3))
        )

        assert sorted(c.name for c in await service.list_characters()) == [
            "C0", "C1", "C2"
        ]
