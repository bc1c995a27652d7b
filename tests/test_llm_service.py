"""Tests for LLMService send operations, failover and persistence."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from fakes import FakeProvider, vision_model

from llm_orchestrator.config import AppConfig
from llm_orchestrator.errors import (
    ConversationNotFoundError,
    NoProviderAvailableError,
    NoVisionProviderError,
)
from llm_orchestrator.history import JsonConversationRepository, StaticSystemPromptProvider
from llm_orchestrator.llm_service import DEGRADED_MESSAGE, DEGRADED_PROVIDER_NAME, LLMService
from llm_orchestrator.models import (
    Message,
    Model,
    Response,
    Role,
    ToolCall,
    ToolExecutionResult,
    Usage,
)
from llm_orchestrator.token_utils import estimate_messages_tokens, estimate_tokens


def _roles(messages):
    return [m.role for m in messages]


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_creates_conversation_seeded_with_default_prompt(self, make_service, repository):
        alpha = FakeProvider("alpha")
        service = make_service(alpha)

        response = await service.send_message("Hello")

        assert response.content == "alpha reply"
        assert response.provider_name == "alpha"
        assert response.model_name == "alpha-model-1"
        assert not response.is_degraded

        stored = await repository.get(response.conversation_id)
        assert _roles(stored.messages) == [Role.SYSTEM, Role.USER, Role.ASSISTANT]
        assert stored.messages[0].content == "You are a helpful assistant."
        assert stored.messages[1].content == "Hello"
        assert stored.messages[2].content == "alpha reply"

    @pytest.mark.asyncio
    async def test_continues_existing_conversation(self, make_service):
        alpha = FakeProvider("alpha", outcomes=["first", "second"])
        service = make_service(alpha)

        first = await service.send_message("one")
        second = await service.send_message("two", conversation_id=first.conversation_id)

        assert second.conversation_id == first.conversation_id
        history = await service.get_conversation_history(first.conversation_id)
        assert [m.content for m in history[1:]] == ["one", "first", "two", "second"]
        # The provider sees the whole history on the second call
        assert [m.content for m in alpha.calls[1].messages][-1] == "two"
        assert len(alpha.calls[1].messages) == 4

    @pytest.mark.asyncio
    async def test_unknown_conversation_id_starts_new_conversation(self, make_service, caplog):
        service = make_service(FakeProvider("alpha"))

        response = await service.send_message("Hello", conversation_id="does-not-exist")

        assert response.conversation_id != "does-not-exist"
        assert any("Conversation not found" in r.message for r in caplog.records)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("conversation_id", ["../etc/passwd", "stale"])
    async def test_invalid_or_corrupt_conversation_starts_new_one(
        self, app_config, clock, tmp_path, conversation_id
    ):
        (tmp_path / "stale.json").write_text("[]", encoding="utf-8")
        service = LLMService(
            providers=[FakeProvider("alpha")],
            conversation_repository=JsonConversationRepository(tmp_path),
            config=app_config,
            clock=clock,
        )

        response = await service.send_message("hi", conversation_id=conversation_id)

        assert response.content == "alpha reply"
        assert response.conversation_id != conversation_id
        history = await service.get_conversation_history(response.conversation_id)
        assert _roles(history) == ["system", "user", "assistant"]

    @pytest.mark.asyncio
    async def test_system_prompt_resolution(self, make_service):
        alpha = FakeProvider("alpha")
        service = make_service(alpha)

        first = await service.send_message("Hello")
        await service.send_message(
            "Again", system_prompt="Be terse.", conversation_id=first.conversation_id
        )

        assert alpha.calls[0].system_prompt == "You are a helpful assistant."
        assert alpha.calls[1].system_prompt == "Be terse."

    @pytest.mark.asyncio
    async def test_custom_system_prompt_provider(self, app_config, clock):
        alpha = FakeProvider("alpha")
        service = LLMService(
            providers=[alpha],
            system_prompt_provider=StaticSystemPromptProvider("You grade essays."),
            config=app_config,
            clock=clock,
        )

        response = await service.send_message("Hello")

        history = await service.get_conversation_history(response.conversation_id)
        assert history[0].content == "You grade essays."
        assert alpha.calls[0].system_prompt == "You grade essays."

    @pytest.mark.asyncio
    async def test_empty_registry_raises(self, make_service):
        service = make_service()
        with pytest.raises(NoProviderAvailableError, match="No LLM provider available"):
            await service.send_message("Hello")

    @pytest.mark.asyncio
    async def test_usage_is_estimated_when_not_reported(self, make_service):
        alpha = FakeProvider("alpha", outcomes=["abcdefgh"])
        service = make_service(alpha)

        response = await service.send_message("Hello")

        assert response.usage.prompt_tokens == estimate_messages_tokens(alpha.calls[0].messages)
        assert response.usage.completion_tokens == estimate_tokens("abcdefgh")

    @pytest.mark.asyncio
    async def test_reported_usage_is_kept(self, make_service):
        reported = Response(
            "alpha", "alpha-model-1", Message.assistant("hi"), usage=Usage(120, 7)
        )
        service = make_service(FakeProvider("alpha", outcomes=[reported]))

        response = await service.send_message("Hello")

        assert response.usage.prompt_tokens == 120
        assert response.usage.completion_tokens == 7


class TestFailover:
    @pytest.mark.asyncio
    async def test_failing_provider_is_replaced_by_next(self, make_service):
        alpha = FakeProvider("alpha", outcomes=[RuntimeError("rate limited")])
        beta = FakeProvider("beta")
        service = make_service(alpha, beta)
        await service.start()

        response = await service.send_message("Hello")

        assert response.provider_name == "beta"
        assert response.content == "beta reply"
        assert service.active_provider is beta
        assert service.failover.is_backed_off(alpha)
        assert len(alpha.calls) == 1
        assert len(beta.calls) == 1

    @pytest.mark.asyncio
    async def test_requests_use_substitute_until_backoff_expires(self, make_service, clock):
        alpha = FakeProvider("alpha", outcomes=[RuntimeError("rate limited")])
        beta = FakeProvider("beta")
        service = make_service(alpha, beta)
        await service.start()

        await service.send_message("one")
        await service.send_message("two")
        assert len(alpha.calls) == 1
        assert len(beta.calls) == 2

        clock.advance(301)
        service.failover.select_active()
        response = await service.send_message("three")
        assert response.provider_name == "alpha"

    @pytest.mark.asyncio
    async def test_substitute_stays_active_without_start(self, make_service):
        alpha = FakeProvider("alpha", outcomes=[RuntimeError("rate limited")])
        beta = FakeProvider("beta")
        service = make_service(alpha, beta)

        first = await service.send_message("one")
        second = await service.send_message("two")

        assert first.provider_name == "beta"
        assert second.provider_name == "beta"
        assert service.active_provider is beta
        assert len(alpha.calls) == 1

    @pytest.mark.asyncio
    async def test_substitute_receives_history_trimmed_for_its_own_budget(self, make_service):
        small = Model("small-1", max_context_length=40)
        alpha = FakeProvider("alpha", model=small, outcomes=[RuntimeError("overloaded")])
        beta = FakeProvider("beta")
        config = AppConfig(model_refresh_enabled=False, response_token_reserve=0)
        service = make_service(alpha, beta, config=config)
        await service.start()

        history = [Message.system("sys")] + [
            Message.user(letter * 40) if i % 2 == 0 else Message.assistant(letter * 40)
            for i, letter in enumerate("abcde")
        ]
        await service.send_messages(history)

        assert [m.content for m in alpha.calls[0].messages] == ["sys", "d" * 40, "e" * 40]
        assert len(beta.calls[0].messages) == 6

    @pytest.mark.asyncio
    async def test_all_providers_failing_returns_degraded_response(self, make_service, repository):
        alpha = FakeProvider("alpha", outcomes=[RuntimeError("alpha down")])
        beta = FakeProvider("beta", outcomes=[RuntimeError("beta down")])
        service = make_service(alpha, beta)
        await service.start()

        response = await service.send_message("Hello")

        assert response.is_degraded
        assert response.provider_name == DEGRADED_PROVIDER_NAME
        assert response.content == DEGRADED_MESSAGE
        assert response.error == "beta down"
        assert service.failover.is_backed_off(alpha)
        assert service.failover.is_backed_off(beta)

        # The user message is kept, the apology is not
        stored = await repository.get(response.conversation_id)
        assert _roles(stored.messages) == [Role.SYSTEM, Role.USER]

    @pytest.mark.asyncio
    async def test_single_provider_failure_is_degraded(self, make_service):
        alpha = FakeProvider("alpha", outcomes=[RuntimeError("alpha down")])
        service = make_service(alpha)
        await service.start()

        response = await service.send_message("Hello")

        assert response.is_degraded
        assert response.error == "alpha down"
        assert len(alpha.calls) == 1

    @pytest.mark.asyncio
    async def test_cancellation_propagates_without_marking_failure(self, make_service):
        alpha = FakeProvider("alpha", outcomes=[asyncio.CancelledError()])
        beta = FakeProvider("beta")
        service = make_service(alpha, beta)
        await service.start()

        with pytest.raises(asyncio.CancelledError):
            await service.send_message("Hello")

        assert service.failover.failure_records == {}
        assert service.active_provider is alpha
        assert beta.calls == []

    @pytest.mark.asyncio
    async def test_set_active_provider(self, make_service):
        alpha, beta = FakeProvider("alpha"), FakeProvider("beta")
        service = make_service(alpha, beta)

        assert await service.set_active_provider("BETA") is True
        response = await service.send_message("Hello")
        assert response.provider_name == "beta"

        assert await service.set_active_provider("nope") is False
        assert service.active_provider is beta

    @pytest.mark.asyncio
    async def test_provider_accessors(self, make_service):
        alpha, beta = FakeProvider("alpha"), FakeProvider("beta")
        service = make_service(alpha, beta)
        assert service.available_providers == [alpha, beta]
        assert service.get_provider("Beta") is beta
        assert service.get_provider("gamma") is None
        assert service.active_provider is alpha


class TestSendMessages:
    @pytest.mark.asyncio
    async def test_replaces_history_and_keeps_system_message(self, make_service, repository):
        alpha = FakeProvider("alpha")
        service = make_service(alpha)
        conversation_id = await service.create_conversation()

        response = await service.send_messages(
            [Message.user("a"), Message.assistant("b"), Message.user("c")],
            conversation_id=conversation_id,
        )

        assert response.conversation_id == conversation_id
        sent = alpha.calls[0].messages
        assert [m.content for m in sent] == ["You are a helpful assistant.", "a", "b", "c"]
        stored = await repository.get(conversation_id)
        assert [m.content for m in stored.messages][-1] == "alpha reply"

    @pytest.mark.asyncio
    async def test_caller_system_message_replaces_stored_one(self, make_service):
        alpha = FakeProvider("alpha")
        service = make_service(alpha)

        await service.send_messages([Message.system("Only French."), Message.user("Bonjour")])

        sent = alpha.calls[0].messages
        assert [m.content for m in sent] == ["Only French.", "Bonjour"]
        assert alpha.calls[0].system_prompt == "Only French."


class TestConversations:
    @pytest.mark.asyncio
    async def test_create_conversation_with_metadata(self, make_service, repository):
        service = make_service(FakeProvider("alpha"))

        conversation_id = await service.create_conversation(
            class_id="bio-2", date="2024-09-01", time_slot=4
        )

        stored = await repository.get(conversation_id)
        assert stored.class_id == "bio-2"
        assert stored.date == "2024-09-01"
        assert stored.time_slot == 4
        assert _roles(stored.messages) == [Role.SYSTEM]

    @pytest.mark.asyncio
    async def test_history_of_unknown_conversation_is_empty(self, make_service):
        service = make_service(FakeProvider("alpha"))
        assert await service.get_conversation_history("missing") == []

    @pytest.mark.asyncio
    async def test_delete_conversation(self, make_service):
        service = make_service(FakeProvider("alpha"))
        conversation_id = await service.create_conversation()
        assert await service.delete_conversation(conversation_id) is True
        assert await service.delete_conversation(conversation_id) is False


class TestSendWithTools:
    @pytest.mark.asyncio
    async def test_unknown_conversation_raises(self, make_service):
        service = make_service(FakeProvider("alpha"))
        with pytest.raises(ConversationNotFoundError) as exc_info:
            await service.send_message_with_tools("weather?", conversation_id="missing")
        assert exc_info.value.conversation_id == "missing"

    @pytest.mark.asyncio
    async def test_structured_tool_call_is_executed(self, make_service, repository):
        tool_response = Response(
            "alpha",
            "alpha-model-1",
            Message.assistant(""),
            tool_calls=[ToolCall("call_1", "get_weather", '{"city": "Paris"}')],
        )
        alpha = FakeProvider("alpha", outcomes=[tool_response])
        executor = AsyncMock()
        executor.execute = AsyncMock(return_value=ToolExecutionResult.ok("18C"))
        service = make_service(alpha, tool_executor=executor)
        tools = [{"name": "get_weather", "description": "Weather", "inputSchema": {}}]

        response = await service.send_message_with_tools("Weather in Paris?", tools=tools)

        executor.execute.assert_awaited_once_with("get_weather", {"city": "Paris"})
        assert "Tool: get_weather" in response.content
        assert "18C" in response.content
        assert alpha.calls[0].tools == tools
        stored = await repository.get(response.conversation_id)
        assert stored.messages[-1].content == response.content

    @pytest.mark.asyncio
    async def test_tool_definitions_come_from_executor(self, make_service):
        alpha = FakeProvider("alpha")
        executor = AsyncMock()
        executor.list_tools = AsyncMock(
            return_value=[{"name": "search", "description": "", "inputSchema": {}}]
        )
        service = make_service(alpha, tool_executor=executor)

        await service.send_message_with_tools("find cats")

        assert alpha.calls[0].tools == [{"name": "search", "description": "", "inputSchema": {}}]

    @pytest.mark.asyncio
    async def test_without_executor_tool_calls_are_left_alone(self, make_service):
        tool_response = Response(
            "alpha",
            "alpha-model-1",
            Message.assistant("calling"),
            tool_calls=[ToolCall("call_1", "get_weather", "{}")],
        )
        service = make_service(FakeProvider("alpha", outcomes=[tool_response]))

        response = await service.send_message_with_tools("weather?", tools=[])

        assert response.content == "calling"
        assert response.has_tool_calls

    @pytest.mark.asyncio
    async def test_tool_send_fails_over(self, make_service):
        alpha = FakeProvider("alpha", outcomes=[RuntimeError("boom")])
        beta = FakeProvider("beta")
        service = make_service(alpha, beta)
        await service.start()

        response = await service.send_message_with_tools("weather?", tools=[])

        assert response.provider_name == "beta"


class TestSendWithImage:
    @pytest.mark.asyncio
    async def test_routes_to_vision_provider_without_marking_failure(self, make_service):
        alpha = FakeProvider("alpha")
        seer = FakeProvider("seer", model=vision_model())
        service = make_service(alpha, seer)
        await service.start()

        response = await service.send_message_with_image("What is this?", b"\x89PNG")

        assert response.provider_name == "seer"
        assert alpha.calls == []
        assert service.failover.failure_records == {}
        assert service.active_provider is alpha

    @pytest.mark.asyncio
    async def test_no_vision_provider_raises(self, make_service):
        service = make_service(FakeProvider("alpha"), FakeProvider("beta"))
        await service.start()
        with pytest.raises(NoVisionProviderError):
            await service.send_message_with_image("What is this?", b"\x89PNG")

    @pytest.mark.asyncio
    async def test_backed_off_vision_provider_is_not_eligible(self, make_service):
        alpha = FakeProvider("alpha")
        seer = FakeProvider("seer", model=vision_model())
        service = make_service(alpha, seer)
        await service.start()
        service.failover.mark_failed(seer)

        with pytest.raises(NoVisionProviderError):
            await service.send_message_with_image("What is this?", b"\x89PNG")

    @pytest.mark.asyncio
    async def test_vision_failover_only_considers_vision_providers(self, make_service):
        seer = FakeProvider("seer", model=vision_model("seer-v"), outcomes=[RuntimeError("boom")])
        plain = FakeProvider("plain")
        oracle = FakeProvider("oracle", model=vision_model("oracle-v"))
        service = make_service(seer, plain, oracle)
        await service.start()

        response = await service.send_message_with_image("What is this?", b"\x89PNG")

        assert response.provider_name == "oracle"
        assert plain.calls == []


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_context_manager_starts_and_stops_refresh(self, clock):
        blocked = asyncio.Event()

        async def fake_sleep(seconds):
            await blocked.wait()

        config = AppConfig(model_refresh_enabled=True)
        service = LLMService(
            providers=[FakeProvider("alpha")], config=config, clock=clock, refresh_sleep=fake_sleep
        )

        async with service:
            assert service.refresh_scheduler.is_running
            assert service.registry.is_initialized(service.get_provider("alpha"))
        assert not service.refresh_scheduler.is_running

    @pytest.mark.asyncio
    async def test_refresh_models_for_provider(self, make_service):
        current = Model("alpha-1", max_context_length=1000)
        alpha = FakeProvider("alpha", model=current, catalog=[current, Model("alpha-2")])
        service = make_service(alpha)

        assert await service.refresh_models_for_provider("alpha") is True
        assert await service.refresh_models_for_provider("unknown") is False
        assert await service.refresh_models() is True
