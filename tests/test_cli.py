from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from fakes import FakeProvider, scripted_input, vision_model

import llm_orchestrator.cli as cli
from llm_orchestrator.config import AppConfig
from llm_orchestrator.llm_service import DEGRADED_MESSAGE
from llm_orchestrator.models import Model


@pytest.mark.asyncio
async def test_repl_exit_commands(make_service):
    """REPL should stop on 'exit', 'quit' and '/exit' without sending anything"""
    provider = FakeProvider("alpha")
    service = make_service(provider)

    for command in ("exit", "quit", "/exit", "EXIT"):
        assert await cli.repl(service, read_line=scripted_input([command])) is None

    assert provider.calls == []


@pytest.mark.asyncio
async def test_repl_stops_at_end_of_input(make_service):
    service = make_service(FakeProvider("alpha"))
    conversation_id = await cli.repl(service, read_line=scripted_input(["hello"]))
    assert conversation_id is not None


@pytest.mark.asyncio
async def test_chat_streams_reply_and_keeps_conversation(make_service, capsys):
    provider = FakeProvider("alpha", outcomes=[["Hel", "lo"], "again"])
    service = make_service(provider)

    conversation_id = await cli.repl(
        service, read_line=scripted_input(["hello", "", "second", "/history", "exit"])
    )

    out = capsys.readouterr().out
    assert "Hello\n[alpha/alpha-model-1 tokens=" in out
    assert "[user] hello" in out
    assert "[assistant] Hello" in out
    assert "[user] second" in out
    assert "[assistant] again" in out
    # The second turn carries the first one
    assert [m.content for m in provider.calls[1].messages][-3:] == ["hello", "Hello", "second"]
    history = await service.get_conversation_history(conversation_id)
    assert len(history) == 5


@pytest.mark.asyncio
async def test_history_before_any_message(make_service, capsys):
    service = make_service(FakeProvider("alpha"))
    await cli.repl(service, read_line=scripted_input(["/history"]))
    assert "No conversation yet." in capsys.readouterr().out


@pytest.mark.asyncio
async def test_new_command_starts_conversation(make_service, capsys):
    service = make_service(FakeProvider("alpha"))

    conversation_id = await cli.repl(service, read_line=scripted_input(["/new"]))

    assert f"Started conversation {conversation_id}" in capsys.readouterr().out
    history = await service.get_conversation_history(conversation_id)
    assert [m.role for m in history] == ["system"]


@pytest.mark.asyncio
async def test_provider_command(make_service, capsys):
    service = make_service(FakeProvider("alpha"), FakeProvider("beta"))

    await cli.repl(
        service,
        read_line=scripted_input(["/provider", "/provider BETA", "/provider gamma", "hi"]),
    )

    out = capsys.readouterr().out
    assert "Active provider: alpha" in out
    assert "Active provider set to: beta" in out
    assert "Error: unknown provider `gamma`." in out
    assert "[beta/beta-model-1 tokens=" in out


@pytest.mark.asyncio
async def test_providers_command_lists_state(make_service, capsys):
    service = make_service(FakeProvider("alpha"), FakeProvider("beta", api_key=None))
    await service.start()

    await cli.repl(service, read_line=scripted_input(["/providers"]))

    out = capsys.readouterr().out
    assert "* alpha (alpha-model-1, key)" in out
    assert "  beta (beta-model-1, no key)" in out


@pytest.mark.asyncio
async def test_providers_command_shows_backoff(make_service, capsys):
    alpha = FakeProvider("alpha")
    service = make_service(alpha, FakeProvider("beta"))
    await service.start()
    service.failover.mark_failed(alpha)

    await cli.repl(service, read_line=scripted_input(["/providers"]))

    assert "alpha (alpha-model-1, key, backed off)" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_help_and_unknown_command(make_service, capsys):
    service = make_service(FakeProvider("alpha"))

    await cli.repl(service, read_line=scripted_input(["/help", "/bogus"]))

    out = capsys.readouterr().out
    assert cli.HELP_TEXT in out
    assert "Error: unknown command `/bogus`. Type /help for commands." in out


@pytest.mark.asyncio
async def test_refresh_command(make_service, capsys):
    current = Model("alpha-model-1", max_context_length=100000, supports_tool_calls=True)
    provider = FakeProvider("alpha", model=current, catalog=[current])
    service = make_service(provider)

    await cli.repl(service, read_line=scripted_input(["/refresh", "/refresh nope"]))

    out = capsys.readouterr().out
    assert "Models refreshed." in out
    assert "Could not refresh models for `nope`." in out
    assert provider.fetch_count == 1


@pytest.mark.asyncio
async def test_tools_command_requires_tools(make_service, capsys):
    service = make_service(FakeProvider("alpha"))

    await cli.repl(service, read_line=scripted_input(["/tools what time is it?"]))

    out = capsys.readouterr().out
    assert "Error: tools are not enabled (set LLM_MCP_ENABLED and MCP_SERVER_COMMAND)." in out


@pytest.mark.asyncio
async def test_tools_command(make_service, capsys):
    provider = FakeProvider("alpha", outcomes=["It is noon"])
    executor = AsyncMock()
    executor.list_tools = AsyncMock(return_value=[{"name": "get_time"}])
    service = make_service(provider, tool_executor=executor)

    await cli.repl(
        service,
        tools_enabled=True,
        read_line=scripted_input(["/tools", "/tools what time is it?"]),
    )

    out = capsys.readouterr().out
    assert "Usage: /tools <message>" in out
    assert "It is noon" in out
    assert provider.calls[0].method == "send_with_tools_streaming"
    assert provider.calls[0].tools == [{"name": "get_time"}]


@pytest.mark.asyncio
async def test_image_command_errors(make_service, capsys, tmp_path):
    service = make_service(FakeProvider("alpha", model=vision_model()))
    missing = tmp_path / "missing.png"

    await cli.repl(
        service,
        read_line=scripted_input(["/image only-a-path", f"/image {missing} describe"]),
    )

    out = capsys.readouterr().out
    assert "Usage: /image <path> <message>" in out
    assert "Error: cannot read image:" in out


@pytest.mark.asyncio
async def test_image_command(make_service, capsys, tmp_path):
    provider = FakeProvider("alpha", model=vision_model(), outcomes=["A cat"])
    service = make_service(provider)
    image = tmp_path / "cat.png"
    image.write_bytes(b"\x89PNG\r\n\x1a\n")

    conversation_id = await cli.repl(
        service, read_line=scripted_input([f"/image {image} What is this?"])
    )

    assert "A cat" in capsys.readouterr().out
    assert provider.calls[0].method == "send_with_image"
    assert provider.calls[0].messages[0].content == "What is this?"
    assert conversation_id is not None


@pytest.mark.asyncio
async def test_image_without_vision_provider_reports_error(make_service, capsys, tmp_path):
    service = make_service(FakeProvider("alpha"))
    image = tmp_path / "cat.png"
    image.write_bytes(b"\x89PNG\r\n\x1a\n")

    await cli.repl(service, read_line=scripted_input([f"/image {image} What is this?"]))

    assert "[System: " in capsys.readouterr().out


@pytest.mark.asyncio
async def test_degraded_reply_prints_apology_and_error(make_service, capsys):
    alpha = FakeProvider("alpha", outcomes=[RuntimeError("alpha down")])
    beta = FakeProvider("beta", outcomes=[RuntimeError("beta down")])
    service = make_service(alpha, beta)
    await service.start()

    await cli.repl(service, read_line=scripted_input(["hello"]))

    out = capsys.readouterr().out
    assert DEGRADED_MESSAGE + "\n[System: beta down]" in out


@pytest.mark.asyncio
async def test_no_provider_configured(make_service, capsys):
    service = make_service()

    await cli.repl(service, read_line=scripted_input(["hello", "/provider"]))

    out = capsys.readouterr().out
    assert "[System: " in out
    assert "Active provider: (none)" in out


@pytest.mark.asyncio
async def test_run_builds_service_from_config(tmp_path, capsys):
    config = AppConfig(
        provider_order=["gemini", "unknown"],
        model_refresh_enabled=False,
        conversation_dir=str(tmp_path),
    )

    with patch.object(cli, "repl", new=AsyncMock()) as mock_repl:
        await cli._run(config)

    service = mock_repl.await_args.args[0]
    assert [p.name for p in service.available_providers] == ["gemini"]
    assert mock_repl.await_args.kwargs == {"tools_enabled": False}
    assert cli.HELP_TEXT in capsys.readouterr().out


def test_main_initializes_runtime_and_runs():
    with (
        patch.object(cli, "init_runtime") as mock_init,
        patch.object(cli, "get_config") as mock_get_config,
        patch.object(cli, "_run", new_callable=MagicMock) as mock_run,
        patch("llm_orchestrator.cli.asyncio.run") as mock_asyncio_run,
    ):
        assert cli.main(["--log-level", "DEBUG"]) == 0

    mock_init.assert_called_once_with("DEBUG")
    mock_run.assert_called_once_with(mock_get_config.return_value)
    mock_asyncio_run.assert_called_once_with(mock_run.return_value)


def test_main_handles_keyboard_interrupt():
    with (
        patch.object(cli, "init_runtime") as mock_init,
        patch.object(cli, "get_config"),
        patch.object(cli, "_run"),
        patch("llm_orchestrator.cli.asyncio.run", side_effect=KeyboardInterrupt),
    ):
        assert cli.main([]) == 0

    mock_init.assert_called_once_with("WARNING")
