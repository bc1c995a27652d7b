import argparse
import asyncio
import sys
from contextlib import AsyncExitStack
from pathlib import Path

from .config import get_config
from .errors import ConversationNotFoundError, FatalOrchestrationError
from .history import JsonConversationRepository, StaticSystemPromptProvider
from .llm_service import LLMService
from .models import Message
from .providers import create_providers
from .runtime import init_runtime

HELP_TEXT = """Commands:
  /provider [name]        Show or switch the active provider
  /providers              List configured providers
  /new                    Start a new conversation
  /history                Show the current conversation
  /refresh [provider]     Refresh model catalogs
  /image <path> <message> Send a message with an image
  /tools <message>        Send a message with MCP tools enabled
  /exit                   Quit"""


def _print_chunk(text):
    print(text, end="", flush=True)


def _print_response(response):
    """Print the trailing status line for a finished response."""
    print()
    if response.is_degraded:
        print(f"[System: {response.error}]", flush=True)
    else:
        print(
            f"[{response.provider_name}/{response.model_name} "
            f"tokens={response.usage.total_tokens}]",
            flush=True,
        )


async def _handle_provider_command(service, args):
    if not args:
        active = service.active_provider
        print(f"Active provider: {active.name if active else '(none)'}")
        return
    if await service.set_active_provider(args):
        print(f"Active provider set to: {service.active_provider.name}")
    else:
        print(f"Error: unknown provider `{args}`.")


def _handle_providers_command(service):
    active = service.active_provider
    for provider in service.available_providers:
        marker = "*" if provider is active else " "
        key_state = "key" if provider.has_valid_api_key else "no key"
        backoff = ", backed off" if service.failover.is_backed_off(provider) else ""
        print(f"{marker} {provider.name} ({provider.model_name}, {key_state}{backoff})")


async def _handle_history_command(service, conversation_id):
    if conversation_id is None:
        print("No conversation yet.")
        return
    for message in await service.get_conversation_history(conversation_id):
        print(f"[{message.role}] {message.content}")


async def _handle_refresh_command(service, args):
    if args:
        ok = await service.refresh_models_for_provider(args)
        print("Models refreshed." if ok else f"Could not refresh models for `{args}`.")
    else:
        ok = await service.refresh_models()
        print("Models refreshed." if ok else "A model refresh is already running.")


async def _handle_image_command(service, args, conversation_id):
    parts = args.split(None, 1)
    if len(parts) < 2:
        print("Usage: /image <path> <message>")
        return conversation_id
    path, message = parts
    try:
        image_bytes = Path(path).expanduser().read_bytes()
    except OSError as e:
        print(f"Error: cannot read image: {e}")
        return conversation_id
    response = await service.send_message_with_image(
        message, image_bytes, conversation_id=conversation_id
    )
    print(response.content, end="")
    _print_response(response)
    return response.conversation_id


async def _handle_tools_command(service, args, conversation_id, tools_enabled):
    if not tools_enabled:
        print("Error: tools are not enabled (set LLM_MCP_ENABLED and MCP_SERVER_COMMAND).")
        return conversation_id
    if not args:
        print("Usage: /tools <message>")
        return conversation_id
    response = await service.send_message_with_tools_streaming(
        args, _print_chunk, conversation_id=conversation_id
    )
    _print_response(response)
    return response.conversation_id


async def _send_chat(service, prompt, conversation_id):
    history = []
    if conversation_id is not None:
        history = await service.get_conversation_history(conversation_id)
    history.append(Message.user(prompt))
    response = await service.send_messages_streaming(
        history, _print_chunk, conversation_id=conversation_id
    )
    _print_response(response)
    return response.conversation_id


async def repl(service, tools_enabled=False, read_line=None):
    """Interactive loop. Returns the last conversation id."""
    read_line = read_line or (lambda: asyncio.to_thread(input, "> "))
    conversation_id = None

    while True:
        try:
            prompt = (await read_line()).strip()
        except EOFError:
            break

        if not prompt:
            continue
        if prompt.lower() in ("exit", "quit"):
            break

        try:
            if prompt.startswith("/"):
                parts = prompt.split(None, 1)
                command = parts[0]
                args = parts[1].strip() if len(parts) > 1 else ""

                if command == "/exit":
                    break
                elif command == "/provider":
                    await _handle_provider_command(service, args)
                elif command == "/providers":
                    _handle_providers_command(service)
                elif command == "/new":
                    conversation_id = await service.create_conversation()
                    print(f"Started conversation {conversation_id}")
                elif command == "/history":
                    await _handle_history_command(service, conversation_id)
                elif command == "/refresh":
                    await _handle_refresh_command(service, args)
                elif command == "/image":
                    conversation_id = await _handle_image_command(service, args, conversation_id)
                elif command == "/tools":
                    conversation_id = await _handle_tools_command(
                        service, args, conversation_id, tools_enabled
                    )
                elif command == "/help":
                    print(HELP_TEXT)
                else:
                    print(f"Error: unknown command `{command}`. Type /help for commands.")
                continue

            conversation_id = await _send_chat(service, prompt, conversation_id)
        except (FatalOrchestrationError, ConversationNotFoundError) as e:
            print(f"\n[System: {e}]", flush=True)

    return conversation_id


async def _run(config):
    async with AsyncExitStack() as stack:
        tool_executor = None
        if config.mcp_enabled and config.mcp_server_command:
            from .mcp import McpToolExecutor

            tool_executor = await stack.enter_async_context(
                McpToolExecutor(
                    config.mcp_server_command,
                    config.mcp_server_args,
                    timeout=config.mcp_timeout_seconds,
                )
            )

        service = LLMService(
            providers=create_providers(config),
            conversation_repository=JsonConversationRepository(Path(config.conversation_dir)),
            system_prompt_provider=StaticSystemPromptProvider(config.default_system_prompt),
            tool_executor=tool_executor,
            config=config,
        )
        await stack.enter_async_context(service)
        print(HELP_TEXT)
        await repl(service, tools_enabled=tool_executor is not None)


def main(argv=None):
    """Console entry point"""
    parser = argparse.ArgumentParser(prog="llm-orchestrator", description="LLM orchestrator REPL")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")
    args = parser.parse_args(argv)

    init_runtime(args.log_level)
    try:
        asyncio.run(_run(get_config()))
    except KeyboardInterrupt:
        print()
    return 0


if __name__ == "__main__":
    sys.exit(main())
