"""
Command-line interface for agentloop.
"""

import argparse
import asyncio
import logging
import sys

import structlog

from .config import get_settings

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer(colors=True),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def main() -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="agentloop",
        description="agentloop - streaming LLM sessions with tools and hooks",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    chat_parser = subparsers.add_parser("chat", help="Send one prompt and stream the answer")
    chat_parser.add_argument("prompt", help="Prompt to send")
    chat_parser.add_argument("--model", help="Model to use (default: DEFAULT_MODEL)")
    chat_parser.add_argument("--system", help="System prompt")
    chat_parser.add_argument("--max-turns", type=int, help="Stop after this many assistant turns")
    chat_parser.add_argument("--allow-shell", action="store_true", help="Give the model the run_command tool")

    resolve_parser = subparsers.add_parser("resolve", help="Show which provider serves a model")
    resolve_parser.add_argument("model", help="Model name")

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.add_argument("--check", action="store_true", help="Check configuration validity")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    settings = get_settings()
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level="DEBUG" if settings.debug else settings.log_level.upper(),
    )

    if args.command == "chat":
        try:
            code = asyncio.run(run_chat(args.prompt, args.model, args.system, args.max_turns, args.allow_shell))
        except KeyboardInterrupt:
            code = 130
        sys.exit(code)
    elif args.command == "resolve":
        resolve_model(args.model)
    elif args.command == "config":
        show_config(args.check)
    else:
        parser.print_help()


async def run_chat(
    prompt: str,
    model: str | None,
    system: str | None,
    max_turns: int | None,
    allow_shell: bool,
) -> int:
    """Run one prompt through a session, printing the answer as it streams."""
    from .errors import AgentLoopError
    from .llm.base import ModelConfig
    from .llm.factory import create_resolver
    from .session import SessionConfig, SessionManager
    from .tools import create_shell_tools

    settings = get_settings()
    resolver = create_resolver(settings)
    model = model or settings.default_model

    config = SessionConfig(
        model=ModelConfig(model=model, max_tokens=settings.max_tokens),
        system_prompt=system,
        tools=create_shell_tools() if allow_shell else [],
        max_turns=max_turns if max_turns is not None else settings.max_turns,
        compaction=settings.get_compaction_config(),
    )

    manager = SessionManager(resolver=resolver)
    try:
        session = await manager.create(config)
    except AgentLoopError as e:
        logger.error("Cannot start session", model=model, error=str(e))
        await resolver.aclose()
        return 1

    code = 0
    try:
        async for event in session.query(prompt):
            if event.type == "text":
                print(event.text, end="", flush=True)
            elif event.type == "tool_use":
                print(f"\n[tool] {event.tool_use.name} {event.tool_use.input}", file=sys.stderr)
            elif event.type == "tool_result":
                status = "error" if event.result.is_error else "ok"
                print(f"[tool] {event.tool_use.name} -> {status}", file=sys.stderr)
            elif event.type == "stop":
                print()
                logger.info(
                    "Done",
                    stop_reason=getattr(event.stop_reason, "value", event.stop_reason),
                    input_tokens=event.usage.input_tokens,
                    output_tokens=event.usage.output_tokens,
                )
            elif event.type == "error":
                print()
                logger.error("Session error", error=event.message)
                code = 1
    finally:
        await manager.close_all()
        await resolver.aclose()

    return code


def resolve_model(model: str) -> None:
    """Print the provider a model routes to."""
    from .llm.factory import create_resolver

    settings = get_settings()
    resolver = create_resolver(settings)

    provider_id = resolver.get_provider_id_for_model(model)
    provider = resolver.resolve_provider(model)

    print(f"Model:    {model}")
    print(f"Rule:     {provider_id or '(no matching pattern)'}")
    if provider is not None:
        print(f"Provider: {provider.id} ({provider.name})")
    else:
        print("Provider: (none available - set an API key for it)")

    asyncio.run(resolver.aclose())


def show_config(check: bool) -> None:
    """Show current configuration."""
    settings = get_settings()

    def mask(value: str) -> str:
        if not value:
            return "(not set)"
        return value[:4] + "..." + value[-4:] if len(value) > 10 else "****"

    print("\n=== agentloop Configuration ===\n")

    print("Application:")
    print(f"  Debug: {settings.debug}")
    print(f"  Log Level: {settings.log_level}")

    print("\nLLM Providers:")
    print(f"  Default: {settings.default_provider}")
    print(f"  Default Model: {settings.default_model}")
    print(f"  Anthropic Key: {mask(settings.anthropic_api_key)}")
    print(f"  OpenAI Key: {mask(settings.openai_api_key)}")
    print(f"  OpenAI API: {settings.openai_api}")
    print(f"  Gemini Key: {mask(settings.gemini_api_key)}")

    print("\nRequests:")
    print(f"  Max Tokens: {settings.max_tokens}")
    print(f"  Timeout: {settings.request_timeout}s")
    print(f"  Max Retries: {settings.max_retries}")

    print("\nSession:")
    print(f"  Max Turns: {settings.max_turns or '(unlimited)'}")
    print(f"  Compaction: {settings.compaction_enabled}")
    print(f"  Context Budget: {settings.max_context_tokens} tokens at {settings.compaction_threshold:.0%}")

    if check:
        print("\n=== Configuration Check ===\n")
        errors = []
        warnings = []

        configured = settings.configured_providers()
        if not configured:
            errors.append("At least one LLM API key is required")
        elif settings.default_provider not in configured:
            warnings.append(f"Default provider '{settings.default_provider}' has no API key set")

        if not 0 < settings.compaction_threshold <= 1:
            errors.append("COMPACTION_THRESHOLD must be in (0, 1]")

        if errors:
            print("Errors:")
            for e in errors:
                print(f"   - {e}")

        if warnings:
            print("Warnings:")
            for w in warnings:
                print(f"   - {w}")

        if not errors and not warnings:
            print("Configuration looks good!")
        elif not errors:
            print("\nConfiguration is valid (with warnings)")
        else:
            print("\nConfiguration has errors - fix them before starting")
            sys.exit(1)


if __name__ == "__main__":
    main()
