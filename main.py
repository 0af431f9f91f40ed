from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from planchat.config import (
    build_registry,
    health_service,
    load_app_config,
    log_level,
    polling_policy,
)
from planchat.core.errors import ErrorClassifier, ErrorReport, ProviderError
from planchat.core.events import (
    AvailabilityChangedEvent,
    BackoffEvent,
    EarlyWarningEvent,
    ExhaustedEvent,
    PollerEvent,
    ProviderStatusEvent,
)
from planchat.core.poller import AvailabilityPoller, PollerPhase
from planchat.core.prompts import PromptManager
from planchat.core.router import ChatRouter
from planchat.core.session import PlanningSession, TurnFailedError
from planchat.providers.base import ModelInfo
from planchat.providers.health import ProviderStatus
from planchat.providers.registry import ProviderRegistry


# --------------------------------------------------------------------------------------
# Rendering
# --------------------------------------------------------------------------------------


def render_event(event: PollerEvent) -> str:
    """
    Turn a poller event into one line of terminal output.

    Every event type is handled here; an unknown type is a bug and
    raises TypeError instead of being silently dropped.
    """
    if isinstance(event, ProviderStatusEvent):
        state = "available" if event.available else "unavailable"
        return f"[status] {event.provider_id}: {state} (attempt {event.attempt_count})"
    if isinstance(event, AvailabilityChangedEvent):
        state = "is now available" if event.available else "became unavailable"
        return f"[availability] {event.provider_id} {state}"
    if isinstance(event, EarlyWarningEvent):
        return f"[warning] {event.message} ({' / '.join(event.actions)})"
    if isinstance(event, BackoffEvent):
        return (
            f"[backoff] {event.provider_id}: still unreachable after "
            f"{event.attempt_count} checks, now checking every {event.interval:g}s"
        )
    if isinstance(event, ExhaustedEvent):
        return f"[stopped] {event.message}"
    raise TypeError(f"Unhandled poller event: {type(event).__name__}")


def render_report(report: ErrorReport) -> str:
    lines = [f"Error ({report.kind.value}): {report.message}"]
    for index, action in enumerate(report.suggested_actions, start=1):
        lines.append(f"  {index}. {action.label}")
    return "\n".join(lines)


def render_models(models: List[ModelInfo], details: bool) -> str:
    if not models:
        return "No models found."
    lines = []
    for info in models:
        line = info.name + ("  (running)" if info.is_running else "")
        if details:
            extra = [
                value
                for value in (info.family, info.parameter_size, info.quantization_level)
                if value
            ]
            if info.size:
                extra.append(f"{info.size / 1e9:.1f} GB")
            if extra:
                line += "  [" + ", ".join(extra) + "]"
        lines.append(line)
    return "\n".join(lines)


def render_status(status: ProviderStatus) -> str:
    if status.available:
        text = "up"
    else:
        text = "down" + (f": {status.error}" if status.error else "")
    if status.response_time is not None:
        text += f" ({status.response_time * 1000:.0f} ms)"
    return text


def print_event(event: PollerEvent, verbose: bool = False) -> None:
    if isinstance(event, ProviderStatusEvent) and not verbose:
        return
    print(render_event(event))


# --------------------------------------------------------------------------------------
# Builders
# --------------------------------------------------------------------------------------


def build_components(
    cfg: Dict[str, Any], provider_id: Optional[str] = None
) -> tuple[ProviderRegistry, ErrorClassifier, AvailabilityPoller]:
    registry = build_registry(cfg)
    if provider_id:
        registry.set_active_provider(provider_id)

    def models_refreshed(refreshed_id: str, models: List[ModelInfo]) -> None:
        names = ", ".join(m.name for m in models) or "none"
        print(f"[models] {refreshed_id}: {names}")

    classifier = ErrorClassifier(registry, on_models_refreshed=models_refreshed)
    poller = AvailabilityPoller(
        registry,
        policy=polling_policy(cfg),
        on_models_refreshed=models_refreshed,
    )
    return registry, classifier, poller


# --------------------------------------------------------------------------------------
# Commands
# --------------------------------------------------------------------------------------


async def stream_reply(session: PlanningSession, text: str) -> bool:
    """Stream one turn to stdout. Returns False when the turn failed."""
    print("Assistant> ", end="", flush=True)
    try:
        async for chunk in session.stream(text):
            print(chunk.delta, end="", flush=True)
    except TurnFailedError as exc:
        print()
        print(render_report(exc.report))
        return False
    print()
    return True


async def run_ask(cfg: Dict[str, Any], args: argparse.Namespace) -> int:
    registry, classifier, _ = build_components(cfg, args.provider)
    session = PlanningSession(
        ChatRouter(registry),
        PromptManager(cfg.get("prompts")),
        classifier,
        model=args.model,
    )
    if args.no_stream:
        try:
            response = await session.send(args.question)
        except TurnFailedError as exc:
            print(render_report(exc.report))
            return 1
        print(response.content)
        return 0
    return 0 if await stream_reply(session, args.question) else 1


async def run_chat(cfg: Dict[str, Any], args: argparse.Namespace) -> int:
    """
    Interactive terminal chat.

    The availability poller runs alongside the conversation and prints
    its warnings. Commands:
      /exit, /quit     end the session
      /retry           resend the last failed message
      /switch <id>     make another provider active
      /recheck         restart availability checks
    """
    registry, classifier, poller = build_components(cfg, args.provider)
    session = PlanningSession(
        ChatRouter(registry),
        PromptManager(cfg.get("prompts")),
        classifier,
        model=args.model,
    )
    poller.add_listener(print_event)
    await poller.start()

    print("\n[Planning chat started]")
    print("Provider:", registry.active_provider_id)
    print("Type /exit or press Ctrl+C to end the session.\n")

    last_failed: Optional[str] = None
    try:
        while True:
            user_input = (await asyncio.to_thread(input, "You> ")).strip()
            if not user_input:
                continue
            command, _, argument = user_input.partition(" ")
            command = command.lower()

            if command in {"/exit", "/quit"}:
                print("Bye")
                break
            if command == "/retry":
                if last_failed is None:
                    print("Nothing to retry.")
                    continue
                user_input = last_failed
            elif command == "/switch":
                try:
                    registry.set_active_provider(argument.strip())
                except ProviderError as exc:
                    print(exc)
                    continue
                print("Provider:", registry.active_provider_id)
                await poller.recheck()
                continue
            elif command == "/recheck":
                await poller.recheck()
                continue

            last_failed = None if await stream_reply(session, user_input) else user_input
    except (KeyboardInterrupt, EOFError):
        print("\n[Session interrupted by user, exiting chat]")
    finally:
        await poller.stop()
    return 0


async def run_models(cfg: Dict[str, Any], args: argparse.Namespace) -> int:
    registry, _, _ = build_components(cfg, args.provider)
    provider = registry.get_active_provider()
    if provider is None:
        print("No provider enabled in config.")
        return 1
    if args.running:
        models = await provider.list_running_models()
    elif args.details:
        models = await provider.list_models_with_details()
    else:
        models = [ModelInfo(name=name) for name in await provider.list_models()]
    print(render_models(models, details=args.details or args.running))
    return 0


async def run_status(cfg: Dict[str, Any], args: argparse.Namespace) -> int:
    registry, _, poller = build_components(cfg, args.provider)
    poller.add_listener(lambda event: print_event(event, verbose=True))
    state = await poller.start()
    if state is None:
        print("No provider enabled in config.")
        return 1
    if args.watch:
        try:
            await poller.wait_stopped()
        finally:
            await poller.stop()
    else:
        await poller.stop()
    final = poller.state_for(registry.active_provider_id or "")
    return 0 if final.phase is PollerPhase.AVAILABLE else 1


async def run_providers(cfg: Dict[str, Any], args: argparse.Namespace) -> int:
    registry, _, _ = build_components(cfg)
    if not registry.list_providers():
        print("No provider enabled in config.")
        return 1
    health = health_service(cfg, registry) if args.check else None
    for provider_id in registry.list_providers():
        provider = registry.get_provider(provider_id)
        marker = "*" if provider_id == registry.active_provider_id else " "
        line = f"{marker} {provider_id:<12} {provider.name}"
        if health is not None:
            line += "  " + render_status(await health.get_provider_status(provider_id))
        print(line)
    if health is None:
        return 0

    best = await health.get_best_available_provider()
    if best is None:
        print("No provider is reachable.")
        return 1
    if best != registry.active_provider_id:
        print(f"Best available: {best} (use --provider {best} or set active_provider)")
    return 0


COMMANDS = {
    "ask": run_ask,
    "chat": run_chat,
    "models": run_models,
    "status": run_status,
    "providers": run_providers,
}


# --------------------------------------------------------------------------------------
# CLI
# --------------------------------------------------------------------------------------


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Planning chat over local and cloud LLM providers."
    )
    parser.add_argument(
        "--config",
        default="config.yaml",
        help="Path to config.yaml (default: ./config.yaml).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_provider_arg(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "--provider",
            help="Provider id to use instead of active_provider (e.g., ollama, openai).",
        )

    # ask: single planning question
    ask_parser = subparsers.add_parser("ask", help="Send a single planning question.")
    add_provider_arg(ask_parser)
    ask_parser.add_argument("--model", help="Model to request (defaults to the provider's).")
    ask_parser.add_argument(
        "--no-stream",
        action="store_true",
        help="Wait for the whole reply instead of streaming it.",
    )
    ask_parser.add_argument("question", help="Question to send.")

    # chat: interactive planning session
    chat_parser = subparsers.add_parser("chat", help="Interactive planning chat.")
    add_provider_arg(chat_parser)
    chat_parser.add_argument("--model", help="Model to request (defaults to the provider's).")

    # models: enumerate models of a provider
    models_parser = subparsers.add_parser("models", help="List a provider's models.")
    add_provider_arg(models_parser)
    models_parser.add_argument(
        "--details", action="store_true", help="Include size, family and running state."
    )
    models_parser.add_argument(
        "--running", action="store_true", help="Only models currently loaded in memory."
    )

    # status: availability check / watch
    status_parser = subparsers.add_parser("status", help="Check provider availability.")
    add_provider_arg(status_parser)
    status_parser.add_argument(
        "--watch",
        action="store_true",
        help="Keep polling until the provider is up or checks are exhausted.",
    )

    # providers: list configured providers
    providers_parser = subparsers.add_parser("providers", help="List enabled providers.")
    providers_parser.add_argument(
        "--check",
        action="store_true",
        help="Probe each provider and name the best reachable one.",
    )

    return parser.parse_args(argv)


# --------------------------------------------------------------------------------------
# main()
# --------------------------------------------------------------------------------------


def main() -> None:
    # Load environment variables from .env (if present)
    load_dotenv()

    args = parse_args(sys.argv[1:])

    try:
        config = load_app_config(args.config)
    except (FileNotFoundError, ValueError) as exc:
        raise SystemExit(str(exc))

    logging.basicConfig(
        level=log_level(config),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        code = asyncio.run(COMMANDS[args.command](config, args))
    except ProviderError as exc:
        raise SystemExit(str(exc))
    except KeyboardInterrupt:
        code = 130
    raise SystemExit(code)


if __name__ == "__main__":
    main()
