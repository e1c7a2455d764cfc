"""Terminal harness for the conversation engine.

Reads lines from stdin; slash commands drive branching and loading, any
other line is sent as a chat message and the reply is streamed to stdout.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import TYPE_CHECKING

from src.backend.conversations import ConversationsClient
from src.backend.generation import GenerationClient
from src.chat.engine import ConversationEngine
from src.config import settings
from src.storage.conversations import ConversationStore

if TYPE_CHECKING:
    from collections.abc import Callable

    from src.chat.persistence import ConversationBackend

logger = logging.getLogger(__name__)

HELP = (
    "Commands: /fork N, /switch ID, /branches, /regen, /load ID, /list, "
    "/clear, /quit. Anything else is sent as a message."
)


def configure_logging() -> None:
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )


def build_backend() -> ConversationBackend:
    """Pick the persistence backend named in settings."""
    if settings.persistence_backend == "sqlite":
        return ConversationStore.get()
    return ConversationsClient()


def parse_command(line: str) -> tuple[str, str] | None:
    """Split ``/name arg`` into ``("name", "arg")``; None for plain messages."""
    line = line.strip()
    if not line.startswith("/"):
        return None
    name, _, arg = line[1:].partition(" ")
    return name.lower(), arg.strip()


class StreamPrinter:
    """Echoes the growing assistant draft to an output callable."""

    def __init__(self, engine: ConversationEngine, write: Callable[[str], None]) -> None:
        self._engine = engine
        self._write = write
        self._printed = 0
        self._message_id: str | None = None

    def __call__(self) -> None:
        if not self._engine.is_loading:
            return
        messages = self._engine.messages
        if not messages or messages[-1].role != "assistant":
            return
        last = messages[-1]
        if last.id != self._message_id:
            self._message_id = last.id
            self._printed = 0
        if len(last.content) > self._printed:
            self._write(last.content[self._printed :])
            self._printed = len(last.content)


async def handle_command(engine: ConversationEngine, name: str, arg: str) -> str | None:
    """Run one slash command. Returns text to show, or None to quit."""
    if name == "quit":
        return None
    if name == "fork":
        if not arg.lstrip("-").isdigit():
            return "Usage: /fork N"
        branch = engine.fork_from_message(int(arg))
        return f"Now on {branch.name} ({branch.id})" if branch else "Cannot fork there."
    if name == "switch":
        return "Switched." if engine.switch_branch(arg) else f"No branch '{arg}'."
    if name == "branches":
        return "\n".join(
            f"{'*' if b.id == engine.current_branch_id else ' '} {b.id} {b.name}"
            for b in engine.branches
        )
    if name == "regen":
        if not engine.can_regenerate:
            return "Nothing to regenerate."
        await engine.regenerate_last_message()
        return ""
    if name == "load":
        await engine.load_conversation(arg)
        return "\n".join(f"{m.role}: {m.content}" for m in engine.messages)
    if name == "list":
        backend = engine.backend
        if not isinstance(backend, ConversationStore):
            return "Listing is only available with the sqlite backend."
        return "\n".join(await backend.list_ids()) or "No conversations."
    if name == "clear":
        engine.clear_messages()
        return "Started a new conversation."
    return HELP


async def run(mode: str) -> None:
    """Interactive loop until /quit or EOF."""

    def on_error(exc: Exception) -> None:
        print(f"\n[error] {exc}")

    def on_created(conversation_id: str) -> None:
        logger.info("Conversation saved as %s", conversation_id)

    def on_auth_expired() -> None:
        print("\n[session expired] Set API_TOKEN and restart.")

    generation = GenerationClient()
    backend = build_backend()
    engine = ConversationEngine(
        mode,
        generation=generation,
        backend=backend,
        on_error=on_error,
        on_conversation_created=on_created,
        on_auth_expired=on_auth_expired,
    )
    engine.subscribe(StreamPrinter(engine, lambda s: print(s, end="", flush=True)))
    print(HELP)
    try:
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                break
            command = parse_command(line)
            if command is None:
                if line.strip():
                    await engine.send_message(line.rstrip("\n"))
                    print()
                continue
            output = await handle_command(engine, *command)
            if output is None:
                break
            if output:
                print(output)
        await engine.save_coordinator.settle()
    finally:
        engine.close()
        await generation.aclose()
        if isinstance(backend, ConversationsClient):
            await backend.aclose()


def main() -> None:
    """Start the terminal harness."""
    parser = argparse.ArgumentParser(description="Chat with the tutoring backend.")
    parser.add_argument("--mode", default=settings.default_mode)
    args = parser.parse_args()

    configure_logging()
    logger.info("Starting chat (mode=%s, backend=%s)", args.mode, settings.persistence_backend)
    asyncio.run(run(args.mode))


if __name__ == "__main__":
    main()
