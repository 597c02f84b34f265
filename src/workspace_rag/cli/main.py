"""CLI entry point for workspace-rag."""

from __future__ import annotations

import asyncio
import sys
import uuid
from pathlib import Path

from rich.console import Console
from rich.table import Table

from workspace_rag import __version__
from workspace_rag.agents import create_default_registry
from workspace_rag.config import ConfigLoader
from workspace_rag.config.models import EngineConfig
from workspace_rag.conversation import ConversationOrchestrator, TurnEventType
from workspace_rag.core import WorkspaceRagError, get_logger, setup_logging
from workspace_rag.llm import get_completion_provider
from workspace_rag.rag import RAGManager
from workspace_rag.rag.models import IndexStats

logger = get_logger("cli")

COMMANDS = ("index", "watch", "ask", "status")
KNOWN_FLAGS = ("-v", "--version", "-h", "--help", "--no-context", "--quiet", "-q")


def print_help() -> None:
    print(
        f"wrag {__version__} - ask questions about a source workspace\n"
        "\n"
        "Usage:\n"
        "  wrag index [ROOT]                 Scan and index the workspace once\n"
        "  wrag watch [ROOT]                 Index, then re-index on file changes\n"
        "  wrag ask [--no-context] QUESTION  Answer a question using the index\n"
        "  wrag status [ROOT]                Show index status\n"
        "\n"
        "Options:\n"
        "  -h, --help       Show this message\n"
        "  -v, --version    Show the version\n"
        "  -q, --quiet      Only print answers and errors\n"
        "  --no-context     Skip retrieval for 'ask'\n"
        "\n"
        "Environment:\n"
        "  WRAG_LOG_LEVEL   Console log level (default WARNING)\n"
        "  WRAG_BASE_URL    Ollama server URL\n"
        "  WRAG_CHAT_MODEL  Chat model name\n"
    )


def main() -> int:
    """Main entry point for the ``wrag`` command.

    Returns:
        Exit code (0 for success, 1 for error, 130 when interrupted).
    """
    args = sys.argv[1:]

    if "--version" in args or "-v" in args:
        print(f"wrag {__version__}")
        return 0

    if not args or "--help" in args or "-h" in args:
        print_help()
        return 0

    for arg in args:
        if arg.startswith("-") and arg not in KNOWN_FLAGS:
            print(f"Error: Unknown option '{arg}'", file=sys.stderr)
            print("Run 'wrag --help' for usage information", file=sys.stderr)
            return 1

    quiet = "-q" in args or "--quiet" in args
    no_context = "--no-context" in args
    positional = [a for a in args if not a.startswith("-")]
    command, rest = positional[0], positional[1:]

    if command not in COMMANDS:
        print(f"Error: Unknown command '{command}'", file=sys.stderr)
        print("Run 'wrag --help' for usage information", file=sys.stderr)
        return 1

    if command == "ask":
        if not rest:
            print("Error: 'ask' needs a question", file=sys.stderr)
            return 1
        root = Path.cwd()
        question = " ".join(rest)
    else:
        root = Path(rest[0]) if rest else Path.cwd()
        question = ""

    if not root.is_dir():
        print(f"Error: Not a directory: {root}", file=sys.stderr)
        return 1

    setup_logging()
    console = Console(stderr=quiet)

    try:
        config = ConfigLoader.for_workspace(root).load_all()
    except WorkspaceRagError as e:
        print(f"Error: Failed to load configuration: {e}", file=sys.stderr)
        print(
            "Hint: Check ~/.workspace_rag/settings.json or "
            ".workspace_rag/settings.json",
            file=sys.stderr,
        )
        return 1

    try:
        if command == "index":
            return asyncio.run(run_index(root, config, console))
        if command == "watch":
            return asyncio.run(run_watch(root, config, console))
        if command == "status":
            return asyncio.run(run_status(root, config, console))
        return asyncio.run(run_ask(root, config, question, no_context))
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130
    except WorkspaceRagError as e:
        logger.debug(f"{command} failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        logger.exception(f"{command} failed")
        print(f"Error: {e}", file=sys.stderr)
        print(
            "Hint: For debugging, run with WRAG_LOG_LEVEL=DEBUG environment variable",
            file=sys.stderr,
        )
        return 1


def render_stats(stats: IndexStats, console: Console) -> None:
    table = Table(title="Workspace index", show_header=False)
    table.add_column("Setting", style="bold")
    table.add_column("Value")
    for line in stats.to_display_string().splitlines():
        key, _, value = line.partition(":")
        table.add_row(key.strip(), value.strip())
    console.print(table)


async def run_index(root: Path, config: EngineConfig, console: Console) -> int:
    manager = RAGManager(root, config)
    try:
        with console.status("Indexing workspace..."):
            stats = await manager.index_workspace()
        render_stats(stats, console)
        return 1 if stats.failed_documents and not stats.total_documents else 0
    finally:
        await manager.close()


async def run_watch(root: Path, config: EngineConfig, console: Console) -> int:
    manager = RAGManager(root, config)
    try:
        stats = await manager.index_workspace()
        render_stats(stats, console)
        await manager.start_watching()
        console.print(f"[dim]Watching {root} for changes. Press Ctrl+C to stop.[/dim]")
        await asyncio.Event().wait()
    finally:
        await manager.stop_watching()
        await manager.close()
    return 0


async def run_status(root: Path, config: EngineConfig, console: Console) -> int:
    manager = RAGManager(root, config)
    try:
        await manager.initialize()
        render_stats(manager.get_status(), console)
    finally:
        await manager.close()
    return 0


async def run_ask(
    root: Path, config: EngineConfig, question: str, no_context: bool
) -> int:
    """Answer one question, streaming the reply to stdout."""
    manager = RAGManager(root, config)
    orchestrator: ConversationOrchestrator | None = None
    exit_code = 0
    try:
        await manager.initialize()
        orchestrator = ConversationOrchestrator(
            provider=get_completion_provider(config.provider),
            retriever=manager.retriever,
            config=config.conversation,
            agents=create_default_registry(root, config.agents),
            retrieval_k=config.retrieval.default_k,
        )
        async for event in orchestrator.submit_turn(
            str(uuid.uuid4()), question, context_free=no_context
        ):
            if event.type == TurnEventType.DELTA:
                sys.stdout.write(event.text)
                sys.stdout.flush()
            elif event.type == TurnEventType.DONE:
                sys.stdout.write("\n")
                for warning in event.warnings:
                    print(f"Warning: {warning}", file=sys.stderr)
            else:
                print(f"\nError [{event.error_code}]: {event.message}", file=sys.stderr)
                exit_code = 1
    finally:
        if orchestrator is not None:
            await orchestrator.close()
        await manager.close()
    return exit_code
