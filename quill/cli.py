"""Headless command line entry point."""

import asyncio
import os
from pathlib import Path

import typer

from quill import __version__
from quill.chat import ChatService
from quill.config import Config, set_config
from quill.instructions import InstructionLoader
from quill.llm import create_provider
from quill.logging import configure_logging, get_logger
from quill.orchestrator import GenerationOrchestrator
from quill.scheduler import Scheduler
from quill.search_augmentation import SearchAugmenter
from quill.store import SQLiteStore
from quill.tools import ContentFetcher, SearchClient, build_default_registry

log = get_logger(__name__)

app = typer.Typer(help="Quill - streaming assistant backend")


async def _ask(cfg: Config, prompt: str, web: bool, timezone: str | None) -> str:
    store = SQLiteStore(cfg.store.path)
    provider = create_provider(cfg.provider)
    search_client = SearchClient(cfg.tools.web_search)
    fetcher = ContentFetcher(cfg.tools.web_fetch)
    registry = build_default_registry(cfg.tools, search_client=search_client, fetcher=fetcher)
    instructions = InstructionLoader()
    scheduler = Scheduler()
    orchestrator = GenerationOrchestrator(
        store,
        provider,
        registry,
        cfg,
        augmenter=SearchAugmenter(search_client, fetcher, cfg.search, instructions),
        instructions=instructions,
    )
    chat = ChatService(store, scheduler, orchestrator, provider, cfg, instructions)

    try:
        conversation = await chat.create_conversation()
        sent = await chat.send_message(
            conversation.id, prompt, include_web_search=web, timezone=timezone
        )
        await scheduler.drain()
        message = await store.get_message(sent.assistant_message_id)
        return message.content if message else ""
    finally:
        await registry.close()
        await search_client.close()
        await fetcher.close()
        await provider.close()
        await store.close()


@app.command()
def ask(
    prompt: str = typer.Argument(..., help="Message to send"),
    web: bool = typer.Option(False, "--web", help="Force web search augmentation"),
    tz: str = typer.Option("", "--tz", help="IANA timezone for the system prompt"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Send one message in a new conversation and print the reply."""
    if verbose:
        os.environ["QUILL_LOGGING__LEVEL"] = "DEBUG"

    cfg = Config.from_yaml(Path(config)) if config else Config.load()
    set_config(cfg)
    configure_logging(cfg)

    try:
        reply = asyncio.run(_ask(cfg, prompt, web, tz or None))
    except KeyboardInterrupt:
        log.info("Shutting down...")
        raise typer.Exit(code=130)
    typer.echo(reply)


@app.command()
def version() -> None:
    """Show version information."""
    typer.echo(f"Quill v{__version__}")


if __name__ == "__main__":
    app()
