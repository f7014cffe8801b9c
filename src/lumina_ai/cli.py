"""Command-line entry point for exercising the AI core outside the editor."""

from __future__ import annotations

import asyncio
import base64
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from lumina_ai import __version__
from lumina_ai.chat.orchestrator import ChatOrchestrator
from lumina_ai.config import AIConfig, load_config
from lumina_ai.embeddings.correlator import ProcessWorkerChannel, TaskCorrelator
from lumina_ai.embeddings.search import Note, VaultIndex
from lumina_ai.errors import AIError
from lumina_ai.events.bus import EventBus
from lumina_ai.images.service import extract_image_prompt, generate_image_with_retry
from lumina_ai.llm.registry import available_providers
from lumina_ai.types import AIEvent, ContextSnippet, EventType

console = Console()


def _load(config_path: str | None, provider: str | None) -> AIConfig:
    config = load_config(config_path)
    if provider:
        config.provider = provider
    return config


@click.group()
@click.version_option(__version__, prog_name="lumina")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def main(verbose: bool) -> None:
    """Lumina AI core tools."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
def providers() -> None:
    """List supported chat providers."""
    table = Table(title="Chat providers")
    table.add_column("id", style="cyan")
    table.add_column("name")
    for pid, name in available_providers():
        table.add_row(pid, name)
    console.print(table)


@main.command()
@click.argument("message")
@click.option("-c", "--config", "config_path", default=None, help="Path to config YAML.")
@click.option("-p", "--provider", default=None, help="Override the active provider.")
@click.option("-m", "--model", default=None, help="Override the model.")
@click.option(
    "--context", "context_files", multiple=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Attach a note as an open document (repeatable).",
)
def chat(
    message: str,
    config_path: str | None,
    provider: str | None,
    model: str | None,
    context_files: tuple[Path, ...],
) -> None:
    """Send MESSAGE and stream the reply."""
    config = _load(config_path, provider)
    docs = [
        ContextSnippet(title=p.name, content=p.read_text(encoding="utf-8", errors="replace"))
        for p in context_files
    ]

    bus = EventBus()

    def on_token(event: AIEvent) -> None:
        console.print(event.data.get("token", ""), end="", highlight=False, markup=False)

    bus.subscribe(EventType.CHAT_STREAMING, on_token)
    orchestrator = ChatOrchestrator(config, event_bus=bus)

    async def run() -> None:
        task = asyncio.create_task(orchestrator.send(message, open_documents=docs, model=model))
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            orchestrator.cancel()
            await task

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled[/yellow]")
    console.print()
    if orchestrator.error:
        console.print(f"[red]{orchestrator.error}[/red]")
        raise SystemExit(1)


@main.command()
@click.argument("prompt")
@click.option("-c", "--config", "config_path", default=None, help="Path to config YAML.")
@click.option(
    "-o", "--output", type=click.Path(dir_okay=False, path_type=Path),
    default=Path("image.png"), show_default=True,
)
def image(prompt: str, config_path: str | None, output: Path) -> None:
    """Generate an image for PROMPT and save it."""
    image_cfg = load_config(config_path).image
    with console.status("Generating image..."):
        try:
            result = asyncio.run(generate_image_with_retry(
                extract_image_prompt(prompt),
                api_key=image_cfg.api_key or None,
                timeout=image_cfg.timeout,
                max_retries=image_cfg.max_retries,
                backoff_base=image_cfg.backoff_base,
            ))
        except AIError as e:
            console.print(f"[red]{e.user_message}[/red]")
            raise SystemExit(1)
    encoded = result.image_url.split(",", 1)[1]
    output.write_bytes(base64.b64decode(encoded))
    console.print(f"[green]Saved {output}[/green]")


@main.command()
@click.argument("query")
@click.argument("notes_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("-t", "--threshold", default=0.5, show_default=True, type=float)
def search(query: str, notes_dir: Path, threshold: float) -> None:
    """Semantic search over the markdown notes in NOTES_DIR."""
    notes = [
        Note(id=str(p.relative_to(notes_dir)), title=p.stem,
             content=p.read_text(encoding="utf-8", errors="replace"))
        for p in sorted(notes_dir.rglob("*.md"))
    ]

    bus = EventBus()

    def on_model(event: AIEvent) -> None:
        if event.type is EventType.MODEL_READY:
            console.print("[dim]Embedding model loaded.[/dim]")
        elif event.type is EventType.MODEL_ERROR:
            console.print(f"[red]Embedding model error: {event.data.get('error')}[/red]")

    bus.on_model(on_model)

    async def run() -> list[tuple[str, float]]:
        correlator = TaskCorrelator(ProcessWorkerChannel(), event_bus=bus)
        correlator.start()
        try:
            index = VaultIndex(correlator.request_embedding)
            with console.status(f"Indexing {len(notes)} notes..."):
                await index.index_notes(notes)
            return await index.search(query, threshold)
        finally:
            await correlator.close()

    results = asyncio.run(run())
    if not results:
        console.print("[dim]No matches.[/dim]")
        return
    table = Table(title=f"Matches for {query!r}")
    table.add_column("note", style="cyan")
    table.add_column("score", justify="right")
    for note_id, score in results:
        table.add_row(note_id, f"{score:.3f}")
    console.print(table)


if __name__ == "__main__":
    main()
