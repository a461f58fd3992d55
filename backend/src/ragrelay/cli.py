"""Typer CLI for serving, ingesting and asking."""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer

from .config import settings
from .models import Query
from .runtime import build_runtime

app = typer.Typer(help="CLI for the ragrelay backend")


@app.command()
def serve(
    port: int = typer.Option(settings.server.port, help="Port to listen on"),
    database_path: Path = typer.Option(settings.paths.database_path, help="Key-value database file"),
    llm_runner: str = typer.Option(settings.model.llm_runner_addr, help="LLM runner host:port"),
    index_addr: Optional[str] = typer.Option(settings.index.address, help="Vector index address"),
    embedder_path: Optional[Path] = typer.Option(settings.model.embedder_path, help="Local embedding model"),
) -> None:
    """Run the HTTP server."""

    import uvicorn

    settings.server.port = port
    settings.paths.database_path = database_path
    settings.model.llm_runner_addr = llm_runner
    settings.index.address = index_addr
    settings.model.embedder_path = embedder_path
    uvicorn.run("ragrelay.server:app", host=settings.server.host, port=port)


@app.command()
def ingest(path: Path, document_id: Optional[str] = None) -> None:
    """Store and index a text file."""

    async def run() -> None:
        runtime = build_runtime(settings)
        try:
            result = await runtime.ingestion.ingest(document_id or path.stem, path.read_text(encoding="utf-8"))
        finally:
            await runtime.aclose()
        typer.echo(
            f"Stored {result.document.document_id} revision {result.document.revision} "
            f"({len(result.spans)} chunks, indexed={result.indexed})"
        )

    asyncio.run(run())


@app.command()
def ask(question: str) -> None:
    """Stream an answer to stdout."""

    async def run() -> None:
        runtime = build_runtime(settings)
        try:
            stream = runtime.orchestrator.handle(Query(text=question))
            async for token in stream:
                typer.echo(token.text, nl=False)
            typer.echo()
            if stream.degraded:
                typer.echo(f"(answered without context: {'; '.join(stream.degraded)})", err=True)
        finally:
            await runtime.aclose()

    asyncio.run(run())


if __name__ == "__main__":
    app()
