"""Command line interface for Mentat."""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import typer
from rich.console import Console
from rich.table import Table

from mentat.config import AppConfig
from mentat.daemon.client import send_request
from mentat.daemon.server import build_and_persist, load_or_build, run_daemon
from mentat.embedding.encoder import EmbeddingConfig, create_embedder
from mentat.errors import MentatError, ProtocolError
from mentat.index.hnsw import remove_artifacts
from mentat.index.indexer import Indexer
from mentat.index.search import Searcher
from mentat.index.storage import SQLiteStore
from mentat.ingestion.manifest import MANIFEST_FILENAME, build_manifest, write_manifest

console = Console()
err_console = Console(stderr=True)
app = typer.Typer(help="Mentat - local incremental semantic index for a file tree")

_DEFAULTS = AppConfig()


def _setup_logging(verbose: bool, log_file: Optional[Path] = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logging.getLogger().addHandler(handler)


@contextmanager
def _exit_on_error() -> Iterator[None]:
    """Report Mentat failures on stderr and exit with their code."""
    try:
        yield
    except MentatError as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=exc.exit_code) from exc


def _make_config(index_dir: Optional[Path], backend: str, model: str, **overrides) -> AppConfig:
    config = AppConfig(
        index_dir=index_dir if index_dir is not None else _DEFAULTS.index_dir,
        embedding_backend=backend,
        model_name=model,
        **overrides,
    )
    config.index_dir = config.resolve_index_dir(Path.cwd())
    return config


def _embedder_for(config: AppConfig):
    return create_embedder(
        EmbeddingConfig(backend=config.embedding_backend, model_name=config.model_name)
    )


def _require_db(config: AppConfig) -> None:
    if not config.db_path.exists():
        raise typer.BadParameter(f"Index not found: {config.db_path}")


IndexDirOption = typer.Option(None, "--index-dir", help="Directory holding the store and HNSW files")
BackendOption = typer.Option(
    _DEFAULTS.embedding_backend, "--backend", help="Embedding provider: pseudo or sentence-transformers"
)
ModelOption = typer.Option(_DEFAULTS.model_name, "--model", help="Sentence-transformer model name")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Verbose logging")


@app.command()
def ingest(
    path: Path = typer.Argument(Path("."), help="Root directory to enumerate", resolve_path=True),
    out: Path = typer.Option(Path(MANIFEST_FILENAME), "--out", help="Manifest output path"),
    index_dir: Optional[Path] = IndexDirOption,
    verbose: bool = VerboseOption,
) -> None:
    """List files with their content hashes into a JSON manifest."""
    _setup_logging(verbose)
    config = _make_config(index_dir, _DEFAULTS.embedding_backend, _DEFAULTS.model_name)
    with _exit_on_error():
        entries = build_manifest(path, exclude=[config.index_dir])
        write_manifest(entries, out)
    console.print(f"Ingested {len(entries)} files")


@app.command()
def index(
    path: Path = typer.Argument(Path("."), help="Root directory to index", resolve_path=True),
    index_dir: Optional[Path] = IndexDirOption,
    backend: str = BackendOption,
    model: str = ModelOption,
    chunk_bytes: int = typer.Option(_DEFAULTS.target_bytes, help="Target span size in bytes"),
    keep_going: bool = typer.Option(False, "--keep-going", help="Skip failing files instead of aborting"),
    verbose: bool = VerboseOption,
) -> None:
    """Chunk, embed and store every changed file under PATH."""
    _setup_logging(verbose)
    config = _make_config(index_dir, backend, model, target_bytes=chunk_bytes)

    with _exit_on_error():
        embedder = _embedder_for(config)
        with SQLiteStore(config.db_path) as store:
            indexer = Indexer(
                embedder,
                store,
                target_bytes=config.target_bytes,
                overlap_fraction=config.overlap_fraction,
                continue_on_error=keep_going,
                exclude=[config.index_dir],
            )
            console.print(f"Indexing into [bold]{config.db_path}[/bold]...")
            stats = indexer.index([path])

    console.print(
        f"Indexed: {stats.indexed}, skipped: {stats.skipped}, empty: {stats.empty}, "
        f"failed: {stats.failed}, chunks: {stats.chunks}"
    )


@app.command()
def search(
    query: str = typer.Argument(..., help="Query text"),
    index_dir: Optional[Path] = IndexDirOption,
    backend: str = BackendOption,
    model: str = ModelOption,
    top_k: int = typer.Option(5, "--top-k", help="Number of results to display"),
    verbose: bool = VerboseOption,
) -> None:
    """Exact (brute-force) search over every stored vector."""
    _setup_logging(verbose)
    config = _make_config(index_dir, backend, model)
    _require_db(config)

    with _exit_on_error():
        embedder = _embedder_for(config)
        with SQLiteStore(config.db_path) as store:
            results = Searcher(embedder, store).search(query, top_k=top_k)

    if not results:
        console.print("[yellow]No matches found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Score")
    table.add_column("File")
    table.add_column("Bytes")
    for result in results:
        table.add_row(f"{result.score:.4f}", str(result.path), f"{result.start}-{result.end}")
    console.print(table)


@app.command("build-hnsw")
def build_hnsw(
    index_dir: Optional[Path] = IndexDirOption,
    verbose: bool = VerboseOption,
) -> None:
    """Build the HNSW index from stored embeddings and persist it."""
    _setup_logging(verbose)
    config = _make_config(index_dir, _DEFAULTS.embedding_backend, _DEFAULTS.model_name)
    _require_db(config)
    with _exit_on_error():
        vector_index = build_and_persist(config)
    console.print(f"Saved HNSW index with {vector_index.count} vectors to {config.hnsw_path}")


@app.command("search-hnsw")
def search_hnsw(
    query: str = typer.Argument(..., help="Query text"),
    index_dir: Optional[Path] = IndexDirOption,
    backend: str = BackendOption,
    model: str = ModelOption,
    top_k: int = typer.Option(5, "--top-k", help="Number of results to display"),
    verbose: bool = VerboseOption,
) -> None:
    """Search through the persisted HNSW index, building it first if absent."""
    _setup_logging(verbose)
    config = _make_config(index_dir, backend, model)
    _require_db(config)

    with _exit_on_error():
        embedder = _embedder_for(config)
        vector_index = load_or_build(config)
        hits = vector_index.search(query, top_k, embedder)
        with SQLiteStore(config.db_path) as store:
            rows = [
                (internal_id, distance, store.describe_chunk(vector_index.chunk_id_for(internal_id)))
                for internal_id, distance in hits
            ]

    console.print(f'HNSW results for: "{query}"')
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Distance")
    table.add_column("Id")
    table.add_column("File")
    table.add_column("Bytes")
    for internal_id, distance, location in rows:
        location = location or {}
        table.add_row(
            f"{distance:.4f}",
            str(internal_id),
            str(location.get("path")),
            f"{location.get('start')}-{location.get('end')}",
        )
    console.print(table)


@app.command()
def query(
    text: str = typer.Argument("", help="Query text"),
    top_k: int = typer.Option(5, "--top-k", help="Number of results"),
    host: str = typer.Option(_DEFAULTS.host, help="Daemon host"),
    port: int = typer.Option(_DEFAULTS.port, help="Daemon port"),
    ping: bool = typer.Option(False, "--ping", help="Only check that the daemon answers"),
    embed: bool = typer.Option(False, "--embed", help="Return the embedding of TEXT"),
    rebuild: bool = typer.Option(False, "--rebuild", help="Ask the daemon to rebuild its index"),
) -> None:
    """Send a request to the running daemon."""
    if ping:
        payload = {"cmd": "ping"}
    elif rebuild:
        payload = {"cmd": "rebuild"}
    elif embed:
        payload = {"cmd": "embed", "text": text}
    else:
        payload = {"cmd": "search", "query": text, "topk": top_k}

    with _exit_on_error():
        response = send_request(payload, host=host, port=port)
        if "error" in response:
            raise ProtocolError(response["error"])

    if "results" in response:
        for internal_id, score in response["results"]:
            console.print(f"{score:6.3f}  id[{internal_id}]")
    elif "embedding" in response:
        console.print(f"embedding[{len(response['embedding'])}]: {response['embedding'][:8]} ...")
    elif "count" in response:
        console.print(f"Rebuilt index with {response['count']} vectors")
    else:
        console.print("ok")


@app.command()
def serve(
    index_dir: Optional[Path] = IndexDirOption,
    backend: str = BackendOption,
    model: str = ModelOption,
    host: str = typer.Option(_DEFAULTS.host, help="Host interface"),
    port: int = typer.Option(_DEFAULTS.port, help="Server port"),
    workers: int = typer.Option(_DEFAULTS.workers, help="Worker threads for blocking work"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Also log to this file"),
    verbose: bool = VerboseOption,
) -> None:
    """Run the search daemon until SIGINT/SIGTERM."""
    _setup_logging(verbose, log_file)
    config = _make_config(index_dir, backend, model, host=host, port=port, workers=workers)
    _require_db(config)
    console.print(f"Starting daemon on {host}:{port} (index: {config.index_dir})")
    with _exit_on_error():
        embedder = _embedder_for(config)
        try:
            asyncio.run(run_daemon(config, embedder))
        except OSError as exc:
            raise ProtocolError(f"Unable to listen on {host}:{port}: {exc}") from exc


@app.command()
def prune(
    index_dir: Optional[Path] = IndexDirOption,
    verbose: bool = VerboseOption,
) -> None:
    """Remove rows for deleted or superseded files and their orphaned spans."""
    _setup_logging(verbose)
    config = _make_config(index_dir, _DEFAULTS.embedding_backend, _DEFAULTS.model_name)
    if not config.db_path.exists():
        console.print("[yellow]Index not found, nothing to prune.[/yellow]")
        return
    with _exit_on_error():
        with SQLiteStore(config.db_path) as store:
            removed = store.remove_orphans()
        if any(removed.values()):
            remove_artifacts(config.hnsw_path)
    console.print(
        f"Removed {removed['files']} files, {removed['chunks']} chunks, "
        f"{removed['embeddings']} embeddings."
    )


@app.command()
def stats(index_dir: Optional[Path] = IndexDirOption) -> None:
    """Show row counts of the store."""
    config = _make_config(index_dir, _DEFAULTS.embedding_backend, _DEFAULTS.model_name)
    _require_db(config)
    with _exit_on_error():
        with SQLiteStore(config.db_path) as store:
            info = store.get_stats()
    console.print(
        f"Files: {info['file_count']}, chunks: {info['chunk_count']}, "
        f"embeddings: {info['embedding_count']}, size: {info['db_size_bytes']} bytes"
    )
