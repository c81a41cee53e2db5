"""Long-lived TCP front end for vector search and raw embedding.

One asyncio task serves each connection: read one request, dispatch it,
write one response, close. Blocking work runs on a bounded thread pool.
Searches and rebuilds share one index behind an ``asyncio.Lock``; embedding
requests never take the lock.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Callable, Optional, Set, TypeVar

from mentat.config import AppConfig
from mentat.embedding.encoder import Embedder
from mentat.errors import (
    IndexNotReadyError,
    MentatError,
    ProtocolError,
    StoreError,
    VectorIndexError,
)
from mentat.index.hnsw import VectorIndex
from mentat.index.storage import SQLiteStore
from mentat.daemon.protocol import Request, Response, encode_response, parse_request, read_frame

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class IndexState(str, Enum):
    UNINITIALIZED = "uninitialized"
    BUILDING = "building"
    READY = "ready"


def build_and_persist(config: AppConfig) -> VectorIndex:
    """Build a fresh index from the store and write its artifacts."""
    index = VectorIndex(
        m=config.hnsw_m,
        ef_construction=config.hnsw_ef_construction,
        ef_search=config.hnsw_ef_search,
    )
    if not config.db_path.exists():
        raise StoreError(f"Index not found: {config.db_path}")
    with SQLiteStore(config.db_path) as store:
        index.build(store)
    index.save(config.hnsw_path)
    return index


def load_or_build(config: AppConfig) -> VectorIndex:
    """Deserialize the persisted index, rebuilding it if absent or unreadable."""
    if VectorIndex.exists(config.hnsw_path):
        index = VectorIndex(
            m=config.hnsw_m,
            ef_construction=config.hnsw_ef_construction,
            ef_search=config.hnsw_ef_search,
        )
        try:
            index.load(config.hnsw_path)
            return index
        except VectorIndexError as exc:
            LOGGER.warning("Discarding persisted index at %s: %s", config.hnsw_path, exc)
    else:
        LOGGER.info("No persisted index at %s, building from store", config.hnsw_path)
    return build_and_persist(config)


class IndexHolder:
    """Owns the shared VectorIndex; every access goes through ``lock``."""

    def __init__(
        self,
        config: AppConfig,
        embedder: Embedder,
        run_blocking: Callable[..., "asyncio.Future"],
    ) -> None:
        self.config = config
        self.embedder = embedder
        self._run_blocking = run_blocking
        self.lock = asyncio.Lock()
        self.index: Optional[VectorIndex] = None
        self.state = IndexState.UNINITIALIZED

    @property
    def count(self) -> int:
        return self.index.count if self.index is not None else 0

    async def initialize(self) -> None:
        async with self.lock:
            self.state = IndexState.BUILDING
            try:
                self.index = await self._run_blocking(load_or_build, self.config)
            except MentatError as exc:
                LOGGER.warning("Index unavailable at startup: %s", exc)
                self.index = None
                self.state = IndexState.UNINITIALIZED
                return
            self.state = IndexState.READY

    async def rebuild(self) -> int:
        async with self.lock:
            previous = self.state
            self.state = IndexState.BUILDING
            try:
                new_index = await self._run_blocking(build_and_persist, self.config)
            except BaseException:
                self.state = previous
                raise
            self.index = new_index
            self.state = IndexState.READY
            return new_index.count

    async def search(self, query: str, topk: int) -> list:
        async with self.lock:
            if self.state is not IndexState.READY or self.index is None:
                raise IndexNotReadyError()
            return await self._run_blocking(self.index.search, query, topk, self.embedder)


class MentatDaemon:
    """Accept loop plus per-connection request handling."""

    def __init__(self, config: AppConfig, embedder: Embedder) -> None:
        self.config = config
        self.embedder = embedder
        self._executor = ThreadPoolExecutor(
            max_workers=config.workers, thread_name_prefix="mentat-worker"
        )
        self._server: Optional[asyncio.base_events.Server] = None
        self._connections: Set[asyncio.Task] = set()
        self._stop: Optional[asyncio.Event] = None
        self.holder: Optional[IndexHolder] = None

    async def _run_blocking(self, func: Callable[..., T], *args) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    @property
    def port(self) -> int:
        if self._server is None or not self._server.sockets:
            raise RuntimeError("Daemon is not listening")
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        """Prepare the index, then start listening."""
        self._stop = asyncio.Event()
        self.holder = IndexHolder(self.config, self.embedder, self._run_blocking)
        LOGGER.info("Loading index from %s", self.config.index_dir)
        await self.holder.initialize()
        LOGGER.info("Index state: %s (%d vectors)", self.holder.state.value, self.holder.count)

        self._server = await asyncio.start_server(
            self._handle_connection,
            host=self.config.host,
            port=self.config.port,
            limit=self.config.max_request_bytes,
        )
        LOGGER.info("Listening on %s:%d", self.config.host, self.port)

    def request_stop(self) -> None:
        if self._stop is not None:
            self._stop.set()

    async def serve_until_stopped(self) -> None:
        if self._server is None or self._stop is None:
            await self.start()
        if self._stop is None:
            raise RuntimeError("Daemon is not started")
        await self._stop.wait()
        await self.close()

    async def close(self) -> None:
        """Stop accepting; connections already accepted run to completion."""
        if self._server is not None:
            LOGGER.info("Shutting down listener...")
            self._server.close()
            if self._connections:
                await asyncio.gather(*self._connections, return_exceptions=True)
            await self._server.wait_closed()
            self._server = None
        self._executor.shutdown(wait=True)
        LOGGER.info("Shutdown complete")

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
        peer = writer.get_extra_info("peername")
        LOGGER.debug("Connection from %s", peer)
        try:
            try:
                raw = await read_frame(reader, max_bytes=self.config.max_request_bytes)
                request = parse_request(raw)
                LOGGER.debug("Command %s from %s", request.cmd, peer)
                response = await self.dispatch(request)
            except MentatError as exc:
                LOGGER.info("Request from %s failed: %s", peer, exc)
                response = Response(error=str(exc))
            except Exception as exc:
                LOGGER.exception("Unexpected failure serving %s", peer)
                response = Response(error=f"Internal error: {exc}")

            writer.write(encode_response(response))
            await writer.drain()
        except (ConnectionError, OSError) as exc:
            LOGGER.warning("Write error to %s: %s", peer, exc)
        finally:
            writer.close()
            with contextlib.suppress(ConnectionError, OSError):
                await writer.wait_closed()
            if task is not None:
                self._connections.discard(task)

    async def dispatch(self, request: Request) -> Response:
        if self.holder is None:
            raise RuntimeError("Daemon is not started")
        if request.cmd == "ping":
            return Response(ok=True)
        if request.cmd == "embed":
            vector = await self._run_blocking(self.embedder.embed_query, request.text)
            return Response(ok=True, embedding=[float(v) for v in vector])
        if request.cmd == "search":
            hits = await self.holder.search(request.query, request.topk)
            return Response(ok=True, results=[(idx, 1.0 - dist) for idx, dist in hits])
        if request.cmd == "rebuild":
            count = await self.holder.rebuild()
            return Response(ok=True, count=count)
        if request.cmd == "status":
            return Response(ok=True, state=self.holder.state.value, count=self.holder.count)
        raise ProtocolError(f"Unknown command: {request.cmd}")


def _install_signal_handlers(daemon: MentatDaemon) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, _on_signal, daemon, signum)
        except (NotImplementedError, RuntimeError):
            signal.signal(
                signum,
                lambda received, _frame: loop.call_soon_threadsafe(_on_signal, daemon, received),
            )


def _on_signal(daemon: MentatDaemon, signum: int) -> None:
    LOGGER.info("Received %s, stopping", signal.Signals(signum).name)
    daemon.request_stop()


async def run_daemon(config: AppConfig, embedder: Embedder) -> None:
    daemon = MentatDaemon(config, embedder)
    await daemon.start()
    _install_signal_handlers(daemon)
    LOGGER.info("Ready to accept connections (Ctrl+C to stop)")
    await daemon.serve_until_stopped()
