"""Tests for the daemon: dispatch, concurrency and shutdown."""

from __future__ import annotations

import asyncio
import json
import threading

import numpy as np
import pytest

from mentat.config import AppConfig
from mentat.daemon.client import send_request
from mentat.daemon.protocol import Request
from mentat.daemon.server import IndexState, MentatDaemon, build_and_persist, load_or_build
from mentat.embedding.encoder import PseudoEmbedder, pseudo_vector
from mentat.errors import ProtocolError, StoreError
from mentat.index.hnsw import VectorIndex, header_path
from mentat.index.indexer import Indexer
from mentat.index.storage import SQLiteStore


@pytest.fixture
def missing_config(tmp_path) -> AppConfig:
    return AppConfig(index_dir=tmp_path / "index", port=0, workers=4, max_request_bytes=4096)


@pytest.fixture
def config(missing_config) -> AppConfig:
    SQLiteStore(missing_config.db_path).close()
    return missing_config


@pytest.fixture
def indexed_config(config, sample_tree) -> AppConfig:
    with SQLiteStore(config.db_path) as store:
        Indexer(PseudoEmbedder(), store).index([sample_tree])
    return config


async def _request(port: int, payload) -> dict:
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode() + b"\n"
    writer.write(raw)
    await writer.drain()
    line = await reader.readline()
    writer.close()
    await writer.wait_closed()
    return json.loads(line)


def _with_daemon(config: AppConfig, scenario):
    async def go():
        daemon = MentatDaemon(config, PseudoEmbedder())
        await daemon.start()
        try:
            return await scenario(daemon)
        finally:
            await daemon.close()

    return asyncio.run(go())


class TestEmptyStore:
    def test_ping_and_unknown_command(self, config) -> None:
        async def scenario(daemon):
            return (
                await _request(daemon.port, {"cmd": "ping"}),
                await _request(daemon.port, {"cmd": "bogus"}),
            )

        ping, bogus = _with_daemon(config, scenario)

        assert ping == {"ok": True}
        assert bogus == {"error": "Unknown command: bogus"}

    def test_search_before_build_reports_not_ready(self, config) -> None:
        async def scenario(daemon):
            status = await _request(daemon.port, {"cmd": "status"})
            search = await _request(daemon.port, {"cmd": "search", "query": "x"})
            return status, search

        status, search = _with_daemon(config, scenario)

        assert status == {"ok": True, "state": "uninitialized", "count": 0}
        assert search == {"error": "index not ready"}

    def test_failed_rebuild_keeps_state(self, config) -> None:
        async def scenario(daemon):
            rebuild = await _request(daemon.port, {"cmd": "rebuild"})
            return rebuild, daemon.holder.state

        rebuild, state = _with_daemon(config, scenario)

        assert "zero vectors" in rebuild["error"]
        assert state is IndexState.UNINITIALIZED

    def test_malformed_and_oversized_requests(self, config) -> None:
        async def scenario(daemon):
            return (
                await _request(daemon.port, b"{broken\n"),
                await _request(daemon.port, b"x" * 5000 + b"\n"),
                await _request(daemon.port, {"cmd": "search", "topk": -2}),
            )

        broken, oversized, invalid = _with_daemon(config, scenario)

        assert broken["error"].startswith("Parse error")
        assert oversized["error"] == "Request exceeds 4096 bytes"
        assert invalid["error"].startswith("Invalid request")


class TestMissingStore:
    def test_missing_store_is_not_created(self, missing_config) -> None:
        async def scenario(daemon):
            status = await _request(daemon.port, {"cmd": "status"})
            rebuild = await _request(daemon.port, {"cmd": "rebuild"})
            return status, rebuild

        status, rebuild = _with_daemon(missing_config, scenario)

        assert status["state"] == "uninitialized"
        assert rebuild["error"].startswith("Index not found")
        assert not missing_config.db_path.exists()

    def test_build_and_persist_requires_store(self, missing_config) -> None:
        with pytest.raises(StoreError):
            build_and_persist(missing_config)
        assert not missing_config.index_dir.exists()


class TestNotStarted:
    def test_dispatch_before_start(self, config) -> None:
        daemon = MentatDaemon(config, PseudoEmbedder())
        try:
            with pytest.raises(RuntimeError, match="not started"):
                asyncio.run(daemon.dispatch(Request(cmd="ping")))
        finally:
            asyncio.run(daemon.close())


class TestIndexedStore:
    def test_corrupt_artifacts_are_rebuilt(self, indexed_config) -> None:
        build_and_persist(indexed_config)
        hdr = header_path(indexed_config.hnsw_path)
        header = json.loads(hdr.read_text())
        header["count"] = 99
        hdr.write_text(json.dumps(header))

        index = load_or_build(indexed_config)

        assert index.count == 4
        assert json.loads(hdr.read_text())["count"] == 4

    def test_daemon_recovers_from_corrupt_artifacts(self, indexed_config) -> None:
        build_and_persist(indexed_config)
        header_path(indexed_config.hnsw_path).write_text("not json")

        async def scenario(daemon):
            return await _request(daemon.port, {"cmd": "status"})

        status = _with_daemon(indexed_config, scenario)

        assert status == {"ok": True, "state": "ready", "count": 4}

    def test_startup_builds_and_persists(self, indexed_config) -> None:
        async def scenario(daemon):
            return await _request(daemon.port, {"cmd": "status"})

        status = _with_daemon(indexed_config, scenario)

        assert status == {"ok": True, "state": "ready", "count": 4}
        assert VectorIndex.exists(indexed_config.hnsw_path)

    def test_search_returns_similarity_scores(self, indexed_config, sample_tree) -> None:
        util = (sample_tree / "src" / "util.py").read_text()

        async def scenario(daemon):
            return await _request(daemon.port, {"cmd": "search", "query": util, "topk": 2})

        response = _with_daemon(indexed_config, scenario)

        results = response["results"]
        assert len(results) == 2
        assert results[0][1] == pytest.approx(1.0, abs=1e-5)
        assert results[0][1] >= results[1][1]
        index = load_or_build(indexed_config)
        with SQLiteStore(indexed_config.db_path) as store:
            location = store.describe_chunk(index.chunk_id_for(results[0][0]))
        assert location["path"] == str(sample_tree / "src" / "util.py")

    def test_rebuild_reports_count(self, indexed_config) -> None:
        async def scenario(daemon):
            rebuild = await _request(daemon.port, {"cmd": "rebuild"})
            status = await _request(daemon.port, {"cmd": "status"})
            return rebuild, status

        rebuild, status = _with_daemon(indexed_config, scenario)

        assert rebuild == {"ok": True, "count": 4}
        assert status["state"] == "ready"

    def test_restart_loads_persisted_index(self, indexed_config) -> None:
        async def scenario(daemon):
            return await _request(daemon.port, {"cmd": "status"})

        _with_daemon(indexed_config, scenario)
        indexed_config.db_path.unlink()

        assert _with_daemon(indexed_config, scenario)["count"] == 4


class TestConcurrency:
    def test_parallel_embeds_are_independent(self, config) -> None:
        texts = [f"request number {i}" for i in range(16)]

        async def scenario(daemon):
            return await asyncio.gather(
                *(_request(daemon.port, {"cmd": "embed", "text": t}) for t in texts)
            )

        responses = _with_daemon(config, scenario)

        for text, response in zip(texts, responses):
            vector = np.asarray(response["embedding"], dtype="float32")
            assert vector.shape == (384,)
            assert vector.tobytes() == pseudo_vector(text).tobytes()

    def test_searches_during_rebuild(self, indexed_config) -> None:
        async def scenario(daemon):
            calls = [{"cmd": "rebuild"}] + [{"cmd": "search", "query": "def", "topk": 3}] * 8
            return await asyncio.gather(*(_request(daemon.port, c) for c in calls))

        responses = _with_daemon(indexed_config, scenario)

        assert responses[0] == {"ok": True, "count": 4}
        for response in responses[1:]:
            assert len(response["results"]) == 3


class TestShutdown:
    def test_stop_finishes_in_flight_request(self, config) -> None:
        async def scenario():
            daemon = MentatDaemon(config, PseudoEmbedder())
            await daemon.start()
            port = daemon.port
            serving = asyncio.create_task(daemon.serve_until_stopped())

            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            await asyncio.sleep(0.05)
            daemon.request_stop()
            writer.write(b'{"cmd": "ping"}\n')
            await writer.drain()
            line = await reader.readline()
            writer.close()
            await serving
            return json.loads(line), port

        response, port = asyncio.run(scenario())

        assert response == {"ok": True}
        with pytest.raises(ProtocolError):
            send_request({"cmd": "ping"}, port=port, timeout=2.0)


class TestClient:
    def test_send_request_round_trip(self, config) -> None:
        ready = threading.Event()
        state = {}

        async def serve():
            daemon = MentatDaemon(config, PseudoEmbedder())
            await daemon.start()
            state["daemon"] = daemon
            state["loop"] = asyncio.get_running_loop()
            ready.set()
            await daemon.serve_until_stopped()

        thread = threading.Thread(target=asyncio.run, args=(serve(),))
        thread.start()
        try:
            assert ready.wait(timeout=10)
            port = state["daemon"].port
            assert send_request({"cmd": "ping"}, port=port) == {"ok": True}
            assert send_request({"cmd": "nope"}, port=port) == {"error": "Unknown command: nope"}
        finally:
            state["loop"].call_soon_threadsafe(state["daemon"].request_stop)
            thread.join(timeout=10)

    def test_unreachable_daemon(self) -> None:
        with pytest.raises(ProtocolError, match="Unable to reach"):
            send_request({"cmd": "ping"}, port=1, timeout=1.0)
