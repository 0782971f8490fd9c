# tests/conftest.py
from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

import asyncio
import json
import random
import threading

import pytest
from aiohttp import web

from bundle_load_core import LoadTestConfig
from mock_node import MockNode


@pytest.fixture()
def fixture_file(tmp_path: Path) -> Path:
    path = tmp_path / "transactions.json"
    path.write_text(json.dumps(["0xdeadbeef", "0xcafe", {"raw": "0x01"}]))
    return path


@pytest.fixture()
def config() -> LoadTestConfig:
    return LoadTestConfig(url="http://127.0.0.1:8545", summary_interval=0)


@pytest.fixture()
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture()
def served_node():
    """MockNode served from a background thread, for code that calls asyncio.run itself."""
    node = MockNode()
    loop = asyncio.new_event_loop()
    runner = web.AppRunner(node.make_app())
    loop.run_until_complete(runner.setup())
    site = web.TCPSite(runner, "127.0.0.1", 0)
    loop.run_until_complete(site.start())
    port = runner.addresses[0][1]

    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()
    yield node, f"http://127.0.0.1:{port}/"

    loop.call_soon_threadsafe(loop.stop)
    thread.join(timeout=5)
    loop.run_until_complete(runner.cleanup())
    loop.close()
