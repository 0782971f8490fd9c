# tests/test_synthesizer.py
from __future__ import annotations

import random

import pytest

from bundle_load_core import LoadTestConfig, Priority, format_block_number, synthesize_request


def test_block_number_and_state_block(config, rng):
    req = synthesize_request(("0xdeadbeef",), rng, config)
    params = req.payload["params"][0]
    assert params["blockNumber"] == "0xd66595"
    assert params["blockNumber"] == hex(14050699 + 10)
    assert params["stateBlockNumber"] == "latest"
    assert params["txs"] == ["0xdeadbeef"]


def test_envelope_shape(config, rng):
    req = synthesize_request(("0xdeadbeef",), rng, config)
    assert req.payload["jsonrpc"] == "2.0"
    assert req.payload["id"] == 1
    assert req.payload["method"] == "eth_callBundle"
    assert len(req.payload["params"]) == 1


def test_index_always_in_range(config):
    fixtures = tuple(range(7))
    rng = random.Random(99)
    seen = set()
    for _ in range(2000):
        req = synthesize_request(fixtures, rng, config)
        assert 0 <= req.index < len(fixtures)
        assert req.payload["params"][0]["txs"] == [fixtures[req.index]]
        seen.add(req.index)
    assert seen == set(range(7))


def test_priority_is_roughly_even(config):
    rng = random.Random(2024)
    trials = 10000
    high = sum(
        synthesize_request(("0x1",), rng, config).priority is Priority.HIGH for _ in range(trials)
    )
    assert 0.45 < high / trials < 0.55


@pytest.mark.parametrize("probability, expected", [(0.0, Priority.LOW), (1.0, Priority.HIGH)])
def test_priority_probability_extremes(probability, expected):
    config = LoadTestConfig(url="localhost:8545", high_priority_probability=probability)
    rng = random.Random(5)
    assert all(synthesize_request(("0x1",), rng, config).priority is expected for _ in range(200))


def test_fixture_embedded_verbatim(config, rng):
    tx = {"nested": [1, {"a": None}], "raw": "0xabc"}
    req = synthesize_request((tx,), rng, config)
    assert req.payload["params"][0]["txs"][0] is tx


def test_custom_method_and_offset(rng):
    config = LoadTestConfig(
        url="localhost:8545",
        method="eth_sendBundle",
        rpc_id=42,
        base_block_number=100,
        block_offset=0,
        state_block_number="0x10",
    )
    req = synthesize_request(("0x1",), rng, config)
    assert req.payload["method"] == "eth_sendBundle"
    assert req.payload["id"] == 42
    assert req.payload["params"][0]["blockNumber"] == "0x64"
    assert req.payload["params"][0]["stateBlockNumber"] == "0x10"


def test_priority_header_values():
    assert Priority.HIGH.header_value == "true"
    assert Priority.LOW.header_value == "false"


def test_format_block_number():
    assert format_block_number(0) == "0x0"
    assert format_block_number(255) == "0xff"
    with pytest.raises(ValueError):
        format_block_number(-1)
