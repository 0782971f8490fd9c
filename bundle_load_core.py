"""Bundle load generator core module.

This module drives randomized ``eth_callBundle`` JSON-RPC traffic against a node
or a priority load balancer. Every iteration picks a random transaction from a
fixture file, tags the request as high or low priority through an HTTP header,
and checks the response for a 200 status and the absence of a JSON-RPC error.
"""

from __future__ import annotations

import argparse
import asyncio
import enum
import json
import logging
import random
import signal
import statistics
import time
from collections import Counter, deque
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Deque, Dict, Iterable, Optional, Sequence, Tuple

import aiohttp
import yaml

LOGGER = logging.getLogger("bundle_load")

PLACEHOLDER_URL = "YOUR_URL"
DEFAULT_BASE_BLOCK_NUMBER = 14050699
LATENCY_SAMPLES = 10000

CHECK_STATUS_IS_200 = "status_is_200"
CHECK_NO_ERROR = "response_has_no_error"
CHECK_NAMES = (CHECK_STATUS_IS_200, CHECK_NO_ERROR)


class FixtureLoadError(Exception):
    """Raised when the transaction fixture file cannot be used."""


class TransportError(Exception):
    """Raised when a request never produced an HTTP response."""

    def __init__(self, label: str, message: str = "") -> None:
        super().__init__(message or label)
        self.label = label


class Priority(enum.Enum):
    HIGH = "high"
    LOW = "low"

    @property
    def header_value(self) -> str:
        return "true" if self is Priority.HIGH else "false"


def load_fixtures(path: Path) -> Tuple[Any, ...]:
    """Read a JSON array of transactions and return it as an immutable tuple.

    Elements are kept as opaque JSON values. The tuple is built once per run and
    shared by every worker.
    """

    path = Path(path)
    try:
        text = path.read_text()
    except OSError as exc:
        raise FixtureLoadError(f"cannot read fixture file {path}: {exc}") from exc

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise FixtureLoadError(f"fixture file {path} is not valid JSON: {exc}") from exc

    if not isinstance(data, list):
        raise FixtureLoadError(f"fixture file {path} must contain a JSON array, got {type(data).__name__}")
    if not data:
        raise FixtureLoadError(f"fixture file {path} contains no transactions")

    LOGGER.info("Loaded %d transactions from %s", len(data), path)
    return tuple(data)


def format_block_number(number: int) -> str:
    """Return ``number`` as a 0x-prefixed lowercase hex quantity."""

    if number < 0:
        raise ValueError("block number cannot be negative")
    return f"0x{number:x}"


@dataclass
class LoadTestConfig:
    """Configuration holder for the bundle load generator."""

    url: str = PLACEHOLDER_URL
    fixtures_path: str = "transactions.json"
    method: str = "eth_callBundle"
    rpc_id: int = 1
    base_block_number: int = DEFAULT_BASE_BLOCK_NUMBER
    block_offset: int = 10
    state_block_number: str = "latest"
    high_priority_probability: float = 0.5
    priority_header: str = "high_priority"
    workers: int = 1
    iterations: Optional[int] = None
    duration: Optional[float] = None
    rps: Optional[float] = None
    timeout_seconds: float = 5.0
    summary_interval: float = 30.0
    headers: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.workers < 1:
            raise ValueError("workers must be at least 1")
        if not 0.0 <= self.high_priority_probability <= 1.0:
            raise ValueError("high_priority_probability must be between 0 and 1")
        if self.rps is not None and self.rps <= 0:
            raise ValueError("rps must be a positive number")
        if self.iterations is not None and self.iterations < 0:
            raise ValueError("iterations cannot be negative")
        if self.duration is not None and self.duration < 0:
            raise ValueError("duration cannot be negative")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be a positive number")
        if self.summary_interval < 0:
            raise ValueError("summary_interval cannot be negative")
        if self.base_block_number < 0 or self.block_offset < 0:
            raise ValueError("base_block_number and block_offset cannot be negative")
        if not self.priority_header:
            raise ValueError("priority_header cannot be empty")

        # Expand the url into a full endpoint if only host:port provided
        if self.url != PLACEHOLDER_URL and not self.url.startswith(("http://", "https://")):
            self.url = f"http://{self.url}"

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "LoadTestConfig":
        """Build a config object from a plain dict."""

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(raw) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**raw)

    @property
    def block_number(self) -> str:
        return format_block_number(self.base_block_number + self.block_offset)

    def ensure_target(self) -> None:
        if self.url == PLACEHOLDER_URL:
            raise ValueError("url is still the placeholder; point it at a node or load balancer")


@dataclass(frozen=True)
class SynthesizedRequest:
    index: int
    priority: Priority
    payload: Dict[str, Any]


def synthesize_request(fixtures: Sequence[Any], rng: random.Random, config: LoadTestConfig) -> SynthesizedRequest:
    """Pick a random transaction and priority and wrap them in a JSON-RPC envelope."""

    idx = rng.randrange(len(fixtures))
    priority = Priority.HIGH if rng.random() < config.high_priority_probability else Priority.LOW
    payload = {
        "jsonrpc": "2.0",
        "id": config.rpc_id,
        "method": config.method,
        "params": [
            {
                "txs": [fixtures[idx]],
                "blockNumber": config.block_number,
                "stateBlockNumber": config.state_block_number,
            }
        ],
    }
    return SynthesizedRequest(index=idx, priority=priority, payload=payload)


@dataclass(frozen=True)
class TransportResponse:
    status: int
    body: bytes
    elapsed: float = 0.0


class BundleClient:
    """Posts synthesized requests to the configured endpoint."""

    def __init__(self, session: aiohttp.ClientSession, config: LoadTestConfig) -> None:
        self._session = session
        self.config = config

    def headers_for(self, priority: Priority) -> Dict[str, str]:
        headers = dict(self.config.headers)
        headers["Content-Type"] = "application/json"
        headers[self.config.priority_header] = priority.header_value
        return headers

    async def send(self, request: SynthesizedRequest) -> TransportResponse:
        """Send the request and return status + body, or raise TransportError."""

        data = json.dumps(request.payload)
        started = time.monotonic()
        try:
            async with self._session.post(
                self.config.url, data=data, headers=self.headers_for(request.priority)
            ) as response:
                body = await response.read()
                return TransportResponse(response.status, body, time.monotonic() - started)
        except asyncio.TimeoutError as exc:
            raise TransportError("timeout", f"request timed out after {self.config.timeout_seconds}s") from exc
        except aiohttp.ClientError as exc:
            raise TransportError(exc.__class__.__name__, str(exc)) from exc


def _has_no_error(body: bytes) -> bool:
    try:
        decoded = json.loads(body)
    except ValueError:
        return False
    if isinstance(decoded, dict):
        return "error" not in decoded
    return True


def evaluate_checks(response: TransportResponse) -> Dict[str, bool]:
    """Evaluate the named checks for one response. Never raises."""

    return {
        CHECK_STATUS_IS_200: response.status == 200,
        CHECK_NO_ERROR: _has_no_error(response.body),
    }


class CheckRecorder:
    """Pass/fail counters per named check."""

    def __init__(self) -> None:
        self.passes: Counter[str] = Counter()
        self.fails: Counter[str] = Counter()

    def record(self, results: Dict[str, bool]) -> None:
        for name, ok in results.items():
            if ok:
                self.passes[name] += 1
            else:
                self.fails[name] += 1

    def record_transport_failure(self) -> None:
        self.record({name: False for name in CHECK_NAMES})

    def summary(self) -> Dict[str, Dict[str, int]]:
        names = sorted(set(self.passes) | set(self.fails))
        return {name: {"pass": self.passes[name], "fail": self.fails[name]} for name in names}


def _percentile(values: Sequence[float], pct: int) -> Optional[float]:
    if not values:
        return None
    if len(values) == 1:
        return values[0]
    return statistics.quantiles(values, n=100, method="inclusive")[pct - 1]


class BundleLoadGenerator:
    """Asynchronous load generator running concurrent virtual workers."""

    def __init__(
        self,
        config: LoadTestConfig,
        fixtures: Sequence[Any],
        rng: Optional[random.Random] = None,
    ) -> None:
        if not fixtures:
            raise FixtureLoadError("no fixtures to synthesize requests from")
        self.config = config
        self.fixtures = fixtures
        self.rng = rng or random.Random()
        self.checks = CheckRecorder()
        self.metrics: Counter[str] = Counter()
        self.exception_counts: Counter[str] = Counter()
        self.priority_counts: Counter[str] = Counter()
        self.latencies: Deque[float] = deque(maxlen=LATENCY_SAMPLES)
        self.total_requests: int = 0
        self._started_iterations = 0
        self._stop_requested = False
        self._stop_event: Optional[asyncio.Event] = None
        self._client: Optional[BundleClient] = None

    async def run(self) -> None:
        """Run the workers until the duration or iteration limit is hit, or a signal stops them."""

        self.config.ensure_target()
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            self._client = BundleClient(session, self.config)
            # The event must belong to the loop that runs the workers
            self._stop_event = asyncio.Event()
            if self._stop_requested:
                self._stop_event.set()
            loop = asyncio.get_running_loop()
            _install_signal_handlers(loop, self._stop_event)

            LOGGER.info(
                "Starting %d worker(s) sending %s to %s (block %s)",
                self.config.workers,
                self.config.method,
                self.config.url,
                self.config.block_number,
            )

            start = time.monotonic()
            deadline = start + self.config.duration if self.config.duration is not None else None
            reporter = None
            if self.config.summary_interval:
                reporter = asyncio.create_task(self._summary_loop(start))

            try:
                workers = [
                    asyncio.create_task(self._worker(n, deadline)) for n in range(self.config.workers)
                ]
                await asyncio.gather(*workers)
            finally:
                if reporter is not None:
                    reporter.cancel()
                    try:
                        await reporter
                    except asyncio.CancelledError:
                        pass
                elapsed = time.monotonic() - start
                self.log_summary(elapsed, final=True)
                LOGGER.info("Load generator stopped after %.2fs", elapsed)
                self._client = None

    def stop(self) -> None:
        self._stop_requested = True
        if self._stop_event is not None:
            self._stop_event.set()

    def _claim_iteration(self, deadline: Optional[float]) -> bool:
        if self._stop_event is None or self._stop_event.is_set():
            return False
        if deadline is not None and time.monotonic() >= deadline:
            return False
        if self.config.iterations is not None and self._started_iterations >= self.config.iterations:
            return False
        self._started_iterations += 1
        return True

    async def _worker(self, number: int, deadline: Optional[float]) -> None:
        interval = self.config.workers / self.config.rps if self.config.rps else 0.0
        LOGGER.debug("worker %d started", number)

        while self._claim_iteration(deadline):
            cycle_started = time.monotonic()
            await self.one_iteration()

            if interval:
                sleep_for = interval - (time.monotonic() - cycle_started)
                if sleep_for > 0:
                    try:
                        await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_for)
                    except asyncio.TimeoutError:
                        pass

    async def one_iteration(self) -> Dict[str, bool]:
        """Perform a single synthesize -> send -> check pass."""

        assert self._client is not None, "Client must be initialized before running"

        request = synthesize_request(self.fixtures, self.rng, self.config)
        LOGGER.info("req tx: %d highPrio: %s", request.index, request.priority is Priority.HIGH)
        self.priority_counts[request.priority.value] += 1
        self.total_requests += 1

        try:
            response = await self._client.send(request)
        except TransportError as exc:
            self.exception_counts[exc.label] += 1
            self.checks.record_transport_failure()
            LOGGER.debug("tx=%d transport error %s: %s", request.index, exc.label, exc)
            return {name: False for name in CHECK_NAMES}

        self.metrics[str(response.status)] += 1
        self.latencies.append(response.elapsed)
        results = evaluate_checks(response)
        self.checks.record(results)
        LOGGER.debug("tx=%d status=%s checks=%s", request.index, response.status, results)
        return results

    async def _summary_loop(self, start: float) -> None:
        while True:
            await asyncio.sleep(self.config.summary_interval)
            self.log_summary(time.monotonic() - start)

    def stats(self) -> Dict[str, Any]:
        """Return a snapshot of the collected counters."""

        return {
            "total": self.total_requests,
            "statuses": dict(self.metrics),
            "errors": dict(self.exception_counts),
            "priorities": dict(self.priority_counts),
            "checks": self.checks.summary(),
            "latency_p50": _percentile(self.latencies, 50),
            "latency_p95": _percentile(self.latencies, 95),
        }

    def log_summary(self, elapsed: float, *, final: bool = False) -> None:
        """Emit a summary of collected metrics so far."""

        total_ok = self.metrics.get("200", 0)
        total_errors = sum(self.exception_counts.values())

        parts = [
            f"total={self.total_requests}",
            f"200={total_ok}",
            f"non200={sum(self.metrics.values()) - total_ok}",
            f"errors={total_errors}",
            f"high={self.priority_counts.get(Priority.HIGH.value, 0)}",
            f"low={self.priority_counts.get(Priority.LOW.value, 0)}",
        ]
        for name, counts in self.checks.summary().items():
            parts.append(f"{name}={counts['pass']}/{counts['pass'] + counts['fail']}")
        if self.exception_counts:
            top_exceptions = ", ".join(f"{name}:{count}" for name, count in self.exception_counts.most_common(3))
            parts.append(f"errors=[{top_exceptions}]")
        if final and self.latencies:
            parts.append(
                "latency p50={:.1f}ms p95={:.1f}ms".format(
                    _percentile(self.latencies, 50) * 1000, _percentile(self.latencies, 95) * 1000
                )
            )

        message = "FINAL" if final else "SUMMARY"
        LOGGER.info("%s %.1fs %s", message, elapsed, " | ".join(parts))


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, stop_event: asyncio.Event) -> None:
    """Install SIGINT/SIGTERM handlers to stop the generator gracefully."""

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - Windows / non-main thread
            LOGGER.debug("Signal handlers not supported here")
            break


def load_config_file(path: Path) -> Dict[str, Any]:
    """Load a configuration file in YAML or JSON format."""

    suffix = path.suffix.lower()
    text = path.read_text()
    if suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(text) or {}
    elif suffix == ".json":
        data = json.loads(text or "{}")
    else:
        raise ValueError(f"Unsupported configuration file format: {suffix}")
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file {path} must contain a mapping at the top level")
    return data


def setup_logging(level: str = "INFO") -> None:
    """Configure basic logging output."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def run_with_config(config: LoadTestConfig, seed: Optional[int] = None) -> BundleLoadGenerator:
    """Load fixtures once, then run the generator with asyncio.run."""

    fixtures = load_fixtures(Path(config.fixtures_path))

    async def _runner() -> BundleLoadGenerator:
        generator = BundleLoadGenerator(config, fixtures, rng=random.Random(seed))
        await generator.run()
        return generator

    return asyncio.run(_runner())


def build_argparser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Randomized eth_callBundle load generator")
    parser.add_argument("--config", type=Path, default=None, help="Path to YAML/JSON config file")
    parser.add_argument("--url", type=str, default=None, help="Node or load balancer URL")
    parser.add_argument("--fixtures", type=str, default=None, help="Path to the JSON array of transactions")
    parser.add_argument("--workers", type=int, default=None, help="Number of concurrent virtual workers")
    parser.add_argument("--iterations", type=int, default=None, help="Total iterations across all workers")
    parser.add_argument("--duration", type=float, default=None, help="Optional duration (seconds) to run")
    parser.add_argument("--rps", type=float, default=None, help="Cap on aggregate requests per second")
    parser.add_argument(
        "--summary-interval",
        type=float,
        default=None,
        help="Override summary logging interval in seconds (0 to disable)",
    )
    parser.add_argument("--seed", type=int, default=None, help="Seed for fixture and priority selection")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level (DEBUG, INFO, ...)")
    return parser


_OVERRIDES = {
    "url": "url",
    "fixtures": "fixtures_path",
    "workers": "workers",
    "iterations": "iterations",
    "duration": "duration",
    "rps": "rps",
    "summary_interval": "summary_interval",
}


def main(argv: Optional[Iterable[str]] = None) -> int:
    """CLI entry point for the bundle load generator."""

    parser = build_argparser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        config_dict = load_config_file(args.config) if args.config else {}
        for arg_name, key in _OVERRIDES.items():
            value = getattr(args, arg_name)
            if value is not None:
                config_dict[key] = value
        config = LoadTestConfig.from_dict(config_dict)
        config.ensure_target()
    except (OSError, TypeError, ValueError, yaml.YAMLError) as exc:
        parser.error(str(exc))

    setup_logging(args.log_level)
    try:
        run_with_config(config, seed=args.seed)
    except FixtureLoadError as exc:
        LOGGER.error("Aborting run: %s", exc)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI usage
    raise SystemExit(main())
