"""Mock JSON-RPC node for local dry runs of the bundle load generator.

Answers ``net_version`` and ``eth_callBundle`` and returns a JSON-RPC error for
anything else, so a full run can be exercised without a real node.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, Optional

from aiohttp import web

from bundle_load_core import setup_logging

LOGGER = logging.getLogger("bundle_load.mock_node")

INTERNAL_ERROR = -32603


class MockNode:
    """In-memory JSON-RPC backend served through aiohttp.web."""

    def __init__(self, priority_header: str = "high_priority") -> None:
        self.priority_header = priority_header
        self.last_request: Optional[Dict[str, Any]] = None
        self.last_priority: Optional[str] = None
        self.last_request_at: Optional[float] = None
        self.request_count = 0
        self.rpc_override: Optional[Callable[[Dict[str, Any]], Any]] = None

    def reset(self) -> None:
        self.last_request = None
        self.last_priority = None
        self.last_request_at = None
        self.request_count = 0
        self.rpc_override = None

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/", self.handle)
        return app

    def _dispatch(self, rpc: Dict[str, Any]) -> Any:
        if self.rpc_override is not None:
            return self.rpc_override(rpc)

        method = rpc.get("method")
        if method == "net_version":
            return "1"
        if method == "eth_callBundle":
            return "cool"
        raise LookupError(f"no RPC method handler implemented for {method}")

    @staticmethod
    def _error(rpc_id: Any, message: str) -> web.Response:
        LOGGER.debug("returning error: %s", message)
        return web.json_response(
            {"jsonrpc": "2.0", "id": rpc_id, "error": {"code": INTERNAL_ERROR, "message": message}}
        )

    async def handle(self, request: web.Request) -> web.Response:
        self.request_count += 1
        self.last_request_at = time.time()
        self.last_priority = request.headers.get(self.priority_header)

        body = await request.read()
        try:
            rpc = json.loads(body)
        except ValueError as exc:
            return self._error(-1, f"failed to parse JSON RPC request: {exc}")
        if not isinstance(rpc, dict):
            return self._error(-1, "JSON RPC request must be an object")

        self.last_request = rpc
        LOGGER.debug("mock node call method=%s priority=%s", rpc.get("method"), self.last_priority)

        try:
            result = self._dispatch(rpc)
        except LookupError as exc:
            return self._error(rpc.get("id"), str(exc))

        return web.json_response({"jsonrpc": "2.0", "id": rpc.get("id"), "result": result})


async def serve(host: str, port: int, priority_header: str) -> None:
    node = MockNode(priority_header=priority_header)
    runner = web.AppRunner(node.make_app())
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    LOGGER.info("Mock node listening on http://%s:%d/", host, port)
    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()


def main() -> None:
    parser = argparse.ArgumentParser(description="Mock JSON-RPC node backend")
    parser.add_argument("--host", default="localhost")
    parser.add_argument("--port", type=int, default=8095)
    parser.add_argument("--priority-header", default="high_priority")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    setup_logging(args.log_level)
    try:
        asyncio.run(serve(args.host, args.port, args.priority_header))
    except KeyboardInterrupt:
        LOGGER.info("KeyboardInterrupt received; exiting")


if __name__ == "__main__":
    main()
