"""Test update server: receives backend endpoints and the test type.

A client posts the list of backends and whether the test is proxied. The
server hands this information to whoever waits for it and answers with the
target string the load test should use.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from psmharness.snapshot import (
    Snapshot,
    SnapshotError,
    TestEndpoint,
    construct_proxied_test_target,
    construct_proxyless_test_target,
)

logger = logging.getLogger(__name__)

UPDATE_PATH = "/update-test"
QUIT_PATH = "/quit"


@dataclass(frozen=True)
class Endpoint:
    """Address and port of one backend, as sent by the client."""

    ip_address: str
    port: int


@dataclass
class TestUpdateRequest:
    """Backends of the test and whether the test runs through a proxy."""

    __test__ = False

    endpoints: list[Endpoint] = field(default_factory=list)
    is_proxied: bool = False


@dataclass
class TestInfo:
    """Backends and test type handed over to the xDS server."""

    __test__ = False

    endpoints: list[TestEndpoint]
    is_proxied: bool


def _parse_request(payload: Any) -> TestUpdateRequest:
    if not isinstance(payload, dict):
        raise ValueError("request must be a JSON object")
    raw_endpoints = payload.get("endpoints") or []
    if not isinstance(raw_endpoints, list):
        raise ValueError("endpoints must be a list")
    endpoints = []
    for raw in raw_endpoints:
        if not isinstance(raw, dict):
            raise ValueError("each endpoint must be a JSON object")
        address = raw.get("ipAddress", "")
        port = raw.get("port", 0)
        if not isinstance(address, str) or isinstance(port, bool) or not isinstance(port, int):
            raise ValueError("endpoint needs a string ipAddress and an integer port")
        endpoints.append(Endpoint(address, port))
    is_proxied = payload.get("isProxied", False)
    if not isinstance(is_proxied, bool):
        raise ValueError("isProxied must be a boolean")
    return TestUpdateRequest(endpoints, is_proxied)


class UpdateServer:
    """Serves test updates for one snapshot and queues the received test information."""

    def __init__(self, snapshot: Snapshot) -> None:
        self.snapshot = snapshot
        self.port: int | None = None
        self.serving = threading.Event()
        self._test_info: queue.Queue[TestInfo] = queue.Queue()
        self._httpd: ThreadingHTTPServer | None = None

    def update_test(self, request: TestUpdateRequest) -> str:
        """Queue the request's test information and return the server target to use."""
        logger.info("Running proxied test: %s", request.is_proxied)
        endpoints = []
        for endpoint in request.endpoints:
            endpoints.append(TestEndpoint(endpoint.ip_address, endpoint.port))
            logger.info("Received endpoint: %s:%s", endpoint.ip_address, endpoint.port)
        info = TestInfo(endpoints, request.is_proxied)
        try:
            if request.is_proxied:
                return construct_proxied_test_target(self.snapshot)
            return construct_proxyless_test_target(self.snapshot)
        finally:
            self._test_info.put(info)

    def quit_test_update_server(self) -> None:
        """Stop serving, without waiting for the server to finish."""
        logger.info("Shutting down the test update server")
        httpd = self._httpd
        if httpd is not None:
            threading.Thread(target=httpd.shutdown, daemon=True).start()

    def serve(self, port: int) -> None:
        """Listen on the given port and serve until stopped."""
        httpd = ThreadingHTTPServer(("", port), _make_handler(self))
        self._httpd = httpd
        self.port = httpd.server_address[1]
        logger.info("Endpoint update server listening at port %d", self.port)
        self.serving.set()
        try:
            httpd.serve_forever()
        finally:
            httpd.server_close()
        logger.info("test update server stopped")

    def wait_for_test_info(self, timeout: float | None = None) -> TestInfo:
        """Block until test information arrives; raise TimeoutError after the timeout."""
        try:
            return self._test_info.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError("no test information received") from None


def _make_handler(server: UpdateServer) -> type[BaseHTTPRequestHandler]:
    class _Handler(BaseHTTPRequestHandler):
        def do_POST(self) -> None:
            if self.path == UPDATE_PATH:
                self._handle_update()
            elif self.path == QUIT_PATH:
                self._reply(200, {})
                server.quit_test_update_server()
            else:
                self._reply(404, {"error": f"unknown path {self.path}"})

        def _handle_update(self) -> None:
            length = int(self.headers.get("Content-Length") or 0)
            try:
                request = _parse_request(json.loads(self.rfile.read(length) or b"null"))
            except ValueError as exc:
                self._reply(400, {"error": str(exc)})
                return
            try:
                target = server.update_test(request)
            except SnapshotError as exc:
                self._reply(500, {"error": str(exc)})
                return
            self._reply(200, {"psmServerTargetOverride": target})

        def _reply(self, status: int, body: dict[str, Any]) -> None:
            data = json.dumps(body).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(data)))
            self.end_headers()
            self.wfile.write(data)

        def log_message(self, format: str, *args: Any) -> None:
            logger.debug(format, *args)

    return _Handler