"""Command that prepares the xDS snapshot, waits for test details and serves it."""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any

from psmharness.snapshot import (
    Snapshot,
    SnapshotError,
    generate_snapshot_from_config_files,
    include_socket_listener_only,
    update_endpoint,
)
from psmharness.update_server import TestInfo, UpdateServer

logger = logging.getLogger(__name__)

DEFAULT_XDS_SERVER_PORT = 18000
DEFAULT_NODE_ID = "test_id"
DEFAULT_CONFIG_PATH = "containers/runtime/xds/config/default_config.json"
DEFAULT_CUSTOM_CONFIG_PATH = "custom-config-path"
DEFAULT_BOOTSTRAP_DIR = "/bootstrap"
BOOTSTRAP_FILE_NAME = "bootstrap.json"
SNAPSHOT_PATH_PREFIX = "/snapshot/"


def build_parser() -> argparse.ArgumentParser:
    """Return the command-line parser of the xDS server."""
    parser = argparse.ArgumentParser(
        prog="xds-server",
        description="Serve xDS resources for a PSM load test.",
        allow_abbrev=False,
    )
    parser.add_argument(
        "-xds-server-port", "--xds-server-port", dest="xds_server_port", type=int,
        default=DEFAULT_XDS_SERVER_PORT,
        help="xDS management server port, this is where Envoy/gRPC client gets update",
    )
    parser.add_argument(
        "-test-update-port", "--test-update-port", dest="test_update_port", type=int,
        default=None,
        help="test update server port, where the endpoints and test type are passed in",
    )
    parser.add_argument(
        "-node-ID", "--node-ID", dest="node_id", default=DEFAULT_NODE_ID, help="Node ID",
    )
    parser.add_argument(
        "-default-config-path", "--default-config-path", dest="default_config_path",
        default=DEFAULT_CONFIG_PATH, help="The path of the default configuration file",
    )
    parser.add_argument(
        "-custom-config-path", "--custom-config-path", dest="custom_config_path",
        default=DEFAULT_CUSTOM_CONFIG_PATH,
        help="The path of the user supplied configuration file",
    )
    parser.add_argument(
        "-validate-only", "--validate-only", dest="validate_only", action="store_true",
        help="Only validate the configuration",
    )
    parser.add_argument(
        "-path-to-bootstrap", "--path-to-bootstrap", dest="path_to_bootstrap", default="",
        help="The original path of the bootstrap file; if unset it is not moved",
    )
    return parser


def prepare_snapshot(default_config_path: str | Path, custom_config_path: str | Path) -> Snapshot:
    """Build the snapshot from the configuration files and check its consistency."""
    snapshot = generate_snapshot_from_config_files(default_config_path, custom_config_path)
    snapshot.consistent()
    return snapshot


def apply_test_info(snapshot: Snapshot, test_info: TestInfo) -> None:
    """Set the test's backends and, for proxied tests, keep only socket listeners."""
    update_endpoint(snapshot, test_info.endpoints)
    if test_info.is_proxied:
        logger.info(
            "running a proxied test, only leave socket listeners for validation reason, "
            "api_listeners are not presented to proxies"
        )
        include_socket_listener_only(snapshot)
        snapshot.consistent()


def move_bootstrap(
    path_to_bootstrap: str | Path, destination_dir: str | Path = DEFAULT_BOOTSTRAP_DIR
) -> Path:
    """Copy the bootstrap file into the shared directory and return the new path."""
    data = Path(path_to_bootstrap).read_bytes()
    destination = Path(destination_dir) / BOOTSTRAP_FILE_NAME
    destination.write_bytes(data)
    destination.chmod(0o755)
    logger.info(
        "bootstrap file for non-proxied clients are moved from %s to %s successfully",
        path_to_bootstrap,
        destination,
    )
    return destination


def _snapshot_handler(snapshot: Snapshot, node_id: str) -> type[BaseHTTPRequestHandler]:
    class _Handler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:
            if self.path == SNAPSHOT_PATH_PREFIX + node_id:
                status, data = 200, snapshot.to_json().encode()
            else:
                status, data = 404, b'{"error": "unknown node"}'
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(data)))
            self.end_headers()
            self.wfile.write(data)

        def log_message(self, format: str, *args: Any) -> None:
            logger.debug(format, *args)

    return _Handler


def _run_xds_server(snapshot: Snapshot, node_id: str, port: int) -> None:
    httpd = ThreadingHTTPServer(("", port), _snapshot_handler(snapshot, node_id))

    def _on_sigterm(signum: int, _frame: object) -> None:
        logger.info(
            "test complete, gracefully shutting down xds server, shutting down on %s",
            signal.Signals(signum).name,
        )
        threading.Thread(target=httpd.shutdown, daemon=True).start()

    try:
        signal.signal(signal.SIGTERM, _on_sigterm)
    except ValueError:
        logger.warning("not in the main thread; SIGTERM will not stop the server")

    logger.info("management server listening on %d", port)
    try:
        httpd.serve_forever()
    finally:
        httpd.server_close()


def main(argv: list[str] | None = None) -> int:
    """Run the xDS server command; return the exit status."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    try:
        snapshot = prepare_snapshot(args.default_config_path, args.custom_config_path)
    except SnapshotError as exc:
        logger.error("fail to generate resource snapshot for xDS server: %s", exc)
        return 1
    logger.info("xDS server resource snapshot is generated successfully")

    if args.validate_only:
        return 0

    if args.test_update_port is None:
        logger.error("the test update port must be given")
        return 2

    if args.path_to_bootstrap:
        try:
            move_bootstrap(args.path_to_bootstrap, DEFAULT_BOOTSTRAP_DIR)
        except OSError as exc:
            logger.error("fail to move bootstrap to %s: %s", DEFAULT_BOOTSTRAP_DIR, exc)
            return 1

    update_server = UpdateServer(snapshot)
    threading.Thread(
        target=update_server.serve, args=(args.test_update_port,), daemon=True
    ).start()

    test_info = update_server.wait_for_test_info()
    try:
        apply_test_info(snapshot, test_info)
    except SnapshotError as exc:
        logger.error("fail to update the snapshot for xDS server: %s", exc)
        return 1

    logger.info("will serve snapshot %s", snapshot)
    _run_xds_server(snapshot, args.node_id, args.xds_server_port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())