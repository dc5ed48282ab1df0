"""Waiting for the pods of a load test to become ready.

Pods and load tests are handled in their Kubernetes JSON form: dictionaries
with ``metadata``, ``spec`` and ``status`` keys.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Iterable

from psmharness.update_server import Endpoint

logger = logging.getLogger(__name__)

TIMEOUT_ENV = "READY_TIMEOUT"
DEFAULT_TIMEOUT = 25 * 60.0
OUTPUT_FILE_ENV = "READY_OUTPUT_FILE"
OUTPUT_METADATA_ENV = "METADATA_OUTPUT_FILE"
OUTPUT_NODE_INFO_ENV = "NODE_INFO_OUTPUT_FILE"
DEFAULT_OUTPUT_FILE = "/tmp/loadtest_workers"
DEFAULT_METADATA_OUTPUT_FILE = "/tmp/metadata.json"
DEFAULT_NODE_INFO_OUTPUT_FILE = "/tmp/node_info.json"
KUBE_CONFIG_ENV = "KUBE_CONFIG"

DEFAULT_DRIVER_PORT = 10000
DRIVER_PORT_NAME = "driver"

ROLE_LABEL = "loadtest-role"
DRIVER_ROLE = "driver"
SERVER_ROLE = "server"

# Seconds between subsequent requests for the list of pods.
POLL_INTERVAL = 3.0

Pod = dict[str, Any]
LoadTest = dict[str, Any]


class ReadyTimeoutError(TimeoutError):
    """Raised when the pods of a load test are not ready before the deadline."""


@dataclass(frozen=True)
class NodeInfo:
    """Pod name, pod IP and the node the pod runs on."""

    name: str = ""
    pod_ip: str = ""
    node_name: str = ""

    def _as_json(self) -> dict[str, str]:
        return {"Name": self.name, "PodIP": self.pod_ip, "NodeName": self.node_name}


@dataclass
class NodesInfo:
    """Node information for every pod of a load test."""

    driver: NodeInfo = field(default_factory=NodeInfo)
    servers: list[NodeInfo] = field(default_factory=list)
    clients: list[NodeInfo] = field(default_factory=list)

    def to_json(self) -> str:
        """Serialize the node information; empty lists are written as null."""
        return json.dumps(
            {
                "Driver": self.driver._as_json(),
                "Servers": [n._as_json() for n in self.servers] or None,
                "Clients": [n._as_json() for n in self.clients] or None,
            }
        )


def _metadata(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.get("metadata") or {}


def _spec(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.get("spec") or {}


def _status(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.get("status") or {}


def _pod_ip(pod: Pod) -> str:
    return _status(pod).get("podIP") or ""


def _node_info(pod: Pod) -> NodeInfo:
    return NodeInfo(_metadata(pod).get("name", ""), _pod_ip(pod), _spec(pod).get("nodeName", ""))


def _join_host_port(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def is_pod_ready(pod: Pod) -> bool:
    """Return whether the pod has an IP address and all of its containers are ready."""
    if not _pod_ip(pod):
        return False
    containers = _spec(pod).get("containers") or []
    statuses = _status(pod).get("containerStatuses") or []
    if len(containers) != len(statuses):
        return False
    return all(status.get("ready", False) for status in statuses)


def find_driver_port(pod: Pod) -> int:
    """Return the number of the container port named "driver", or the default port."""
    for container in _spec(pod).get("containers") or []:
        for port in container.get("ports") or []:
            if port.get("name") == DRIVER_PORT_NAME:
                return port.get("containerPort", 0)
    return DEFAULT_DRIVER_PORT


def pods_for_load_test(load_test: LoadTest, pods: Iterable[Pod]) -> list[Pod]:
    """Return the pods owned by the load test, matched by owner UID."""
    uid = _metadata(load_test).get("uid")
    return [
        pod
        for pod in pods
        if any(ref.get("uid") == uid for ref in _metadata(pod).get("ownerReferences") or [])
    ]


def wait_for_ready_pods(
    load_test_getter: Callable[[str], LoadTest],
    pod_lister: Callable[[], list[Pod]],
    test_name: str,
    timeout: float | None,
) -> tuple[list[str], NodesInfo]:
    """Block until the driver has an IP and all workers of the test are ready.

    Returns the ``host:port`` addresses of the workers, servers before
    clients, and the node information. Raises ReadyTimeoutError when the
    timeout in seconds passes first; with no timeout it may wait forever.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    if deadline is None:
        logger.warning("no timeout is set; this could block forever")

    load_test: LoadTest | None = None
    expected_servers = expected_clients = 0
    server_addresses: list[str] = []
    client_addresses: list[str] = []
    nodes_info = NodesInfo()
    driver_matched = False
    matched: set[str] = set()

    while True:
        if deadline is not None and time.monotonic() > deadline:
            raise ReadyTimeoutError(f"deadline exceeded ({timeout}s)")

        if load_test is None:
            try:
                load_test = load_test_getter(test_name)
            except Exception as exc:  # the getter talks to a remote API
                logger.warning("failed to fetch loadtest: %s", exc)
                _sleep_until(deadline)
                continue
            expected_clients = len(_spec(load_test).get("clients") or [])
            expected_servers = len(_spec(load_test).get("servers") or [])

        for pod in pods_for_load_test(load_test, pod_lister()):
            labels = _metadata(pod).get("labels") or {}
            role = labels.get(ROLE_LABEL)
            if role == DRIVER_ROLE:
                if not driver_matched and _pod_ip(pod):
                    nodes_info.driver = _node_info(pod)
                    driver_matched = True
                continue
            if not is_pod_ready(pod):
                continue
            name = _metadata(pod).get("name", "")
            if name in matched:
                continue
            address = _join_host_port(_pod_ip(pod), find_driver_port(pod))
            if role == SERVER_ROLE:
                if len(server_addresses) >= expected_servers:
                    continue
                server_addresses.append(address)
                nodes_info.servers.append(_node_info(pod))
            else:
                if len(client_addresses) >= expected_clients:
                    continue
                client_addresses.append(address)
                nodes_info.clients.append(_node_info(pod))
            matched.add(name)

        if (
            len(client_addresses) == expected_clients
            and len(server_addresses) == expected_servers
            and driver_matched
        ):
            return server_addresses + client_addresses, nodes_info

        _sleep_until(deadline)


def _sleep_until(deadline: float | None) -> None:
    interval = POLL_INTERVAL
    if deadline is not None:
        interval = max(0.0, min(interval, deadline - time.monotonic()))
    time.sleep(interval)


def build_endpoints(server_nodes: Iterable[NodeInfo], port: int) -> list[Endpoint]:
    """Return one endpoint per server node, all on the given port."""
    return [Endpoint(node.pod_ip, port) for node in server_nodes]