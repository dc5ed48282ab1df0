import json
import threading
import urllib.error
import urllib.request

import pytest

from psmharness.snapshot import (
    CLUSTER_TYPE,
    ENDPOINT_TYPE,
    HTTP_CONNECTION_MANAGER_FILTER,
    HTTP_CONNECTION_MANAGER_TYPE,
    LISTENER_TYPE,
    ROUTE_TYPE,
    ResourceWithTTL,
    Snapshot,
    SnapshotError,
    TestEndpoint,
)
from psmharness.update_server import (
    QUIT_PATH,
    UPDATE_PATH,
    Endpoint,
    TestInfo,
    TestUpdateRequest,
    UpdateServer,
)

ENVOY_LISTENER = "defaultTestEnvoyListenerName"
GRPC_LISTENER = "defaultTestGrpcListenerName"
ROUTE = "defaultTestRouteName"
CLUSTER = "defaultTestServiceClusterName"
ENDPOINT = "defaultTestEndpointName"
ENVOY_PORT = 1234


def _make_snapshot(with_listeners=True):
    rds = {"routeConfigName": ROUTE}
    hcm = {"@type": HTTP_CONNECTION_MANAGER_TYPE, "rds": rds}
    items = {
        CLUSTER_TYPE: {
            CLUSTER: ResourceWithTTL(
                {
                    "@type": CLUSTER_TYPE,
                    "name": CLUSTER,
                    "type": "EDS",
                    "edsClusterConfig": {"serviceName": ENDPOINT},
                }
            )
        },
        ENDPOINT_TYPE: {
            ENDPOINT: ResourceWithTTL(
                {
                    "@type": ENDPOINT_TYPE,
                    "clusterName": ENDPOINT,
                    "endpoints": [
                        {
                            "lbEndpoints": [
                                {
                                    "endpoint": {
                                        "address": {
                                            "socketAddress": {
                                                "address": "defaultTestUpstreamHost",
                                                "portValue": 5678,
                                            }
                                        }
                                    }
                                }
                            ]
                        }
                    ],
                }
            )
        },
        ROUTE_TYPE: {ROUTE: ResourceWithTTL({"@type": ROUTE_TYPE, "name": ROUTE})},
    }
    if with_listeners:
        items[LISTENER_TYPE] = {
            ENVOY_LISTENER: ResourceWithTTL(
                {
                    "@type": LISTENER_TYPE,
                    "name": ENVOY_LISTENER,
                    "address": {
                        "socketAddress": {"address": "0.0.0.0", "portValue": ENVOY_PORT}
                    },
                    "filterChains": [
                        {
                            "filters": [
                                {"name": HTTP_CONNECTION_MANAGER_FILTER, "typedConfig": hcm}
                            ]
                        }
                    ],
                }
            ),
            GRPC_LISTENER: ResourceWithTTL(
                {
                    "@type": LISTENER_TYPE,
                    "name": GRPC_LISTENER,
                    "apiListener": {"apiListener": hcm},
                }
            ),
        }
    versions = {type_url: "testVersion" for type_url in items}
    return Snapshot(items=items, versions=versions)


def _post(url, body):
    request = urllib.request.Request(
        url, data=body, method="POST", headers={"Content-Type": "application/json"}
    )
    with urllib.request.urlopen(request, timeout=5) as response:
        return json.load(response)


def test_update_test_proxied_returns_socket_listener_target():
    server = UpdateServer(_make_snapshot())
    target = server.update_test(TestUpdateRequest([Endpoint("10.0.0.1", 5678)], True))
    assert target == f"localhost:{ENVOY_PORT}"


def test_update_test_proxyless_returns_api_listener_target():
    server = UpdateServer(_make_snapshot())
    target = server.update_test(TestUpdateRequest([Endpoint("10.0.0.1", 5678)], False))
    assert target == "xds:///" + GRPC_LISTENER


def test_update_test_queues_test_info():
    server = UpdateServer(_make_snapshot())
    server.update_test(
        TestUpdateRequest([Endpoint("10.0.0.1", 11), Endpoint("10.0.0.2", 12)], True)
    )
    info = server.wait_for_test_info(timeout=1)
    assert info == TestInfo(
        [TestEndpoint("10.0.0.1", 11), TestEndpoint("10.0.0.2", 12)], True
    )


def test_update_test_without_listeners_raises_but_still_queues():
    server = UpdateServer(_make_snapshot(with_listeners=False))
    with pytest.raises(SnapshotError):
        server.update_test(TestUpdateRequest([Endpoint("10.0.0.1", 1)], False))
    assert server.wait_for_test_info(timeout=1).endpoints == [TestEndpoint("10.0.0.1", 1)]


def test_wait_for_test_info_times_out():
    server = UpdateServer(_make_snapshot())
    with pytest.raises(TimeoutError):
        server.wait_for_test_info(timeout=0.05)


def test_quit_without_serving_leaves_port_unset():
    server = UpdateServer(_make_snapshot())
    server.quit_test_update_server()
    assert server.port is None


@pytest.fixture
def running_server():
    server = UpdateServer(_make_snapshot())
    thread = threading.Thread(target=server.serve, args=(0,), daemon=True)
    thread.start()
    assert server.serving.wait(5)
    yield server, thread
    server.quit_test_update_server()
    thread.join(5)


def _valid_body():
    return json.dumps(
        {"endpoints": [{"ipAddress": "10.0.0.1", "port": 5678}], "isProxied": True}
    ).encode()


def test_serve_round_trip_over_http(running_server):
    server, thread = running_server
    base = f"http://127.0.0.1:{server.port}"
    reply = _post(base + UPDATE_PATH, _valid_body())
    assert reply == {"psmServerTargetOverride": f"localhost:{ENVOY_PORT}"}
    assert server.wait_for_test_info(timeout=5) == TestInfo(
        [TestEndpoint("10.0.0.1", 5678)], True
    )

    assert _post(base + QUIT_PATH, b"") == {}
    thread.join(5)
    assert not thread.is_alive()


def test_serve_rejects_malformed_request(running_server):
    server, _ = running_server
    base = f"http://127.0.0.1:{server.port}"
    with pytest.raises(urllib.error.HTTPError) as info:
        _post(base + UPDATE_PATH, b"{not json")
    assert info.value.code == 400
    with pytest.raises(TimeoutError):
        server.wait_for_test_info(timeout=0.05)
    reply = _post(base + UPDATE_PATH, _valid_body())
    assert reply == {"psmServerTargetOverride": f"localhost:{ENVOY_PORT}"}


def test_serve_rejects_bad_endpoint_shape(running_server):
    server, _ = running_server
    base = f"http://127.0.0.1:{server.port}"
    body = json.dumps({"endpoints": [{"ipAddress": 5, "port": "x"}]}).encode()
    with pytest.raises(urllib.error.HTTPError) as info:
        _post(base + UPDATE_PATH, body)
    assert info.value.code == 400
    with pytest.raises(TimeoutError):
        server.wait_for_test_info(timeout=0.05)
    reply = _post(base + UPDATE_PATH, _valid_body())
    assert reply == {"psmServerTargetOverride": f"localhost:{ENVOY_PORT}"}