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
from psmharness.update_server import TestInfo
from psmharness.xds_main import (
    apply_test_info,
    build_parser,
    main,
    move_bootstrap,
    prepare_snapshot,
)

ENVOY_LISTENER = "defaultTestEnvoyListenerName"
GRPC_LISTENER = "defaultTestGrpcListenerName"
ROUTE = "defaultTestRouteName"
CLUSTER = "defaultTestServiceClusterName"
ENDPOINT = "defaultTestEndpointName"


def _make_snapshot():
    hcm = {"@type": HTTP_CONNECTION_MANAGER_TYPE, "rds": {"routeConfigName": ROUTE}}
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
        LISTENER_TYPE: {
            ENVOY_LISTENER: ResourceWithTTL(
                {
                    "@type": LISTENER_TYPE,
                    "name": ENVOY_LISTENER,
                    "address": {"socketAddress": {"address": "0.0.0.0", "portValue": 1234}},
                    "filterChains": [
                        {"filters": [{"name": HTTP_CONNECTION_MANAGER_FILTER, "typedConfig": hcm}]}
                    ],
                }
            ),
            GRPC_LISTENER: ResourceWithTTL(
                {"@type": LISTENER_TYPE, "name": GRPC_LISTENER, "apiListener": {"apiListener": hcm}}
            ),
        },
    }
    return Snapshot(items=items, versions={t: "testVersion" for t in items})


def _endpoint_address(snapshot):
    assignment = snapshot.items[ENDPOINT_TYPE][ENDPOINT].resource
    return assignment["endpoints"][0]["lbEndpoints"][0]["endpoint"]["address"]["socketAddress"]


@pytest.fixture
def default_config(tmp_path):
    path = tmp_path / "default_config.json"
    path.write_text(_make_snapshot().to_json())
    return path


def test_parser_defaults():
    args = build_parser().parse_args([])
    assert args.xds_server_port == 18000
    assert args.node_id == "test_id"
    assert args.default_config_path == "containers/runtime/xds/config/default_config.json"
    assert args.validate_only is False
    assert args.path_to_bootstrap == ""


def test_parser_accepts_single_dash_flags():
    args = build_parser().parse_args(["-node-ID", "node-a", "-validate-only", "-xds-server-port", "7"])
    assert (args.node_id, args.validate_only, args.xds_server_port) == ("node-a", True, 7)


def test_prepare_snapshot_uses_default_when_custom_missing(tmp_path, default_config):
    snapshot = prepare_snapshot(default_config, tmp_path / "missing.json")
    assert set(snapshot.items[LISTENER_TYPE]) == {ENVOY_LISTENER, GRPC_LISTENER}
    assert snapshot.get_version(CLUSTER_TYPE) == "testVersion"


def test_prepare_snapshot_rejects_inconsistent_config(tmp_path):
    snapshot = _make_snapshot()
    del snapshot.items[ROUTE_TYPE]
    path = tmp_path / "default_config.json"
    path.write_text(snapshot.to_json())
    with pytest.raises(SnapshotError):
        prepare_snapshot(path, tmp_path / "missing.json")


def test_apply_test_info_proxied_keeps_socket_listeners_only():
    snapshot = _make_snapshot()
    apply_test_info(snapshot, TestInfo([TestEndpoint("test-host-1", 1)], True))
    assert set(snapshot.items[LISTENER_TYPE]) == {ENVOY_LISTENER}
    assert _endpoint_address(snapshot) == {"address": "test-host-1", "portValue": 1}


def test_apply_test_info_proxyless_keeps_all_listeners():
    snapshot = _make_snapshot()
    apply_test_info(snapshot, TestInfo([TestEndpoint("test-host-1", 1)], False))
    assert set(snapshot.items[LISTENER_TYPE]) == {ENVOY_LISTENER, GRPC_LISTENER}
    assert _endpoint_address(snapshot)["address"] == "test-host-1"


def test_apply_test_info_rejects_wrong_endpoint_count():
    snapshot = _make_snapshot()
    endpoints = [TestEndpoint("test-host-1", 1), TestEndpoint("test-host-2", 2)]
    with pytest.raises(SnapshotError):
        apply_test_info(snapshot, TestInfo(endpoints, False))


def test_move_bootstrap_copies_content(tmp_path):
    source = tmp_path / "orig.json"
    source.write_bytes(b'{"xds_servers": []}')
    target_dir = tmp_path / "shared"
    target_dir.mkdir()
    destination = move_bootstrap(source, target_dir)
    assert destination == target_dir / "bootstrap.json"
    assert destination.read_bytes() == source.read_bytes()


def test_move_bootstrap_missing_source(tmp_path):
    with pytest.raises(OSError):
        move_bootstrap(tmp_path / "nope.json", tmp_path)


def test_main_validate_only_succeeds(tmp_path, default_config):
    argv = [
        "--default-config-path", str(default_config),
        "--custom-config-path", str(tmp_path / "missing.json"),
        "--validate-only",
    ]
    assert main(argv) == 0


def test_main_fails_for_unreadable_default(tmp_path):
    argv = [
        "--default-config-path", str(tmp_path / "absent.json"),
        "--custom-config-path", str(tmp_path / "missing.json"),
        "--validate-only",
    ]
    assert main(argv) == 1


def test_main_fails_when_bootstrap_missing(tmp_path, default_config):
    argv = [
        "--default-config-path", str(default_config),
        "--custom-config-path", str(tmp_path / "missing.json"),
        "--test-update-port", "0",
        "--path-to-bootstrap", str(tmp_path / "no-bootstrap.json"),
    ]
    assert main(argv) == 1