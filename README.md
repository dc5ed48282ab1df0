# psmharness

Building blocks for service-mesh load tests. In these tests the clients
reach their servers in one of two ways: directly through xDS (proxyless),
or through an Envoy sidecar (proxied).

The package has no dependencies beyond the Python standard library
(Python 3.10 or later).

## Modules

- **`psmharness.snapshot`**: xDS resource snapshots held as protobuf-JSON
  dictionaries, each with an `@type` key.
  - `Snapshot.from_json` / `Snapshot.to_json` read and write the JSON
    configuration form: a `Resources` list of `{"Version", "Items"}` entries,
    plus a `VersionMap` key.
  - `Snapshot.consistent()` checks that the clusters and listeners refer to
    exactly the endpoint and route resources that are present.
  - `generate_snapshot_from_config_files(default, user)` loads the default
    file. If the user file exists, its resources replace the default ones
    one resource type at a time.
  - `update_endpoint(snapshot, endpoints)` replaces the backends of the first
    cluster's endpoint resource. The number of backends must match the number
    configured.
  - `include_socket_listener_only(snapshot)` removes the API listeners.
  - `construct_proxyless_test_target` returns `xds:///<listener>`.
  - `construct_proxied_test_target` returns `localhost:<port>`.

  Failures raise `SnapshotError`.
- **`psmharness.update_server`**: `UpdateServer`, a small HTTP/JSON server.
  - `POST /update-test` takes
    `{"endpoints": [{"ipAddress": ..., "port": ...}], "isProxied": ...}`.
    It queues a `TestInfo` and answers with
    `{"psmServerTargetOverride": <target>}`.
  - `POST /quit` stops the server.
  - `wait_for_test_info(timeout)` blocks until a `TestInfo` arrives.
- **`psmharness.xds_main`**: the `psmharness-xds` command, together with its
  helpers `build_parser`, `prepare_snapshot`, `apply_test_info` and
  `move_bootstrap`.
- **`psmharness.ready`**: `wait_for_ready_pods(getter, lister, name, timeout)`
  polls until two things are true: the driver pod has an IP, and every server
  and client pod owned by the test is ready. It then returns the workers'
  `host:port` driver addresses, servers first, and a `NodesInfo`.
  - The port comes from a container port named `driver`. If there is none,
    the port is 10000.
  - Pods and load tests are Kubernetes-JSON dictionaries.
  - If the timeout passes first, it raises `ReadyTimeoutError`.

  The module also provides `is_pod_ready`, `find_driver_port`,
  `pods_for_load_test` and `build_endpoints`.
- **`psmharness.scheduling`**: pool bookkeeping for gang scheduling.
  - `pool_capacities` and `pool_availabilities` count nodes per pool. Pods
    that have finished do not occupy a node.
  - `resolve_default_pools` and `check_schedulable` decide placement. When a
    pool does not exist they raise `PoolError`. When a pool lacks nodes,
    `check_schedulable` returns a `ScheduleDecision` that asks for a retry
    after 5 seconds.
  - `get_requeue_time` and `is_expired` handle timeout and time-to-live
    handling.

## The `psmharness-xds` command

```
psmharness-xds --default-config-path default_config.json \
               --custom-config-path custom_config.json \
               --test-update-port 18005
```

The command works in these steps:

1. It loads and merges the configuration files and checks that the result is
   consistent.
2. With `--validate-only`, it exits at this point.
3. If `--path-to-bootstrap` is given, it copies that file to
   `/bootstrap/bootstrap.json`.
4. It starts the update server on `--test-update-port`, which is required
   unless you only validate, and waits for the test information.
5. It applies the endpoints to the snapshot. For a proxied test it keeps only
   the socket listeners.
6. It serves the snapshot as JSON at `GET /snapshot/<node-ID>` on
   `--xds-server-port` (default 18000) until it receives SIGTERM.

Other options:

- `--node-ID` (default `test_id`).
- Every option can also be written with a single dash.

Exit status:

- 0 on success.
- 1 when the snapshot or the bootstrap copy fails.
- 2 when the update port is missing.

## Library use

```python
from psmharness.snapshot import (
    TestEndpoint,
    construct_proxyless_test_target,
    generate_snapshot_from_config_files,
    update_endpoint,
)

snapshot = generate_snapshot_from_config_files("default.json", "custom.json")
update_endpoint(snapshot, [TestEndpoint("10.0.0.5", 10010)])
print(construct_proxyless_test_target(snapshot))
```

```python
from psmharness.ready import wait_for_ready_pods

# getter(name) returns the load test; lister() returns the list of pods
addresses, nodes = wait_for_ready_pods(getter, lister, "my-test", timeout=1500)
print(",".join(addresses))
print(nodes.to_json())
```

## What the package does not do

- It does not speak the xDS/ADS gRPC protocol. The snapshot is served as
  plain JSON over HTTP, and the update server uses HTTP/JSON, not gRPC.
- It has no Kubernetes client and no controller loop. `ready` and
  `scheduling` work on dictionaries and callables that you supply.
- It has no command for the readiness wait.

## Running the tests

```
pip install ".[test]"
pytest
```