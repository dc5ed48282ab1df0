"""xDS resource snapshots: JSON persistence, merging and test-specific edits.

Resources are held in their canonical protobuf JSON form, as dictionaries
carrying an ``@type`` key with the resource's type URL.
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Iterable

logger = logging.getLogger(__name__)

_PREFIX = "type.googleapis.com/"

ENDPOINT_TYPE = _PREFIX + "envoy.config.endpoint.v3.ClusterLoadAssignment"
CLUSTER_TYPE = _PREFIX + "envoy.config.cluster.v3.Cluster"
ROUTE_TYPE = _PREFIX + "envoy.config.route.v3.RouteConfiguration"
SCOPED_ROUTE_TYPE = _PREFIX + "envoy.config.route.v3.ScopedRouteConfiguration"
LISTENER_TYPE = _PREFIX + "envoy.config.listener.v3.Listener"
SECRET_TYPE = _PREFIX + "envoy.extensions.transport_sockets.tls.v3.Secret"
RUNTIME_TYPE = _PREFIX + "envoy.service.runtime.v3.Runtime"
EXTENSION_CONFIG_TYPE = _PREFIX + "envoy.config.core.v3.TypedExtensionConfig"

# Order of the resource slots in the serialized snapshot.
RESOURCE_TYPES = (
    ENDPOINT_TYPE,
    CLUSTER_TYPE,
    ROUTE_TYPE,
    SCOPED_ROUTE_TYPE,
    LISTENER_TYPE,
    SECRET_TYPE,
    RUNTIME_TYPE,
    EXTENSION_CONFIG_TYPE,
)

HTTP_CONNECTION_MANAGER_FILTER = "envoy.filters.network.http_connection_manager"
HTTP_CONNECTION_MANAGER_TYPE = (
    _PREFIX
    + "envoy.extensions.filters.network.http_connection_manager.v3.HttpConnectionManager"
)

_REQUIRED_FIELDS = {
    ENDPOINT_TYPE: ("clusterName",),
    SCOPED_ROUTE_TYPE: ("name",),
    RUNTIME_TYPE: ("name",),
    EXTENSION_CONFIG_TYPE: ("name", "typedConfig"),
    LISTENER_TYPE: ("address",),
}

_ADDRESS_KINDS = ("socketAddress", "pipe", "envoyInternalAddress")
_NS_PER_MICROSECOND = 1000


class SnapshotError(Exception):
    """Raised when a snapshot cannot be read, validated or updated."""


@dataclass
class ResourceWithTTL:
    """A resource together with its optional time to live."""

    resource: dict[str, Any]
    ttl: timedelta | None = None


@dataclass(frozen=True)
class TestEndpoint:
    """Address and port of a backend under test."""

    __test__ = False

    host: str
    port: int


@dataclass
class Snapshot:
    """Resources by type URL and name, with a version per type."""

    items: dict[str, dict[str, ResourceWithTTL]] = field(default_factory=dict)
    versions: dict[str, str] = field(default_factory=dict)
    version_map: dict[str, dict[str, str]] | None = None

    def to_json(self) -> str:
        """Serialize the snapshot to its JSON configuration form."""
        entries = []
        for type_url in RESOURCE_TYPES:
            items = self.items.get(type_url)
            entries.append(
                {
                    "Version": self.versions.get(type_url, ""),
                    "Items": None
                    if items is None
                    else {
                        name: {"Resource": item.resource, "TTL": _ttl_to_ns(item.ttl)}
                        for name, item in items.items()
                    },
                }
            )
        return json.dumps({"Resources": entries, "VersionMap": self.version_map})

    @classmethod
    def from_json(cls, data: str | bytes) -> "Snapshot":
        """Parse and validate a snapshot from its JSON configuration form."""
        try:
            values = json.loads(data)
        except (ValueError, TypeError) as exc:
            raise SnapshotError(f"invalid snapshot JSON: {exc}") from exc
        if not isinstance(values, dict):
            raise SnapshotError("snapshot JSON must be an object")
        if "VersionMap" not in values:
            raise SnapshotError("failed to unmarshal VersionMap: key is missing")
        version_map = values["VersionMap"]
        if version_map is not None and not isinstance(version_map, dict):
            raise SnapshotError("failed to unmarshal VersionMap: not an object")

        raw_entries = values.get("Resources")
        if raw_entries is None:
            raw_entries = []
        if not isinstance(raw_entries, list):
            raise SnapshotError("failed to read the Resources list")

        snapshot = cls(version_map=version_map)
        for entry in raw_entries[: len(RESOURCE_TYPES)]:
            if entry is None:
                continue
            if not isinstance(entry, dict):
                raise SnapshotError("failed to read a typed resource entry")
            raw_items = entry.get("Items") or {}
            if not isinstance(raw_items, dict):
                raise SnapshotError("failed to read the items of a typed resource entry")

            type_url: str | None = None
            items: dict[str, ResourceWithTTL] = {}
            for name, raw_item in raw_items.items():
                if not isinstance(raw_item, dict) or "Resource" not in raw_item:
                    raise SnapshotError(f"failed to read resource {name!r}")
                resource = raw_item["Resource"]
                resource_type = _validate_resource(resource)
                if type_url is None:
                    type_url = resource_type
                items[name] = ResourceWithTTL(resource, _ttl_from_ns(raw_item.get("TTL"), name))

            if not items or type_url is None:
                continue

            version = entry.get("Version") or ""
            if not isinstance(version, str):
                raise SnapshotError("failed to unmarshal version")
            snapshot.items[type_url] = items
            snapshot.versions[type_url] = version
        return snapshot

    def get_version(self, type_url: str) -> str:
        """Return the version of the resources of the given type."""
        return self.versions.get(type_url, "")

    def get_resources_and_ttl(self, type_url: str) -> dict[str, ResourceWithTTL]:
        """Return the named resources of the given type."""
        return dict(self.items.get(type_url, {}))

    def consistent(self) -> None:
        """Check that clusters and listeners reference exactly the endpoints and routes present."""
        endpoint_refs: set[str] = set()
        for item in self.items.get(CLUSTER_TYPE, {}).values():
            cluster = item.resource
            if cluster.get("type") != "EDS":
                continue
            service = (cluster.get("edsClusterConfig") or {}).get("serviceName")
            endpoint_refs.add(service or cluster.get("name", ""))
        _check_references("endpoint", endpoint_refs, self.items.get(ENDPOINT_TYPE, {}))

        route_refs: set[str] = set()
        for item in self.items.get(LISTENER_TYPE, {}).values():
            route_refs.update(_listener_route_names(item.resource))
        _check_references("route", route_refs, self.items.get(ROUTE_TYPE, {}))


def _validate_resource(resource: Any) -> str:
    if not isinstance(resource, dict):
        raise SnapshotError("resource must be a JSON object")
    type_url = resource.get("@type")
    if type_url not in RESOURCE_TYPES:
        raise SnapshotError(f"unsupported resource type: {type_url!r}")
    if type_url == LISTENER_TYPE and resource.get("apiListener") is not None:
        return type_url
    for required in _REQUIRED_FIELDS.get(type_url, ()):
        if not resource.get(required):
            raise SnapshotError(
                f"failed to validate the parsed resource: {type_url}: missing {required}"
            )
    return type_url


def _ttl_to_ns(ttl: timedelta | None) -> int | None:
    if ttl is None:
        return None
    return ttl // timedelta(microseconds=1) * _NS_PER_MICROSECOND


def _ttl_from_ns(value: Any, name: str) -> timedelta | None:
    if value is None:
        logger.info("No TTL is set for resource: %s", name)
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise SnapshotError(f"failed to unmarshal TTL of resource {name!r}")
    return timedelta(microseconds=value // _NS_PER_MICROSECOND)


def _listener_route_names(listener: dict[str, Any]) -> Iterable[str]:
    for chain in listener.get("filterChains") or []:
        for flt in chain.get("filters") or []:
            if flt.get("name") != HTTP_CONNECTION_MANAGER_FILTER:
                continue
            config = flt.get("typedConfig") or {}
            if config.get("@type") != HTTP_CONNECTION_MANAGER_TYPE:
                continue
            rds = config.get("rds")
            if isinstance(rds, dict):
                yield rds.get("routeConfigName", "")


def _check_references(kind: str, refs: set[str], items: dict[str, ResourceWithTTL]) -> None:
    if len(refs) != len(items):
        raise SnapshotError(
            f"mismatched {kind} reference and resource lengths: {sorted(refs)} != {len(items)}"
        )
    missing = refs - items.keys()
    if missing:
        raise SnapshotError(f"inconsistent {kind} references: missing {sorted(missing)}")


def _has_address(listener: dict[str, Any]) -> bool:
    address = listener.get("address")
    return isinstance(address, dict) and any(kind in address for kind in _ADDRESS_KINDS)


def _load(path: str | Path, description: str) -> Snapshot:
    try:
        data = Path(path).read_bytes()
    except OSError as exc:
        raise SnapshotError(
            f"failed to read the {description} configuration from path: {path}"
        ) from exc
    try:
        return Snapshot.from_json(data)
    except SnapshotError as exc:
        raise SnapshotError(
            f"failed to unmarshal the {description} configuration from path {path}: {exc}"
        ) from exc


def generate_snapshot_from_config_files(
    default_config_path: str | Path, user_supplied_config_path: str | Path
) -> Snapshot:
    """Build a snapshot from the default configuration, overridden per type by the user's."""
    default = _load(default_config_path, "default")
    if not Path(user_supplied_config_path).exists():
        logger.info(
            "user did not supply configurations for xDS server, use default config at %s",
            default_config_path,
        )
        return default

    user = _load(user_supplied_config_path, "user supplied")
    merged = Snapshot()
    for type_url in RESOURCE_TYPES:
        source = user.items.get(type_url) or default.items.get(type_url)
        if source:
            merged.items[type_url] = {
                name: ResourceWithTTL(item.resource, item.ttl) for name, item in source.items()
            }
        if user.versions.get(type_url):
            merged.versions[type_url] = user.versions[type_url]
    return merged


def _lb_endpoint(backend: TestEndpoint) -> dict[str, Any]:
    return {
        "endpoint": {
            "address": {
                "socketAddress": {"address": backend.host, "portValue": backend.port}
            }
        }
    }


def update_endpoint(snapshot: Snapshot, endpoints: list[TestEndpoint]) -> None:
    """Replace the backends of the first cluster's endpoint resource with the given ones."""
    clusters = snapshot.items.get(CLUSTER_TYPE, {})
    first = next(iter(clusters.values()), None)
    if first is None:
        return

    service_name = (first.resource.get("edsClusterConfig") or {}).get("serviceName", "")
    endpoint_items = snapshot.items.get(ENDPOINT_TYPE, {})
    if service_name not in endpoint_items:
        raise SnapshotError(f"no endpoint resource named {service_name!r} for the cluster")

    assignment = copy.deepcopy(endpoint_items[service_name].resource)
    localities = assignment.get("endpoints") or []
    configured = sum(len(locality.get("lbEndpoints") or []) for locality in localities)
    if len(endpoints) != configured:
        raise SnapshotError(
            f"number of endpoint supplied from config : {configured} is different "
            f"from the actual number of backends: {len(endpoints)}"
        )
    if not localities:
        raise SnapshotError(f"endpoint resource {service_name!r} has no locality group")

    localities[0]["lbEndpoints"] = [_lb_endpoint(backend) for backend in endpoints]
    endpoint_items[service_name] = ResourceWithTTL(assignment)


def include_socket_listener_only(snapshot: Snapshot) -> None:
    """Drop every listener that is not a socket listener."""
    listeners = snapshot.items.get(LISTENER_TYPE, {})
    snapshot.items[LISTENER_TYPE] = {
        name: ResourceWithTTL(item.resource, item.ttl)
        for name, item in listeners.items()
        if item.resource.get("apiListener") is None and _has_address(item.resource)
    }


def construct_proxyless_test_target(snapshot: Snapshot) -> str:
    """Return the xds target of the first API listener."""
    for name, item in snapshot.items.get(LISTENER_TYPE, {}).items():
        listener = item.resource
        if listener.get("apiListener") is not None and listener.get("address") is None:
            return "xds:///" + name
    raise SnapshotError("failed to find proxyless target string: no Api_Listener found")


def construct_proxied_test_target(snapshot: Snapshot) -> str:
    """Return the localhost target of the first socket listener."""
    for item in snapshot.items.get(LISTENER_TYPE, {}).values():
        listener = item.resource
        if listener.get("apiListener") is None and _has_address(listener):
            port = (listener["address"].get("socketAddress") or {}).get("portValue", 0)
            return f"localhost:{port}"
    raise SnapshotError("failed to find proxied target string: no socket_listener found")