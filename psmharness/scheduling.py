"""Gang-scheduling decisions for load tests: pool capacity, availability and requeue times.

Nodes and pods are handled in their Kubernetes JSON form: dictionaries with
``metadata``, ``spec`` and ``status`` keys.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping

logger = logging.getLogger(__name__)

POOL_LABEL = "pool"

# Keys under which pods that did not name a pool are counted before the
# default pools of the cluster are known.
DEFAULT_CLIENT_POOL = "default-client-pool"
DEFAULT_DRIVER_POOL = "default-driver-pool"
DEFAULT_SERVER_POOL = "default-server-pool"

POD_SUCCEEDED = "Succeeded"
POD_FAILED = "Failed"

# How long to wait before retrying when a pool has too few free nodes.
INADEQUATE_AVAILABILITY_RETRY = timedelta(seconds=5)


class PoolError(Exception):
    """Raised when a load test asks for nodes from a pool that does not exist."""


@dataclass(frozen=True)
class PoolLabels:
    """One value per component role: label keys, or the names of the matching pools."""

    client: str | None = None
    driver: str | None = None
    server: str | None = None


@dataclass(frozen=True)
class ScheduleDecision:
    """Whether the missing pods fit now, and if not, which pool blocks them."""

    schedulable: bool
    pool: str | None = None
    required: int = 0
    available: int = 0
    requeue_after: timedelta | None = None


def _labels(obj: Mapping[str, Any]) -> Mapping[str, str]:
    return (obj.get("metadata") or {}).get("labels") or {}


def _name(obj: Mapping[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("name", "")


def pool_capacities(
    nodes: Iterable[Mapping[str, Any]],
    pool_label: str = POOL_LABEL,
    default_pool_labels: PoolLabels | None = None,
) -> tuple[dict[str, int], PoolLabels]:
    """Count the nodes in each pool and find the default pool of each role.

    The default pool of a role is the pool of the first node that carries
    the role's default label. Nodes without a pool label are skipped.
    """
    capacities: dict[str, int] = {}
    client = driver = server = None
    for node in nodes:
        labels = _labels(node)
        pool = labels.get(pool_label)
        if pool is None:
            logger.info("encountered a node without a pool label: %s", _name(node))
            continue
        if default_pool_labels is not None:
            if client is None and default_pool_labels.client in labels:
                client = pool
            if driver is None and default_pool_labels.driver in labels:
                driver = pool
            if server is None and default_pool_labels.server in labels:
                server = pool
        capacities[pool] = capacities.get(pool, 0) + 1
    return capacities, PoolLabels(client=client, driver=driver, server=server)


def pool_availabilities(
    capacities: Mapping[str, int],
    pods: Iterable[Mapping[str, Any]],
    pool_label: str = POOL_LABEL,
) -> dict[str, int]:
    """Subtract every pod that has not finished from the capacity of its pool."""
    availabilities = dict(capacities)
    for pod in pods:
        pool = _labels(pod).get(pool_label)
        if pool is None:
            logger.info("encountered a pod without a pool label: %s", _name(pod))
            continue
        phase = (pod.get("status") or {}).get("phase")
        if phase not in (POD_SUCCEEDED, POD_FAILED):
            availabilities[pool] = availabilities.get(pool, 0) - 1
    return availabilities


def resolve_default_pools(
    node_count_by_pool: Mapping[str, int], default_pools: PoolLabels
) -> dict[str, int]:
    """Move the counts kept under the default-pool keys onto the actual default pools.

    Raises PoolError when nodes are needed from a default pool the cluster
    does not define.
    """
    counts = dict(node_count_by_pool)
    for key, pool_name in (
        (DEFAULT_CLIENT_POOL, default_pools.client),
        (DEFAULT_DRIVER_POOL, default_pools.driver),
        (DEFAULT_SERVER_POOL, default_pools.server),
    ):
        count = counts.pop(key, 0)
        if count > 0:
            if not pool_name:
                raise PoolError(
                    f'default pool "{key}" is not defined or does not existed in the cluster'
                )
            counts[pool_name] = counts.get(pool_name, 0) + count
    return counts


def check_schedulable(
    node_count_by_pool: Mapping[str, int], availabilities: Mapping[str, int]
) -> ScheduleDecision:
    """Decide whether every pool has enough free nodes for the missing pods.

    Raises PoolError when a requested pool does not exist.
    """
    for pool, required in node_count_by_pool.items():
        if pool not in availabilities:
            raise PoolError(f'requested pool "{pool}" does not exist')
        available = availabilities[pool]
        if required > available:
            logger.info(
                "cannot schedule test: inadequate availability for pool %s "
                "(required %d, available %d)",
                pool,
                required,
                available,
            )
            return ScheduleDecision(
                schedulable=False,
                pool=pool,
                required=required,
                available=available,
                requeue_after=INADEQUATE_AVAILABILITY_RETRY,
            )
    return ScheduleDecision(schedulable=True)


def get_requeue_time(
    previous_status: Mapping[str, Any],
    updated_status: Mapping[str, Any],
    timeout_seconds: int,
    ttl_seconds: int,
) -> timedelta:
    """Return how long to wait before looking at the load test again.

    Statuses carry ``startTime`` and ``stopTime`` datetimes, or None. A test
    that has just started is checked again after its timeout; one that has
    just stopped, when its time to live runs out. Otherwise zero.
    """
    start = updated_status.get("startTime")
    stop = updated_status.get("stopTime")
    if previous_status.get("startTime") is None and start is not None:
        requeue = timedelta(seconds=timeout_seconds)
        logger.info(
            "just started, should be marked as error if still running at: %s",
            datetime.now(timezone.utc) + requeue,
        )
        return requeue
    if previous_status.get("stopTime") is None and stop is not None:
        requeue = timedelta(seconds=ttl_seconds) - (stop - start)
        logger.info("just end, should be deleted at: %s", datetime.now(timezone.utc) + requeue)
        return requeue
    return timedelta(0)


def is_expired(start_time: datetime, ttl_seconds: int, now: datetime | None = None) -> bool:
    """Return whether a test started at the given time has outlived its time to live."""
    if now is None:
        now = datetime.now(timezone.utc)
    return now - start_time >= timedelta(seconds=ttl_seconds)