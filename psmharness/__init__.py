"""Harness pieces for service-mesh load tests: xDS snapshots, a test update server, pod readiness and pool scheduling."""

__version__ = "0.1.0"

__all__ = ["snapshot", "update_server", "xds_main", "ready", "scheduling"]