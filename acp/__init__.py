"""Availability Control Plane (ACP).

Control plane for a zoned, containerized workload that demonstrates:
 - outbound-only NAT session tracking per zone
 - consecutive-threshold health tracking per backend
 - zone failure detection and failover
 - health-gated weighted routing
 - staged revision rollouts with automatic rollback
"""

__version__ = "0.3.0"
