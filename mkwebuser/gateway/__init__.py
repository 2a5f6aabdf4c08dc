"""
Privileged command gateway.

Every privileged OS operation the orchestrator needs goes through
``PrivilegedGateway.execute``:
- SubprocessGateway runs the real system tools as root
- SimulatedHost models a host in memory for tests and dry runs
"""

from mkwebuser.gateway.base import (
    CommandResult,
    GatewayOperation,
    PathInfo,
    PrivilegedGateway,
    query,
    run_checked,
    stat_path,
)
from mkwebuser.gateway.simulated import SimulatedHost
from mkwebuser.gateway.subprocess_gateway import SubprocessGateway

__all__ = [
    "CommandResult",
    "GatewayOperation",
    "PathInfo",
    "PrivilegedGateway",
    "SimulatedHost",
    "SubprocessGateway",
    "query",
    "run_checked",
    "stat_path",
]
