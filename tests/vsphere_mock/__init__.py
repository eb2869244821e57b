"""In-memory vCenter mock for integration testing.

This module provides a fake ManagementEndpoint and PerformanceSignal that
let the reconciler run end to end without a vCenter Server.

Key Features:
- In-memory VM inventory with power states
- Per-entity error injection for reads and writes (transient or terminal)
- Writes that "succeed" without sticking, to simulate external drift
- Call log and in-flight tracking for ordering and concurrency assertions
- Scripted performance samples for pacing tests

Usage:
    from vsphere_mock import MockEndpoint, MockVM

    endpoint = MockEndpoint([MockVM("vm-01", "web-01", "manual")])
    reconciler = FleetReconciler(endpoint)
    result = await reconciler.execute(ScopeFilter(), "upgradeAtPowerCycle")

    assert endpoint.value_of("vm-01") == "upgradeAtPowerCycle"
"""

from .endpoint import MockEndpoint, MockVM, make_vms
from .signal import MockPerformanceSignal

__all__ = [
    "MockEndpoint",
    "MockPerformanceSignal",
    "MockVM",
    "make_vms",
]
