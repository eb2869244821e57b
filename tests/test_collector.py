"""Tests for the snapshot collector."""

import pytest
from vsphere_mock import MockEndpoint, MockVM, make_vms

from fleet_reconciler.collector import SnapshotCollector
from fleet_reconciler.endpoint import ScopeFilter
from fleet_reconciler.errors import (
    AuthorizationError,
    ConnectivityError,
    EndpointPermissionError,
    NotFoundError,
)
from fleet_reconciler.records import PowerState

FIELD = "tools.toolsUpgradePolicy"
DESIRED = "upgradeAtPowerCycle"


def collector_for(endpoint: MockEndpoint) -> SnapshotCollector:
    return SnapshotCollector(endpoint, FIELD, DESIRED, read_concurrency=4)


class TestSnapshotCollector:
    """Tests for SnapshotCollector.collect()."""

    @pytest.mark.asyncio
    async def test_collects_every_entity(self) -> None:
        """Test that each listed VM becomes a record with its current value."""
        endpoint = MockEndpoint(
            [
                MockVM("vm-1", "web-01", "manual"),
                MockVM("vm-2", "web-02", DESIRED, PowerState.OFF),
            ]
        )

        result = await collector_for(endpoint).collect(ScopeFilter())

        by_id = {r.id: r for r in result.records}
        assert set(by_id) == {"vm-1", "vm-2"}
        assert by_id["vm-1"].current_value == "manual"
        assert by_id["vm-2"].power_state == PowerState.OFF
        assert by_id["vm-2"].desired_value == DESIRED
        assert result.degraded_count == 0

    @pytest.mark.asyncio
    async def test_read_failure_degrades_record(self) -> None:
        """Test that a failed read yields an unknown value instead of aborting."""
        endpoint = MockEndpoint(
            [MockVM("vm-1", "web-01", "manual"), MockVM("vm-2", "web-02", "manual")]
        )
        endpoint.inject_read_error("vm-2", EndpointPermissionError("no read privilege"))

        result = await collector_for(endpoint).collect(ScopeFilter())

        by_id = {r.id: r for r in result.records}
        assert by_id["vm-2"].current_value is None
        assert by_id["vm-2"].degraded
        assert not by_id["vm-1"].degraded
        assert result.degraded_count == 1

    @pytest.mark.asyncio
    async def test_unexpected_read_error_degrades_record(self) -> None:
        """Test that any non-fatal read error degrades only that record."""
        endpoint = MockEndpoint(
            [MockVM("vm-1", "web-01", "manual"), MockVM("vm-2", "web-02", "manual")]
        )
        endpoint.inject_read_error("vm-1", RuntimeError("boom"))

        result = await collector_for(endpoint).collect(ScopeFilter())

        by_id = {r.id: r for r in result.records}
        assert by_id["vm-1"].degraded
        assert by_id["vm-2"].current_value == "manual"
        assert result.degraded_count == 1

    @pytest.mark.asyncio
    async def test_vanished_entity_is_degraded(self) -> None:
        """Test that an entity deleted between list and read is degraded."""
        endpoint = MockEndpoint([MockVM("vm-1", "web-01", "manual")])
        endpoint.inject_read_error("vm-1", NotFoundError("gone"))

        result = await collector_for(endpoint).collect(ScopeFilter())

        assert result.records[0].degraded

    @pytest.mark.asyncio
    async def test_connectivity_failure_propagates(self) -> None:
        """Test that losing the endpoint aborts the collection."""
        endpoint = MockEndpoint([MockVM("vm-1", "web-01", "manual")])
        endpoint.fail_listing(ConnectivityError("vcenter unreachable"))

        with pytest.raises(ConnectivityError):
            await collector_for(endpoint).collect(ScopeFilter())

    @pytest.mark.asyncio
    async def test_authorization_failure_on_read_propagates(self) -> None:
        """Test that a session rejection during reads aborts the collection."""
        endpoint = MockEndpoint([MockVM("vm-1", "web-01", "manual")])
        endpoint.inject_read_error("vm-1", AuthorizationError("session expired"))

        with pytest.raises(AuthorizationError):
            await collector_for(endpoint).collect(ScopeFilter())

    @pytest.mark.asyncio
    async def test_fatal_read_error_stops_remaining_reads(self) -> None:
        """Test that reads still queued are abandoned once the collection fails."""
        endpoint = MockEndpoint(make_vms(10))
        endpoint.inject_read_error("vm-01", AuthorizationError("session expired"))
        collector = SnapshotCollector(endpoint, FIELD, DESIRED, read_concurrency=1)

        with pytest.raises(AuthorizationError):
            await collector.collect(ScopeFilter())

        reads = [eid for op, eid, _ in endpoint.calls if op == "read"]
        assert reads[0] == "vm-01"
        assert len(reads) <= 2
        assert "vm-10" not in reads

    @pytest.mark.asyncio
    async def test_duplicate_ids_are_dropped(self) -> None:
        """Test that a repeated entity id is only collected once."""
        endpoint = MockEndpoint([MockVM("vm-1", "web-01", "manual")])
        endpoint.add_duplicate(MockVM("vm-1", "web-01-copy", "manual"))

        result = await collector_for(endpoint).collect(ScopeFilter())

        assert [r.id for r in result.records] == ["vm-1"]
        assert result.records[0].name == "web-01"
        assert result.duplicate_count == 1
        assert result.listed_count == 2

    @pytest.mark.asyncio
    async def test_scope_filters_by_name(self) -> None:
        """Test include and exclude patterns."""
        endpoint = MockEndpoint(
            [
                MockVM("vm-1", "web-01", "manual"),
                MockVM("vm-2", "web-02", "manual"),
                MockVM("vm-3", "db-01", "manual"),
            ]
        )
        scope = ScopeFilter(include=("WEB-*",), exclude=("*-02",))

        result = await collector_for(endpoint).collect(scope)

        assert [r.id for r in result.records] == ["vm-1"]

    @pytest.mark.asyncio
    async def test_empty_inventory(self) -> None:
        """Test collecting from an endpoint with no entities."""
        result = await collector_for(MockEndpoint()).collect(ScopeFilter())

        assert result.records == []
        assert result.degraded_count == 0


class TestScopeFilter:
    """Tests for ScopeFilter.matches()."""

    def test_empty_scope_matches_everything(self) -> None:
        """Test that no patterns means everything is in scope."""
        assert ScopeFilter().matches("anything")

    def test_exclude_wins_over_include(self) -> None:
        """Test that exclusion is applied first."""
        scope = ScopeFilter(include=("web-*",), exclude=("web-legacy-*",))

        assert scope.matches("web-01")
        assert not scope.matches("web-legacy-01")
        assert not scope.matches("db-01")
