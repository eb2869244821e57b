"""Tests for the vSphere adapter.

The service instance is mocked; faults are real pyVmomi types so the
translation table is checked against the SDK's class hierarchy.
"""

from unittest.mock import MagicMock, patch

import pytest
from pyVmomi import vim, vmodl

from fleet_reconciler.endpoint import ScopeFilter
from fleet_reconciler.errors import (
    AuthorizationError,
    ConflictError,
    ConnectivityError,
    EndpointError,
    EndpointPermissionError,
    EndpointTimeoutError,
    InvalidValueError,
    NotFoundError,
)
from fleet_reconciler.pacing import ErrorRateCounter
from fleet_reconciler.records import PowerState
from fleet_reconciler.vsphere import (
    VSphereEndpoint,
    VSphereHealthSignal,
    VSphereSession,
    translate_fault,
    translated_faults,
)


def make_vm(moid: str, policy: str | None = "manual") -> MagicMock:
    vm = MagicMock()
    vm._moId = moid
    vm.config.tools.toolsUpgradePolicy = policy
    return vm


def make_endpoint(objects: list[tuple[MagicMock, dict[str, object]]]) -> VSphereEndpoint:
    session = MagicMock(spec=VSphereSession)
    session.host = "vc1.example.com"
    endpoint = VSphereEndpoint(session)
    with patch.object(VSphereEndpoint, "_collect_properties", return_value=objects):
        endpoint.list_entities(ScopeFilter())
    return endpoint


class TestTranslateFault:
    """Tests for translate_fault()."""

    @pytest.mark.parametrize(
        ("fault", "expected"),
        [
            (vim.fault.NotAuthenticated(), AuthorizationError),
            (vim.fault.InvalidLogin(), AuthorizationError),
            (vim.fault.NoPermission(), EndpointPermissionError),
            (vmodl.fault.ManagedObjectNotFound(), NotFoundError),
            (vim.fault.TaskInProgress(), ConflictError),
            (vim.fault.ConcurrentAccess(), ConflictError),
            (vim.fault.Timedout(), EndpointTimeoutError),
            (vmodl.fault.HostCommunication(), ConnectivityError),
            (vmodl.fault.InvalidArgument(), InvalidValueError),
            (vim.fault.InvalidState(), InvalidValueError),
            (vmodl.fault.NotSupported(), InvalidValueError),
        ],
    )
    def test_mapping(self, fault: Exception, expected: type) -> None:
        """Test that vSphere faults map onto the endpoint error taxonomy."""
        assert type(translate_fault(fault)) is expected

    def test_unmapped_fault(self) -> None:
        """Test that unknown faults become a plain EndpointError."""
        error = translate_fault(vim.fault.FileNotFound())

        assert type(error) is EndpointError
        assert "FileNotFound" in str(error)

    def test_context_manager_translates(self) -> None:
        """Test that faults and socket errors are re-raised as EndpointErrors."""
        with pytest.raises(ConflictError):
            with translated_faults("write"):
                raise vim.fault.TaskInProgress()

        with pytest.raises(ConnectivityError):
            with translated_faults("write"):
                raise ConnectionResetError("reset by peer")


class TestVSphereEndpoint:
    """Tests for VSphereEndpoint."""

    def test_list_entities(self) -> None:
        """Test listing VMs with their power state."""
        session = MagicMock(spec=VSphereSession)
        session.host = "vc1.example.com"
        endpoint = VSphereEndpoint(session)
        objects = [
            (make_vm("vm-1"), {"name": "web-01", "runtime.powerState": "poweredOn"}),
            (make_vm("vm-2"), {"name": "web-02", "runtime.powerState": "poweredOff"}),
            (make_vm("vm-3"), {"name": "tmpl", "config.template": True}),
        ]

        with patch.object(VSphereEndpoint, "_collect_properties", return_value=objects):
            entities = endpoint.list_entities(ScopeFilter())

        assert [(e.id, e.name, e.power_state) for e in entities] == [
            ("vm-1", "web-01", PowerState.ON),
            ("vm-2", "web-02", PowerState.OFF),
        ]
        assert endpoint.name == "vc1.example.com"

    def test_templates_are_not_listed(self) -> None:
        """Test that templates never become entities."""
        endpoint = make_endpoint(
            [(make_vm("vm-3"), {"name": "tmpl", "config.template": True})]
        )

        with pytest.raises(NotFoundError):
            endpoint.read_field("vm-3", "tools.toolsUpgradePolicy")

    def test_read_field(self) -> None:
        """Test reading a dotted config path."""
        endpoint = make_endpoint([(make_vm("vm-1", "upgradeAtPowerCycle"), {"name": "a"})])

        assert endpoint.read_field("vm-1", "tools.toolsUpgradePolicy") == "upgradeAtPowerCycle"

    def test_read_field_without_config(self) -> None:
        """Test that an inaccessible VM reads as unknown."""
        vm = make_vm("vm-1")
        vm.config = None
        endpoint = make_endpoint([(vm, {"name": "a"})])

        assert endpoint.read_field("vm-1", "tools.toolsUpgradePolicy") is None

    def test_read_unknown_vm(self) -> None:
        """Test that reading a VM that was not listed raises NotFoundError."""
        endpoint = make_endpoint([])

        with pytest.raises(NotFoundError):
            endpoint.read_field("vm-404", "tools.toolsUpgradePolicy")

    def test_write_field(self) -> None:
        """Test that a write reconfigures the VM and waits for the task."""
        vm = make_vm("vm-1")
        endpoint = make_endpoint([(vm, {"name": "a"})])

        with patch("fleet_reconciler.vsphere.WaitForTask") as wait:
            endpoint.write_field("vm-1", "tools.toolsUpgradePolicy", "upgradeAtPowerCycle")

        spec = vm.ReconfigVM_Task.call_args.kwargs["spec"]
        assert spec.tools.toolsUpgradePolicy == "upgradeAtPowerCycle"
        wait.assert_called_once_with(vm.ReconfigVM_Task.return_value)
        assert endpoint.error_counter.error_rate_percent() == 0.0

    def test_write_fault_is_translated(self) -> None:
        """Test that a task fault surfaces as a classified endpoint error."""
        vm = make_vm("vm-1")
        endpoint = make_endpoint([(vm, {"name": "a"})])

        with patch(
            "fleet_reconciler.vsphere.WaitForTask", side_effect=vim.fault.TaskInProgress()
        ):
            with pytest.raises(ConflictError):
                endpoint.write_field("vm-1", "tools.toolsUpgradePolicy", "manual")

        assert endpoint.error_counter.error_rate_percent() == 50.0

    def test_write_unsupported_field(self) -> None:
        """Test that only fields with a reconfigure spec can be written."""
        endpoint = make_endpoint([(make_vm("vm-1"), {"name": "a"})])

        with pytest.raises(InvalidValueError):
            endpoint.write_field("vm-1", "annotation", "hello")


class TestVSphereSession:
    """Tests for VSphereSession."""

    def test_not_connected(self) -> None:
        """Test that using a closed session raises ConnectivityError."""
        session = VSphereSession("vc1", "u", "p")

        assert not session.connected
        with pytest.raises(ConnectivityError):
            _ = session.service_instance

    def test_connect_and_close(self) -> None:
        """Test the connect/disconnect lifecycle."""
        si = MagicMock()
        with (
            patch("fleet_reconciler.vsphere.SmartConnect", return_value=si) as connect,
            patch("fleet_reconciler.vsphere.Disconnect") as disconnect,
        ):
            with VSphereSession("vc1", "u", "p", verify_ssl=False) as session:
                assert session.connected
                assert session.service_instance is si

            disconnect.assert_called_once_with(si)
            assert connect.call_args.kwargs["host"] == "vc1"
        assert not session.connected

    def test_invalid_login(self) -> None:
        """Test that rejected credentials raise AuthorizationError."""
        with patch("fleet_reconciler.vsphere.SmartConnect", side_effect=vim.fault.InvalidLogin()):
            with pytest.raises(AuthorizationError):
                VSphereSession("vc1", "u", "p").connect()

    def test_unreachable(self) -> None:
        """Test that network failures raise ConnectivityError."""
        with patch(
            "fleet_reconciler.vsphere.SmartConnect", side_effect=ConnectionRefusedError()
        ):
            with pytest.raises(ConnectivityError):
                VSphereSession("vc1", "u", "p").connect()


class TestVSphereHealthSignal:
    """Tests for VSphereHealthSignal."""

    def test_sample(self) -> None:
        """Test that the signal reports the endpoint's error rate."""
        session = MagicMock(spec=VSphereSession)
        counter = ErrorRateCounter()
        counter.record(False)
        counter.record(True)

        sample = VSphereHealthSignal(session, counter).sample()

        assert sample.error_rate_percent == 50.0
        assert sample.latency_ms >= 0.0
        session.service_instance.CurrentTime.assert_called_once()
