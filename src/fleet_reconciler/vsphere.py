"""vSphere adapter for the management endpoint protocol.

Talks to a vCenter Server through pyVmomi. All blocking SOAP calls live
here; vSphere faults are translated into the errors.py taxonomy before
they leave this module so the reconciler core never sees a vim type.

Entities are virtual machines, identified by their managed object id
(e.g. "vm-1042"). Templates are never listed.
"""

from __future__ import annotations

import http.client
import logging
import ssl
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from pyVim.connect import Disconnect, SmartConnect
from pyVim.task import WaitForTask
from pyVmomi import vim, vmodl

from .endpoint import PerformanceSample, RawEntity, ScopeFilter
from .errors import (
    AuthorizationError,
    ConflictError,
    ConnectivityError,
    EndpointError,
    EndpointPermissionError,
    EndpointTimeoutError,
    InvalidValueError,
    NotFoundError,
)
from .pacing import ErrorRateCounter
from .records import PowerState

logger = logging.getLogger(__name__)

DEFAULT_PORT = 443

# Properties fetched per VM in one PropertyCollector round trip
VM_LIST_PROPERTIES = ["name", "runtime.powerState", "config.template"]

POWER_STATES: dict[str, PowerState] = {
    "poweredOn": PowerState.ON,
    "poweredOff": PowerState.OFF,
    "suspended": PowerState.SUSPENDED,
}


def _tools_upgrade_policy_spec(value: str) -> vim.vm.ConfigSpec:
    return vim.vm.ConfigSpec(tools=vim.vm.ToolsConfigInfo(toolsUpgradePolicy=value))


# Writable fields (paths relative to VirtualMachine.config) and how to build
# the reconfigure spec for each
CONFIG_SPEC_BUILDERS: dict[str, Callable[[str], vim.vm.ConfigSpec]] = {
    "tools.toolsUpgradePolicy": _tools_upgrade_policy_spec,
}


def _fault_message(fault: BaseException) -> str:
    msg = getattr(fault, "msg", None)
    return f"{type(fault).__name__}: {msg or fault}"


def translate_fault(fault: BaseException) -> EndpointError:
    """Map a vSphere fault to the endpoint error taxonomy.

    Order matters: NotAuthenticated is a subclass of NoPermission.
    Unmapped faults become a plain EndpointError, which the executor
    treats as terminal.
    """
    message = _fault_message(fault)
    if isinstance(fault, (vim.fault.NotAuthenticated, vim.fault.InvalidLogin)):
        return AuthorizationError(message)
    if isinstance(fault, (vim.fault.NoPermission, vmodl.fault.SecurityError)):
        return EndpointPermissionError(message)
    if isinstance(fault, vmodl.fault.ManagedObjectNotFound):
        return NotFoundError(message)
    if isinstance(fault, (vim.fault.TaskInProgress, vim.fault.ConcurrentAccess)):
        return ConflictError(message)
    if isinstance(fault, vim.fault.Timedout):
        return EndpointTimeoutError(message)
    if isinstance(fault, vmodl.fault.HostCommunication):
        return ConnectivityError(message)
    if isinstance(
        fault,
        (
            vmodl.fault.InvalidArgument,
            vim.fault.InvalidState,
            vim.fault.VmConfigFault,
            vmodl.fault.NotSupported,
        ),
    ):
        return InvalidValueError(message)
    return EndpointError(message)


@contextmanager
def translated_faults(operation: str) -> Iterator[None]:
    """Re-raise vSphere and transport failures as EndpointErrors."""
    try:
        yield
    except EndpointError:
        raise
    except vmodl.MethodFault as e:
        raise translate_fault(e) from e
    except (OSError, http.client.HTTPException) as e:
        raise ConnectivityError(f"{operation} failed: {e}") from e


class VSphereSession:
    """Explicit handle to one authenticated vCenter session.

    Usage:
        with VSphereSession(host, user, password) as session:
            endpoint = VSphereEndpoint(session)
    """

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        port: int = DEFAULT_PORT,
        verify_ssl: bool = True,
    ) -> None:
        self._host = host
        self._username = username
        self._password = password
        self._port = port
        self._verify_ssl = verify_ssl
        self._si: Any = None
        self._content: Any = None

    @property
    def host(self) -> str:
        return self._host

    @property
    def connected(self) -> bool:
        return self._si is not None

    @property
    def service_instance(self) -> Any:
        if self._si is None:
            raise ConnectivityError(f"Not connected to vCenter {self._host}")
        return self._si

    @property
    def content(self) -> Any:
        if self._content is None:
            with translated_faults("RetrieveContent"):
                self._content = self.service_instance.RetrieveContent()
        return self._content

    def connect(self) -> None:
        """Log in to vCenter.

        Raises:
            AuthorizationError: If the credentials are rejected.
            ConnectivityError: If vCenter cannot be reached.
        """
        if self._si is not None:
            return

        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        if self._verify_ssl:
            ssl_context.load_default_certs()
        else:
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE

        try:
            self._si = SmartConnect(
                host=self._host,
                user=self._username,
                pwd=self._password,
                port=self._port,
                sslContext=ssl_context,
            )
        except vim.fault.InvalidLogin as e:
            raise AuthorizationError(f"vCenter {self._host} rejected login: {e.msg}") from e
        except vmodl.MethodFault as e:
            raise translate_fault(e) from e
        except (OSError, http.client.HTTPException) as e:
            raise ConnectivityError(f"Cannot reach vCenter {self._host}: {e}") from e

        logger.info("Connected to vCenter", extra={"host": self._host, "port": self._port})

    def is_alive(self) -> bool:
        """Check that the session is still authenticated."""
        if self._si is None:
            return False
        try:
            return self.content.sessionManager.currentSession is not None
        except (EndpointError, vmodl.MethodFault):
            return False

    def close(self) -> None:
        if self._si is None:
            return
        try:
            Disconnect(self._si)
        except (vmodl.MethodFault, OSError, http.client.HTTPException) as e:
            logger.warning(
                "Error while disconnecting from vCenter",
                extra={"host": self._host, "error": str(e)},
            )
        finally:
            self._si = None
            self._content = None
            logger.info("Disconnected from vCenter", extra={"host": self._host})

    def __enter__(self) -> VSphereSession:
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class VSphereEndpoint:
    """ManagementEndpoint over the virtual machines of one vCenter."""

    def __init__(
        self,
        session: VSphereSession,
        error_counter: ErrorRateCounter | None = None,
    ) -> None:
        self._session = session
        self._counter = error_counter or ErrorRateCounter()
        self._vms: dict[str, Any] = {}
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._session.host

    @property
    def error_counter(self) -> ErrorRateCounter:
        """Outcome of every call made through this endpoint."""
        return self._counter

    @contextmanager
    def _call(self, operation: str) -> Iterator[None]:
        started = time.monotonic()
        try:
            with translated_faults(operation):
                yield
        except EndpointError:
            self._counter.record(False, time.monotonic() - started)
            raise
        self._counter.record(True, time.monotonic() - started)

    def list_entities(self, scope: ScopeFilter) -> list[RawEntity]:
        """List the non-template VMs under the scope's datacenter/cluster."""
        with self._call("list_entities"):
            content = self._session.content
            root = self._resolve_root(content, scope)
            objects = self._collect_properties(content, root, VM_LIST_PROPERTIES)

        entities: list[RawEntity] = []
        vms: dict[str, Any] = {}
        for obj, props in objects:
            if props.get("config.template"):
                continue
            moid = obj._moId
            vms[moid] = obj
            entities.append(
                RawEntity(
                    id=moid,
                    name=props.get("name", ""),
                    power_state=POWER_STATES.get(
                        str(props.get("runtime.powerState", "")), PowerState.UNKNOWN
                    ),
                )
            )

        with self._lock:
            self._vms = vms

        logger.info(
            "Listed virtual machines",
            extra={
                "host": self._session.host,
                "datacenter": scope.datacenter,
                "cluster": scope.cluster,
                "vm_count": len(entities),
            },
        )
        return entities

    def read_field(self, entity_id: str, field_name: str) -> str | None:
        vm = self._get_vm(entity_id)
        with self._call("read_field"):
            value: Any = vm.config
            if value is None:
                # Inaccessible or orphaned VM
                return None
            for part in field_name.split("."):
                if not hasattr(value, part):
                    raise InvalidValueError(f"Unknown VM config field: {field_name}")
                value = getattr(value, part)
                if value is None:
                    return None
        return str(value)

    def write_field(self, entity_id: str, field_name: str, value: str) -> None:
        builder = CONFIG_SPEC_BUILDERS.get(field_name)
        if builder is None:
            raise InvalidValueError(f"Field is not writable through this adapter: {field_name}")

        vm = self._get_vm(entity_id)
        with self._call("write_field"):
            task = vm.ReconfigVM_Task(spec=builder(value))
            WaitForTask(task)

        logger.debug(
            "Reconfigured VM",
            extra={"host": self._session.host, "entity_id": entity_id, "field_name": field_name},
        )

    def _get_vm(self, entity_id: str) -> Any:
        with self._lock:
            vm = self._vms.get(entity_id)
        if vm is None:
            raise NotFoundError(f"Virtual machine not found: {entity_id}")
        return vm

    def _resolve_root(self, content: Any, scope: ScopeFilter) -> Any:
        root = content.rootFolder
        if scope.datacenter:
            root = self._find_by_name(content, root, vim.Datacenter, scope.datacenter)
        if scope.cluster:
            root = self._find_by_name(
                content, root, vim.ClusterComputeResource, scope.cluster
            )
        return root

    @staticmethod
    def _find_by_name(content: Any, root: Any, obj_type: Any, name: str) -> Any:
        container = content.viewManager.CreateContainerView(root, [obj_type], True)
        try:
            for obj in container.view:
                if obj.name == name:
                    return obj
        finally:
            container.Destroy()
        raise NotFoundError(f"{obj_type.__name__} not found: {name}")

    @staticmethod
    def _collect_properties(
        content: Any, root: Any, properties: list[str]
    ) -> list[tuple[Any, dict[str, Any]]]:
        """Fetch properties of every VM under root in paged round trips."""
        container = content.viewManager.CreateContainerView(root, [vim.VirtualMachine], True)
        try:
            traversal = vmodl.query.PropertyCollector.TraversalSpec(
                name="traverseEntities", path="view", skip=False, type=vim.view.ContainerView
            )
            obj_spec = vmodl.query.PropertyCollector.ObjectSpec(
                obj=container, skip=True, selectSet=[traversal]
            )
            prop_spec = vmodl.query.PropertyCollector.PropertySpec(
                type=vim.VirtualMachine, all=False, pathSet=properties
            )
            filter_spec = vmodl.query.PropertyCollector.FilterSpec(
                objectSet=[obj_spec], propSet=[prop_spec]
            )

            collector = content.propertyCollector
            results: list[tuple[Any, dict[str, Any]]] = []
            page = collector.RetrievePropertiesEx(
                [filter_spec], vmodl.query.PropertyCollector.RetrieveOptions()
            )
            while page:
                for obj_content in page.objects:
                    props = {prop.name: prop.val for prop in obj_content.propSet}
                    results.append((obj_content.obj, props))
                if not page.token:
                    break
                page = collector.ContinueRetrievePropertiesEx(page.token)
            return results
        finally:
            container.Destroy()


class VSphereHealthSignal:
    """PerformanceSignal probing vCenter responsiveness.

    Latency is the round trip of a CurrentTime() call; the error rate is
    the rolling rate of the endpoint's own calls.
    """

    def __init__(self, session: VSphereSession, error_counter: ErrorRateCounter) -> None:
        self._session = session
        self._counter = error_counter

    def sample(self) -> PerformanceSample:
        started = time.monotonic()
        with translated_faults("CurrentTime"):
            self._session.service_instance.CurrentTime()
        latency_ms = (time.monotonic() - started) * 1000.0
        return PerformanceSample(
            error_rate_percent=self._counter.error_rate_percent(),
            latency_ms=latency_ms,
        )
