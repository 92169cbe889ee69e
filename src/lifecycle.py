"""
Worker lifecycle actions against the compute provider and the node registry.
"""

import logging
from concurrent.futures import Future
from typing import Dict, Optional

from capacity import Fleet
from clients import ComputeRestClient
from deployment_doc import address_name
from models import CleanUpAction, Template, Worker
from registry import NodeRegistry
from retry import ExecutionEngine, NoRetryStrategy

logger = logging.getLogger(__name__)


def vm_endpoint(vm: Dict) -> str:
    """External address of an instance, falling back to its internal one."""
    for nic in vm.get("networkInterfaces", []):
        for access in nic.get("accessConfigs", []):
            if access.get("natIP"):
                return access["natIP"]
    for nic in vm.get("networkInterfaces", []):
        if nic.get("networkIP"):
            return nic["networkIP"]
    return ""


def vm_os_type(vm: Dict) -> str:
    for disk in vm.get("disks", []):
        if any("windows" in lic for lic in disk.get("licenses", [])):
            return "windows"
    return "linux"


class WorkerLifecycle:
    """VM start, stop, delete and registry bookkeeping for one fleet."""

    def __init__(
        self,
        fleet: Fleet,
        client: ComputeRestClient,
        registry: NodeRegistry,
        engine: ExecutionEngine,
    ):
        self.fleet = fleet
        self.client = client
        self.registry = registry
        self.engine = engine

    def vm_exists(self, worker: Worker) -> bool:
        return self.client.get_vm(worker.name) is not None

    def build_worker(
        self,
        template: Template,
        vm_name: str,
        deployment_name: str,
        vm: Optional[Dict] = None,
    ) -> Worker:
        """Create the Worker record for a freshly deployed VM."""
        worker = Worker(
            name=vm_name,
            template_name=template.name,
            fleet_name=self.fleet.name,
            deployment_name=deployment_name,
            project_id=self.fleet.project_id,
            zone=self.fleet.zone,
            launch_method=template.launch_method,
            labels=template.labels,
            usage_mode=template.usage_mode,
            retention_kind=template.retention_kind,
            shutdown_on_idle=template.shutdown_on_idle,
            retention_minutes=template.retention_minutes,
            credentials_id=template.credentials_id,
        )
        if vm is not None:
            worker.os_type = vm_os_type(vm)
            worker.host = vm_endpoint(vm)
        return worker

    def refresh_endpoint(self, worker: Worker) -> None:
        """Re-read the VM's address; it changes across stop and start."""
        vm = self.client.get_vm(worker.name)
        if vm is None:
            raise RuntimeError(f"VM {worker.name} no longer exists")
        with worker.lock:
            worker.host = vm_endpoint(vm)
            worker.os_type = vm_os_type(vm)

    def start_vm(self, worker: Worker) -> None:
        logger.info(f"Starting VM {worker.name}")
        self.client.start_vm(worker.name)

    def terminate_vm(self, vm_name: str) -> None:
        """
        Delete a VM, then release its address in the background.

        Already-deleted resources are not an error.
        """
        if not self.client.delete_vm(vm_name):
            logger.info(f"VM {vm_name} already deleted")

        ip_name = address_name(vm_name)

        def _log_failure(future: Future) -> None:
            if future.exception() is not None:
                logger.warning(f"Failed to release address {ip_name}: {future.exception()}")

        self.engine.execute_async(
            lambda: self.client.delete_address(ip_name, NoRetryStrategy()),
            NoRetryStrategy(),
        ).add_done_callback(_log_failure)

    def terminate_vm_async(self, vm_name: str) -> Future:
        return self.engine.execute_async(
            lambda: self.terminate_vm(vm_name), NoRetryStrategy(timeout=0)
        )

    def deprovision(self, worker: Worker, reason: str = "") -> None:
        """Destroy the VM, deregister the node and give the capacity back."""
        logger.info(f"Deprovisioning worker {worker.name}: {reason or 'no reason given'}")
        self.registry.set_accepting_tasks(worker, False)
        self.registry.disconnect(worker, reason)
        self.terminate_vm(worker.name)
        self.registry.remove_node(worker)
        self.fleet.release(1, worker.template_name)

    def shutdown(self, worker: Worker, reason: str = "") -> None:
        """
        Power the VM off and keep it for reuse.

        A worker that is already shut down is left alone.
        """
        with worker.lock:
            if worker.eligible_for_reuse:
                logger.debug(f"Worker {worker.name} already shut down")
                return
            worker.block_cleanup_action()

        try:
            logger.info(f"Shutting down worker {worker.name}: {reason or 'no reason given'}")
            self.registry.disconnect(worker, reason)
            self.client.stop_vm(worker.name)
            with worker.lock:
                worker.eligible_for_reuse = True
                # Keeps later sweeps from deleting a stopped, reusable worker.
                worker.set_cleanup_action(CleanUpAction.SHUTDOWN, reason or "Shut down")
        except Exception:
            worker.clear_cleanup_action(reason)
            raise
