"""
Deployment orchestration: turn "N workers wanted" into running workers.

Idle workers kept for reuse are revived first. The remainder is reserved
against the fleet's capacity and created with one batched deployment whose
VMs are brought up independently; a unit that fails is rolled back and its
capacity returned.
"""

import logging
import math
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from functools import partial
from typing import List, Optional

from capacity import Fleet
from cleanup import DeploymentRegistrar
from clients import ComputeRestClient
from deployment_doc import FLEET_LABEL, TEMPLATE_LABEL, label_value, render_deployment
from errors import (
    ProviderError,
    ProvisioningCancelled,
    ProvisioningError,
    ProvisioningTimeout,
)
from lifecycle import WorkerLifecycle
from models import (
    DeploymentInfo,
    DeploymentRecord,
    FailureStage,
    LaunchMethod,
    OperationState,
    PlannedUnit,
    Template,
    UsageMode,
    Worker,
    classify_operation_state,
)
from registry import NodeRegistry
from retry import DefaultRetryStrategy, ExecutionEngine, retry_any
from verification import VerificationGate

logger = logging.getLogger(__name__)


def is_eligible_for_reuse(worker: Worker, template: Template) -> bool:
    """
    Reuse rule: an unlabelled NORMAL worker fits any template, otherwise the
    worker's label string must equal the template's, ignoring case.
    """
    worker_labels = worker.labels.strip()
    if not worker_labels and worker.usage_mode is UsageMode.NORMAL:
        return True
    return worker_labels.lower() == template.labels.strip().lower()


def deployment_names(template: Template) -> tuple:
    """Unique deployment name and VM base name for a new batch."""
    prefix = label_value(template.name).strip("-_")[:24] or "worker"
    if not prefix[0].isalpha():
        prefix = f"w{prefix}"[:24]
    deployment_name = f"{prefix}-{uuid.uuid4().hex[:8]}"
    return deployment_name, f"{deployment_name}-"


class DeploymentOrchestrator:
    """
    Provisions workers for one fleet.

    Args:
        fleet: Fleet whose capacity is reserved
        client: Compute client of the fleet
        lifecycle: VM and registry actions of the fleet
        registry: Host node registry
        registrar: Queue every accepted deployment is registered with
        gate: Verification gate failed templates are handed back to
        engine: Retry engine for push connects
        poll_interval: Seconds between deployment status checks
        online_timeout: Seconds a pull-mode worker has to call back
        max_workers: Threads running bring-up tasks
    """

    def __init__(
        self,
        fleet: Fleet,
        client: ComputeRestClient,
        lifecycle: WorkerLifecycle,
        registry: NodeRegistry,
        registrar: DeploymentRegistrar,
        gate: VerificationGate,
        engine: ExecutionEngine,
        poll_interval: float = 30,
        online_timeout: float = 1800,
        max_workers: int = 16,
    ):
        self.fleet = fleet
        self.client = client
        self.lifecycle = lifecycle
        self.registry = registry
        self.registrar = registrar
        self.gate = gate
        self.engine = engine
        self.poll_interval = poll_interval
        self.online_timeout = online_timeout

        self._deploy_executor = ThreadPoolExecutor(
            max_workers=4, thread_name_prefix=f"deploy-{fleet.name}"
        )
        self._unit_executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix=f"bringup-{fleet.name}"
        )
        self.connect_strategy = DefaultRetryStrategy(
            max_retries=3, wait_interval=10, timeout=online_timeout, retry_on=retry_any
        )

    def shutdown(self, wait: bool = False) -> None:
        self._deploy_executor.shutdown(wait=wait)
        self._unit_executor.shutdown(wait=wait)

    def provision(self, template: Optional[Template], workload: int) -> List[PlannedUnit]:
        """
        Plan enough workers to cover a workload.

        Args:
            template: Template resolved for the workload's label
            workload: Number of jobs to run

        Returns:
            Planned units, possibly fewer than needed when capacity is short
        """
        if template is None or workload <= 0:
            return []

        wanted = math.ceil(workload / max(1, template.parallelism))
        logger.info(
            f"Fleet {self.fleet.name}: provisioning {wanted} worker(s) "
            f"from template {template.name} for workload {workload}"
        )

        units = self._reuse_idle_workers(template, wanted)
        remaining = wanted - len(units)
        if remaining > 0:
            units.extend(self._provision_new(template, remaining))
        return units

    # Reuse

    def _reuse_idle_workers(self, template: Template, wanted: int) -> List[PlannedUnit]:
        units: List[PlannedUnit] = []
        for worker in self.registry.workers():
            if len(units) >= wanted:
                break
            if worker.fleet_name != self.fleet.name or self.registry.is_online(worker):
                continue
            if not is_eligible_for_reuse(worker, template):
                continue

            with worker.lock:
                if not worker.eligible_for_reuse:
                    continue
                # Claimed: no other request or sweep may touch it now.
                worker.eligible_for_reuse = False
                worker.block_cleanup_action()

            logger.info(f"Reusing worker {worker.name} for template {template.name}")
            cancel = threading.Event()
            future = self._unit_executor.submit(self._revive, worker, template, cancel)
            units.append(
                PlannedUnit(
                    name=worker.name,
                    future=future,
                    parallelism=template.parallelism,
                    reused=True,
                    cancel_event=cancel,
                )
            )
        return units

    def _revive(self, worker: Worker, template: Template, cancel: threading.Event) -> Worker:
        try:
            if not self.lifecycle.vm_exists(worker):
                raise ProvisioningError(f"VM {worker.name} no longer exists")
            self.lifecycle.start_vm(worker)
            self.lifecycle.refresh_endpoint(worker)
            self.registry.add_node(worker)
            self._bring_online(worker, cancel)
        except Exception as e:
            logger.warning(f"Failed to reuse worker {worker.name}: {e}")
            worker.clear_cleanup_action(f"Failed to reuse worker: {e}")
            raise

        worker.clear_cleanup_action()
        logger.info(f"Worker {worker.name} is back online")
        return worker

    # New workers

    def _provision_new(self, template: Template, remaining: int) -> List[PlannedUnit]:
        count = remaining
        if template.max_deployment_size > 0:
            count = min(count, template.max_deployment_size)

        granted = self.fleet.reserve(count, template)
        if granted == 0:
            return []

        deployment_name, base_name = deployment_names(template)
        deployment_future = self._deploy_executor.submit(
            self._create_deployment, template, deployment_name, base_name, granted
        )

        units = []
        for index in range(granted):
            cancel = threading.Event()
            future = self._unit_executor.submit(
                self._bring_up, template, deployment_future, f"{base_name}{index}", cancel
            )
            units.append(
                PlannedUnit(
                    name=f"{base_name}{index}",
                    future=future,
                    parallelism=template.parallelism,
                    cancel_event=cancel,
                )
            )
        return units

    def _create_deployment(
        self, template: Template, deployment_name: str, base_name: str, count: int
    ) -> DeploymentInfo:
        script_uri = ""
        if template.launch_method is LaunchMethod.PULL and template.init_script:
            script_uri = self._stage_script(template, deployment_name)

        content = render_deployment(template, self.fleet.zone, base_name, count, script_uri)
        labels = {
            FLEET_LABEL: label_value(self.fleet.name),
            TEMPLATE_LABEL: label_value(template.name),
        }
        try:
            self.client.create_deployment(deployment_name, content, labels)
        except Exception:
            if script_uri:
                self._discard_script(script_uri)
            raise

        self.registrar.put(
            DeploymentRecord(
                fleet_name=self.fleet.name,
                project_id=self.fleet.project_id,
                deployment_name=deployment_name,
                script_uri=script_uri,
            )
        )
        return DeploymentInfo(deployment_name, base_name, count, script_uri)

    def _stage_script(self, template: Template, deployment_name: str) -> str:
        object_name = f"{deployment_name}/init-script"
        try:
            return self.client.upload_object(
                template.storage_bucket, object_name, template.init_script
            )
        except ProviderError as e:
            if not e.is_not_found:
                raise
        self.client.create_bucket(template.storage_bucket)
        return self.client.upload_object(template.storage_bucket, object_name, template.init_script)

    def _discard_script(self, script_uri: str) -> None:
        try:
            self.client.delete_object(script_uri)
        except Exception as e:
            logger.warning(f"Failed to delete staged script {script_uri}: {e}")

    def _bring_up(
        self,
        template: Template,
        deployment_future: Future,
        vm_name: str,
        cancel: threading.Event,
    ) -> Worker:
        try:
            info = self._await_deployment(deployment_future, cancel)
        except Exception as e:
            message = f"Deployment failed: {e}"
            self._handle_failure(template, None, None, message, FailureStage.DEPLOYMENT)
            # The deployment may still create this unit's VM after we stop waiting.
            deployment_future.add_done_callback(partial(self._terminate_if_deployed, vm_name))
            if isinstance(e, ProvisioningError):
                raise
            raise ProvisioningError(message) from e

        worker: Optional[Worker] = None
        node_added = False
        stage = FailureStage.PROVISIONING
        try:
            self._wait_for_vm(info.deployment_name, vm_name, cancel)

            vm = self.client.get_vm(vm_name)
            if vm is None:
                raise ProvisioningError(f"VM {vm_name} not found after deployment succeeded")
            worker = self.lifecycle.build_worker(template, vm_name, info.deployment_name, vm)
            worker.block_cleanup_action()

            stage = FailureStage.POSTPROVISIONING
            self.registry.add_node(worker)
            node_added = True
            self._bring_online(worker, cancel)
        except Exception as e:
            message = str(e)
            self._handle_failure(
                template, vm_name, worker if node_added else None, message, stage
            )
            if isinstance(e, ProvisioningError):
                raise
            raise ProvisioningError(message) from e

        worker.clear_cleanup_action()
        logger.info(f"Worker {worker.name} is online")
        return worker

    def _terminate_if_deployed(self, vm_name: str, deployment_future: Future) -> None:
        if deployment_future.cancelled() or deployment_future.exception() is not None:
            return
        logger.info(f"Terminating VM {vm_name} of an abandoned unit")
        try:
            self.lifecycle.terminate_vm_async(vm_name)
        except RuntimeError as e:
            logger.warning(f"Cannot terminate VM {vm_name}: {e}")

    def _await_deployment(self, deployment_future: Future, cancel: threading.Event) -> DeploymentInfo:
        while True:
            if cancel.is_set():
                raise ProvisioningCancelled("Cancelled while waiting for the deployment")
            try:
                return deployment_future.result(timeout=self.poll_interval)
            except FutureTimeoutError:
                continue

    def _wait_for_vm(self, deployment_name: str, vm_name: str, cancel: threading.Event) -> None:
        """
        Poll the deployment until this unit's VM resource settles.

        Raises:
            ProvisioningError: The resource reached a failed state
            ProvisioningTimeout: The poll budget ran out
            ProvisioningCancelled: The unit was cancelled
        """
        max_tries = max(1, int(self.fleet.deployment_timeout / self.poll_interval))

        for attempt in range(max_tries):
            operations = self.client.list_deployment_operations(deployment_name)
            operation = next((op for op in operations if op.resource_name == vm_name), None)
            if operation is not None:
                state = classify_operation_state(operation.state)
                if state is OperationState.SUCCEEDED:
                    logger.debug(f"VM {vm_name} created after {attempt + 1} check(s)")
                    return
                if state is OperationState.FAILED:
                    raise ProvisioningError(
                        f"Deployment {deployment_name}: {operation.resource_type}:"
                        f"{operation.resource_name} - {operation.state} - {operation.status_message}"
                    )

            if cancel.wait(self.poll_interval):
                raise ProvisioningCancelled(f"Cancelled while waiting for VM {vm_name}")

        raise ProvisioningTimeout(
            f"Deployment {deployment_name}: VM {vm_name} not ready after "
            f"{self.fleet.deployment_timeout}s"
        )

    def _bring_online(self, worker: Worker, cancel: threading.Event) -> None:
        if cancel.is_set():
            raise ProvisioningCancelled(f"Cancelled before {worker.name} came online")

        if worker.launch_method is LaunchMethod.PUSH:
            self.engine.execute_with_retry(
                lambda: self.registry.connect(worker), self.connect_strategy
            )
            return

        deadline = time.monotonic() + self.online_timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ProvisioningTimeout(
                    f"Worker {worker.name} did not come online within {self.online_timeout}s"
                )
            if self.registry.wait_until_online(worker, min(remaining, self.poll_interval)):
                return
            if cancel.is_set():
                raise ProvisioningCancelled(f"Cancelled while waiting for {worker.name} to come online")

    def _handle_failure(
        self,
        template: Template,
        vm_name: Optional[str],
        worker: Optional[Worker],
        message: str,
        stage: FailureStage,
    ) -> None:
        """Roll back one failed unit and send its template back for verification."""
        logger.error(
            f"Fleet {self.fleet.name}: provisioning from template {template.name} "
            f"failed at {stage.value}: {message}"
        )
        if vm_name:
            self.lifecycle.terminate_vm_async(vm_name)
        if worker is not None:
            self.registry.remove_node(worker)
        self.fleet.release(1, template.name)
        template.handle_provisioning_failure(message, stage)
        self.gate.register_template(template)
