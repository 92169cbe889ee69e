"""
Reconciliation sweep over stale deployments, idle workers and leaked VMs.
"""

import json
import logging
import os
import threading
from collections import deque
from concurrent.futures import Future, wait
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Callable, Deque, Dict, List, Optional

from capacity import Fleet
from clients import ComputeRestClient, parse_timestamp
from lifecycle import WorkerLifecycle
from models import CleanUpAction, DeploymentRecord, OperationState, RetentionKind, Worker
from registry import NodeRegistry
from retry import DefaultRetryStrategy, ExecutionEngine, retry_any

logger = logging.getLogger(__name__)

FAILED_ACTION_REASON = "Failed initial shutdown or delete"
POOL_IDLE_GRACE = timedelta(minutes=1)


class DeploymentRegistrar:
    """
    Internally synchronized FIFO of deployments awaiting cleanup.

    When a state file is given the queue is written to it after every change
    and can be reloaded on start.
    """

    def __init__(self, state_file: Optional[str] = None):
        self.state_file = state_file
        self._lock = threading.Lock()
        self._queue: Deque[DeploymentRecord] = deque()

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)

    def put(self, record: DeploymentRecord) -> None:
        with self._lock:
            self._queue.append(record)
            self._sync()

    def get(self) -> Optional[DeploymentRecord]:
        with self._lock:
            if not self._queue:
                return None
            record = self._queue.popleft()
            self._sync()
            return record

    def records(self) -> List[DeploymentRecord]:
        with self._lock:
            return list(self._queue)

    def load(self) -> int:
        """
        Restore records from the state file.

        Returns:
            Number of records loaded
        """
        if not self.state_file or not os.path.exists(self.state_file):
            return 0

        with open(self.state_file, "r") as f:
            data = json.load(f)

        records = [DeploymentRecord.from_dict(item) for item in data.get("deployments", [])]
        with self._lock:
            self._queue.extend(records)
        logger.info(f"Loaded {len(records)} pending deployment(s) from {self.state_file}")
        return len(records)

    def _sync(self) -> None:
        if not self.state_file:
            return
        payload = {"deployments": [record.to_dict() for record in self._queue]}
        tmp_path = f"{self.state_file}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp_path, self.state_file)


class CleanupSweep:
    """
    Periodic reconciliation of local state against the provider.

    Args:
        fleets: Returns the live fleets
        fleet_lookup: Resolves a fleet name, None once it is removed
        client_for: Compute client of a fleet
        lifecycle_for: Lifecycle actions of a fleet
        registry: Host node registry
        registrar: Queue of deployments to retire
        engine: Runs worker actions in the background
        success_retention_minutes: Age after which a succeeded deployment is deleted
        failure_retention_minutes: Age after which any other deployment is deleted
        clean_timeout: Seconds to wait for submitted worker actions
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        fleets: Callable[[], List[Fleet]],
        fleet_lookup: Callable[[str], Optional[Fleet]],
        client_for: Callable[[Fleet], ComputeRestClient],
        lifecycle_for: Callable[[Fleet], WorkerLifecycle],
        registry: NodeRegistry,
        registrar: DeploymentRegistrar,
        engine: ExecutionEngine,
        success_retention_minutes: int = 60,
        failure_retention_minutes: int = 480,
        clean_timeout: float = 900,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._fleets = fleets
        self._fleet_lookup = fleet_lookup
        self._client_for = client_for
        self._lifecycle_for = lifecycle_for
        self.registry = registry
        self.registrar = registrar
        self.engine = engine
        self.success_retention = timedelta(minutes=success_retention_minutes)
        self.failure_retention = timedelta(minutes=failure_retention_minutes)
        self.clean_timeout = clean_timeout
        self.clock = clock
        self.action_strategy = DefaultRetryStrategy(
            max_retries=3, wait_interval=10, timeout=1800, retry_on=retry_any
        )

    def run(self) -> None:
        """One full sweep; a failing pass does not stop the others."""
        logger.info("Starting cleanup sweep")
        futures: List[Future] = []

        for name, step in (
            ("retention", self.apply_retention),
            ("deployments", self.clean_deployments),
            ("workers", lambda: futures.extend(self.clean_workers())),
            ("leaked resources", self.clean_leaked_resources),
        ):
            try:
                step()
            except Exception as e:
                logger.error(f"Cleanup {name} pass failed: {e}")

        if futures:
            _, not_done = wait(futures, timeout=self.clean_timeout)
            if not_done:
                logger.warning(
                    f"{len(not_done)} worker action(s) still running after {self.clean_timeout}s"
                )
        logger.info("Cleanup sweep finished")

    # Deployments

    def clean_deployments(self) -> None:
        """
        Visit each queued deployment once.

        Records that must be kept go to the back of the queue; the first one
        put back marks where this pass started, so the pass ends when it
        comes round again.
        """
        first_back: Optional[DeploymentRecord] = None

        while True:
            record = self.registrar.get()
            if record is None:
                break
            if record is first_back:
                self.registrar.put(record)
                break

            try:
                keep = self._check_deployment(record)
            except Exception as e:
                record.attempts_remaining -= 1
                keep = record.attempts_remaining > 0
                logger.warning(
                    f"Failed to clean deployment {record.deployment_name}: {e} "
                    f"({record.attempts_remaining} attempt(s) left)"
                )

            if keep:
                self.registrar.put(record)
                if first_back is None:
                    first_back = record

    def _check_deployment(self, record: DeploymentRecord) -> bool:
        """Retire a deployment if due; returns whether to keep the record."""
        fleet = self._fleet_lookup(record.fleet_name)
        if fleet is None:
            logger.info(
                f"Fleet {record.fleet_name} is gone, dropping deployment {record.deployment_name}"
            )
            return False

        client = self._client_for(fleet)
        status = client.get_deployment(record.deployment_name)
        if status is None:
            logger.info(f"Deployment {record.deployment_name} no longer exists")
            self._delete_script(client, record)
            return False

        age = self.clock() - status.insert_time
        succeeded = status.state is OperationState.SUCCEEDED
        if (succeeded and age > self.success_retention) or (
            not succeeded and age > self.failure_retention
        ):
            logger.info(
                f"Deleting deployment {record.deployment_name} "
                f"({status.state.value}, age {age})"
            )
            client.delete_deployment(record.deployment_name)
            self._delete_script(client, record)
            return False

        return True

    def _delete_script(self, client: ComputeRestClient, record: DeploymentRecord) -> None:
        if record.script_uri:
            client.delete_object(record.script_uri)

    # Workers

    def clean_workers(self) -> List[Future]:
        """
        Act on offline, idle workers.

        Returns:
            Futures of the actions submitted
        """
        futures = []
        for worker in self.registry.workers():
            if (
                self.registry.is_online(worker)
                or not self.registry.is_idle(worker)
                or self.registry.is_set_offline_by_user(worker)
                or worker.is_cleanup_blocked()
            ):
                continue

            fleet = self._fleet_lookup(worker.fleet_name)
            if fleet is None:
                logger.warning(f"Worker {worker.name} belongs to unknown fleet {worker.fleet_name}")
                continue
            lifecycle = self._lifecycle_for(fleet)

            try:
                exists = lifecycle.vm_exists(worker)
            except Exception as e:
                logger.warning(f"Cannot check VM of worker {worker.name}: {e}")
                continue

            if not exists:
                logger.info(f"VM of worker {worker.name} is gone, removing the node")
                self.registry.remove_node(worker)
                fleet.release(1, worker.template_name)
                continue

            futures.append(self._submit_action(lifecycle, worker))
        return futures

    def _submit_action(self, lifecycle: WorkerLifecycle, worker: Worker) -> Future:
        action = worker.effective_cleanup_action()
        reason = worker.cleanup_reason or "Idle worker cleanup"

        if action is CleanUpAction.SHUTDOWN:
            task = partial(lifecycle.shutdown, worker, reason)
        else:
            task = partial(lifecycle.deprovision, worker, reason)

        def _on_done(future: Future) -> None:
            error = future.exception()
            if error is not None:
                logger.error(f"Cleanup action {action.name} on {worker.name} failed: {error}")
                worker.set_cleanup_action(CleanUpAction.DELETE, FAILED_ACTION_REASON)

        logger.info(f"Submitting {action.name} for worker {worker.name}")
        future = self.engine.execute_async(task, self.action_strategy)
        future.add_done_callback(_on_done)
        return future

    def apply_retention(self) -> None:
        """
        Retire workers according to their retention kind.

        Idle workers are disconnected once idle past their retention time and
        left in DEFAULT for the worker pass. Run-once workers are disconnected
        after their first completed job. Pool workers are marked for deletion
        when their template has more workers than its pool size, is gone, or
        the worker is older than the pool's maximum age.
        """
        now = self.clock()
        workers = self.registry.workers()

        pool_counts: Dict[tuple, int] = {}
        for worker in workers:
            if (
                worker.retention_kind is RetentionKind.POOL
                and worker.cleanup_action is not CleanUpAction.DELETE
            ):
                key = (worker.fleet_name, worker.template_name)
                pool_counts[key] = pool_counts.get(key, 0) + 1

        for worker in workers:
            if worker.is_cleanup_blocked() or not self.registry.is_idle(worker):
                continue
            idle_since = self.registry.idle_since(worker)
            if idle_since is None:
                continue

            if worker.retention_kind is RetentionKind.POOL:
                self._retain_pool_worker(worker, now - idle_since, now, pool_counts)
            elif not self.registry.is_online(worker):
                continue
            elif worker.retention_kind is RetentionKind.ONCE:
                self._retain_once_worker(worker, now - idle_since)
            elif worker.retention_minutes > 0 and now - idle_since > timedelta(
                minutes=worker.retention_minutes
            ):
                reason = f"Idle for more than {worker.retention_minutes} minute(s)"
                logger.info(f"Worker {worker.name}: {reason}")
                self.registry.set_accepting_tasks(worker, False)
                self.registry.disconnect(worker, reason)

    def _retain_pool_worker(
        self, worker: Worker, idle_for: timedelta, now: datetime, pool_counts: Dict[tuple, int]
    ) -> None:
        if worker.cleanup_action is CleanUpAction.DELETE or idle_for <= POOL_IDLE_GRACE:
            return

        key = (worker.fleet_name, worker.template_name)
        fleet = self._fleet_lookup(worker.fleet_name)
        template = fleet.templates.get(worker.template_name) if fleet is not None else None
        if template is None:
            reason = f"Template {worker.template_name} no longer exists"
        elif template.pool_max_age_hours > 0 and now - worker.created_at > timedelta(
            hours=template.pool_max_age_hours
        ):
            reason = f"Older than {template.pool_max_age_hours} hour(s)"
        elif pool_counts.get(key, 0) > template.pool_size:
            reason = f"Pool of template {template.name} exceeds {template.pool_size} worker(s)"
        else:
            return

        with worker.lock:
            # Claimed for reuse since the pass started.
            if worker.is_cleanup_blocked():
                return
            worker.eligible_for_reuse = False
            worker.set_cleanup_action(CleanUpAction.DELETE, reason)
        logger.info(f"Worker {worker.name}: {reason}")
        self.registry.set_accepting_tasks(worker, False)
        self.registry.disconnect(worker, reason)
        pool_counts[key] = pool_counts.get(key, 0) - 1

    def _retain_once_worker(self, worker: Worker, idle_for: timedelta) -> None:
        if self.registry.completed_jobs(worker) > 0:
            reason = "Finished its single job"
        elif worker.retention_minutes > 0 and idle_for > timedelta(
            minutes=worker.retention_minutes
        ):
            reason = f"Idle for more than {worker.retention_minutes} minute(s)"
        else:
            return

        action = CleanUpAction.SHUTDOWN if worker.shutdown_on_idle else CleanUpAction.DELETE
        logger.info(f"Worker {worker.name}: {reason}")
        self.registry.set_accepting_tasks(worker, False)
        self.registry.disconnect(worker, reason)
        worker.set_cleanup_action(action, reason)

    # Leaked resources

    def clean_leaked_resources(self) -> None:
        """
        Terminate fleet-labelled VMs no node refers to.

        Capacity is not returned here; the verification pass recounts the
        fleet's VMs.
        """
        known = {worker.name for worker in self.registry.workers()}
        now = self.clock()

        for fleet in self._fleets():
            if not fleet.configuration_valid:
                continue
            try:
                vms = self._client_for(fleet).list_vms(fleet.name)
            except Exception as e:
                logger.warning(f"Cannot list VMs of fleet {fleet.name}: {e}")
                continue

            lifecycle = self._lifecycle_for(fleet)
            grace = timedelta(seconds=fleet.deployment_timeout)
            for vm in vms:
                name = vm.get("name", "")
                if not name or name in known:
                    continue
                created = vm.get("creationTimestamp")
                if not created or now - parse_timestamp(created) <= grace:
                    continue
                logger.info(f"Terminating leaked VM {name} of fleet {fleet.name}")
                lifecycle.terminate_vm_async(name)
