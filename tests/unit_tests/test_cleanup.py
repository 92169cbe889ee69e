"""
Unit tests for the cleanup sweep and the deployment queue.
"""

import os
import tempfile
import time
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from capacity import Fleet
from cleanup import FAILED_ACTION_REASON, CleanupSweep, DeploymentRegistrar
from errors import ErrorKind, ProviderError
from fakes import FakeComputeClient
from lifecycle import WorkerLifecycle
from models import (
    CleanUpAction,
    DeploymentRecord,
    OperationState,
    RetentionKind,
    Template,
    Worker,
)
from registry import InMemoryNodeRegistry
from retry import ExecutionEngine

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class CleanupTestCase(unittest.TestCase):
    """Shared fixtures: one verified fleet and a sweep with a fake clock."""

    def setUp(self):
        self.client = FakeComputeClient()
        self.engine = ExecutionEngine(max_workers=4, sleep=lambda s: None)
        self.registry = InMemoryNodeRegistry()
        self.fleet = Fleet("fleet", "test-project", "europe-west2-a", max_workers=5)
        self.fleet.set_configuration_valid(True)
        self.fleets = {"fleet": self.fleet}
        self.lifecycle = WorkerLifecycle(self.fleet, self.client, self.registry, self.engine)
        self.registrar = DeploymentRegistrar()
        self.clock = FakeClock(T0)
        self.sweep = CleanupSweep(
            fleets=lambda: list(self.fleets.values()),
            fleet_lookup=self.fleets.get,
            client_for=lambda fleet: self.client,
            lifecycle_for=lambda fleet: self.lifecycle,
            registry=self.registry,
            registrar=self.registrar,
            engine=self.engine,
            clean_timeout=10,
            clock=self.clock,
        )

    def tearDown(self):
        self.engine.shutdown()

    def enqueue(self, name, state=OperationState.SUCCEEDED, script_uri=""):
        self.client.add_deployment(name, T0, state)
        self.registrar.put(
            DeploymentRecord("fleet", "test-project", name, enqueued_at=T0, script_uri=script_uri)
        )

    def add_worker(self, name="linux-ab12cd34-0", online=False, **kwargs):
        worker = Worker(
            name=name,
            template_name="linux",
            fleet_name="fleet",
            deployment_name="linux-ab12cd34",
            project_id="test-project",
            zone="europe-west2-a",
            **kwargs,
        )
        self.registry.add_node(worker)
        self.client.add_vm(name)
        if online:
            self.registry.mark_online(worker)
        return worker


class TestDeploymentPass(CleanupTestCase):
    """Test retention of queued deployments."""

    def test_succeeded_kept_before_success_retention(self):
        """Test a succeeded deployment survives at T+59 minutes."""
        self.enqueue("dep-a")
        self.clock.now = T0 + timedelta(minutes=59)
        self.sweep.clean_deployments()

        self.assertEqual(self.client.deleted_deployments, [])
        self.assertEqual(len(self.registrar), 1)

    def test_succeeded_deleted_after_success_retention(self):
        """Test a succeeded deployment is deleted at T+61 minutes."""
        self.enqueue("dep-a", script_uri="gs://fleet-scripts/dep-a/init-script")
        self.clock.now = T0 + timedelta(minutes=61)
        self.sweep.clean_deployments()

        self.assertEqual(self.client.deleted_deployments, ["dep-a"])
        self.assertEqual(self.client.deleted_objects, ["gs://fleet-scripts/dep-a/init-script"])
        self.assertEqual(len(self.registrar), 0)

    def test_failed_deployment_retention(self):
        """Test a failed deployment survives 8 hours and is deleted after."""
        self.enqueue("dep-f", OperationState.FAILED)

        self.clock.now = T0 + timedelta(hours=8)
        self.sweep.clean_deployments()
        self.assertEqual(self.client.deleted_deployments, [])

        self.clock.now = T0 + timedelta(hours=8, minutes=1)
        self.sweep.clean_deployments()
        self.assertEqual(self.client.deleted_deployments, ["dep-f"])

    def test_each_record_visited_once_per_pass(self):
        """Test a queue where every record is kept does not loop."""
        for name in ("dep-a", "dep-b", "dep-c"):
            self.enqueue(name, OperationState.IN_PROGRESS)
        get_deployment = MagicMock(side_effect=self.client.get_deployment)
        self.client.get_deployment = get_deployment

        self.clock.now = T0 + timedelta(minutes=5)
        self.sweep.clean_deployments()

        self.assertEqual(get_deployment.call_count, 3)
        self.assertEqual(
            sorted(r.deployment_name for r in self.registrar.records()), ["dep-a", "dep-b", "dep-c"]
        )

    def test_missing_deployment_dropped(self):
        """Test a record whose deployment is gone is dropped."""
        self.registrar.put(DeploymentRecord("fleet", "test-project", "dep-gone"))
        self.sweep.clean_deployments()
        self.assertEqual(len(self.registrar), 0)

    def test_removed_fleet_dropped(self):
        """Test a record of a deleted fleet is dropped."""
        self.registrar.put(DeploymentRecord("old-fleet", "test-project", "dep-a"))
        self.sweep.clean_deployments()
        self.assertEqual(len(self.registrar), 0)

    def test_errors_use_up_attempts(self):
        """Test a failing record is retried on later passes, then dropped."""
        self.enqueue("dep-err")
        self.client.deployments["dep-err"]["error"] = ProviderError(
            "backend error", ErrorKind.FATAL, 400
        )

        self.sweep.clean_deployments()
        self.assertEqual(self.registrar.records()[0].attempts_remaining, 2)
        self.sweep.clean_deployments()
        self.sweep.clean_deployments()
        self.assertEqual(len(self.registrar), 0)


class TestDeploymentRegistrar(unittest.TestCase):
    """Test persistence of the deployment queue."""

    def test_state_file_round_trip(self):
        """Test a new registrar reloads what the old one wrote."""
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "deployments.json")
            registrar = DeploymentRegistrar(path)
            registrar.put(DeploymentRecord("fleet", "test-project", "dep-a", enqueued_at=T0))
            registrar.put(DeploymentRecord("fleet", "test-project", "dep-b", enqueued_at=T0))
            registrar.get()

            restored = DeploymentRegistrar(path)
            self.assertEqual(restored.load(), 1)
            record = restored.records()[0]
            self.assertEqual(record.deployment_name, "dep-b")
            self.assertEqual(record.enqueued_at, T0)

    def test_load_without_file(self):
        """Test loading when nothing was persisted yet."""
        self.assertEqual(DeploymentRegistrar().load(), 0)
        self.assertEqual(DeploymentRegistrar("/nonexistent/deployments.json").load(), 0)


class TestWorkerPass(CleanupTestCase):
    """Test cleanup actions on idle, offline workers."""

    def run_workers(self):
        for future in self.sweep.clean_workers():
            future.exception(timeout=10)

    def test_delete_action(self):
        """Test an offline idle DELETE worker is deleted once and deregistered."""
        worker = self.add_worker()
        worker.set_cleanup_action(CleanUpAction.DELETE, "operator request")
        self.fleet.set_count(1)

        self.run_workers()

        self.assertEqual(self.client.deleted_vms, [worker.name])
        self.assertIsNone(self.registry.get_node(worker.name))
        self.assertEqual(self.fleet.approximate_worker_count, 0)

    def test_default_with_idle_shutdown(self):
        """Test DEFAULT resolves to a power-off when idle shutdown is set."""
        worker = self.add_worker(shutdown_on_idle=True)
        self.run_workers()

        self.assertEqual(self.client.stopped, [worker.name])
        self.assertEqual(self.client.deleted_vms, [])
        self.assertTrue(worker.eligible_for_reuse)
        self.assertEqual(worker.cleanup_action, CleanUpAction.SHUTDOWN)

        self.run_workers()
        self.assertEqual(self.client.stopped, [worker.name])

    def test_skipped_workers(self):
        """Test online, busy, user-offline and blocked workers are left alone."""
        self.add_worker("online-0", online=True)
        busy = self.add_worker("busy-0")
        self.registry.mark_busy(busy, True)
        user = self.add_worker("user-0")
        self.registry.set_offline_by_user(user)
        blocked = self.add_worker("blocked-0")
        blocked.block_cleanup_action()

        self.assertEqual(self.sweep.clean_workers(), [])
        self.assertEqual(self.client.deleted_vms, [])

    def test_missing_vm_removes_node(self):
        """Test a worker whose VM is gone is just deregistered."""
        worker = self.add_worker()
        self.client.vms.clear()

        self.assertEqual(self.sweep.clean_workers(), [])
        self.assertIsNone(self.registry.get_node(worker.name))
        self.assertEqual(self.client.deleted_vms, [])

    def test_failed_action_forces_delete(self):
        """Test a shutdown that keeps failing is turned into a DELETE."""
        worker = self.add_worker(shutdown_on_idle=True)
        self.client.stop_vm = MagicMock(side_effect=ProviderError("stop failed", ErrorKind.FATAL, 400))
        self.sweep.action_strategy.wait_interval = 0

        self.run_workers()

        self.assertEqual(self.client.stop_vm.call_count, 4)
        self.assertTrue(wait_for(lambda: worker.cleanup_action is CleanUpAction.DELETE))
        self.assertEqual(worker.cleanup_reason, FAILED_ACTION_REASON)


class TestRetentionAndLeaks(CleanupTestCase):
    """Test the idle-retention and leaked-resource passes."""

    def test_idle_worker_past_retention_is_disconnected(self):
        """Test an online worker idle past its retention time goes offline."""
        worker = self.add_worker(online=True, retention_minutes=30)
        self.clock.now = self.registry.idle_since(worker) + timedelta(minutes=31)

        self.sweep.apply_retention()

        self.assertFalse(self.registry.is_online(worker))
        self.assertEqual(worker.cleanup_action, CleanUpAction.DEFAULT)

    def test_retention_zero_never_reclaims(self):
        """Test retention 0 keeps a worker forever."""
        worker = self.add_worker(online=True, retention_minutes=0)
        self.clock.now = T0 + timedelta(days=30)
        self.sweep.apply_retention()
        self.assertTrue(self.registry.is_online(worker))

    def test_leaked_vm_is_terminated(self):
        """Test an old VM no node refers to is deleted without touching capacity."""
        self.add_worker("known-0")
        self.client.add_vm("leaked-0", created="2024-05-01T10:00:00.000-00:00")
        self.client.add_vm("fresh-0", created="2024-05-01T11:59:00.000-00:00")
        self.fleet.set_count(3)

        self.sweep.clean_leaked_resources()

        self.assertTrue(wait_for(lambda: self.client.deleted_vms == ["leaked-0"]))
        self.assertEqual(self.fleet.approximate_worker_count, 3)

    def test_full_sweep_survives_failing_pass(self):
        """Test one broken pass does not stop the others."""
        self.client.list_vms = MagicMock(side_effect=RuntimeError("boom"))
        worker = self.add_worker()
        worker.set_cleanup_action(CleanUpAction.DELETE, "operator request")

        self.sweep.run()

        self.assertIsNone(self.registry.get_node(worker.name))


class TestRetentionKinds(CleanupTestCase):
    """Test pool and run-once retention."""

    def add_pool_template(self, pool_size=1, max_age_hours=0):
        template = Template(
            name="linux",
            fleet_name="fleet",
            image="debian-12",
            retention_kind=RetentionKind.POOL,
            pool_size=pool_size,
            pool_max_age_hours=max_age_hours,
        )
        self.fleet.templates.add(template)
        return template

    def add_pool_workers(self, count):
        workers = [
            self.add_worker(f"linux-ab12cd34-{i}", online=True, retention_kind=RetentionKind.POOL)
            for i in range(count)
        ]
        self.fleet.set_count(count, {"linux": count})
        return workers

    def later(self, **delta):
        self.clock.now = datetime.now(timezone.utc) + timedelta(**delta)

    def test_pool_excess_is_deleted(self):
        """Test a pool above its size has its surplus worker deprovisioned."""
        self.add_pool_template(pool_size=1)
        workers = self.add_pool_workers(2)
        self.later(minutes=2)

        self.sweep.apply_retention()

        retired = [w for w in workers if w.cleanup_action is CleanUpAction.DELETE]
        kept = [w for w in workers if w.cleanup_action is CleanUpAction.DEFAULT]
        self.assertEqual(len(retired), 1)
        self.assertEqual(len(kept), 1)
        self.assertFalse(self.registry.is_online(retired[0]))
        self.assertTrue(self.registry.is_online(kept[0]))

        for future in self.sweep.clean_workers():
            future.result(timeout=10)
        self.assertIsNone(self.registry.get_node(retired[0].name))
        self.assertEqual(self.client.deleted_vms, [retired[0].name])
        self.assertEqual(self.fleet.template_count("linux"), 1)

    def test_pool_workers_ignore_idle_retention(self):
        """Test workers within the pool size stay online however long they idle."""
        self.add_pool_template(pool_size=2)
        workers = self.add_pool_workers(2)
        self.later(hours=3)

        self.sweep.apply_retention()

        self.assertTrue(all(self.registry.is_online(w) for w in workers))
        self.assertTrue(all(w.cleanup_action is CleanUpAction.DEFAULT for w in workers))

    def test_pool_excess_waits_for_idle_grace(self):
        """Test a surplus worker idle for less than a minute is left alone."""
        self.add_pool_template(pool_size=1)
        workers = self.add_pool_workers(2)
        self.later(seconds=30)

        self.sweep.apply_retention()

        self.assertTrue(all(self.registry.is_online(w) for w in workers))

    def test_pool_worker_past_max_age(self):
        """Test a pool worker older than the pool's maximum age is replaced."""
        self.add_pool_template(pool_size=1, max_age_hours=1)
        worker = self.add_pool_workers(1)[0]
        self.later(hours=2)

        self.sweep.apply_retention()

        self.assertEqual(worker.cleanup_action, CleanUpAction.DELETE)
        self.assertIn("Older than 1 hour(s)", worker.cleanup_reason)

    def test_pool_worker_of_removed_template(self):
        """Test a pool worker whose template is gone is deleted."""
        worker = self.add_pool_workers(1)[0]
        self.later(minutes=2)

        self.sweep.apply_retention()

        self.assertEqual(worker.cleanup_action, CleanUpAction.DELETE)
        self.assertFalse(self.registry.is_online(worker))

    def test_once_worker_retired_after_its_job(self):
        """Test a run-once worker goes offline and is deleted after one job."""
        worker = self.add_worker(online=True, retention_kind=RetentionKind.ONCE)
        self.sweep.apply_retention()
        self.assertTrue(self.registry.is_online(worker))

        self.registry.mark_busy(worker, True)
        self.registry.mark_busy(worker, False)
        self.later(seconds=1)
        self.sweep.apply_retention()

        self.assertFalse(self.registry.is_online(worker))
        self.assertFalse(self.registry.is_accepting_tasks(worker))
        self.assertEqual(worker.cleanup_action, CleanUpAction.DELETE)

    def test_once_worker_shut_down_when_configured(self):
        """Test a run-once worker that shuts down on idle is stopped for reuse."""
        worker = self.add_worker(
            online=True, retention_kind=RetentionKind.ONCE, shutdown_on_idle=True
        )
        self.registry.mark_busy(worker, True)
        self.registry.mark_busy(worker, False)
        self.later(seconds=1)

        self.sweep.apply_retention()
        for future in self.sweep.clean_workers():
            future.result(timeout=10)

        self.assertEqual(self.client.stopped, [worker.name])
        self.assertTrue(worker.eligible_for_reuse)
        self.assertIsNotNone(self.registry.get_node(worker.name))


if __name__ == "__main__":
    unittest.main()
