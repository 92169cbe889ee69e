"""
Unit tests for the deployment orchestrator.
"""

import json
import threading
import time
import unittest

from capacity import Fleet
from cleanup import DeploymentRegistrar
from errors import ErrorKind, ProviderError, ProvisioningCancelled, ProvisioningError, ProvisioningTimeout
from fakes import FakeComputeClient
from lifecycle import WorkerLifecycle
from models import CleanUpAction, LaunchMethod, Template, UsageMode, Worker
from orchestrator import DeploymentOrchestrator, is_eligible_for_reuse
from registry import InMemoryNodeRegistry
from retry import ExecutionEngine
from verification import VerificationGate


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class OrchestratorTestCase(unittest.TestCase):
    """Shared fixtures: one fleet, one verified 'linux' template."""

    max_workers = 2

    def setUp(self):
        self.client = FakeComputeClient()
        self.engine = ExecutionEngine(max_workers=4, sleep=lambda s: None)
        self.registry = InMemoryNodeRegistry()
        self.template = Template(
            name="linux",
            fleet_name="fleet",
            labels="linux",
            usage_mode=UsageMode.EXCLUSIVE,
            image="debian-12",
            verified=True,
        )
        self.fleet = Fleet(
            "fleet",
            "test-project",
            "europe-west2-a",
            max_workers=self.max_workers,
            templates=[self.template],
        )
        self.fleet.set_configuration_valid(True)
        self.registrar = DeploymentRegistrar()
        self.gate = VerificationGate(
            lambda name: self.fleet if name == "fleet" else None, lambda fleet: self.client
        )
        self.lifecycle = WorkerLifecycle(self.fleet, self.client, self.registry, self.engine)
        self.orchestrator = DeploymentOrchestrator(
            fleet=self.fleet,
            client=self.client,
            lifecycle=self.lifecycle,
            registry=self.registry,
            registrar=self.registrar,
            gate=self.gate,
            engine=self.engine,
            poll_interval=0.01,
            online_timeout=1,
        )

    def tearDown(self):
        self.orchestrator.shutdown(wait=True)
        self.engine.shutdown()

    def results(self, units):
        """Wait for every unit; returns (workers, errors)."""
        workers, errors = [], []
        for unit in units:
            try:
                workers.append(unit.result(timeout=10))
            except ProvisioningError as e:
                errors.append(e)
        return workers, errors


class TestProvisionNew(OrchestratorTestCase):
    """Test the new-creation path."""

    def test_capacity_limits_planned_units(self):
        """Test a request for 3 on a 2-worker fleet plans exactly 2 from one deployment."""
        units = self.orchestrator.provision(self.template, 3)
        second = self.orchestrator.provision(self.template, 1)

        self.assertEqual(len(units), 2)
        self.assertEqual(second, [])

        workers, errors = self.results(units)
        self.assertEqual(errors, [])
        self.assertEqual(len(self.client.created), 1)

        deployment_name, content, labels = self.client.created[0]
        instances = [
            r for r in json.loads(content)["resources"] if r["type"] == "compute.v1.instance"
        ]
        self.assertEqual(len(instances), 2)
        self.assertEqual(labels["fleet"], "fleet")
        self.assertEqual({w.name for w in workers}, {u.name for u in units})
        self.assertEqual(self.fleet.approximate_worker_count, 2)
        self.assertEqual(
            [r.deployment_name for r in self.registrar.records()], [deployment_name]
        )

    def test_new_worker_ends_in_default_state(self):
        """Test a successful bring-up leaves the worker online, DEFAULT and not reusable."""
        units = self.orchestrator.provision(self.template, 1)
        workers, _ = self.results(units)

        worker = workers[0]
        self.assertEqual(worker.cleanup_action, CleanUpAction.DEFAULT)
        self.assertFalse(worker.eligible_for_reuse)
        self.assertTrue(self.registry.is_online(worker))
        self.assertEqual(worker.host, "34.1.2.3")
        self.assertEqual(worker.template_name, "linux")

    def test_workload_is_divided_by_parallelism(self):
        """Test ceil(workload / parallelism) units are planned."""
        self.template.parallelism = 2
        units = self.orchestrator.provision(self.template, 3)
        self.assertEqual(len(units), 2)
        self.results(units)

    def test_no_template_or_no_workload(self):
        """Test declining without error."""
        self.assertEqual(self.orchestrator.provision(None, 3), [])
        self.assertEqual(self.orchestrator.provision(self.template, 0), [])
        self.assertEqual(self.fleet.approximate_worker_count, 0)

    def test_max_deployment_size_caps_batch(self):
        """Test the per-request batch cap applies before capacity is reserved."""
        self.fleet.max_workers = 5
        self.template.max_deployment_size = 1
        units = self.orchestrator.provision(self.template, 3)
        self.assertEqual(len(units), 1)
        self.assertEqual(self.fleet.approximate_worker_count, 1)
        self.results(units)


class TestProvisionFailures(OrchestratorTestCase):
    """Test compensation on failed units."""

    def test_failed_operation_fails_only_that_unit(self):
        """Test a FAILED VM operation releases one unit and unverifies the template."""
        self.client.vm_states = {0: ("FAILED", "Quota 'CPUS' exceeded")}
        units = self.orchestrator.provision(self.template, 2)
        workers, errors = self.results(units)

        self.assertEqual(len(workers), 1)
        self.assertEqual(len(errors), 1)
        self.assertIn("Quota 'CPUS' exceeded", str(errors[0]))
        self.assertEqual(self.fleet.approximate_worker_count, 1)
        self.assertFalse(self.template.verified)
        self.assertIn("Quota 'CPUS' exceeded", self.template.status_details)
        self.assertIn(self.template, self.gate.pending_templates())
        self.assertTrue(wait_for(lambda: units[0].name in self.client.deleted_vms))

    def test_deployment_request_failure(self):
        """Test a rejected deployment releases every unit without touching VMs."""
        self.client.create_error = ProviderError("quota exceeded", ErrorKind.CONFLICT, 409)
        units = self.orchestrator.provision(self.template, 2)
        workers, errors = self.results(units)

        self.assertEqual(workers, [])
        self.assertEqual(len(errors), 2)
        self.assertEqual(self.fleet.approximate_worker_count, 0)
        self.assertFalse(self.template.verified)
        self.assertTrue(self.template.status_details.startswith("deployment:"))
        self.assertEqual(self.client.deleted_vms, [])
        self.assertEqual(len(self.registrar), 0)

    def test_push_connect_failure_rolls_back(self):
        """Test a failed connect terminates the VM and removes the node."""
        registry = InMemoryNodeRegistry(connector=self._refuse)
        self.orchestrator.registry = registry
        units = self.orchestrator.provision(self.template, 1)
        workers, errors = self.results(units)

        self.assertEqual(len(errors), 1)
        self.assertIsNone(registry.get_node(units[0].name))
        self.assertEqual(self.fleet.approximate_worker_count, 0)
        self.assertTrue(self.template.status_details.startswith("postprovisioning:"))
        self.assertTrue(wait_for(lambda: units[0].name in self.client.deleted_vms))
        self.assertTrue(wait_for(lambda: f"{units[0].name}-ip" in self.client.deleted_addresses))

    @staticmethod
    def _refuse(worker, login):
        raise ConnectionRefusedError(f"{worker.name}:22 refused")

    def test_cancelled_unit_is_compensated(self):
        """Test cancelling a unit still cleans up its VM and capacity."""
        self.client.vm_states = {0: ("PENDING", "")}
        units = self.orchestrator.provision(self.template, 1)
        self.assertTrue(wait_for(lambda: self.client.operation_polls > 0))
        units[0].cancel()

        with self.assertRaises(ProvisioningCancelled):
            units[0].result(timeout=10)
        self.assertEqual(self.fleet.approximate_worker_count, 0)
        self.assertTrue(wait_for(lambda: units[0].name in self.client.deleted_vms))

    def test_cancel_during_deployment_terminates_vm(self):
        """Test a unit cancelled before its deployment returns still has its VM removed."""
        gate = threading.Event()
        self.client.create_gate = gate
        units = self.orchestrator.provision(self.template, 2)
        units[0].cancel()

        with self.assertRaises(ProvisioningCancelled):
            units[0].result(timeout=10)
        gate.set()

        workers, errors = self.results(units[1:])
        self.assertEqual(errors, [])
        self.assertTrue(self.registry.is_online(workers[0]))
        self.assertTrue(wait_for(lambda: units[0].name in self.client.deleted_vms))
        self.assertNotIn(units[1].name, self.client.deleted_vms)

        self.assertEqual(self.fleet.approximate_worker_count, 1)
        self.assertEqual(self.fleet.reserve(2, self.template), 1)


class TestPullLaunch(OrchestratorTestCase):
    """Test pull-mode bring-up."""

    def setUp(self):
        super().setUp()
        self.template.launch_method = LaunchMethod.PULL

    def test_pull_worker_comes_online(self):
        """Test the bring-up waits for the worker to call back."""
        units = self.orchestrator.provision(self.template, 1)
        name = units[0].name

        def call_back():
            wait_for(lambda: self.registry.get_node(name) is not None)
            self.registry.mark_online(self.registry.get_node(name))

        threading.Thread(target=call_back).start()
        workers, errors = self.results(units)
        self.assertEqual(errors, [])
        self.assertTrue(self.registry.is_online(workers[0]))

    def test_pull_worker_timeout(self):
        """Test a worker that never calls back is rolled back."""
        self.orchestrator.online_timeout = 0.1
        units = self.orchestrator.provision(self.template, 1)

        with self.assertRaises(ProvisioningTimeout):
            units[0].result(timeout=10)
        self.assertIsNone(self.registry.get_node(units[0].name))
        self.assertEqual(self.fleet.approximate_worker_count, 0)

    def test_init_script_is_staged(self):
        """Test the bootstrap script is uploaded and recorded for cleanup."""
        self.template.init_script = "#!/bin/sh\necho hello\n"
        self.template.storage_bucket = "fleet-scripts"
        self.orchestrator.online_timeout = 0.1
        units = self.orchestrator.provision(self.template, 1)
        self.results(units)

        record = self.registrar.records()[0]
        self.assertTrue(record.script_uri.startswith("gs://fleet-scripts/"))
        self.assertIn(record.script_uri, self.client.objects)
        self.assertIn("startup-script-url", self.client.created[0][1])


class TestReuse(OrchestratorTestCase):
    """Test reviving workers kept after an idle shutdown."""

    def add_stopped_worker(self, name="linux-old-0", labels="linux"):
        worker = Worker(
            name=name,
            template_name="linux",
            fleet_name="fleet",
            deployment_name="linux-old",
            project_id="test-project",
            zone="europe-west2-a",
            labels=labels,
            usage_mode=UsageMode.EXCLUSIVE,
            eligible_for_reuse=True,
        )
        worker.set_cleanup_action(CleanUpAction.SHUTDOWN, "Idle shutdown")
        self.registry.add_node(worker)
        self.client.add_vm(name)
        self.fleet.set_count(1, {"linux": 1})
        return worker

    def test_reused_worker_ends_in_default_state(self):
        """Test a revived worker is online, DEFAULT and no longer reusable."""
        stopped = self.add_stopped_worker()
        units = self.orchestrator.provision(self.template, 1)

        self.assertEqual(len(units), 1)
        self.assertTrue(units[0].reused)
        workers, errors = self.results(units)
        self.assertEqual(errors, [])
        self.assertIs(workers[0], stopped)
        self.assertEqual(stopped.cleanup_action, CleanUpAction.DEFAULT)
        self.assertFalse(stopped.eligible_for_reuse)
        self.assertTrue(self.registry.is_online(stopped))
        self.assertEqual(self.client.started, [stopped.name])
        self.assertEqual(self.client.created, [])
        self.assertEqual(self.fleet.approximate_worker_count, 1)

    def test_reuse_then_create_remainder(self):
        """Test only the shortfall is created new."""
        self.add_stopped_worker()
        units = self.orchestrator.provision(self.template, 2)
        self.assertEqual([u.reused for u in units], [True, False])
        self.results(units)

    def test_reuse_failure_leaves_worker_for_cleanup(self):
        """Test a worker whose VM vanished is handed to the cleanup sweep."""
        stopped = self.add_stopped_worker()
        self.client.vms.clear()
        units = self.orchestrator.provision(self.template, 1)

        with self.assertRaises(ProvisioningError):
            units[0].result(timeout=10)
        self.assertEqual(stopped.cleanup_action, CleanUpAction.DEFAULT)
        self.assertIn("Failed to reuse worker", stopped.cleanup_reason)
        self.assertFalse(self.registry.is_online(stopped))

    def test_reuse_label_rule(self):
        """Test the exact-string, case-insensitive reuse rule."""
        worker = Worker("w", "linux", "fleet", "d", "p", "z", labels="LINUX")
        self.assertTrue(is_eligible_for_reuse(worker, self.template))
        worker.labels = "linux docker"
        self.assertFalse(is_eligible_for_reuse(worker, self.template))
        worker.labels = ""
        worker.usage_mode = UsageMode.NORMAL
        self.assertTrue(is_eligible_for_reuse(worker, self.template))


class TestConcurrentProvision(OrchestratorTestCase):
    """Test admission under concurrent requests."""

    max_workers = 5

    def test_concurrent_requests_never_exceed_capacity(self):
        """Test N callers asking for M units each with N*M > max_workers."""
        planned = []
        lock = threading.Lock()
        start = threading.Barrier(8)

        def request():
            start.wait()
            units = self.orchestrator.provision(self.template, 2)
            with lock:
                planned.extend(units)

        threads = [threading.Thread(target=request) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len(planned), 5)
        self.results(planned)
        self.assertEqual(self.fleet.approximate_worker_count, 5)


if __name__ == "__main__":
    unittest.main()
