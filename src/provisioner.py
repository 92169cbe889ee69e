"""
Top-level provisioner owning every long-lived component.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from capacity import Fleet
from cleanup import CleanupSweep, DeploymentRegistrar
from clients import ComputeRestClient
from config import ProvisionerConfig
from credentials import CredentialStore
from lifecycle import WorkerLifecycle
from models import DeploymentRecord, PlannedUnit, Template
from orchestrator import DeploymentOrchestrator
from periodic import PeriodicTask
from pool import PoolMaintainer
from registry import InMemoryNodeRegistry, NodeRegistry
from retry import ExecutionEngine
from verification import VerificationGate

logger = logging.getLogger(__name__)


class FleetProvisioner:
    """
    Entry point for provisioning requests and the periodic passes.

    Every collaborator can be injected; defaults are built from the config.
    All public methods are safe to call from multiple threads.
    """

    def __init__(
        self,
        config: ProvisionerConfig,
        fleets: Optional[Iterable[Fleet]] = None,
        registry: Optional[NodeRegistry] = None,
        credentials: Optional[CredentialStore] = None,
        client_factory: Optional[Callable[[Fleet], ComputeRestClient]] = None,
        engine: Optional[ExecutionEngine] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.credentials = credentials or CredentialStore(config.credentials_file)
        self.registry = registry or InMemoryNodeRegistry(
            login_resolver=self.credentials.resolve
        )
        self.engine = engine or ExecutionEngine(max_workers=config.max_parallel)
        self._client_factory = client_factory or self._default_client

        self._lock = threading.RLock()
        self._fleets: Dict[str, Fleet] = {}
        self._clients: Dict[str, ComputeRestClient] = {}
        self._lifecycles: Dict[str, WorkerLifecycle] = {}
        self._orchestrators: Dict[str, DeploymentOrchestrator] = {}

        self.registrar = DeploymentRegistrar(config.state_file)
        self.gate = VerificationGate(
            self.get_fleet, self.client_for, check_timeout=config.check_timeout
        )
        self.sweep = CleanupSweep(
            fleets=self.fleets,
            fleet_lookup=self.get_fleet,
            client_for=self.client_for,
            lifecycle_for=self.lifecycle_for,
            registry=self.registry,
            registrar=self.registrar,
            engine=self.engine,
            success_retention_minutes=config.success_retention_minutes,
            failure_retention_minutes=config.failure_retention_minutes,
            clean_timeout=config.clean_timeout,
            clock=clock or (lambda: datetime.now(timezone.utc)),
        )
        self.pool = PoolMaintainer(self.fleets, self.orchestrator_for)
        self._tasks = [
            PeriodicTask("fleet-verification", config.verification_period, self.gate.run),
            PeriodicTask("fleet-cleanup", config.cleanup_period, self.sweep.run),
            PeriodicTask("fleet-pool-maintenance", config.pool_period, self.pool.run),
        ]

        for fleet in fleets or []:
            self.add_fleet(fleet)

    def _default_client(self, fleet: Fleet) -> ComputeRestClient:
        return ComputeRestClient(
            project_id=fleet.project_id,
            zone=fleet.zone,
            engine=self.engine,
            credentials=self.credentials.fleet_credentials(fleet.credentials_id),
        )

    # Fleets

    def add_fleet(self, fleet: Fleet) -> None:
        with self._lock:
            if fleet.name in self._fleets:
                raise ValueError(f"Fleet {fleet.name} already exists")
            self._fleets[fleet.name] = fleet
        self.register_fleet(fleet.name)
        self.register_templates(list(fleet.templates))
        logger.info(f"Added fleet {fleet.name} with {len(fleet.templates)} template(s)")

    def remove_fleet(self, name: str) -> Optional[Fleet]:
        with self._lock:
            fleet = self._fleets.pop(name, None)
            self._clients.pop(name, None)
            self._lifecycles.pop(name, None)
            orchestrator = self._orchestrators.pop(name, None)
        if orchestrator is not None:
            orchestrator.shutdown()
        return fleet

    def get_fleet(self, name: str) -> Optional[Fleet]:
        with self._lock:
            return self._fleets.get(name)

    def fleets(self) -> List[Fleet]:
        with self._lock:
            return list(self._fleets.values())

    def client_for(self, fleet: Fleet) -> ComputeRestClient:
        with self._lock:
            client = self._clients.get(fleet.name)
        if client is not None:
            return client
        client = self._client_factory(fleet)
        with self._lock:
            return self._clients.setdefault(fleet.name, client)

    def lifecycle_for(self, fleet: Fleet) -> WorkerLifecycle:
        client = self.client_for(fleet)
        with self._lock:
            if fleet.name not in self._lifecycles:
                self._lifecycles[fleet.name] = WorkerLifecycle(
                    fleet, client, self.registry, self.engine
                )
            return self._lifecycles[fleet.name]

    def orchestrator_for(self, fleet: Fleet) -> DeploymentOrchestrator:
        lifecycle = self.lifecycle_for(fleet)
        with self._lock:
            if fleet.name not in self._orchestrators:
                self._orchestrators[fleet.name] = DeploymentOrchestrator(
                    fleet=fleet,
                    client=lifecycle.client,
                    lifecycle=lifecycle,
                    registry=self.registry,
                    registrar=self.registrar,
                    gate=self.gate,
                    engine=self.engine,
                    poll_interval=self.config.poll_interval,
                    online_timeout=self.config.online_timeout,
                    max_workers=self.config.max_parallel,
                )
            return self._orchestrators[fleet.name]

    # Exposed operations

    def provision(
        self, label: Optional[str], workload: int, fleet_name: Optional[str] = None
    ) -> List[PlannedUnit]:
        """
        Plan workers for a workload.

        The first verified fleet, in configuration order, with an eligible
        template for the label takes the request.

        Args:
            label: Workload label, None or empty for any
            workload: Number of jobs
            fleet_name: Restrict the request to one fleet

        Returns:
            Planned units; empty when nothing can take the workload
        """
        if fleet_name:
            fleet = self.get_fleet(fleet_name)
            candidates = [fleet] if fleet is not None else []
        else:
            candidates = self.fleets()

        for fleet in candidates:
            if not fleet.configuration_valid:
                logger.debug(f"Fleet {fleet.name} not verified yet, skipping")
                continue

            template = fleet.templates.resolve(label)
            if template is None:
                pending = fleet.templates.matching(label)
                if pending is not None:
                    logger.info(
                        f"Template {pending.name} matches label {label!r} but is not eligible: "
                        f"{pending.status_details or 'not verified'}"
                    )
                continue

            return self.orchestrator_for(fleet).provision(template, workload)

        logger.info(f"No fleet can provision label {label!r}")
        return []

    def register_deployment(
        self, fleet_name: str, project_id: str, deployment_name: str, script_uri: str = ""
    ) -> None:
        self.registrar.put(
            DeploymentRecord(
                fleet_name=fleet_name,
                project_id=project_id,
                deployment_name=deployment_name,
                script_uri=script_uri,
            )
        )

    def register_fleet(self, name: str) -> None:
        self.gate.register_fleet(name)

    def register_template(self, template: Template) -> None:
        self.gate.register_template(template)

    def register_templates(self, templates: List[Template]) -> None:
        self.gate.register_templates(templates)

    def run_cleanup_sweep(self) -> None:
        self.sweep.run()

    def run_verification_pass(self) -> None:
        self.gate.run()

    def run_pool_maintenance(self) -> List[PlannedUnit]:
        return self.pool.run()

    # Background tasks

    def start(self) -> None:
        """Reload pending deployments and start the periodic passes."""
        self.registrar.load()
        for task in self._tasks:
            task.start()

    def stop(self) -> None:
        for task in self._tasks:
            task.stop()
        with self._lock:
            orchestrators = list(self._orchestrators.values())
        for orchestrator in orchestrators:
            orchestrator.shutdown()
        self.engine.shutdown(wait=False)
