"""
Periodic verification of fleet configuration and worker templates.

Provisioning only admits fleets whose configuration is valid and templates
that are verified. Anything failing stays pending and is retried on every
pass, with its latest failure kept in status_details.
"""

import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from capacity import Fleet
from clients import ComputeRestClient
from deployment_doc import label_value
from models import LaunchMethod, RetentionKind, Template, UsageMode

logger = logging.getLogger(__name__)

MIN_DEPLOYMENT_TIMEOUT = 1200  # seconds
FLEET_NOT_VERIFIED = "fleet configuration not verified"

_PROJECT_ID = re.compile(r"^[a-z][a-z0-9-]{4,28}[a-z0-9]$")


def validate_fleet_settings(fleet: Fleet) -> List[str]:
    """Local sanity checks on a fleet's settings."""
    errors = []
    if not _PROJECT_ID.match(fleet.project_id or ""):
        errors.append(f"Invalid project id: {fleet.project_id!r}")
    if not fleet.zone:
        errors.append("Zone is required")
    if fleet.max_workers <= 0:
        errors.append(f"max_workers must be positive, got {fleet.max_workers}")
    if fleet.deployment_timeout < MIN_DEPLOYMENT_TIMEOUT:
        errors.append(
            f"deployment_timeout must be at least {MIN_DEPLOYMENT_TIMEOUT}s, "
            f"got {fleet.deployment_timeout}"
        )
    return errors


def validate_template_settings(template: Template) -> List[str]:
    """Local sanity checks on a template's settings."""
    errors = []
    if template.parallelism < 1:
        errors.append(f"parallelism must be at least 1, got {template.parallelism}")
    if not isinstance(template.launch_method, LaunchMethod):
        errors.append(f"Unknown launch method: {template.launch_method!r}")
    if template.usage_mode is UsageMode.EXCLUSIVE and not template.labels.strip():
        errors.append("Exclusive templates need at least one label")
    if not template.image:
        errors.append("Image is required")
    if template.retention_minutes < 0:
        errors.append(f"retention_minutes cannot be negative, got {template.retention_minutes}")
    if template.init_script and not template.storage_bucket:
        errors.append("An init script needs a storage bucket to be staged in")
    if template.retention_kind is RetentionKind.POOL and template.pool_size < 1:
        errors.append(f"pool_size must be at least 1, got {template.pool_size}")
    if template.pool_max_age_hours < 0:
        errors.append(
            f"pool_max_age_hours cannot be negative, got {template.pool_max_age_hours}"
        )
    return errors


class VerificationGate:
    """
    Tracks fleets and templates awaiting verification.

    Args:
        fleet_lookup: Resolves a fleet name to the live Fleet, or None
        client_for: Returns the compute client of a fleet
        check_timeout: Per-check budget in seconds for remote checks
        max_workers: Threads used to run remote checks concurrently
    """

    def __init__(
        self,
        fleet_lookup: Callable[[str], Optional[Fleet]],
        client_for: Callable[[Fleet], ComputeRestClient],
        check_timeout: float = 60,
        max_workers: int = 4,
    ):
        self._fleet_lookup = fleet_lookup
        self._client_for = client_for
        self.check_timeout = check_timeout
        self.max_workers = max_workers

        self._fleet_lock = threading.Lock()
        self._fleets: Set[str] = set()
        self._template_lock = threading.Lock()
        self._templates: Dict[Tuple[str, str], Template] = {}

    def register_fleet(self, name: str) -> None:
        with self._fleet_lock:
            self._fleets.add(name)

    def register_template(self, template: Template) -> None:
        with self._template_lock:
            self._templates[(template.fleet_name, template.name)] = template

    def register_templates(self, templates: Iterable[Template]) -> None:
        with self._template_lock:
            for template in templates:
                self._templates[(template.fleet_name, template.name)] = template

    def pending_templates(self) -> List[Template]:
        with self._template_lock:
            return list(self._templates.values())

    def registered_fleets(self) -> List[str]:
        with self._fleet_lock:
            return sorted(self._fleets)

    def run(self) -> None:
        """One verification pass: fleets first, then templates."""
        self.verify_fleets()
        self.verify_templates()

    def verify_fleets(self) -> None:
        for name in self.registered_fleets():
            fleet = self._fleet_lookup(name)
            if fleet is None:
                logger.info(f"Fleet {name} no longer configured, dropping it")
                with self._fleet_lock:
                    self._fleets.discard(name)
                continue

            try:
                if fleet.configuration_valid:
                    self._refresh_count(fleet)
                else:
                    self.verify_fleet(fleet)
            except Exception as e:
                logger.warning(f"Verification of fleet {name} failed: {e}")

    def verify_fleet(self, fleet: Fleet) -> bool:
        """
        Run the configuration check and, when it passes, sync the worker count.

        Returns:
            True if the fleet is now valid
        """
        errors = validate_fleet_settings(fleet)
        if not errors:
            try:
                self._client_for(fleet).verify_project()
            except Exception as e:
                errors.append(f"Cannot access project {fleet.project_id}: {e}")

        if errors:
            details = "\n".join(errors)
            fleet.set_configuration_valid(False, details)
            logger.warning(f"Fleet {fleet.name} failed verification:\n{details}")
            return False

        self._refresh_count(fleet)
        fleet.set_configuration_valid(True)
        logger.info(f"Fleet {fleet.name} verified")
        return True

    def _refresh_count(self, fleet: Fleet) -> None:
        counts = self._client_for(fleet).count_vms_by_template(fleet.name)
        by_template = {t.name: counts.get(label_value(t.name), 0) for t in fleet.templates}
        fleet.set_count(sum(counts.values()), by_template)

    def verify_templates(self) -> None:
        for template in self.pending_templates():
            key = (template.fleet_name, template.name)
            fleet = self._fleet_lookup(template.fleet_name)
            if fleet is None or fleet.templates.get(template.name) is not template:
                logger.info(f"Template {template.name} no longer configured, dropping it")
                self._discard(key, template)
                continue

            if not fleet.configuration_valid:
                template.verification_failed(FLEET_NOT_VERIFIED)
                continue

            try:
                errors = self.verify_template(fleet, template)
            except Exception as e:
                errors = [f"Verification error: {e}"]

            if errors:
                details = "\n".join(errors)
                template.verification_failed(details)
                logger.warning(f"Template {template.name} failed verification:\n{details}")
            else:
                template.mark_verified()
                self._discard(key, template)
                logger.info(f"Template {template.name} verified")

    def _discard(self, key: Tuple[str, str], template: Template) -> None:
        with self._template_lock:
            # Leave a template re-registered during the check in place.
            if self._templates.get(key) is template:
                del self._templates[key]

    def verify_template(self, fleet: Fleet, template: Template) -> List[str]:
        """
        Run every check on a template and collect all failures.

        Remote checks run concurrently, each bounded by check_timeout.
        """
        errors = validate_template_settings(template)
        client = self._client_for(fleet)

        checks: Dict[str, Callable[[], Optional[str]]] = {}
        if template.image:
            checks["image"] = lambda: (
                None if client.image_exists(template.image) else f"Image {template.image} not found"
            )
        if template.subnet:
            checks["subnet"] = lambda: (
                None if client.subnet_exists(template.subnet) else f"Subnet {template.subnet} not found"
            )
        if template.storage_bucket:
            checks["storage bucket"] = lambda: (
                None
                if client.bucket_status(template.storage_bucket) in ("owned", "available")
                else f"Storage bucket {template.storage_bucket} is owned by another project"
            )

        if not checks:
            return errors

        executor = ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(checks)),
            thread_name_prefix="fleet-verify",
        )
        try:
            futures = {name: executor.submit(check) for name, check in checks.items()}
            wait(futures.values(), timeout=self.check_timeout)
            for name, future in futures.items():
                if not future.done():
                    errors.append(f"{name} check timed out after {self.check_timeout}s")
                elif future.exception() is not None:
                    errors.append(f"{name} check failed: {future.exception()}")
                elif future.result():
                    errors.append(future.result())
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return errors
