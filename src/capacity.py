"""
Fleet capacity tracking.

A Fleet holds an approximate count of the workers it has in use and is the
single admission-control point deciding how many new workers may be
requested. The count is a best-effort gauge: reserved before a deployment
is requested, released when a unit fails or a worker is destroyed, and
periodically overwritten from the provider by the verification gate.
"""

import logging
import threading
from typing import Dict, List, Optional

from models import Template
from templates import TemplateRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 10
DEFAULT_DEPLOYMENT_TIMEOUT = 1200  # seconds


class Fleet:
    """A pool of workers in one cloud project and zone."""

    def __init__(
        self,
        name: str,
        project_id: str,
        zone: str,
        max_workers: int = DEFAULT_MAX_WORKERS,
        deployment_timeout: int = DEFAULT_DEPLOYMENT_TIMEOUT,
        credentials_id: str = "",
        templates: Optional[List[Template]] = None,
    ):
        self.name = name
        self.project_id = project_id
        self.zone = zone
        self.max_workers = max_workers
        self.deployment_timeout = deployment_timeout
        self.credentials_id = credentials_id
        self.templates = TemplateRegistry(templates or [])
        self.status_details = ""

        self._lock = threading.Lock()
        self._count = 0
        self._template_counts: Dict[str, int] = {}
        # Always re-verified after a (re)load.
        self._configuration_valid = False

    @property
    def configuration_valid(self) -> bool:
        with self._lock:
            return self._configuration_valid

    def set_configuration_valid(self, valid: bool, details: str = "") -> None:
        with self._lock:
            self._configuration_valid = valid
            self.status_details = details

    @property
    def approximate_worker_count(self) -> int:
        with self._lock:
            return self._count

    def template_count(self, template_name: str) -> int:
        with self._lock:
            return self._template_counts.get(template_name, 0)

    def reserve(self, desired: int, template: Optional[Template] = None) -> int:
        """
        Reserve up to `desired` workers against the fleet ceiling.

        Args:
            desired: Number of workers wanted
            template: Optional template whose own ceiling also applies

        Returns:
            Number granted, between 0 and desired
        """
        if desired <= 0:
            return 0

        with self._lock:
            available = max(0, self.max_workers - self._count)
            granted = min(desired, available)
            if template is not None and template.max_workers > 0:
                used = self._template_counts.get(template.name, 0)
                granted = min(granted, max(0, template.max_workers - used))
            granted = max(0, granted)

            self._count += granted
            if template is not None and granted:
                self._template_counts[template.name] = (
                    self._template_counts.get(template.name, 0) + granted
                )
            current = self._count

        if granted == 0:
            logger.info(
                f"Fleet {self.name}: wanted {desired} worker(s) but cannot create any "
                f"(limit {self.max_workers}, in use {current})"
            )
        elif granted < desired:
            logger.info(
                f"Fleet {self.name}: wanted {desired} worker(s) but can only create {granted} "
                f"(limit {self.max_workers}, in use {current})"
            )
        else:
            logger.debug(f"Fleet {self.name}: reserved {granted} worker(s), in use {current}")
        return granted

    def release(self, count: int = 1, template_name: Optional[str] = None) -> None:
        """Give back `count` workers; never drops below zero."""
        if count <= 0:
            return
        with self._lock:
            self._count = max(0, self._count - count)
            if template_name:
                remaining = max(0, self._template_counts.get(template_name, 0) - count)
                if remaining:
                    self._template_counts[template_name] = remaining
                else:
                    self._template_counts.pop(template_name, None)

    def set_count(self, total: int, by_template: Optional[Dict[str, int]] = None) -> None:
        """Overwrite the gauge with the provider's authoritative count."""
        with self._lock:
            self._count = max(0, total)
            self._template_counts = {
                name: count for name, count in (by_template or {}).items() if count > 0
            }
        logger.debug(f"Fleet {self.name}: worker count set to {total}")
