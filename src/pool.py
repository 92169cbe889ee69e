"""
Pool maintenance: keep pool-retention templates topped up to their size.
"""

import logging
from typing import Callable, List

from capacity import Fleet
from models import PlannedUnit, RetentionKind
from orchestrator import DeploymentOrchestrator

logger = logging.getLogger(__name__)


class PoolMaintainer:
    """
    Provisions the missing workers of every pool template.

    A template's pool counts the workers reserved against it, including
    those still being brought up, so a pass never orders the same worker
    twice.

    Args:
        fleets: Returns the live fleets
        orchestrator_for: Orchestrator of a fleet
    """

    def __init__(
        self,
        fleets: Callable[[], List[Fleet]],
        orchestrator_for: Callable[[Fleet], DeploymentOrchestrator],
    ):
        self._fleets = fleets
        self._orchestrator_for = orchestrator_for

    def run(self) -> List[PlannedUnit]:
        units: List[PlannedUnit] = []
        for fleet in self._fleets():
            if not fleet.configuration_valid:
                continue
            for template in fleet.templates:
                if template.retention_kind is not RetentionKind.POOL or not template.is_eligible():
                    continue
                missing = template.pool_size - fleet.template_count(template.name)
                if missing <= 0:
                    continue
                logger.info(
                    f"Fleet {fleet.name}: pool of template {template.name} is "
                    f"{missing} worker(s) short of {template.pool_size}"
                )
                try:
                    units.extend(
                        self._orchestrator_for(fleet).provision(
                            template, missing * template.parallelism
                        )
                    )
                except Exception as e:
                    logger.error(f"Failed to refill pool of template {template.name}: {e}")
        return units
