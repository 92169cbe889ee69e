"""
Worker Fleet Provisioner: on-demand build workers on Compute Engine.
"""

from capacity import Fleet
from cleanup import CleanupSweep, DeploymentRegistrar
from clients import ComputeRestClient
from config import ProvisionerConfig, load_fleets
from errors import ErrorKind, ProviderError, ProvisioningError
from log_utils import setup_logging
from models import CleanUpAction, LaunchMethod, PlannedUnit, Template, UsageMode, Worker
from orchestrator import DeploymentOrchestrator
from provisioner import FleetProvisioner
from retry import ExecutionEngine
from verification import VerificationGate

__all__ = [
    "Fleet",
    "CleanupSweep",
    "DeploymentRegistrar",
    "ComputeRestClient",
    "ProvisionerConfig",
    "load_fleets",
    "ErrorKind",
    "ProviderError",
    "ProvisioningError",
    "setup_logging",
    "CleanUpAction",
    "LaunchMethod",
    "PlannedUnit",
    "Template",
    "UsageMode",
    "Worker",
    "DeploymentOrchestrator",
    "FleetProvisioner",
    "ExecutionEngine",
    "VerificationGate",
]
