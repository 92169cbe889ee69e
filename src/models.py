"""
Data models for the worker fleet provisioner.
"""

import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class LaunchMethod(Enum):
    """How a worker is attached once its VM is up."""

    PUSH = "push"  # the host connects out to the worker
    PULL = "pull"  # the worker calls back to the host


class UsageMode(Enum):
    """Label matching mode of a template or worker."""

    NORMAL = "normal"  # always available, matches any label
    EXCLUSIVE = "exclusive"  # only for jobs that name its label


class RetentionKind(Enum):
    """When an idle worker is retired."""

    IDLE = "idle"  # after retention_minutes without work
    POOL = "pool"  # keep pool_size workers, retire the excess
    ONCE = "once"  # after its first completed job


class CleanUpAction(Enum):
    """What the cleanup sweep should do with an idle, offline worker."""

    DEFAULT = "default"
    SHUTDOWN = "shutdown"
    DELETE = "delete"
    BLOCK = "block"


class OperationState(Enum):
    """Classified state of one resource inside a deployment."""

    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class FailureStage(Enum):
    """Where in bring-up a planned worker failed."""

    DEPLOYMENT = "deployment"
    PROVISIONING = "provisioning"
    POSTPROVISIONING = "postprovisioning"


IN_PROGRESS_STATES = {"PENDING", "IN_PROGRESS", "RUNNING", "CREATING"}
SUCCEEDED_STATES = {"SUCCEEDED", "DONE", "COMPLETED"}


def classify_operation_state(state: Optional[str]) -> OperationState:
    """Classify a raw provider state; anything unrecognised is a failure."""
    normalized = str(state or "").upper()
    if normalized in IN_PROGRESS_STATES:
        return OperationState.IN_PROGRESS
    if normalized in SUCCEEDED_STATES:
        return OperationState.SUCCEEDED
    return OperationState.FAILED


@dataclass(eq=False)
class Template:
    """Worker template owned by exactly one fleet."""

    name: str
    fleet_name: str
    labels: str = ""
    usage_mode: UsageMode = UsageMode.NORMAL
    machine_type: str = "e2-standard-2"
    image: str = ""
    launch_method: LaunchMethod = LaunchMethod.PUSH
    parallelism: int = 1
    retention_kind: RetentionKind = RetentionKind.IDLE
    retention_minutes: int = 60
    shutdown_on_idle: bool = False
    pool_size: int = 1
    pool_max_age_hours: int = 0  # 0 means pool workers never age out
    subnet: str = ""
    storage_bucket: str = ""
    init_script: str = ""
    credentials_id: str = ""
    max_workers: int = 0  # 0 means no per-template ceiling
    max_deployment_size: int = 0  # 0 means no batch cap
    disabled: bool = False
    verified: bool = False
    status_details: str = ""
    _lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    @property
    def label_atoms(self) -> list:
        return self.labels.split()

    def is_eligible(self) -> bool:
        """Only verified, enabled templates are admitted for provisioning."""
        with self._lock:
            return self.verified and not self.disabled

    def mark_verified(self) -> None:
        with self._lock:
            self.verified = True
            self.status_details = ""

    def verification_failed(self, details: str) -> None:
        with self._lock:
            self.verified = False
            self.status_details = details

    def handle_provisioning_failure(self, message: str, stage: FailureStage) -> None:
        """Flip the template back to unverified and keep the latest failure."""
        with self._lock:
            self.verified = False
            self.status_details = f"{stage.value}: {message}" if message else stage.value


@dataclass(eq=False)
class Worker:
    """A provisioned worker VM known to the host node registry."""

    name: str
    template_name: str
    fleet_name: str
    deployment_name: str
    project_id: str
    zone: str
    launch_method: LaunchMethod = LaunchMethod.PUSH
    labels: str = ""
    usage_mode: UsageMode = UsageMode.NORMAL
    retention_kind: RetentionKind = RetentionKind.IDLE
    shutdown_on_idle: bool = False
    retention_minutes: int = 60
    credentials_id: str = ""
    os_type: str = "linux"
    host: str = ""
    port: int = 22
    eligible_for_reuse: bool = False
    cleanup_action: CleanUpAction = CleanUpAction.DEFAULT
    cleanup_reason: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    lock: threading.RLock = field(
        default_factory=threading.RLock, repr=False, compare=False
    )

    def clear_cleanup_action(self, reason: Optional[str] = None) -> None:
        """Reset to the default policy so the cleanup sweep may act on it."""
        with self.lock:
            self.cleanup_action = CleanUpAction.DEFAULT
            self.cleanup_reason = reason

    def block_cleanup_action(self) -> None:
        """Keep the cleanup sweep away while bring-up or shutdown runs."""
        with self.lock:
            self.cleanup_action = CleanUpAction.BLOCK
            self.cleanup_reason = None

    def set_cleanup_action(self, action: CleanUpAction, reason: str) -> None:
        """Request an explicit SHUTDOWN or DELETE."""
        if action not in (CleanUpAction.SHUTDOWN, CleanUpAction.DELETE):
            raise ValueError(
                f"Only SHUTDOWN or DELETE can be set explicitly, got {action.name}"
            )
        with self.lock:
            self.cleanup_action = action
            self.cleanup_reason = reason

    def is_cleanup_blocked(self) -> bool:
        with self.lock:
            return self.cleanup_action is CleanUpAction.BLOCK

    def effective_cleanup_action(self) -> CleanUpAction:
        """Resolve DEFAULT against the idle-shutdown policy."""
        with self.lock:
            action = self.cleanup_action
        if action is CleanUpAction.DEFAULT:
            return (
                CleanUpAction.SHUTDOWN if self.shutdown_on_idle else CleanUpAction.DELETE
            )
        return action


@dataclass
class DeploymentRecord:
    """A remote deployment waiting for the cleanup sweep to retire it."""

    fleet_name: str
    project_id: str
    deployment_name: str
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    script_uri: str = ""
    attempts_remaining: int = 3

    def to_dict(self) -> dict:
        return {
            "fleet_name": self.fleet_name,
            "project_id": self.project_id,
            "deployment_name": self.deployment_name,
            "enqueued_at": self.enqueued_at.isoformat(),
            "script_uri": self.script_uri,
            "attempts_remaining": self.attempts_remaining,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DeploymentRecord":
        return cls(
            fleet_name=data["fleet_name"],
            project_id=data["project_id"],
            deployment_name=data["deployment_name"],
            enqueued_at=datetime.fromisoformat(data["enqueued_at"]),
            script_uri=data.get("script_uri", ""),
            attempts_remaining=int(data.get("attempts_remaining", 3)),
        )


@dataclass
class DeploymentInfo:
    """Outcome of a batched deployment request."""

    deployment_name: str
    base_name: str
    count: int
    script_uri: str = ""


@dataclass
class DeploymentOperation:
    """Per-resource state inside a deployment."""

    resource_name: str
    resource_type: str
    state: str
    status_message: str = ""


@dataclass
class DeploymentStatus:
    """Summary of a remote deployment used by the cleanup sweep."""

    name: str
    insert_time: datetime
    state: OperationState
    message: str = ""


@dataclass(eq=False)
class PlannedUnit:
    """A worker under construction, resolving to a Worker or failing."""

    name: str
    future: Future
    parallelism: int = 1
    reused: bool = False
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    def result(self, timeout: Optional[float] = None) -> Worker:
        return self.future.result(timeout=timeout)

    def cancel(self) -> None:
        """Ask the bring-up to stop; compensation still runs."""
        self.cancel_event.set()

    def done(self) -> bool:
        return self.future.done()
