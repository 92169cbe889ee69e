"""
Host node registry contract and an in-memory implementation.

The surrounding host owns the live set of attached workers. This module
describes what the provisioner needs from it and ships a thread-safe
default used by the CLI and the tests.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol

from models import Worker

logger = logging.getLogger(__name__)


class NodeRegistry(Protocol):
    """What the provisioner consumes from the host."""

    def add_node(self, worker: Worker) -> None: ...

    def remove_node(self, worker: Worker) -> None: ...

    def get_node(self, name: str) -> Optional[Worker]: ...

    def workers(self) -> List[Worker]: ...

    def is_online(self, worker: Worker) -> bool: ...

    def is_idle(self, worker: Worker) -> bool: ...

    def is_set_offline_by_user(self, worker: Worker) -> bool: ...

    def idle_since(self, worker: Worker) -> Optional[datetime]: ...

    def completed_jobs(self, worker: Worker) -> int: ...

    def set_accepting_tasks(self, worker: Worker, accepting: bool) -> None: ...

    def connect(self, worker: Worker) -> None: ...

    def disconnect(self, worker: Worker, reason: str = "") -> None: ...

    def wait_until_online(self, worker: Worker, timeout: float) -> bool: ...


class _NodeState:
    def __init__(self, worker: Worker):
        self.worker = worker
        self.online = threading.Event()
        self.busy = False
        self.offline_by_user = False
        self.accepting_tasks = True
        self.idle_since: Optional[datetime] = datetime.now(timezone.utc)
        self.completed_jobs = 0
        self.offline_reason = ""


class InMemoryNodeRegistry:
    """
    Thread-safe node registry kept in process memory.

    Args:
        connector: Called with the worker and its resolved login (None when
            the worker has no credentials id) when a push-mode worker is
            connected; raising marks the connect as failed
        login_resolver: Turns a worker credentials id into a username and
            secret
    """

    def __init__(
        self,
        connector: Optional[Callable[[Worker, Optional[Dict[str, str]]], None]] = None,
        login_resolver: Optional[Callable[[str], Dict[str, str]]] = None,
    ):
        self._lock = threading.Lock()
        self._nodes: Dict[str, _NodeState] = {}
        self._connector = connector
        self._login_resolver = login_resolver

    def _state(self, worker: Worker) -> Optional[_NodeState]:
        with self._lock:
            return self._nodes.get(worker.name)

    def add_node(self, worker: Worker) -> None:
        with self._lock:
            state = self._nodes.get(worker.name)
            if state is None:
                self._nodes[worker.name] = _NodeState(worker)
            else:
                state.worker = worker
        logger.debug(f"Registered node {worker.name}")

    def remove_node(self, worker: Worker) -> None:
        with self._lock:
            state = self._nodes.pop(worker.name, None)
        if state is not None:
            state.online.clear()
            logger.info(f"Removed node {worker.name}")

    def get_node(self, name: str) -> Optional[Worker]:
        with self._lock:
            state = self._nodes.get(name)
        return state.worker if state else None

    def workers(self) -> List[Worker]:
        with self._lock:
            return [state.worker for state in self._nodes.values()]

    def is_online(self, worker: Worker) -> bool:
        state = self._state(worker)
        return bool(state and state.online.is_set())

    def is_idle(self, worker: Worker) -> bool:
        state = self._state(worker)
        return bool(state and not state.busy)

    def is_set_offline_by_user(self, worker: Worker) -> bool:
        state = self._state(worker)
        return bool(state and state.offline_by_user)

    def idle_since(self, worker: Worker) -> Optional[datetime]:
        state = self._state(worker)
        if state is None or state.busy:
            return None
        return state.idle_since

    def completed_jobs(self, worker: Worker) -> int:
        state = self._state(worker)
        return state.completed_jobs if state else 0

    def set_accepting_tasks(self, worker: Worker, accepting: bool) -> None:
        state = self._state(worker)
        if state is not None:
            state.accepting_tasks = accepting

    def is_accepting_tasks(self, worker: Worker) -> bool:
        state = self._state(worker)
        return bool(state and state.accepting_tasks)

    def connect(self, worker: Worker) -> None:
        if self._state(worker) is None:
            raise RuntimeError(f"Node {worker.name} is not registered")
        if self._connector is not None:
            login = None
            if self._login_resolver is not None and worker.credentials_id:
                login = self._login_resolver(worker.credentials_id)
            self._connector(worker, login)
        self.mark_online(worker)

    def disconnect(self, worker: Worker, reason: str = "") -> None:
        state = self._state(worker)
        if state is None:
            return
        state.online.clear()
        state.offline_reason = reason
        logger.info(f"Disconnected node {worker.name}: {reason or 'no reason given'}")

    def wait_until_online(self, worker: Worker, timeout: float) -> bool:
        state = self._state(worker)
        if state is None:
            return False
        return state.online.wait(timeout)

    def mark_online(self, worker: Worker) -> None:
        """Record that a worker is attached, as a pull-mode callback would."""
        state = self._state(worker)
        if state is None:
            raise RuntimeError(f"Node {worker.name} is not registered")
        state.offline_reason = ""
        state.accepting_tasks = True
        state.completed_jobs = 0
        state.online.set()

    def mark_busy(self, worker: Worker, busy: bool) -> None:
        state = self._state(worker)
        if state is None:
            return
        if state.busy and not busy:
            state.completed_jobs += 1
        state.busy = busy
        state.idle_since = None if busy else datetime.now(timezone.utc)

    def set_offline_by_user(self, worker: Worker, offline: bool = True) -> None:
        state = self._state(worker)
        if state is None:
            return
        state.offline_by_user = offline
        if offline:
            state.online.clear()
