"""
Operation data model: requests, per-node state, sessions and reports.
"""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..deadline import Deadline
from ..nodeset import NodeSet
from ..xname import Xname


class OperationKind(Enum):
    POWER = "power"
    BOOT = "boot"
    CONFIGURE = "configure"
    CONFIG_SESSION = "config_session"


class NodeStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.TIMED_OUT)


class SessionState(Enum):
    SUBMITTED = "submitted"
    POLLING = "polling"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (SessionState.SUBMITTED, SessionState.POLLING)


@dataclass(frozen=True)
class NodeState:
    status: NodeStatus
    reason: Optional[str] = None

    @classmethod
    def pending(cls) -> "NodeState":
        return cls(NodeStatus.PENDING)

    @classmethod
    def failed(cls, reason: str) -> "NodeState":
        return cls(NodeStatus.FAILED, reason or "failed")

    def to_dict(self) -> Dict[str, Any]:
        data = {"status": self.status.value}
        if self.reason:
            data["reason"] = self.reason
        return data


@dataclass(frozen=True)
class OperationRequest:
    """What to do, to which nodes. Build with the classmethods."""

    kind: OperationKind
    targets: NodeSet
    params: Tuple[Tuple[str, Any], ...] = ()

    @classmethod
    def power(cls, targets: NodeSet, operation: str, task_deadline_minutes: int = None) -> "OperationRequest":
        params = {"operation": operation}
        if task_deadline_minutes is not None:
            params["task_deadline_minutes"] = task_deadline_minutes
        return cls(OperationKind.POWER, targets, tuple(sorted(params.items())))

    @classmethod
    def boot(cls, targets: NodeSet, template: str, operation: str = "reboot", stage: bool = False) -> "OperationRequest":
        params = {"template": template, "operation": operation, "stage": stage}
        return cls(OperationKind.BOOT, targets, tuple(sorted(params.items())))

    @classmethod
    def configure(cls, targets: NodeSet, configuration: str, clear_state: bool = False) -> "OperationRequest":
        params = {"configuration": configuration, "clear_state": clear_state}
        return cls(OperationKind.CONFIGURE, targets, tuple(sorted(params.items())))

    @classmethod
    def config_session(
        cls,
        targets: NodeSet,
        configuration: str,
        ansible_verbosity: int = None,
        ansible_passthrough: str = None,
    ) -> "OperationRequest":
        params = {"configuration": configuration}
        if ansible_verbosity is not None:
            params["ansible_verbosity"] = ansible_verbosity
        if ansible_passthrough:
            params["ansible_passthrough"] = ansible_passthrough
        return cls(OperationKind.CONFIG_SESSION, targets, tuple(sorted(params.items())))

    def param(self, name: str, default: Any = None) -> Any:
        return dict(self.params).get(name, default)

    def describe(self) -> str:
        details = ", ".join(f"{k}={v}" for k, v in self.params)
        return f"{self.kind.value}({details}) on {len(self.targets)} node(s)"


@dataclass
class BackendJob:
    """One backend-side job covering a batch of targets."""

    job_id: str
    targets: NodeSet


class OperationSession:
    """
    Live state of a submitted operation.

    Owned by the orchestrator; every read from another thread goes through
    snapshot(), and every poll cycle lands through apply() in one step.
    """

    def __init__(self, request: OperationRequest, jobs: List[BackendJob], deadline: Deadline, correlation_id: str = None):
        self.request = request
        self.jobs = jobs
        self.deadline = deadline
        self.correlation_id = correlation_id
        self.state = SessionState.SUBMITTED
        self.poll_count = 0
        self.poll_failures = 0
        self.started_at = time.time()
        self.finished_at: Optional[float] = None
        self._lock = threading.Lock()
        self._nodes: Dict[Xname, NodeState] = {x: NodeState.pending() for x in request.targets}

    @property
    def job_ids(self) -> List[str]:
        return [job.job_id for job in self.jobs]

    def apply(self, updates: Mapping[Xname, NodeState]) -> int:
        """
        Apply one poll cycle atomically; terminal statuses are kept. Returns changes.

        Cycles arriving after the session itself reached a terminal state are dropped.
        """
        changed = 0
        with self._lock:
            if self.state.is_terminal:
                return 0
            for xname, state in updates.items():
                current = self._nodes.get(xname)
                if current is None or current.status.is_terminal:
                    continue
                if state != current:
                    self._nodes[xname] = state
                    changed += 1
            self.poll_count += 1
        return changed

    def snapshot(self) -> Dict[Xname, NodeState]:
        with self._lock:
            return dict(self._nodes)

    def all_terminal(self) -> bool:
        with self._lock:
            return all(state.status.is_terminal for state in self._nodes.values())

    def expire_remaining(self) -> None:
        """Mark every non-terminal node TIMED_OUT."""
        with self._lock:
            for xname, state in self._nodes.items():
                if not state.status.is_terminal:
                    self._nodes[xname] = NodeState(NodeStatus.TIMED_OUT, f"still {state.status.value} at deadline")

    def set_state(self, state: SessionState) -> None:
        with self._lock:
            self.state = state
            if state.is_terminal and self.finished_at is None:
                self.finished_at = time.time()


def classify_outcome(nodes: Mapping[Xname, NodeState]) -> SessionState:
    """Overall outcome once every node is terminal."""
    statuses = [state.status for state in nodes.values()]
    succeeded = statuses.count(NodeStatus.SUCCEEDED)
    failed = statuses.count(NodeStatus.FAILED)
    timed_out = statuses.count(NodeStatus.TIMED_OUT)

    if succeeded == len(statuses):
        return SessionState.COMPLETED
    if succeeded > 0:
        return SessionState.PARTIALLY_FAILED
    if failed > 0:
        return SessionState.FAILED
    if timed_out > 0:
        return SessionState.TIMED_OUT
    raise ValueError("outcome requested while nodes are still pending")


@dataclass(frozen=True)
class OperationReport:
    """Final result; every targeted node appears exactly once."""

    kind: OperationKind
    outcome: SessionState
    nodes: Mapping[Xname, NodeState]
    job_ids: Tuple[str, ...] = ()
    polls: int = 0
    started_at: float = 0.0
    finished_at: float = 0.0
    correlation_id: Optional[str] = None

    @classmethod
    def from_session(cls, session: OperationSession) -> "OperationReport":
        nodes = session.snapshot()
        return cls(
            kind=session.request.kind,
            outcome=session.state,
            nodes={x: nodes[x] for x in sorted(nodes)},
            job_ids=tuple(session.job_ids),
            polls=session.poll_count,
            started_at=session.started_at,
            finished_at=session.finished_at or time.time(),
            correlation_id=session.correlation_id,
        )

    def with_status(self, *statuses: NodeStatus) -> NodeSet:
        return NodeSet(x for x, state in self.nodes.items() if state.status in statuses)

    @property
    def succeeded(self) -> NodeSet:
        return self.with_status(NodeStatus.SUCCEEDED)

    @property
    def failed(self) -> NodeSet:
        return self.with_status(NodeStatus.FAILED)

    @property
    def timed_out(self) -> NodeSet:
        return self.with_status(NodeStatus.TIMED_OUT)

    @property
    def retry_targets(self) -> NodeSet:
        """Nodes worth retrying: anything that did not succeed."""
        return NodeSet(x for x, state in self.nodes.items() if state.status != NodeStatus.SUCCEEDED)

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in NodeStatus}
        for state in self.nodes.values():
            counts[state.status.value] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "outcome": self.outcome.value,
            "job_ids": list(self.job_ids),
            "polls": self.polls,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "correlation_id": self.correlation_id,
            "counts": self.counts(),
            "nodes": {str(x): state.to_dict() for x, state in self.nodes.items()},
        }
