"""
Operation backends: translate an OperationRequest into backend jobs and
backend job state into per-node NodeState.

The orchestrator sees three calls per backend: submit() returns a
job id, poll() returns the states it could observe for a batch, and
cancel() makes a best-effort attempt to stop the job.
"""

import logging
import re
import time
import uuid
from abc import ABC, abstractmethod
from typing import Dict

from ..client.bos import BootOperation
from ..client.pcs import PowerOperation
from ..deadline import Deadline
from ..errors import InvalidIdentifier
from ..nodeset import NodeSet
from ..xname import Xname, parse
from .models import NodeState, NodeStatus, OperationKind, OperationRequest

logger = logging.getLogger(__name__)


class OperationBackend(ABC):
    """One kind of multi-node operation."""

    kind: OperationKind

    def validate(self, request: OperationRequest) -> None:
        """Raise ValueError for parameters the backend cannot accept."""

    @abstractmethod
    def submit(self, request: OperationRequest, targets: NodeSet, deadline: Deadline = None) -> str:
        """Start a job for targets and return its id."""

    @abstractmethod
    def poll(self, job_id: str, targets: NodeSet, deadline: Deadline = None) -> Dict[Xname, NodeState]:
        """Current state of whichever targets the backend reports on."""

    @abstractmethod
    def cancel(self, job_id: str, targets: NodeSet, deadline: Deadline = None) -> None:
        """Best-effort stop."""


def _lookup(targets: NodeSet, raw: str):
    try:
        xname = parse(raw)
    except InvalidIdentifier:
        logger.debug(f"Backend reported unrecognised id '{raw}'")
        return None
    return xname if xname in targets else None


# ---------------------------------------------------------------------------
# Power
# ---------------------------------------------------------------------------

POWER_TASK_STATUS = {
    "new": NodeStatus.PENDING,
    "in-progress": NodeStatus.IN_PROGRESS,
    "succeeded": NodeStatus.SUCCEEDED,
    "failed": NodeStatus.FAILED,
    "unsupported": NodeStatus.FAILED,
}


class PowerTransitionBackend(OperationBackend):
    """Power operations through PCS transitions."""

    kind = OperationKind.POWER

    def __init__(self, power):
        self.power = power

    def validate(self, request: OperationRequest) -> None:
        PowerOperation.from_str(request.param("operation", ""))

    def submit(self, request: OperationRequest, targets: NodeSet, deadline: Deadline = None) -> str:
        operation = PowerOperation.from_str(request.param("operation", ""))
        return self.power.create_transition(
            operation,
            targets,
            task_deadline_minutes=request.param("task_deadline_minutes"),
            deadline=deadline,
        )

    def poll(self, job_id: str, targets: NodeSet, deadline: Deadline = None) -> Dict[Xname, NodeState]:
        transition = self.power.get_transition(job_id, deadline=deadline)
        states = {}
        for task in transition.tasks:
            xname = _lookup(targets, task.xname)
            if xname is None:
                continue
            status = POWER_TASK_STATUS.get(task.status, NodeStatus.IN_PROGRESS)
            if status == NodeStatus.FAILED:
                reason = task.error or task.description or task.status
                if task.status == "unsupported":
                    reason = f"unsupported: {reason}"
                states[xname] = NodeState.failed(reason)
            elif transition.status == "aborted" and not status.is_terminal:
                states[xname] = NodeState.failed("transition aborted")
            else:
                states[xname] = NodeState(status)
        return states

    def cancel(self, job_id: str, targets: NodeSet, deadline: Deadline = None) -> None:
        self.power.abort_transition(job_id, deadline=deadline)


# ---------------------------------------------------------------------------
# Boot
# ---------------------------------------------------------------------------


class BootSessionBackend(OperationBackend):
    """Boot, reboot and shutdown through BOS v2 sessions."""

    kind = OperationKind.BOOT

    def __init__(self, boot):
        self.boot = boot

    def validate(self, request: OperationRequest) -> None:
        BootOperation.from_str(request.param("operation", ""))
        if not request.param("template"):
            raise ValueError("boot operation needs a session template")

    def submit(self, request: OperationRequest, targets: NodeSet, deadline: Deadline = None) -> str:
        session = self.boot.create_session(
            request.param("template"),
            BootOperation.from_str(request.param("operation", "")),
            targets,
            stage=bool(request.param("stage", False)),
            deadline=deadline,
        )
        return session.name

    def poll(self, job_id: str, targets: NodeSet, deadline: Deadline = None) -> Dict[Xname, NodeState]:
        session = self.boot.get_session(job_id, deadline=deadline)
        if session.error and session.is_complete:
            logger.warning(f"BOS session {job_id} completed with error: {session.error}")

        states = {}
        for component in self.boot.list_components(targets, deadline=deadline):
            xname = _lookup(targets, component.id)
            if xname is None:
                continue
            ours = component.session == job_id
            if component.status == "failed" or (ours and component.error):
                states[xname] = NodeState.failed(component.error or "BOS reported failure")
            elif ours and component.phase:
                states[xname] = NodeState(NodeStatus.IN_PROGRESS, component.phase)
            elif ours and component.status == "stable":
                states[xname] = NodeState(NodeStatus.SUCCEEDED)
            elif session.is_complete:
                states[xname] = NodeState(NodeStatus.SUCCEEDED)
            elif ours:
                states[xname] = NodeState(NodeStatus.IN_PROGRESS, component.status or None)
            else:
                states[xname] = NodeState.pending()
        return states

    def cancel(self, job_id: str, targets: NodeSet, deadline: Deadline = None) -> None:
        self.boot.delete_session(job_id, deadline=deadline)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

CONFIG_STATUS = {
    "unconfigured": NodeStatus.PENDING,
    "pending": NodeStatus.IN_PROGRESS,
    "configured": NodeStatus.SUCCEEDED,
    "failed": NodeStatus.FAILED,
}


class ConfigApplyBackend(OperationBackend):
    """
    Configuration through CFS component desired state.

    CFS has no job object for this, so job ids are minted here and carry
    the configuration name that was applied: cfs-<configuration>-<suffix>.
    """

    kind = OperationKind.CONFIGURE

    def __init__(self, configuration):
        self.configuration = configuration

    def validate(self, request: OperationRequest) -> None:
        if not request.param("configuration"):
            raise ValueError("configure operation needs a configuration name")

    def submit(self, request: OperationRequest, targets: NodeSet, deadline: Deadline = None) -> str:
        name = request.param("configuration")
        self.configuration.set_desired_config(
            targets, name, clear_state=bool(request.param("clear_state", False)), deadline=deadline
        )
        return f"cfs-{name}-{uuid.uuid4().hex[:8]}"

    @staticmethod
    def configuration_of(job_id: str) -> str:
        """The configuration name a job id was minted for."""
        prefix, _, rest = job_id.partition("-")
        name, _, suffix = rest.rpartition("-")
        if prefix != "cfs" or not name or len(suffix) != 8:
            raise KeyError(f"Unknown configuration job {job_id}")
        return name

    def poll(self, job_id: str, targets: NodeSet, deadline: Deadline = None) -> Dict[Xname, NodeState]:
        name = self.configuration_of(job_id)
        states = {}
        for component in self.configuration.list_components(targets, deadline=deadline):
            xname = _lookup(targets, component.id)
            if xname is None:
                continue
            if component.desired_config != name:
                states[xname] = NodeState.failed(f"desired configuration changed to '{component.desired_config}'")
                continue
            status = CONFIG_STATUS.get(component.configuration_status, NodeStatus.IN_PROGRESS)
            if status == NodeStatus.FAILED:
                states[xname] = NodeState.failed(f"configuration failed after {component.error_count} attempt(s)")
            else:
                states[xname] = NodeState(status)
        return states

    def cancel(self, job_id: str, targets: NodeSet, deadline: Deadline = None) -> None:
        self.configuration.stop_retrying(targets, deadline=deadline)


# ---------------------------------------------------------------------------
# Configuration sessions
# ---------------------------------------------------------------------------

# CFS session names: lowercase alphanumerics and '-', at most 45 characters
SESSION_NAME_MAX = 45
_SESSION_NAME_INVALID = re.compile(r"[^a-z0-9-]+")


def session_name(configuration: str, now: float = None) -> str:
    """<configuration>-<UTC timestamp>-<suffix>, trimmed to a valid CFS name."""
    stamp = time.strftime("%Y%m%d%H%M%S", time.gmtime(now))
    tail = f"-{stamp}-{uuid.uuid4().hex[:4]}"
    base = _SESSION_NAME_INVALID.sub("-", configuration.lower()).strip("-")
    return base[: SESSION_NAME_MAX - len(tail)].rstrip("-") + tail


class CfsSessionBackend(OperationBackend):
    """
    One-off configuration through dynamic CFS sessions.

    Each batch becomes a session whose Ansible limit is the batch; the
    session only reports an overall result, so every node in it shares
    that result. Nodes already in a pending or running dynamic session
    are refused.
    """

    kind = OperationKind.CONFIG_SESSION

    def __init__(self, configuration):
        self.configuration = configuration

    def validate(self, request: OperationRequest) -> None:
        if not request.param("configuration"):
            raise ValueError("configuration session needs a configuration name")
        verbosity = request.param("ansible_verbosity")
        if verbosity is not None and not 0 <= int(verbosity) <= 4:
            raise ValueError(f"ansible verbosity must be 0-4, got {verbosity}")

    def busy_nodes(self, targets: NodeSet, deadline: Deadline = None) -> Dict[str, str]:
        """Targeted node -> name of the active dynamic session it is in."""
        wanted = {str(x) for x in targets}
        busy = {}
        for session in self.configuration.list_sessions(deadline=deadline):
            if not session.is_active or session.target_definition != "dynamic":
                continue
            for member in session.limit_ids + session.group_members:
                if member in wanted:
                    busy.setdefault(member, session.name)
        return busy

    def submit(self, request: OperationRequest, targets: NodeSet, deadline: Deadline = None) -> str:
        busy = self.busy_nodes(targets, deadline=deadline)
        if busy:
            node, name = sorted(busy.items())[0]
            raise ValueError(f"{len(busy)} node(s) already in an active CFS session, e.g. {node} in {name}")
        configuration = request.param("configuration")
        session = self.configuration.create_session(
            session_name(configuration),
            configuration,
            targets,
            ansible_verbosity=request.param("ansible_verbosity"),
            ansible_passthrough=request.param("ansible_passthrough"),
            deadline=deadline,
        )
        return session.name

    def poll(self, job_id: str, targets: NodeSet, deadline: Deadline = None) -> Dict[Xname, NodeState]:
        session = self.configuration.get_session(job_id, deadline=deadline)
        if not session.is_complete:
            state = NodeState(NodeStatus.IN_PROGRESS, "running") if session.status == "running" else NodeState.pending()
        elif session.succeeded == "true":
            state = NodeState(NodeStatus.SUCCEEDED)
        elif session.succeeded == "false":
            state = NodeState.failed(f"CFS session {job_id} failed")
        else:
            state = NodeState.failed(f"CFS session {job_id} completed without a result ({session.succeeded or 'none'})")
        return {xname: state for xname in targets}

    def cancel(self, job_id: str, targets: NodeSet, deadline: Deadline = None) -> None:
        self.configuration.delete_session(job_id, deadline=deadline)
