"""
Power adapter (Power Control Service, /power-control/v1).

Transitions are PCS's asynchronous power jobs: one POST creates a
transition over many xnames, then per-xname tasks report progress.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from ..deadline import Deadline
from ..errors import MalformedResponse
from ..xname import Xname
from .transport import ServiceClient

logger = logging.getLogger(__name__)


class PowerOperation(Enum):
    """PCS transition operations; values are the wire names."""

    ON = "On"
    OFF = "Off"
    SOFT_OFF = "Soft-Off"
    SOFT_RESTART = "Soft-Restart"
    HARD_RESTART = "Hard-Restart"
    INIT = "Init"
    FORCE_OFF = "Force-Off"

    @classmethod
    def from_str(cls, operation: str) -> "PowerOperation":
        """Accepts 'on', 'soft-off', 'Force-Off', ..."""
        for member in cls:
            if member.value.lower() == operation.strip().lower():
                return member
        raise ValueError(
            f"Unknown power operation '{operation}', expected one of "
            f"{[m.value.lower() for m in cls]}"
        )


@dataclass
class PowerTask:
    xname: str
    status: str
    description: str = ""
    error: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PowerTask":
        return cls(
            xname=data.get("xname", ""),
            status=(data.get("taskStatus") or "").lower(),
            description=data.get("taskStatusDescription") or "",
            error=data.get("error") or "",
        )


@dataclass
class Transition:
    transition_id: str
    status: str
    operation: str = ""
    create_time: str = ""
    expiration_time: str = ""
    task_counts: Dict[str, int] = field(default_factory=dict)
    tasks: List[PowerTask] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return self.status in ("completed", "aborted")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transition":
        return cls(
            transition_id=data["transitionID"],
            status=(data.get("transitionStatus") or "").lower(),
            operation=data.get("operation", ""),
            create_time=data.get("createTime", ""),
            expiration_time=data.get("automaticExpirationTime", ""),
            task_counts=dict(data.get("taskCounts") or {}),
            tasks=[PowerTask.from_dict(t) for t in data.get("tasks") or []],
        )


class PowerClient:
    """Typed access to PCS."""

    def __init__(self, client: ServiceClient):
        self.client = client

    def create_transition(
        self,
        operation: PowerOperation,
        xnames: Iterable[Xname],
        task_deadline_minutes: Optional[int] = None,
        deadline: Deadline = None,
    ) -> str:
        """Start a transition and return its ID."""
        body: Dict[str, Any] = {
            "operation": operation.value,
            "location": [{"xname": str(x)} for x in xnames],
        }
        if task_deadline_minutes is not None:
            body["taskDeadlineMinutes"] = task_deadline_minutes

        payload = self.client.post("/transitions", json=body, deadline=deadline)
        try:
            transition_id = payload["transitionID"]
        except (KeyError, TypeError):
            raise MalformedResponse(self.client.backend, self.client.url_for("/transitions"), "no transitionID")
        logger.info(f"PCS transition {transition_id} created: {operation.value} on {len(body['location'])} xname(s)")
        return transition_id

    def get_transition(self, transition_id: str, deadline: Deadline = None) -> Transition:
        path = f"/transitions/{transition_id}"
        payload = self.client.get(path, deadline=deadline)
        try:
            return Transition.from_dict(payload)
        except (KeyError, TypeError):
            raise MalformedResponse(self.client.backend, self.client.url_for(path), "not a transition record")

    def abort_transition(self, transition_id: str, deadline: Deadline = None) -> None:
        self.client.delete(f"/transitions/{transition_id}", deadline=deadline)
        logger.info(f"PCS transition {transition_id} abort requested")

    def power_status(self, xnames: Iterable[Xname], deadline: Deadline = None) -> Dict[str, str]:
        """Current power state ('on', 'off', 'undefined') per xname."""
        params = {"xname": [str(x) for x in xnames]}
        payload = self.client.get("/power-status", params=params, deadline=deadline) or {}
        return {
            entry.get("xname", ""): entry.get("powerState", "undefined")
            for entry in payload.get("status") or []
        }
