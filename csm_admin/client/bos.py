"""
Boot-orchestration adapter (BOS v2).

A BOS session applies a session template (kernel, image, configuration)
to a limited set of nodes; BOS then drives each component through power
and configuration phases that we read back per node.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from ..deadline import Deadline
from ..errors import MalformedResponse, RequestRejected
from ..xname import Xname
from .transport import ServiceClient

logger = logging.getLogger(__name__)


class BootOperation(Enum):
    BOOT = "boot"
    REBOOT = "reboot"
    SHUTDOWN = "shutdown"

    @classmethod
    def from_str(cls, operation: str) -> "BootOperation":
        try:
            return cls(operation.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown boot operation '{operation}', expected one of {[m.value for m in cls]}")


@dataclass
class BootSession:
    name: str
    operation: str = ""
    template_name: str = ""
    limit: str = ""
    stage: bool = False
    status: str = ""  # pending, running, complete
    error: Optional[str] = None
    start_time: str = ""
    end_time: str = ""

    @property
    def is_complete(self) -> bool:
        return self.status == "complete"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BootSession":
        status = data.get("status") or {}
        return cls(
            name=data["name"],
            operation=data.get("operation", ""),
            template_name=data.get("template_name", ""),
            limit=data.get("limit") or "",
            stage=bool(data.get("stage", False)),
            status=status.get("status", ""),
            error=status.get("error"),
            start_time=status.get("start_time", ""),
            end_time=status.get("end_time", ""),
        )


@dataclass
class BootComponent:
    """Per-node BOS record."""

    id: str
    session: str = ""
    phase: str = ""
    status: str = ""
    enabled: bool = False
    error: str = ""
    last_action: str = ""
    retry_policy: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BootComponent":
        status = data.get("status") or {}
        return cls(
            id=data["id"],
            session=data.get("session") or "",
            phase=status.get("phase") or "",
            status=status.get("status_override") or status.get("status") or "",
            enabled=bool(data.get("enabled", False)),
            error=data.get("error") or "",
            last_action=(data.get("last_action") or {}).get("action", ""),
            retry_policy=data.get("retry_policy"),
        )


class BootClient:
    """Typed access to BOS v2."""

    def __init__(self, client: ServiceClient):
        self.client = client

    def create_session(
        self,
        template_name: str,
        operation: BootOperation,
        limit: Iterable[Xname],
        stage: bool = False,
        include_disabled: bool = False,
        deadline: Deadline = None,
    ) -> BootSession:
        body = {
            "template_name": template_name,
            "operation": operation.value,
            "limit": ",".join(str(x) for x in limit),
            "stage": stage,
            "include_disabled": include_disabled,
        }
        payload = self.client.post("/sessions", json=body, deadline=deadline)
        try:
            session = BootSession.from_dict(payload)
        except (KeyError, TypeError):
            raise MalformedResponse(self.client.backend, self.client.url_for("/sessions"), "no session name")
        logger.info(f"BOS session {session.name} created: {operation.value} with template '{template_name}'")
        return session

    def get_session(self, name: str, deadline: Deadline = None) -> BootSession:
        path = f"/sessions/{name}"
        payload = self.client.get(path, deadline=deadline)
        try:
            return BootSession.from_dict(payload)
        except (KeyError, TypeError):
            raise MalformedResponse(self.client.backend, self.client.url_for(path), "not a session record")

    def delete_session(self, name: str, deadline: Deadline = None) -> None:
        self.client.delete(f"/sessions/{name}", deadline=deadline)
        logger.info(f"BOS session {name} deleted")

    def list_components(self, ids: Iterable[Xname], deadline: Deadline = None) -> List[BootComponent]:
        params = {"ids": ",".join(str(x) for x in ids)}
        payload = self.client.get("/components", params=params, deadline=deadline) or []
        components = []
        for record in payload:
            try:
                components.append(BootComponent.from_dict(record))
            except (KeyError, TypeError):
                logger.warning("Skipping BOS component record without id")
        return components

    def get_template(self, name: str, deadline: Deadline = None) -> Optional[Dict[str, Any]]:
        try:
            return self.client.get(f"/sessiontemplates/{name}", deadline=deadline)
        except RequestRejected as e:
            if e.status == 404:
                return None
            raise

    def list_templates(self, deadline: Deadline = None) -> List[Dict[str, Any]]:
        return self.client.get("/sessiontemplates", deadline=deadline) or []
