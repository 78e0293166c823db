"""
Configuration adapter (CFS v3).

Nodes are configured by setting their desired configuration on the CFS
component records; the CFS batcher then runs Ansible against them and
reports a per-component configuration_status.

Sessions run a configuration once, either against live nodes limited by
an Ansible limit (target "dynamic") or against images (target "image").
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from ..deadline import Deadline
from ..errors import MalformedResponse, RequestRejected
from ..xname import Xname
from .transport import ServiceClient

logger = logging.getLogger(__name__)


@dataclass
class ConfigComponent:
    id: str
    desired_config: str = ""
    configuration_status: str = ""  # unconfigured, pending, failed, configured
    enabled: bool = False
    error_count: int = 0
    retry_policy: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConfigComponent":
        return cls(
            id=data["id"],
            desired_config=data.get("desired_config") or "",
            configuration_status=(data.get("configuration_status") or "").lower(),
            enabled=bool(data.get("enabled", False)),
            error_count=int(data.get("error_count") or 0),
            retry_policy=data.get("retry_policy"),
        )


@dataclass
class ConfigSession:
    name: str
    configuration_name: str = ""
    ansible_limit: str = ""
    target_definition: str = "dynamic"  # dynamic, image, spec, repo
    target_groups: List[str] = field(default_factory=list)
    group_members: List[str] = field(default_factory=list)
    status: str = ""  # pending, running, complete
    succeeded: str = ""  # none, true, false, unknown
    start_time: str = ""
    completion_time: str = ""
    result_ids: List[str] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return self.status == "complete"

    @property
    def is_active(self) -> bool:
        return self.status in ("pending", "running")

    @property
    def limit_ids(self) -> List[str]:
        return [item.strip() for item in self.ansible_limit.split(",") if item.strip()]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConfigSession":
        configuration = data.get("configuration") or {}
        ansible = data.get("ansible") or {}
        target = data.get("target") or {}
        status = (data.get("status") or {}).get("session") or {}
        artifacts = (data.get("status") or {}).get("artifacts") or []
        groups = target.get("groups") or []
        return cls(
            name=data["name"],
            configuration_name=configuration.get("name") or "",
            ansible_limit=ansible.get("limit") or "",
            target_definition=target.get("definition") or "dynamic",
            target_groups=[g["name"] for g in groups if g.get("name")],
            group_members=[m for g in groups for m in (g.get("members") or [])],
            status=status.get("status") or "",
            succeeded=str(status.get("succeeded", "")).lower(),
            start_time=status.get("start_time") or "",
            completion_time=status.get("completion_time") or "",
            result_ids=[a["result_id"] for a in artifacts if a.get("result_id")],
        )


class ConfigurationClient:
    """Typed access to CFS v3."""

    def __init__(self, client: ServiceClient):
        self.client = client

    def set_desired_config(
        self,
        ids: Iterable[Xname],
        configuration: str,
        clear_state: bool = False,
        enabled: bool = True,
        deadline: Deadline = None,
    ) -> List[str]:
        """Point components at a configuration; returns the ids CFS patched."""
        patch: Dict[str, Any] = {"desired_config": configuration, "enabled": enabled, "error_count": 0}
        if clear_state:
            patch["state"] = []
        body = {"patch": patch, "filters": {"ids": ",".join(str(x) for x in ids)}}
        payload = self.client.patch("/components", json=body, deadline=deadline) or {}
        patched = payload.get("component_ids") if isinstance(payload, dict) else None
        logger.info(f"CFS desired configuration '{configuration}' set on {len(patched or [])} component(s)")
        return list(patched or [])

    def stop_retrying(self, ids: Iterable[Xname], deadline: Deadline = None) -> int:
        """
        Halt the batcher for these components.

        CFS has no cancel for component-driven configuration; setting
        error_count to the batcher retry policy makes it give up.
        """
        retry_policy = int(self.get_options(deadline=deadline).get("default_batcher_retry_policy", 3))
        body = {"patch": {"error_count": retry_policy}, "filters": {"ids": ",".join(str(x) for x in ids)}}
        self.client.patch("/components", json=body, deadline=deadline)
        logger.info(f"CFS error_count set to {retry_policy} to stop configuration")
        return retry_policy

    def list_components(self, ids: Iterable[Xname], deadline: Deadline = None) -> List[ConfigComponent]:
        params = {"ids": ",".join(str(x) for x in ids)}
        payload = self.client.get("/components", params=params, deadline=deadline)
        if isinstance(payload, dict):
            records = payload.get("components")
        else:
            records = payload
        if not isinstance(records, list):
            raise MalformedResponse(self.client.backend, self.client.url_for("/components"), "expected component list")
        components = []
        for record in records:
            try:
                components.append(ConfigComponent.from_dict(record))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping CFS component record without id")
        return components

    def get_configuration(self, name: str, deadline: Deadline = None) -> Optional[Dict[str, Any]]:
        try:
            return self.client.get(f"/configurations/{name}", deadline=deadline)
        except RequestRejected as e:
            if e.status == 404:
                return None
            raise

    def get_options(self, deadline: Deadline = None) -> Dict[str, Any]:
        return self.client.get("/options", deadline=deadline) or {}

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(
        self,
        name: str,
        configuration: str,
        limit: Iterable[Xname],
        ansible_verbosity: int = None,
        ansible_passthrough: str = None,
        deadline: Deadline = None,
    ) -> ConfigSession:
        """Start a dynamic session running configuration against limit."""
        body: Dict[str, Any] = {
            "name": name,
            "configuration_name": configuration,
            "ansible_limit": ",".join(str(x) for x in limit),
            "target": {"definition": "dynamic", "groups": []},
        }
        if ansible_verbosity is not None:
            body["ansible_verbosity"] = ansible_verbosity
        if ansible_passthrough:
            body["ansible_passthrough"] = ansible_passthrough
        payload = self.client.post("/sessions", json=body, deadline=deadline)
        try:
            session = ConfigSession.from_dict(payload)
        except (KeyError, TypeError, AttributeError):
            raise MalformedResponse(self.client.backend, self.client.url_for("/sessions"), "no session name")
        logger.info(f"CFS session {session.name} created: configuration '{configuration}'")
        return session

    def get_session(self, name: str, deadline: Deadline = None) -> ConfigSession:
        path = f"/sessions/{name}"
        payload = self.client.get(path, deadline=deadline)
        try:
            return ConfigSession.from_dict(payload)
        except (KeyError, TypeError, AttributeError):
            raise MalformedResponse(self.client.backend, self.client.url_for(path), "not a session record")

    def list_sessions(self, status: str = None, deadline: Deadline = None) -> List[ConfigSession]:
        params = {"status": status} if status else None
        payload = self.client.get("/sessions", params=params, deadline=deadline)
        records = payload.get("sessions") if isinstance(payload, dict) else payload
        if not isinstance(records, list):
            raise MalformedResponse(self.client.backend, self.client.url_for("/sessions"), "expected session list")
        sessions = []
        for record in records:
            try:
                sessions.append(ConfigSession.from_dict(record))
            except (KeyError, TypeError, AttributeError):
                logger.warning("Skipping CFS session record without name")
        return sessions

    def delete_session(self, name: str, deadline: Deadline = None) -> None:
        self.client.delete(f"/sessions/{name}", deadline=deadline)
        logger.info(f"CFS session {name} deleted")
