"""
Inventory adapter (Hardware State Manager, /smd/hsm/v2).

Enumerates node components, named groups and partitions. Response records
are parsed leniently: unknown fields are ignored so additive schema changes
on the server side do not break us.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..deadline import Deadline
from ..errors import InvalidIdentifier, MalformedResponse, RequestRejected
from ..xname import Xname, parse
from .transport import ServiceClient

logger = logging.getLogger(__name__)


@dataclass
class NodeComponent:
    """One inventory component as reported by HSM."""

    xname: Xname
    type: str = "Node"
    state: str = ""
    nid: Optional[int] = None
    role: str = ""
    sub_role: str = ""
    enabled: bool = True
    arch: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeComponent":
        return cls(
            xname=parse(data["ID"]),
            type=data.get("Type", "Node"),
            state=data.get("State", ""),
            nid=data.get("NID"),
            role=data.get("Role", ""),
            sub_role=data.get("SubRole", ""),
            enabled=data.get("Enabled", True),
            arch=data.get("Arch", ""),
        )


@dataclass
class NodeGroup:
    label: str
    members: List[Xname] = field(default_factory=list)
    description: str = ""
    tags: List[str] = field(default_factory=list)
    exclusive_group: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeGroup":
        ids = (data.get("members") or {}).get("ids") or []
        return cls(
            label=data.get("label") or data.get("name", ""),
            members=_parse_members(ids),
            description=data.get("description", ""),
            tags=list(data.get("tags") or []),
            exclusive_group=data.get("exclusiveGroup"),
        )


def _parse_members(ids: List[str]) -> List[Xname]:
    members = []
    for raw in ids:
        try:
            members.append(parse(raw))
        except InvalidIdentifier:
            logger.warning(f"Ignoring group member with unrecognised identifier '{raw}'")
    return members


class InventoryClient:
    """Typed access to HSM."""

    def __init__(self, client: ServiceClient):
        self.client = client

    def list_nodes(
        self,
        container: Optional[Xname] = None,
        state: str = None,
        role: str = None,
        deadline: Deadline = None,
    ) -> List[NodeComponent]:
        """Node components, optionally only those under a container."""
        params = {"type": "Node"}
        if state:
            params["state"] = state
        if role:
            params["role"] = role

        if container is None:
            path = "/State/Components"
        else:
            path = f"/State/Components/Query/{container}"
        try:
            payload = self.client.get(path, params=params, deadline=deadline)
        except RequestRejected as e:
            if container is not None and e.status == 404:
                return []
            raise

        if not isinstance(payload, dict) or not isinstance(payload.get("Components", []), list):
            raise MalformedResponse(self.client.backend, self.client.url_for(path), "expected 'Components' list")

        nodes = []
        for record in payload.get("Components") or []:
            try:
                component = NodeComponent.from_dict(record)
            except (KeyError, TypeError, InvalidIdentifier) as e:
                logger.warning(f"Skipping unparseable inventory record: {e}")
                continue
            if component.xname.is_node:
                nodes.append(component)
        return nodes

    def get_group(self, label: str, deadline: Deadline = None) -> Optional[NodeGroup]:
        """A named group, or None when HSM has no such group."""
        try:
            payload = self.client.get(f"/groups/{label}", deadline=deadline)
        except RequestRejected as e:
            if e.status == 404:
                return None
            raise
        return NodeGroup.from_dict(payload or {})

    def list_groups(self, deadline: Deadline = None) -> List[NodeGroup]:
        payload = self.client.get("/groups", deadline=deadline) or []
        return [NodeGroup.from_dict(item) for item in payload]

    def list_group_labels(self, deadline: Deadline = None) -> List[str]:
        return sorted(self.client.get("/groups/labels", deadline=deadline) or [])

    def get_partition(self, name: str, deadline: Deadline = None) -> Optional[NodeGroup]:
        try:
            payload = self.client.get(f"/partitions/{name}", deadline=deadline)
        except RequestRejected as e:
            if e.status == 404:
                return None
            raise
        return NodeGroup.from_dict(payload or {})

    def add_member(self, label: str, xname: Xname, deadline: Deadline = None) -> None:
        self.client.post(f"/groups/{label}/members", json={"id": str(xname)}, deadline=deadline)
        logger.info(f"Added {xname} to group '{label}'")

    def remove_member(self, label: str, xname: Xname, deadline: Deadline = None) -> None:
        self.client.delete(f"/groups/{label}/members/{xname}", deadline=deadline)
        logger.info(f"Removed {xname} from group '{label}'")

    def nid_map(self, deadline: Deadline = None) -> Dict[int, Xname]:
        return {n.nid: n.xname for n in self.list_nodes(deadline=deadline) if n.nid is not None}
