"""
Live resolution context backed by the inventory service.

Usage:
    token = clients.credentials.current().reveal()
    context = InventoryContext.for_token(clients.inventory, token, base_group="compute")
    nodes = resolve("compute & ~@maintenance", context)
"""

import logging
from typing import Dict, Iterable, List, Optional

from ..client import jwt
from ..deadline import Deadline
from ..errors import AccessDenied
from ..nodeset import NodeSet
from ..xname import Xname
from .resolver import ResolutionContext

logger = logging.getLogger(__name__)


class InventoryContext(ResolutionContext):
    """
    Resolves names and patterns against HSM.

    Args:
        inventory: InventoryClient
        base_group: group used as the complement universe
        allow_full_inventory: use every node as the universe when no base group
        allowed_groups: when set, every resolved node must belong to one of these
        deadline: bounds each inventory call made during resolution
    """

    def __init__(
        self,
        inventory,
        base_group: Optional[str] = None,
        allow_full_inventory: bool = True,
        allowed_groups: Optional[List[str]] = None,
        deadline: Optional[Deadline] = None,
    ):
        super().__init__(base_group, allow_full_inventory)
        self.inventory = inventory
        self.allowed_groups = allowed_groups
        self.deadline = deadline

    @classmethod
    def for_token(cls, inventory, token: str, **kwargs) -> "InventoryContext":
        """
        Context limited to the node groups token grants.

        Admin tokens are unrestricted. A token whose claims cannot be read
        grants nothing.
        """
        if jwt.is_admin(token):
            return cls(inventory, allowed_groups=None, **kwargs)
        try:
            allowed = jwt.group_roles(token)
        except ValueError as e:
            logger.warning(f"Could not read group roles from token: {e}")
            allowed = []
        logger.debug(f"Resolution limited to groups {allowed}")
        return cls(inventory, allowed_groups=allowed, **kwargs)

    def group_members(self, name: str) -> Optional[Iterable[Xname]]:
        group = self.inventory.get_group(name, deadline=self.deadline)
        return None if group is None else group.members

    def partition_members(self, name: str) -> Optional[Iterable[Xname]]:
        partition = self.inventory.get_partition(name, deadline=self.deadline)
        return None if partition is None else partition.members

    def nodes(self, container: Optional[Xname] = None) -> Iterable[Xname]:
        return [n.xname for n in self.inventory.list_nodes(container=container, deadline=self.deadline)]

    def nid_map(self) -> Dict[int, Xname]:
        return self.inventory.nid_map(deadline=self.deadline)

    def check_access(self, nodes: NodeSet) -> None:
        if self.allowed_groups is None or not nodes:
            return
        permitted = set()
        for label in self.allowed_groups:
            group = self.inventory.get_group(label, deadline=self.deadline)
            if group is None:
                logger.warning(f"Permitted group '{label}' does not exist in inventory")
                continue
            permitted.update(group.members)
        outside = [n for n in nodes if n not in permitted]
        if outside:
            raise AccessDenied(outside, self.allowed_groups)
