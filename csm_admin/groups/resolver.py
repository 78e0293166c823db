"""
Group Resolver

Turns a group expression into a validated NodeSet against live (or
snapshot) inventory. Evaluation is structural recursion over the
expression tree; every call re-reads inventory, and within one call each
lookup is fetched at most once.

Features:
- Named groups and partitions, patterns, NIDs and set algebra
- Bare words resolve to a group when one exists, otherwise to identifiers
- Complement against a base group or the full inventory
- Optional access enforcement against the caller's permitted groups

Usage:
    from csm_admin.groups import GroupResolver, StaticContext

    context = StaticContext(nodes=inventory, groups={"compute": compute_nodes})
    nodes = GroupResolver().resolve("compute ! x1000c0s0b0n[0-1]", context)
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from ..deadline import Deadline
from ..errors import AmbiguousComplement, InvalidIdentifier, UnknownGroup
from ..nodeset import NodeSet
from ..xname import Xname, looks_like_xname
from .expression import (
    Complement,
    Difference,
    Expression,
    GroupRef,
    Intersection,
    Literal,
    NidSet,
    PartitionRef,
    Pattern,
    Union,
    Word,
    compile_word,
    is_group_name,
    parse_expression,
)

logger = logging.getLogger(__name__)


class ResolutionContext(ABC):
    """Source of inventory, groups and the complement universe."""

    def __init__(self, base_group: Optional[str] = None, allow_full_inventory: bool = True):
        self.base_group = base_group
        self.allow_full_inventory = allow_full_inventory

    @abstractmethod
    def group_members(self, name: str) -> Optional[Iterable[Xname]]:
        """Members of a named group, or None when no such group exists."""

    @abstractmethod
    def partition_members(self, name: str) -> Optional[Iterable[Xname]]:
        """Members of a partition, or None when no such partition exists."""

    @abstractmethod
    def nodes(self, container: Optional[Xname] = None) -> Iterable[Xname]:
        """Inventory nodes, optionally restricted to those under container."""

    def nid_map(self) -> Dict[int, Xname]:
        return {}

    def universe(self, lookup) -> Optional[Iterable[Xname]]:
        """Complement universe; lookup is the evaluation's memoized accessor."""
        if self.base_group:
            members = lookup.group(self.base_group)
            if members is None:
                raise UnknownGroup(self.base_group)
            return members
        if self.allow_full_inventory:
            return lookup.nodes(None)
        return None

    def check_access(self, nodes: NodeSet) -> None:
        """Hook for contexts that restrict which nodes may be targeted."""
        return None


class StaticContext(ResolutionContext):
    """In-memory inventory snapshot."""

    def __init__(
        self,
        nodes: Iterable[Xname],
        groups: Dict[str, Iterable[Xname]] = None,
        partitions: Dict[str, Iterable[Xname]] = None,
        nids: Dict[int, Xname] = None,
        base_group: Optional[str] = None,
        allow_full_inventory: bool = True,
    ):
        super().__init__(base_group, allow_full_inventory)
        self._nodes = list(nodes)
        self._groups = {name: list(members) for name, members in (groups or {}).items()}
        self._partitions = {name: list(members) for name, members in (partitions or {}).items()}
        self._nids = dict(nids or {})

    def group_members(self, name: str) -> Optional[Iterable[Xname]]:
        return self._groups.get(name)

    def partition_members(self, name: str) -> Optional[Iterable[Xname]]:
        return self._partitions.get(name)

    def nodes(self, container: Optional[Xname] = None) -> Iterable[Xname]:
        if container is None:
            return list(self._nodes)
        return [n for n in self._nodes if n == container or container.is_ancestor_of(n)]

    def nid_map(self) -> Dict[int, Xname]:
        return dict(self._nids)


class _Lookup:
    """Per-call memo over a context."""

    def __init__(self, context: ResolutionContext, deadline: Deadline):
        self.context = context
        self.deadline = deadline
        self._groups: Dict[str, Optional[List[Xname]]] = {}
        self._partitions: Dict[str, Optional[List[Xname]]] = {}
        self._nodes: Dict[Optional[Xname], List[Xname]] = {}
        self._nids: Optional[Dict[int, Xname]] = None

    def group(self, name: str) -> Optional[List[Xname]]:
        if name not in self._groups:
            self.deadline.check(f"resolving group '{name}'")
            members = self.context.group_members(name)
            self._groups[name] = None if members is None else list(members)
        return self._groups[name]

    def partition(self, name: str) -> Optional[List[Xname]]:
        if name not in self._partitions:
            self.deadline.check(f"resolving partition '{name}'")
            members = self.context.partition_members(name)
            self._partitions[name] = None if members is None else list(members)
        return self._partitions[name]

    def nodes(self, container: Optional[Xname]) -> List[Xname]:
        if None in self._nodes:
            everything = self._nodes[None]
            if container is None:
                return everything
            return [n for n in everything if n == container or container.is_ancestor_of(n)]
        if container not in self._nodes:
            self.deadline.check("enumerating inventory")
            self._nodes[container] = list(self.context.nodes(container))
        return self._nodes[container]

    def nids(self) -> Dict[int, Xname]:
        if self._nids is None:
            self.deadline.check("reading node ids")
            self._nids = self.context.nid_map()
        return self._nids


class GroupResolver:
    """Evaluates group expressions into NodeSets."""

    def resolve(
        self,
        expression,
        context: ResolutionContext,
        deadline: Optional[Deadline] = None,
    ) -> NodeSet:
        """
        Resolve expression text (or a pre-built tree) against context.

        Raises:
            ExpressionSyntaxError, InvalidIdentifier, UnknownGroup,
            AmbiguousComplement, AccessDenied, DeadlineExceeded
        """
        tree = parse_expression(expression) if isinstance(expression, str) else expression
        lookup = _Lookup(context, deadline or Deadline.never())
        result = self._evaluate(tree, lookup)
        context.check_access(result)
        logger.debug(f"Resolved '{tree}' to {len(result)} node(s)")
        return result

    def _evaluate(self, tree: Expression, lookup: _Lookup) -> NodeSet:
        if isinstance(tree, Union):
            return self._evaluate(tree.left, lookup) | self._evaluate(tree.right, lookup)
        if isinstance(tree, Intersection):
            return self._evaluate(tree.left, lookup) & self._evaluate(tree.right, lookup)
        if isinstance(tree, Difference):
            return self._evaluate(tree.left, lookup) - self._evaluate(tree.right, lookup)
        if isinstance(tree, Complement):
            universe = lookup.context.universe(lookup)
            if universe is None:
                raise AmbiguousComplement(str(tree))
            return NodeSet(universe) - self._evaluate(tree.operand, lookup)
        if isinstance(tree, GroupRef):
            members = lookup.group(tree.name)
            if members is None:
                raise UnknownGroup(tree.name)
            return NodeSet(members)
        if isinstance(tree, PartitionRef):
            members = lookup.partition(tree.name)
            if members is None:
                raise UnknownGroup(tree.name, kind="partition")
            return NodeSet(members)
        if isinstance(tree, Word):
            return self._evaluate_word(tree.text, lookup)
        if isinstance(tree, Literal):
            return NodeSet(n for n in lookup.nodes(tree.xname) if tree.matches(n))
        if isinstance(tree, Pattern):
            candidates = lookup.nodes(tree.exact_prefix())
            return NodeSet(n for n in candidates if tree.matches(n))
        if isinstance(tree, NidSet):
            nid_map = lookup.nids()
            missing = sorted(nid for nid in tree.nids if nid not in nid_map)
            if missing:
                logger.debug(f"{len(missing)} NID(s) not in inventory, first: {missing[0]}")
            return NodeSet(nid_map[nid] for nid in tree.nids if nid in nid_map)
        raise TypeError(f"Unsupported expression node: {type(tree).__name__}")

    def _evaluate_word(self, text: str, lookup: _Lookup) -> NodeSet:
        if is_group_name(text):
            members = lookup.group(text)
            if members is not None:
                return NodeSet(members)
        try:
            compiled = compile_word(text)
        except InvalidIdentifier:
            lowered = text.lower()
            if looks_like_xname(text) or lowered.startswith("nid"):
                raise
            raise UnknownGroup(text)
        return self._evaluate(compiled, lookup)


_resolver = None


def get_resolver() -> GroupResolver:
    global _resolver
    if _resolver is None:
        _resolver = GroupResolver()
    return _resolver


def resolve(expression, context: ResolutionContext, deadline: Optional[Deadline] = None) -> NodeSet:
    """Module-level convenience around GroupResolver.resolve."""
    return get_resolver().resolve(expression, context, deadline)

