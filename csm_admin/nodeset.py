"""
Node Set: an immutable, sorted, duplicate-free collection of Xnames.

Usage:
    from csm_admin.nodeset import NodeSet

    nodes = NodeSet.from_strings(["x1000c0s0b0n1", "x1000c0s0b0n0"])
    list(nodes)        # [Xname('x1000c0s0b0n0'), Xname('x1000c0s0b0n1')]
    nodes.fold()       # 'x1000c0s0b0n[0-1]'
    nodes | other, nodes & other, nodes - other
"""

import itertools
from typing import Iterable, Iterator, List, Tuple

from .hostlist import expand, format_range_set
from .xname import Xname, parse


class NodeSet:
    """Immutable ordered set of Xnames with set algebra."""

    __slots__ = ("_items", "_members")

    def __init__(self, identifiers: Iterable[Xname] = ()):
        members = frozenset(identifiers)
        for item in members:
            if not isinstance(item, Xname):
                raise TypeError(f"NodeSet members must be Xname, got {type(item).__name__}")
        self._members = members
        self._items: Tuple[Xname, ...] = tuple(sorted(members))

    @classmethod
    def from_strings(cls, names: Iterable[str]) -> "NodeSet":
        return cls(parse(name) for name in names)

    @classmethod
    def from_hostlist(cls, hostlist: str) -> "NodeSet":
        """Build from bracket notation such as 'x1000c0s0b0n[0-3]'."""
        return cls.from_strings(expand(hostlist))

    def __iter__(self) -> Iterator[Xname]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item) -> bool:
        if isinstance(item, str):
            item = parse(item)
        return item in self._members

    def __getitem__(self, index):
        return self._items[index]

    def __bool__(self) -> bool:
        return bool(self._items)

    def __eq__(self, other) -> bool:
        if not isinstance(other, NodeSet):
            return NotImplemented
        return self._members == other._members

    def __hash__(self) -> int:
        return hash(self._members)

    def union(self, other: "NodeSet") -> "NodeSet":
        return NodeSet(self._members | other._members)

    def intersection(self, other: "NodeSet") -> "NodeSet":
        return NodeSet(self._members & other._members)

    def difference(self, other: "NodeSet") -> "NodeSet":
        return NodeSet(self._members - other._members)

    __or__ = union
    __and__ = intersection
    __sub__ = difference

    def issubset(self, other: "NodeSet") -> bool:
        return self._members <= other._members

    def to_strings(self) -> List[str]:
        return [str(item) for item in self._items]

    def batches(self, size: int) -> List["NodeSet"]:
        """Split into consecutive NodeSets of at most size members (size <= 0 means one batch)."""
        if size <= 0 or len(self._items) <= size:
            return [self]
        return [NodeSet(self._items[i : i + size]) for i in range(0, len(self._items), size)]

    def fold(self) -> str:
        """Compact hostlist form, folding the last component of siblings."""
        pieces = []
        for (parent, letter), group in itertools.groupby(
            self._items, key=lambda x: (x.components[:-1], x.components[-1][0])
        ):
            prefix = "".join(f"{l}{v}" for l, v in parent) + letter
            values = [item.components[-1][1] for item in group]
            if len(values) == 1:
                pieces.append(f"{prefix}{values[0]}")
            else:
                pieces.append(f"{prefix}[{format_range_set(values)}]")
        return ",".join(pieces)

    def __str__(self) -> str:
        return self.fold()

    def __repr__(self) -> str:
        return f"NodeSet('{self.fold()}')"
