"""
Hostlist bracket notation, backed by ClusterShell.

    expand("x1000c0s0b0n[0-3]")       -> ['x1000c0s0b0n0', ..., 'x1000c0s0b0n3']
    expand("nid[000001-000002,9]")    -> ['nid000001', 'nid000002', 'nid9']
    format_range_set([0, 1, 2, 5])    -> '0-2,5'

Group references (@name) are not interpreted here; node groups are
resolved against inventory by csm_admin.groups.
"""

import re
from typing import Iterable, List

from ClusterShell.NodeSet import RESOLVER_NOGROUP, NodeSet, NodeSetParseError
from ClusterShell.RangeSet import RangeSet, RangeSetParseError

_BOUNDS_RE = re.compile(r"^\s*(\d+)(?:-(\d+))?(?:/\d+)?\s*$")

# Guard against typos like n[0-99999999]
MAX_EXPANSION = 1_000_000


def split_top_level(text: str, separators: str = ",") -> List[str]:
    """Split on separators that are not inside brackets."""
    parts = []
    depth = 0
    current = []
    for char in text:
        if char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
            if depth < 0:
                raise ValueError(f"unbalanced ']' in '{text}'")
        if char in separators and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
    if depth != 0:
        raise ValueError(f"unbalanced '[' in '{text}'")
    parts.append("".join(current))
    return parts


def _range_size(body: str) -> int:
    """Upper bound of the values in a range set body; malformed items count as one."""
    size = 0
    for item in body.split(","):
        match = _BOUNDS_RE.match(item)
        if match and match.group(2):
            size += max(1, int(match.group(2)) - int(match.group(1)) + 1)
        else:
            size += 1
    return size


def _check_size(text: str) -> None:
    for word in split_top_level(text):
        total = 1
        for body in re.findall(r"\[([^\]]*)\]", word):
            total *= _range_size(body)
        if total > MAX_EXPANSION:
            raise ValueError(f"'{word.strip()}' expands to more than {MAX_EXPANSION} names")


def expand_range_set(body: str) -> List[int]:
    """Expand '0-3,7' into the sorted unique integers it covers."""
    if _range_size(body) > MAX_EXPANSION:
        raise ValueError(f"range set '{body}' is too large")
    try:
        return sorted({int(value) for value in RangeSet(body)})
    except RangeSetParseError as e:
        raise ValueError(f"invalid range set '{body}': {e}")


def format_range_set(values: Iterable[int]) -> str:
    """Fold integers into the shortest '0-2,5' form."""
    values = sorted(set(values))
    if not values:
        return ""
    return str(RangeSet(",".join(str(value) for value in values)))


def expand(hostlist: str) -> List[str]:
    """Expand a comma separated hostlist into its duplicate-free names."""
    words = [word.strip() for word in split_top_level(hostlist) if word.strip()]
    if not words:
        return []
    _check_size(hostlist)
    try:
        nodes = NodeSet(",".join(words), resolver=RESOLVER_NOGROUP)
    except (NodeSetParseError, RangeSetParseError) as e:
        raise ValueError(f"invalid hostlist '{hostlist}': {e}")
    return list(nodes)
