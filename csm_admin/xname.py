"""
Component Identifier Model (xnames)

Hierarchical hardware location identifiers as used by the CSM control plane,
e.g. ``x1000c0s0b0n3`` is node 3 behind controller 0 in slot 0 of chassis 0
in cabinet 1000.

Grammar (canonical form is lower case without leading zeros):
    x<0-9999>                cabinet
      c<0-7>                 chassis
        b<0-1>               chassis controller
        s<0-64>              compute slot
          b<0-1>             node controller
            n<0-7>           node
        r<0-64>              router slot
          b<0-1>             router controller

Usage:
    from csm_admin.xname import parse, compare

    node = parse("x1000c0s0b0n3")
    slot = parse("x1000c0s0")
    slot.is_ancestor_of(node)   # True
    node.parent                 # Xname('x1000c0s0b0')
    compare(node, slot)         # 1
"""

import re
from dataclasses import dataclass
from enum import Enum
from functools import total_ordering
from typing import Iterator, Optional, Tuple

from .errors import InvalidIdentifier


class XnameKind(Enum):
    """Component kinds, keyed by the letter sequence that reaches them."""

    CABINET = "x"
    CHASSIS = "xc"
    CHASSIS_BMC = "xcb"
    COMPUTE_MODULE = "xcs"
    ROUTER_MODULE = "xcr"
    NODE_BMC = "xcsb"
    ROUTER_BMC = "xcrb"
    NODE = "xcsbn"


# letter -> inclusive (min, max)
COMPONENT_RANGES = {
    "x": (0, 9999),
    "c": (0, 7),
    "b": (0, 1),
    "s": (0, 64),
    "r": (0, 64),
    "n": (0, 7),
}

# Sort rank of a letter among siblings at the same depth
_LETTER_RANK = {"x": 0, "c": 1, "b": 2, "s": 3, "r": 4, "n": 5}

# Letters allowed to follow a given prefix of letters
_CHILD_LETTERS = {
    "": ("x",),
    "x": ("c",),
    "xc": ("b", "s", "r"),
    "xcs": ("b",),
    "xcr": ("b",),
    "xcsb": ("n",),
}

_SHAPE_RE = re.compile(r"^(?:[a-z]\d+)+$")
_COMPONENT_RE = re.compile(r"([a-z])(\d+)")
_NID_RE = re.compile(r"^nid(\d+)$")

NID_WIDTH = 6

Component = Tuple[str, int]


def validate_components(components, text: str = None) -> None:
    """Check letter sequence and value ranges; raise InvalidIdentifier on the first problem."""
    if text is None:
        text = "".join(f"{letter}{value}" for letter, value in components)
    if not components:
        raise InvalidIdentifier(text, "empty identifier")

    letters = ""
    for letter, value in components:
        allowed = _CHILD_LETTERS.get(letters, ())
        if letter not in allowed:
            if not allowed:
                raise InvalidIdentifier(text, f"'{letters[-1]}' component cannot have children")
            raise InvalidIdentifier(
                text, f"'{letter}' cannot follow '{letters or 'start'}', expected one of {list(allowed)}"
            )
        low, high = COMPONENT_RANGES[letter]
        if not low <= value <= high:
            raise InvalidIdentifier(text, f"'{letter}' value {value} outside {low}-{high}")
        letters += letter


@total_ordering
@dataclass(frozen=True)
class Xname:
    """Immutable component identifier; ordered component-wise."""

    components: Tuple[Component, ...]

    @classmethod
    def build(cls, *components: Component) -> "Xname":
        """Construct from explicit (letter, value) pairs, validating them."""
        normalized = tuple((letter.lower(), int(value)) for letter, value in components)
        validate_components(normalized)
        return cls(normalized)

    @property
    def letters(self) -> str:
        return "".join(letter for letter, _ in self.components)

    @property
    def kind(self) -> XnameKind:
        return XnameKind(self.letters)

    @property
    def depth(self) -> int:
        return len(self.components)

    @property
    def is_node(self) -> bool:
        return self.letters == XnameKind.NODE.value

    @property
    def parent(self) -> Optional["Xname"]:
        if len(self.components) <= 1:
            return None
        return Xname(self.components[:-1])

    def ancestors(self) -> Iterator["Xname"]:
        """Yield ancestors from the cabinet down to the direct parent."""
        for length in range(1, len(self.components)):
            yield Xname(self.components[:length])

    def is_ancestor_of(self, other: "Xname") -> bool:
        """True when self is a strict prefix of other."""
        return (
            len(self.components) < len(other.components)
            and other.components[: len(self.components)] == self.components
        )

    def is_descendant_of(self, other: "Xname") -> bool:
        return other.is_ancestor_of(self)

    def is_sibling_of(self, other: "Xname") -> bool:
        return self != other and self.depth == other.depth and self.parent == other.parent

    def child(self, letter: str, value: int) -> "Xname":
        return Xname.build(*self.components, (letter, value))

    def sort_key(self) -> Tuple[Tuple[int, int], ...]:
        return tuple((_LETTER_RANK[letter], value) for letter, value in self.components)

    def __lt__(self, other):
        if not isinstance(other, Xname):
            return NotImplemented
        return self.sort_key() < other.sort_key()

    def __str__(self) -> str:
        return "".join(f"{letter}{value}" for letter, value in self.components)

    def __repr__(self) -> str:
        return f"Xname('{self}')"


def parse(text: str) -> Xname:
    """Parse text into an Xname; raises InvalidIdentifier."""
    if not isinstance(text, str):
        raise InvalidIdentifier(repr(text), "not a string")
    candidate = text.strip().lower()
    if not _SHAPE_RE.match(candidate):
        raise InvalidIdentifier(text, "expected letter/number components such as x1000c0s0b0n0")

    components = tuple((letter, int(digits)) for letter, digits in _COMPONENT_RE.findall(candidate))
    validate_components(components, text)
    return Xname(components)


def is_valid(text: str) -> bool:
    try:
        parse(text)
    except InvalidIdentifier:
        return False
    return True


def compare(a: Xname, b: Xname) -> int:
    """Three-way lexicographic comparison over components."""
    key_a, key_b = a.sort_key(), b.sort_key()
    if key_a < key_b:
        return -1
    if key_a > key_b:
        return 1
    return 0


def looks_like_xname(text: str) -> bool:
    """Cheap shape check: starts like a cabinet component."""
    return len(text) > 1 and text[0] in "xX" and (text[1].isdigit() or text[1] in "[*")


# ---------------------------------------------------------------------------
# NIDs
# ---------------------------------------------------------------------------


def parse_nid(text: str) -> int:
    """Parse 'nid000001' (any zero padding) into 1."""
    match = _NID_RE.match(text.strip().lower())
    if not match:
        raise InvalidIdentifier(text, "expected a NID such as nid000001")
    return int(match.group(1))


def format_nid(nid: int) -> str:
    return f"nid{nid:0{NID_WIDTH}d}"
