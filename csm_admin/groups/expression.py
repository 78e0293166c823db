"""
Group Expressions

Parses node-selection expressions into a small tagged tree that the
resolver evaluates by structural recursion.

Syntax:
    x1000c0s0b0n3            literal identifier (containers select their nodes)
    x1000c0s*b0n[0-3,7]      pattern: '*' any value, [ranges] inclusive sets
    nid[000001-000004]       node ids
    @compute                 named group
    %p1                      partition
    compute                  bare word: a group if one exists, else an identifier
    A,B  A|B                 union (lowest precedence)
    A&B                      intersection
    A!B                      difference
    ~A                       complement (needs a universe)
    ( ... )                  grouping

Usage:
    from csm_admin.groups.expression import parse_expression

    tree = parse_expression("@compute & x1000c[0-3] ! x1000c1s0b0n0")
    print(tree)   # ((@compute & x1000c[0-3]) ! x1000c1s0b0n0)
"""

import re
from dataclasses import dataclass
from typing import FrozenSet, List, Optional, Tuple, Union as TypingUnion

from ..errors import ExpressionSyntaxError, InvalidIdentifier
from ..hostlist import expand_range_set, format_range_set
from ..xname import COMPONENT_RANGES, Xname, parse, validate_components

# ---------------------------------------------------------------------------
# Tree
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Literal:
    """One identifier; selects itself and, for containers, every descendant."""

    xname: Xname

    def matches(self, candidate: Xname) -> bool:
        return candidate == self.xname or self.xname.is_ancestor_of(candidate)

    def __str__(self) -> str:
        return str(self.xname)


@dataclass(frozen=True)
class ComponentMatcher:
    letter: str
    values: Optional[FrozenSet[int]] = None  # None matches any value

    def matches(self, letter: str, value: int) -> bool:
        return letter == self.letter and (self.values is None or value in self.values)

    @property
    def is_exact(self) -> bool:
        return self.values is not None and len(self.values) == 1

    def __str__(self) -> str:
        if self.values is None:
            return f"{self.letter}*"
        if self.is_exact:
            return f"{self.letter}{next(iter(self.values))}"
        return f"{self.letter}[{format_range_set(self.values)}]"


@dataclass(frozen=True)
class Pattern:
    """Per-component filter; shorter patterns select descendants like a container."""

    components: Tuple[ComponentMatcher, ...]

    def matches(self, candidate: Xname) -> bool:
        if len(candidate.components) < len(self.components):
            return False
        return all(
            matcher.matches(letter, value)
            for matcher, (letter, value) in zip(self.components, candidate.components)
        )

    def exact_prefix(self) -> Optional[Xname]:
        """Longest leading run of single-valued components, as a container id."""
        prefix = []
        for matcher in self.components:
            if not matcher.is_exact:
                break
            prefix.append((matcher.letter, next(iter(matcher.values))))
        return Xname(tuple(prefix)) if prefix else None

    def __str__(self) -> str:
        return "".join(str(matcher) for matcher in self.components)


@dataclass(frozen=True)
class NidSet:
    nids: FrozenSet[int]

    def __str__(self) -> str:
        if len(self.nids) == 1:
            return f"nid{next(iter(self.nids)):06d}"
        return f"nid[{format_range_set(self.nids)}]"


@dataclass(frozen=True)
class GroupRef:
    name: str

    def __str__(self) -> str:
        return f"@{self.name}"


@dataclass(frozen=True)
class PartitionRef:
    name: str

    def __str__(self) -> str:
        return f"%{self.name}"


@dataclass(frozen=True)
class Word:
    """Bare word: a group name when one exists, otherwise compiled as an identifier."""

    text: str

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class Union:
    left: "Expression"
    right: "Expression"

    def __str__(self) -> str:
        return f"({self.left} , {self.right})"


@dataclass(frozen=True)
class Intersection:
    left: "Expression"
    right: "Expression"

    def __str__(self) -> str:
        return f"({self.left} & {self.right})"


@dataclass(frozen=True)
class Difference:
    left: "Expression"
    right: "Expression"

    def __str__(self) -> str:
        return f"({self.left} ! {self.right})"


@dataclass(frozen=True)
class Complement:
    operand: "Expression"

    def __str__(self) -> str:
        return f"~{self.operand}"


Expression = TypingUnion[
    Literal, Pattern, NidSet, GroupRef, PartitionRef, Word, Union, Intersection, Difference, Complement
]

# ---------------------------------------------------------------------------
# Words
# ---------------------------------------------------------------------------

_PATTERN_COMPONENT_RE = re.compile(r"([a-z])(\d+|\*|\[[0-9,\-\s]+\])")
_NID_WORD_RE = re.compile(r"^nid(\d+|\[[0-9,\-\s]+\])$")
_NAME_RE = re.compile(r"^[A-Za-z0-9_.:\-]+$")


def is_group_name(text: str) -> bool:
    return bool(_NAME_RE.match(text))


def compile_word(text: str) -> TypingUnion[Literal, Pattern, NidSet]:
    """Compile an identifier-shaped word; raises InvalidIdentifier."""
    lowered = text.strip().lower()

    nid_match = _NID_WORD_RE.match(lowered)
    if nid_match:
        body = nid_match.group(1)
        try:
            nids = expand_range_set(body[1:-1]) if body.startswith("[") else [int(body)]
        except ValueError as e:
            raise InvalidIdentifier(text, str(e))
        return NidSet(frozenset(nids))

    if "*" not in lowered and "[" not in lowered:
        return Literal(parse(lowered))

    matchers = []
    position = 0
    for match in _PATTERN_COMPONENT_RE.finditer(lowered):
        if match.start() != position:
            break
        letter, selector = match.group(1), match.group(2)
        if selector == "*":
            values = None
        elif selector.startswith("["):
            try:
                values = frozenset(expand_range_set(selector[1:-1]))
            except ValueError as e:
                raise InvalidIdentifier(text, str(e))
        else:
            values = frozenset([int(selector)])
        matchers.append(ComponentMatcher(letter, values))
        position = match.end()
    if position != len(lowered) or not matchers:
        raise InvalidIdentifier(text, "malformed pattern")

    # Letter sequence is checked with representative values, then each value set by range.
    representative = []
    for matcher in matchers:
        low, high = COMPONENT_RANGES.get(matcher.letter, (0, 0))
        representative.append((matcher.letter, low))
        if matcher.values is not None:
            outside = [v for v in matcher.values if not low <= v <= high]
            if outside:
                raise InvalidIdentifier(
                    text, f"'{matcher.letter}' values {outside[:3]} outside {low}-{high}"
                )
    validate_components(tuple(representative), text)
    return Pattern(tuple(matchers))


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

_OPERATORS = ",|&!~()"


@dataclass
class _Token:
    kind: str  # "op", "group", "partition", "word", "end"
    text: str
    position: int


def tokenize(expression: str) -> List[_Token]:
    tokens = []
    i = 0
    length = len(expression)
    while i < length:
        char = expression[i]
        if char.isspace():
            i += 1
            continue
        if char in _OPERATORS:
            tokens.append(_Token("op", char, i))
            i += 1
            continue

        start = i
        depth = 0
        while i < length:
            char = expression[i]
            if char == "[":
                depth += 1
            elif char == "]":
                depth -= 1
                if depth < 0:
                    raise ExpressionSyntaxError(expression, i, "unbalanced ']'")
            elif depth == 0 and (char.isspace() or char in _OPERATORS):
                break
            i += 1
        if depth != 0:
            raise ExpressionSyntaxError(expression, start, "unbalanced '['")

        text = expression[start:i]
        if text[0] in "@%":
            name = text[1:]
            if not name or not _NAME_RE.match(name):
                raise ExpressionSyntaxError(expression, start, f"invalid name '{text}'")
            tokens.append(_Token("group" if text[0] == "@" else "partition", name, start))
        else:
            tokens.append(_Token("word", text, start))

    tokens.append(_Token("end", "", length))
    return tokens


class _Parser:
    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = tokenize(expression)
        self.index = 0

    @property
    def current(self) -> _Token:
        return self.tokens[self.index]

    def advance(self) -> _Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def error(self, reason: str) -> ExpressionSyntaxError:
        return ExpressionSyntaxError(self.expression, self.current.position, reason)

    def parse(self) -> Expression:
        if self.current.kind == "end":
            raise self.error("empty expression")
        tree = self.parse_union()
        if self.current.kind != "end":
            raise self.error(f"unexpected '{self.current.text}'")
        return tree

    def parse_union(self) -> Expression:
        tree = self.parse_intersection()
        while self.current.kind == "op" and self.current.text in ",|":
            self.advance()
            tree = Union(tree, self.parse_intersection())
        return tree

    def parse_intersection(self) -> Expression:
        tree = self.parse_unary()
        while self.current.kind == "op" and self.current.text in "&!":
            operator = self.advance().text
            right = self.parse_unary()
            tree = Intersection(tree, right) if operator == "&" else Difference(tree, right)
        return tree

    def parse_unary(self) -> Expression:
        if self.current.kind == "op" and self.current.text == "~":
            self.advance()
            return Complement(self.parse_unary())
        return self.parse_primary()

    def parse_primary(self) -> Expression:
        token = self.current
        if token.kind == "op" and token.text == "(":
            self.advance()
            tree = self.parse_union()
            if not (self.current.kind == "op" and self.current.text == ")"):
                raise self.error("expected ')'")
            self.advance()
            return tree
        if token.kind == "group":
            self.advance()
            return GroupRef(token.text)
        if token.kind == "partition":
            self.advance()
            return PartitionRef(token.text)
        if token.kind == "word":
            self.advance()
            return Word(token.text)
        if token.kind == "end":
            raise self.error("unexpected end of expression")
        raise self.error(f"unexpected '{token.text}'")


def parse_expression(expression: str) -> Expression:
    """Parse expression text into a tree; raises ExpressionSyntaxError."""
    if not isinstance(expression, str):
        raise TypeError("expression must be a string")
    return _Parser(expression).parse()
