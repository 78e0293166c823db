"""
Node-group expressions and their resolution against inventory.
"""

from .expression import Expression, compile_word, parse_expression
from .inventory import InventoryContext
from .resolver import GroupResolver, ResolutionContext, StaticContext, get_resolver, resolve

__all__ = [
    # Expressions
    "Expression",
    "parse_expression",
    "compile_word",
    # Resolution
    "GroupResolver",
    "ResolutionContext",
    "StaticContext",
    "InventoryContext",
    "get_resolver",
    "resolve",
]
