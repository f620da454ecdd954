"""
Expression engine and numeric differentiation for the rootlab solver service.

This module centralizes:
    - The error taxonomy shared by the solvers and the Flask layer.
    - Compiling user-provided formula text over the single variable ``x`` into
      an immutable, reusable `Expression`.
    - Central-difference derivatives of compiled expressions.

Formula text accepts ``+ - * /``, unary minus, ``^`` or ``**`` for power,
parentheses, numeric literals, the variable ``x``, the functions
``sin cos tan exp log sqrt abs`` and the constants ``pi`` and ``e``.
"""

from __future__ import annotations

import logging
import math
import re
import sys
from dataclasses import dataclass, field
from tokenize import NAME, NUMBER, OP, TokenError
from typing import Callable, Optional

import sympy as sp
from sympy.core.function import AppliedUndef
from sympy.parsing.sympy_parser import (
    convert_xor,
    parse_expr,
    standard_transformations,
)

logger = logging.getLogger(__name__)


# --------------------------------------------------------------------------- #
# Errors
# --------------------------------------------------------------------------- #


class SolverError(ValueError):
    """Base class for every failure the service reports to its callers."""

    status_code = 400


class ParseError(SolverError):
    """Raised when formula text cannot be compiled."""

    def __init__(self, message: str, offset: Optional[int] = None):
        if offset is not None:
            message = f"{message} (at position {offset})"
        super().__init__(message)
        self.offset = offset


class DomainError(SolverError):
    """Raised when an expression is undefined at the requested point."""

    def __init__(self, message: str, x: Optional[float] = None):
        super().__init__(message)
        self.x = x


class InvalidRangeError(SolverError):
    """Raised for bad intervals, counts, tolerances or iteration limits."""


class NoStableRegionError(SolverError):
    """Raised when no contractive region is found around a seed point."""

    status_code = 422


class UnknownMethodError(SolverError):
    """Raised when a request names a solver that does not exist."""


# --------------------------------------------------------------------------- #
# Compilation
# --------------------------------------------------------------------------- #

X_SYMBOL = sp.Symbol("x", real=True)


def _unevaluated_abs(arg):
    return sp.Abs(arg, evaluate=False)


def _float_literal(value):
    """Integer literals become floats so powers are never computed exactly."""
    return sp.Float(value)


# Trees are built unevaluated: x/x must stay a division so x=0 is still
# undefined when the compiled function runs.
_NAMESPACE = {
    "x": X_SYMBOL,
    "sin": sp.sin,
    "cos": sp.cos,
    "tan": sp.tan,
    "exp": sp.exp,
    "log": sp.log,
    "sqrt": sp.sqrt,
    "abs": _unevaluated_abs,
    "pi": sp.pi,
    "e": sp.E,
}

# Names the generated parser code needs; nothing else is reachable.
_PARSER_GLOBALS = {
    "__builtins__": {},
    "Integer": _float_literal,
    "Float": sp.Float,
    "Rational": sp.Rational,
    "Symbol": sp.Symbol,
    "Function": sp.Function,
    "Add": sp.Add,
    "Mul": sp.Mul,
    "Pow": sp.Pow,
}


def _group_end(tokens, start):
    """Index just past the parenthesis group opening at ``start``."""
    depth = 0
    for index in range(start, len(tokens)):
        if tokens[index] == (OP, "("):
            depth += 1
        elif tokens[index] == (OP, ")"):
            depth -= 1
            if depth == 0:
                return index + 1
    return None


def _operand_end(tokens, start):
    if start >= len(tokens):
        return None
    token = tokens[start]
    if token in ((OP, "-"), (OP, "+")):
        return _operand_end(tokens, start + 1)
    if token[0] in (NAME, NUMBER):
        end = start + 1
        # calls such as sin(...) and the Integer(...) wrappers of auto_number
        while end is not None and end < len(tokens) and tokens[end] == (OP, "("):
            end = _group_end(tokens, end)
        return end
    if token == (OP, "("):
        return _group_end(tokens, start)
    return None


def unary_minus_before_power(tokens, local_dict, global_dict):
    """Make ``-a^b`` parse as ``(-a)^b``: unary minus binds tighter than power."""
    opens, closes = [], []
    for index, token in enumerate(tokens):
        if token != (OP, "-"):
            continue
        previous = tokens[index - 1] if index else None
        if previous is not None and (previous[0] != OP or previous[1] == ")"):
            continue
        end = _operand_end(tokens, index + 1)
        if end is not None and end < len(tokens) and tokens[end] == (OP, "**"):
            opens.append(index)
            closes.append(end)
    if not opens:
        return tokens
    result = []
    for index, token in enumerate(tokens):
        result.extend([(OP, ")")] * closes.count(index))
        result.extend([(OP, "(")] * opens.count(index))
        result.append(token)
    return result


_PRODUCT_CONTEXT = {None, "(", ",", "+", "-", "*"}


def negated_group_as_product(tokens, local_dict, global_dict):
    """
    Rewrite ``-( ... )`` as ``Integer(-1)*( ... )``.

    Python's unary minus calls sympy's evaluating negation, which would fold
    an unevaluated group such as ``-(x/x)`` back to ``-1``.
    """
    result = []
    for index, token in enumerate(tokens):
        previous = tokens[index - 1] if index else None
        if (
            token == (OP, "-")
            and index + 1 < len(tokens)
            and tokens[index + 1] == (OP, "(")
            and (previous is None or (previous[0] == OP and previous[1] in _PRODUCT_CONTEXT))
        ):
            result.extend(
                [(NAME, "Integer"), (OP, "("), (NUMBER, "-1"), (OP, ")"), (OP, "*")]
            )
            continue
        result.append(token)
    return result


_TRANSFORMATIONS = standard_transformations + (
    convert_xor,
    unary_minus_before_power,
    negated_group_as_product,
)

_ALLOWED_TEXT = re.compile(r"^[0-9A-Za-z\s+\-*/^().,]*$")
_DOT_BEFORE_NAME = re.compile(r"\.\s*[A-Za-z]")
_EXPONENT = re.compile(r"[eE][+-]?\d")
_IDENTIFIER = re.compile(r"\b[A-Za-z][A-Za-z0-9]*")

MAX_EXPRESSION_LENGTH = 1000


def _check_text(text: str) -> None:
    if not text or not text.strip():
        raise ParseError("Expression cannot be empty.")
    if len(text) > MAX_EXPRESSION_LENGTH:
        raise ParseError(
            f"Expression is longer than {MAX_EXPRESSION_LENGTH} characters."
        )
    if not _ALLOWED_TEXT.match(text):
        bad = next(
            i for i, ch in enumerate(text) if not _ALLOWED_TEXT.match(ch)
        )
        raise ParseError(f"Unexpected character {text[bad]!r}", offset=bad)
    for match in _DOT_BEFORE_NAME.finditer(text):
        start = match.start()
        # "1.e5" is a number, "x.real" / "(x).func" are attribute access
        if (
            start > 0
            and text[start - 1].isdigit()
            and _EXPONENT.match(text, start + 1)
        ):
            continue
        raise ParseError("Attribute access is not allowed", offset=start)
    for match in _IDENTIFIER.finditer(text):
        name = match.group()
        if name in _PARSER_GLOBALS and name not in _NAMESPACE:
            raise ParseError(f"Unknown identifier '{name}'", offset=match.start())


def _syntax_offset(text: str) -> Optional[int]:
    """0-based position of the first syntax error in the raw text, if Python finds one."""
    stripped = text.lstrip()
    lead = len(text) - len(stripped)
    try:
        compile(stripped, "<expression>", "eval")
    except SyntaxError as exc:
        if exc.offset is None or exc.lineno is None:
            return None
        lines = stripped.split("\n")
        before = sum(len(line) + 1 for line in lines[: exc.lineno - 1])
        return min(lead + before + max(exc.offset - 1, 0), len(text))
    return None


def _parse_tree(text: str) -> sp.Expr:
    _check_text(text)
    try:
        tree = parse_expr(
            text,
            local_dict=dict(_NAMESPACE),
            global_dict=dict(_PARSER_GLOBALS),
            transformations=_TRANSFORMATIONS,
            evaluate=False,
        )
    except SyntaxError as exc:
        raise ParseError(
            f"Invalid expression: {text}", offset=_syntax_offset(text)
        ) from exc
    except TokenError as exc:
        raise ParseError(
            f"Invalid expression (unbalanced input): {text}",
            offset=_syntax_offset(text),
        ) from exc
    except (TypeError, ValueError, NameError, AttributeError, sp.SympifyError) as exc:
        raise ParseError(f"Invalid expression: {text} ({exc})") from exc

    if not isinstance(tree, sp.Expr):
        raise ParseError(f"Expression does not describe a number: {text}")
    undefined = sorted(str(fn.func) for fn in tree.atoms(AppliedUndef))
    if undefined:
        raise ParseError(f"Unknown function '{undefined[0]}' in: {text}")
    unknown = sorted(str(sym) for sym in tree.free_symbols - {X_SYMBOL})
    if unknown:
        raise ParseError(f"Unknown identifier '{unknown[0]}' in: {text}")
    return tree


def _lambdify(tree: sp.Expr) -> Callable[[float], float]:
    try:
        return sp.lambdify(X_SYMBOL, tree, "math")
    except (TypeError, ValueError, NameError, NotImplementedError, SyntaxError) as exc:
        raise ParseError(f"Expression cannot be compiled: {tree} ({exc})") from exc


@dataclass(frozen=True)
class Expression:
    """
    A compiled formula over ``x``.

    The sympy tree is turned into a plain Python function once, at
    construction; `evaluate` only calls that function and validates the
    result, so one instance can be reused across every iteration of a solve
    and shared between threads.
    """

    text: str
    tree: sp.Expr = field(repr=False)
    _function: Callable[[float], float] = field(repr=False, compare=False)

    @classmethod
    def from_tree(cls, tree: sp.Expr, text: Optional[str] = None) -> "Expression":
        return cls(text=text or str(tree), tree=tree, _function=_lambdify(tree))

    def evaluate(self, x: float) -> float:
        try:
            value = self._function(x)
        except (ValueError, ZeroDivisionError, OverflowError, TypeError) as exc:
            raise DomainError(
                f"'{self.text}' is undefined at x={x}: {exc}", x=x
            ) from exc
        if isinstance(value, complex):
            raise DomainError(f"'{self.text}' is complex at x={x}", x=x)
        value = float(value)
        if not math.isfinite(value):
            raise DomainError(f"'{self.text}' is not finite at x={x}", x=x)
        return value

    __call__ = evaluate

    def derivative(self) -> "Expression":
        """Analytic derivative d/dx, compiled the same way."""
        return Expression.from_tree(sp.diff(self.tree, X_SYMBOL))

    def fixed_point_map(self, alpha: float) -> "Expression":
        """Return g(x) = x - alpha*f(x), whose fixed points are roots of f."""
        tree = sp.Add(
            X_SYMBOL,
            sp.Mul(sp.Float(-alpha), self.tree, evaluate=False),
            evaluate=False,
        )
        return Expression.from_tree(tree, text=f"(x)-({alpha!r})*({self.text})")


def compile_expression(text: str) -> Expression:
    """
    Convert formula text into an `Expression`.

    Users can enter expressions such as:
        "x^3 - 5*x + 2", "sin(x) - x/2", "exp(-x) - x", etc.
    """
    tree = _parse_tree(text)
    expression = Expression.from_tree(tree, text=text.strip())
    logger.debug("compiled %r -> %s", expression.text, tree)
    return expression


# --------------------------------------------------------------------------- #
# Numeric differentiation
# --------------------------------------------------------------------------- #

MACHINE_EPSILON = sys.float_info.epsilon


def default_step(x: float) -> float:
    """Central-difference step scaled to the magnitude of x."""
    return max(1.0, abs(x)) * MACHINE_EPSILON ** (1.0 / 3.0)


def numeric_derivative(
    expression: Expression, x: float, h: Optional[float] = None
) -> float:
    """
    Central difference (e(x+h) - e(x-h)) / 2h.

    A `DomainError` at either side propagates to the caller.
    """
    if h is None:
        h = default_step(x)
    elif not h > 0 or not math.isfinite(h):
        raise InvalidRangeError(f"Derivative step must be positive, got {h}.")
    slope = (expression.evaluate(x + h) - expression.evaluate(x - h)) / (2.0 * h)
    if not math.isfinite(slope):
        raise DomainError(f"Derivative of '{expression.text}' is not finite at x={x}", x=x)
    return slope
