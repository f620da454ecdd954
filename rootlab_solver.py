"""
Core numerical methods and diagnostics for the rootlab solver service.

This module centralizes:
    - Bracket scanning of f over an interval (sign-change detection).
    - Newton-Raphson, relaxed fixed-point, bisection and secant solvers.
    - The contraction check and the alpha / start-point suggester for
      fixed-point maps.
    - A thin façade (`run_method`, `compare`) that normalizes inputs/outputs
      so the Flask layer can consume one API.

Each solver returns a `SolveResult` with:
    root: Optional[float]
    residual_f: Optional[float]   # f(root)
    delta: float                  # size of the last accepted step
    converged: bool
    iterations: int               # steps taken
    trace: List[float]            # x0 .. xk
    message: str
"""

from __future__ import annotations

import enum
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from rootlab_expr import (
    DomainError,
    Expression,
    InvalidRangeError,
    NoStableRegionError,
    ParseError,
    UnknownMethodError,
    numeric_derivative,
)

logger = logging.getLogger(__name__)

DEFAULT_TOL = 1e-8
DEFAULT_MAX_ITER = 100
MAX_ITER_CEILING = 10_000
DIVERGENCE_BOUND = 1e100
MAX_GRID_POINTS = 100_000


def _finite_or_none(value: Optional[float]) -> Optional[float]:
    if value is None or not math.isfinite(value):
        return None
    return value


def _require_finite(name: str, value: float) -> float:
    if not math.isfinite(value):
        raise InvalidRangeError(f"{name} must be a finite number, got {value}.")
    return value


def _require_interval(a: float, b: float) -> None:
    _require_finite("a", a)
    _require_finite("b", b)
    if not a < b:
        raise InvalidRangeError(f"Interval requires a < b, got a={a}, b={b}.")


# --------------------------------------------------------------------------- #
# Result containers
# --------------------------------------------------------------------------- #


class Status(enum.Enum):
    CONVERGED = "converged"
    MAX_ITER_EXCEEDED = "max_iter_exceeded"
    DIVERGED = "diverged"


@dataclass
class SolveResult:
    status: Status
    root: Optional[float]
    residual_f: Optional[float]
    delta: float
    iterations: int
    trace: List[float]
    message: str

    @property
    def converged(self) -> bool:
        return self.status is Status.CONVERGED

    def to_dict(self) -> Dict[str, object]:
        return {
            "root": _finite_or_none(self.root),
            "converged": self.converged,
            "iterations": self.iterations,
            "trace": list(self.trace),
            "residualF": _finite_or_none(self.residual_f),
            "delta": _finite_or_none(self.delta),
            "message": self.message,
        }


def _base_result(x0: float) -> SolveResult:
    return SolveResult(
        status=Status.MAX_ITER_EXCEEDED,
        root=None,
        residual_f=None,
        delta=0.0,
        iterations=0,
        trace=[x0],
        message="",
    )


def _residual(f: Optional[Callable[[float], float]], root: Optional[float]) -> Optional[float]:
    if f is None or root is None:
        return None
    try:
        return f(root)
    except DomainError:
        return None


def _finalize(
    result: SolveResult,
    *,
    status: Status,
    root: Optional[float],
    message: str,
    residual: Optional[Callable[[float], float]],
) -> SolveResult:
    result.status = status
    result.root = root
    result.residual_f = _residual(residual, root)
    result.iterations = len(result.trace) - 1
    result.message = message
    return result


def _converged_message(result: SolveResult) -> str:
    return f"Converged in {len(result.trace) - 1} iterations."


MAX_ITER_MESSAGE = "Maximum iterations reached without convergence."


# --------------------------------------------------------------------------- #
# Bracket scanning
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class Point:
    x: float
    y: float


@dataclass(frozen=True)
class Interval:
    a: float
    b: float
    fa: Optional[float] = None
    fb: Optional[float] = None

    def to_dict(self) -> Dict[str, Optional[float]]:
        return {"a": self.a, "b": self.b, "fa": self.fa, "fb": self.fb}


@dataclass
class BracketResult:
    samples: List[Point]
    intervals: List[Interval]
    gaps: List[float] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "intervals": [interval.to_dict() for interval in self.intervals],
            "samples": [{"x": p.x, "y": p.y} for p in self.samples],
        }


def grid(a: float, b: float, count: int) -> List[float]:
    """``count`` evenly spaced points from a to b, both ends included."""
    if count == 1:
        return [a]
    span = b - a
    points = [a + span * i / (count - 1) for i in range(count - 1)]
    points.append(b)
    return points


def bracket(f: Expression, a: float, b: float, steps: int) -> BracketResult:
    """
    Sample f at the ``steps + 1`` boundaries of ``steps`` equal sub-intervals
    of [a, b] and report every adjacent pair whose values change sign or touch
    zero. Points where f is undefined are recorded as gaps.
    """
    _require_interval(a, b)
    if not 1 <= steps < MAX_GRID_POINTS:
        raise InvalidRangeError(
            f"steps must be between 1 and {MAX_GRID_POINTS - 1}, got {steps}."
        )

    values: List[Tuple[float, Optional[float]]] = []
    result = BracketResult(samples=[], intervals=[])
    for x in grid(a, b, steps + 1):
        try:
            y = f(x)
        except DomainError:
            result.gaps.append(x)
            values.append((x, None))
            continue
        result.samples.append(Point(x, y))
        values.append((x, y))

    for (xa, fa), (xb, fb) in zip(values, values[1:]):
        if fa is None or fb is None:
            continue
        if fa * fb < 0 or fa == 0 or fb == 0:
            result.intervals.append(Interval(xa, xb, fa, fb))

    logger.debug(
        "bracket %r on [%g, %g]: %d sign changes, %d gaps",
        f.text, a, b, len(result.intervals), len(result.gaps),
    )
    return result


# --------------------------------------------------------------------------- #
# Numerical methods
# --------------------------------------------------------------------------- #


def derivative_function(
    f: Expression, use_numeric: bool
) -> Callable[[float], float]:
    """Pick f' for Newton: central differences, or the analytic derivative."""
    if not use_numeric:
        try:
            return f.derivative().evaluate
        except ParseError:
            logger.warning(
                "analytic derivative of %r unavailable; using central differences",
                f.text,
            )
    return lambda x: numeric_derivative(f, x)


def newton(
    f: Expression,
    x0: float,
    tol: float,
    max_iter: int,
    derivative: Optional[Callable[[float], float]] = None,
) -> SolveResult:
    if derivative is None:
        derivative = derivative_function(f, use_numeric=True)
    result = _base_result(x0)
    x = x0
    for _ in range(max_iter):
        try:
            fx = f(x)
        except DomainError as exc:
            return _finalize(
                result, status=Status.DIVERGED, root=x, residual=f,
                message=f"f is undefined at the iterate: {exc}",
            )
        if abs(fx) <= tol:
            return _finalize(
                result, status=Status.CONVERGED, root=x, residual=f,
                message=_converged_message(result),
            )
        try:
            fpx = derivative(x)
        except DomainError:
            fpx = 0.0
        if fpx == 0:
            return _finalize(
                result, status=Status.DIVERGED, root=x, residual=f,
                message="zero or undefined derivative",
            )
        x_new = x - fx / fpx
        if not math.isfinite(x_new) or abs(x_new) > DIVERGENCE_BOUND:
            return _finalize(
                result, status=Status.DIVERGED, root=x, residual=f,
                message=f"Newton step left the representable range from x={x}.",
            )
        result.trace.append(x_new)
        result.delta = abs(x_new - x)
        if result.delta <= tol:
            return _finalize(
                result, status=Status.CONVERGED, root=x_new, residual=f,
                message=_converged_message(result),
            )
        x = x_new

    return _finalize(
        result, status=Status.MAX_ITER_EXCEEDED, root=x, residual=f,
        message=MAX_ITER_MESSAGE,
    )


def fixed_point(
    g: Expression,
    x0: float,
    tol: float,
    max_iter: int,
    relax: float = 1.0,
    f: Optional[Expression] = None,
) -> SolveResult:
    """
    Relaxed fixed-point iteration x <- x + relax*(g(x) - x).

    ``residualF`` reports f(root) when f is given so the row is comparable
    with the other methods; otherwise it is g(root) - root.
    """
    def fixed_point_residual(x: float) -> float:
        return g(x) - x

    residual: Callable[[float], float] = f if f is not None else fixed_point_residual
    result = _base_result(x0)
    x = x0
    for _ in range(max_iter):
        try:
            gx = g(x)
        except DomainError as exc:
            return _finalize(
                result, status=Status.DIVERGED, root=x, residual=residual,
                message=f"g is undefined at the iterate: {exc}",
            )
        x_new = x + relax * (gx - x)
        if not math.isfinite(x_new):
            return _finalize(
                result, status=Status.DIVERGED, root=x, residual=residual,
                message=f"Iteration diverged (non-finite iterate after x={x}).",
            )
        result.trace.append(x_new)
        result.delta = abs(x_new - x)
        if abs(x_new) > DIVERGENCE_BOUND:
            return _finalize(
                result, status=Status.DIVERGED, root=x_new, residual=residual,
                message=f"Iteration diverged (|x| exceeded {DIVERGENCE_BOUND:g}).",
            )
        if result.delta <= tol:
            return _finalize(
                result, status=Status.CONVERGED, root=x_new, residual=residual,
                message=_converged_message(result),
            )
        x = x_new

    return _finalize(
        result, status=Status.MAX_ITER_EXCEEDED, root=x, residual=residual,
        message=MAX_ITER_MESSAGE,
    )


def bisection(
    f: Expression,
    a: float,
    b: float,
    tol: float,
    max_iter: int,
) -> SolveResult:
    """
    Halve [a, b] until |f(c)| or the half-width of the bracket is within tol.

    The trace holds the midpoints, one per iteration, and ``delta`` is the
    half-width of the final bracket.
    """
    if a > b:
        a, b = b, a
    result = _base_result(a)
    result.trace = []

    def done(status: Status, root: Optional[float], message: str) -> SolveResult:
        _finalize(result, status=status, root=root, message=message, residual=f)
        result.iterations = len(result.trace)
        return result

    try:
        fa, fb = f(a), f(b)
    except DomainError as exc:
        return done(Status.DIVERGED, None, f"f is undefined at a bracket endpoint: {exc}")
    for endpoint, value in ((a, fa), (b, fb)):
        if value == 0:
            return done(Status.CONVERGED, endpoint, "Bracket endpoint is an exact root.")
    if fa * fb > 0:
        return done(
            Status.DIVERGED, None,
            "f(a) and f(b) must have opposite signs for bisection.",
        )

    c = a
    for i in range(1, max_iter + 1):
        c = (a + b) / 2.0
        try:
            fc = f(c)
        except DomainError as exc:
            return done(Status.DIVERGED, c, f"f is undefined inside the bracket: {exc}")
        result.trace.append(c)
        result.delta = (b - a) / 2.0
        if abs(fc) <= tol or result.delta <= tol:
            return done(Status.CONVERGED, c, f"Converged in {i} iterations.")
        if fa * fc < 0:
            b, fb = c, fc
        else:
            a, fa = c, fc

    return done(Status.MAX_ITER_EXCEEDED, c, MAX_ITER_MESSAGE)


def secant(
    f: Expression,
    x0: float,
    x1: float,
    tol: float,
    max_iter: int,
) -> SolveResult:
    result = _base_result(x0)
    try:
        fx0 = f(x0)
        if abs(fx0) <= tol:
            return _finalize(
                result, status=Status.CONVERGED, root=x0, residual=f,
                message=_converged_message(result),
            )
        fx1 = f(x1)
    except DomainError as exc:
        return _finalize(
            result, status=Status.DIVERGED, root=x0, residual=f,
            message=f"f is undefined at a starting point: {exc}",
        )
    result.trace.append(x1)
    result.delta = abs(x1 - x0)

    while len(result.trace) <= max_iter:
        denominator = fx1 - fx0
        if denominator == 0:
            return _finalize(
                result, status=Status.DIVERGED, root=x1, residual=f,
                message="Division by zero encountered in Secant method.",
            )
        x2 = x1 - fx1 * (x1 - x0) / denominator
        if not math.isfinite(x2) or abs(x2) > DIVERGENCE_BOUND:
            return _finalize(
                result, status=Status.DIVERGED, root=x1, residual=f,
                message=f"Secant step left the representable range from x={x1}.",
            )
        try:
            fx2 = f(x2)
        except DomainError as exc:
            return _finalize(
                result, status=Status.DIVERGED, root=x1, residual=f,
                message=f"f is undefined at the iterate: {exc}",
            )
        result.trace.append(x2)
        result.delta = abs(x2 - x1)
        if abs(fx2) <= tol or result.delta <= tol:
            return _finalize(
                result, status=Status.CONVERGED, root=x2, residual=f,
                message=_converged_message(result),
            )
        x0, fx0 = x1, fx1
        x1, fx1 = x2, fx2

    return _finalize(
        result, status=Status.MAX_ITER_EXCEEDED, root=x1, residual=f,
        message=MAX_ITER_MESSAGE,
    )


# --------------------------------------------------------------------------- #
# Contraction diagnostics
# --------------------------------------------------------------------------- #


@dataclass
class ContractionReport:
    max_abs_g_prime: Optional[float]
    contractive: Optional[bool]
    evaluated: int
    skipped: int

    @property
    def message(self) -> Optional[str]:
        if self.contractive is None:
            return "g'(x) could not be evaluated at any sample point."
        return None

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "maxAbsGPrime": self.max_abs_g_prime,
            "contractive": self.contractive,
        }
        if self.message:
            payload["message"] = self.message
        return payload


def check_contraction(
    g: Expression, a: float, b: float, samples: int
) -> ContractionReport:
    """
    Max |g'(x)| over ``samples`` evenly spaced points of [a, b].

    ``contractive`` is None when no point could be differentiated.
    """
    _require_interval(a, b)
    if not 2 <= samples <= MAX_GRID_POINTS:
        raise InvalidRangeError(
            f"samples must be between 2 and {MAX_GRID_POINTS}, got {samples}."
        )

    largest: Optional[float] = None
    skipped = 0
    for x in grid(a, b, samples):
        try:
            slope = abs(numeric_derivative(g, x))
        except DomainError:
            skipped += 1
            continue
        if largest is None or slope > largest:
            largest = slope

    if largest is None:
        logger.warning("contraction check of %r: no point evaluated", g.text)
        return ContractionReport(None, None, evaluated=0, skipped=skipped)
    return ContractionReport(
        largest, largest < 1.0, evaluated=samples - skipped, skipped=skipped
    )


@dataclass
class SuggestionReport:
    suggest: float
    lo: float
    hi: float
    alpha: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "suggest": self.suggest,
            "lo": self.lo,
            "hi": self.hi,
            "alpha": self.alpha,
        }


# alpha = scale / f'(x0); scale 1 makes g'(x0) = 0
ALPHA_SCALES = (1.0, 0.75, 0.5)
INITIAL_RADIUS = 1e-3
MAX_RADIUS = 1e6
MAX_EXPANSIONS = 40
REFINE_STEPS = 12
SHELL_SAMPLES = 8
SUGGEST_SAMPLES = 41


def _shell_is_contractive(
    g: Expression, x0: float, direction: int, inner: float, outer: float
) -> bool:
    ends = sorted((x0 + direction * inner, x0 + direction * outer))
    if not ends[0] < ends[1]:
        return False
    return check_contraction(g, ends[0], ends[1], SHELL_SAMPLES).contractive is True


def _expand(g: Expression, x0: float, direction: int) -> float:
    """Distance from x0 up to which g stays contractive in one direction."""
    base = max(1.0, abs(x0))
    inner = 0.0
    radius = base * INITIAL_RADIUS
    for _ in range(MAX_EXPANSIONS):
        if _shell_is_contractive(g, x0, direction, inner, radius):
            inner = radius
            if inner >= base * MAX_RADIUS:
                break
            radius *= 2.0
            continue
        outer = radius
        for _ in range(REFINE_STEPS):
            middle = (inner + outer) / 2.0
            if _shell_is_contractive(g, x0, direction, inner, middle):
                inner = middle
            else:
                outer = middle
        break
    return inner


def _contractive_region(g: Expression, x0: float) -> Optional[Tuple[float, float]]:
    try:
        if abs(numeric_derivative(g, x0)) >= 1.0:
            return None
    except DomainError:
        return None
    lo = x0 - _expand(g, x0, -1)
    hi = x0 + _expand(g, x0, +1)
    if not lo < hi:
        return None
    return lo, hi


def _flattest_point(g: Expression, lo: float, hi: float, x0: float) -> float:
    candidates = [x0] + grid(lo, hi, SUGGEST_SAMPLES + 2)[1:-1]
    best, best_key = x0, None
    for x in candidates:
        try:
            slope = abs(numeric_derivative(g, x))
        except DomainError:
            continue
        key = (slope, abs(x - x0))
        if best_key is None or key < best_key:
            best, best_key = x, key
    return best


def suggest_alpha(f: Expression, x0: float) -> SuggestionReport:
    """
    Find alpha and an interval (lo, hi) around x0 on which the fixed-point map
    g(x) = x - alpha*f(x) is contractive, plus a start point inside it where
    |g'| is smallest.

    Candidate alphas are scaled inverses of f'(x0); the candidate with the
    widest region wins. Each side is grown geometrically from x0 and the
    first failing shell is narrowed by bisection, so the number of probes is
    bounded.
    """
    _require_finite("x0", x0)
    try:
        slope = numeric_derivative(f, x0)
    except DomainError as exc:
        raise NoStableRegionError(f"f'(x0) cannot be evaluated at x0={x0}: {exc}") from exc
    if slope == 0:
        raise NoStableRegionError(f"f'(x0) is zero at x0={x0}; no alpha makes g contractive.")

    best: Optional[Tuple[float, Expression, float, float]] = None
    for scale in ALPHA_SCALES:
        alpha = scale / slope
        g = f.fixed_point_map(alpha)
        region = _contractive_region(g, x0)
        if region is None:
            continue
        lo, hi = region
        if best is None or hi - lo > best[3] - best[2]:
            best = (alpha, g, lo, hi)

    if best is None:
        raise NoStableRegionError(f"No contractive region found near x0={x0}.")
    alpha, g, lo, hi = best
    suggest = _flattest_point(g, lo, hi, x0)
    logger.debug("suggest %r x0=%g: alpha=%g region=(%g, %g)", f.text, x0, alpha, lo, hi)
    return SuggestionReport(suggest=suggest, lo=lo, hi=hi, alpha=alpha)


# --------------------------------------------------------------------------- #
# Public runner
# --------------------------------------------------------------------------- #


class Method(str, enum.Enum):
    NEWTON = "newton"
    FIXED = "fixed"
    BISECTION = "bisection"
    SECANT = "secant"


METHOD_LABELS = {
    Method.NEWTON: "Newton–Raphson Method",
    Method.FIXED: "Fixed Point Iteration",
    Method.BISECTION: "Bisection Method",
    Method.SECANT: "Secant Method",
}


def parse_method(name: str) -> Method:
    try:
        return Method(str(name).strip().lower())
    except ValueError:
        known = ", ".join(m.value for m in Method)
        raise UnknownMethodError(f"Unknown method: {name!r} (expected one of {known})") from None


@dataclass(frozen=True)
class SolveConfig:
    """Parameters shared by every method of one request."""

    f: Optional[Expression] = None
    g: Optional[Expression] = None
    x0: float = 0.0
    x1: float = 0.0
    tol: float = DEFAULT_TOL
    max_iter: int = DEFAULT_MAX_ITER
    use_num_der: bool = True
    relax: float = 1.0

    def __post_init__(self):
        _require_finite("x0", self.x0)
        _require_finite("x1", self.x1)
        if not (self.tol > 0 and math.isfinite(self.tol)):
            raise InvalidRangeError(f"tol must be a positive number, got {self.tol}.")
        if not 1 <= self.max_iter <= MAX_ITER_CEILING:
            raise InvalidRangeError(
                f"maxIter must be between 1 and {MAX_ITER_CEILING}, got {self.max_iter}."
            )
        if not 0 < self.relax <= 1:
            raise InvalidRangeError(f"relax must be in (0, 1], got {self.relax}.")

    def require(self, method: Method) -> None:
        if method is Method.FIXED:
            if self.g is None:
                raise ParseError("g(x) expression is required for fixed-point iteration.")
        elif self.f is None:
            raise ParseError(f"f(x) expression is required for method '{method.value}'.")


def _run_newton(config: SolveConfig) -> SolveResult:
    return newton(
        config.f, config.x0, config.tol, config.max_iter,
        derivative=derivative_function(config.f, config.use_num_der),
    )


def _run_fixed(config: SolveConfig) -> SolveResult:
    return fixed_point(
        config.g, config.x0, config.tol, config.max_iter,
        relax=config.relax, f=config.f,
    )


def _run_bisection(config: SolveConfig) -> SolveResult:
    return bisection(config.f, config.x0, config.x1, config.tol, config.max_iter)


def _run_secant(config: SolveConfig) -> SolveResult:
    return secant(config.f, config.x0, config.x1, config.tol, config.max_iter)


_SOLVERS: Dict[Method, Callable[[SolveConfig], SolveResult]] = {
    Method.NEWTON: _run_newton,
    Method.FIXED: _run_fixed,
    Method.BISECTION: _run_bisection,
    Method.SECANT: _run_secant,
}


def run_method(method: Method, config: SolveConfig) -> SolveResult:
    """Run one solver against an already-compiled configuration."""
    config.require(method)
    result = _SOLVERS[method](config)
    logger.debug(
        "%s: %s after %d iterations (root=%r)",
        method.value, result.status.value, result.iterations, result.root,
    )
    return result


@dataclass(frozen=True)
class CompareRow:
    method: str
    iters: int
    converged: bool
    root: Optional[float]

    def to_dict(self) -> Dict[str, object]:
        return {
            "method": self.method,
            "iters": self.iters,
            "converged": self.converged,
            "root": _finite_or_none(self.root),
        }


def compare(methods: Iterable[Method], config: SolveConfig) -> List[CompareRow]:
    """
    Run each method independently against the same configuration.

    Rows come back in request order with duplicates dropped; a method that
    fails to converge still gets its row.
    """
    ordered = list(dict.fromkeys(methods))
    if not ordered:
        raise InvalidRangeError("At least one method is required for comparison.")
    for method in ordered:
        config.require(method)

    with ThreadPoolExecutor(max_workers=len(ordered)) as pool:
        results = list(pool.map(lambda m: run_method(m, config), ordered))

    return [
        CompareRow(
            method=method.value,
            iters=result.iterations,
            converged=result.converged,
            root=result.root,
        )
        for method, result in zip(ordered, results)
    ]
