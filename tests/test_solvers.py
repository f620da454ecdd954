import math

import pytest

from rootlab_expr import InvalidRangeError, ParseError, UnknownMethodError, compile_expression
from rootlab_solver import (
    MAX_GRID_POINTS,
    MAX_ITER_CEILING,
    Method,
    SolveConfig,
    Status,
    bisection,
    bracket,
    compare,
    derivative_function,
    fixed_point,
    newton,
    parse_method,
    run_method,
    secant,
)

DOTTIE = 0.7390851332151607


# --------------------------------------------------------------------------- #
# Bracket scanning
# --------------------------------------------------------------------------- #


def test_bracket_finds_each_sign_change():
    f = compile_expression("sin(x)")
    result = bracket(f, 0.5, 10.0, 95)
    assert len(result.samples) == 96
    assert [round(i.a, 1) for i in result.intervals] == [3.1, 6.2, 9.4]
    for interval in result.intervals:
        assert interval.fa * interval.fb <= 0
        assert interval.a < interval.b
    starts = [i.a for i in result.intervals]
    assert starts == sorted(starts)


def test_bracket_samples_are_ascending_and_cover_endpoints():
    result = bracket(compile_expression("x^2 + 1"), -2.0, 2.0, 4)
    xs = [p.x for p in result.samples]
    assert xs == [-2.0, -1.0, 0.0, 1.0, 2.0]
    assert [p.y for p in result.samples] == [5.0, 2.0, 1.0, 2.0, 5.0]
    assert result.intervals == []


def test_bracket_exact_zero_on_grid():
    result = bracket(compile_expression("x^2"), -1.0, 1.0, 2)
    assert [(i.a, i.b) for i in result.intervals] == [(-1.0, 0.0), (0.0, 1.0)]


def test_bracket_records_gaps_instead_of_failing():
    result = bracket(compile_expression("log(x)"), -1.0, 3.0, 4)
    assert result.gaps == [-1.0, 0.0]
    assert [p.x for p in result.samples] == [1.0, 2.0, 3.0]
    assert [(i.a, i.b) for i in result.intervals] == [(1.0, 2.0)]


def test_bracket_is_deterministic():
    f = compile_expression("x^3 - x")
    assert bracket(f, -2.0, 2.0, 7) == bracket(f, -2.0, 2.0, 7)


@pytest.mark.parametrize(
    "a, b, steps",
    [
        (1.0, 1.0, 5),
        (2.0, 1.0, 5),
        (0.0, 1.0, 0),
        (0.0, math.inf, 3),
        (0.0, 1.0, MAX_GRID_POINTS),
        (0.0, 1.0, 2_000_000),
    ],
)
def test_bracket_rejects_bad_ranges(a, b, steps):
    with pytest.raises(InvalidRangeError):
        bracket(compile_expression("x"), a, b, steps)


# --------------------------------------------------------------------------- #
# Newton
# --------------------------------------------------------------------------- #


def test_newton_sqrt_two():
    f = compile_expression("x^2 - 2")
    result = newton(f, 1.0, 1e-10, 100)
    assert result.converged
    assert result.root == pytest.approx(math.sqrt(2), abs=1e-10)
    assert abs(result.residual_f) <= 1e-10
    assert result.iterations <= 6
    assert result.trace[0] == 1.0
    assert len(result.trace) == result.iterations + 1
    assert result.delta == pytest.approx(abs(result.trace[-1] - result.trace[-2]))


def test_newton_with_analytic_derivative():
    f = compile_expression("x^2 - 2")
    result = newton(f, 1.0, 1e-10, 100, derivative=derivative_function(f, use_numeric=False))
    assert result.converged
    assert result.root == pytest.approx(math.sqrt(2))


def test_newton_converged_at_start_point():
    result = newton(compile_expression("x - 3"), 3.0, 1e-8, 10)
    assert result.converged
    assert result.iterations == 0
    assert result.trace == [3.0]
    assert result.delta == 0.0


def test_newton_zero_derivative_diverges():
    result = newton(compile_expression("x^2 + 1"), 0.0, 1e-10, 50)
    assert result.status is Status.DIVERGED
    assert not result.converged
    assert result.message == "zero or undefined derivative"
    assert result.root == 0.0


@pytest.mark.parametrize("use_numeric", [True, False])
def test_newton_stops_where_quotient_is_undefined(use_numeric):
    f = compile_expression("x/x - 1 + x")
    result = newton(f, 0.0, 1e-10, 50, derivative=derivative_function(f, use_numeric))
    assert result.status is Status.DIVERGED
    assert not result.converged
    assert result.trace == [0.0]


def test_newton_max_iterations():
    f = compile_expression("x^3 - 2*x + 2")
    result = newton(f, 0.0, 1e-12, 25)
    assert result.status is Status.MAX_ITER_EXCEEDED
    assert not result.converged
    assert result.iterations == 25
    assert len(result.trace) == 26
    assert result.root == result.trace[-1]
    assert "Maximum iterations" in result.message


def test_newton_domain_error_is_divergence():
    result = newton(compile_expression("log(x)"), -1.0, 1e-10, 20)
    assert result.status is Status.DIVERGED
    assert result.residual_f is None


# --------------------------------------------------------------------------- #
# Fixed point
# --------------------------------------------------------------------------- #


def test_fixed_point_cosine():
    g = compile_expression("cos(x)")
    result = fixed_point(g, 1.0, 1e-8, 200)
    assert result.converged
    assert result.root == pytest.approx(DOTTIE, abs=1e-7)
    assert result.delta <= 1e-8
    assert result.residual_f == pytest.approx(math.cos(result.root) - result.root)


def test_fixed_point_reports_residual_of_f():
    f = compile_expression("cos(x) - x")
    g = compile_expression("cos(x)")
    result = fixed_point(g, 1.0, 1e-10, 200, f=f)
    assert result.residual_f == pytest.approx(f(result.root))
    assert abs(result.residual_f) < 1e-9


def test_fixed_point_relaxation_damps_oscillation():
    g = compile_expression("cos(x)")
    plain = fixed_point(g, 1.0, 1e-10, 500)
    damped = fixed_point(g, 1.0, 1e-10, 500, relax=0.6)
    assert damped.converged and plain.converged
    assert damped.iterations < plain.iterations
    assert damped.root == pytest.approx(plain.root, abs=1e-9)


def test_fixed_point_doubling_does_not_converge():
    g = compile_expression("2*x")
    result = fixed_point(g, 1.0, 1e-8, 100)
    assert not result.converged
    steps = [abs(b - a) for a, b in zip(result.trace, result.trace[1:])]
    assert steps == sorted(steps)


def test_fixed_point_divergence_bound():
    g = compile_expression("2*x")
    result = fixed_point(g, 1.0, 1e-8, 1000)
    assert result.status is Status.DIVERGED
    assert "diverged" in result.message


def test_fixed_point_domain_error():
    result = fixed_point(compile_expression("sqrt(x) - 5"), 1.0, 1e-8, 50)
    assert result.status is Status.DIVERGED


# --------------------------------------------------------------------------- #
# Bisection and secant
# --------------------------------------------------------------------------- #


def test_bisection_cubic():
    f = compile_expression("x^3 - x - 2")
    result = bisection(f, 1.0, 2.0, 1e-10, 200)
    assert result.converged
    assert result.root == pytest.approx(1.5213797068045676, abs=1e-9)
    assert result.delta <= 1e-10 or abs(result.residual_f) <= 1e-10


def test_bisection_requires_sign_change():
    result = bisection(compile_expression("x^2 + 1"), -1.0, 1.0, 1e-8, 50)
    assert not result.converged
    assert result.root is None
    assert "opposite signs" in result.message


def test_bisection_endpoint_root():
    result = bisection(compile_expression("x - 1"), 1.0, 3.0, 1e-8, 50)
    assert result.converged
    assert result.root == 1.0


def test_secant_cubic():
    f = compile_expression("x^3 - x - 2")
    result = secant(f, 1.0, 2.0, 1e-12, 100)
    assert result.converged
    assert result.root == pytest.approx(1.5213797068045676, abs=1e-10)
    assert result.trace[:2] == [1.0, 2.0]
    assert len(result.trace) <= 101


def test_secant_flat_function():
    result = secant(compile_expression("5"), 0.0, 1.0, 1e-8, 10)
    assert result.status is Status.DIVERGED


# --------------------------------------------------------------------------- #
# Dispatch and comparison
# --------------------------------------------------------------------------- #


def test_parse_method():
    assert parse_method("Newton") is Method.NEWTON
    assert parse_method("fixed") is Method.FIXED
    with pytest.raises(UnknownMethodError):
        parse_method("regula_falsi")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"tol": 0.0},
        {"tol": -1.0},
        {"max_iter": 0},
        {"max_iter": MAX_ITER_CEILING + 1},
        {"relax": 0.0},
        {"relax": 1.5},
        {"x0": math.nan},
    ],
)
def test_solve_config_validation(kwargs):
    with pytest.raises(InvalidRangeError):
        SolveConfig(**kwargs)


def test_run_method_requires_expressions():
    with pytest.raises(ParseError):
        run_method(Method.FIXED, SolveConfig(f=compile_expression("x")))
    with pytest.raises(ParseError):
        run_method(Method.NEWTON, SolveConfig(g=compile_expression("x")))


def test_compare_newton_and_fixed():
    config = SolveConfig(
        f=compile_expression("cos(x) - x"),
        g=compile_expression("cos(x)"),
        x0=1.0,
        tol=1e-8,
        max_iter=200,
    )
    rows = compare([Method.NEWTON, Method.FIXED], config)
    assert [row.method for row in rows] == ["newton", "fixed"]
    assert all(row.converged for row in rows)
    assert rows[0].root == pytest.approx(rows[1].root, abs=1e-7)
    assert rows[0].root == pytest.approx(DOTTIE, abs=1e-8)


def test_compare_keeps_request_order_and_failures():
    config = SolveConfig(
        f=compile_expression("x^2 + 1"),
        g=compile_expression("2*x"),
        x0=0.5,
        x1=2.0,
        max_iter=50,
    )
    methods = [Method.SECANT, Method.BISECTION, Method.FIXED, Method.NEWTON, Method.BISECTION]
    rows = compare(methods, config)
    assert [row.method for row in rows] == ["secant", "bisection", "fixed", "newton"]
    assert not any(row.converged for row in rows)
    assert rows[1].root is None


def test_compare_requires_g_before_running():
    config = SolveConfig(f=compile_expression("x - 1"))
    with pytest.raises(ParseError):
        compare([Method.NEWTON, Method.FIXED], config)


def test_compare_requires_methods():
    with pytest.raises(InvalidRangeError):
        compare([], SolveConfig(f=compile_expression("x")))
