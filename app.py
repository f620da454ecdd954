"""
Flask JSON API for the rootlab solver service.

Clients can:
    - Solve f(x) = 0 with Newton, fixed-point, bisection or secant iteration.
    - Compare several methods on the same problem.
    - Scan an interval for sign changes of f.
    - Check whether a fixed-point map g is contractive on an interval.
    - Ask for a relaxation alpha and start point for x = x - alpha*f(x).

Every endpoint answers ``{"error": str}`` with a non-2xx status on failure.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from rootlab_expr import Expression, SolverError, compile_expression
from rootlab_solver import (
    DEFAULT_MAX_ITER,
    DEFAULT_TOL,
    Method,
    SolveConfig,
    bracket,
    check_contraction,
    compare,
    parse_method,
    run_method,
    suggest_alpha,
)

app = Flask(__name__)
app.config.from_prefixed_env("ROOTLAB")

DEFAULTS = {
    "x0": 0.0,
    "x1": 0.0,
    "tol": DEFAULT_TOL,
    "maxIter": DEFAULT_MAX_ITER,
    "useNumDer": True,
    "relax": 1.0,
    "steps": 100,
    "samples": 50,
}


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object.")
    return data


def _float_field(data: dict, name: str, default: Optional[float] = None) -> float:
    raw = data.get(name)
    if raw is None or (isinstance(raw, str) and raw.strip() == ""):
        if default is None:
            raise ValueError(f"'{name}' is required.")
        return float(default)
    if isinstance(raw, bool):
        raise ValueError(f"'{name}' must be numeric.")
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"'{name}' must be numeric.") from exc


def _int_field(data: dict, name: str, default: Optional[int] = None) -> int:
    value = _float_field(data, name, default)
    if not value.is_integer():
        raise ValueError(f"'{name}' must be an integer.")
    return int(value)


def _bool_field(data: dict, name: str, default: bool) -> bool:
    raw = data.get(name, default)
    if isinstance(raw, str):
        return raw.strip().lower() in ("1", "true", "yes", "y", "t")
    return bool(raw)


def _text_field(data: dict, name: str) -> str:
    raw = data.get(name)
    if raw is None:
        return ""
    if not isinstance(raw, str):
        raise ValueError(f"'{name}' must be a string.")
    return raw.strip()


class _Compiler:
    """Compiles each distinct formula of a request once."""

    def __init__(self):
        self._cache: Dict[str, Expression] = {}

    def __call__(self, text: str) -> Optional[Expression]:
        if not text:
            return None
        if text not in self._cache:
            self._cache[text] = compile_expression(text)
        return self._cache[text]


def _solve_config(data: dict, methods: List[Method]) -> SolveConfig:
    compile_once = _Compiler()
    f_text = _text_field(data, "f")
    g_text = _text_field(data, "g") if Method.FIXED in methods else ""
    return SolveConfig(
        f=compile_once(f_text),
        g=compile_once(g_text),
        x0=_float_field(data, "x0", DEFAULTS["x0"]),
        x1=_float_field(data, "x1", DEFAULTS["x1"]),
        tol=_float_field(data, "tol", DEFAULTS["tol"]),
        max_iter=_int_field(data, "maxIter", DEFAULTS["maxIter"]),
        use_num_der=_bool_field(data, "useNumDer", DEFAULTS["useNumDer"]),
        relax=_float_field(data, "relax", DEFAULTS["relax"]),
    )


def _required_expression(data: dict, name: str) -> Expression:
    text = _text_field(data, name)
    if not text:
        raise ValueError(f"'{name}' is required.")
    return compile_expression(text)


# --------------------------------------------------------------------------- #
# Routes
# --------------------------------------------------------------------------- #


@app.route("/", methods=["GET"])
def health_check():
    return jsonify({"status": "ok"})


@app.route("/root/solve", methods=["POST"])
@app.route("/api/v1/root/solve", methods=["POST"])
def solve():
    data = _json_body()
    method = parse_method(data.get("method", Method.NEWTON.value))
    config = _solve_config(data, [method])
    result = run_method(method, config)
    return jsonify(result.to_dict())


@app.route("/root/compare", methods=["POST"])
@app.route("/api/v1/root/compare", methods=["POST"])
def compare_methods():
    data = _json_body()
    names = data.get("methods")
    if not isinstance(names, list) or not names:
        raise ValueError("'methods' must be a non-empty list of method names.")
    methods = [parse_method(name) for name in names]
    config = _solve_config(data, methods)
    rows = compare(methods, config)
    return jsonify([row.to_dict() for row in rows])


@app.route("/root/bracket", methods=["POST"])
@app.route("/api/v1/root/bracket", methods=["POST"])
def bracket_scan():
    data = _json_body()
    f = _required_expression(data, "f")
    result = bracket(
        f,
        _float_field(data, "a"),
        _float_field(data, "b"),
        _int_field(data, "steps", DEFAULTS["steps"]),
    )
    return jsonify(result.to_dict())


@app.route("/root/fixed/check", methods=["POST"])
@app.route("/api/v1/root/fixed/check", methods=["POST"])
def fixed_check():
    data = _json_body()
    g = _required_expression(data, "g")
    report = check_contraction(
        g,
        _float_field(data, "a"),
        _float_field(data, "b"),
        _int_field(data, "samples", DEFAULTS["samples"]),
    )
    return jsonify(report.to_dict())


@app.route("/root/fixed/suggest-alpha", methods=["POST"])
@app.route("/api/v1/root/fixed/suggest-alpha", methods=["POST"])
def fixed_suggest_alpha():
    data = _json_body()
    f = _required_expression(data, "f")
    report = suggest_alpha(f, _float_field(data, "x0"))
    return jsonify(report.to_dict())


# --------------------------------------------------------------------------- #
# Error handling
# --------------------------------------------------------------------------- #


@app.errorhandler(SolverError)
def handle_solver_error(exc: SolverError):
    app.logger.info("%s on %s: %s", type(exc).__name__, request.path, exc)
    return jsonify({"error": str(exc)}), exc.status_code


@app.errorhandler(ValueError)
def handle_bad_request(exc: ValueError):
    return jsonify({"error": str(exc)}), 400


@app.errorhandler(HTTPException)
def handle_http_error(exc: HTTPException):
    return jsonify({"error": exc.description}), exc.code


@app.errorhandler(Exception)
def handle_unexpected(exc: Exception):
    app.logger.exception("Unhandled error on %s", request.path)
    return jsonify({"error": "Internal server error"}), 500


if __name__ == "__main__":
    app.run(debug=True)
