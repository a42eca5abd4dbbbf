"""bucket_script resolution — derived metrics computed from sibling metrics in a bucket.

Scripts are evaluated as arithmetic over ``params.<name>`` variables:

  operators   + - * / % ** and unary minus, parentheses
  literals    integer and decimal numbers
  functions   Math.abs, max, min, sqrt, pow, log, log10, exp, floor, ceil, round

Anything else (conditionals, loops, typed literals) is outside the grammar; the
value the backend computed for the bucket_script aggregation is used instead.
"""

from __future__ import annotations

import ast
import logging
import math
import operator
from functools import lru_cache
from typing import Optional

from aggregation_tree import AggregationNode, MalformedResponse, ScalarValue
from models import MetricAggSpec, MetricAggType, QueryDefinition

log = logging.getLogger(__name__)


class UnresolvedPipelineVariable(Exception):
    """A pipeline variable points at a metric that is missing from the bucket."""

    def __init__(self, metric_id: str, variable: str, target_id: str):
        self.metric_id = metric_id
        self.variable = variable
        self.target_id = target_id
        super().__init__(
            f"bucket_script {metric_id!r}: variable {variable!r} "
            f"references metric {target_id!r}, which is not in the bucket"
        )


class UnsupportedScript(ValueError):
    """Script uses syntax outside the supported arithmetic grammar."""


_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: math.fmod,
    ast.Pow: math.pow,
}

_UNARY_OPS = {
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_MATH_FUNCTIONS = {
    "abs": abs,
    "max": max,
    "min": min,
    "sqrt": math.sqrt,
    "pow": math.pow,
    "log": math.log,
    "log10": math.log10,
    "exp": math.exp,
    "floor": math.floor,
    "ceil": math.ceil,
    "round": round,
}


# ── Expression evaluation ─────────────────────────────────────────────


@lru_cache(maxsize=256)
def _parse(script: str) -> ast.Expression:
    try:
        return ast.parse(script.strip(), mode="eval")
    except SyntaxError as e:
        raise UnsupportedScript(f"cannot parse script {script!r}: {e.msg}") from None


def _lookup(variables: dict[str, Optional[float]], name: str) -> Optional[float]:
    if name not in variables:
        raise KeyError(name)
    return variables[name]


def _eval(node: ast.AST, variables: dict[str, Optional[float]]) -> Optional[float]:
    if isinstance(node, ast.Constant):
        if isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
            return float(node.value)
        raise UnsupportedScript(f"unsupported literal {node.value!r}")

    if isinstance(node, ast.Attribute):
        if isinstance(node.value, ast.Name) and node.value.id == "params":
            return _lookup(variables, node.attr)
        raise UnsupportedScript(f"unsupported attribute access {ast.unparse(node)!r}")

    if isinstance(node, ast.Subscript):
        if (
            isinstance(node.value, ast.Name)
            and node.value.id == "params"
            and isinstance(node.slice, ast.Constant)
            and isinstance(node.slice.value, str)
        ):
            return _lookup(variables, node.slice.value)
        raise UnsupportedScript(f"unsupported subscript {ast.unparse(node)!r}")

    if isinstance(node, ast.Name):
        return _lookup(variables, node.id)

    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        operand = _eval(node.operand, variables)
        return None if operand is None else _UNARY_OPS[type(node.op)](operand)

    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
        left = _eval(node.left, variables)
        right = _eval(node.right, variables)
        if left is None or right is None:
            return None
        return _BINARY_OPS[type(node.op)](left, right)

    if (
        isinstance(node, ast.Call)
        and isinstance(node.func, ast.Attribute)
        and isinstance(node.func.value, ast.Name)
        and node.func.value.id == "Math"
        and node.func.attr in _MATH_FUNCTIONS
        and not node.keywords
    ):
        args = [_eval(arg, variables) for arg in node.args]
        if any(arg is None for arg in args):
            return None
        try:
            return float(_MATH_FUNCTIONS[node.func.attr](*args))
        except TypeError as e:
            # wrong arity, e.g. Math.pow(x)
            raise UnsupportedScript(f"bad call {ast.unparse(node)!r}: {e}") from None

    raise UnsupportedScript(f"unsupported expression {ast.unparse(node)!r}")


def evaluate_script(script: str, variables: dict[str, Optional[float]]) -> Optional[float]:
    """Evaluate `script` with `variables`; a null operand or undefined result gives None.

    Raises UnsupportedScript for syntax outside the grammar and KeyError for a
    ``params.<name>`` that is not among `variables`.
    """
    tree = _parse(script)
    try:
        result = _eval(tree.body, variables)
    except (ZeroDivisionError, OverflowError):
        return None
    except ValueError as e:
        if isinstance(e, UnsupportedScript):
            raise
        # math domain errors (sqrt of a negative, log of zero)
        return None
    if result is None or math.isnan(result) or math.isinf(result):
        return None
    return result


# ── Variable resolution ───────────────────────────────────────────────


def resolve_variables(
    metric: MetricAggSpec,
    node: AggregationNode,
    query: QueryDefinition,
    _seen: frozenset[str] = frozenset(),
) -> dict[str, Optional[float]]:
    """Read every pipeline variable of `metric` from the raw bucket `node`."""
    variables: dict[str, Optional[float]] = {}
    for var in metric.pipeline_variables:
        target = query.metric_by_id(var.pipeline_agg)
        if target is None:
            raise UnresolvedPipelineVariable(metric.id, var.name, var.pipeline_agg)

        if target.type == MetricAggType.count:
            variables[var.name] = node.metric_value_for(target).value
        elif target.type == MetricAggType.bucket_script and target.id not in _seen:
            variables[var.name] = _script_value(target, node, query, _seen | {metric.id})
        elif var.pipeline_agg not in node:
            raise UnresolvedPipelineVariable(metric.id, var.name, var.pipeline_agg)
        else:
            value = node.metric_value_for(target)
            if not isinstance(value, ScalarValue):
                raise UnresolvedPipelineVariable(metric.id, var.name, var.pipeline_agg)
            variables[var.name] = value.value
    return variables


def _backend_value(metric: MetricAggSpec, node: AggregationNode) -> Optional[float]:
    if metric.id not in node:
        return None
    try:
        value = node.metric_value_for(metric)
    except MalformedResponse as e:
        log.debug("Ignoring backend bucket_script value: %s", e)
        return None
    return value.value if isinstance(value, ScalarValue) else None


def _script_value(
    metric: MetricAggSpec,
    node: AggregationNode,
    query: QueryDefinition,
    seen: frozenset[str],
) -> Optional[float]:
    script = str(metric.settings.get("script") or "")
    try:
        variables = resolve_variables(metric, node, query, seen)
        return evaluate_script(script, variables)
    except (UnresolvedPipelineVariable, MalformedResponse) as e:
        log.debug("Null bucket_script point at %s: %s", node.path, e)
        return None
    except KeyError as e:
        log.debug(
            "Null bucket_script point at %s: script %r uses undeclared variable %s",
            node.path, script, e,
        )
        return None
    except UnsupportedScript as e:
        log.debug("Using backend value for bucket_script %s: %s", metric.id, e)
        return _backend_value(metric, node)


def bucket_script_value(
    metric: MetricAggSpec,
    node: AggregationNode,
    query: QueryDefinition,
) -> Optional[float]:
    """Value of bucket_script `metric` in the leaf bucket `node`, or None when unresolvable."""
    return _script_value(metric, node, query, frozenset({metric.id}))
