"""Condition rules attached to conditional edges.

Grammar::

    rule := {op: AND|OR, args: [rule, ...]}
          | {op: NOT, arg: rule}
          | {op: EXISTS, value: expr}
          | {op: EQ|NEQ|GT|GTE|LT|LTE, left: expr, right: expr}
          | {op: IN, value: expr, options: [expr, ...]}
    expr := {op: literal, value: <json scalar>}
          | {op: ref, ref: {kind: selectionRef, selectionKey: <str>}}
"""

from __future__ import annotations

from typing import Any, Mapping

from .canonical import to_canonical_json

LOGICAL_OPS = frozenset({"AND", "OR"})
COMPARISON_OPS = frozenset({"EQ", "NEQ", "GT", "GTE", "LT", "LTE"})
CONDITION_OPS = LOGICAL_OPS | COMPARISON_OPS | {"NOT", "EXISTS", "IN"}
REF_KINDS = frozenset({"selectionRef", "effectiveRef"})
MAX_RULE_DEPTH = 32

_MISSING = object()


def describe_malformed(rule: Any, path: str = "condition", depth: int = 0) -> str | None:
    """Return a message for the first structural problem in ``rule``, or None if well-formed.

    Rules nested deeper than ``MAX_RULE_DEPTH`` are malformed.
    """
    if depth > MAX_RULE_DEPTH:
        return f"{path} nests rules deeper than {MAX_RULE_DEPTH} levels"
    if not isinstance(rule, Mapping) or not rule:
        return f"{path} must be a non-empty object"
    op = rule.get("op")
    if op not in CONDITION_OPS:
        return f"{path}.op must be one of {', '.join(sorted(CONDITION_OPS))}; got {op!r}"

    if op in LOGICAL_OPS:
        args = rule.get("args")
        if not isinstance(args, list) or not args:
            return f"{path}.args must be a non-empty list"
        for idx, arg in enumerate(args):
            problem = describe_malformed(arg, f"{path}.args[{idx}]", depth + 1)
            if problem:
                return problem
        return None
    if op == "NOT":
        return describe_malformed(rule.get("arg"), f"{path}.arg", depth + 1)
    if op == "EXISTS":
        return _describe_malformed_expr(rule.get("value"), f"{path}.value")
    if op == "IN":
        problem = _describe_malformed_expr(rule.get("value"), f"{path}.value")
        if problem:
            return problem
        options = rule.get("options")
        if not isinstance(options, list):
            return f"{path}.options must be a list"
        for idx, option in enumerate(options):
            problem = _describe_malformed_expr(option, f"{path}.options[{idx}]")
            if problem:
                return problem
        return None
    return _describe_malformed_expr(rule.get("left"), f"{path}.left") or _describe_malformed_expr(
        rule.get("right"), f"{path}.right"
    )


def _describe_malformed_expr(expr: Any, path: str) -> str | None:
    if not isinstance(expr, Mapping):
        return f"{path} must be an expression object"
    op = expr.get("op")
    if op == "literal":
        if "value" not in expr:
            return f"{path}.value is required for literal"
        value = expr["value"]
        if value is not None and not isinstance(value, (str, int, float, bool)):
            return f"{path}.value must be a JSON scalar"
        return None
    if op == "ref":
        ref = expr.get("ref")
        if not isinstance(ref, Mapping) or ref.get("kind") not in REF_KINDS:
            return f"{path}.ref must be a selectionRef"
        key = ref.get("selectionKey")
        if not isinstance(key, str) or not key.strip():
            return f"{path}.ref.selectionKey must be a non-empty string"
        return None
    return f"{path}.op must be literal or ref; got {op!r}"


def is_well_formed(rule: Any) -> bool:
    return describe_malformed(rule) is None


def selection_keys(rule: Any) -> set[str]:
    """Every selection key a rule reads, at any depth."""
    found: set[str] = set()
    pending = [rule]
    while pending:
        value = pending.pop()
        if isinstance(value, Mapping):
            if value.get("op") == "ref":
                ref = value.get("ref")
                if isinstance(ref, Mapping) and isinstance(ref.get("selectionKey"), str):
                    found.add(ref["selectionKey"])
                continue
            pending.extend(value.values())
        elif isinstance(value, list):
            pending.extend(value)
    return found


def _eval_expr(expr: Mapping[str, Any], selections: Mapping[str, Any]) -> Any:
    if expr.get("op") == "literal":
        return expr.get("value")
    ref = expr.get("ref") or {}
    return selections.get(ref.get("selectionKey"), _MISSING)


def _compare(op: str, left: Any, right: Any) -> bool:
    if left is _MISSING or right is _MISSING:
        return False
    if op == "EQ":
        return left == right
    if op == "NEQ":
        return left != right
    numeric = (int, float)
    if not isinstance(left, numeric) or not isinstance(right, numeric):
        return False
    if isinstance(left, bool) or isinstance(right, bool):
        return False
    if op == "GT":
        return left > right
    if op == "GTE":
        return left >= right
    if op == "LT":
        return left < right
    return left <= right


def evaluate(rule: Mapping[str, Any], selections: Mapping[str, Any]) -> bool:
    """Evaluate a well-formed rule against selections keyed by selection key.

    Comparisons that read a missing selection are false.

    Raises:
        ValueError: If the rule is malformed.
    """
    problem = describe_malformed(rule)
    if problem:
        raise ValueError(problem)
    return _evaluate(rule, selections)


def _evaluate(rule: Mapping[str, Any], selections: Mapping[str, Any]) -> bool:
    op = rule["op"]
    if op == "AND":
        return all(_evaluate(arg, selections) for arg in rule["args"])
    if op == "OR":
        return any(_evaluate(arg, selections) for arg in rule["args"])
    if op == "NOT":
        return not _evaluate(rule["arg"], selections)
    if op == "EXISTS":
        value = _eval_expr(rule["value"], selections)
        return value is not _MISSING and value is not None
    if op == "IN":
        value = _eval_expr(rule["value"], selections)
        if value is _MISSING:
            return False
        options = [_eval_expr(option, selections) for option in rule["options"]]
        if isinstance(value, list):
            return any(item in options for item in value)
        return value in options
    return _compare(op, _eval_expr(rule["left"], selections), _eval_expr(rule["right"], selections))


def is_provably_unsat(rule: Any, depth: int = 0) -> bool:
    """Cheap syntactic check for rules that can never be true.

    Recognizes ``IN`` with no options, ``OR`` of unsatisfiable rules, and
    ``AND`` containing contradictory equalities or disjoint numeric bounds.
    A shared bound such as ``GT 5 AND LT 5`` is empty when either side is
    strict.
    """
    if not isinstance(rule, Mapping) or depth > MAX_RULE_DEPTH:
        return False
    op = rule.get("op")
    if op == "IN":
        return isinstance(rule.get("options"), list) and not rule["options"]
    args = rule.get("args")
    if not isinstance(args, list) or not args:
        return False
    if op == "OR":
        return all(is_provably_unsat(arg, depth + 1) for arg in args)
    if op != "AND":
        return False

    equalities: dict[str, set[str]] = {}
    # subject -> (bound, strict)
    lower: dict[str, tuple[float, bool]] = {}
    upper: dict[str, tuple[float, bool]] = {}
    for arg in args:
        if not isinstance(arg, Mapping):
            continue
        arg_op = arg.get("op")
        left, right = arg.get("left"), arg.get("right")
        if arg_op == "EQ":
            if _is_literal(right):
                subject, literal = left, right
            elif _is_literal(left):
                subject, literal = right, left
            else:
                continue
            values = equalities.setdefault(_key(subject), set())
            values.add(_key(literal.get("value")))
            if len(values) > 1:
                return True
        elif arg_op in {"GT", "GTE"} and _literal_number(right) is not None:
            subject, bound = _key(left), (_literal_number(right), arg_op == "GT")
            current = lower.get(subject)
            if current is None or bound[0] > current[0] or (bound[0] == current[0] and bound[1]):
                lower[subject] = bound
        elif arg_op in {"LT", "LTE"} and _literal_number(right) is not None:
            subject, bound = _key(left), (_literal_number(right), arg_op == "LT")
            current = upper.get(subject)
            if current is None or bound[0] < current[0] or (bound[0] == current[0] and bound[1]):
                upper[subject] = bound
        elif is_provably_unsat(arg, depth + 1):
            return True

    for subject, (low, low_strict) in lower.items():
        if subject not in upper:
            continue
        high, high_strict = upper[subject]
        if low > high or (low == high and (low_strict or high_strict)):
            return True
    return False


def _is_literal(expr: Any) -> bool:
    return isinstance(expr, Mapping) and expr.get("op") == "literal"


def _literal_number(expr: Any) -> float | None:
    if not _is_literal(expr):
        return None
    value = expr.get("value")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _key(value: Any) -> str:
    try:
        return to_canonical_json(value)
    except (TypeError, ValueError):
        return repr(value)


def selection_ref(selection_key: str) -> dict[str, Any]:
    return {"op": "ref", "ref": {"kind": "selectionRef", "selectionKey": selection_key}}


def literal(value: Any) -> dict[str, Any]:
    return {"op": "literal", "value": value}


def equals(selection_key: str, value: Any) -> dict[str, Any]:
    """Shorthand for the common ``selection == literal`` rule."""
    return {"op": "EQ", "left": selection_ref(selection_key), "right": literal(value)}
