# evaluator.py — Fixed-operator condition evaluator
import operator as _op
from typing import Optional, Sequence

from coercion import BoolValue, DurationValue, IntValue, TypedValue, parse_value
from exceptions import EvalError, UnsupportedOperatorError

EQUALITY_OPERATORS = ("==",)
ORDERING_OPERATORS = (">=", ">", "<", "<=")
BOOLEAN_OPERATORS = ("AND", "OR", "NAND", "NOR")
ATOM_OPERATORS = EQUALITY_OPERATORS + ORDERING_OPERATORS

_ORDERING = {
    ">=": _op.ge,
    ">": _op.gt,
    "<": _op.lt,
    "<=": _op.le,
}

# Only these typed values support ordering comparisons
_ORDERED_TYPES = (IntValue, DurationValue)


def evaluate(operator: str, operands: Sequence[TypedValue]) -> bool:
    """Evaluate ``operator`` over typed ``operands``.

    ``==`` is variadic and compares type and value; ordering operators take
    exactly two operands of the same int or duration type; AND/OR/NAND/NOR
    take one or more booleans.
    """
    name = (operator or "").upper()

    if name in EQUALITY_OPERATORS:
        if len(operands) < 2:
            raise EvalError(
                f"== needs at least 2 operands, got {len(operands)}",
                operator=operator,
            )
        first = operands[0]
        return all(other == first for other in operands[1:])

    if name in ORDERING_OPERATORS:
        if len(operands) != 2:
            raise EvalError(
                f"{name} requires exactly 2 operands, got {len(operands)}",
                operator=operator,
            )
        left, right = operands
        if not isinstance(left, _ORDERED_TYPES):
            raise EvalError(
                f"unsupported operand type for {name}: {type(left).__name__}, must be int or duration",
                operator=operator,
            )
        if type(left) is not type(right):
            raise EvalError(
                f"both operands of {name} must be {type(left).__name__}, got {type(right).__name__}",
                operator=operator,
            )
        return _ORDERING[name](left.value, right.value)

    if name in BOOLEAN_OPERATORS:
        if len(operands) < 1:
            raise EvalError(f"{name} requires at least 1 operand, got 0", operator=operator)
        for position, operand in enumerate(operands):
            if not isinstance(operand, BoolValue):
                raise EvalError(
                    f"all operands of {name} must be bool, got {type(operand).__name__} at position {position}",
                    operator=operator,
                )
        values = [operand.value for operand in operands]
        if name == "AND":
            return all(values)
        if name == "OR":
            return any(values)
        if name == "NAND":
            return not all(values)
        return not any(values)

    raise UnsupportedOperatorError(f"unsupported operator: {operator}", operator=operator)


def evaluate_atom(snapshot, value: str) -> bool:
    """Judge a recorded ``value`` against an atom requirement snapshot."""
    if snapshot.type != "atom":
        raise EvalError(
            f"expected atom, got {snapshot.type}",
            requirement_id=snapshot.skeleton_id,
        )
    actual = parse_value(value, snapshot.data_type)
    target = parse_value(snapshot.target_value, snapshot.data_type)
    return evaluate(snapshot.operator, [actual, target])


def evaluate_node(snapshot, value: Optional[str]) -> bool:
    """Truth of one child when recomputing its parent condition.

    A missing entry counts as false. Atoms are judged against their target;
    condition children already hold a derived "true"/"false" entry.
    """
    if value is None:
        return False
    if snapshot.type == "condition":
        return parse_value(value, "bool").value
    return evaluate_atom(snapshot, value)
