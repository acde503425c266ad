# matrix.py
from __future__ import annotations

import itertools
from typing import List

from .errors import InvalidMatrix
from .model import AxisAssignment, EMPTY_ASSIGNMENT, InstanceKey, JobTemplate


def validate_matrix(template: JobTemplate) -> None:
    matrix = template.matrix
    if matrix is None:
        return
    if not matrix:
        raise InvalidMatrix(template.id, "matrix declares no axes")
    for axis, values in matrix.items():
        if isinstance(values, (str, bytes)) or not hasattr(values, "__iter__"):
            raise InvalidMatrix(template.id, f"axis '{axis}' must be a list of values", axis=axis)
        values = list(values)
        if not values:
            raise InvalidMatrix(template.id, f"axis '{axis}' declares zero values", axis=axis)
        for value in values:
            try:
                hash(value)
            except TypeError:
                raise InvalidMatrix(
                    template.id, f"axis '{axis}' value {value!r} is not hashable", axis=axis
                ) from None
        if len(set(map(repr, values))) != len(values):
            raise InvalidMatrix(template.id, f"axis '{axis}' repeats a value", axis=axis)


def expand(template: JobTemplate) -> List[AxisAssignment]:
    """
    Cross product of the template's axes.

    Axis order and value order follow declaration order, so the result is
    deterministic. No matrix -> exactly one empty assignment.
    """
    validate_matrix(template)
    if template.matrix is None:
        return [EMPTY_ASSIGNMENT]

    axes = list(template.matrix.keys())
    value_lists = [list(template.matrix[a]) for a in axes]
    return [AxisAssignment(zip(axes, combo)) for combo in itertools.product(*value_lists)]


def expand_keys(template: JobTemplate) -> List[InstanceKey]:
    return [InstanceKey(template.id, a) for a in expand(template)]
