"""
Filter and aggregation evaluation over member documents.

Partitions hold semi-structured documents, so filters and pipelines are
expressed as JSON-like dictionaries and evaluated here by every backend.

Filters match against unwrapped values: ``{"gender": "Male"}`` matches both
``gender: "Male"`` and ``gender: {"value": "Male", "visible": true}``.

Supported filter operators:
    $eq $ne $gt $gte $lt $lte $in $nin $exists $regex/$options $not
    $and $or $nor, plus compiled re.Pattern values and dotted paths

Supported pipeline stages:
    $match $group $sort $skip $limit $project $count
    ($group accumulators: $sum $avg $min $max $first $last $push $addToSet)

Invariants:
    - Evaluation never mutates the input documents
    - $exists checks key presence on the raw document, not the value
    - Comparisons between incompatible types are false, never an error

How to change safely:
    - Add operators in _OPERATORS and cover them in tests/unit/test_query.py
    - Unsupported operators raise QueryError so typos fail loudly
"""

from __future__ import annotations

import copy
import re
from typing import Any, Callable, Iterable, Mapping, Sequence

from ..errors import VoterDbError
from ..normalizer import actual

_MISSING = object()


class QueryError(VoterDbError):
    """Filter or pipeline is malformed or uses an unsupported operator."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="INVALID_QUERY")


def resolve_path(doc: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path to an unwrapped value, or _MISSING.

    Every intermediate value is unwrapped as well, so ``name.english``
    resolves through a legacy-wrapped ``name`` object.
    """
    current: Any = doc
    for part in path.split("."):
        current = actual(current)
        if isinstance(current, Mapping):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return actual(current)


def _comparable(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return False
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool)
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return True
    return type(left) is type(right)


def _equals(value: Any, expected: Any) -> bool:
    if isinstance(expected, re.Pattern):
        return isinstance(value, str) and expected.search(value) is not None
    if value is _MISSING:
        return expected is None
    if isinstance(value, list) and not isinstance(expected, list):
        return any(_equals(item, expected) for item in value)
    if isinstance(value, bool) != isinstance(expected, bool):
        return False
    return value == expected


def _compare(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def check(value: Any, expected: Any) -> bool:
        if value is _MISSING or not _comparable(value, expected):
            return False
        return op(value, expected)

    return check


def _regex(value: Any, pattern: Any, options: str = "") -> bool:
    if not isinstance(value, str):
        return False
    if isinstance(pattern, re.Pattern):
        return pattern.search(value) is not None
    flags = re.IGNORECASE if "i" in options else 0
    if "m" in options:
        flags |= re.MULTILINE
    if "s" in options:
        flags |= re.DOTALL
    return re.search(pattern, value, flags) is not None


_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "$eq": _equals,
    "$ne": lambda value, expected: not _equals(value, expected),
    "$gt": _compare(lambda a, b: a > b),
    "$gte": _compare(lambda a, b: a >= b),
    "$lt": _compare(lambda a, b: a < b),
    "$lte": _compare(lambda a, b: a <= b),
    "$in": lambda value, options: any(_equals(value, option) for option in options),
    "$nin": lambda value, options: not any(_equals(value, option) for option in options),
}


def is_operator_dict(condition: Any) -> bool:
    return (
        isinstance(condition, Mapping)
        and len(condition) > 0
        and all(isinstance(key, str) and key.startswith("$") for key in condition)
    )


def _match_condition(doc: Mapping[str, Any], path: str, condition: Any) -> bool:
    value = resolve_path(doc, path)

    if not is_operator_dict(condition):
        return _equals(value, condition)

    for op, expected in condition.items():
        if op == "$exists":
            present = _path_present(doc, path)
            if present != bool(expected):
                return False
        elif op == "$regex":
            if not _regex(value, expected, condition.get("$options", "")):
                return False
        elif op == "$options":
            continue
        elif op == "$not":
            if _match_condition(doc, path, expected):
                return False
        elif op in _OPERATORS:
            if not _OPERATORS[op](value, expected):
                return False
        else:
            raise QueryError(f"Unsupported filter operator: {op}")
    return True


def _path_present(doc: Mapping[str, Any], path: str) -> bool:
    if "." not in path:
        return path in doc
    return resolve_path(doc, path) is not _MISSING


def matches(doc: Mapping[str, Any], filter_: Mapping[str, Any] | None) -> bool:
    """Check whether a document matches a filter.

    Args:
        doc: Raw member document
        filter_: Filter dictionary (None or {} matches everything)

    Returns:
        True if every clause matches

    Raises:
        QueryError: If the filter uses an unsupported operator
    """
    if not filter_:
        return True

    for key, condition in filter_.items():
        if key == "$and":
            if not all(matches(doc, sub) for sub in condition):
                return False
        elif key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
        elif key == "$nor":
            if any(matches(doc, sub) for sub in condition):
                return False
        elif key.startswith("$"):
            raise QueryError(f"Unsupported top-level filter operator: {key}")
        elif not _match_condition(doc, key, condition):
            return False
    return True


_FIELD_OPERATORS = frozenset(_OPERATORS) | {"$exists", "$regex", "$options", "$not"}


def validate_filter(filter_: Mapping[str, Any] | None) -> None:
    """Raise QueryError if a filter uses an unsupported operator anywhere.

    matches() only reports operators it reaches; backends that evaluate part
    of a filter elsewhere call this first so typos fail the same way.
    """
    for key, condition in (filter_ or {}).items():
        if key in ("$and", "$or", "$nor"):
            for sub in condition:
                validate_filter(sub)
        elif key.startswith("$"):
            raise QueryError(f"Unsupported top-level filter operator: {key}")
        elif is_operator_dict(condition):
            _validate_condition(condition)


def _validate_condition(condition: Mapping[str, Any]) -> None:
    for op, expected in condition.items():
        if op not in _FIELD_OPERATORS:
            raise QueryError(f"Unsupported filter operator: {op}")
        if op == "$not" and is_operator_dict(expected):
            _validate_condition(expected)


def _sort_key(value: Any) -> tuple:
    # Missing/None sort first, then numbers, strings, everything else
    if value is _MISSING or value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (2, value)
    if isinstance(value, str):
        return (3, value)
    return (4, str(value))


def sort_documents(
    docs: Iterable[Mapping[str, Any]],
    sort: Sequence[tuple[str, int]] | Mapping[str, int] | None,
) -> list[Mapping[str, Any]]:
    """Sort documents by one or more (path, direction) pairs.

    Direction is 1 for ascending and -1 for descending. The sort is stable.
    """
    result = list(docs)
    if not sort:
        return result
    pairs = list(sort.items()) if isinstance(sort, Mapping) else list(sort)
    for path, direction in reversed(pairs):
        result.sort(
            key=lambda d, p=path: _sort_key(resolve_path(d, p)),
            reverse=direction < 0,
        )
    return result


def project(doc: Mapping[str, Any], projection: Mapping[str, Any] | None) -> dict[str, Any]:
    """Apply an inclusion or exclusion projection to a document.

    ``_id`` is included unless explicitly excluded.
    """
    if not projection:
        return dict(doc)

    flags = {key: value for key, value in projection.items() if key != "_id"}
    include = any(bool(value) for value in flags.values())
    if include:
        result = {key: doc[key] for key in flags if key in doc}
        if projection.get("_id", 1) and "_id" in doc:
            result["_id"] = doc["_id"]
        return result

    result = {key: value for key, value in doc.items() if key not in flags}
    if not projection.get("_id", 1):
        result.pop("_id", None)
    return result


# =============================================================================
# Aggregation pipeline
# =============================================================================


def _evaluate(doc: Mapping[str, Any], expression: Any) -> Any:
    if isinstance(expression, str) and expression.startswith("$"):
        value = resolve_path(doc, expression[1:])
        return None if value is _MISSING else value
    if isinstance(expression, Mapping):
        return {key: _evaluate(doc, sub) for key, sub in expression.items()}
    return expression


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return tuple(sorted((key, _freeze(sub)) for key, sub in value.items()))
    if isinstance(value, list):
        return tuple(_freeze(item) for item in value)
    return value


def _accumulate(op: str, values: list[Any]) -> Any:
    if op == "$sum":
        return sum(v for v in values if isinstance(v, (int, float)) and not isinstance(v, bool))
    if op == "$avg":
        numbers = [v for v in values if isinstance(v, (int, float)) and not isinstance(v, bool)]
        return sum(numbers) / len(numbers) if numbers else None
    if op == "$min":
        present = [v for v in values if v is not None]
        return min(present, key=_sort_key) if present else None
    if op == "$max":
        present = [v for v in values if v is not None]
        return max(present, key=_sort_key) if present else None
    if op == "$first":
        return values[0] if values else None
    if op == "$last":
        return values[-1] if values else None
    if op == "$push":
        return list(values)
    if op == "$addToSet":
        seen: dict[Any, Any] = {}
        for value in values:
            seen.setdefault(_freeze(value), value)
        return list(seen.values())
    raise QueryError(f"Unsupported accumulator: {op}")


def _group(docs: list[Mapping[str, Any]], spec: Mapping[str, Any]) -> list[dict[str, Any]]:
    if "_id" not in spec:
        raise QueryError("$group requires an _id expression")

    groups: dict[Any, tuple[Any, list[Mapping[str, Any]]]] = {}
    for doc in docs:
        group_id = _evaluate(doc, spec["_id"])
        key = _freeze(group_id)
        if key not in groups:
            groups[key] = (group_id, [])
        groups[key][1].append(doc)

    results = []
    for group_id, members in groups.values():
        row: dict[str, Any] = {"_id": group_id}
        for name, accumulator in spec.items():
            if name == "_id":
                continue
            if not isinstance(accumulator, Mapping) or len(accumulator) != 1:
                raise QueryError(f"Invalid accumulator for '{name}'")
            op, expression = next(iter(accumulator.items()))
            row[name] = _accumulate(op, [_evaluate(doc, expression) for doc in members])
        results.append(row)
    return results


def run_pipeline(
    docs: Iterable[Mapping[str, Any]],
    pipeline: Sequence[Mapping[str, Any]],
) -> list[dict[str, Any]]:
    """Run an aggregation pipeline over documents.

    Args:
        docs: Raw member documents of one partition
        pipeline: Ordered list of single-key stage dictionaries

    Returns:
        Resulting rows

    Raises:
        QueryError: If a stage is malformed or unsupported

    Example:
        >>> run_pipeline(docs, [
        ...     {"$group": {"_id": "$booth_id", "voterCount": {"$sum": 1}}},
        ...     {"$sort": {"_id": 1}},
        ... ])
    """
    current: list[Mapping[str, Any]] = list(docs)

    for stage in pipeline:
        if not isinstance(stage, Mapping) or len(stage) != 1:
            raise QueryError(f"Pipeline stage must have exactly one operator: {stage!r}")
        op, spec = next(iter(stage.items()))

        if op == "$match":
            current = [doc for doc in current if matches(doc, spec)]
        elif op == "$group":
            current = _group(current, spec)
        elif op == "$sort":
            current = sort_documents(current, spec)
        elif op == "$skip":
            current = current[int(spec):]
        elif op == "$limit":
            current = current[: int(spec)]
        elif op == "$project":
            current = [project(doc, spec) for doc in current]
        elif op == "$count":
            current = [{spec: len(current)}]
        else:
            raise QueryError(f"Unsupported pipeline stage: {op}")

    return [copy.deepcopy(dict(doc)) for doc in current]
