"""
In-process evaluation of the document query language.

Filters, update operators and aggregation pipelines use the MongoDB
vocabulary. Only the operators the engine needs are implemented; anything
else raises ValueError so a typo never silently matches everything.

Array fields follow Mongo membership semantics: {"task_ids": x} matches when
x is one of the elements.
"""
from __future__ import annotations

import copy
from numbers import Number
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

_MISSING = object()

Document = Dict[str, Any]


# ---- paths ----

def get_path(doc: Any, path: str) -> Any:
    cur = doc
    for part in path.split("."):
        if isinstance(cur, dict) and part in cur:
            cur = cur[part]
        else:
            return _MISSING
    return cur


def _set_path(doc: Document, path: str, value: Any) -> None:
    parts = path.split(".")
    cur = doc
    for part in parts[:-1]:
        nxt = cur.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            cur[part] = nxt
        cur = nxt
    cur[parts[-1]] = value


def _unset_path(doc: Document, path: str) -> None:
    parts = path.split(".")
    cur = doc
    for part in parts[:-1]:
        cur = cur.get(part)
        if not isinstance(cur, dict):
            return
    cur.pop(parts[-1], None)


def _is_number(value: Any) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


def _is_operator_dict(value: Any) -> bool:
    return isinstance(value, dict) and bool(value) and all(str(k).startswith("$") for k in value)


# ---- filters ----

def _equals(value: Any, target: Any) -> bool:
    if value is _MISSING:
        return target is None
    if isinstance(value, list) and not isinstance(target, list):
        return target in value
    return value == target


def _compare(op: str, value: Any, target: Any) -> bool:
    if value is _MISSING or value is None or target is None:
        return False
    try:
        if op == "$gt":
            return value > target
        if op == "$gte":
            return value >= target
        if op == "$lt":
            return value < target
        if op == "$lte":
            return value <= target
    except TypeError:
        return False
    raise ValueError(f"Unsupported comparison operator: {op}")


def _match_condition(value: Any, cond: Any) -> bool:
    if not _is_operator_dict(cond):
        return _equals(value, cond)
    for op, target in cond.items():
        if op == "$eq":
            ok = _equals(value, target)
        elif op == "$ne":
            ok = not _equals(value, target)
        elif op in ("$gt", "$gte", "$lt", "$lte"):
            if isinstance(value, list):
                ok = any(_compare(op, v, target) for v in value)
            else:
                ok = _compare(op, value, target)
        elif op == "$in":
            ok = any(_equals(value, t) for t in target)
        elif op == "$nin":
            ok = not any(_equals(value, t) for t in target)
        elif op == "$exists":
            ok = (value is not _MISSING) == bool(target)
        else:
            raise ValueError(f"Unsupported filter operator: {op}")
        if not ok:
            return False
    return True


def matches(doc: Document, filter: Optional[Dict[str, Any]]) -> bool:
    for key, cond in (filter or {}).items():
        if key == "$or":
            if not any(matches(doc, f) for f in cond):
                return False
        elif key.startswith("$"):
            raise ValueError(f"Unsupported top-level operator: {key}")
        elif not _match_condition(get_path(doc, key), cond):
            return False
    return True


def equality_value(filter: Optional[Dict[str, Any]], field: str) -> Any:
    """Plain equality value of field in filter, or None when the filter does not pin it."""
    if not filter or field not in filter:
        return None
    cond = filter[field]
    if _is_operator_dict(cond):
        return cond.get("$eq")
    return cond


# ---- sorting ----

def _sort_key(value: Any) -> Tuple[int, Any]:
    # null/missing sorts lowest, like Mongo
    if value is _MISSING or value is None:
        return (0, 0)
    return (1, value)


def sort_documents(docs: Iterable[Document], sort: Sequence[Tuple[str, int]]) -> List[Document]:
    result = list(docs)
    for field, direction in reversed(list(sort)):
        result.sort(key=lambda d: _sort_key(get_path(d, field)), reverse=direction < 0)
    return result


# ---- updates ----

def seed_from_filter(filter: Dict[str, Any]) -> Document:
    """Document an upsert starts from: the filter's equality fields."""
    doc: Document = {}
    for key, cond in filter.items():
        if key.startswith("$"):
            continue
        if _is_operator_dict(cond):
            if "$eq" in cond:
                _set_path(doc, key, copy.deepcopy(cond["$eq"]))
            continue
        _set_path(doc, key, copy.deepcopy(cond))
    return doc


def apply_update(doc: Document, update: Dict[str, Any], inserting: bool = False) -> Document:
    if not _is_operator_dict(update):
        raise ValueError("Update must consist of $-operators")
    result = copy.deepcopy(doc)
    for op, fields in update.items():
        if op == "$set":
            for path, value in fields.items():
                _set_path(result, path, copy.deepcopy(value))
        elif op == "$setOnInsert":
            if inserting:
                for path, value in fields.items():
                    _set_path(result, path, copy.deepcopy(value))
        elif op == "$unset":
            for path in fields:
                _unset_path(result, path)
        elif op == "$inc":
            for path, amount in fields.items():
                current = get_path(result, path)
                if current is _MISSING or current is None:
                    current = 0
                if not _is_number(current) or not _is_number(amount):
                    raise ValueError(f"$inc on non-numeric field: {path}")
                _set_path(result, path, current + amount)
        elif op == "$push":
            for path, value in fields.items():
                current = get_path(result, path)
                if current is _MISSING or current is None:
                    current = []
                if not isinstance(current, list):
                    raise ValueError(f"$push on non-array field: {path}")
                _set_path(result, path, current + [value])
        elif op == "$pull":
            for path, cond in fields.items():
                current = get_path(result, path)
                if not isinstance(current, list):
                    continue
                _set_path(result, path, [v for v in current if not _match_condition(v, cond)])
        else:
            raise ValueError(f"Unsupported update operator: {op}")
    return result


# ---- aggregation ----

def _binary(args: Any, doc: Document) -> Tuple[Any, Any]:
    if not isinstance(args, list) or len(args) != 2:
        raise ValueError("Expression expects exactly two arguments")
    return evaluate(args[0], doc), evaluate(args[1], doc)


def _evaluate_operator(op: str, args: Any, doc: Document) -> Any:
    if op == "$cond":
        if isinstance(args, dict):
            test, then, otherwise = args["if"], args["then"], args["else"]
        else:
            test, then, otherwise = args
        return evaluate(then, doc) if evaluate(test, doc) else evaluate(otherwise, doc)
    if op == "$eq":
        a, b = _binary(args, doc)
        return a == b
    if op == "$ne":
        a, b = _binary(args, doc)
        return a != b
    if op in ("$gt", "$gte", "$lt", "$lte"):
        a, b = _binary(args, doc)
        return _compare(op, a, b)
    if op == "$divide":
        a, b = _binary(args, doc)
        if a is None or not b:
            return 0
        return a / b
    if op == "$ifNull":
        for a in args:
            v = evaluate(a, doc)
            if v is not None:
                return v
        return None
    raise ValueError(f"Unsupported expression operator: {op}")


def evaluate(expr: Any, doc: Document) -> Any:
    if isinstance(expr, str) and expr.startswith("$"):
        value = get_path(doc, expr[1:])
        return None if value is _MISSING else value
    if isinstance(expr, dict):
        if len(expr) == 1:
            op, args = next(iter(expr.items()))
            if op.startswith("$"):
                return _evaluate_operator(op, args, doc)
        return {k: evaluate(v, doc) for k, v in expr.items()}
    if isinstance(expr, list):
        return [evaluate(e, doc) for e in expr]
    return expr


def _freeze(value: Any) -> Any:
    if isinstance(value, dict):
        return tuple(sorted((k, _freeze(v)) for k, v in value.items()))
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def _accumulate(op: str, values: List[Any]) -> Any:
    if op == "$sum":
        return sum(v for v in values if _is_number(v))
    if op == "$avg":
        numbers = [v for v in values if _is_number(v)]
        return sum(numbers) / len(numbers) if numbers else None
    raise ValueError(f"Unsupported accumulator: {op}")


def _group(docs: List[Document], fields: Dict[str, Any]) -> List[Document]:
    id_expr = fields.get("_id")
    groups: Dict[Any, Tuple[Any, List[Document]]] = {}
    for d in docs:
        id_value = evaluate(id_expr, d) if id_expr is not None else None
        key = _freeze(id_value)
        if key not in groups:
            groups[key] = (id_value, [])
        groups[key][1].append(d)

    rows: List[Document] = []
    for id_value, members in groups.values():
        row: Document = {"_id": id_value}
        for field, acc in fields.items():
            if field == "_id":
                continue
            op, arg = next(iter(acc.items()))
            row[field] = _accumulate(op, [evaluate(arg, m) for m in members])
        rows.append(row)
    return rows


def _is_flag(value: Any) -> bool:
    return isinstance(value, (bool, int))


def _project(doc: Document, fields: Dict[str, Any]) -> Document:
    excluded = {k for k, v in fields.items() if _is_flag(v) and not v}
    if all(k in excluded for k in fields):
        return {k: v for k, v in doc.items() if k not in excluded}

    out: Document = {}
    if "_id" not in excluded and "_id" in doc:
        out["_id"] = doc["_id"]
    for key, value in fields.items():
        if key in excluded:
            continue
        if _is_flag(value):
            current = get_path(doc, key)
            if current is not _MISSING:
                _set_path(out, key, current)
        else:
            _set_path(out, key, evaluate(value, doc))
    return out


def run_pipeline(docs: Iterable[Document], pipeline: Sequence[Dict[str, Any]]) -> List[Document]:
    result = list(docs)
    for stage in pipeline:
        if len(stage) != 1:
            raise ValueError("Each pipeline stage must have exactly one operator")
        name, arg = next(iter(stage.items()))
        if name == "$match":
            result = [d for d in result if matches(d, arg)]
        elif name == "$group":
            result = _group(result, arg)
        elif name == "$sort":
            result = sort_documents(result, list(arg.items()))
        elif name == "$project":
            result = [_project(d, arg) for d in result]
        else:
            raise ValueError(f"Unsupported pipeline stage: {name}")
    return result
