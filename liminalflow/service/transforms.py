from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any, Callable, Dict, List

from liminalflow.service.errors import TransformError, UnsupportedTransformError
from liminalflow.service.resolver import resolve_template, stringify
from liminalflow.service.sandbox import evaluate_condition
from liminalflow.service.variables import lookup

TransformFn = Callable[[Any, Mapping[str, Any], Mapping[str, Any]], Any]

_MISSING = object()
MAX_REGEX_INPUT = 100_000


def _as_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError as exc:
            raise TransformError(f"input is not valid JSON: {exc.msg}") from exc
    return value


def _as_list(value: Any, operation: str) -> List[Any]:
    value = _as_json(value) if isinstance(value, str) else value
    if not isinstance(value, (list, tuple)):
        raise TransformError(f"{operation} expects a list input")
    return list(value)


def _json_extract(value: Any, args: Mapping[str, Any], scope: Mapping[str, Any]) -> Any:
    path = args.get("path")
    if not isinstance(path, str) or not path:
        raise TransformError("json_extract requires a 'path' argument")
    document = _as_json(value)
    if not isinstance(document, (Mapping, list)):
        raise TransformError("json_extract expects an object or array")
    result = lookup({"$": document}, f"$.{path.lstrip('$.')}", _MISSING)
    if result is _MISSING:
        if "default" in args:
            return args["default"]
        raise TransformError(f"path {path} not found")
    return result


def _json_parse(value: Any, args: Mapping[str, Any], scope: Mapping[str, Any]) -> Any:
    return _as_json(value)


def _json_stringify(value: Any, args: Mapping[str, Any], scope: Mapping[str, Any]) -> str:
    return json.dumps(value, sort_keys=True, ensure_ascii=False, default=str)


def _format(value: Any, args: Mapping[str, Any], scope: Mapping[str, Any]) -> str:
    template = args.get("template")
    if not isinstance(template, str):
        raise TransformError("format requires a 'template' argument")
    names = dict(scope)
    names["value"] = value
    return resolve_template(template, names, strict=bool(args.get("strict", False))).text


def _list_map(value: Any, args: Mapping[str, Any], scope: Mapping[str, Any]) -> List[Any]:
    items = _as_list(value, "list_map")
    field = args.get("field")
    template = args.get("template")
    if field is None and template is None:
        raise TransformError("list_map requires a 'field' or 'template' argument")
    mapped: List[Any] = []
    for index, item in enumerate(items):
        if field is not None:
            mapped.append(
                lookup({"item": item}, f"item.{field}", args.get("default"))
            )
        else:
            names = dict(scope)
            names.update({"item": item, "index": index})
            mapped.append(resolve_template(str(template), names).text)
    return mapped


def _list_filter(value: Any, args: Mapping[str, Any], scope: Mapping[str, Any]) -> List[Any]:
    items = _as_list(value, "list_filter")
    condition = args.get("condition")
    if condition is None:
        raise TransformError("list_filter requires a 'condition' argument")
    kept: List[Any] = []
    for index, item in enumerate(items):
        names = dict(scope)
        names.update({"item": item, "index": index})
        if evaluate_condition(condition, names):
            kept.append(item)
    return kept


def _regex_extract(value: Any, args: Mapping[str, Any], scope: Mapping[str, Any]) -> Any:
    pattern = args.get("pattern")
    if not isinstance(pattern, str):
        raise TransformError("regex_extract requires a 'pattern' argument")
    text = stringify(value)[:MAX_REGEX_INPUT]
    try:
        compiled = re.compile(pattern)
    except re.error as exc:
        raise TransformError(f"invalid pattern: {exc}") from exc
    group = args.get("group", 0)
    try:
        if args.get("all"):
            return [m.group(group) for m in compiled.finditer(text)]
        match = compiled.search(text)
        if match is None:
            return args.get("default")
        return match.group(group)
    except (IndexError, TypeError, re.error) as exc:
        raise TransformError(f"invalid group: {exc}") from exc


def _split(value: Any, args: Mapping[str, Any], scope: Mapping[str, Any]) -> List[str]:
    separator = args.get("separator")
    parts = stringify(value).split(separator) if separator else stringify(value).split()
    if args.get("trim", True):
        parts = [part.strip() for part in parts]
    return [part for part in parts if part or not args.get("drop_empty", True)]


def _join(value: Any, args: Mapping[str, Any], scope: Mapping[str, Any]) -> str:
    items = _as_list(value, "join")
    return str(args.get("separator", ", ")).join(stringify(item) for item in items)


def _replace(value: Any, args: Mapping[str, Any], scope: Mapping[str, Any]) -> str:
    if "old" not in args:
        raise TransformError("replace requires an 'old' argument")
    return stringify(value).replace(str(args["old"]), str(args.get("new", "")))


def _to_number(value: Any, args: Mapping[str, Any], scope: Mapping[str, Any]) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    text = stringify(value).strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError as exc:
        if "default" in args:
            return args["default"]
        raise TransformError(f"cannot convert {text[:50]!r} to a number") from exc


def _length(value: Any, args: Mapping[str, Any], scope: Mapping[str, Any]) -> int:
    if value is None:
        return 0
    if isinstance(value, (str, list, tuple, Mapping)):
        return len(value)
    return len(stringify(value))


TRANSFORMS: Dict[str, TransformFn] = {
    "json_extract": _json_extract,
    "json_parse": _json_parse,
    "json_stringify": _json_stringify,
    "format": _format,
    "string_format": _format,
    "list_map": _list_map,
    "list_filter": _list_filter,
    "regex_extract": _regex_extract,
    "split": _split,
    "join": _join,
    "replace": _replace,
    "uppercase": lambda value, args, scope: stringify(value).upper(),
    "lowercase": lambda value, args, scope: stringify(value).lower(),
    "trim": lambda value, args, scope: stringify(value).strip(),
    "to_number": _to_number,
    "length": _length,
}


def is_supported(operation: str) -> bool:
    return operation in TRANSFORMS


def apply_transform(
    operation: str,
    value: Any,
    args: Mapping[str, Any] | None = None,
    scope: Mapping[str, Any] | None = None,
) -> Any:
    """Run the named built-in transform on ``value``."""
    fn = TRANSFORMS.get(operation)
    if fn is None:
        raise UnsupportedTransformError(
            f"unsupported transform {operation}", detail={"operation": operation}
        )
    return fn(value, args or {}, scope or {})
