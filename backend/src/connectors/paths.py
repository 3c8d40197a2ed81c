"""Dotted field-path access over nested dict records.

A key that exists verbatim (e.g. "a.b" stored flat) wins over the nested
interpretation, so flat records written by older declarations keep working.
"""

from typing import Any, MutableMapping

_MISSING = object()


def _split(path: str) -> list[str]:
    return path.split(".")


def get_path(record: Any, path: str, default: Any = None) -> Any:
    if not isinstance(record, dict):
        return default
    if path in record:
        return record[path]

    current = record
    for part in _split(path):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def has_path(record: Any, path: str) -> bool:
    return get_path(record, path, _MISSING) is not _MISSING


def set_path(record: MutableMapping[str, Any], path: str, value: Any) -> None:
    if path in record or "." not in path:
        record[path] = value
        return

    parts = _split(path)
    current = record
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    current[parts[-1]] = value


def delete_path(record: MutableMapping[str, Any], path: str) -> None:
    if path in record:
        del record[path]
        return

    parts = _split(path)
    current = record
    for part in parts[:-1]:
        current = current.get(part)
        if not isinstance(current, dict):
            return
    current.pop(parts[-1], None)
