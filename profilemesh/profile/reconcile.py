"""
Template reconciliation and deep freezing.

reconcile_table fills fields that are absent from ``data`` with deep
copies of the template's values, recursing into nested mappings. Present
fields are never overwritten, even when their type differs from the
template's. Applying it twice changes nothing the second time.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Any, Mapping


def reconcile_table(data: dict[str, Any], template: Mapping[str, Any]) -> dict[str, Any]:
    """Fill absent keys of ``data`` in place from ``template``; returns ``data``."""
    for key, default in template.items():
        if key not in data:
            data[key] = thaw(default)
        elif isinstance(data[key], dict) and isinstance(default, Mapping):
            reconcile_table(data[key], default)
    return data


def freeze(value: Any) -> Any:
    """Read-only deep copy: mappings become MappingProxyType, lists tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Mutable deep copy of a (possibly frozen) structure."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw(v) for v in value]
    return value
