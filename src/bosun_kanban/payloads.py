"""Normalize the several JSON shapes a "list" call can come back in.

The same ``gh project item-list`` / ``field-list`` call returns a bare
array, a wrapped array, an object map keyed by item id, or a GraphQL
connection depending on the CLI version and transport.
:func:`parse_list_payload` classifies the shape and
:func:`normalize_list_payload` turns any of them into a list of dicts.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Union

from loguru import logger

from .errors import ShapeError


class WarningThrottle(Protocol):
    def warn_throttled(self, key: str, message: str) -> bool: ...


@dataclass(frozen=True)
class ArrayPayload:
    items: list[Any]


@dataclass(frozen=True)
class WrappedPayload:
    collection: str
    items: list[Any]


@dataclass(frozen=True)
class ObjectMapPayload:
    collection: str
    items: dict[str, Any]


@dataclass(frozen=True)
class GraphQLConnection:
    collection: str
    nodes: list[Any]


RawListPayload = Union[ArrayPayload, WrappedPayload, ObjectMapPayload, GraphQLConnection]


def _connection_nodes(value: Any) -> Optional[list[Any]]:
    if not isinstance(value, dict):
        return None
    nodes = value.get("nodes")
    if isinstance(nodes, list):
        return nodes
    edges = value.get("edges")
    if isinstance(edges, list):
        return [edge.get("node") if isinstance(edge, dict) else None for edge in edges]
    return None


def _find_connection(node: Any, collection: str, depth: int = 0) -> Optional[list[Any]]:
    if depth > 6 or not isinstance(node, dict):
        return None
    nodes = _connection_nodes(node.get(collection))
    if nodes is not None:
        return nodes
    for value in node.values():
        found = _find_connection(value, collection, depth + 1)
        if found is not None:
            return found
    return None


def parse_list_payload(raw: Any, collection: str = "items") -> RawListPayload:
    """Classify *raw* into one of the known list shapes.

    Raises:
        ShapeError: if the payload matches none of them.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise ShapeError(f"{collection}: payload is not JSON ({exc})") from exc

    if isinstance(raw, list):
        return ArrayPayload(raw)

    if not isinstance(raw, dict):
        raise ShapeError(f"{collection}: expected list or object, got {type(raw).__name__}")

    if collection in raw:
        value = raw[collection]
        if isinstance(value, list):
            return WrappedPayload(collection, value)
        nodes = _connection_nodes(value)
        if nodes is not None:
            return GraphQLConnection(collection, nodes)
        if isinstance(value, dict):
            return ObjectMapPayload(collection, value)
        raise ShapeError(f"{collection}: unexpected {type(value).__name__} under '{collection}'")

    if "data" in raw:
        nodes = _find_connection(raw["data"], collection)
        if nodes is not None:
            return GraphQLConnection(collection, nodes)

    keys = ", ".join(sorted(str(k) for k in raw)[:8])
    raise ShapeError(f"{collection}: unrecognized object with keys [{keys}]")


def payload_entries(payload: RawListPayload) -> list[Any]:
    if isinstance(payload, ArrayPayload):
        return list(payload.items)
    if isinstance(payload, WrappedPayload):
        return list(payload.items)
    if isinstance(payload, ObjectMapPayload):
        return list(payload.items.values())
    if isinstance(payload, GraphQLConnection):
        return list(payload.nodes)
    raise ShapeError(f"unhandled payload type {type(payload).__name__}")


def normalize_list_payload(
    raw: Any,
    collection: str = "items",
    *,
    warn_key: Optional[str] = None,
    throttle: Optional[WarningThrottle] = None,
) -> list[dict[str, Any]]:
    """Return the records in *raw* as a list of dicts. Never raises.

    Unknown shapes produce one warning per *warn_key* per throttle window
    (every time when no throttle is given) and an empty list.
    """
    try:
        entries = payload_entries(parse_list_payload(raw, collection))
    except ShapeError as exc:
        message = f"Ignoring unexpected {collection} payload shape: {exc}"
        if throttle is not None:
            throttle.warn_throttled(warn_key or f"shape:{collection}", message)
        else:
            logger.warning(message)
        return []
    return [entry for entry in entries if isinstance(entry, dict)]
