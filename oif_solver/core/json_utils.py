"""
JSON helpers backed by orjson.

orjson refuses integers wider than 64 bits; token amounts routinely are,
so on that error the payload is re-encoded with such ints as strings.

Usage:
    from oif_solver.core.json_utils import dumps, loads

    log.info(dumps({"event": "fill", "order_id": "0x.."}))
"""

from __future__ import annotations

from typing import Any

import orjson

_INT64_MIN = -(2**63)
_UINT64_MAX = 2**64 - 1


def _default(obj: Any) -> Any:
    # bytes32 values and addresses render as 0x-hex in logs and state files
    if isinstance(obj, (bytes, bytearray)):
        return "0x" + bytes(obj).hex()
    raise TypeError(f"Type is not JSON serializable: {type(obj).__name__}")


def _stringify_big_ints(obj: Any) -> Any:
    if isinstance(obj, bool):
        return obj
    if isinstance(obj, int):
        return str(obj) if obj < _INT64_MIN or obj > _UINT64_MAX else obj
    if isinstance(obj, dict):
        return {k: _stringify_big_ints(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_stringify_big_ints(v) for v in obj]
    return obj


def dumps_bytes(obj: Any, option: int = 0) -> bytes:
    try:
        return orjson.dumps(obj, default=_default, option=option)
    except orjson.JSONEncodeError:
        return orjson.dumps(_stringify_big_ints(obj), default=_default, option=option)


def dumps(obj: Any) -> str:
    return dumps_bytes(obj).decode("utf-8")


def dumps_pretty(obj: Any) -> bytes:
    return dumps_bytes(obj, option=orjson.OPT_INDENT_2)


def loads(s: str | bytes) -> Any:
    return orjson.loads(s)
