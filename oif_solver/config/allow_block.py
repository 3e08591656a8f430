"""
Allow/block list loading.

File format (YAML):

    allow_list:
      - sender_address: "0xabc..."
        destination_domain: "Base"      # network name, or "*"
        recipient_address: "*"
    block_list:
      - sender_address: "0xdead..."

Omitted fields default to the ``*`` wildcard. A missing file path means
"allow everything".
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from oif_solver.types import AllowBlockListItem, AllowBlockLists

log = logging.getLogger("oifsolver")

_FIELDS = ("sender_address", "destination_domain", "recipient_address")


def _parse_items(raw: Any, section: str) -> List[AllowBlockListItem]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError(f"{section} must be a list")
    items = []
    for i, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ValueError(f"{section}[{i}] must be a mapping")
        unknown = set(entry) - set(_FIELDS)
        if unknown:
            raise ValueError(f"{section}[{i}] has unknown keys: {sorted(unknown)}")
        items.append(AllowBlockListItem(**{k: str(entry.get(k, "*")) for k in _FIELDS}))
    return items


def parse_allow_block_lists(data: Optional[Dict[str, Any]]) -> AllowBlockLists:
    data = data or {}
    return AllowBlockLists(
        allow_list=_parse_items(data.get("allow_list"), "allow_list"),
        block_list=_parse_items(data.get("block_list"), "block_list"),
    )


def load_allow_block_lists(path: Optional[str]) -> AllowBlockLists:
    if not path:
        return AllowBlockLists()
    text = Path(path).read_text(encoding="utf-8")
    lists = parse_allow_block_lists(yaml.safe_load(text))
    log.info(
        f"Loaded allow/block lists from {path}: "
        f"{len(lists.allow_list)} allow, {len(lists.block_list)} block"
    )
    return lists
