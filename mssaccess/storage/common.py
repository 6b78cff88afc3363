"""Storage utilities shared between the memory and postgres implementations.

Keeping these here guarantees both backends normalise emails, trim password
history and decode JSON columns identically.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from ipaddress import ip_address, ip_network
from typing import Any, Dict, Iterable, List, Optional


def normalize_email(email: str) -> str:
    """Lower-case and strip an e-mail address for uniqueness checks."""
    return (email or "").strip().lower()


def push_password_history(
    history: Optional[List[str]], new_hash: str, size: int
) -> List[str]:
    """Prepend ``new_hash`` and trim the ring to ``size`` entries, oldest evicted.

    Args:
        history: Existing hashes, newest first
        new_hash: Hash of the password just set
        size: Reuse window; ``0`` keeps no history

    Returns:
        New history list, newest first
    """
    if size <= 0:
        return []
    updated = [new_hash] + [h for h in (history or []) if h != new_hash]
    return updated[:size]


def parse_json_field(raw: Any, default: Any = None) -> Any:
    """Parse a JSON column that may arrive as text, dict or list."""
    if raw is None:
        return default
    if isinstance(raw, (dict, list)):
        return raw
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return default
    return default


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_datetime(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return ensure_utc(raw)
    return ensure_utc(datetime.fromisoformat(str(raw)))


def ip_matches(raw_ip: Optional[str], networks: Iterable[str]) -> bool:
    """Return True when ``raw_ip`` falls inside any of ``networks``.

    Entries may be single addresses or CIDR ranges. Unparseable entries never match.
    """
    if not raw_ip:
        return False
    try:
        addr = ip_address(raw_ip.strip())
    except ValueError:
        return False
    for entry in networks:
        try:
            if addr in ip_network(str(entry).strip(), strict=False):
                return True
        except ValueError:
            continue
    return False


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Extract a value from a dict row or attribute-style object."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def histogram(values: Iterable[Any], limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Count occurrences and return ``[{"value", "count"}]`` sorted by count desc, value asc."""
    counts: Dict[Any, int] = {}
    for value in values:
        counts[value] = counts.get(value, 0) + 1
    ordered = sorted(counts.items(), key=lambda kv: (-kv[1], str(kv[0])))
    if limit is not None:
        ordered = ordered[:limit]
    return [{"value": value, "count": count} for value, count in ordered]
