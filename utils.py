import hashlib
import json
import re
from typing import List, Dict, Any

from errors import InvalidArgument

GENESIS = "GENESIS"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

def normalize_address(address: str) -> str:
    if not isinstance(address, str) or not _ADDRESS_RE.match(address.strip()):
        raise InvalidArgument("Invalid address")
    return address.strip().lower()

def short_address(address: str) -> str:
    return address[:6] + "..." + address[-4:]

def compute_hash(prev_hash: str, payload: dict, timestamp: int) -> str:
    block = json.dumps({
        "prev_hash": prev_hash,
        "payload": payload,
        "timestamp": timestamp
    }, sort_keys=True)
    return hashlib.sha256(block.encode("utf-8")).hexdigest()

def verify_chain(events: List[Dict[str, Any]]) -> bool:
    prev = GENESIS
    for ev in events:
        expected = compute_hash(prev, ev["payload"], ev["timestamp"])
        if ev["hash"] != expected or ev["prev_hash"] != prev:
            return False
        prev = ev["hash"]
    return True

def like_pattern(q: str) -> str:
    """Substring pattern for LIKE with ``\\`` as the escape character."""
    escaped = q.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"
