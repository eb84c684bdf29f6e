# evledger/core/hashing.py
import hashlib

from evledger.core.canon import canonical_json
from evledger.core.types import LedgerState


def vehicle_key(vin: str) -> str:
    """Opaque vehicle key: hex(sha256) of the upper-cased, trimmed VIN."""
    normalized = vin.strip().upper()
    if not normalized:
        raise ValueError("VIN must not be empty")
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def state_digest(state: LedgerState) -> str:
    """hex(sha256) over the canonical JSON snapshot of the whole state."""
    return hashlib.sha256(canonical_json(state.snapshot())).hexdigest()
