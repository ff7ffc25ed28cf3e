"""Content fingerprints and deterministic ids for records without a usable source id."""

import hashlib
import json
import uuid
from typing import Any, Sequence

# Fixed namespace so the same transcript always gets the same conversation id
DEFAULT_ID_NAMESPACE = "6f1c2a8e-3b7d-4c55-9a10-2d4e8b9c7f31"

NULL_TOKEN = "__NULL__"
EMPTY_TOKEN = "__EMPTY__"

class HashUtils:
    """SHA-256 fingerprints of raw source content."""

    @staticmethod
    def sha256_hex(data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    @staticmethod
    def sha256_string(s: str) -> str:
        """Fingerprint of a decoded source (UTF-8 re-encoded)."""
        return HashUtils.sha256_hex(s.encode("utf-8"))

def _id_component(value: Any) -> Any:
    # None and "" must not collide once serialized
    if value is None:
        return NULL_TOKEN
    if value == "":
        return EMPTY_TOKEN
    return value

class IDGenerator:
    """UUIDv5 over a canonical JSON rendering of the id components."""

    def __init__(self, namespace: str | uuid.UUID = DEFAULT_ID_NAMESPACE):
        self.namespace = namespace if isinstance(namespace, uuid.UUID) else uuid.UUID(str(namespace))

    @staticmethod
    def name_for(components: Sequence[Any]) -> str:
        return json.dumps(
            [_id_component(c) for c in components],
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )

    def generate(self, components: Sequence[Any]) -> str:
        return str(uuid.uuid5(self.namespace, self.name_for(components)))
