"""
Field/Hash Adapter
==================
Canonical conversions between int, decimal-string and hex representations of
BN254 scalar field elements, plus the hashing capability consumed by the
commitment engine.
"""

import hashlib
import logging
from abc import ABC, abstractmethod
from typing import Any, List, Sequence

from .errors import FieldError
from .types import FIELD_MODULUS, FieldLike

logger = logging.getLogger(__name__)

# ============================================================================
# FIELD CONVERSIONS
# ============================================================================


def to_field(value: Any) -> int:
    """Convert int / decimal string / 0x-hex string to a field element"""
    if value is None or isinstance(value, bool):
        raise FieldError(f"Cannot convert {value!r} to a field element")

    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        text = value.strip()
        if text == "" or text.lower() == "0x":
            raise FieldError(f"Empty field element: {value!r}")
        try:
            if text[:2].lower() == "0x":
                result = int(text[2:], 16)
            else:
                if not text.isdigit():
                    raise ValueError(text)
                result = int(text, 10)
        except ValueError:
            raise FieldError(f"Malformed field element: {value!r}") from None
    else:
        raise FieldError(f"Cannot convert {type(value).__name__} to a field element")

    if result < 0 or result >= FIELD_MODULUS:
        raise FieldError(f"Value outside field bounds: {value!r}")
    return result


def field_to_decimal_string(value: FieldLike) -> str:
    """Decimal string form expected by the prover (never hex)"""
    return str(to_field(value))


def field_to_hex(value: FieldLike) -> str:
    """0x-prefixed 32-byte lowercase hex word"""
    return "0x" + format(to_field(value), "064x")


def field_to_bytes(value: FieldLike) -> bytes:
    return to_field(value).to_bytes(32, "big")


def bytes_to_hex(data: bytes) -> str:
    """Proof bytes -> 0x-prefixed lowercase hex"""
    return "0x" + bytes(data).hex()


def hex_to_bytes(text: str) -> bytes:
    clean = text[2:] if text[:2].lower() == "0x" else text
    try:
        return bytes.fromhex(clean)
    except ValueError:
        raise FieldError(f"Malformed hex string of length {len(text)}") from None


# ============================================================================
# HASHING CAPABILITY
# ============================================================================


class FieldHasher(ABC):
    """Unkeyed, order-sensitive hash of field elements to one field element"""

    @abstractmethod
    def hash(self, inputs: Sequence[FieldLike]) -> int:
        raise NotImplementedError

    def hash_many(self, batch: Sequence[Sequence[FieldLike]]) -> List[int]:
        return [self.hash(inputs) for inputs in batch]

    def __call__(self, inputs: Sequence[FieldLike]) -> int:
        return self.hash(inputs)


class Sha256FieldHasher(FieldHasher):
    """Reference hasher: SHA-256 over 32-byte big-endian words, reduced mod p.

    Deterministic and dependency free, for tests and offline tooling only.
    Commitments built with it are NOT accepted by the Pedersen-based
    circuits; sessions use LibraryFieldHasher.
    """

    def __init__(self, tag: bytes = b"teen-patti-zk"):
        self.tag = tag

    def hash(self, inputs: Sequence[FieldLike]) -> int:
        digest = hashlib.sha256(self.tag)
        digest.update(len(inputs).to_bytes(4, "big"))
        for value in inputs:
            digest.update(field_to_bytes(value))
        return int.from_bytes(digest.digest(), "big") % FIELD_MODULUS


class LibraryFieldHasher(FieldHasher):
    """Pedersen hash through the shared cryptographic library handle"""

    def __init__(self, library):
        self.library = library

    def hash(self, inputs: Sequence[FieldLike]) -> int:
        return self.hash_many([inputs])[0]

    def hash_many(self, batch: Sequence[Sequence[FieldLike]]) -> List[int]:
        elements: List[List[int]] = [[to_field(v) for v in inputs] for inputs in batch]
        if not elements:
            return []
        return [to_field(h) for h in self.library.pedersen_hash_many(elements)]
