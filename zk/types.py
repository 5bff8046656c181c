"""
ZK Types & Constants for Teen Patti
===================================
Game constants, domain separation tags, circuit artifacts and the records
exchanged between the commitment engine, the proof service and the
verification layers.

Circuits:
  shuffle - proves deck permutation (0 public inputs)
  deal    - proves cards dealt from committed deck (2 public inputs)
  show    - reveals hand with ranking proof (11 public inputs)
"""

import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

# ============================================================================
# GAME CONSTANTS
# ============================================================================

# BN254 scalar field prime
FIELD_MODULUS = 21888242871839275222246405745257275088548364400416034343698204186575808495617

DECK_SIZE = 52
MERKLE_DEPTH = 6
MERKLE_CAPACITY = 1 << MERKLE_DEPTH  # 64 leaves
HAND_SIZE = 3
MAX_PLAYERS = 6

# Domain separation tags (match circuits/lib/src/constants.nr)
DOMAIN_CARD_UID = 1
DOMAIN_CARD_COMMITMENT = 2
DOMAIN_MOVE = 3

MIN_RANK = 2
MAX_RANK = 14
NUM_SUITS = 4

SHUFFLE_PUBLIC_INPUTS = 0
DEAL_PUBLIC_INPUTS = 2
SHOW_PUBLIC_INPUTS = 11

FieldLike = Union[int, str]


class Suit(IntEnum):
    HEARTS = 0
    DIAMONDS = 1
    CLUBS = 2
    SPADES = 3


class Rank(IntEnum):
    TWO = 2
    THREE = 3
    FOUR = 4
    FIVE = 5
    SIX = 6
    SEVEN = 7
    EIGHT = 8
    NINE = 9
    TEN = 10
    JACK = 11
    QUEEN = 12
    KING = 13
    ACE = 14


class HandRank(IntEnum):
    """Hand rankings (match circuits/lib/src/types.nr)"""
    HIGH_CARD = 1
    PAIR = 2
    COLOR = 3          # flush
    SEQUENCE = 4       # run / straight
    PURE_SEQUENCE = 5  # straight flush
    TRAIL = 6          # three of a kind


class CircuitName(str, Enum):
    SHUFFLE = "shuffle"
    DEAL = "deal"
    SHOW = "show"


class CircuitType(IntEnum):
    """CircuitType enum of the game contract"""
    Shuffle = 0
    Deal = 1
    Show = 2


class ProofStatus(Enum):
    """Proof lifecycle states"""
    IDLE = "idle"
    GENERATING = "generating"
    GENERATED = "generated"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    FAILED = "failed"


# ============================================================================
# CARDS AND COMMITMENTS
# ============================================================================


@dataclass(frozen=True)
class Card:
    rank: int
    suit: int

    @property
    def index(self) -> int:
        """Canonical deck index"""
        return (self.rank - MIN_RANK) * NUM_SUITS + self.suit


@dataclass
class MerkleProof:
    """Sibling path from a leaf to the root"""
    path: List[int]
    indices: List[int]  # 1 = current node is the right child

    def to_witness(self) -> Dict[str, List[str]]:
        return {
            "path": [str(p) for p in self.path],
            "indices": [str(i) for i in self.indices],
        }


@dataclass
class MerkleTree:
    root: int
    layers: List[List[int]]

    @property
    def leaves(self) -> List[int]:
        return self.layers[0]


@dataclass
class DeckCommitment:
    commitments: List[int]
    root: int
    layers: List[List[int]]


@dataclass
class DeckState:
    """Everything the shuffler holds about one committed deck instance"""
    canonical_uids: List[int]
    shuffled_uids: List[int]
    nonces: List[int] = field(repr=False)
    commitments: List[int]
    merkle_root: int
    merkle_layers: List[List[int]] = field(repr=False)


# ============================================================================
# CIRCUITS AND PROOFS
# ============================================================================


@dataclass(frozen=True)
class CircuitArtifact:
    """Locations of one compiled circuit"""
    name: str
    circuit_path: str
    vk_path: Optional[str] = None
    program_dir: Optional[Path] = None


def default_artifacts(circuits_dir: Union[str, Path] = "circuits") -> Dict[str, CircuitArtifact]:
    """Artifact table for the three Teen Patti circuits"""
    base = str(circuits_dir).rstrip("/")
    return {
        name.value: CircuitArtifact(
            name=name.value,
            circuit_path=f"{base}/{name.value}_circuit.json",
            vk_path=f"{base}/{name.value}_vk",
            program_dir=Path(base) / name.value,
        )
        for name in CircuitName
    }


@dataclass
class CachedCircuit:
    """One loaded program bound to a backend instance"""
    name: str
    compiled: Dict[str, Any]
    backend: Any
    vk: Optional[bytes] = None
    lock: Any = None
    loaded_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ZKProof:
    """Proof bytes plus public inputs, immutable once produced"""
    proof: bytes
    public_inputs: List[str]
    verification_key: Optional[bytes] = None
    circuit_name: Optional[str] = None
    generation_time: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "circuit_name": self.circuit_name,
            "proof": "0x" + self.proof.hex(),
            "public_inputs": list(self.public_inputs),
            "verification_key": "0x" + self.verification_key.hex() if self.verification_key else None,
            "generation_time": self.generation_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ZKProof":
        def _bytes(value):
            if value is None:
                return None
            text = value[2:] if value.startswith("0x") else value
            return bytes.fromhex(text)

        return cls(
            proof=_bytes(data["proof"]),
            public_inputs=[str(x) for x in data.get("public_inputs", [])],
            verification_key=_bytes(data.get("verification_key")),
            circuit_name=data.get("circuit_name"),
            generation_time=float(data.get("generation_time", 0.0)),
        )


@dataclass
class VerificationResult:
    valid: bool
    error: Optional[str] = None
