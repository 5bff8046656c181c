"""
Commitment Engine
=================
Canonical 52-card deck, domain-separated card UIDs and commitments, and the
fixed-depth Merkle tree the deal and show circuits re-verify.
"""

import logging
import secrets
from typing import List, Optional, Sequence

from .errors import CommitmentError, InvalidCardError
from .field import FieldHasher, Sha256FieldHasher, to_field
from .types import (
    DOMAIN_CARD_COMMITMENT,
    DOMAIN_CARD_UID,
    DOMAIN_MOVE,
    MAX_RANK,
    MERKLE_DEPTH,
    MIN_RANK,
    NUM_SUITS,
    DeckCommitment,
    FieldLike,
    MerkleProof,
    MerkleTree,
)

logger = logging.getLogger(__name__)


def card_index(rank: int, suit: int) -> int:
    """Canonical deck index = (rank - 2) * 4 + suit"""
    _check_card(rank, suit)
    return (rank - MIN_RANK) * NUM_SUITS + suit


def _check_card(rank: int, suit: int):
    if isinstance(rank, bool) or not isinstance(rank, int) or not MIN_RANK <= rank <= MAX_RANK:
        raise InvalidCardError(f"Rank {rank!r} outside {MIN_RANK}..{MAX_RANK}")
    if isinstance(suit, bool) or not isinstance(suit, int) or not 0 <= suit < NUM_SUITS:
        raise InvalidCardError(f"Suit {suit!r} outside 0..{NUM_SUITS - 1}")


def generate_nonce() -> int:
    """Random 252-bit field element (top 4 bits of 256 cleared, always < p)"""
    raw = bytearray(secrets.token_bytes(32))
    raw[0] &= 0x0F
    return int.from_bytes(raw, "big")


class CommitmentEngine:
    """Card/deck commitment scheme over an injected field hasher"""

    def __init__(self, hasher: Optional[FieldHasher] = None, depth: int = MERKLE_DEPTH):
        self.hasher = hasher or Sha256FieldHasher()
        self.depth = depth
        self.capacity = 1 << depth
        self._canonical_deck: Optional[List[int]] = None

    # ------------------------------------------------------------------
    # Domain-separated hashes (mirror circuits/lib/src/hash.nr)
    # ------------------------------------------------------------------

    def card_uid(self, rank: int, suit: int) -> int:
        """Looked up in the canonical deck, which is hashed in one batch"""
        return self._uids()[card_index(rank, suit)]

    def card_commitment(self, uid: FieldLike, nonce: FieldLike) -> int:
        return self.hasher.hash([DOMAIN_CARD_COMMITMENT, to_field(uid), to_field(nonce)])

    def hash_merkle_node(self, left: FieldLike, right: FieldLike) -> int:
        return self.hasher.hash([to_field(left), to_field(right)])

    def hash_move_commitment(self, game_id: FieldLike, player_id: FieldLike, hand_hash: FieldLike) -> int:
        return self.hasher.hash([DOMAIN_MOVE, to_field(game_id), to_field(player_id), to_field(hand_hash)])

    # ------------------------------------------------------------------
    # Deck
    # ------------------------------------------------------------------

    def canonical_deck(self) -> List[int]:
        """All 52 UIDs in index order; computed once per engine"""
        return list(self._uids())

    def _uids(self) -> List[int]:
        if self._canonical_deck is None:
            # Index order: (rank - 2) * 4 + suit
            self._canonical_deck = self.hasher.hash_many([
                [DOMAIN_CARD_UID, rank, suit]
                for rank in range(MIN_RANK, MAX_RANK + 1)
                for suit in range(NUM_SUITS)
            ])
            logger.debug("Canonical deck computed")
        return self._canonical_deck

    def commit_deck(self, uids: Sequence[FieldLike], nonces: Sequence[FieldLike]) -> DeckCommitment:
        if len(uids) != len(nonces):
            raise CommitmentError(
                f"uids and nonces must have same length ({len(uids)} != {len(nonces)})")

        commitments = self.hasher.hash_many([
            [DOMAIN_CARD_COMMITMENT, to_field(u), to_field(n)] for u, n in zip(uids, nonces)
        ])
        tree = self.build_merkle_tree(commitments)
        return DeckCommitment(commitments=commitments, root=tree.root, layers=tree.layers)

    # ------------------------------------------------------------------
    # Merkle tree
    # ------------------------------------------------------------------

    def build_merkle_tree(self, leaves: Sequence[FieldLike]) -> MerkleTree:
        """Pad to 2^depth with zeros and keep every layer"""
        if len(leaves) > self.capacity:
            raise CommitmentError(
                f"{len(leaves)} leaves exceed Merkle capacity {self.capacity}")

        layer = [to_field(leaf) for leaf in leaves]
        layer.extend([0] * (self.capacity - len(layer)))
        layers = [layer]

        for _ in range(self.depth):
            layer = self.hasher.hash_many([[layer[i], layer[i + 1]]
                                           for i in range(0, len(layer), 2)])
            layers.append(layer)

        return MerkleTree(root=layer[0], layers=layers)

    def merkle_proof(self, layers: Sequence[Sequence[int]], leaf_index: int) -> MerkleProof:
        if len(layers) < self.depth + 1:
            raise CommitmentError(f"Expected {self.depth + 1} layers, got {len(layers)}")
        if leaf_index < 0 or leaf_index >= len(layers[0]):
            raise CommitmentError(f"Leaf index {leaf_index} out of bounds")

        path = []
        indices = []
        idx = leaf_index
        for depth in range(self.depth):
            is_right = idx & 1
            path.append(layers[depth][idx ^ 1])
            indices.append(is_right)
            idx >>= 1

        return MerkleProof(path=path, indices=indices)

    def verify_merkle_proof(self, leaf: FieldLike, proof: MerkleProof, root: FieldLike) -> bool:
        """Recompute the root from a leaf and its sibling path"""
        if len(proof.path) != self.depth or len(proof.indices) != self.depth:
            return False

        current = to_field(leaf)
        for sibling, is_right in zip(proof.path, proof.indices):
            if is_right:
                current = self.hash_merkle_node(sibling, current)
            else:
                current = self.hash_merkle_node(current, sibling)
        return current == to_field(root)
