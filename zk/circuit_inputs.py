"""
Circuit Input Builder
=====================
Maps game-domain objects (backend card records, player/game identifiers,
evaluated hands) onto the exact witness maps of the shuffle, deal and show
circuits. Every field element leaves this module as a decimal string.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Mapping, Sequence, Tuple

from .commitment import CommitmentEngine, generate_nonce
from .errors import InvalidCardError, InvalidCircuitInputError
from .field import field_to_decimal_string
from .types import (
    DECK_SIZE,
    HAND_SIZE,
    MAX_RANK,
    NUM_SUITS,
    Card,
    CircuitName,
    DeckState,
    FieldLike,
    HandRank,
    MerkleProof,
)

logger = logging.getLogger(__name__)

# ============================================================================
# CARD PARSING
# ============================================================================

RANK_MAP = {
    '2': 2, '3': 3, '4': 4, '5': 5, '6': 6, '7': 7,
    '8': 8, '9': 9, '10': 10, 'J': 11, 'Q': 12, 'K': 13, 'A': 14,
}

SUIT_MAP = {
    'hearts': 0,
    'diamonds': 1,
    'clubs': 2,
    'spades': 3,
}

RANK_DISPLAY = {v: k for k, v in RANK_MAP.items()}
SUIT_DISPLAY = {v: k for k, v in SUIT_MAP.items()}


def parse_card(card: Mapping[str, Any]) -> Card:
    """Backend card {'rank': 'K', 'suit': 'spades'} -> numeric Card"""
    rank = RANK_MAP.get(str(card.get('rank')))
    suit = SUIT_MAP.get(str(card.get('suit')).lower())

    if rank is None:
        raise InvalidCardError(f"Unknown rank: {card.get('rank')}")
    if suit is None:
        raise InvalidCardError(f"Unknown suit: {card.get('suit')}")

    return Card(rank=rank, suit=suit)


def card_to_display(rank: int, suit: int) -> Dict[str, str]:
    return {
        'rank': RANK_DISPLAY.get(rank, str(rank)),
        'suit': SUIT_DISPLAY.get(suit, str(suit)),
    }


def card_to_uid(engine: CommitmentEngine, card: Mapping[str, Any]) -> int:
    parsed = parse_card(card)
    return engine.card_uid(parsed.rank, parsed.suit)


def cards_to_uids(engine: CommitmentEngine, cards: Sequence[Mapping[str, Any]]) -> List[int]:
    return [card_to_uid(engine, c) for c in cards]


def prepare_deck_for_zk(engine: CommitmentEngine, shuffled_cards: Sequence[Mapping[str, Any]]) -> DeckState:
    """Canonical UIDs, shuffled UIDs, fresh nonces and the committed tree"""
    if len(shuffled_cards) != DECK_SIZE:
        raise InvalidCircuitInputError(f"Expected {DECK_SIZE} cards, got {len(shuffled_cards)}")

    canonical_uids = engine.canonical_deck()
    shuffled_uids = cards_to_uids(engine, shuffled_cards)
    nonces = [generate_nonce() for _ in range(DECK_SIZE)]
    committed = engine.commit_deck(shuffled_uids, nonces)

    logger.info(f"Deck committed, root {hex(committed.root)[:18]}...")

    return DeckState(
        canonical_uids=canonical_uids,
        shuffled_uids=shuffled_uids,
        nonces=nonces,
        commitments=committed.commitments,
        merkle_root=committed.root,
        merkle_layers=committed.layers,
    )

# ============================================================================
# INPUT VALIDATION
# ============================================================================


def _is_placeholder(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() in ('', '0x', '0X'))


def validate_inputs(obj: Any, path: str = '') -> None:
    """Recursively reject empty, null or bare '0x' fields"""
    if isinstance(obj, Mapping):
        items = obj.items()
    elif isinstance(obj, (list, tuple)):
        items = ((f"[{i}]", v) for i, v in enumerate(obj))
    else:
        if _is_placeholder(obj):
            raise InvalidCircuitInputError(f"Invalid circuit input at {path or '<root>'}: {obj!r}")
        return

    for key, value in items:
        if isinstance(obj, Mapping):
            current = f"{path}.{key}" if path else str(key)
        else:
            current = f"{path}{key}"
        if _is_placeholder(value):
            raise InvalidCircuitInputError(f"Invalid circuit input at {current}: {value!r}")
        if isinstance(value, (Mapping, list, tuple)):
            validate_inputs(value, current)


def _decimal_list(values: Sequence[FieldLike], label: str) -> List[str]:
    out = []
    for i, v in enumerate(values):
        if _is_placeholder(v):
            raise InvalidCircuitInputError(f"Invalid circuit input at {label}[{i}]: {v!r}")
        out.append(field_to_decimal_string(v))
    return out


def _require_len(values: Sequence[Any], expected: int, label: str):
    if len(values) != expected:
        raise InvalidCircuitInputError(f"{label} must have {expected} entries, got {len(values)}")


def check_positions(positions: Sequence[int]):
    _require_len(positions, HAND_SIZE, "positions")
    for p in positions:
        if isinstance(p, bool) or not isinstance(p, int) or not 0 <= p < DECK_SIZE:
            raise InvalidCircuitInputError(f"Card position {p!r} outside 0..{DECK_SIZE - 1}")
    if len(set(positions)) != len(positions):
        raise InvalidCircuitInputError(f"Duplicate card positions: {list(positions)}")

# ============================================================================
# CIRCUIT INPUT RECORDS
# ============================================================================


@dataclass
class ShuffleInput:
    """uids_out is a permutation of uids_in; no public inputs"""
    circuit: ClassVar[str] = CircuitName.SHUFFLE.value

    uids_in: List[FieldLike]
    uids_out: List[FieldLike]

    def __post_init__(self):
        if len(self.uids_in) != DECK_SIZE or len(self.uids_out) != DECK_SIZE:
            raise InvalidCircuitInputError(f"Both decks must have {DECK_SIZE} cards")

    def to_witness_map(self) -> Dict[str, Any]:
        return {
            'uids_in': _decimal_list(self.uids_in, 'uids_in'),
            'uids_out': _decimal_list(self.uids_out, 'uids_out'),
        }


@dataclass
class DealInput:
    """Public: player_id, merkle_root"""
    circuit: ClassVar[str] = CircuitName.DEAL.value

    player_id: FieldLike
    merkle_root: FieldLike
    positions: List[int]
    card_uids: List[FieldLike]
    nonces: List[FieldLike] = field(repr=False)
    merkle_paths: List[MerkleProof] = field(repr=False)

    def __post_init__(self):
        check_positions(self.positions)
        _require_len(self.card_uids, HAND_SIZE, "card_uids")
        _require_len(self.nonces, HAND_SIZE, "nonces")
        _require_len(self.merkle_paths, HAND_SIZE, "merkle_paths")

    def to_witness_map(self) -> Dict[str, Any]:
        return {
            'player_id': field_to_decimal_string(self.player_id),
            'merkle_root': field_to_decimal_string(self.merkle_root),
            'positions': [str(p) for p in self.positions],
            'card_uids': _decimal_list(self.card_uids, 'card_uids'),
            'nonces': _decimal_list(self.nonces, 'nonces'),
            'merkle_paths': [mp.to_witness() for mp in self.merkle_paths],
        }


@dataclass
class ShowInput:
    """Public: game_id, player_id, merkle_root, 3 ranks, 3 suits, hand_rank, hand_value"""
    circuit: ClassVar[str] = CircuitName.SHOW.value

    game_id: FieldLike
    player_id: FieldLike
    merkle_root: FieldLike
    cards: List[Card]
    hand_rank: int
    hand_value: int
    card_uids: List[FieldLike]
    nonces: List[FieldLike] = field(repr=False)
    positions: List[int]
    merkle_paths: List[MerkleProof] = field(repr=False)

    def __post_init__(self):
        _require_len(self.cards, HAND_SIZE, "cards")
        for card in self.cards:
            if not (2 <= card.rank <= MAX_RANK and 0 <= card.suit < NUM_SUITS):
                raise InvalidCircuitInputError(f"Invalid card {card}")
        if self.hand_rank not in [int(r) for r in HandRank]:
            raise InvalidCircuitInputError(f"Invalid hand rank {self.hand_rank!r}")
        check_positions(self.positions)
        _require_len(self.card_uids, HAND_SIZE, "card_uids")
        _require_len(self.nonces, HAND_SIZE, "nonces")
        _require_len(self.merkle_paths, HAND_SIZE, "merkle_paths")

    def to_witness_map(self) -> Dict[str, Any]:
        witness = {
            'game_id': field_to_decimal_string(self.game_id),
            'player_id': field_to_decimal_string(self.player_id),
            'merkle_root': field_to_decimal_string(self.merkle_root),
        }
        for i, card in enumerate(self.cards):
            witness[f'card_rank_{i}'] = str(card.rank)
        for i, card in enumerate(self.cards):
            witness[f'card_suit_{i}'] = str(card.suit)
        witness.update({
            'hand_rank': str(int(self.hand_rank)),
            'hand_value': field_to_decimal_string(self.hand_value),
            'card_uids': _decimal_list(self.card_uids, 'card_uids'),
            'nonces': _decimal_list(self.nonces, 'nonces'),
            'merkle_paths': [mp.to_witness() for mp in self.merkle_paths],
            'positions': [str(p) for p in self.positions],
        })
        return witness

    def public_values(self) -> List[int]:
        """The 11 public inputs in circuit order"""
        return [
            int(field_to_decimal_string(self.game_id)),
            int(field_to_decimal_string(self.player_id)),
            int(field_to_decimal_string(self.merkle_root)),
            *[c.rank for c in self.cards],
            *[c.suit for c in self.cards],
            int(self.hand_rank),
            int(self.hand_value),
        ]

# ============================================================================
# BUILDERS
# ============================================================================


def build_shuffle_input(canonical_uids: Sequence[FieldLike], shuffled_uids: Sequence[FieldLike]) -> ShuffleInput:
    return ShuffleInput(uids_in=list(canonical_uids), uids_out=list(shuffled_uids))


def build_deal_input(engine: CommitmentEngine,
                     player_id: FieldLike,
                     merkle_root: FieldLike,
                     positions: Sequence[int],
                     card_uids: Sequence[FieldLike],
                     nonces: Sequence[FieldLike],
                     merkle_layers: Sequence[Sequence[int]]) -> DealInput:
    """Proves 3 specific cards were dealt from the committed deck"""
    if len(positions) != HAND_SIZE or len(card_uids) != HAND_SIZE or len(nonces) != HAND_SIZE:
        raise InvalidCircuitInputError(f"Deal input requires exactly {HAND_SIZE} cards")
    check_positions(positions)

    merkle_paths = [engine.merkle_proof(merkle_layers, pos) for pos in positions]

    return DealInput(
        player_id=player_id,
        merkle_root=merkle_root,
        positions=list(positions),
        card_uids=list(card_uids),
        nonces=list(nonces),
        merkle_paths=merkle_paths,
    )


def build_show_input(engine: CommitmentEngine,
                     game_id: FieldLike,
                     player_id: FieldLike,
                     merkle_root: FieldLike,
                     cards: Sequence[Card],
                     hand_rank: int,
                     hand_value: int,
                     card_uids: Sequence[FieldLike],
                     nonces: Sequence[FieldLike],
                     positions: Sequence[int],
                     merkle_layers: Sequence[Sequence[int]]) -> ShowInput:
    """Reveals a 3-card hand bound to the committed deck"""
    if len(cards) != HAND_SIZE:
        raise InvalidCircuitInputError(f"Show input requires exactly {HAND_SIZE} cards")
    check_positions(positions)

    merkle_paths = [engine.merkle_proof(merkle_layers, pos) for pos in positions]

    return ShowInput(
        game_id=game_id,
        player_id=player_id,
        merkle_root=merkle_root,
        cards=list(cards),
        hand_rank=int(hand_rank),
        hand_value=int(hand_value),
        card_uids=list(card_uids),
        nonces=list(nonces),
        positions=list(positions),
        merkle_paths=merkle_paths,
    )


def build_show_input_from_backend_cards(engine: CommitmentEngine,
                                        game_id: FieldLike,
                                        player_id: FieldLike,
                                        merkle_root: FieldLike,
                                        backend_cards: Sequence[Mapping[str, Any]],
                                        card_uids: Sequence[FieldLike],
                                        nonces: Sequence[FieldLike],
                                        positions: Sequence[int],
                                        merkle_layers: Sequence[Sequence[int]]) -> Tuple[ShowInput, int, int]:
    """Parse backend cards, evaluate the hand and build the show input"""
    cards = [parse_card(c) for c in backend_cards]
    hand_rank, hand_value = evaluate_hand(cards)
    show_input = build_show_input(engine, game_id, player_id, merkle_root, cards,
                                  hand_rank, hand_value, card_uids, nonces,
                                  positions, merkle_layers)
    return show_input, hand_rank, hand_value

# ============================================================================
# HAND EVALUATION
# ============================================================================


def evaluate_hand(cards: Sequence[Card]) -> Tuple[HandRank, int]:
    """Teen Patti ranking; must agree with the circuit's hand_ranking module.

    hand_value = hand_rank * 10^6 + r0 * 10^4 + r1 * 10^2 + r2 over the
    descending-sorted ranks, so a higher value always wins within a category.
    """
    if len(cards) != HAND_SIZE:
        raise InvalidCardError('Hand must have exactly 3 cards')

    ordered = sorted(cards, key=lambda c: c.rank, reverse=True)
    ranks = [c.rank for c in ordered]
    suits = [c.suit for c in ordered]

    is_flush = suits[0] == suits[1] == suits[2]
    is_trail = ranks[0] == ranks[1] == ranks[2]
    is_pair = not is_trail and (ranks[0] == ranks[1] or ranks[1] == ranks[2] or ranks[0] == ranks[2])

    is_sequence = ranks[0] - ranks[1] == 1 and ranks[1] - ranks[2] == 1
    # A-2-3 sorts to [14, 3, 2]
    if ranks == [14, 3, 2]:
        is_sequence = True

    if is_trail:
        hand_rank = HandRank.TRAIL
    elif is_sequence and is_flush:
        hand_rank = HandRank.PURE_SEQUENCE
    elif is_sequence:
        hand_rank = HandRank.SEQUENCE
    elif is_flush:
        hand_rank = HandRank.COLOR
    elif is_pair:
        hand_rank = HandRank.PAIR
    else:
        hand_rank = HandRank.HIGH_CARD

    hand_value = int(hand_rank) * 1_000_000 + ranks[0] * 10_000 + ranks[1] * 100 + ranks[2]
    return hand_rank, hand_value
