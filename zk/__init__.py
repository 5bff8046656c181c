"""
Zero-Knowledge proof pipeline for Teen Patti
Deck commitments, circuit inputs, UltraHonk proving and multi-layer verification
"""

from .types import (
    Card,
    CircuitArtifact,
    CircuitName,
    CircuitType,
    DeckState,
    HandRank,
    MerkleProof,
    ProofStatus,
    VerificationResult,
    ZKProof,
    default_artifacts,
)
from .errors import (
    ZKError,
    ZKValidationError,
    FieldError,
    InvalidCardError,
    CommitmentError,
    InvalidCircuitInputError,
    BackendInitializationError,
    CircuitLoadError,
    ProofGenerationError,
    AggregatorError,
    AggregatorNotConfiguredError,
    AggregatorVerificationFailed,
    AggregatorTimeoutError,
    AggregatorCancelledError,
    OnChainError,
    TransactionRejectedError,
    HashingError,
)
from .field import FieldHasher, LibraryFieldHasher, Sha256FieldHasher, to_field
from .commitment import CommitmentEngine, generate_nonce
from .circuit_inputs import (
    DealInput,
    ShowInput,
    ShuffleInput,
    build_deal_input,
    build_show_input,
    build_show_input_from_backend_cards,
    build_shuffle_input,
    evaluate_hand,
    parse_card,
    prepare_deck_for_zk,
    validate_inputs,
)
from .backend import ArtifactStore, BarretenbergCli, CryptoLibrary, ProverBackend
from .proof_service import ProofService, hex_to_proof, proof_to_hex
from .aggregator import AggregatorClient, JobStatus, VerificationJob
from .onchain import LocalAccountSigner, OnChainVerifier, TransactionSigner, format_proof_for_contract
from .verification import ComprehensiveVerificationResult, VerificationOptions, VerificationOrchestrator

__version__ = "1.0.0"

__all__ = [
    # Data model
    'Card',
    'CircuitArtifact',
    'CircuitName',
    'CircuitType',
    'DeckState',
    'HandRank',
    'MerkleProof',
    'ProofStatus',
    'VerificationResult',
    'ZKProof',
    'default_artifacts',

    # Commitments and inputs
    'FieldHasher',
    'LibraryFieldHasher',
    'Sha256FieldHasher',
    'to_field',
    'CommitmentEngine',
    'generate_nonce',
    'ShuffleInput',
    'DealInput',
    'ShowInput',
    'build_shuffle_input',
    'build_deal_input',
    'build_show_input',
    'build_show_input_from_backend_cards',
    'evaluate_hand',
    'parse_card',
    'prepare_deck_for_zk',
    'validate_inputs',

    # Proving and verification
    'ArtifactStore',
    'BarretenbergCli',
    'CryptoLibrary',
    'ProverBackend',
    'ProofService',
    'proof_to_hex',
    'hex_to_proof',
    'AggregatorClient',
    'JobStatus',
    'VerificationJob',
    'OnChainVerifier',
    'TransactionSigner',
    'LocalAccountSigner',
    'format_proof_for_contract',
    'VerificationOrchestrator',
    'VerificationOptions',
    'ComprehensiveVerificationResult',

    # Exceptions
    'ZKError',
    'ZKValidationError',
    'FieldError',
    'InvalidCardError',
    'CommitmentError',
    'InvalidCircuitInputError',
    'BackendInitializationError',
    'CircuitLoadError',
    'ProofGenerationError',
    'HashingError',
    'AggregatorError',
    'AggregatorNotConfiguredError',
    'AggregatorVerificationFailed',
    'AggregatorTimeoutError',
    'AggregatorCancelledError',
    'OnChainError',
    'TransactionRejectedError',
]
