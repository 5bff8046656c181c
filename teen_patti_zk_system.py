#!/usr/bin/env python3
"""
Teen Patti ZK Game Session
==========================
Session state consumed by game front ends: readiness, the cached canonical
deck, the committed deck of the current hand, proof history and aggregator
availability with periodic re-checks.

    session = ZKGameSession(load_config())
    await session.initialize()
    deck = session.prepare_deck(shuffled_backend_cards)
    shuffle_proof = await session.prove_shuffle()
    result = await session.verify("shuffle", shuffle_proof)
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from config import SystemConfig
from utils import PerformanceMonitor, generate_secure_id
from zk.aggregator import AggregatorClient, VerificationJob
from zk.backend import ArtifactStore
from zk.circuit_inputs import (
    build_deal_input,
    build_show_input_from_backend_cards,
    build_shuffle_input,
    check_positions,
    prepare_deck_for_zk,
)
from zk.commitment import CommitmentEngine
from zk.errors import ZKError
from zk.field import LibraryFieldHasher
from zk.onchain import OnChainVerifier, TransactionSigner
from zk.proof_service import ProofService
from zk.types import CircuitName, DeckState, FieldLike, ProofStatus, ZKProof
from zk.verification import (
    ComprehensiveVerificationResult,
    VerificationOptions,
    VerificationOrchestrator,
)

logger = logging.getLogger(__name__)

# ============================================================================
# PROOF HISTORY
# ============================================================================


@dataclass
class ProofRecord:
    """One generated proof in the session history"""
    id: str
    circuit_name: str
    proof: ZKProof
    timestamp: datetime = field(default_factory=datetime.now)
    job_id: Optional[str] = None
    aggregator_status: Optional[Union[VerificationJob, str]] = None


@dataclass
class ProofState:
    status: ProofStatus = ProofStatus.IDLE
    proof: Optional[ZKProof] = None
    error: Optional[str] = None
    generation_ms: Optional[int] = None


class ProofTracker:
    """Lifecycle of the latest proof for one circuit:
    idle -> generating -> generated -> verifying -> verified | failed
    """

    def __init__(self, circuit: CircuitName, proof_service: ProofService,
                 monitor: Optional[PerformanceMonitor] = None):
        self.circuit = circuit
        self.proof_service = proof_service
        self.monitor = monitor
        self.state = ProofState()

    @property
    def status(self) -> ProofStatus:
        return self.state.status

    async def generate(self, inputs) -> ZKProof:
        self.state = ProofState(status=ProofStatus.GENERATING)
        start = time.time()
        try:
            if self.monitor is not None:
                with self.monitor.start_operation(f"generate_proof:{self.circuit.value}"):
                    proof = await self.proof_service.generate_proof(self.circuit, inputs)
            else:
                proof = await self.proof_service.generate_proof(self.circuit, inputs)
        except Exception as e:
            self.state.status = ProofStatus.FAILED
            self.state.error = str(e) or f"{self.circuit.value} proof generation failed"
            raise

        self.state = ProofState(
            status=ProofStatus.GENERATED,
            proof=proof,
            generation_ms=int(round((time.time() - start) * 1000)),
        )
        return proof

    async def verify_locally(self) -> bool:
        if self.state.proof is None:
            raise ZKError("No proof to verify")

        self.state.status = ProofStatus.VERIFYING
        if self.monitor is not None:
            with self.monitor.start_operation(f"verify_proof:{self.circuit.value}"):
                result = await self.proof_service.verify_proof_locally(self.circuit, self.state.proof)
        else:
            result = await self.proof_service.verify_proof_locally(self.circuit, self.state.proof)

        self.state.status = ProofStatus.VERIFIED if result.valid else ProofStatus.FAILED
        self.state.error = None if result.valid else (result.error or "Verification failed")
        return result.valid

    def reset(self):
        self.state = ProofState()

# ============================================================================
# GAME SESSION
# ============================================================================


class ZKGameSession:
    """Owns the proof pipeline for one game client"""

    def __init__(self,
                 config: Optional[SystemConfig] = None,
                 proof_service: Optional[ProofService] = None,
                 aggregator: Optional[AggregatorClient] = None,
                 onchain: Optional[OnChainVerifier] = None,
                 signer: Optional[TransactionSigner] = None,
                 engine: Optional[CommitmentEngine] = None,
                 monitor: Optional[PerformanceMonitor] = None,
                 use_library_hasher: Optional[bool] = None):
        self.config = config or SystemConfig()
        zk_config = self.config.zk_config

        self.proof_service = proof_service or ProofService(
            zk_config,
            artifact_store=ArtifactStore(zk_config.circuit_base_url,
                                         timeout=self.config.aggregator_config.request_timeout))
        self.aggregator = aggregator
        self.onchain = onchain
        self.monitor = monitor or PerformanceMonitor()
        # Pedersen commitments unless a prebuilt engine is injected
        self.use_library_hasher = engine is None if use_library_hasher is None else use_library_hasher
        self._engine = engine

        self.orchestrator = VerificationOrchestrator(self.proof_service, aggregator, onchain, signer)
        self.trackers: Dict[str, ProofTracker] = {
            name.value: ProofTracker(name, self.proof_service, self.monitor) for name in CircuitName
        }

        self._initializing = False
        self._health_task: Optional[asyncio.Task] = None
        self._reset_state()

    def _reset_state(self):
        self.is_ready = False
        self.is_loading = False
        self.is_aggregator_available = False
        self.error: Optional[str] = None
        self.canonical_deck: Optional[List[int]] = None
        self.deck: Optional[DeckState] = None
        self.recent_proofs: List[ProofRecord] = []
        # The library hasher is bound in initialize()
        self.engine: Optional[CommitmentEngine] = None
        if not self.use_library_hasher:
            self.engine = self._engine or CommitmentEngine(depth=self.config.zk_config.merkle_depth)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self):
        """Preload circuits, compute the canonical deck, check the aggregator"""
        if self._initializing or self.is_ready:
            return
        self._initializing = True
        self.is_loading = True
        self.error = None

        try:
            logger.info("Initializing ZK session...")
            start = time.time()

            await self.proof_service.preload_circuits()

            if self.use_library_hasher:
                library = await self.proof_service.get_library()
                self.engine = CommitmentEngine(LibraryFieldHasher(library),
                                               depth=self.config.zk_config.merkle_depth)

            loop = asyncio.get_running_loop()
            self.canonical_deck = await loop.run_in_executor(None, self.engine.canonical_deck)

            self.is_aggregator_available = (
                await self.aggregator.is_available() if self.aggregator is not None else False)

            logger.info(f"ZK ready in {time.time() - start:.2f}s, "
                        f"aggregator: {self.is_aggregator_available}")
            self.is_ready = True
            self.start_health_checks()
        except Exception as e:
            logger.error(f"ZK initialization failed: {e}")
            self.error = str(e) or "ZK initialization failed"
        finally:
            self.is_loading = False
            self._initializing = False

    def start_health_checks(self):
        """Re-check aggregator availability every health_check_interval seconds"""
        if self.aggregator is None or not self.aggregator.is_configured:
            return
        if self._health_task is not None and not self._health_task.done():
            return
        self._health_task = asyncio.ensure_future(self._health_loop())

    async def _health_loop(self):
        while True:
            await self.check_aggregator_health()
            await asyncio.sleep(self.config.health_check_interval)

    async def check_aggregator_health(self) -> bool:
        try:
            health = await self.aggregator.check_health()
            self.is_aggregator_available = health['status'] != 'down'
        except Exception as e:
            logger.warning(f"Aggregator health check failed: {e}")
            self.is_aggregator_available = False
        return self.is_aggregator_available

    def reset(self):
        """Drop every cache and all session state in one step"""
        if self._health_task is not None:
            self._health_task.cancel()
            self._health_task = None

        self.proof_service.clear_cache()
        for tracker in self.trackers.values():
            tracker.reset()
        self._reset_state()
        self._initializing = False
        logger.info("ZK session reset")

    async def close(self):
        task = self._health_task
        self.reset()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------------
    # Proof history
    # ------------------------------------------------------------------

    def track_proof(self, circuit_name: str, proof: ZKProof) -> str:
        record = ProofRecord(id=generate_secure_id(circuit_name), circuit_name=circuit_name, proof=proof)
        self.recent_proofs.insert(0, record)
        del self.recent_proofs[self.config.max_proof_history:]
        return record.id

    def update_proof_tracking(self, record_id: str, job_id: str,
                              status: Optional[Union[VerificationJob, str]] = None) -> bool:
        for record in self.recent_proofs:
            if record.id == record_id:
                record.job_id = job_id
                record.aggregator_status = status
                return True
        return False

    def clear_proof_history(self):
        self.recent_proofs = []

    # ------------------------------------------------------------------
    # Game flow
    # ------------------------------------------------------------------

    def prepare_deck(self, shuffled_cards: Sequence[Mapping[str, Any]]) -> DeckState:
        """Commit a shuffled backend deck for the current hand"""
        if self.engine is None:
            raise ZKError("ZK session not initialized; call initialize first")
        self.deck = prepare_deck_for_zk(self.engine, shuffled_cards)
        return self.deck

    def _require_deck(self) -> DeckState:
        if self.deck is None:
            raise ZKError("No committed deck; call prepare_deck first")
        return self.deck

    async def _prove(self, circuit: CircuitName, inputs) -> ZKProof:
        proof = await self.trackers[circuit.value].generate(inputs)
        self.track_proof(circuit.value, proof)
        return proof

    async def prove_shuffle(self) -> ZKProof:
        deck = self._require_deck()
        return await self._prove(
            CircuitName.SHUFFLE, build_shuffle_input(deck.canonical_uids, deck.shuffled_uids))

    async def prove_deal(self, player_id: FieldLike, positions: Sequence[int]) -> ZKProof:
        deck = self._require_deck()
        check_positions(positions)
        inputs = build_deal_input(
            self.engine, player_id, deck.merkle_root, positions,
            [deck.shuffled_uids[p] for p in positions],
            [deck.nonces[p] for p in positions],
            deck.merkle_layers)
        return await self._prove(CircuitName.DEAL, inputs)

    async def prove_show(self, game_id: FieldLike, player_id: FieldLike, positions: Sequence[int],
                         backend_cards: Sequence[Mapping[str, Any]]) -> ZKProof:
        deck = self._require_deck()
        check_positions(positions)
        inputs, hand_rank, hand_value = build_show_input_from_backend_cards(
            self.engine, game_id, player_id, deck.merkle_root, backend_cards,
            [deck.shuffled_uids[p] for p in positions],
            [deck.nonces[p] for p in positions],
            positions, deck.merkle_layers)
        logger.info(f"Proving show of {hand_rank.name} ({hand_value})")
        return await self._prove(CircuitName.SHOW, inputs)

    async def verify(self, circuit: Union[str, CircuitName], proof: ZKProof,
                     options: Optional[VerificationOptions] = None,
                     stop_event: Optional[asyncio.Event] = None) -> ComprehensiveVerificationResult:
        """Run the verification pipeline and attach aggregator jobs to the history"""
        name = circuit.value if isinstance(circuit, CircuitName) else str(circuit)
        with self.monitor.start_operation(f"verify_proof:{name}"):
            result = await self.orchestrator.verify_comprehensive(name, proof, options, stop_event)

        if result.aggregator is not None and result.aggregator.job_id:
            for record in self.recent_proofs:
                if record.proof is proof:
                    self.update_proof_tracking(record.id, result.aggregator.job_id, result.aggregator.status)
                    break
        return result

    def get_session_metrics(self) -> Dict[str, Any]:
        return {
            'is_ready': self.is_ready,
            'is_aggregator_available': self.is_aggregator_available,
            'proofs_tracked': len(self.recent_proofs),
            'circuits': {name: tracker.status.value for name, tracker in self.trackers.items()},
            'performance': self.monitor.get_summary(),
        }
