"""Game session state, proof tracking and the end-to-end proof flow"""

import asyncio
import random

import pytest

from config import SystemConfig, ZKConfig
from teen_patti_zk_system import ProofTracker, ZKGameSession
from zk.aggregator import AggregatorClient
from zk.commitment import CommitmentEngine
from zk.errors import InvalidCircuitInputError, ZKError
from zk.field import LibraryFieldHasher
from zk.proof_service import ProofService
from zk.types import CircuitName, ProofStatus, ZKProof
from zk.verification import VerificationOptions

from fakes import FakeArtifactStore, FakeResponse, LibraryFactory

DEAL_WITNESS = {'player_id': '1', 'merkle_root': '2', 'positions': ['0', '1', '2']}


def _backend_deck(seed=3):
    ranks = ['2', '3', '4', '5', '6', '7', '8', '9', '10', 'J', 'Q', 'K', 'A']
    suits = ['hearts', 'diamonds', 'clubs', 'spades']
    deck = [{'rank': r, 'suit': s} for r in ranks for s in suits]
    random.Random(seed).shuffle(deck)
    return deck


def _proof(n):
    return ZKProof(proof=bytes([n]), public_inputs=[])


@pytest.fixture
def session(proof_service):
    return ZKGameSession(SystemConfig(max_proof_history=3), proof_service=proof_service)

# ============================================================================
# LIFECYCLE
# ============================================================================


def test_initialize(session, library_factory):
    asyncio.run(session.initialize())

    assert session.is_ready
    assert not session.is_loading
    assert session.error is None
    assert session.canonical_deck == session.engine.canonical_deck()
    assert not session.is_aggregator_available
    assert library_factory.library.create_backend_calls == 3


def test_initialize_failure_allows_retry(library_factory, tmp_path):
    store = FakeArtifactStore(missing=["show"])
    service = ProofService(ZKConfig(circuits_dir=tmp_path), library_factory=library_factory,
                           artifact_store=store)
    session = ZKGameSession(proof_service=service)

    asyncio.run(session.initialize())
    assert not session.is_ready
    assert "show" in session.error

    store.missing.clear()
    asyncio.run(session.initialize())
    assert session.is_ready
    assert session.error is None


def test_session_hashes_through_the_library(proof_service, library_factory):
    session = ZKGameSession(proof_service=proof_service)
    assert session.engine is None
    with pytest.raises(ZKError, match="initialize"):
        session.prepare_deck(_backend_deck())

    asyncio.run(session.initialize())

    assert isinstance(session.engine.hasher, LibraryFieldHasher)
    assert session.engine.hasher.library is library_factory.library
    assert library_factory.library.hash_calls >= 52
    assert len(set(session.canonical_deck)) == 52

    session.reset()
    assert session.engine is None


def test_injected_engine_is_kept(proof_service):
    engine = CommitmentEngine()
    session = ZKGameSession(proof_service=proof_service, engine=engine)
    asyncio.run(session.initialize())

    assert session.engine is engine
    assert session.canonical_deck == engine.canonical_deck()


def test_health_checks_run_until_close(proof_service, agg_config, http):
    http.add('GET', '/api/v1/status', FakeResponse(200, {'version': '2.0'}))
    session = ZKGameSession(proof_service=proof_service,
                            aggregator=AggregatorClient(agg_config, session=http))

    async def run():
        await session.initialize()
        task = session._health_task
        assert session.is_aggregator_available
        assert task is not None and not task.done()
        await asyncio.sleep(0)
        await session.close()
        return task

    task = asyncio.run(run())
    assert task.cancelled()
    assert not session.is_ready


def test_reset_clears_everything(session, proof_service):
    async def run():
        await session.initialize()
        session.prepare_deck(_backend_deck())
        await session.prove_shuffle()
        session.reset()

    asyncio.run(run())

    assert not session.is_ready
    assert session.deck is None
    assert session.canonical_deck is None
    assert session.recent_proofs == []
    assert session.engine is None
    assert session.trackers['shuffle'].status == ProofStatus.IDLE
    assert not proof_service.is_ready
    assert not proof_service.is_loaded('shuffle')

# ============================================================================
# PROOF HISTORY
# ============================================================================


def test_history_is_newest_first_and_bounded(session):
    ids = [session.track_proof('deal', _proof(i)) for i in range(5)]

    assert [r.id for r in session.recent_proofs] == list(reversed(ids))[:3]
    assert session.recent_proofs[0].proof == _proof(4)
    assert ids[0].startswith('deal-')


def test_update_proof_tracking(session):
    record_id = session.track_proof('show', _proof(1))

    assert session.update_proof_tracking(record_id, 'job-7', 'Queued')
    assert session.recent_proofs[0].job_id == 'job-7'
    assert session.recent_proofs[0].aggregator_status == 'Queued'
    assert not session.update_proof_tracking('show-unknown', 'job-8')

    session.clear_proof_history()
    assert session.recent_proofs == []

# ============================================================================
# PROOF TRACKER
# ============================================================================


def test_tracker_lifecycle(proof_service):
    tracker = ProofTracker(CircuitName.DEAL, proof_service)
    assert tracker.status == ProofStatus.IDLE

    async def run():
        await tracker.generate(DEAL_WITNESS)
        assert tracker.status == ProofStatus.GENERATED
        assert tracker.state.generation_ms is not None
        return await tracker.verify_locally()

    assert asyncio.run(run())
    assert tracker.status == ProofStatus.VERIFIED

    tracker.reset()
    assert tracker.state.proof is None


def test_tracker_failure(proof_service):
    tracker = ProofTracker(CircuitName.DEAL, proof_service)

    with pytest.raises(ZKError):
        asyncio.run(tracker.generate(dict(DEAL_WITNESS, player_id='')))
    assert tracker.status == ProofStatus.FAILED
    assert 'player_id' in tracker.state.error


def test_tracker_without_proof(proof_service):
    with pytest.raises(ZKError, match="No proof"):
        asyncio.run(ProofTracker(CircuitName.SHOW, proof_service).verify_locally())


def test_invalid_proof_marks_tracker_failed(proof_service):
    tracker = ProofTracker(CircuitName.DEAL, proof_service)

    async def run():
        await tracker.generate(DEAL_WITNESS)
        proof_service.library.verify_result = False
        return await tracker.verify_locally()

    assert not asyncio.run(run())
    assert tracker.status == ProofStatus.FAILED
    assert tracker.state.error

# ============================================================================
# GAME FLOW
# ============================================================================


def test_game_flow(proof_service, agg_config, http):
    http.add('GET', '/api/v1/status', FakeResponse(200, {}))
    http.add('POST', 'submit-proof/test-key', FakeResponse(200, {'jobId': 'job-42'}))
    session = ZKGameSession(proof_service=proof_service,
                            aggregator=AggregatorClient(agg_config, session=http))
    backend = _backend_deck()
    positions = [4, 11, 30]

    async def run():
        await session.initialize()
        session.prepare_deck(backend)
        shuffle = await session.prove_shuffle()
        deal = await session.prove_deal(9, positions)
        show = await session.prove_show(77, 9, positions, [backend[p] for p in positions])
        result = await session.verify(CircuitName.DEAL, deal,
                                      VerificationOptions(aggregator=True))
        await session.close()
        return shuffle, deal, show, result

    shuffle, deal, show, result = asyncio.run(run())

    assert [p.circuit_name for p in (shuffle, deal, show)] == ['shuffle', 'deal', 'show']
    assert result.passed
    assert result.aggregator.job_id == 'job-42'

    metrics = session.get_session_metrics()
    assert metrics['proofs_tracked'] == 0  # closed sessions drop history


def test_verify_attaches_job_to_history(proof_service, agg_config, http):
    http.add('GET', '/api/v1/status', FakeResponse(200, {}))
    http.add('POST', 'submit-proof/test-key', FakeResponse(200, {'jobId': 'job-5'}))
    session = ZKGameSession(proof_service=proof_service,
                            engine=CommitmentEngine(),
                            aggregator=AggregatorClient(agg_config, session=http))

    async def run():
        session.prepare_deck(_backend_deck())
        proof = await session.prove_shuffle()
        await session.verify('shuffle', proof, VerificationOptions(aggregator=True))

    asyncio.run(run())

    record = session.recent_proofs[0]
    assert record.circuit_name == 'shuffle'
    assert record.job_id == 'job-5'
    assert record.aggregator_status == 'Queued'
    assert session.trackers['shuffle'].status == ProofStatus.GENERATED

    metrics = session.get_session_metrics()
    assert metrics['proofs_tracked'] == 1
    assert 'generate_proof:shuffle' in metrics['performance']['operations']


def test_proving_requires_a_deck(session):
    with pytest.raises(ZKError, match="prepare_deck"):
        asyncio.run(session.prove_deal(1, [0, 1, 2]))


@pytest.mark.parametrize("positions", [[0, 1, 52], [-1, 0, 1]])
def test_positions_are_validated_before_reading_the_deck(session, positions):
    backend = _backend_deck()

    async def run():
        await session.initialize()
        session.prepare_deck(backend)
        with pytest.raises(InvalidCircuitInputError):
            await session.prove_deal(1, positions)
        with pytest.raises(InvalidCircuitInputError):
            await session.prove_show(77, 1, positions, backend[:3])

    asyncio.run(run())

    assert session.trackers['deal'].status == ProofStatus.IDLE
    assert session.trackers['show'].status == ProofStatus.IDLE
    assert session.recent_proofs == []

# ============================================================================
# AGGREGATOR HEALTH
# ============================================================================


class BrokenAggregator:
    is_configured = True

    def __init__(self):
        self.checks = 0

    async def is_available(self):
        return True

    async def check_health(self):
        self.checks += 1
        raise RuntimeError("connection reset")


def test_health_loop_survives_unexpected_errors(proof_service):
    aggregator = BrokenAggregator()
    session = ZKGameSession(SystemConfig(health_check_interval=0), proof_service=proof_service,
                            aggregator=aggregator)

    async def run():
        session.start_health_checks()
        task = session._health_task
        for _ in range(5):
            await asyncio.sleep(0)
        alive = not task.done()
        available = session.is_aggregator_available
        await session.close()
        return alive, available

    alive, available = asyncio.run(run())
    assert alive
    assert not available
    assert aggregator.checks >= 2
