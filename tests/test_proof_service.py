"""Circuit loading, proof generation and local verification"""

import asyncio

import pytest

from config import ZKConfig
from zk.circuit_inputs import build_shuffle_input
from zk.errors import (
    BackendInitializationError,
    CircuitLoadError,
    InvalidCircuitInputError,
    ProofGenerationError,
)
from zk.proof_service import ProofService, hex_to_proof, proof_to_hex
from zk.types import CircuitName, ZKProof

from fakes import FakeArtifactStore, LibraryFactory


def _shuffle_input(engine):
    canonical = engine.canonical_deck()
    return build_shuffle_input(canonical, list(reversed(canonical)))


DEAL_WITNESS = {'player_id': '1', 'merkle_root': '2', 'positions': ['0', '1', '2']}


# ============================================================================
# LOADING
# ============================================================================


def test_concurrent_loads_share_one_initialization(proof_service, library_factory, artifact_store):
    async def run():
        return await asyncio.gather(*[proof_service.load_circuit("deal") for _ in range(5)])

    loaded = asyncio.run(run())

    assert library_factory.calls == 1
    assert library_factory.library.create_backend_calls == 1
    assert artifact_store.circuit_loads == ["deal"]
    assert all(c is loaded[0] for c in loaded)
    assert proof_service.is_loaded(CircuitName.DEAL)
    assert not proof_service.is_loading("deal")


def test_preload_uses_one_library_for_all_circuits(proof_service, library_factory):
    circuits = asyncio.run(proof_service.preload_circuits())

    assert sorted(c.name for c in circuits) == ["deal", "show", "shuffle"]
    assert library_factory.calls == 1
    assert library_factory.library.create_backend_calls == 3
    assert proof_service.is_ready


def test_clear_cache_then_reload(proof_service, library_factory):
    async def run():
        first = await proof_service.load_circuit("show")
        proof_service.clear_cache()
        assert not proof_service.is_loaded("show")
        assert not proof_service.is_ready
        second = await proof_service.load_circuit("show")
        return first, second

    first, second = asyncio.run(run())

    assert first is not second
    assert first.backend.destroyed
    assert library_factory.calls == 2
    assert library_factory.libraries[0].destroyed


def test_clear_cache_during_load_does_not_repopulate(proof_service):
    async def run():
        task = asyncio.ensure_future(proof_service.load_circuit("deal"))
        await asyncio.sleep(0)
        proof_service.clear_cache()
        with pytest.raises((CircuitLoadError, BackendInitializationError)):
            await task
        assert not proof_service.is_loaded("deal")
        return await proof_service.load_circuit("deal")

    reloaded = asyncio.run(run())
    assert proof_service.is_loaded("deal")
    assert reloaded.name == "deal"


def test_failed_library_init_is_not_sticky(tmp_path):
    factory = LibraryFactory(failures=1)
    service = ProofService(ZKConfig(circuits_dir=tmp_path), library_factory=factory,
                           artifact_store=FakeArtifactStore())

    async def run():
        with pytest.raises(BackendInitializationError):
            await service.load_circuit("shuffle")
        return await service.load_circuit("shuffle")

    loaded = asyncio.run(run())
    assert loaded.name == "shuffle"
    assert factory.calls == 2


def test_missing_circuit_is_not_sticky(library_factory, tmp_path):
    store = FakeArtifactStore(missing=["deal"])
    service = ProofService(ZKConfig(circuits_dir=tmp_path), library_factory=library_factory,
                           artifact_store=store)

    async def run():
        with pytest.raises(CircuitLoadError):
            await service.load_circuit("deal")
        store.missing.clear()
        return await service.load_circuit("deal")

    assert asyncio.run(run()).name == "deal"
    assert store.circuit_loads == ["deal", "deal"]


def test_unknown_circuit(proof_service):
    with pytest.raises(CircuitLoadError):
        asyncio.run(proof_service.load_circuit("river"))


def test_precomputed_vk_is_used(library_factory, tmp_path):
    store = FakeArtifactStore(vks={"deal": b"precomputed"})
    service = ProofService(ZKConfig(circuits_dir=tmp_path), library_factory=library_factory,
                           artifact_store=store)

    async def run():
        proof = await service.generate_proof("deal", DEAL_WITNESS)
        return proof, await service.get_verification_key("deal")

    proof, vk = asyncio.run(run())
    assert proof.verification_key == b"precomputed"
    assert vk == b"precomputed"
    assert library_factory.library.backends[0].vk_calls == 0

# ============================================================================
# PROOF GENERATION
# ============================================================================


def test_generate_proof_uses_keccak_and_lazy_vk(proof_service, library_factory, engine):
    proof = asyncio.run(proof_service.generate_shuffle_proof(_shuffle_input(engine)))
    backend = library_factory.library.backends[0]

    assert proof.circuit_name == "shuffle"
    assert proof.proof.startswith(b"proof-shuffle")
    assert proof.public_inputs == []
    assert proof.verification_key == b"vk-shuffle"
    assert backend.execute_calls == 1
    assert backend.keccak_flags and all(backend.keccak_flags)


def test_deal_proof_public_inputs(proof_service):
    proof = asyncio.run(proof_service.generate_proof(CircuitName.DEAL, DEAL_WITNESS))
    assert len(proof.public_inputs) == 2
    assert proof.public_inputs[0].endswith("07")


def test_identical_inputs_hit_the_proof_cache(proof_service, library_factory, engine):
    async def run():
        first = await proof_service.generate_proof("shuffle", _shuffle_input(engine))
        second = await proof_service.generate_proof("shuffle", _shuffle_input(engine))
        return first, second

    first, second = asyncio.run(run())
    assert first is second
    assert library_factory.library.backends[0].prove_calls == 1


def test_concurrent_identical_inputs_prove_once(proof_service, library_factory):
    async def run():
        return await asyncio.gather(*[proof_service.generate_proof("deal", DEAL_WITNESS) for _ in range(3)])

    proofs = asyncio.run(run())
    assert all(p is proofs[0] for p in proofs)
    assert library_factory.library.backends[0].execute_calls == 1
    assert library_factory.library.backends[0].prove_calls == 1


def test_proof_cache_is_bounded(proof_service, library_factory):
    async def run():
        for i in range(6):
            await proof_service.generate_proof("deal", dict(DEAL_WITNESS, player_id=str(i + 1)))
        await proof_service.generate_proof("deal", dict(DEAL_WITNESS, player_id="1"))

    asyncio.run(run())
    # cache size 4: player 1 was evicted and proven again
    assert library_factory.library.backends[0].prove_calls == 7


def test_witness_failure_is_a_proof_generation_error(proof_service, library_factory):
    async def run():
        library = await proof_service.get_library()
        library.fail_execute = True
        with pytest.raises(ProofGenerationError, match="Witness execution failed"):
            await proof_service.generate_proof("deal", DEAL_WITNESS)
        library.fail_execute = False
        return await proof_service.generate_proof("deal", DEAL_WITNESS)

    assert asyncio.run(run()).circuit_name == "deal"


def test_placeholder_inputs_fail_before_proving(proof_service, library_factory):
    with pytest.raises(InvalidCircuitInputError, match="merkle_root"):
        asyncio.run(proof_service.generate_proof("deal", dict(DEAL_WITNESS, merkle_root="0x")))
    assert library_factory.calls == 0


def test_input_type_must_match_circuit(proof_service, engine):
    with pytest.raises(InvalidCircuitInputError):
        asyncio.run(proof_service.generate_proof("deal", _shuffle_input(engine)))

# ============================================================================
# LOCAL VERIFICATION
# ============================================================================


def test_verify_valid_and_invalid(proof_service):
    async def run():
        proof = await proof_service.generate_proof("deal", DEAL_WITNESS)
        valid = await proof_service.verify_deal_proof(proof)
        proof_service.library.verify_result = False
        invalid = await proof_service.verify_deal_proof(proof)
        return valid, invalid

    valid, invalid = asyncio.run(run())
    assert valid.valid and valid.error is None
    assert not invalid.valid


def test_verify_never_raises(proof_service):
    proof = ZKProof(proof=b"\x01", public_inputs=[])

    async def run():
        library = await proof_service.get_library()
        library.raise_on_verify = True
        return await proof_service.verify_proof_locally("show", proof)

    result = asyncio.run(run())
    assert not result.valid
    assert "verifier crashed" in result.error

    unknown = asyncio.run(proof_service.verify_proof_locally("river", proof))
    assert not unknown.valid
    assert "Unknown circuit" in unknown.error


def test_proof_hex_helpers():
    proof = ZKProof(proof=b"\x00\xab", public_inputs=["1"])
    assert proof_to_hex(proof) == "0x00ab"
    assert hex_to_proof("0x00ab") == b"\x00\xab"


def test_proof_dict_round_trip():
    proof = ZKProof(proof=b"\x01\x02", public_inputs=["0x05"], verification_key=b"\x03",
                    circuit_name="deal", generation_time=1.5)
    assert ZKProof.from_dict(proof.to_dict()) == proof
