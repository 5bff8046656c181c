"""
Proof Service
=============
Owns the circuit/backend lifecycle and drives proof generation and local
verification.

Per circuit: Unloaded -> Loading -> Loaded (vk present | pending). Loads are
single-flight per circuit name, the cryptographic library handle is created
once per session, and proving/verification against one loaded circuit is
serialized.
"""

import asyncio
import hashlib
import json
import logging
import time
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Union

from config import ZKConfig

from .backend import ArtifactStore, BarretenbergCli, CryptoLibrary
from .circuit_inputs import DealInput, ShowInput, ShuffleInput, validate_inputs
from .errors import (
    BackendInitializationError,
    CircuitLoadError,
    InvalidCircuitInputError,
    ProofGenerationError,
    ZKError,
)
from .field import bytes_to_hex, hex_to_bytes
from .types import (
    CachedCircuit,
    CircuitArtifact,
    CircuitName,
    VerificationResult,
    ZKProof,
    default_artifacts,
)

logger = logging.getLogger(__name__)

CircuitInput = Union[ShuffleInput, DealInput, ShowInput, Mapping[str, Any]]

LIBRARY_KEY = "__library__"

# ============================================================================
# SINGLE-FLIGHT
# ============================================================================


class SingleFlight:
    """At most one in-flight task per key; every caller awaits the same task"""

    def __init__(self):
        self._inflight: Dict[str, asyncio.Task] = {}

    async def do(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._done(k, t))
        # One cancelled waiter must not cancel the shared load
        return await asyncio.shield(task)

    def _done(self, key: str, task: asyncio.Task):
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            task.exception()

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    def forget_all(self):
        self._inflight.clear()


def _circuit_key(name: Union[str, CircuitName]) -> str:
    return name.value if isinstance(name, CircuitName) else str(name)


def _default_library_factory(config: ZKConfig) -> Callable[[], CryptoLibrary]:
    def factory() -> CryptoLibrary:
        return BarretenbergCli(config.bb_binary, config.nargo_binary, config.command_timeout)
    return factory

# ============================================================================
# PROOF SERVICE
# ============================================================================


class ProofService:
    """Load-once circuit cache, proof generation and local verification"""

    def __init__(self,
                 config: Optional[ZKConfig] = None,
                 library_factory: Optional[Callable[[], CryptoLibrary]] = None,
                 artifact_store: Optional[ArtifactStore] = None,
                 artifacts: Optional[Dict[str, CircuitArtifact]] = None):
        self.config = config or ZKConfig()
        self.library_factory = library_factory or _default_library_factory(self.config)
        self.artifact_store = artifact_store or ArtifactStore(self.config.circuit_base_url)
        self.artifacts = artifacts or default_artifacts(self.config.circuits_dir)

        self._library: Optional[CryptoLibrary] = None
        self._circuits: Dict[str, CachedCircuit] = {}
        self._flight = SingleFlight()
        self._generation = 0

        self._proof_cache: "OrderedDict[str, ZKProof]" = OrderedDict()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        return self._library is not None

    @property
    def library(self) -> Optional[CryptoLibrary]:
        return self._library

    def is_loaded(self, name: Union[str, CircuitName]) -> bool:
        return _circuit_key(name) in self._circuits

    def is_loading(self, name: Union[str, CircuitName]) -> bool:
        return self._flight.in_flight(_circuit_key(name))

    async def get_library(self) -> CryptoLibrary:
        """Shared library handle, created once per session"""
        if self._library is not None:
            return self._library
        return await self._flight.do(LIBRARY_KEY, lambda: self._init_library(self._generation))

    async def _init_library(self, generation: int) -> CryptoLibrary:
        loop = asyncio.get_running_loop()
        start = time.time()
        try:
            library = await loop.run_in_executor(None, self.library_factory)
        except ZKError:
            raise
        except Exception as e:
            raise BackendInitializationError(f"Failed to initialize cryptographic library: {e}") from e

        if generation != self._generation:
            raise BackendInitializationError("Proof service was reset during library initialization")

        self._library = library
        logger.info(f"Cryptographic library initialized in {time.time() - start:.2f}s")
        return library

    async def load_circuit(self, name: Union[str, CircuitName]) -> CachedCircuit:
        """Idempotent; concurrent callers share one load"""
        key = _circuit_key(name)
        cached = self._circuits.get(key)
        if cached is not None:
            return cached
        if key not in self.artifacts:
            raise CircuitLoadError(f"Unknown circuit: {key}")
        return await self._flight.do(key, lambda: self._load(key, self._generation))

    async def _load(self, name: str, generation: int) -> CachedCircuit:
        artifact = self.artifacts[name]
        loop = asyncio.get_running_loop()
        start = time.time()

        library = await self.get_library()

        compiled = await loop.run_in_executor(None, self.artifact_store.load_circuit, artifact)

        try:
            backend = await loop.run_in_executor(None, library.create_backend, artifact, compiled)
        except ZKError:
            raise
        except Exception as e:
            raise CircuitLoadError(f"Failed to create backend for {name}: {e}") from e

        vk = await loop.run_in_executor(None, self.artifact_store.load_verification_key, artifact)
        if vk:
            backend.load_verification_key(vk)

        if generation != self._generation:
            backend.destroy()
            raise CircuitLoadError(f"Circuit cache was cleared while loading {name}")

        cached = CachedCircuit(name=name, compiled=compiled, backend=backend, vk=vk, lock=asyncio.Lock())
        self._circuits[name] = cached
        logger.info(f"Circuit {name} loaded in {time.time() - start:.2f}s "
                    f"(vk {'precomputed' if vk else 'pending'})")
        return cached

    async def preload_circuits(self, names: Optional[Iterable[Union[str, CircuitName]]] = None) -> List[CachedCircuit]:
        """Load all circuits in parallel"""
        keys = [_circuit_key(n) for n in (names or self.artifacts.keys())]
        loaded = await asyncio.gather(*[self.load_circuit(k) for k in keys])
        logger.info(f"Preloaded circuits: {', '.join(keys)}")
        return list(loaded)

    def clear_cache(self):
        """Drop circuits, backends, proof cache and the library handle"""
        self._generation += 1
        circuits = list(self._circuits.values())
        library = self._library

        self._circuits = {}
        self._library = None
        self._proof_cache = OrderedDict()
        self._flight.forget_all()

        for cached in circuits:
            cached.backend.destroy()
        if library is not None:
            library.destroy()

        logger.info("Proof service cache cleared")

    # ------------------------------------------------------------------
    # Proof generation
    # ------------------------------------------------------------------

    def _witness_map(self, name: str, inputs: CircuitInput) -> Dict[str, Any]:
        if isinstance(inputs, (ShuffleInput, DealInput, ShowInput)):
            if inputs.circuit != name:
                raise InvalidCircuitInputError(
                    f"{type(inputs).__name__} cannot be proven with the {name} circuit")
            witness = inputs.to_witness_map()
        elif isinstance(inputs, Mapping):
            witness = dict(inputs)
        else:
            raise InvalidCircuitInputError(f"Unsupported circuit input type {type(inputs).__name__}")

        validate_inputs(witness)
        return witness

    def _cache_key(self, name: str, witness: Dict[str, Any]) -> str:
        witness_hash = hashlib.sha256(json.dumps(witness, sort_keys=True).encode()).hexdigest()
        return f"{name}:{witness_hash}"

    def _cached_proof(self, name: str, cache_key: str) -> Optional[ZKProof]:
        proof = self._proof_cache.get(cache_key)
        if proof is not None:
            self._proof_cache.move_to_end(cache_key)
            logger.debug(f"Proof cache hit for {name}")
        return proof

    async def generate_proof(self, name: Union[str, CircuitName], inputs: CircuitInput) -> ZKProof:
        """Validate, execute the witness and prove with the Keccak transcript"""
        key = _circuit_key(name)
        witness = self._witness_map(key, inputs)

        cache_key = self._cache_key(key, witness)
        cached_proof = self._cached_proof(key, cache_key)
        if cached_proof is not None:
            return cached_proof

        circuit = await self.load_circuit(key)
        generation = self._generation
        loop = asyncio.get_running_loop()
        start = time.time()

        async with circuit.lock:
            # A concurrent call with the same witness may have finished first
            cached_proof = self._cached_proof(key, cache_key)
            if cached_proof is not None:
                return cached_proof

            try:
                solved = await loop.run_in_executor(None, circuit.backend.execute, witness)
            except ZKError:
                raise
            except Exception as e:
                raise ProofGenerationError(f"Witness execution failed for {key}: {e}") from e

            try:
                proof_bytes, public_inputs = await loop.run_in_executor(
                    None, circuit.backend.generate_proof, solved, True)
                if circuit.vk is None:
                    circuit.vk = await loop.run_in_executor(
                        None, circuit.backend.get_verification_key, True)
            except ZKError:
                raise
            except Exception as e:
                raise ProofGenerationError(f"Proof generation failed for {key}: {e}") from e

        generation_time = time.time() - start
        proof = ZKProof(
            proof=bytes(proof_bytes),
            public_inputs=[str(x) for x in public_inputs],
            verification_key=circuit.vk,
            circuit_name=key,
            generation_time=generation_time,
        )

        if generation == self._generation:
            self._proof_cache[cache_key] = proof
            self._proof_cache.move_to_end(cache_key)
            while len(self._proof_cache) > self.config.proof_cache_size:
                self._proof_cache.popitem(last=False)

        logger.info(f"Generated {key} proof in {generation_time:.2f}s "
                    f"({len(proof.proof)} bytes, {len(proof.public_inputs)} public inputs)")
        return proof

    async def generate_shuffle_proof(self, inputs: ShuffleInput) -> ZKProof:
        return await self.generate_proof(CircuitName.SHUFFLE, inputs)

    async def generate_deal_proof(self, inputs: DealInput) -> ZKProof:
        return await self.generate_proof(CircuitName.DEAL, inputs)

    async def generate_show_proof(self, inputs: ShowInput) -> ZKProof:
        return await self.generate_proof(CircuitName.SHOW, inputs)

    async def get_verification_key(self, name: Union[str, CircuitName]) -> bytes:
        """Precomputed key, or generated on first use and cached"""
        circuit = await self.load_circuit(name)
        if circuit.vk is not None:
            return circuit.vk

        loop = asyncio.get_running_loop()
        async with circuit.lock:
            if circuit.vk is None:
                try:
                    circuit.vk = await loop.run_in_executor(
                        None, circuit.backend.get_verification_key, True)
                except ZKError:
                    raise
                except Exception as e:
                    raise ProofGenerationError(f"Verification key generation failed for {circuit.name}: {e}") from e
        return circuit.vk

    # ------------------------------------------------------------------
    # Local verification
    # ------------------------------------------------------------------

    async def verify_proof_locally(self, name: Union[str, CircuitName], proof: ZKProof) -> VerificationResult:
        """Never raises; failures come back as VerificationResult.error"""
        key = _circuit_key(name)
        start = time.time()
        try:
            circuit = await self.load_circuit(key)
            loop = asyncio.get_running_loop()
            async with circuit.lock:
                valid = await loop.run_in_executor(
                    None, circuit.backend.verify_proof, proof.proof, list(proof.public_inputs), True)
        except Exception as e:
            logger.error(f"Local verification of {key} proof failed: {e}")
            return VerificationResult(valid=False, error=str(e))

        logger.info(f"Local verification of {key} proof: {'valid' if valid else 'INVALID'} "
                    f"in {time.time() - start:.2f}s")
        return VerificationResult(valid=bool(valid))

    async def verify_shuffle_proof(self, proof: ZKProof) -> VerificationResult:
        return await self.verify_proof_locally(CircuitName.SHUFFLE, proof)

    async def verify_deal_proof(self, proof: ZKProof) -> VerificationResult:
        return await self.verify_proof_locally(CircuitName.DEAL, proof)

    async def verify_show_proof(self, proof: ZKProof) -> VerificationResult:
        return await self.verify_proof_locally(CircuitName.SHOW, proof)


# ============================================================================
# PROOF ENCODING
# ============================================================================


def proof_to_hex(proof: Union[ZKProof, bytes]) -> str:
    data = proof.proof if isinstance(proof, ZKProof) else proof
    return bytes_to_hex(data)


def hex_to_proof(hex_proof: str) -> bytes:
    return hex_to_bytes(hex_proof)
