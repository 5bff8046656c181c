"""
Prover/verifier capability
==========================
Abstract interface of the external proving engine, the production
implementation that drives the Noir (``nargo``) and Barretenberg (``bb``)
command line tools, and the artifact store that fetches compiled circuits and
precomputed verification keys.

All methods here are blocking; the proof service runs them in the event
loop's executor.
"""

import json
import logging
import os
import re
import shutil
import stat
import subprocess
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import requests

from .errors import BackendInitializationError, CircuitLoadError, HashingError, ProofGenerationError
from .types import CircuitArtifact

logger = logging.getLogger(__name__)

KECCAK_ORACLE = "keccak"

# ============================================================================
# CAPABILITY INTERFACE
# ============================================================================


class ProverBackend(ABC):
    """One compiled circuit bound to the proving engine"""

    def __init__(self):
        self._vk: Optional[bytes] = None

    @abstractmethod
    def execute(self, inputs: Mapping[str, Any]) -> bytes:
        """Run the circuit on a witness map, returning the solved witness"""
        raise NotImplementedError

    @abstractmethod
    def generate_proof(self, witness: bytes, keccak: bool = True) -> Tuple[bytes, List[str]]:
        raise NotImplementedError

    @abstractmethod
    def verify_proof(self, proof: bytes, public_inputs: Sequence[str], keccak: bool = True) -> bool:
        raise NotImplementedError

    @abstractmethod
    def get_verification_key(self, keccak: bool = True) -> bytes:
        raise NotImplementedError

    def load_verification_key(self, vk: bytes):
        """Install a precomputed key so it is not regenerated"""
        self._vk = bytes(vk)

    def destroy(self):
        pass


class CryptoLibrary(ABC):
    """Shared handle of the cryptographic library, one per session"""

    @abstractmethod
    def create_backend(self, artifact: CircuitArtifact, compiled: Dict[str, Any]) -> ProverBackend:
        raise NotImplementedError

    @abstractmethod
    def pedersen_hash(self, elements: Sequence[int]) -> int:
        """Noir-compatible ``std::hash::pedersen_hash`` of one input array"""
        raise NotImplementedError

    def pedersen_hash_many(self, batch: Sequence[Sequence[int]]) -> List[int]:
        return [self.pedersen_hash(elements) for elements in batch]

    def destroy(self):
        pass


def public_inputs_from_bytes(data: bytes) -> List[str]:
    """Split concatenated 32-byte words into 0x-prefixed hex strings"""
    if len(data) % 32:
        raise ProofGenerationError(f"Public inputs blob of {len(data)} bytes is not word aligned")
    return ["0x" + data[i:i + 32].hex() for i in range(0, len(data), 32)]


def public_inputs_to_bytes(public_inputs: Sequence[str]) -> bytes:
    out = bytearray()
    for value in public_inputs:
        text = str(value)
        number = int(text, 16) if text[:2].lower() == "0x" else int(text)
        out.extend(number.to_bytes(32, "big"))
    return bytes(out)

# ============================================================================
# PROVER.TOML
# ============================================================================


def _toml_value(value: Any) -> str:
    if isinstance(value, Mapping):
        body = ", ".join(f"{k} = {_toml_value(v)}" for k, v in value.items())
        return "{ " + body + " }"
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(_toml_value(v) for v in value) + "]"
    return json.dumps(str(value))


def to_prover_toml(inputs: Mapping[str, Any]) -> str:
    """Witness map -> Prover.toml consumed by ``nargo execute``"""
    return "".join(f"{key} = {_toml_value(value)}\n" for key, value in inputs.items())

# ============================================================================
# BARRETENBERG COMMAND LINE BACKEND
# ============================================================================


class BarretenbergCliBackend(ProverBackend):
    """UltraHonk proving through ``nargo execute`` and ``bb prove/verify/write_vk``"""

    def __init__(self, library: "BarretenbergCli", artifact: CircuitArtifact, compiled: Dict[str, Any]):
        super().__init__()
        self.library = library
        self.artifact = artifact
        self.compiled = compiled

    def _oracle_args(self, keccak: bool) -> List[str]:
        return ["--oracle_hash", KECCAK_ORACLE] if keccak else []

    def _write_bytecode(self, temp_path: Path) -> Path:
        bytecode_file = temp_path / f"{self.artifact.name}.json"
        _write_private(bytecode_file, json.dumps(self.compiled).encode())
        return bytecode_file

    def execute(self, inputs: Mapping[str, Any]) -> bytes:
        program_dir = self.artifact.program_dir
        if program_dir is None or not Path(program_dir).is_dir():
            raise ProofGenerationError(
                f"No Noir project directory for circuit {self.artifact.name}")

        # Copy the whole workspace so path dependencies such as ../lib resolve
        program_dir = Path(program_dir).resolve()
        workspace = program_dir.parent

        with tempfile.TemporaryDirectory() as temp_dir:
            temp_workspace = Path(temp_dir) / workspace.name
            shutil.copytree(workspace, temp_workspace,
                            ignore=shutil.ignore_patterns("target", "*.json", "*_vk", "Prover.toml"))
            work_dir = temp_workspace / program_dir.name
            _write_private(work_dir / "Prover.toml", to_prover_toml(inputs).encode())

            result = self.library.run([self.library.nargo_binary, "execute", "witness"], cwd=work_dir)
            if result.returncode != 0:
                raise ProofGenerationError(
                    f"Witness execution failed for {self.artifact.name}: {result.stderr.strip()}")

            witness_file = work_dir / "target" / "witness.gz"
            if not witness_file.exists():
                raise ProofGenerationError(f"nargo produced no witness for {self.artifact.name}")
            return witness_file.read_bytes()

    def generate_proof(self, witness: bytes, keccak: bool = True) -> Tuple[bytes, List[str]]:
        with tempfile.TemporaryDirectory() as temp_dir:
            temp_path = Path(temp_dir)
            bytecode_file = self._write_bytecode(temp_path)
            witness_file = temp_path / "witness.gz"
            _write_private(witness_file, witness)
            out_dir = temp_path / "out"
            out_dir.mkdir()

            cmd = [
                self.library.bb_binary, "prove",
                "--scheme", "ultra_honk",
                "-b", str(bytecode_file),
                "-w", str(witness_file),
                "-o", str(out_dir),
            ] + self._oracle_args(keccak)

            result = self.library.run(cmd)
            if result.returncode != 0:
                raise ProofGenerationError(
                    f"Proof generation failed for {self.artifact.name}: {result.stderr.strip()}")

            proof = (out_dir / "proof").read_bytes()
            public_file = out_dir / "public_inputs"
            public_inputs = public_inputs_from_bytes(public_file.read_bytes()) if public_file.exists() else []
            return proof, public_inputs

    def get_verification_key(self, keccak: bool = True) -> bytes:
        if self._vk is not None:
            return self._vk

        with tempfile.TemporaryDirectory() as temp_dir:
            temp_path = Path(temp_dir)
            bytecode_file = self._write_bytecode(temp_path)
            out_dir = temp_path / "out"
            out_dir.mkdir()

            cmd = [
                self.library.bb_binary, "write_vk",
                "--scheme", "ultra_honk",
                "-b", str(bytecode_file),
                "-o", str(out_dir),
            ] + self._oracle_args(keccak)

            result = self.library.run(cmd)
            if result.returncode != 0:
                raise ProofGenerationError(
                    f"Verification key generation failed for {self.artifact.name}: {result.stderr.strip()}")

            self._vk = (out_dir / "vk").read_bytes()
            logger.info(f"Generated verification key for {self.artifact.name} ({len(self._vk)} bytes)")
            return self._vk

    def verify_proof(self, proof: bytes, public_inputs: Sequence[str], keccak: bool = True) -> bool:
        vk = self.get_verification_key(keccak)

        with tempfile.TemporaryDirectory() as temp_dir:
            temp_path = Path(temp_dir)
            vk_file = temp_path / "vk"
            proof_file = temp_path / "proof"
            public_file = temp_path / "public_inputs"
            _write_private(vk_file, vk)
            _write_private(proof_file, proof)
            _write_private(public_file, public_inputs_to_bytes(public_inputs))

            cmd = [
                self.library.bb_binary, "verify",
                "--scheme", "ultra_honk",
                "-k", str(vk_file),
                "-p", str(proof_file),
                "-i", str(public_file),
            ] + self._oracle_args(keccak)

            result = self.library.run(cmd)
            return result.returncode == 0


class BarretenbergCli(CryptoLibrary):
    """Checks the toolchain once and hands out per-circuit backends"""

    def __init__(self, bb_binary: str = "bb", nargo_binary: str = "nargo", timeout: float = 600.0):
        self.bb_binary = bb_binary
        self.nargo_binary = nargo_binary
        self.timeout = timeout
        self._hash_dir: Optional[Path] = None
        self._hash_lock = threading.Lock()
        self.version = self._check_toolchain()

    def _check_toolchain(self) -> str:
        for binary in (self.bb_binary, self.nargo_binary):
            if shutil.which(binary) is None:
                raise BackendInitializationError(f"{binary} not found on PATH")

        result = self.run([self.bb_binary, "--version"])
        if result.returncode != 0:
            raise BackendInitializationError(f"{self.bb_binary} --version failed: {result.stderr.strip()}")

        version = result.stdout.strip()
        logger.info(f"Barretenberg {version} ready")
        return version

    def run(self, cmd: List[str], cwd: Optional[Path] = None) -> subprocess.CompletedProcess:
        logger.debug(f"Running {' '.join(cmd[:2])}")
        try:
            return subprocess.run(cmd, capture_output=True, text=True, cwd=cwd, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            raise ProofGenerationError(f"{cmd[0]} {cmd[1]} timed out after {self.timeout}s") from None
        except OSError as e:
            raise BackendInitializationError(f"Cannot run {cmd[0]}: {e}") from e

    def create_backend(self, artifact: CircuitArtifact, compiled: Dict[str, Any]) -> ProverBackend:
        if "bytecode" not in compiled:
            raise CircuitLoadError(f"Compiled circuit {artifact.name} has no bytecode")
        return BarretenbergCliBackend(self, artifact, compiled)

    # ------------------------------------------------------------------
    # Pedersen hashing
    # ------------------------------------------------------------------

    def pedersen_hash(self, elements: Sequence[int]) -> int:
        return self.pedersen_hash_many([elements])[0]

    def pedersen_hash_many(self, batch: Sequence[Sequence[int]]) -> List[int]:
        """One ``nargo execute`` per input arity in the batch"""
        results: List[Optional[int]] = [None] * len(batch)
        by_arity: Dict[int, List[int]] = {}
        for i, elements in enumerate(batch):
            if not elements:
                raise HashingError("Cannot hash an empty input array")
            by_arity.setdefault(len(elements), []).append(i)

        for arity, indices in by_arity.items():
            hashes = self._run_pedersen_program(arity, [batch[i] for i in indices])
            for i, value in zip(indices, hashes):
                results[i] = value
        return results

    def _pedersen_project(self, arity: int, count: int) -> Path:
        if self._hash_dir is None:
            self._hash_dir = Path(tempfile.mkdtemp(prefix="pedersen-"))

        project = self._hash_dir / f"pedersen_{arity}x{count}"
        if not project.exists():
            (project / "src").mkdir(parents=True)
            (project / "Nargo.toml").write_text(PEDERSEN_NARGO_TOML)
            (project / "src" / "main.nr").write_text(
                PEDERSEN_MAIN_NR.format(arity=arity, count=count))
        return project

    def _run_pedersen_program(self, arity: int, rows: Sequence[Sequence[int]]) -> List[int]:
        with self._hash_lock:
            project = self._pedersen_project(arity, len(rows))
            witness = {"inputs": [[str(int(e)) for e in row] for row in rows]}
            _write_private(project / "Prover.toml", to_prover_toml(witness).encode())

            result = self.run([self.nargo_binary, "execute"], cwd=project)
            if result.returncode != 0:
                raise HashingError(f"Pedersen hash program failed: {result.stderr.strip()}")

        hashes = parse_circuit_output(result.stdout)
        if len(hashes) != len(rows):
            raise HashingError(f"Pedersen hash program returned {len(hashes)} values for {len(rows)} inputs")
        logger.debug(f"Hashed {len(rows)} arrays of {arity} fields")
        return hashes

    def destroy(self):
        if self._hash_dir is not None:
            shutil.rmtree(self._hash_dir, ignore_errors=True)
            self._hash_dir = None


PEDERSEN_NARGO_TOML = """[package]
name = "pedersen_batch"
type = "bin"
authors = [""]

[dependencies]
"""

PEDERSEN_MAIN_NR = """fn main(inputs: [[Field; {arity}]; {count}]) -> pub [Field; {count}] {{
    let mut hashes = [0; {count}];
    for i in 0..{count} {{
        hashes[i] = std::hash::pedersen_hash(inputs[i]);
    }}
    hashes
}}
"""

_CIRCUIT_OUTPUT = re.compile(r"Circuit output:\s*([^\n]*)")
_FIELD_LITERAL = re.compile(r"0x[0-9a-fA-F]+|\b\d+\b")


def parse_circuit_output(stdout: str) -> List[int]:
    """Field values printed by ``nargo execute`` on its "Circuit output:" line"""
    match = _CIRCUIT_OUTPUT.search(stdout)
    if match is None:
        raise HashingError("nargo printed no circuit output")
    return [int(token, 16) if token.startswith("0x") else int(token)
            for token in _FIELD_LITERAL.findall(match.group(1))]


def _write_private(path: Path, data: bytes):
    """Write a file readable only by the current user"""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, stat.S_IRUSR | stat.S_IWUSR)
    with os.fdopen(fd, "wb") as f:
        f.write(data)

# ============================================================================
# ARTIFACT STORE
# ============================================================================


class ArtifactStore:
    """Fetches compiled circuits and raw verification keys from disk or HTTP"""

    def __init__(self, base_url: Optional[str] = None, session: Optional[requests.Session] = None,
                 timeout: float = 30.0):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.session = session or requests.Session()
        self.timeout = timeout

    def _resolve(self, location: str) -> str:
        if self.base_url and not _is_url(location):
            return f"{self.base_url}/{location.lstrip('/')}"
        return location

    def _fetch(self, location: str) -> Optional[bytes]:
        target = self._resolve(location)
        if _is_url(target):
            response = self.session.get(target, timeout=self.timeout)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response.content

        path = Path(target)
        if not path.exists():
            return None
        return path.read_bytes()

    def load_circuit(self, artifact: CircuitArtifact) -> Dict[str, Any]:
        try:
            data = self._fetch(artifact.circuit_path)
        except requests.RequestException as e:
            raise CircuitLoadError(f"Failed to load circuit {artifact.name}: {e}") from e

        if data is None:
            raise CircuitLoadError(f"Circuit {artifact.name} not found at {artifact.circuit_path}")

        try:
            compiled = json.loads(data)
        except ValueError as e:
            raise CircuitLoadError(f"Circuit {artifact.name} is not valid JSON: {e}") from e

        logger.info(f"Loaded circuit {artifact.name} ({len(data)} bytes)")
        return compiled

    def load_verification_key(self, artifact: CircuitArtifact) -> Optional[bytes]:
        """Precomputed key if one is published; None otherwise"""
        if not artifact.vk_path:
            return None
        try:
            vk = self._fetch(artifact.vk_path)
        except requests.RequestException as e:
            logger.warning(f"No precomputed VK for {artifact.name}: {e}")
            return None

        if vk:
            logger.info(f"Loaded precomputed VK for {artifact.name} ({len(vk)} bytes)")
        return vk or None


def _is_url(location: str) -> bool:
    return location.startswith("http://") or location.startswith("https://")
