"""Artifact loading, Prover.toml rendering and public input encoding"""

import json
import subprocess
from pathlib import Path

import pytest

from zk.backend import (
    ArtifactStore,
    BarretenbergCli,
    parse_circuit_output,
    public_inputs_from_bytes,
    public_inputs_to_bytes,
    to_prover_toml,
)
from zk.commitment import CommitmentEngine
from zk.errors import BackendInitializationError, CircuitLoadError, HashingError, ProofGenerationError
from zk.field import LibraryFieldHasher
from zk.types import CircuitArtifact, default_artifacts

from fakes import FakeResponse, FakeSession


def test_prover_toml():
    toml = to_prover_toml({
        'player_id': '42',
        'positions': ['0', '1', '2'],
        'merkle_paths': [{'path': ['1', '2'], 'indices': ['0', '1']}],
    })
    assert toml == (
        'player_id = "42"\n'
        'positions = ["0", "1", "2"]\n'
        'merkle_paths = [{ path = ["1", "2"], indices = ["0", "1"] }]\n'
    )


def test_public_input_words():
    data = (7).to_bytes(32, 'big') + (255).to_bytes(32, 'big')
    words = public_inputs_from_bytes(data)

    assert words == ['0x' + '0' * 63 + '7', '0x' + '0' * 62 + 'ff']
    assert public_inputs_to_bytes(words) == data
    assert public_inputs_to_bytes(['7', '255']) == data
    with pytest.raises(ProofGenerationError):
        public_inputs_from_bytes(b'\x00' * 33)


def test_artifact_store_reads_local_files(tmp_path):
    artifacts = default_artifacts(tmp_path)
    (tmp_path / 'deal_circuit.json').write_text(json.dumps({'bytecode': 'H4sI', 'abi': {}}))
    (tmp_path / 'deal_vk').write_bytes(b'\x01\x02')
    store = ArtifactStore()

    assert store.load_circuit(artifacts['deal'])['bytecode'] == 'H4sI'
    assert store.load_verification_key(artifacts['deal']) == b'\x01\x02'
    assert store.load_verification_key(artifacts['show']) is None
    with pytest.raises(CircuitLoadError):
        store.load_circuit(artifacts['show'])


def test_artifact_store_rejects_bad_json(tmp_path):
    artifacts = default_artifacts(tmp_path)
    (tmp_path / 'shuffle_circuit.json').write_text('{not json')

    with pytest.raises(CircuitLoadError, match='not valid JSON'):
        ArtifactStore().load_circuit(artifacts['shuffle'])


def test_artifact_store_over_http():
    session = FakeSession()
    session.add('GET', 'circuits/deal_circuit.json', FakeResponse(200, {'bytecode': 'abc'}))
    session.add('GET', 'circuits/deal_vk', FakeResponse(404, None))
    store = ArtifactStore('https://cdn.test/', session=session)
    artifact = default_artifacts('circuits')['deal']

    assert store.load_circuit(artifact) == {'bytecode': 'abc'}
    assert store.load_verification_key(artifact) is None
    assert session.requests[0][1] == 'https://cdn.test/circuits/deal_circuit.json'


def test_artifact_store_http_errors_are_load_errors():
    session = FakeSession()
    session.add('GET', 'circuits/deal_circuit.json', FakeResponse(500, {}))
    store = ArtifactStore('https://cdn.test', session=session)

    with pytest.raises(CircuitLoadError):
        store.load_circuit(default_artifacts('circuits')['deal'])


def test_missing_toolchain(monkeypatch):
    monkeypatch.setattr('zk.backend.shutil.which', lambda binary: None)
    with pytest.raises(BackendInitializationError, match='not found'):
        BarretenbergCli('bb-missing', 'nargo-missing')


# ============================================================================
# COMMAND LINE LIBRARY
# ============================================================================


@pytest.fixture
def cli(monkeypatch):
    monkeypatch.setattr(BarretenbergCli, '_check_toolchain', lambda self: 'test')
    library = BarretenbergCli()
    yield library
    library.destroy()


def _weighted(row):
    return sum(int(v) * 31 ** i for i, v in enumerate(row)) + len(row)


class FakeNargo:
    """Answers ``nargo execute`` for the generated Pedersen batch programs"""

    def __init__(self, returncode=0, stdout=None):
        self.calls = []
        self.returncode = returncode
        self.stdout = stdout

    def __call__(self, cmd, cwd=None):
        project = Path(cwd)
        self.calls.append((cmd, project, (project / 'src' / 'main.nr').read_text()))
        rows = json.loads((project / 'Prover.toml').read_text().split('=', 1)[1])
        output = ', '.join(hex(_weighted(row)) for row in rows)
        stdout = self.stdout if self.stdout is not None else (
            '[pedersen_batch] Circuit witness successfully solved\n'
            f'[pedersen_batch] Circuit output: [{output}]\n'
            '[pedersen_batch] Witness saved to target/pedersen_batch.gz\n')
        return subprocess.CompletedProcess(cmd, self.returncode, stdout=stdout, stderr='constraint failed')


def test_pedersen_batches_by_arity(cli):
    nargo = FakeNargo()
    cli.run = nargo

    batch = [[1, 2], [1, 2, 3], [3, 4], [7, 8, 9, 10]]
    assert cli.pedersen_hash_many(batch) == [_weighted(row) for row in batch]
    assert cli.pedersen_hash([5, 6]) == _weighted([5, 6])

    assert len(nargo.calls) == 4
    cmd, project, source = nargo.calls[0]
    assert cmd == ['nargo', 'execute']
    assert project.name == 'pedersen_2x2'
    assert '[[Field; 2]; 2]' in source
    assert 'std::hash::pedersen_hash(inputs[i])' in source


def test_pedersen_program_failures(cli):
    cli.run = FakeNargo(returncode=1)
    with pytest.raises(HashingError, match='constraint failed'):
        cli.pedersen_hash([1, 2])

    cli.run = FakeNargo(stdout='[pedersen_batch] Circuit witness successfully solved\n')
    with pytest.raises(HashingError, match='no circuit output'):
        cli.pedersen_hash([1, 2])

    cli.run = FakeNargo(stdout='Circuit output: [0x01]\n')
    with pytest.raises(HashingError, match='1 values for 2 inputs'):
        cli.pedersen_hash_many([[1, 2], [3, 4]])

    with pytest.raises(HashingError, match='empty'):
        cli.pedersen_hash([])


def test_destroy_removes_hash_programs(cli):
    cli.run = FakeNargo()
    cli.pedersen_hash([1, 2, 3])
    hash_dir = cli._hash_dir

    assert (hash_dir / 'pedersen_3x1' / 'Nargo.toml').exists()
    cli.destroy()
    assert not hash_dir.exists()


def test_commitment_engine_over_cli_library(cli):
    nargo = FakeNargo()
    cli.run = nargo
    engine = CommitmentEngine(LibraryFieldHasher(cli))

    deck = engine.canonical_deck()
    committed = engine.commit_deck(deck, list(range(1, 53)))

    assert deck[0] == _weighted([1, 2, 0])
    assert committed.commitments[0] == _weighted([2, deck[0], 1])
    # canonical deck, commitments and six tree levels
    assert len(nargo.calls) == 8


def test_parse_circuit_output():
    assert parse_circuit_output('[p] Circuit output: [0x0a, 0x1f]\nsaved to p2.gz') == [10, 31]
    assert parse_circuit_output('Circuit output: 42') == [42]


def test_execute_copies_sibling_crates(cli, tmp_path):
    circuits = tmp_path / 'circuits'
    (circuits / 'deal' / 'src').mkdir(parents=True)
    (circuits / 'deal' / 'Nargo.toml').write_text('[dependencies]\nlib = { path = "../lib" }\n')
    (circuits / 'deal' / 'src' / 'main.nr').write_text('fn main() {}\n')
    (circuits / 'lib' / 'src').mkdir(parents=True)
    (circuits / 'lib' / 'src' / 'hash.nr').write_text('pub fn hash() {}\n')
    seen = []

    def nargo(cmd, cwd=None):
        work_dir = Path(cwd)
        seen.append(work_dir)
        if not (work_dir.parent / 'lib' / 'src' / 'hash.nr').exists():
            return subprocess.CompletedProcess(cmd, 1, stdout='', stderr='Cannot find ../lib')
        assert 'player_id = "7"' in (work_dir / 'Prover.toml').read_text()
        (work_dir / 'target').mkdir()
        (work_dir / 'target' / 'witness.gz').write_bytes(b'solved')
        return subprocess.CompletedProcess(cmd, 0, stdout='', stderr='')

    cli.run = nargo
    artifact = CircuitArtifact(name='deal', circuit_path='unused', program_dir=circuits / 'deal')
    backend = cli.create_backend(artifact, {'bytecode': 'H4sI'})

    assert backend.execute({'player_id': '7'}) == b'solved'
    assert seen[0].name == 'deal'
    assert seen[0] != circuits / 'deal'
    assert not (circuits / 'deal' / 'Prover.toml').exists()


def test_cli_library_requires_bytecode(cli):
    with pytest.raises(CircuitLoadError):
        cli.create_backend(default_artifacts('circuits')['deal'], {})
