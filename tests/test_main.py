"""Command line entry point"""

import json
import logging

import pytest

from main import build_parser, main

from fakes import FakeLibrary


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in saved_handlers:
        root.addHandler(handler)
    root.setLevel(saved_level)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text(f"log_dir: {tmp_path / 'logs'}\n")
    return path


def test_deck_command_writes_json(config_file, tmp_path):
    output = tmp_path / 'deck.json'

    with pytest.raises(SystemExit) as info:
        main(['--config', str(config_file), 'deck', '--offline', '-o', str(output)])

    assert info.value.code == 0
    data = json.loads(output.read_text())
    assert data['hasher'] == 'sha256-reference'
    assert len(data['canonical_deck']) == 52
    assert all(len(uid) == 66 for uid in data['canonical_deck'])
    assert data['sample_merkle_root'].startswith('0x')


def test_deck_command_hashes_with_the_library(config_file, tmp_path, monkeypatch):
    libraries = []

    def create_library(*args):
        libraries.append(FakeLibrary())
        return libraries[-1]

    monkeypatch.setattr('main.BarretenbergCli', create_library)
    output = tmp_path / 'deck.json'

    with pytest.raises(SystemExit) as info:
        main(['--config', str(config_file), 'deck', '-o', str(output)])

    assert info.value.code == 0
    assert json.loads(output.read_text())['hasher'] == 'pedersen'
    assert libraries[0].hash_calls >= 52
    assert libraries[0].destroyed


def test_deck_command_without_toolchain(config_file, monkeypatch):
    monkeypatch.setattr('zk.backend.shutil.which', lambda binary: None)

    with pytest.raises(SystemExit) as info:
        main(['--config', str(config_file), 'deck'])
    assert info.value.code == 1


def test_register_vks_rejects_unknown_circuit(config_file, monkeypatch):
    monkeypatch.setenv('KURIER_API_KEY', 'test-key')

    with pytest.raises(SystemExit) as info:
        main(['--config', str(config_file), 'register-vks', 'river'])
    assert info.value.code == 1


def test_register_vks_requires_api_key(config_file):
    with pytest.raises(SystemExit) as info:
        main(['--config', str(config_file), 'register-vks'])
    assert info.value.code == 1


def test_parser_restricts_circuits():
    args = build_parser().parse_args(['verify', 'deal', 'proof.json', '--aggregator', '--wait'])
    assert args.aggregator and args.wait and not args.on_chain

    with pytest.raises(SystemExit):
        build_parser().parse_args(['prove', 'river', 'inputs.json'])
