import pytest

from config import AggregatorConfig, ZKConfig
from zk.commitment import CommitmentEngine
from zk.proof_service import ProofService

from fakes import FakeArtifactStore, FakeSession, LibraryFactory


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("KURIER_API_KEY", "KURIER_API_URL", "ONCHAIN_RPC_URL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def engine():
    return CommitmentEngine()


@pytest.fixture
def library_factory():
    return LibraryFactory()


@pytest.fixture
def artifact_store():
    return FakeArtifactStore()


@pytest.fixture
def proof_service(library_factory, artifact_store, tmp_path):
    return ProofService(ZKConfig(circuits_dir=tmp_path, proof_cache_size=4),
                        library_factory=library_factory,
                        artifact_store=artifact_store)


@pytest.fixture
def agg_config(clean_env):
    return AggregatorConfig(api_url="https://aggregator.test/api/v1", api_key="test-key",
                            poll_interval=0, max_poll_attempts=60)


@pytest.fixture
def http():
    return FakeSession()
