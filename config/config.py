from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any
import logging
import os

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config.yaml")


@dataclass
class ZKConfig:
    circuits_dir: Path = field(default_factory=lambda: Path("circuits"))
    circuit_base_url: Optional[str] = None
    merkle_depth: int = 6
    proof_cache_size: int = 100
    bb_binary: str = "bb"
    nargo_binary: str = "nargo"
    command_timeout: float = 600.0

    def __post_init__(self):
        self.circuits_dir = Path(self.circuits_dir)


@dataclass
class AggregatorConfig:
    api_url: str = "https://api-testnet.kurier.xyz/api/v1"
    api_key: Optional[str] = None
    poll_interval: float = 5.0
    max_poll_attempts: int = 60
    health_cache_seconds: float = 60.0
    chain_id: int = 84532
    proof_type: str = "ultrahonk"
    proof_variant: str = "ZK"
    vk_hashes_file: Optional[Path] = None
    request_timeout: float = 30.0

    def __post_init__(self):
        self.api_url = os.environ.get("KURIER_API_URL", self.api_url)
        self.api_key = os.environ.get("KURIER_API_KEY", self.api_key) or None
        if self.vk_hashes_file is not None:
            self.vk_hashes_file = Path(self.vk_hashes_file)


@dataclass
class OnChainConfig:
    rpc_url: str = "https://sepolia.base.org"
    addresses_file: Path = field(default_factory=lambda: Path("contracts/addresses.json"))
    network: str = "baseSepolia"
    fallback_network: str = "hardhat"
    confirmations: int = 1
    receipt_timeout: float = 120.0

    def __post_init__(self):
        self.rpc_url = os.environ.get("ONCHAIN_RPC_URL", self.rpc_url)
        self.addresses_file = Path(self.addresses_file)


@dataclass
class SystemConfig:
    zk_config: ZKConfig = field(default_factory=ZKConfig)
    aggregator_config: AggregatorConfig = field(default_factory=AggregatorConfig)
    onchain_config: OnChainConfig = field(default_factory=OnChainConfig)

    log_dir: Path = field(default_factory=lambda: Path("logs"))
    log_level: str = "INFO"
    health_check_interval: float = 120.0
    max_proof_history: int = 50

    def __post_init__(self):
        self.log_dir = Path(self.log_dir)


def _section(config_data: Dict[str, Any], name: str) -> Dict[str, Any]:
    return config_data.get(name) or {}


def load_config(config_path: Optional[Path] = None) -> SystemConfig:
    """Load configuration from file or return default"""
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    config_path = Path(config_path)

    if not config_path.exists():
        return SystemConfig()

    try:
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Could not load config file {config_path}: {e}; using defaults")
        return SystemConfig()

    zk_data = _section(config_data, 'zk_proofs')
    zk_config = ZKConfig(
        circuits_dir=Path(zk_data.get('circuits_dir', 'circuits')),
        circuit_base_url=zk_data.get('circuit_base_url'),
        merkle_depth=zk_data.get('merkle_depth', 6),
        proof_cache_size=zk_data.get('proof_cache_size', 100),
        bb_binary=zk_data.get('bb_binary', 'bb'),
        nargo_binary=zk_data.get('nargo_binary', 'nargo'),
        command_timeout=zk_data.get('command_timeout', 600.0),
    )

    agg_data = _section(config_data, 'aggregator')
    aggregator_config = AggregatorConfig(
        api_url=agg_data.get('api_url', AggregatorConfig.api_url),
        api_key=agg_data.get('api_key'),
        poll_interval=agg_data.get('poll_interval', 5.0),
        max_poll_attempts=agg_data.get('max_poll_attempts', 60),
        health_cache_seconds=agg_data.get('health_cache_seconds', 60.0),
        chain_id=agg_data.get('chain_id', 84532),
        proof_type=agg_data.get('proof_type', 'ultrahonk'),
        proof_variant=agg_data.get('proof_variant', 'ZK'),
        vk_hashes_file=agg_data.get('vk_hashes_file'),
        request_timeout=agg_data.get('request_timeout', 30.0),
    )

    chain_data = _section(config_data, 'onchain')
    onchain_config = OnChainConfig(
        rpc_url=chain_data.get('rpc_url', OnChainConfig.rpc_url),
        addresses_file=Path(chain_data.get('addresses_file', 'contracts/addresses.json')),
        network=chain_data.get('network', 'baseSepolia'),
        fallback_network=chain_data.get('fallback_network', 'hardhat'),
        confirmations=chain_data.get('confirmations', 1),
        receipt_timeout=chain_data.get('receipt_timeout', 120.0),
    )

    return SystemConfig(
        zk_config=zk_config,
        aggregator_config=aggregator_config,
        onchain_config=onchain_config,
        log_dir=Path(config_data.get('log_dir', 'logs')),
        log_level=config_data.get('log_level', 'INFO'),
        health_check_interval=config_data.get('health_check_interval', 120.0),
        max_proof_history=config_data.get('max_proof_history', 50),
    )


def save_config(config: SystemConfig, config_path: Optional[Path] = None):
    """Save configuration to YAML file (the API key is never written)"""
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    agg = config.aggregator_config
    config_data = {
        'zk_proofs': {
            'circuits_dir': str(config.zk_config.circuits_dir),
            'circuit_base_url': config.zk_config.circuit_base_url,
            'merkle_depth': config.zk_config.merkle_depth,
            'proof_cache_size': config.zk_config.proof_cache_size,
            'bb_binary': config.zk_config.bb_binary,
            'nargo_binary': config.zk_config.nargo_binary,
            'command_timeout': config.zk_config.command_timeout,
        },
        'aggregator': {
            'api_url': agg.api_url,
            'poll_interval': agg.poll_interval,
            'max_poll_attempts': agg.max_poll_attempts,
            'health_cache_seconds': agg.health_cache_seconds,
            'chain_id': agg.chain_id,
            'proof_type': agg.proof_type,
            'proof_variant': agg.proof_variant,
            'vk_hashes_file': str(agg.vk_hashes_file) if agg.vk_hashes_file else None,
            'request_timeout': agg.request_timeout,
        },
        'onchain': {
            'rpc_url': config.onchain_config.rpc_url,
            'addresses_file': str(config.onchain_config.addresses_file),
            'network': config.onchain_config.network,
            'fallback_network': config.onchain_config.fallback_network,
            'confirmations': config.onchain_config.confirmations,
            'receipt_timeout': config.onchain_config.receipt_timeout,
        },
        'log_dir': str(config.log_dir),
        'log_level': config.log_level,
        'health_check_interval': config.health_check_interval,
        'max_proof_history': config.max_proof_history,
    }

    Path(config_path).parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, 'w') as f:
        yaml.dump(config_data, f, default_flow_style=False)
