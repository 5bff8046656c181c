"""Configuration management for the Teen Patti ZK pipeline."""

from .config import (
    SystemConfig,
    ZKConfig,
    AggregatorConfig,
    OnChainConfig,
    load_config,
    save_config,
)

__all__ = [
    'SystemConfig',
    'ZKConfig',
    'AggregatorConfig',
    'OnChainConfig',
    'load_config',
    'save_config',
]
