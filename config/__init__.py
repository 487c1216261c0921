"""Configuration management for the encrypted voting system."""

from .config import (
    SystemConfig,
    FHEConfig,
    LedgerConfig,
    DEFAULT_CONTRACT_ADDRESS,
    load_config,
    save_config
)

__all__ = ['SystemConfig', 'FHEConfig', 'LedgerConfig',
           'DEFAULT_CONTRACT_ADDRESS', 'load_config', 'save_config']
