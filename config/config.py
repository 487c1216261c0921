from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple
import logging
import os

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONTRACT_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"


@dataclass
class FHEConfig:
    plaintext_bits: int = 32
    vote_min: int = 1
    vote_max: int = 10
    relayer_url: Optional[str] = None
    relayer_timeout: float = 30.0
    kdf_info: str = "fhe-vote-envelope/v1"

    def __post_init__(self):
        if not 1 <= self.plaintext_bits <= 64:
            raise ValueError(
                f"plaintext_bits must be between 1 and 64, got {self.plaintext_bits}")
        if self.vote_min > self.vote_max:
            raise ValueError("vote_min cannot exceed vote_max")
        if self.vote_max >= 2 ** self.plaintext_bits:
            raise ValueError("vote_max does not fit the plaintext width")

    @property
    def vote_range(self) -> Tuple[int, int]:
        return self.vote_min, self.vote_max


@dataclass
class LedgerConfig:
    contract_address: str = DEFAULT_CONTRACT_ADDRESS
    confirmation_delay: float = 0.0

    def __post_init__(self):
        if not self.contract_address.startswith("0x"):
            raise ValueError(
                f"Invalid contract address: {self.contract_address}")


@dataclass
class SystemConfig:
    fhe_config: FHEConfig = field(default_factory=FHEConfig)
    ledger_config: LedgerConfig = field(default_factory=LedgerConfig)

    log_dir: Path = field(default_factory=lambda: Path("logs"))
    results_dir: Path = field(default_factory=lambda: Path("results"))
    enable_benchmarking: bool = True
    enable_debug_mode: bool = False

    def __post_init__(self):
        self.log_dir = Path(self.log_dir)
        self.results_dir = Path(self.results_dir)

        # Environment overrides the file for deployment-specific endpoints
        relayer_url = os.environ.get("FHE_RELAYER_URL")
        if relayer_url:
            self.fhe_config.relayer_url = relayer_url
        contract_address = os.environ.get("VOTE_CONTRACT_ADDRESS")
        if contract_address:
            self.ledger_config.contract_address = contract_address

    @property
    def log_level(self) -> str:
        return "DEBUG" if self.enable_debug_mode else "INFO"


def load_config(config_path: Optional[Path] = None) -> SystemConfig:
    """Load configuration from file or return default"""
    if config_path is None:
        config_path = Path("config.yaml")
    config_path = Path(config_path)

    if config_path.exists():
        try:
            with open(config_path, 'r') as f:
                config_data = yaml.safe_load(f) or {}

            fhe_data = config_data.get('fhe', {})
            fhe_config = FHEConfig(
                plaintext_bits=fhe_data.get('plaintext_bits', 32),
                vote_min=fhe_data.get('vote_min', 1),
                vote_max=fhe_data.get('vote_max', 10),
                relayer_url=fhe_data.get('relayer_url'),
                relayer_timeout=fhe_data.get('relayer_timeout', 30.0),
                kdf_info=fhe_data.get('kdf_info', 'fhe-vote-envelope/v1')
            )

            ledger_data = config_data.get('ledger', {})
            ledger_config = LedgerConfig(
                contract_address=ledger_data.get(
                    'contract_address', DEFAULT_CONTRACT_ADDRESS),
                confirmation_delay=ledger_data.get('confirmation_delay', 0.0)
            )

            return SystemConfig(
                fhe_config=fhe_config,
                ledger_config=ledger_config,
                log_dir=Path(config_data.get('log_dir', 'logs')),
                results_dir=Path(config_data.get('results_dir', 'results')),
                enable_benchmarking=config_data.get(
                    'enable_benchmarking', True),
                enable_debug_mode=config_data.get('enable_debug_mode', False)
            )
        except (OSError, yaml.YAMLError, ValueError, AttributeError) as e:
            logger.warning(f"Could not load config file {config_path}: {e}")
            logger.warning("Using default configuration")

    return SystemConfig()


def save_config(config: SystemConfig, config_path: Optional[Path] = None):
    """Save configuration to YAML file"""
    if config_path is None:
        config_path = Path("config.yaml")

    config_data = {
        'fhe': {
            'plaintext_bits': config.fhe_config.plaintext_bits,
            'vote_min': config.fhe_config.vote_min,
            'vote_max': config.fhe_config.vote_max,
            'relayer_url': config.fhe_config.relayer_url,
            'relayer_timeout': config.fhe_config.relayer_timeout,
            'kdf_info': config.fhe_config.kdf_info
        },
        'ledger': {
            'contract_address': config.ledger_config.contract_address,
            'confirmation_delay': config.ledger_config.confirmation_delay
        },
        'log_dir': str(config.log_dir),
        'results_dir': str(config.results_dir),
        'enable_benchmarking': config.enable_benchmarking,
        'enable_debug_mode': config.enable_debug_mode
    }

    with open(config_path, 'w') as f:
        yaml.dump(config_data, f, default_flow_style=False)
