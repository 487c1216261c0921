"""Shared builders for the in-process voting stack."""

from dataclasses import dataclass
from typing import Callable, Optional

import pytest

from config.config import LedgerConfig, SystemConfig
from fhe.fhe_gateway import EncryptionGateway, LocalKeyProvider
from fhe.key_management import KeyManagementService
from ledger.record_store import InMemoryLedger
from verification.decryption_engine import VerificationEngine
from vote_lifecycle import VoteLifecycleOrchestrator

ALICE = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
BOB = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"


@dataclass
class Stack:
    kms: KeyManagementService
    provider: LocalKeyProvider
    ledger: InMemoryLedger
    engine: VerificationEngine
    orchestrator: VoteLifecycleOrchestrator

    def gateway(self) -> EncryptionGateway:
        return EncryptionGateway(self.provider, self.orchestrator.config.fhe_config)

    def second_orchestrator(self) -> VoteLifecycleOrchestrator:
        """Another client of the same ledger, as a second browser session would be"""
        return VoteLifecycleOrchestrator(
            self.ledger, self.engine, self.gateway, self.orchestrator.config)


def build_stack(config: Optional[SystemConfig] = None,
                authorizer: Optional[Callable[[str, str], bool]] = None) -> Stack:
    config = config or SystemConfig(ledger_config=LedgerConfig())
    kms = KeyManagementService(config.fhe_config.kdf_info)
    provider = LocalKeyProvider(kms)
    ledger = InMemoryLedger(kms.public_bundle(), config.ledger_config, authorizer)
    engine = VerificationEngine(kms, ledger.ciphertext_for)
    orchestrator = VoteLifecycleOrchestrator(
        ledger, engine, lambda: EncryptionGateway(provider, config.fhe_config), config)
    return Stack(kms, provider, ledger, engine, orchestrator)


@pytest.fixture
def stack() -> Stack:
    return build_stack()
