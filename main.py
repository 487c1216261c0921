import asyncio
import logging
import time
from datetime import datetime
from typing import List, Dict, Any, Optional
from pathlib import Path
import argparse
import sys

import numpy as np

from config.config import SystemConfig, load_config
from fhe.fhe_gateway import EncryptionGateway, LocalKeyProvider, RelayerKeyProvider
from fhe.key_management import FHEError, KeyManagementService
from ledger.record_store import InMemoryLedger
from verification.decryption_engine import VerificationEngine
from vote_lifecycle import LifecycleError, LifecycleStatus, VoteLifecycleOrchestrator
from utils.utils import setup_logging, save_results, create_performance_report, format_duration

logger = logging.getLogger(__name__)

DEMO_ACCOUNT = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"


def build_orchestrator(config: SystemConfig) -> VoteLifecycleOrchestrator:
    """Wire the in-process KMS, ledger and verification engine"""
    kms = KeyManagementService(config.fhe_config.kdf_info)
    ledger = InMemoryLedger(kms.public_bundle(), config.ledger_config)
    engine = VerificationEngine(kms, ledger.ciphertext_for)

    # Inputs must be encrypted to the same KMS the ledger verifies against
    def gateway_factory() -> EncryptionGateway:
        return EncryptionGateway(LocalKeyProvider(kms), config.fhe_config)

    return VoteLifecycleOrchestrator(ledger, engine, gateway_factory, config)


def create_demo_votes(num_proposals: int, vote_min: int, vote_max: int, seed: int = 42) -> List[int]:
    rng = np.random.default_rng(seed)
    return [int(v) for v in rng.integers(vote_min, vote_max + 1, size=num_proposals)]


def print_status(status: LifecycleStatus):
    print(f"   [{status.kind.value:>7}] {status.message}")


async def run_demo(config: SystemConfig, num_proposals: int = 5, account: str = DEMO_ACCOUNT) -> bool:
    print("=" * 80)
    print("ENCRYPTED GOVERNANCE VOTING - DEMONSTRATION")
    print("   Encrypted input -> ledger record -> public decryption -> verification")
    print("=" * 80)

    orchestrator = build_orchestrator(config)
    orchestrator.status.subscribe(print_status)

    print(f"\nConnecting {account}...")
    try:
        await orchestrator.connect(account)
    except LifecycleError as e:
        print(f"\n Connection failed: {e}")
        return False
    except Exception as e:
        logger.error(f"Encryption gateway initialization failed: {e}")
        print(f"\n Connection failed: {e}")
        return False

    vote_min, vote_max = config.fhe_config.vote_range
    votes = create_demo_votes(num_proposals, vote_min, vote_max)
    start_time = time.time()
    failures: List[str] = []
    created = []

    print(f"\nCreating {num_proposals} proposals with encrypted votes...")
    for i, vote in enumerate(votes):
        try:
            record = await orchestrator.create_proposal(
                f"Proposal #{i + 1}",
                f"Demo proposal {i + 1} with an encrypted vote",
                vote
            )
            created.append((record.proposal_id, vote))
        except LifecycleError as e:
            logger.error(f"Failed to create proposal {i + 1}: {e}")
            failures.append(f"create #{i + 1}: {e.kind.value}: {e}")

    print("\nVerifying votes on-chain...")
    verifications = []
    for proposal_id, expected in created:
        try:
            result = await orchestrator.verify_vote(proposal_id)
        except LifecycleError as e:
            logger.error(f"Failed to verify {proposal_id}: {e}")
            failures.append(f"verify {proposal_id}: {e.kind.value}: {e}")
            continue
        if result.value != expected:
            failures.append(
                f"verify {proposal_id}: revealed {result.value}, expected {expected}")
        verifications.append(result)

    if created:
        print("\nRe-verifying the first proposal (should be served from the ledger)...")
        try:
            verifications.append(await orchestrator.verify_vote(created[0][0]))
        except LifecycleError as e:
            failures.append(f"re-verify {created[0][0]}: {e.kind.value}: {e}")

    stats = orchestrator.proposal_stats()
    elapsed = time.time() - start_time

    print("\n" + "=" * 40)
    print("RESULTS")
    print("=" * 40)
    print(f"\nProposals: {stats.total} total, {stats.verified} verified, "
          f"{stats.pending} pending, {stats.today} today")
    for result in verifications:
        print(f"  {result.proposal_id}: {result.value} "
              f"(verified by {result.verified_by.value})")
    print(f"\nCompleted in {format_duration(elapsed)}")

    results: Dict[str, Any] = {
        'contract_address': orchestrator.contract_address,
        'account': account,
        'stats': stats,
        'verifications': verifications,
        'proposals': list(orchestrator.proposals.values()),
        'activity': orchestrator.activity,
        'failures': failures,
        'elapsed_seconds': elapsed
    }

    report_path = config.results_dir / "demo_report.json"
    save_results(results, report_path)

    if config.enable_benchmarking:
        perf_report = create_performance_report(orchestrator.performance_monitor)
        perf_path = config.results_dir / "performance_report.txt"
        with open(perf_path, "w") as f:
            f.write(perf_report)
        print(f" Performance report: {perf_path}")

    print(f"\nFull results saved to: {report_path}")
    orchestrator.disconnect()

    if failures:
        print(f"\n {len(failures)} operation(s) failed:")
        for failure in failures:
            print(f"  {failure}")
    return not failures


async def run_check(config: SystemConfig) -> bool:
    orchestrator = build_orchestrator(config)
    orchestrator.status.subscribe(print_status)
    return await orchestrator.check_availability()


async def run_keys(config: SystemConfig) -> bool:
    """Run the key provisioning handshake against the configured relayer"""
    gateway = EncryptionGateway(
        RelayerKeyProvider(config.fhe_config.relayer_url, config.fhe_config.relayer_timeout),
        config.fhe_config)
    print(f"Provisioning keys from {config.fhe_config.relayer_url}...")
    try:
        bundle = await gateway.initialize()
    except FHEError as e:
        print(f"\n Key provisioning failed: {e}")
        return False

    for name, key in bundle.to_dict().items():
        print(f"  {name}: 0x{key[:16]}...")
    print(f"\nGateway status: {gateway.status}")
    return True


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        description='Encrypted Governance Voting')
    parser.add_argument('--proposals', type=int, default=5,
                        help='Number of proposals to create')
    parser.add_argument('--account', type=str, default=DEMO_ACCOUNT,
                        help='Submitting account address')
    parser.add_argument('--config', type=str,
                        default='config.yaml', help='Config file path')
    parser.add_argument('--relayer-url', type=str, default=None,
                        help='Relayer base URL for the keys handshake')
    parser.add_argument(
        '--mode', choices=['demo', 'check', 'keys'], default='demo')

    args = parser.parse_args(argv)

    config = load_config(Path(args.config))
    if args.relayer_url:
        config.fhe_config.relayer_url = args.relayer_url

    # The demo ledger verifies against the in-process KMS, so relayer keys cannot be used there
    if args.mode == 'demo' and config.fhe_config.relayer_url:
        parser.error('--relayer-url only applies to --mode keys; the demo uses the in-process KMS')
    if args.mode == 'keys' and not config.fhe_config.relayer_url:
        parser.error('--mode keys requires --relayer-url (or FHE_RELAYER_URL)')

    log_file = config.log_dir / f"fhe_vote_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    setup_logging(config.log_level, log_file)

    if args.mode == 'demo':
        success = asyncio.run(run_demo(config, args.proposals, args.account))
    elif args.mode == 'keys':
        success = asyncio.run(run_keys(config))
    else:
        success = asyncio.run(run_check(config))
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
