"""Tests for the encrypted vote lifecycle orchestrator."""

import asyncio
import time

import pytest

from config.config import LedgerConfig, SystemConfig
from fhe.fhe_gateway import EncryptionGateway, KeyProvider
from fhe.key_management import InitializationError, InvalidPlaintextError, KeyManagementService
from ledger.record_store import LedgerError
from verification.decryption_engine import VerificationEngine
from vote_lifecycle import (
    ErrorKind,
    LifecycleState,
    NotReadyError,
    OperationTracker,
    ProposalNotFoundError,
    StatusBoard,
    StatusKind,
    SubmissionFailedError,
    UserCancelledError,
    VerifiedBy,
    VoteDecryptionError,
    VoteLifecycleOrchestrator,
)

from conftest import ALICE, BOB, build_stack


def _delayed_config(delay):
    return SystemConfig(ledger_config=LedgerConfig(confirmation_delay=delay))


class UnreachableProvider(KeyProvider):
    async def fetch_public_keys(self):
        raise InitializationError("relayer unreachable")

    async def attest_input(self, ciphertext, plaintext_bits):
        raise AssertionError("not reached")


# ============================================================================
# CREATION
# ============================================================================


def test_create_then_verify_reveals_vote():
    async def scenario():
        stack = build_stack()
        orchestrator = stack.orchestrator
        await orchestrator.connect(ALICE)

        record = await orchestrator.create_proposal(
            "Fund the roadmap", "Allocate budget", 7, proposal_id="prop-42")
        assert record.proposal_id == "prop-42"
        assert not record.verified
        assert record.creator == ALICE
        assert "prop-42" in orchestrator.proposals

        result = await orchestrator.verify_vote("prop-42")
        assert result.value == 7
        assert result.verified_by is VerifiedBy.CALLER
        assert not result.already_verified
        assert orchestrator.proposals["prop-42"].verified
        assert orchestrator.proposals["prop-42"].decrypted_value == 7

        again = await orchestrator.verify_vote("prop-42")
        assert again.value == 7
        assert again.verified_by is VerifiedBy.PREVIOUSLY

        verifications = [t for t in stack.ledger.transactions
                         if t.action == "verifyDecryption"]
        assert len(verifications) == 1
        assert [a.action for a in orchestrator.activity] == [
            "Created Proposal", "Verified Vote"]

    asyncio.run(scenario())


@pytest.mark.parametrize("vote", range(1, 11))
def test_every_vote_in_range_round_trips(vote):
    async def scenario():
        stack = build_stack()
        orchestrator = stack.orchestrator
        await orchestrator.connect(ALICE)

        record = await orchestrator.create_proposal("Title", "Desc", vote)
        result = await orchestrator.verify_vote(record.proposal_id)

        assert result.value == vote
        assert (await stack.ledger.get_record(record.proposal_id)).decrypted_value == vote

    asyncio.run(scenario())


def test_create_survives_failed_read_back():
    async def scenario():
        stack = build_stack()
        orchestrator = stack.orchestrator
        await orchestrator.connect(ALICE)

        async def rpc_down(*args):
            raise LedgerError("rpc down")

        stack.ledger.get_all_proposal_ids = rpc_down
        stack.ledger.get_record = rpc_down

        record = await orchestrator.create_proposal("Title", "Desc", 5, proposal_id="p")
        assert record.proposal_id == "p"
        assert record.creator == ALICE
        assert not record.verified
        assert orchestrator.proposals["p"] is record
        assert orchestrator.status.current.kind is StatusKind.SUCCESS
        assert orchestrator.status.current.message == "Proposal created successfully!"
        assert [t.action for t in stack.ledger.transactions] == ["createRecord"]

    asyncio.run(scenario())


def test_generated_proposal_ids_are_unique():
    async def scenario():
        stack = build_stack()
        await stack.orchestrator.connect(ALICE)
        first = await stack.orchestrator.create_proposal("A", "a", 1)
        second = await stack.orchestrator.create_proposal("B", "b", 2)
        assert first.proposal_id != second.proposal_id
        assert first.proposal_id.startswith("proposal-")
        assert len(stack.orchestrator.proposals) == 2

    asyncio.run(scenario())


def test_create_without_session_is_not_ready():
    async def scenario():
        stack = build_stack()
        with pytest.raises(NotReadyError) as excinfo:
            await stack.orchestrator.create_proposal("Title", "Desc", 5)
        assert excinfo.value.kind is ErrorKind.NOT_READY
        assert await stack.ledger.get_all_proposal_ids() == []
        assert stack.orchestrator.status.current.kind is StatusKind.ERROR

    asyncio.run(scenario())


def test_failed_gateway_initialization_blocks_creation():
    async def scenario():
        stack = build_stack()
        orchestrator = VoteLifecycleOrchestrator(
            stack.ledger, stack.engine, lambda: EncryptionGateway(UnreachableProvider()))

        with pytest.raises(InitializationError):
            await orchestrator.connect(ALICE)
        assert orchestrator.session is not None
        assert not orchestrator.session.ready

        with pytest.raises(NotReadyError):
            await orchestrator.create_proposal("Title", "Desc", 5)
        assert stack.ledger.transactions == []

    asyncio.run(scenario())


@pytest.mark.parametrize("vote", [0, 11, -3, 2.5, True])
def test_vote_outside_range_is_rejected_before_encryption(vote):
    async def scenario():
        stack = build_stack()
        await stack.orchestrator.connect(ALICE)
        with pytest.raises(InvalidPlaintextError):
            await stack.orchestrator.create_proposal("Title", "Desc", vote)
        assert stack.ledger.transactions == []
        assert stack.kms.metrics['attestations'] == 0

    asyncio.run(scenario())


def test_blank_title_is_rejected():
    async def scenario():
        stack = build_stack()
        await stack.orchestrator.connect(ALICE)
        with pytest.raises(ValueError):
            await stack.orchestrator.create_proposal("   ", "Desc", 5)

    asyncio.run(scenario())


def test_user_rejection_is_cancellation():
    async def scenario():
        stack = build_stack(authorizer=lambda sender, action: False)
        await stack.orchestrator.connect(ALICE)
        with pytest.raises(UserCancelledError) as excinfo:
            await stack.orchestrator.create_proposal("Title", "Desc", 5)
        assert excinfo.value.kind is ErrorKind.USER_CANCELLED
        assert stack.orchestrator.status.current.message == "Transaction rejected by user"
        assert stack.orchestrator.proposals == {}

    asyncio.run(scenario())


def test_duplicate_id_is_submission_failure():
    async def scenario():
        stack = build_stack()
        await stack.orchestrator.connect(ALICE)
        await stack.orchestrator.create_proposal("Title", "Desc", 5, proposal_id="dup")
        with pytest.raises(SubmissionFailedError) as excinfo:
            await stack.orchestrator.create_proposal("Other", "Desc", 6, proposal_id="dup")
        assert excinfo.value.kind is ErrorKind.SUBMISSION_FAILED
        assert stack.orchestrator.proposals["dup"].title == "Title"

    asyncio.run(scenario())


# ============================================================================
# VERIFICATION
# ============================================================================


def test_verify_unknown_proposal_is_not_found():
    async def scenario():
        stack = build_stack()
        await stack.orchestrator.connect(ALICE)
        with pytest.raises(ProposalNotFoundError) as excinfo:
            await stack.orchestrator.verify_vote("missing")
        assert excinfo.value.kind is ErrorKind.NOT_FOUND

    asyncio.run(scenario())


def test_concurrent_verify_runs_one_decryption():
    async def scenario():
        stack = build_stack(_delayed_config(0.01))
        orchestrator = stack.orchestrator
        await orchestrator.connect(ALICE)
        await orchestrator.create_proposal("Title", "Desc", 4, proposal_id="prop-1")

        inflight = 0
        peak = 0
        calls = 0
        original = stack.engine.request_decryption

        async def spy(*args, **kwargs):
            nonlocal inflight, peak, calls
            calls += 1
            inflight += 1
            peak = max(peak, inflight)
            try:
                return await original(*args, **kwargs)
            finally:
                inflight -= 1

        stack.engine.request_decryption = spy

        results = await asyncio.gather(
            *(orchestrator.verify_vote("prop-1") for _ in range(3)))

        assert peak == 1
        assert calls == 1
        assert all(r.value == 4 for r in results)
        assert sorted(r.verified_by.value for r in results) == [
            "caller", "previously", "previously"]
        assert orchestrator._verify_locks == {}
        assert orchestrator._verify_callers == {}

    asyncio.run(scenario())


def test_verification_race_with_other_actor():
    async def scenario():
        stack = build_stack(_delayed_config(0.05))
        mine = stack.orchestrator
        theirs = stack.second_orchestrator()
        await mine.connect(ALICE)
        await theirs.connect(BOB)
        await mine.create_proposal("Title", "Desc", 7, proposal_id="prop-42")

        results = await asyncio.gather(
            mine.verify_vote("prop-42"), theirs.verify_vote("prop-42"))

        assert [r.value for r in results] == [7, 7]
        assert sorted(r.verified_by.value for r in results) == ["caller", "other"]
        loser = mine if results[0].verified_by is VerifiedBy.OTHER else theirs
        assert loser.proposals["prop-42"].verified
        assert loser.status.current.kind is StatusKind.SUCCESS

        verifications = [t for t in stack.ledger.transactions
                         if t.action == "verifyDecryption"]
        assert len(verifications) == 1

    asyncio.run(scenario())


def test_verify_after_other_session_verified():
    async def scenario():
        stack = build_stack()
        theirs = stack.second_orchestrator()
        await stack.orchestrator.connect(ALICE)
        await theirs.connect(BOB)
        await stack.orchestrator.create_proposal("Title", "Desc", 3, proposal_id="p")

        await theirs.verify_vote("p")
        result = await stack.orchestrator.verify_vote("p")
        assert result.verified_by is VerifiedBy.PREVIOUSLY
        assert result.value == 3

    asyncio.run(scenario())


def test_decryption_failure_leaves_record_unverified():
    async def scenario():
        stack = build_stack()
        orchestrator = VoteLifecycleOrchestrator(
            stack.ledger,
            VerificationEngine(KeyManagementService(), stack.ledger.ciphertext_for),
            stack.gateway)
        await orchestrator.connect(ALICE)
        await orchestrator.create_proposal("Title", "Desc", 3, proposal_id="p")

        with pytest.raises(VoteDecryptionError) as excinfo:
            await orchestrator.verify_vote("p")
        assert excinfo.value.kind is ErrorKind.DECRYPTION_FAILED
        assert not (await stack.ledger.get_record("p")).verified
        assert orchestrator.status.current.kind is StatusKind.ERROR

    asyncio.run(scenario())


def test_rejected_verification_is_cancellation():
    async def scenario():
        stack = build_stack(authorizer=lambda sender, action: action != "verifyDecryption")
        await stack.orchestrator.connect(ALICE)
        await stack.orchestrator.create_proposal("Title", "Desc", 3, proposal_id="p")
        with pytest.raises(UserCancelledError):
            await stack.orchestrator.verify_vote("p")
        assert not (await stack.ledger.get_record("p")).verified

    asyncio.run(scenario())


# ============================================================================
# SESSION, STATUS AND READ SIDE
# ============================================================================


def test_connect_reuses_session_for_same_account():
    async def scenario():
        stack = build_stack()
        first = await stack.orchestrator.connect(ALICE)
        assert await stack.orchestrator.connect(ALICE.lower()) is first
        assert stack.provider.handshakes == 1

        second = await stack.orchestrator.connect(BOB)
        assert second is not first
        assert not first.connected
        assert stack.provider.handshakes == 2

    asyncio.run(scenario())


def test_disconnect_clears_state_and_blocks_operations():
    async def scenario():
        stack = build_stack()
        orchestrator = stack.orchestrator
        await orchestrator.connect(ALICE)
        await orchestrator.create_proposal("Title", "Desc", 3, proposal_id="p")
        orchestrator.select("p")

        orchestrator.disconnect()
        assert orchestrator.session is None
        assert orchestrator.proposals == {}
        assert orchestrator.selected_proposal is None
        assert orchestrator.status.current.kind is StatusKind.IDLE

        with pytest.raises(NotReadyError):
            await orchestrator.verify_vote("p")

    asyncio.run(scenario())


def test_disconnect_mid_creation_stops_before_ledger_write():
    async def scenario():
        stack = build_stack()
        orchestrator = stack.orchestrator
        session = await orchestrator.connect(ALICE)
        original = session.gateway.encrypt

        async def encrypt_then_disconnect(*args, **kwargs):
            envelope = await original(*args, **kwargs)
            orchestrator.disconnect()
            return envelope

        session.gateway.encrypt = encrypt_then_disconnect
        with pytest.raises(NotReadyError):
            await orchestrator.create_proposal("Title", "Desc", 3)
        assert stack.ledger.transactions == []

    asyncio.run(scenario())


def test_status_reports_single_terminal_per_operation():
    async def scenario():
        stack = build_stack()
        orchestrator = stack.orchestrator
        seen = []
        orchestrator.status.subscribe(seen.append)
        await orchestrator.connect(ALICE)
        seen.clear()

        await orchestrator.create_proposal("Title", "Desc", 3, proposal_id="p")
        await orchestrator.verify_vote("p")

        for key in ("create", "verify:p"):
            statuses = [s for s in seen if s.operation == key]
            terminal = [s for s in statuses if s.kind is not StatusKind.PENDING]
            assert len(terminal) == 1
            assert statuses[-1] is terminal[0]
            assert terminal[0].kind is StatusKind.SUCCESS
            pending = [s.message for s in statuses if s.kind is StatusKind.PENDING]
            assert len(pending) == len(set(pending))

        assert orchestrator.status.current.message == "Vote decrypted and verified successfully!"

    asyncio.run(scenario())


def test_abandoned_operation_publishes_nothing_further():
    async def scenario():
        stack = build_stack(_delayed_config(0.05))
        orchestrator = stack.orchestrator
        await orchestrator.connect(ALICE)

        task = asyncio.create_task(
            orchestrator.create_proposal("Title", "Desc", 3, proposal_id="p"))
        await asyncio.sleep(0.02)
        assert orchestrator.status.current.message == "Waiting for transaction confirmation..."

        assert orchestrator.abandon("create") == 1
        record = await task

        assert record.proposal_id == "p"
        assert orchestrator.status.current.message == "Waiting for transaction confirmation..."

    asyncio.run(scenario())


def test_tracker_rejects_illegal_transitions():
    tracker = OperationTracker(StatusBoard(), "verify:p")
    with pytest.raises(RuntimeError):
        tracker.advance(LifecycleState.DECRYPTING)

    tracker.advance(LifecycleState.CHECKING)
    tracker.advance(LifecycleState.ALREADY_VERIFIED)
    with pytest.raises(RuntimeError):
        tracker.advance(LifecycleState.SUBMITTING)


def test_proposal_stats_counts_recent_and_verified():
    async def scenario():
        stack = build_stack()
        orchestrator = stack.orchestrator
        await orchestrator.connect(ALICE)
        await orchestrator.create_proposal("A", "a", 1, proposal_id="a")
        await orchestrator.create_proposal("B", "b", 2, proposal_id="b")
        await orchestrator.verify_vote("a")

        stats = orchestrator.proposal_stats()
        assert (stats.total, stats.verified, stats.pending, stats.today) == (2, 1, 1, 2)

        later = orchestrator.proposal_stats(now=time.time() + 2 * 86400)
        assert later.today == 0

    asyncio.run(scenario())


def test_refresh_skips_unreadable_records():
    async def scenario():
        stack = build_stack()
        orchestrator = stack.orchestrator
        await orchestrator.connect(ALICE)
        await orchestrator.create_proposal("A", "a", 1, proposal_id="a")
        await orchestrator.create_proposal("B", "b", 2, proposal_id="b")

        original = stack.ledger.get_record

        async def flaky_get_record(proposal_id):
            if proposal_id == "a":
                raise LedgerError("read timeout")
            return await original(proposal_id)

        stack.ledger.get_record = flaky_get_record
        records = await orchestrator.refresh_proposals()
        assert [r.proposal_id for r in records] == ["b"]

    asyncio.run(scenario())


def test_check_availability_reports_status():
    async def scenario():
        stack = build_stack()
        assert await stack.orchestrator.check_availability()
        assert stack.orchestrator.status.current.kind is StatusKind.SUCCESS

        stack.ledger.available = False
        assert not await stack.orchestrator.check_availability()
        assert stack.orchestrator.status.current.message == "Contract is not available"

    asyncio.run(scenario())


def test_operations_are_recorded_by_performance_monitor():
    async def scenario():
        stack = build_stack()
        await stack.orchestrator.connect(ALICE)
        await stack.orchestrator.create_proposal("A", "a", 1, proposal_id="a")
        with pytest.raises(ProposalNotFoundError):
            await stack.orchestrator.verify_vote("missing")

        summary = stack.orchestrator.performance_monitor.get_summary()
        assert summary['operations']['create_proposal']['count'] == 1
        assert summary['operations']['verify_vote']['failures'] == 1

    asyncio.run(scenario())


def test_verify_locks_are_released_after_use():
    async def scenario():
        stack = build_stack()
        orchestrator = stack.orchestrator
        await orchestrator.connect(ALICE)
        for i in range(5):
            await orchestrator.create_proposal("Title", "Desc", i + 1, proposal_id=f"p{i}")
            await orchestrator.verify_vote(f"p{i}")
        with pytest.raises(ProposalNotFoundError):
            await orchestrator.verify_vote("missing")

        assert orchestrator._verify_locks == {}
        assert orchestrator._verify_callers == {}

    asyncio.run(scenario())
