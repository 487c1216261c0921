#!/usr/bin/env python3
"""
Encrypted Vote Lifecycle Orchestrator
=====================================
Coordinates the encryption gateway, the ledger record store and the
verification engine:

1. create_proposal: encrypt vote -> ledger write -> confirmation -> reload
2. verify_vote: ledger read -> decryption + proof -> ledger write -> reload

Each call publishes its phases to a StatusBoard and ends in exactly one
terminal status. verify_vote is serialized per proposal id; a record that is
already verified is returned as-is and never re-verified.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from config.config import SystemConfig
from fhe.fhe_gateway import EncryptionGateway
from fhe.key_management import (
    EncryptionUnavailableError,
    FHEError,
    InitializationError,
    InvalidPlaintextError,
)
from ledger.record_store import (
    AlreadyVerifiedError,
    LedgerError,
    LedgerRecordStore,
    ProposalRecord,
    RecordNotFoundError,
    TransactionRejectedError,
    USER_REJECTED_REASON,
)
from utils.utils import PerformanceMonitor, generate_secure_id
from verification.decryption_engine import DecryptionFailedError, VerificationEngine, proof_bytes

logger = logging.getLogger(__name__)

# ============================================================================
# ERRORS
# ============================================================================


class ErrorKind(Enum):
    NOT_READY = "not_ready"
    USER_CANCELLED = "user_cancelled"
    SUBMISSION_FAILED = "submission_failed"
    ALREADY_VERIFIED = "already_verified"
    DECRYPTION_FAILED = "decryption_failed"
    NOT_FOUND = "not_found"


class LifecycleError(Exception):
    """Terminal failure of an orchestrated operation"""
    kind: ErrorKind = ErrorKind.SUBMISSION_FAILED

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotReadyError(LifecycleError):
    kind = ErrorKind.NOT_READY


class UserCancelledError(LifecycleError):
    kind = ErrorKind.USER_CANCELLED


class SubmissionFailedError(LifecycleError):
    kind = ErrorKind.SUBMISSION_FAILED


class ProposalNotFoundError(LifecycleError):
    kind = ErrorKind.NOT_FOUND


class VoteDecryptionError(LifecycleError):
    kind = ErrorKind.DECRYPTION_FAILED


def _is_user_rejection(error: Exception) -> bool:
    if isinstance(error, TransactionRejectedError) and error.user_rejected:
        return True
    return USER_REJECTED_REASON in str(error).lower()


def translate_write_error(error: Exception) -> LifecycleError:
    """Map a ledger-side failure to the caller-facing taxonomy"""
    if _is_user_rejection(error):
        return UserCancelledError("Transaction rejected by user")
    return SubmissionFailedError(f"Submission failed: {error}")

# ============================================================================
# STATE MACHINE AND STATUS REPORTING
# ============================================================================


class LifecycleState(Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    CHECKING = "checking"
    ALREADY_VERIFIED = "already_verified"
    DECRYPTING = "decrypting"
    VERIFIED_NOW = "verified_now"


TERMINAL_STATES = {
    LifecycleState.CONFIRMED,
    LifecycleState.REJECTED,
    LifecycleState.ALREADY_VERIFIED,
    LifecycleState.VERIFIED_NOW,
}

_TRANSITIONS = {
    LifecycleState.IDLE: {LifecycleState.SUBMITTING, LifecycleState.CHECKING},
    LifecycleState.SUBMITTING: {LifecycleState.CONFIRMED, LifecycleState.VERIFIED_NOW,
                                LifecycleState.ALREADY_VERIFIED},
    LifecycleState.CHECKING: {LifecycleState.ALREADY_VERIFIED, LifecycleState.DECRYPTING},
    LifecycleState.DECRYPTING: {LifecycleState.SUBMITTING, LifecycleState.ALREADY_VERIFIED},
}


class StatusKind(Enum):
    IDLE = "idle"
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class LifecycleStatus:
    kind: StatusKind
    message: str = ""
    operation: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


IDLE_STATUS = LifecycleStatus(StatusKind.IDLE)


class OperationTracker:
    """State and status publication for one orchestrated call"""

    def __init__(self, board: 'StatusBoard', key: str):
        self.board = board
        self.key = key
        self.state = LifecycleState.IDLE
        self.abandoned = False
        self.finished = False
        self._last_pending: Optional[str] = None

    def advance(self, new_state: LifecycleState):
        if self.state in TERMINAL_STATES:
            raise RuntimeError(
                f"{self.key}: already terminal in {self.state.value}")
        if new_state is not LifecycleState.REJECTED and \
                new_state not in _TRANSITIONS.get(self.state, set()):
            raise RuntimeError(
                f"{self.key}: illegal transition {self.state.value} -> {new_state.value}")
        logger.debug(f"{self.key}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def pending(self, message: str):
        if self.finished or message == self._last_pending:
            return
        self._last_pending = message
        self.board.publish(self, LifecycleStatus(
            StatusKind.PENDING, message, self.key))

    def succeed(self, message: str):
        self._finish(StatusKind.SUCCESS, message)

    def fail(self, message: str):
        if self.state not in TERMINAL_STATES:
            self.state = LifecycleState.REJECTED
        self._finish(StatusKind.ERROR, message)

    def _finish(self, kind: StatusKind, message: str):
        if self.finished:
            return
        self.finished = True
        self.board.publish(self, LifecycleStatus(kind, message, self.key))
        self.board.release(self)


class StatusBoard:
    """Single UI-facing status slot fed by operation trackers"""

    def __init__(self):
        self.current: LifecycleStatus = IDLE_STATUS
        self.history: List[LifecycleStatus] = []
        self._listeners: List[Callable[[LifecycleStatus], None]] = []
        self._active: Dict[str, List[OperationTracker]] = {}

    def subscribe(self, listener: Callable[[LifecycleStatus], None]):
        self._listeners.append(listener)

    def begin(self, key: str) -> OperationTracker:
        tracker = OperationTracker(self, key)
        self._active.setdefault(key, []).append(tracker)
        return tracker

    def release(self, tracker: OperationTracker):
        trackers = self._active.get(tracker.key, [])
        if tracker in trackers:
            trackers.remove(tracker)
        if not trackers:
            self._active.pop(tracker.key, None)

    def abandon(self, key: str) -> int:
        """Drop interest in in-flight operations under key; returns how many"""
        trackers = self._active.pop(key, [])
        for tracker in trackers:
            tracker.abandoned = True
        if trackers:
            logger.info(f"Abandoned {len(trackers)} operation(s) for {key}")
        return len(trackers)

    def abandon_all(self):
        for key in list(self._active):
            self.abandon(key)

    def publish(self, tracker: OperationTracker, status: LifecycleStatus):
        if tracker.abandoned:
            return
        self.current = status
        self.history.append(status)
        for listener in self._listeners:
            listener(status)

    def clear(self):
        self.current = IDLE_STATUS

# ============================================================================
# SESSION AND RESULTS
# ============================================================================


@dataclass
class SessionContext:
    """Connected account and its encryption gateway; torn down on disconnect"""
    account: str
    gateway: EncryptionGateway
    connected: bool = True
    connected_at: float = field(default_factory=time.time)

    @property
    def ready(self) -> bool:
        return self.connected and self.gateway.is_initialized

    def disconnect(self):
        self.connected = False


class VerifiedBy(Enum):
    CALLER = "caller"
    OTHER = "other"
    PREVIOUSLY = "previously"


@dataclass(frozen=True)
class VerifiedVote:
    """Revealed value of a verified record"""
    proposal_id: str
    value: int
    verified_by: VerifiedBy
    receipt: Any = None

    @property
    def already_verified(self) -> bool:
        return self.verified_by is not VerifiedBy.CALLER


@dataclass(frozen=True)
class ProposalStats:
    total: int
    verified: int
    pending: int
    today: int


@dataclass(frozen=True)
class ActivityRecord:
    proposal_id: str
    account: str
    action: str
    timestamp: float = field(default_factory=time.time)

# ============================================================================
# ORCHESTRATOR
# ============================================================================


class VoteLifecycleOrchestrator:
    """
    Encrypted-vote lifecycle over three collaborators:
    1. EncryptionGateway (per session): plaintext -> envelope + proof
    2. LedgerRecordStore: proposal records, writes, confirmations
    3. VerificationEngine: handle -> clear value + decryption proof
    """

    CREATE_KEY = "create"

    def __init__(
        self,
        ledger: LedgerRecordStore,
        engine: VerificationEngine,
        gateway_factory: Callable[[], EncryptionGateway],
        config: Optional[SystemConfig] = None
    ):
        self.ledger = ledger
        self.engine = engine
        self.gateway_factory = gateway_factory
        self.config = config or SystemConfig()

        self.session: Optional[SessionContext] = None
        self.status = StatusBoard()
        self.proposals: Dict[str, ProposalRecord] = {}
        self.selected_id: Optional[str] = None
        self.activity: List[ActivityRecord] = []
        self.performance_monitor = PerformanceMonitor()
        self._verify_locks: Dict[str, asyncio.Lock] = {}
        self._verify_callers: Dict[str, int] = {}

        logger.info(
            f"Initialized vote lifecycle orchestrator for {self.contract_address}")

    @property
    def contract_address(self) -> str:
        return self.ledger.contract_address

    @staticmethod
    def verify_key(proposal_id: str) -> str:
        return f"verify:{proposal_id}"

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def connect(self, account: str) -> SessionContext:
        """Open a session for account and initialize its encryption gateway"""
        if self.session is not None and self.session.connected:
            if self.session.account.lower() == account.lower():
                return self.session
            self.disconnect()

        session = SessionContext(account=account, gateway=self.gateway_factory())
        self.session = session
        logger.info(f"Session opened for {account}")

        tracker = self.status.begin("connect")
        tracker.pending("Initializing FHE encryption system...")
        try:
            await session.gateway.initialize()
        except InitializationError:
            tracker.fail(
                "FHE initialization failed. Please check your wallet connection.")
            raise
        tracker.succeed("FHE encryption system ready")

        await self._refresh_quietly()
        return session

    def disconnect(self):
        if self.session is None:
            return
        logger.info(f"Session closed for {self.session.account}")
        self.session.disconnect()
        self.session = None
        self.proposals = {}
        self.selected_id = None
        self.status.abandon_all()
        self.status.clear()

    def abandon(self, operation_key: str) -> int:
        """Discard the status effects of in-flight operations under operation_key"""
        return self.status.abandon(operation_key)

    def _require_session(self) -> SessionContext:
        if self.session is None or not self.session.connected:
            raise NotReadyError("Please connect wallet first")
        return self.session

    def _ensure_connected(self, session: SessionContext):
        if not session.connected or self.session is not session:
            raise NotReadyError("Wallet disconnected during operation")

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def refresh_proposals(self) -> List[ProposalRecord]:
        """Full reload of the proposal list from the ledger"""
        self._require_session()
        try:
            proposal_ids = await self.ledger.get_all_proposal_ids()
        except LedgerError as e:
            raise SubmissionFailedError(f"Failed to load data: {e}") from e

        records: Dict[str, ProposalRecord] = {}
        for proposal_id in proposal_ids:
            try:
                records[proposal_id] = await self.ledger.get_record(proposal_id)
            except LedgerError as e:
                logger.error(f"Error loading proposal {proposal_id}: {e}")

        self.proposals = records
        if self.selected_id is not None and self.selected_id not in records:
            self.selected_id = None
        return list(records.values())

    async def _refresh_quietly(self):
        try:
            await self.refresh_proposals()
        except LifecycleError as e:
            logger.warning(f"Proposal list refresh failed: {e}")

    def select(self, proposal_id: Optional[str]) -> Optional[ProposalRecord]:
        self.selected_id = proposal_id
        return self.proposals.get(proposal_id) if proposal_id else None

    @property
    def selected_proposal(self) -> Optional[ProposalRecord]:
        if self.selected_id is None:
            return None
        return self.proposals.get(self.selected_id)

    def proposal_stats(self, now: Optional[float] = None) -> ProposalStats:
        now = time.time() if now is None else now
        records = list(self.proposals.values())
        verified = sum(1 for r in records if r.verified)
        return ProposalStats(
            total=len(records),
            verified=verified,
            pending=len(records) - verified,
            today=sum(1 for r in records if now - r.timestamp < 86400)
        )

    async def check_availability(self) -> bool:
        tracker = self.status.begin("availability")
        try:
            available = await self.ledger.is_available()
        except (LedgerError, OSError) as e:
            logger.error(f"Availability check failed: {e}")
            tracker.fail("Availability check failed")
            return False

        if available:
            tracker.succeed("Contract is available and working!")
        else:
            tracker.fail("Contract is not available")
        return available

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _validate_proposal(self, title: str, description: str, vote: Any):
        if not title or not title.strip():
            raise ValueError("Proposal title is required")
        if not description or not description.strip():
            raise ValueError("Proposal description is required")
        vote_min, vote_max = self.config.fhe_config.vote_range
        if isinstance(vote, bool) or not isinstance(vote, int) or not vote_min <= vote <= vote_max:
            raise InvalidPlaintextError(
                f"Vote must be an integer between {vote_min} and {vote_max}")

    async def create_proposal(self, title: str, description: str, vote: int,
                              proposal_id: Optional[str] = None) -> ProposalRecord:
        """Encrypt a vote and create a proposal record carrying it"""
        with self.performance_monitor.start_operation("create_proposal"):
            tracker = self.status.begin(self.CREATE_KEY)
            try:
                session = self._require_session()
                if not session.gateway.is_initialized:
                    raise NotReadyError("Encryption gateway not initialized")
                self._validate_proposal(title, description, vote)
            except (LifecycleError, InvalidPlaintextError, ValueError) as e:
                tracker.fail(str(e))
                raise

            proposal_id = proposal_id or generate_secure_id("proposal")
            tracker.advance(LifecycleState.SUBMITTING)
            tracker.pending("Creating proposal with FHE encryption...")
            logger.info(f"Creating proposal {proposal_id} for {session.account}")

            try:
                envelope = await session.gateway.encrypt(
                    self.contract_address, session.account, vote)
                logger.info(f"  ✓ Vote encrypted ({envelope.handle[:18]}...)")
                self._ensure_connected(session)

                tx = await self.ledger.create_record(
                    proposal_id,
                    title,
                    envelope.encrypted_data,
                    envelope.proof,
                    0,
                    0,
                    description,
                    session.account
                )
                tracker.pending("Waiting for transaction confirmation...")
                receipt = await tx.wait()
            except EncryptionUnavailableError as e:
                tracker.fail("Encryption gateway not initialized")
                raise NotReadyError("Encryption gateway not initialized") from e
            except InvalidPlaintextError as e:
                tracker.fail(str(e))
                raise
            except FHEError as e:
                tracker.fail(f"Encryption failed: {e}")
                raise SubmissionFailedError(f"Encryption failed: {e}") from e
            except NotReadyError as e:
                tracker.fail(e.message)
                raise
            except (LedgerError, OSError) as e:
                error = translate_write_error(e)
                if isinstance(error, UserCancelledError):
                    logger.info(f"Proposal {proposal_id} cancelled by user")
                else:
                    logger.error(f"Proposal {proposal_id} submission failed: {e}")
                tracker.fail(error.message)
                raise error from e

            tracker.advance(LifecycleState.CONFIRMED)
            logger.info(
                f"  ✓ Proposal {proposal_id} confirmed in block {receipt.block_number}")

            await self._refresh_quietly()
            record = self.proposals.get(proposal_id)
            if record is None:
                record = await self._confirmed_record(
                    proposal_id, title, description, session.account)
                self.proposals[proposal_id] = record

            self.activity.append(ActivityRecord(
                proposal_id, session.account, "Created Proposal"))
            tracker.succeed("Proposal created successfully!")
            return record

    async def _confirmed_record(self, proposal_id: str, title: str, description: str,
                                creator: str) -> ProposalRecord:
        """Read back a confirmed record, or rebuild it from the write if reads fail"""
        try:
            return await self.ledger.get_record(proposal_id)
        except (LedgerError, OSError) as e:
            logger.warning(f"Could not read back confirmed proposal {proposal_id}: {e}")
            return ProposalRecord(
                proposal_id=proposal_id,
                title=title,
                description=description,
                timestamp=int(time.time()),
                creator=creator
            )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify_vote(self, proposal_id: str) -> VerifiedVote:
        """Decrypt and verify a proposal's vote on-chain, once"""
        with self.performance_monitor.start_operation("verify_vote"):
            tracker = self.status.begin(self.verify_key(proposal_id))
            try:
                session = self._require_session()
            except NotReadyError as e:
                tracker.fail(e.message)
                raise

            lock = self._verify_locks.setdefault(proposal_id, asyncio.Lock())
            if lock.locked():
                logger.info(
                    f"Verification of {proposal_id} already in flight; waiting for it")
            self._verify_callers[proposal_id] = self._verify_callers.get(proposal_id, 0) + 1
            try:
                async with lock:
                    return await self._verify_serialized(proposal_id, session, tracker)
            finally:
                self._release_verify_lock(proposal_id)

    def _release_verify_lock(self, proposal_id: str):
        remaining = self._verify_callers.pop(proposal_id) - 1
        if remaining:
            self._verify_callers[proposal_id] = remaining
        else:
            self._verify_locks.pop(proposal_id, None)

    async def _verify_serialized(self, proposal_id: str, session: SessionContext,
                                 tracker: OperationTracker) -> VerifiedVote:
        tracker.advance(LifecycleState.CHECKING)
        tracker.pending("Checking verification status...")

        try:
            self._ensure_connected(session)
            record = await self.ledger.get_record(proposal_id)
            if record.verified:
                tracker.advance(LifecycleState.ALREADY_VERIFIED)
                tracker.succeed("Vote already verified on-chain")
                return VerifiedVote(proposal_id, record.decrypted_value, VerifiedBy.PREVIOUSLY)
            handle = await self.ledger.get_encrypted_handle(proposal_id)
        except NotReadyError as e:
            tracker.fail(e.message)
            raise
        except RecordNotFoundError as e:
            tracker.fail(f"Proposal not found: {proposal_id}")
            raise ProposalNotFoundError(f"Proposal not found: {proposal_id}") from e
        except (LedgerError, OSError) as e:
            tracker.fail(f"Failed to load proposal: {e}")
            raise SubmissionFailedError(f"Failed to load proposal: {e}") from e

        tracker.advance(LifecycleState.DECRYPTING)
        tracker.pending("Decrypting vote and generating proof...")

        async def submit_proof(clear_values_encoded: str, decryption_proof: str):
            self._ensure_connected(session)
            tracker.advance(LifecycleState.SUBMITTING)
            tx = await self.ledger.submit_verification(
                proposal_id,
                clear_values_encoded,
                proof_bytes(decryption_proof),
                session.account
            )
            tracker.pending("Verifying vote on-chain...")
            return await tx.wait()

        try:
            result = await self.engine.request_decryption(
                [handle], self.contract_address, submit_proof, session.account)
        except AlreadyVerifiedError:
            logger.info(f"Proposal {proposal_id} was verified by another actor")
            return await self._reconcile_verified(proposal_id, tracker)
        except DecryptionFailedError as e:
            logger.error(f"Decryption of {proposal_id} failed: {e}")
            tracker.fail(f"Decryption failed: {e}")
            raise VoteDecryptionError(f"Decryption failed: {e}") from e
        except NotReadyError as e:
            tracker.fail(e.message)
            raise
        except (LedgerError, OSError) as e:
            error = translate_write_error(e)
            if isinstance(error, UserCancelledError):
                logger.info(f"Verification of {proposal_id} cancelled by user")
            else:
                logger.error(f"Verification of {proposal_id} failed: {e}")
            tracker.fail(error.message)
            raise error from e

        tracker.advance(LifecycleState.VERIFIED_NOW)
        value = result.clear_values[handle]
        logger.info(f"  ✓ Proposal {proposal_id} verified with value {value}")

        await self._refresh_quietly()
        self.activity.append(ActivityRecord(
            proposal_id, session.account, "Verified Vote"))
        tracker.succeed("Vote decrypted and verified successfully!")
        return VerifiedVote(proposal_id, value, VerifiedBy.CALLER, receipt=result.receipt)

    async def _reconcile_verified(self, proposal_id: str, tracker: OperationTracker) -> VerifiedVote:
        try:
            record = await self.ledger.get_record(proposal_id)
        except (LedgerError, OSError) as e:
            tracker.fail(f"Failed to reload proposal: {e}")
            raise SubmissionFailedError(f"Failed to reload proposal: {e}") from e

        if not record.verified:
            tracker.fail("Ledger reported verification but record is unverified")
            raise SubmissionFailedError(
                f"Ledger reported {proposal_id} verified but record is unverified")

        await self._refresh_quietly()
        tracker.advance(LifecycleState.ALREADY_VERIFIED)
        tracker.succeed("Vote is already verified on-chain")
        return VerifiedVote(proposal_id, record.decrypted_value, VerifiedBy.OTHER)
