"""
Ledger Record Store
===================
Client contract for the proposal ledger plus an in-process implementation
that enforces the same rules as the on-chain contract:

- Input proofs must attest the ciphertext for this contract and sender
- Proposal ids are unique
- A record is verified at most once; the revealed value is then immutable
- Each encrypted input backs exactly one record
- Decryption proofs must be signed for exactly this record's handle and
  the submitting account

Writes return a PendingTransaction. Rules are checked when the transaction
is submitted and again when it is confirmed, so a concurrent writer that
wins the race makes the loser's confirmation fail.
"""

import asyncio
import dataclasses
import hashlib
import itertools
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from config.config import LedgerConfig
from fhe.key_management import (
    BoundCiphertext,
    PublicKeyBundle,
    decode_clear_values,
    verify_decryption_proof,
    verify_input_proof,
)

logger = logging.getLogger(__name__)

ALREADY_VERIFIED_REASON = "Data already verified"
USER_REJECTED_REASON = "user rejected transaction"

# ============================================================================
# EXCEPTIONS
# ============================================================================


class LedgerError(Exception):
    """Base exception for ledger operations"""
    pass


class RecordNotFoundError(LedgerError):
    """No record exists for the requested id or handle"""
    pass


class AlreadyVerifiedError(LedgerError):
    """Verification submitted for a record whose flag is already set"""

    def __init__(self, proposal_id: str):
        super().__init__(f"{ALREADY_VERIFIED_REASON}: {proposal_id}")
        self.proposal_id = proposal_id


class InvalidProofError(LedgerError):
    """Input or decryption proof failed verification"""
    pass


class DuplicateRecordError(LedgerError):
    """A record with this id already exists"""
    pass


class TransactionRejectedError(LedgerError):
    """Transaction was not authorized or was reverted before inclusion"""

    def __init__(self, message: str, user_rejected: bool = False):
        super().__init__(message)
        self.user_rejected = user_rejected

# ============================================================================
# DATA STRUCTURES
# ============================================================================


@dataclass(frozen=True)
class ProposalRecord:
    """Snapshot of a ledger-owned proposal"""
    proposal_id: str
    title: str
    description: str
    timestamp: int
    creator: str
    aux1: int = 0
    aux2: int = 0
    verified: bool = False
    decrypted_value: int = 0


@dataclass(frozen=True)
class TransactionReceipt:
    tx_hash: str
    action: str
    proposal_id: str
    block_number: int
    status: int = 1


class PendingTransaction:
    """Submitted write; confirm with wait()"""

    def __init__(self, tx_hash: str, action: str, proposal_id: str,
                 confirm: Callable[[], Awaitable[TransactionReceipt]]):
        self.tx_hash = tx_hash
        self.action = action
        self.proposal_id = proposal_id
        self._confirm = confirm
        self._receipt: Optional[TransactionReceipt] = None
        self._lock = asyncio.Lock()

    async def wait(self) -> TransactionReceipt:
        async with self._lock:
            if self._receipt is None:
                self._receipt = await self._confirm()
            return self._receipt

# ============================================================================
# CLIENT CONTRACT
# ============================================================================


class LedgerRecordStore(ABC):
    """Operations the lifecycle orchestrator needs from a ledger client"""

    @property
    @abstractmethod
    def contract_address(self) -> str:
        ...

    @abstractmethod
    async def get_all_proposal_ids(self) -> List[str]:
        ...

    @abstractmethod
    async def get_record(self, proposal_id: str) -> ProposalRecord:
        ...

    @abstractmethod
    async def get_encrypted_handle(self, proposal_id: str) -> str:
        ...

    @abstractmethod
    async def create_record(self, proposal_id: str, title: str, encrypted_payload: bytes,
                            proof: bytes, aux1: int, aux2: int, description: str,
                            sender: str) -> PendingTransaction:
        ...

    @abstractmethod
    async def submit_verification(self, proposal_id: str, clear_values_encoded: str,
                                  decryption_proof: bytes, sender: str) -> PendingTransaction:
        ...

    @abstractmethod
    async def ciphertext_for(self, handle: str) -> BoundCiphertext:
        ...

    async def is_available(self) -> bool:
        return True

# ============================================================================
# IN-PROCESS LEDGER
# ============================================================================


Authorizer = Callable[[str, str], bool]


class InMemoryLedger(LedgerRecordStore):
    """Contract-faithful ledger kept in process memory"""

    def __init__(self, key_bundle: PublicKeyBundle, config: Optional[LedgerConfig] = None,
                 authorizer: Optional[Authorizer] = None):
        self.config = config or LedgerConfig()
        self.key_bundle = key_bundle
        self.authorizer = authorizer
        self.available = True

        self._records: Dict[str, ProposalRecord] = {}
        self._handles: Dict[str, str] = {}
        self._ciphertexts: Dict[str, BoundCiphertext] = {}
        self._block_number = 0
        self._nonce = itertools.count()
        self.transactions: List[TransactionReceipt] = []

        logger.info(f"Initialized in-memory ledger at {self.contract_address}")

    @property
    def contract_address(self) -> str:
        return self.config.contract_address

    async def _tick(self):
        await asyncio.sleep(0)

    def _authorize(self, sender: str, action: str):
        if self.authorizer is not None and not self.authorizer(sender, action):
            logger.info(f"Wallet declined {action} for {sender}")
            raise TransactionRejectedError(
                USER_REJECTED_REASON, user_rejected=True)

    def _tx_hash(self, action: str, proposal_id: str) -> str:
        seed = f"{action}|{proposal_id}|{next(self._nonce)}|{time.time()}"
        return "0x" + hashlib.sha256(seed.encode()).hexdigest()

    def _mine(self, tx_hash: str, action: str, proposal_id: str) -> TransactionReceipt:
        self._block_number += 1
        receipt = TransactionReceipt(
            tx_hash=tx_hash,
            action=action,
            proposal_id=proposal_id,
            block_number=self._block_number
        )
        self.transactions.append(receipt)
        return receipt

    def _require_record(self, proposal_id: str) -> ProposalRecord:
        record = self._records.get(proposal_id)
        if record is None:
            raise RecordNotFoundError(f"Proposal not found: {proposal_id}")
        return record

    async def get_all_proposal_ids(self) -> List[str]:
        await self._tick()
        return list(self._records)

    async def get_record(self, proposal_id: str) -> ProposalRecord:
        await self._tick()
        return self._require_record(proposal_id)

    async def get_encrypted_handle(self, proposal_id: str) -> str:
        await self._tick()
        self._require_record(proposal_id)
        return self._handles[proposal_id]

    async def ciphertext_for(self, handle: str) -> BoundCiphertext:
        await self._tick()
        ciphertext = self._ciphertexts.get(handle)
        if ciphertext is None:
            raise RecordNotFoundError(f"Unknown handle: {handle}")
        return ciphertext

    async def is_available(self) -> bool:
        await self._tick()
        return self.available

    async def create_record(self, proposal_id: str, title: str, encrypted_payload: bytes,
                            proof: bytes, aux1: int, aux2: int, description: str,
                            sender: str) -> PendingTransaction:
        await self._tick()
        self._authorize(sender, "createRecord")

        ciphertext = BoundCiphertext(
            encrypted_data=encrypted_payload,
            contract_address=self.contract_address,
            submitter=sender
        )

        def check():
            if proposal_id in self._records:
                raise DuplicateRecordError(f"Proposal already exists: {proposal_id}")
            if ciphertext.handle in self._ciphertexts:
                raise DuplicateRecordError(
                    f"Encrypted input already stored: {ciphertext.handle[:18]}...")
            if not verify_input_proof(self.key_bundle, ciphertext, proof):
                raise InvalidProofError("Invalid input proof")

        check()
        tx_hash = self._tx_hash("createRecord", proposal_id)

        async def confirm() -> TransactionReceipt:
            await asyncio.sleep(self.config.confirmation_delay)
            check()
            handle = ciphertext.handle
            self._records[proposal_id] = ProposalRecord(
                proposal_id=proposal_id,
                title=title,
                description=description,
                timestamp=int(time.time()),
                creator=sender,
                aux1=aux1,
                aux2=aux2
            )
            self._handles[proposal_id] = handle
            self._ciphertexts[handle] = ciphertext
            logger.info(f"Record {proposal_id} created by {sender}")
            return self._mine(tx_hash, "createRecord", proposal_id)

        return PendingTransaction(tx_hash, "createRecord", proposal_id, confirm)

    async def submit_verification(self, proposal_id: str, clear_values_encoded: str,
                                  decryption_proof: bytes, sender: str) -> PendingTransaction:
        await self._tick()
        self._authorize(sender, "verifyDecryption")

        def check() -> int:
            record = self._require_record(proposal_id)
            if record.verified:
                raise AlreadyVerifiedError(proposal_id)
            handle = self._handles[proposal_id]
            if not verify_decryption_proof(self.key_bundle, self.contract_address, sender,
                                           [handle], clear_values_encoded, decryption_proof):
                raise InvalidProofError("Invalid decryption proof")
            try:
                values = decode_clear_values(clear_values_encoded)
            except ValueError as e:
                raise InvalidProofError(f"Malformed clear values: {e}") from e
            if len(values) != 1:
                raise InvalidProofError(
                    f"Expected one clear value, got {len(values)}")
            return values[0]

        check()
        tx_hash = self._tx_hash("verifyDecryption", proposal_id)

        async def confirm() -> TransactionReceipt:
            await asyncio.sleep(self.config.confirmation_delay)
            value = check()
            self._records[proposal_id] = dataclasses.replace(
                self._records[proposal_id], verified=True, decrypted_value=value)
            logger.info(f"Record {proposal_id} verified by {sender}")
            return self._mine(tx_hash, "verifyDecryption", proposal_id)

        return PendingTransaction(tx_hash, "verifyDecryption", proposal_id, confirm)
