"""Ledger record store for encrypted governance proposals."""

from .record_store import (
    # Client contract and implementation
    LedgerRecordStore,
    InMemoryLedger,

    # Data structures
    ProposalRecord,
    PendingTransaction,
    TransactionReceipt,

    # Exceptions
    LedgerError,
    RecordNotFoundError,
    AlreadyVerifiedError,
    InvalidProofError,
    DuplicateRecordError,
    TransactionRejectedError,
    ALREADY_VERIFIED_REASON,
    USER_REJECTED_REASON
)

__all__ = [
    'LedgerRecordStore',
    'InMemoryLedger',
    'ProposalRecord',
    'PendingTransaction',
    'TransactionReceipt',
    'LedgerError',
    'RecordNotFoundError',
    'AlreadyVerifiedError',
    'InvalidProofError',
    'DuplicateRecordError',
    'TransactionRejectedError',
    'ALREADY_VERIFIED_REASON',
    'USER_REJECTED_REASON'
]
