"""Verification engine: public decryption with on-chain proof submission."""

from .decryption_engine import (
    VerificationEngine,
    DecryptionResult,
    proof_bytes,

    # Exceptions
    VerificationError,
    DecryptionFailedError,
)

__all__ = [
    'VerificationEngine',
    'DecryptionResult',
    'proof_bytes',
    'VerificationError',
    'DecryptionFailedError',
]
