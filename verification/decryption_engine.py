"""
Verification Engine
===================
Turns encrypted-value handles into clear values plus a decryption proof and
hands both to a caller-supplied submission callback, which writes them to
the ledger's verification entry point.

Failures inside the proof path raise DecryptionFailedError. Failures raised
by the callback are ledger failures and propagate unchanged.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from fhe.key_management import (
    BoundCiphertext,
    KeyManagementError,
    KeyManagementService,
    encode_clear_values,
)

logger = logging.getLogger(__name__)

SubmissionCallback = Callable[[str, str], Awaitable[Any]]
CiphertextSource = Callable[[str], Awaitable[BoundCiphertext]]


class VerificationError(Exception):
    """Base exception for verification operations"""
    pass


class DecryptionFailedError(VerificationError):
    """Decryption or proof generation failed"""
    pass


@dataclass
class DecryptionResult:
    """Clear values keyed by handle, with the proof that was submitted"""
    clear_values: Dict[str, int]
    abi_encoded_clear_values: str
    decryption_proof: str
    handles: List[str]
    contract_address: str
    requester: str = ""
    receipt: Any = None
    generation_time: float = 0.0
    timestamp: float = field(default_factory=time.time)


class VerificationEngine:
    """Public decryption with on-chain proof submission"""

    def __init__(self, kms: KeyManagementService, ciphertext_source: CiphertextSource):
        self.kms = kms
        self.ciphertext_source = ciphertext_source
        self.metrics = {'requests': 0, 'failures': 0}

    async def _decrypt_all(self, handles: Sequence[str]) -> Dict[str, int]:
        clear_values = {}
        for handle in handles:
            try:
                ciphertext = await self.ciphertext_source(handle)
            except Exception as e:
                raise DecryptionFailedError(
                    f"Cannot resolve handle {handle[:18]}...: {e}") from e
            if ciphertext.handle != handle:
                raise DecryptionFailedError(
                    f"Ciphertext does not match handle {handle[:18]}...")
            try:
                clear_values[handle] = self.kms.decrypt(ciphertext)
            except KeyManagementError as e:
                raise DecryptionFailedError(str(e)) from e
        return clear_values

    async def request_decryption(self, handles: Sequence[str], verifying_contract: str,
                                 submission_callback: SubmissionCallback,
                                 requester: str) -> DecryptionResult:
        """Decrypt handles, sign the result for requester, and submit it through the callback"""
        handles = list(handles)
        if not handles:
            raise DecryptionFailedError("At least one handle is required")
        if len(set(handles)) != len(handles):
            raise DecryptionFailedError("Duplicate handles in request")

        self.metrics['requests'] += 1
        start_time = time.time()
        logger.info(f"Requesting decryption of {len(handles)} handle(s)")

        try:
            clear_values = await self._decrypt_all(handles)
            encoded = encode_clear_values([clear_values[h] for h in handles])
            proof = "0x" + self.kms.sign_decryption(
                verifying_contract, requester, handles, encoded).hex()
        except DecryptionFailedError:
            self.metrics['failures'] += 1
            raise
        except ValueError as e:
            self.metrics['failures'] += 1
            raise DecryptionFailedError(f"Cannot encode clear values: {e}") from e

        generation_time = time.time() - start_time
        logger.info(f"  ✓ Decryption proof generated in {generation_time:.3f}s")

        receipt = await submission_callback(encoded, proof)

        return DecryptionResult(
            clear_values=clear_values,
            abi_encoded_clear_values=encoded,
            decryption_proof=proof,
            handles=handles,
            contract_address=verifying_contract,
            requester=requester,
            receipt=receipt,
            generation_time=generation_time
        )


def proof_bytes(decryption_proof: str) -> bytes:
    return bytes.fromhex(decryption_proof[2:] if decryption_proof.startswith("0x") else decryption_proof)
