"""
Encryption Gateway
==================
Client side of the encrypted-input flow:

1. One-time key provisioning handshake with a KeyProvider
2. Encryption of a plaintext integer to the network key, bound to the
   verifying contract and the submitting account
3. Attestation of the ciphertext (proof of well-formed encryption)
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

from config.config import FHEConfig
from .key_management import (
    BoundCiphertext,
    EncryptionUnavailableError,
    FHEError,
    InitializationError,
    InvalidPlaintextError,
    KeyManagementService,
    PublicKeyBundle,
    seal_value,
)

logger = logging.getLogger(__name__)


@dataclass
class EncryptionEnvelope:
    """Encrypted vote plus its proof, ready for a single ledger write"""
    encrypted_data: bytes
    proof: bytes
    handle: str
    contract_address: str
    submitter: str
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, str]:
        return {
            'encryptedData': "0x" + self.encrypted_data.hex(),
            'proof': "0x" + self.proof.hex(),
            'handle': self.handle
        }

# ============================================================================
# KEY PROVIDERS
# ============================================================================


class KeyProvider(ABC):
    """Remote side of the provisioning handshake"""

    @abstractmethod
    async def fetch_public_keys(self) -> PublicKeyBundle:
        ...

    @abstractmethod
    async def attest_input(self, ciphertext: BoundCiphertext, plaintext_bits: int) -> bytes:
        ...


class LocalKeyProvider(KeyProvider):
    """Provider backed by an in-process KeyManagementService"""

    def __init__(self, kms: KeyManagementService):
        self.kms = kms
        self.handshakes = 0

    async def fetch_public_keys(self) -> PublicKeyBundle:
        self.handshakes += 1
        await asyncio.sleep(0)
        return self.kms.public_bundle()

    async def attest_input(self, ciphertext: BoundCiphertext, plaintext_bits: int) -> bytes:
        await asyncio.sleep(0)
        return self.kms.attest_input(ciphertext, plaintext_bits)


class RelayerKeyProvider(KeyProvider):
    """Provider talking to a relayer over HTTP"""

    def __init__(self, base_url: str, timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    async def _call(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()

        def do_request():
            response = self.session.request(
                method,
                f"{self.base_url}{path}",
                json=payload,
                timeout=self.timeout
            )
            response.raise_for_status()
            body = response.json()
            return body.get('response', body)

        return await loop.run_in_executor(None, do_request)

    async def fetch_public_keys(self) -> PublicKeyBundle:
        try:
            data = await self._call("GET", "/v1/keyurl")
        except (requests.RequestException, ValueError) as e:
            raise InitializationError(
                f"Key provisioning request to {self.base_url} failed: {e}") from e
        return PublicKeyBundle.from_dict(data)

    async def attest_input(self, ciphertext: BoundCiphertext, plaintext_bits: int) -> bytes:
        payload = {
            'contractAddress': ciphertext.contract_address,
            'userAddress': ciphertext.submitter,
            'ciphertextWithInputVerification': ciphertext.encrypted_data.hex(),
            'handle': ciphertext.handle,
            'bits': plaintext_bits
        }
        try:
            data = await self._call("POST", "/v1/input-proof", payload)
        except requests.HTTPError as e:
            if e.response is not None and e.response.status_code == 400:
                raise InvalidPlaintextError(
                    f"Relayer rejected input: {e.response.text}") from e
            raise FHEError(f"Input proof request failed: {e}") from e
        except (requests.RequestException, ValueError) as e:
            raise FHEError(f"Input proof request failed: {e}") from e

        proof = data.get('proof')
        if not isinstance(proof, str):
            raise FHEError("Relayer response carried no proof")
        return bytes.fromhex(proof[2:] if proof.startswith("0x") else proof)

# ============================================================================
# GATEWAY
# ============================================================================


class EncryptionGateway:
    """Encrypts plaintext votes once the provisioning handshake has completed"""

    def __init__(self, provider: KeyProvider, config: Optional[FHEConfig] = None):
        self.provider = provider
        self.config = config or FHEConfig()
        self._bundle: Optional[PublicKeyBundle] = None
        self._init_error: Optional[InitializationError] = None
        self._init_attempted = False
        self._init_lock = asyncio.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._bundle is not None

    @property
    def status(self) -> str:
        if self._bundle is not None:
            return "ready"
        if self._init_error is not None:
            return "error"
        if self._init_lock.locked():
            return "initializing"
        return "idle"

    async def initialize(self) -> PublicKeyBundle:
        """Run the provisioning handshake at most once for this gateway"""
        async with self._init_lock:
            if self._bundle is not None:
                return self._bundle
            if self._init_attempted:
                raise InitializationError(
                    f"Initialization already failed: {self._init_error}")

            self._init_attempted = True
            logger.info("Provisioning encryption keys...")
            try:
                self._bundle = await self.provider.fetch_public_keys()
            except InitializationError as e:
                self._init_error = e
                logger.error(f"Key provisioning failed: {e}")
                raise
            except Exception as e:
                self._init_error = InitializationError(str(e))
                logger.error(f"Key provisioning failed: {e}")
                raise self._init_error from e

            logger.info("  ✓ Encryption gateway ready")
            return self._bundle

    def validate_plaintext(self, value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidPlaintextError(
                f"Plaintext must be an integer, got {type(value).__name__}")
        if value < 0:
            raise InvalidPlaintextError(
                f"Plaintext must be non-negative, got {value}")
        if value >= 2 ** self.config.plaintext_bits:
            raise InvalidPlaintextError(
                f"Plaintext {value} exceeds {self.config.plaintext_bits}-bit range")
        return value

    async def encrypt(self, target_contract: str, submitter: str, plaintext: int) -> EncryptionEnvelope:
        if self._bundle is None:
            raise EncryptionUnavailableError("Encryption gateway not initialized")

        value = self.validate_plaintext(plaintext)
        ciphertext = seal_value(
            self._bundle, value, target_contract, submitter, self.config.kdf_info)
        proof = await self.provider.attest_input(ciphertext, self.config.plaintext_bits)

        logger.debug(f"Encrypted input {ciphertext.handle[:18]}... for {submitter}")
        return EncryptionEnvelope(
            encrypted_data=ciphertext.encrypted_data,
            proof=proof,
            handle=ciphertext.handle,
            contract_address=target_contract,
            submitter=submitter
        )
