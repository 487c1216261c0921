"""
Key Management Service for Encrypted Vote Handling
==================================================
In-process stand-in for the coprocessor / KMS network that backs the
encryption gateway and the verification engine:

- Network key pair (X25519) that inputs are encrypted to
- Input attestation key (Ed25519) signing proofs of well-formed encryption
- Decryption key (Ed25519) signing revealed clear values

Only the PublicKeyBundle leaves this module; the ledger verifies every
proof against it and never sees private material.
"""

import hashlib
import logging
import os
from dataclasses import dataclass
from typing import Dict, List, Sequence

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

logger = logging.getLogger(__name__)

ENVELOPE_KDF_INFO = "fhe-vote-envelope/v1"
PUBLIC_KEY_BYTES = 32
NONCE_BYTES = 12
VALUE_BYTES = 8
ABI_WORD_BYTES = 32

# ============================================================================
# EXCEPTIONS
# ============================================================================


class FHEError(Exception):
    """Base exception for encryption operations"""
    pass


class InvalidPlaintextError(FHEError):
    """Plaintext is not an integer within the supported bit-width"""
    pass


class EncryptionUnavailableError(FHEError):
    """Gateway used before initialization completed"""
    pass


class InitializationError(FHEError):
    """Key provisioning handshake failed"""
    pass


class KeyManagementError(FHEError):
    """Ciphertext could not be opened or attested"""
    pass

# ============================================================================
# DATA STRUCTURES
# ============================================================================


@dataclass(frozen=True)
class BoundCiphertext:
    """Encrypted payload together with the context it was encrypted for"""
    encrypted_data: bytes
    contract_address: str
    submitter: str

    @property
    def handle(self) -> str:
        return compute_handle(self.encrypted_data)


@dataclass(frozen=True)
class PublicKeyBundle:
    """Public half of the KMS keys, as served by a relayer"""
    network_public_key: bytes
    input_verifier_key: bytes
    decryption_verifier_key: bytes

    def to_dict(self) -> Dict[str, str]:
        return {
            'network_public_key': self.network_public_key.hex(),
            'input_verifier_key': self.input_verifier_key.hex(),
            'decryption_verifier_key': self.decryption_verifier_key.hex()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> 'PublicKeyBundle':
        try:
            bundle = cls(
                network_public_key=bytes.fromhex(
                    _strip_hex(data['network_public_key'])),
                input_verifier_key=bytes.fromhex(
                    _strip_hex(data['input_verifier_key'])),
                decryption_verifier_key=bytes.fromhex(
                    _strip_hex(data['decryption_verifier_key']))
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InitializationError(f"Malformed public key bundle: {e}") from e

        for name, key in bundle.to_dict().items():
            if len(key) != PUBLIC_KEY_BYTES * 2:
                raise InitializationError(
                    f"{name} must be {PUBLIC_KEY_BYTES} bytes")
        return bundle

# ============================================================================
# ENCODING HELPERS
# ============================================================================


def _strip_hex(value: str) -> str:
    return value[2:] if value.startswith("0x") else value


def compute_handle(encrypted_data: bytes) -> str:
    """Opaque handle for a ciphertext: 0x-prefixed SHA-256 of the payload"""
    return "0x" + hashlib.sha256(encrypted_data).hexdigest()


def encode_clear_values(values: Sequence[int]) -> str:
    """ABI-encode clear values as consecutive 32-byte big-endian words"""
    words = []
    for value in values:
        if value < 0 or value >= 2 ** (ABI_WORD_BYTES * 8):
            raise ValueError(f"Clear value {value} does not fit a uint256 word")
        words.append(value.to_bytes(ABI_WORD_BYTES, 'big'))
    return "0x" + b"".join(words).hex()


def decode_clear_values(encoded: str) -> List[int]:
    raw = bytes.fromhex(_strip_hex(encoded))
    if len(raw) % ABI_WORD_BYTES != 0:
        raise ValueError("Encoded clear values are not word aligned")
    return [
        int.from_bytes(raw[i:i + ABI_WORD_BYTES], 'big')
        for i in range(0, len(raw), ABI_WORD_BYTES)
    ]


def binding_context(contract_address: str, submitter: str) -> bytes:
    return f"{contract_address.lower()}|{submitter.lower()}".encode()


def derive_envelope_key(shared_secret: bytes, ephemeral_public: bytes,
                        context: bytes, kdf_info: str = ENVELOPE_KDF_INFO) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=ephemeral_public,
        info=kdf_info.encode() + b"|" + context
    )
    return hkdf.derive(shared_secret)


def input_proof_digest(handle: str, contract_address: str, submitter: str) -> bytes:
    message = b"input|" + handle.encode() + b"|" + \
        binding_context(contract_address, submitter)
    return hashlib.sha256(message).digest()


def decryption_proof_digest(contract_address: str, submitter: str,
                            handles: Sequence[str], encoded: str) -> bytes:
    message = (
        b"decrypt|" + binding_context(contract_address, submitter) + b"|" +
        ",".join(handles).encode() + b"|" + encoded.lower().encode()
    )
    return hashlib.sha256(message).digest()

# ============================================================================
# PROOF VERIFICATION (public-key only)
# ============================================================================


def _verify_ed25519(public_key: bytes, signature: bytes, digest: bytes) -> bool:
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, digest)
        return True
    except (InvalidSignature, ValueError):
        return False


def verify_input_proof(bundle: PublicKeyBundle, ciphertext: BoundCiphertext, proof: bytes) -> bool:
    """Check that a proof attests this ciphertext for this contract and submitter"""
    digest = input_proof_digest(
        ciphertext.handle, ciphertext.contract_address, ciphertext.submitter)
    return _verify_ed25519(bundle.input_verifier_key, proof, digest)


def verify_decryption_proof(bundle: PublicKeyBundle, contract_address: str, submitter: str,
                            handles: Sequence[str], encoded: str, proof: bytes) -> bool:
    """Check that a proof reveals these values for these handles to this submitter"""
    digest = decryption_proof_digest(contract_address, submitter, handles, encoded)
    return _verify_ed25519(bundle.decryption_verifier_key, proof, digest)

# ============================================================================
# KEY MANAGEMENT SERVICE
# ============================================================================


class KeyManagementService:
    """Holds the network private keys; attests inputs and signs decryptions"""

    def __init__(self, kdf_info: str = ENVELOPE_KDF_INFO):
        self.kdf_info = kdf_info
        self._network_key = X25519PrivateKey.generate()
        self._input_signer = Ed25519PrivateKey.generate()
        self._decryption_signer = Ed25519PrivateKey.generate()
        self.metrics = {'attestations': 0, 'decryptions': 0}

        logger.info("Initialized key management service")

    def public_bundle(self) -> PublicKeyBundle:
        raw = serialization.Encoding.Raw
        fmt = serialization.PublicFormat.Raw
        return PublicKeyBundle(
            network_public_key=self._network_key.public_key().public_bytes(raw, fmt),
            input_verifier_key=self._input_signer.public_key().public_bytes(raw, fmt),
            decryption_verifier_key=self._decryption_signer.public_key().public_bytes(raw, fmt)
        )

    def decrypt(self, ciphertext: BoundCiphertext) -> int:
        data = ciphertext.encrypted_data
        if len(data) < PUBLIC_KEY_BYTES + NONCE_BYTES + VALUE_BYTES:
            raise KeyManagementError("Ciphertext too short")

        ephemeral_public = data[:PUBLIC_KEY_BYTES]
        nonce = data[PUBLIC_KEY_BYTES:PUBLIC_KEY_BYTES + NONCE_BYTES]
        body = data[PUBLIC_KEY_BYTES + NONCE_BYTES:]
        context = binding_context(
            ciphertext.contract_address, ciphertext.submitter)

        try:
            shared = self._network_key.exchange(
                X25519PublicKey.from_public_bytes(ephemeral_public))
            key = derive_envelope_key(
                shared, ephemeral_public, context, self.kdf_info)
            plaintext = AESGCM(key).decrypt(nonce, body, context)
        except (InvalidTag, ValueError) as e:
            raise KeyManagementError(
                f"Cannot open ciphertext {ciphertext.handle[:18]}...") from e

        if len(plaintext) != VALUE_BYTES:
            raise KeyManagementError("Unexpected plaintext length")

        self.metrics['decryptions'] += 1
        return int.from_bytes(plaintext, 'big')

    def attest_input(self, ciphertext: BoundCiphertext, plaintext_bits: int) -> bytes:
        """Sign a proof of well-formed encryption after checking the value range"""
        try:
            value = self.decrypt(ciphertext)
        except KeyManagementError as e:
            raise InvalidPlaintextError(f"Malformed encrypted input: {e}") from e

        if value >= 2 ** plaintext_bits:
            raise InvalidPlaintextError(
                f"Encrypted value exceeds {plaintext_bits}-bit range")

        digest = input_proof_digest(
            ciphertext.handle, ciphertext.contract_address, ciphertext.submitter)
        self.metrics['attestations'] += 1
        return self._input_signer.sign(digest)

    def sign_decryption(self, contract_address: str, submitter: str,
                        handles: Sequence[str], encoded: str) -> bytes:
        return self._decryption_signer.sign(
            decryption_proof_digest(contract_address, submitter, handles, encoded))


def seal_value(bundle: PublicKeyBundle, value: int, contract_address: str,
               submitter: str, kdf_info: str = ENVELOPE_KDF_INFO) -> BoundCiphertext:
    """Encrypt a value to the network key, bound to contract and submitter"""
    ephemeral = X25519PrivateKey.generate()
    ephemeral_public = ephemeral.public_key().public_bytes(
        serialization.Encoding.Raw, serialization.PublicFormat.Raw)
    shared = ephemeral.exchange(
        X25519PublicKey.from_public_bytes(bundle.network_public_key))

    context = binding_context(contract_address, submitter)
    key = derive_envelope_key(shared, ephemeral_public, context, kdf_info)
    nonce = os.urandom(NONCE_BYTES)
    body = AESGCM(key).encrypt(nonce, value.to_bytes(VALUE_BYTES, 'big'), context)

    return BoundCiphertext(
        encrypted_data=ephemeral_public + nonce + body,
        contract_address=contract_address,
        submitter=submitter
    )
