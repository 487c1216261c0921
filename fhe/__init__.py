"""
Encryption Gateway and key management for encrypted votes
"""

from .key_management import (
    # Key management
    KeyManagementService,
    PublicKeyBundle,
    BoundCiphertext,

    # Encoding and proof helpers
    compute_handle,
    encode_clear_values,
    decode_clear_values,
    verify_input_proof,
    verify_decryption_proof,
    seal_value,

    # Exceptions
    FHEError,
    InvalidPlaintextError,
    EncryptionUnavailableError,
    InitializationError,
    KeyManagementError,
)
from .fhe_gateway import (
    EncryptionGateway,
    EncryptionEnvelope,
    KeyProvider,
    LocalKeyProvider,
    RelayerKeyProvider,
)

__all__ = [
    # Gateway
    'EncryptionGateway',
    'EncryptionEnvelope',
    'KeyProvider',
    'LocalKeyProvider',
    'RelayerKeyProvider',

    # Key management
    'KeyManagementService',
    'PublicKeyBundle',
    'BoundCiphertext',

    # Helpers
    'compute_handle',
    'encode_clear_values',
    'decode_clear_values',
    'verify_input_proof',
    'verify_decryption_proof',
    'seal_value',

    # Exceptions
    'FHEError',
    'InvalidPlaintextError',
    'EncryptionUnavailableError',
    'InitializationError',
    'KeyManagementError',
]
