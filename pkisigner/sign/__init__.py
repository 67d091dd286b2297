from .functions import (
    async_sign_detached,
    async_sign_encapsulated,
    sign_detached,
    sign_encapsulated,
)
from .signers import RemoteSigner, Signer, SimpleSigner
from .validation import VerificationResult, verify_envelope

__all__ = [
    'Signer',
    'SimpleSigner',
    'RemoteSigner',
    'sign_detached',
    'async_sign_detached',
    'sign_encapsulated',
    'async_sign_encapsulated',
    'verify_envelope',
    'VerificationResult',
]
