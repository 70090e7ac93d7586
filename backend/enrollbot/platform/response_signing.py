"""
Ed25519 signing of client-facing responses.

The desktop client pins the server's public key and checks every start,
ping, registration and stop response against it before acting on it, so a
forged or replayed "you may run" answer is rejected client side.

Each signed response has the shape:

    {"data": {...}, "signature": "<base64 Ed25519 signature>"}

where the signature covers a comma-joined string built from a fixed subset
of the data fields (see the response models in api/routes/app_sessions.py).

SECURITY REQUIREMENTS:
- The private key is read once, at startup, from RESPONSE_SIGNING_KEY_PATH
- The key file may be PEM or raw PKCS#8 DER and must hold an Ed25519 key
- Key material is never logged

Usage:
    from enrollbot.platform.response_signing import get_response_signer

    signer = get_response_signer()
    signature = signer.sign("alice,Success,OK,1772460000")
"""

import base64
import logging
import os
import threading
from pathlib import Path
from typing import Optional

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from fastapi import HTTPException, status

logger = logging.getLogger(__name__)

SIGNING_KEY_PATH_ENV = "RESPONSE_SIGNING_KEY_PATH"

_signer: Optional["ResponseSigner"] = None
_signer_loaded = False
_lock = threading.Lock()


class SigningError(Exception):
    """Raised when the signing key cannot be loaded or used."""
    pass


class ResponseSigner:
    """Signs response strings with a single Ed25519 private key."""

    def __init__(self, private_key: Ed25519PrivateKey):
        self._private_key = private_key

    @classmethod
    def from_key_bytes(cls, data: bytes) -> "ResponseSigner":
        """
        Build a signer from PEM or PKCS#8 DER encoded key bytes.

        Raises:
            SigningError: If the bytes are not an unencrypted Ed25519 private key
        """
        try:
            if data.lstrip().startswith(b"-----BEGIN"):
                key = serialization.load_pem_private_key(data, password=None)
            else:
                key = serialization.load_der_private_key(data, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise SigningError(f"Cannot load signing key: {e}")

        if not isinstance(key, Ed25519PrivateKey):
            raise SigningError(f"Signing key must be Ed25519, got {type(key).__name__}")
        return cls(key)

    @classmethod
    def from_file(cls, path: Path) -> "ResponseSigner":
        try:
            data = Path(path).read_bytes()
        except OSError as e:
            raise SigningError(f"Cannot read signing key file {path}: {e}")
        return cls.from_key_bytes(data)

    def sign(self, message: str) -> str:
        """Sign a UTF-8 message and return the base64 signature."""
        signature = self._private_key.sign(message.encode("utf-8"))
        return base64.b64encode(signature).decode("ascii")

    def public_key_pem(self) -> str:
        return self._private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")


def init_response_signer() -> Optional[ResponseSigner]:
    """
    Load the signing key from RESPONSE_SIGNING_KEY_PATH.

    Runs once per process; later calls return the cached result. Returns
    None when the variable is unset.

    Raises:
        SigningError: If the variable is set but the key cannot be loaded
    """
    global _signer, _signer_loaded

    with _lock:
        if _signer_loaded:
            return _signer

        key_path = os.getenv(SIGNING_KEY_PATH_ENV)
        if not key_path:
            logger.warning(
                f"{SIGNING_KEY_PATH_ENV} is not set. Signed client endpoints will return 503."
            )
            _signer_loaded = True
            return None

        _signer = ResponseSigner.from_file(Path(key_path))
        _signer_loaded = True
        logger.info("Response signing key loaded", extra={"key_path": key_path})
        return _signer


def get_response_signer() -> ResponseSigner:
    """
    FastAPI dependency returning the process-wide signer.

    Raises:
        HTTPException: 503 if no signing key is configured
    """
    try:
        signer = init_response_signer()
    except SigningError:
        logger.exception("Response signing key could not be loaded")
        signer = None

    if signer is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Response signing not configured",
        )
    return signer


def reset_response_signer() -> None:
    """Forget the cached signer. For tests."""
    global _signer, _signer_loaded

    with _lock:
        _signer = None
        _signer_loaded = False
