"""Ed25519 request signing utilities using PyNaCl."""

import hashlib
import secrets
import uuid
from datetime import UTC, datetime

from nacl.encoding import HexEncoder
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

AUTH_SCHEME = "Sig"


def generate_keypair() -> tuple[str, str]:
    """Generate an Ed25519 keypair. Returns (private_key_hex, public_key_hex)."""
    signing_key = SigningKey.generate()
    private_hex = signing_key.encode(encoder=HexEncoder).decode()
    public_hex = signing_key.verify_key.encode(encoder=HexEncoder).decode()
    return private_hex, public_hex


def build_signature_message(
    timestamp: str,
    method: str,
    path: str,
    body: bytes,
) -> bytes:
    """Build the message to sign: timestamp\\nmethod\\npath\\nsha256(body)."""
    body_hash = hashlib.sha256(body).hexdigest()
    return f"{timestamp}\n{method.upper()}\n{path}\n{body_hash}".encode()


def sign_request(
    private_key_hex: str,
    timestamp: str,
    method: str,
    path: str,
    body: bytes,
) -> str:
    """Sign a request and return the hex-encoded signature."""
    signing_key = SigningKey(private_key_hex.encode(), encoder=HexEncoder)
    message = build_signature_message(timestamp, method, path, body)
    return signing_key.sign(message, encoder=HexEncoder).signature.decode()


def verify_signature(
    public_key_hex: str,
    signature_hex: str,
    timestamp: str,
    method: str,
    path: str,
    body: bytes,
) -> bool:
    """Verify an Ed25519 signature. Returns True if valid, False otherwise."""
    try:
        verify_key = VerifyKey(public_key_hex.encode(), encoder=HexEncoder)
        message = build_signature_message(timestamp, method, path, body)
        verify_key.verify(message, HexEncoder.decode(signature_hex.encode()))
        return True
    except (BadSignatureError, ValueError, TypeError):
        return False


def generate_nonce() -> str:
    return secrets.token_hex(16)


def is_timestamp_valid(timestamp: str, max_age_seconds: int = 30) -> bool:
    """Check that an ISO-8601 timestamp is timezone-aware and within the window."""
    try:
        ts = datetime.fromisoformat(timestamp)
    except (ValueError, TypeError):
        return False
    if ts.tzinfo is None:
        return False
    return abs((datetime.now(UTC) - ts).total_seconds()) <= max_age_seconds


def build_auth_headers(
    user_id: uuid.UUID,
    private_key_hex: str,
    method: str,
    path: str,
    body: bytes = b"",
    nonce: str | None = None,
) -> dict[str, str]:
    """Produce the headers a client sends for a signed request."""
    timestamp = datetime.now(UTC).isoformat()
    signature = sign_request(private_key_hex, timestamp, method, path, body)
    headers = {
        "Authorization": f"{AUTH_SCHEME} {user_id}:{signature}",
        "X-Timestamp": timestamp,
    }
    if nonce is not None:
        headers["X-Nonce"] = nonce
    return headers
