"""Ed25519 bearer tokens issued by the Identity Provider, using PyNaCl.

Token format: ``<base64url(json claims)>.<hex signature>`` where the claims are
``{"sub": <user uuid>, "role": <role>, "exp": <unix seconds>}`` plus optional
``name`` and ``email``. The marketplace only ever verifies tokens;
``issue_token`` exists for the Identity Provider side and for tests.
"""

import base64
import json
import time

from nacl.encoding import HexEncoder
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey


class InvalidToken(Exception):
    pass


def generate_keypair() -> tuple[str, str]:
    """Generate an Ed25519 keypair. Returns (private_key_hex, public_key_hex)."""
    signing_key = SigningKey.generate()
    private_hex = signing_key.encode(encoder=HexEncoder).decode()
    public_hex = signing_key.verify_key.encode(encoder=HexEncoder).decode()
    return private_hex, public_hex


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _b64decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def issue_token(private_key_hex: str, claims: dict, ttl_seconds: int = 3600) -> str:
    """Sign a claims dict and return a bearer token."""
    body = dict(claims)
    body.setdefault("exp", int(time.time()) + ttl_seconds)
    payload = _b64encode(json.dumps(body, separators=(",", ":"), sort_keys=True).encode())
    signing_key = SigningKey(private_key_hex.encode(), encoder=HexEncoder)
    signed = signing_key.sign(payload.encode(), encoder=HexEncoder)
    return f"{payload}.{signed.signature.decode()}"


def verify_token(
    public_key_hex: str,
    token: str,
    now: float | None = None,
    max_age_seconds: int | None = None,
) -> dict:
    """Verify signature and expiry. Returns the claims or raises InvalidToken.

    With ``max_age_seconds``, tokens expiring further ahead than that are refused.
    """
    try:
        payload, signature_hex = token.split(".", 1)
    except ValueError:
        raise InvalidToken("Malformed token")

    try:
        verify_key = VerifyKey(public_key_hex.encode(), encoder=HexEncoder)
        verify_key.verify(payload.encode(), HexEncoder.decode(signature_hex.encode()))
    except (BadSignatureError, ValueError, TypeError):
        raise InvalidToken("Invalid token signature")

    try:
        claims = json.loads(_b64decode(payload))
    except ValueError:
        raise InvalidToken("Malformed token claims")
    if not isinstance(claims, dict):
        raise InvalidToken("Malformed token claims")

    exp = claims.get("exp")
    if not isinstance(exp, int | float):
        raise InvalidToken("Token has no expiry")
    current = now if now is not None else time.time()
    if exp < current:
        raise InvalidToken("Token expired")
    if max_age_seconds is not None and exp - current > max_age_seconds:
        raise InvalidToken("Token lifetime exceeds the allowed maximum")
    return claims
