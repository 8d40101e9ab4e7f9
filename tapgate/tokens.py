# tapgate/tokens.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# This module defines the *token layer* of the tag handshake.
#
# Responsibilities:
#   - Build the canonical payload that gets signed (one join, used everywhere)
#   - Sign / check signatures with a server-held HMAC secret
#   - Serialize and parse the four-field wire form
#
# What this module is NOT:
#   - Not a policy engine (TTL and allow-list decisions live in handshake.py)
#   - Not stateful
#
# Token wire format:
#
#     <tag>.<issued_b36>.<nonce>.<signature_b64url>
#
# Where:
#   - issued_b36 = milliseconds since epoch, lowercase base 36
#   - signature  = HMAC-SHA256(kind_key(secret, kind), "<tag>.<issued_b36>.<nonce>")
#   - kind       = "setup" | "session" | "fresh" (not on the wire)
#
# The signed payload is exactly the first three wire fields joined with ".".
# Issuance and verification both go through canonical_payload(), so the
# delimiter can never drift between the two sides.
# -----------------------------------------------------------------------------


import base64
import re
import secrets
import time
from dataclasses import dataclass

from cryptography.hazmat.primitives import constant_time, hashes, hmac


DELIMITER = "."

# Tags end up inside cookies and the wire format: no delimiter, no ";", "=", ","
TAG_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

_B36_RE = re.compile(r"^[0-9a-z]{1,13}$")
_B36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


class TokenError(ValueError):
    """Base class for token format problems."""


class MalformedToken(TokenError):
    """Token string does not split into exactly four non-empty fields."""


# -----------------------------------------------------------------------------
# Base64 helpers
# -----------------------------------------------------------------------------
def b64url_encode(b: bytes) -> str:
    """
    URL-safe Base64 encoding WITHOUT padding.

    The alphabet is [A-Za-z0-9_-], so the output is safe inside a cookie value
    and never contains the "." delimiter.
    """
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


# -----------------------------------------------------------------------------
# Clock / nonce sources
# -----------------------------------------------------------------------------
def now_ms() -> int:
    return int(time.time() * 1000)


def new_nonce(nbytes: int = 12) -> str:
    """Random URL-safe nonce (token_urlsafe never emits ".")."""
    return secrets.token_urlsafe(nbytes)


# -----------------------------------------------------------------------------
# issuedAt encoding
# -----------------------------------------------------------------------------
def encode_issued_at(ms: int) -> str:
    """
    Encode epoch milliseconds as lowercase base 36 (same text as JS
    ``Date.now().toString(36)``).
    """
    ms = int(ms)
    if ms < 0:
        raise ValueError("issued_at must be non-negative")
    if ms == 0:
        return "0"
    out = []
    while ms:
        ms, r = divmod(ms, 36)
        out.append(_B36_DIGITS[r])
    return "".join(reversed(out))


def decode_issued_at(text: str) -> int:
    """
    Decode the compact issuedAt field.

    Only clean lowercase base 36 is accepted: no sign, no whitespace, no
    underscores (int() alone would let "+1_0" through).
    """
    if not isinstance(text, str) or not _B36_RE.match(text):
        raise ValueError(f"bad issued_at: {text!r}")
    return int(text, 36)


# -----------------------------------------------------------------------------
# Canonical payload + signing
# -----------------------------------------------------------------------------
def canonical_payload(tag: str, issued: str, nonce: str) -> str:
    """
    The exact string that is signed.

    Shared by issuance and verification; do not build this join anywhere else.
    """
    return DELIMITER.join((tag, issued, nonce))


def sign(payload: str, secret: str) -> str:
    """HMAC-SHA256 over the UTF-8 payload, base64url without padding."""
    h = hmac.HMAC(secret.encode("utf-8"), hashes.SHA256())
    h.update(payload.encode("utf-8"))
    return b64url_encode(h.finalize())


def signature_matches(payload: str, signature: str, secret: str) -> bool:
    """
    Recompute the signature and compare in constant time.

    Compares the encoded strings rather than decoded bytes, so a
    non-canonical base64 spelling of the right MAC is still rejected.
    """
    expected = sign(payload, secret)
    return constant_time.bytes_eq(expected.encode("utf-8"), signature.encode("utf-8"))


def kind_key(secret: str, kind: str) -> str:
    """
    Per-kind signing key: HMAC(secret, kind).

    Setup proofs, session tokens and fresh markers share the wire format, so
    each kind is signed under its own derived key. A token minted for one kind
    never verifies as another.
    """
    return sign(kind, secret)


# -----------------------------------------------------------------------------
# Token value type
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Token:
    tag: str
    issued: str
    nonce: str
    signature: str

    @property
    def payload(self) -> str:
        return canonical_payload(self.tag, self.issued, self.nonce)

    @property
    def issued_at(self) -> int:
        """issuedAt in epoch ms; raises ValueError if the field is garbage."""
        return decode_issued_at(self.issued)

    def signed_by(self, secret: str) -> bool:
        return signature_matches(self.payload, self.signature, secret)

    def __str__(self) -> str:
        return serialize_token(self)


def mint_token(tag: str, secret: str, *, issued_at: int, nonce: str) -> Token:
    """
    Build and sign a token.

    The caller supplies time and nonce so the policy layer owns the clock.
    """
    if not TAG_RE.match(tag):
        raise TokenError(f"tag not encodable: {tag!r}")
    if not nonce or DELIMITER in nonce:
        raise TokenError("nonce must be non-empty and free of the delimiter")
    issued = encode_issued_at(issued_at)
    return Token(
        tag=tag,
        issued=issued,
        nonce=nonce,
        signature=sign(canonical_payload(tag, issued, nonce), secret),
    )


def serialize_token(token: Token) -> str:
    return DELIMITER.join((token.tag, token.issued, token.nonce, token.signature))


def parse_token(raw: str) -> Token:
    """
    Split a wire token into its four fields.

    Format validation only; signature and age checks happen in the verifier.
    """
    parts = str(raw).split(DELIMITER)
    if len(parts) != 4 or not all(parts):
        raise MalformedToken(f"expected 4 non-empty fields, got {len(parts)}")
    return Token(*parts)
