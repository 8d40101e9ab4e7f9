# tapgate/handshake.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# Tag handshake: tap -> setup proof -> session.
#
#   start_escalation(tag)      allow-list check, mint setup proof (60s)
#   complete_escalation(p, tag) verify proof (sig + 60s + same tag + allow-list)
#                               mint session token (long TTL) + fresh marker (60s)
#   check_session(sid, ...)    verify session token; with require_freshness the
#                               fresh marker must also verify and name the same tag
#
# Everything here is a pure function of (token, now, secret, allow-list) plus
# randomness/clock at issuance. Nothing is stored server-side; a token's own
# signed fields plus the current time fully decide its validity.
#
# Each kind (setup, session, fresh) is signed under its own key derived from
# the secret, so a proof never passes as a session or marker and vice versa.
#
# Freshness is decided by the marker credential only. A session token's own
# issued_at is never used for the freshness gate.
#
# The setup proof is single-use in intent only: replay inside its 60s window
# is not prevented (no server-side nonce cache). TTL + tag binding bound it.
#
# Public entry points never raise for protocol failures; they return a
# decision with a Reason.
# -----------------------------------------------------------------------------


import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel

from .policy import TagPolicy
from .tokens import (
    TAG_RE,
    Token,
    TokenError,
    kind_key,
    mint_token,
    new_nonce,
    now_ms,
    parse_token,
    serialize_token,
)


log = logging.getLogger(__name__)

SECOND_MS = 1000
DEFAULT_SETUP_TTL_MS = 60 * SECOND_MS
DEFAULT_SESSION_TTL_MS = 30 * 24 * 60 * 60 * SECOND_MS
DEFAULT_FRESH_TTL_MS = 60 * SECOND_MS

# tolerated forward clock drift between issuing and verifying workers
MAX_CLOCK_SKEW_MS = 5 * SECOND_MS


class Reason(str, Enum):
    INVALID_CLAIM = "invalid_claim"
    FORBIDDEN = "forbidden"
    MALFORMED_TOKEN = "malformed_token"
    BAD_SIGNATURE = "bad_signature"
    EXPIRED = "expired"
    CLAIM_MISMATCH = "claim_mismatch"
    NO_PROOF = "no_proof"
    BAD_PROOF = "bad_proof"


class EscalationState(str, Enum):
    AWAITING_PROOF = "awaiting_proof"
    VERIFIED = "verified"
    SESSION_ISSUED = "session_issued"


@dataclass(frozen=True)
class TtlPolicy:
    kind: str
    max_age_ms: int


# -----------------------------------------------------------------------------
# Decisions
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Verdict:
    """Verifier output: accepted (reason None) or rejected with a reason."""

    reason: Optional[Reason] = None
    tag: Optional[str] = None
    token: Optional[Token] = None

    @property
    def ok(self) -> bool:
        return self.reason is None


class SessionCheck(BaseModel):
    ok: bool
    reason: Optional[Reason] = None
    tag: Optional[str] = None


class EscalationStart(BaseModel):
    ok: bool
    state: EscalationState = EscalationState.AWAITING_PROOF
    proof_token: Optional[str] = None
    reason: Optional[Reason] = None
    tag: Optional[str] = None


class EscalationResult(BaseModel):
    ok: bool
    state: EscalationState = EscalationState.AWAITING_PROOF
    session_token: Optional[str] = None
    fresh_token: Optional[str] = None
    reason: Optional[Reason] = None
    tag: Optional[str] = None


# -----------------------------------------------------------------------------
# Injected configuration
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class HandshakeConfig:
    """
    Everything the handshake needs from the outside world.

    :param secret: HMAC key shared by issuer and verifier.
    :param policy: Tag allow-list (empty = open mode).
    :param clock: Returns epoch milliseconds.
    :param nonce_factory: Returns a fresh delimiter-free nonce.
    """

    secret: str
    policy: TagPolicy = field(default_factory=TagPolicy)
    setup_ttl_ms: int = DEFAULT_SETUP_TTL_MS
    session_ttl_ms: int = DEFAULT_SESSION_TTL_MS
    fresh_ttl_ms: int = DEFAULT_FRESH_TTL_MS
    clock: Callable[[], int] = now_ms
    nonce_factory: Callable[[], str] = new_nonce

    @classmethod
    def from_settings(cls, settings, policy: Optional[TagPolicy] = None) -> "HandshakeConfig":
        if policy is None:
            policy = TagPolicy.load(settings.ALLOWED_TAGS, settings.ALLOWED_TAGS_PATH)
        return cls(
            secret=settings.SESSION_SECRET,
            policy=policy,
            setup_ttl_ms=settings.SETUP_PROOF_TTL_SECONDS * SECOND_MS,
            session_ttl_ms=settings.SESSION_TTL_SECONDS * SECOND_MS,
            fresh_ttl_ms=settings.FRESH_TTL_SECONDS * SECOND_MS,
        )

    @property
    def setup_policy(self) -> TtlPolicy:
        return TtlPolicy("setup", self.setup_ttl_ms)

    @property
    def session_policy(self) -> TtlPolicy:
        return TtlPolicy("session", self.session_ttl_ms)

    @property
    def fresh_policy(self) -> TtlPolicy:
        return TtlPolicy("fresh", self.fresh_ttl_ms)


def normalize_tag(tag) -> Optional[str]:
    """Trimmed tag, or None if it is empty or not encodable."""
    tag = str(tag or "").strip()
    if not TAG_RE.match(tag):
        return None
    return tag


# -----------------------------------------------------------------------------
# Verifier
# -----------------------------------------------------------------------------
class Verifier:
    def __init__(self, config: HandshakeConfig):
        self._config = config

    def verify(self, raw: str, now: int, ttl: TtlPolicy) -> Verdict:
        """
        Parse, check signature, check age. Short-circuits on first failure.

        Expired verdicts carry the tag: the signature has already been checked,
        so the caller can restart the flow for that tag without re-prompting.
        """
        try:
            token = parse_token(raw)
        except TokenError:
            return Verdict(Reason.MALFORMED_TOKEN)

        if not token.signed_by(kind_key(self._config.secret, ttl.kind)):
            return Verdict(Reason.BAD_SIGNATURE)

        try:
            issued_at = token.issued_at
        except ValueError:
            return Verdict(Reason.EXPIRED, tag=token.tag, token=token)

        age = now - issued_at
        if age > ttl.max_age_ms or age < -MAX_CLOCK_SKEW_MS:
            return Verdict(Reason.EXPIRED, tag=token.tag, token=token)

        return Verdict(tag=token.tag, token=token)


# -----------------------------------------------------------------------------
# Issuer
# -----------------------------------------------------------------------------
class Issuer:
    def __init__(self, config: HandshakeConfig):
        self._config = config

    def mint(self, tag: str, kind: str, now: Optional[int] = None) -> Token:
        """Sign a new token of the given kind for an already validated tag."""
        if now is None:
            now = self._config.clock()
        return mint_token(
            tag,
            kind_key(self._config.secret, kind),
            issued_at=now,
            nonce=self._config.nonce_factory(),
        )

    def issue_setup_proof(self, tag, now: Optional[int] = None) -> Verdict:
        """
        Validate the tag and mint a setup proof.

        Each call mints a fresh token; the caller overwrites any previous
        proof credential with it.
        """
        clean = normalize_tag(tag)
        if clean is None:
            return Verdict(Reason.INVALID_CLAIM)
        if clean not in self._config.policy:
            return Verdict(Reason.FORBIDDEN, tag=clean)
        token = self.mint(clean, self._config.setup_policy.kind, now)
        return Verdict(tag=clean, token=token)


# -----------------------------------------------------------------------------
# Escalation controller
# -----------------------------------------------------------------------------
_PROOF_REASONS = {
    Reason.MALFORMED_TOKEN: Reason.BAD_PROOF,
    Reason.BAD_SIGNATURE: Reason.BAD_PROOF,
    Reason.EXPIRED: Reason.EXPIRED,
}


class EscalationController:
    """
    AwaitingProof -> Verified -> SessionIssued, one request per arrow.

    No state is kept between calls; the "state" is whatever credential the
    caller presents.
    """

    def __init__(self, config: HandshakeConfig):
        self.config = config
        self.issuer = Issuer(config)
        self.verifier = Verifier(config)

    def _now(self, now: Optional[int]) -> int:
        return self.config.clock() if now is None else now

    # ---- stage 1 ------------------------------------------------------------
    def start_escalation(self, tag, now: Optional[int] = None) -> EscalationStart:
        verdict = self.issuer.issue_setup_proof(tag, self._now(now))
        if not verdict.ok:
            log.warning("setup proof denied: reason=%s tag=%s", verdict.reason.value, verdict.tag)
            return EscalationStart(ok=False, reason=verdict.reason, tag=verdict.tag)

        log.info("setup proof issued: tag=%s", verdict.tag)
        return EscalationStart(
            ok=True,
            proof_token=serialize_token(verdict.token),
            tag=verdict.tag,
        )

    # ---- stage 2 ------------------------------------------------------------
    def present_proof(self, proof: Optional[str], tag, now: Optional[int] = None) -> Verdict:
        """
        AwaitingProof -> Verified, or a rejection that leaves the caller in
        AwaitingProof.

        Order: proof present, signature/format, age, tag binding, allow-list.
        """
        clean = normalize_tag(tag)
        if clean is None:
            return Verdict(Reason.INVALID_CLAIM)

        if not proof:
            return Verdict(Reason.NO_PROOF, tag=clean)

        verdict = self.verifier.verify(proof, self._now(now), self.config.setup_policy)
        if not verdict.ok:
            return Verdict(_PROOF_REASONS[verdict.reason], tag=verdict.tag or clean)

        if verdict.tag != clean:
            return Verdict(Reason.CLAIM_MISMATCH, tag=clean)

        # allow-list may have changed between the two requests
        if clean not in self.config.policy:
            return Verdict(Reason.FORBIDDEN, tag=clean)

        return verdict

    # ---- stage 3 ------------------------------------------------------------
    def mint_session(self, tag: str, now: Optional[int] = None) -> EscalationResult:
        """
        Verified -> SessionIssued.

        The session token and the fresh marker are independent tokens with
        their own nonces, signed under the session and fresh keys respectively.
        """
        now = self._now(now)
        session = self.issuer.mint(tag, self.config.session_policy.kind, now)
        fresh = self.issuer.mint(tag, self.config.fresh_policy.kind, now)
        log.info("session issued: tag=%s", tag)
        return EscalationResult(
            ok=True,
            state=EscalationState.SESSION_ISSUED,
            session_token=serialize_token(session),
            fresh_token=serialize_token(fresh),
            tag=tag,
        )

    def complete_escalation(self, proof: Optional[str], tag, now: Optional[int] = None) -> EscalationResult:
        now = self._now(now)
        verdict = self.present_proof(proof, tag, now)
        if not verdict.ok:
            log.warning("escalation denied: reason=%s tag=%s", verdict.reason.value, verdict.tag)
            return EscalationResult(ok=False, reason=verdict.reason, tag=verdict.tag)
        return self.mint_session(verdict.tag, now)

    # ---- protected requests -------------------------------------------------
    def check_session(
        self,
        session_token: Optional[str],
        require_freshness: bool = False,
        marker: Optional[str] = None,
        now: Optional[int] = None,
    ) -> SessionCheck:
        now = self._now(now)
        if not session_token:
            return SessionCheck(ok=False, reason=Reason.MALFORMED_TOKEN)

        verdict = self.verifier.verify(session_token, now, self.config.session_policy)
        if not verdict.ok:
            return SessionCheck(ok=False, reason=verdict.reason, tag=verdict.tag)

        if require_freshness and not self._fresh(marker, verdict.tag, now):
            return SessionCheck(ok=False, reason=Reason.EXPIRED, tag=verdict.tag)

        return SessionCheck(ok=True, tag=verdict.tag)

    def _fresh(self, marker: Optional[str], tag: str, now: int) -> bool:
        if not marker:
            return False
        verdict = self.verifier.verify(marker, now, self.config.fresh_policy)
        return verdict.ok and verdict.tag == tag

