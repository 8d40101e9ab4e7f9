import pytest

from tapgate.handshake import MAX_CLOCK_SKEW_MS, HandshakeConfig, Reason, TtlPolicy, Verifier
from tapgate.tokens import Token, canonical_payload, kind_key, mint_token, serialize_token, sign

T0 = 1700000000000
TTL = TtlPolicy("setup", 60_000)
KEY = kind_key("s1", TTL.kind)


@pytest.fixture
def verifier():
    return Verifier(HandshakeConfig(secret="s1"))


@pytest.fixture
def raw():
    return serialize_token(mint_token("alice", KEY, issued_at=T0, nonce="n0nce123"))


def _swap(ch: str) -> str:
    return "A" if ch != "A" else "B"


def test_accepts_valid_token(verifier, raw):
    verdict = verifier.verify(raw, T0 + 1000, TTL)
    assert verdict.ok
    assert verdict.tag == "alice"
    assert verdict.token.nonce == "n0nce123"


def test_any_single_signature_flip_is_bad_signature(verifier, raw):
    head, sig = raw.rsplit(".", 1)
    for i in range(len(sig)):
        flipped = sig[:i] + _swap(sig[i]) + sig[i + 1:]
        verdict = verifier.verify(f"{head}.{flipped}", T0, TTL)
        assert verdict.reason is Reason.BAD_SIGNATURE, i


def test_truncated_signature_is_bad_signature(verifier, raw):
    assert verifier.verify(raw[:-1], T0, TTL).reason is Reason.BAD_SIGNATURE


def test_changed_tag_is_bad_signature(verifier, raw):
    tampered = "bob" + raw[len("alice"):]
    assert verifier.verify(tampered, T0, TTL).reason is Reason.BAD_SIGNATURE


def test_changed_issued_at_is_bad_signature(verifier, raw):
    tag, issued, nonce, sig = raw.split(".")
    later = mint_token("alice", KEY, issued_at=T0 + 3_600_000, nonce=nonce).issued
    verdict = verifier.verify(".".join((tag, later, nonce, sig)), T0 + 3_600_000, TTL)
    assert verdict.reason is Reason.BAD_SIGNATURE


def test_wrong_secret_is_bad_signature(raw):
    other = Verifier(HandshakeConfig(secret="s2"))
    assert other.verify(raw, T0, TTL).reason is Reason.BAD_SIGNATURE


@pytest.mark.parametrize("bad", ["", "alice", "a.b.c", "a.b.c.d.e", "a..c.d"])
def test_malformed(verifier, bad):
    verdict = verifier.verify(bad, T0, TTL)
    assert verdict.reason is Reason.MALFORMED_TOKEN
    assert verdict.tag is None


def test_expiry_boundary(verifier, raw):
    assert verifier.verify(raw, T0 + TTL.max_age_ms - 1, TTL).ok
    assert verifier.verify(raw, T0 + TTL.max_age_ms, TTL).ok

    verdict = verifier.verify(raw, T0 + TTL.max_age_ms + 1, TTL)
    assert verdict.reason is Reason.EXPIRED
    assert verdict.tag == "alice"


def test_same_token_different_policies(verifier, raw):
    long_ttl = TtlPolicy(TTL.kind, 30 * 24 * 3600 * 1000)
    at = T0 + 10 * 24 * 3600 * 1000
    assert verifier.verify(raw, at, long_ttl).ok
    assert verifier.verify(raw, at, TTL).reason is Reason.EXPIRED


def test_future_issued_at_within_skew(verifier, raw):
    assert verifier.verify(raw, T0 - MAX_CLOCK_SKEW_MS, TTL).ok
    assert verifier.verify(raw, T0 - MAX_CLOCK_SKEW_MS - 1, TTL).reason is Reason.EXPIRED


def test_signed_garbage_issued_at_is_expired(verifier):
    # a correctly signed token whose time field does not decode
    payload = canonical_payload("alice", "NOT-B36", "n")
    raw = serialize_token(Token("alice", "NOT-B36", "n", sign(payload, KEY)))
    verdict = verifier.verify(raw, T0, TTL)
    assert verdict.reason is Reason.EXPIRED
    assert verdict.tag == "alice"


def test_signature_checked_before_expiry(verifier, raw):
    head, sig = raw.rsplit(".", 1)
    forged = f"{head}.{_swap(sig[0])}{sig[1:]}"
    assert verifier.verify(forged, T0 + 10 * TTL.max_age_ms, TTL).reason is Reason.BAD_SIGNATURE


@pytest.mark.parametrize("kind", ["session", "fresh"])
def test_token_of_one_kind_fails_under_another(verifier, raw, kind):
    other = TtlPolicy(kind, 30 * 24 * 3600 * 1000)
    assert verifier.verify(raw, T0, other).reason is Reason.BAD_SIGNATURE


def test_plain_secret_signature_is_not_accepted(verifier):
    raw = serialize_token(mint_token("alice", "s1", issued_at=T0, nonce="n0nce123"))
    assert verifier.verify(raw, T0, TTL).reason is Reason.BAD_SIGNATURE
