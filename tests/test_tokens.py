import base64
import hashlib
import hmac

import pytest

from tapgate.tokens import (
    MalformedToken,
    Token,
    TokenError,
    canonical_payload,
    decode_issued_at,
    encode_issued_at,
    kind_key,
    mint_token,
    new_nonce,
    parse_token,
    serialize_token,
    sign,
)


def test_canonical_payload_is_dot_join():
    assert canonical_payload("alice", "lq2x9k", "n0nce") == "alice.lq2x9k.n0nce"
    assert canonical_payload("alice", "lq2x9k", "n0nce").encode("utf-8") == b"alice.lq2x9k.n0nce"


def test_sign_matches_plain_hmac_sha256():
    payload = canonical_payload("alice", "lq2x9k", "n0nce")
    expected = base64.urlsafe_b64encode(
        hmac.new(b"s1", payload.encode("utf-8"), hashlib.sha256).digest()
    ).rstrip(b"=").decode("ascii")
    assert sign(payload, "s1") == expected


def test_signature_is_cookie_and_delimiter_safe():
    sig = sign("alice.abc.def", "s1")
    assert len(sig) == 43
    for ch in "=;/+.,":
        assert ch not in sig


def test_different_secret_different_signature():
    assert sign("alice.abc.def", "s1") != sign("alice.abc.def", "s2")


def test_kind_keys_are_distinct_hmacs_of_the_secret():
    keys = {kind: kind_key("s1", kind) for kind in ("setup", "session", "fresh")}
    assert len(set(keys.values())) == 3
    assert keys["session"] == sign("session", "s1")
    assert kind_key("s2", "session") != keys["session"]


@pytest.mark.parametrize("ms,text", [(0, "0"), (35, "z"), (36, "10"), (1700000000000, "loyw3v28")])
def test_issued_at_base36(ms, text):
    assert encode_issued_at(ms) == text
    assert decode_issued_at(text) == ms


@pytest.mark.parametrize("bad", ["", "+10", "1_0", "ABC", " 1", "-1", "1.5", "zzzzzzzzzzzzzz"])
def test_issued_at_rejects_unclean_text(bad):
    with pytest.raises(ValueError):
        decode_issued_at(bad)


def test_issued_at_rejects_negative():
    with pytest.raises(ValueError):
        encode_issued_at(-1)


def test_nonce_has_no_delimiter_and_is_random():
    nonces = {new_nonce() for _ in range(50)}
    assert len(nonces) == 50
    assert all("." not in n and len(n) >= 11 for n in nonces)


def test_serialize_parse_round_trip():
    token = mint_token("alice", "s1", issued_at=1700000000000, nonce="abcDEF_-12")
    raw = serialize_token(token)
    assert raw.count(".") == 3
    assert raw.startswith("alice.loyw3v28.abcDEF_-12.")
    assert parse_token(raw) == token
    assert str(token) == raw


@pytest.mark.parametrize("raw", ["", "a.b.c", "a.b.c.d.e", "a..c.d", ".b.c.d", "a.b.c.", "nodots"])
def test_parse_rejects_wrong_field_count(raw):
    with pytest.raises(MalformedToken):
        parse_token(raw)


def test_token_is_immutable():
    token = Token("alice", "1", "n", "s")
    with pytest.raises(Exception):
        token.tag = "bob"


@pytest.mark.parametrize("tag", ["", "a.b", "a b", "x;y", "x=y"])
def test_mint_refuses_unencodable_tag(tag):
    with pytest.raises(TokenError):
        mint_token(tag, "s1", issued_at=1, nonce="n")


def test_mint_refuses_delimiter_in_nonce():
    with pytest.raises(TokenError):
        mint_token("alice", "s1", issued_at=1, nonce="a.b")


def test_signed_by():
    token = mint_token("alice", "s1", issued_at=1700000000000, nonce="n1")
    assert token.signed_by("s1")
    assert not token.signed_by("s2")
