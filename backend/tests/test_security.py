from backend.app.security import (
    hash_password,
    hash_session_token,
    hmac_sha256_hex,
    signature_matches,
    verify_password,
)


def test_session_token_is_hashed_with_prefix():
    h = hash_session_token("abc")
    assert h.startswith("sha256:")
    assert len(h) > 10
    assert h != hash_session_token("abd")


def test_password_hash_roundtrip():
    h = hash_password("s3cret-pass")
    assert h.startswith("$2")
    assert verify_password("s3cret-pass", h) is True
    assert verify_password("wrong", h) is False


def test_verify_password_rejects_missing_or_non_bcrypt_hash():
    assert verify_password("x", None) is False
    assert verify_password("x", "5e884898da28047151d0e56f8dc6292773603d0d6aabbdd62a11ef721d1542d8") is False


def test_signature_matches_is_case_insensitive_on_hex_and_rejects_blanks():
    sig = hmac_sha256_hex("k", "order_1|pay_1")
    assert signature_matches("k", "order_1|pay_1", sig)
    assert signature_matches("k", "order_1|pay_1", sig.upper())
    assert not signature_matches("k", "order_1|pay_2", sig)
    assert not signature_matches("", "order_1|pay_1", sig)
    assert not signature_matches("k", "order_1|pay_1", None)
