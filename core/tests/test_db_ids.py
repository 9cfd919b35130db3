from __future__ import annotations

from seedling_core.db.ids import new_session_token, session_token_hash, sha256_hex


def test_sha256_hex_known_value() -> None:
    assert sha256_hex(b"abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


def test_session_tokens_are_unique_and_hashed() -> None:
    a = new_session_token()
    b = new_session_token()
    assert a != b
    assert len(a) >= 32

    h = session_token_hash(a)
    assert len(h) == 64
    assert h == sha256_hex(a.encode("utf-8"))
    assert h != a
