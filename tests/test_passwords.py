import pytest

from shareaudit.passwords import hash_password, normalize_password, verify_password


def test_hash_and_verify():
    stored = hash_password("correct horse", iterations=1000)

    assert stored.startswith("pbkdf2_sha256$1000$")
    assert verify_password("correct horse", stored)
    assert not verify_password("correct horse!", stored)


def test_hashes_are_salted():
    assert hash_password("same", iterations=1000) != hash_password("same", iterations=1000)


@pytest.mark.parametrize(
    "stored",
    ["", "plaintext", "md5$1$abc$def", "pbkdf2_sha256$x$AAAA$AAAA", "pbkdf2_sha256$1000$***$AAAA", "pbkdf2_sha256$1000$AAAA$"],
)
def test_malformed_hashes_never_verify(stored):
    assert verify_password("anything", stored) is False


@pytest.mark.parametrize("value", [None, "", "   ", "\t\n"])
def test_blank_passwords_normalize_to_none(value):
    assert normalize_password(value) is None


def test_password_kept_verbatim():
    assert normalize_password(" padded ") == " padded "
