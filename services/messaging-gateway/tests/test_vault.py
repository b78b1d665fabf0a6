import base64

import pytest

from packages.integration.config import Settings
from packages.integration.errors import DecryptionError, InvalidKeyLength, InvalidRequest
from packages.integration.vault import NONCE_SIZE, CredentialVault


@pytest.mark.parametrize("plaintext", ["", "EAAG-token", "ñandú 🚀", "x" * 4096])
def test_roundtrip(vault, plaintext):
    assert vault.decrypt(vault.encrypt(plaintext)) == plaintext


def test_fresh_nonce_per_call(vault):
    a, b = vault.encrypt("same"), vault.encrypt("same")
    assert a != b
    assert base64.b64decode(a)[:NONCE_SIZE] != base64.b64decode(b)[:NONCE_SIZE]


def test_any_flipped_bit_fails(vault):
    raw = bytearray(base64.b64decode(vault.encrypt("secret-token")))
    for i in range(len(raw)):
        tampered = bytearray(raw)
        tampered[i] ^= 0x01
        with pytest.raises(DecryptionError):
            vault.decrypt(base64.b64encode(bytes(tampered)).decode())


def test_truncated_and_garbage_input(vault):
    ct = vault.encrypt("secret")
    with pytest.raises(DecryptionError):
        vault.decrypt(base64.b64encode(base64.b64decode(ct)[:10]).decode())
    with pytest.raises(DecryptionError):
        vault.decrypt("not base64 !!!")


def test_other_key_cannot_decrypt(vault):
    other = CredentialVault(b"o" * 32)
    with pytest.raises(DecryptionError):
        other.decrypt(vault.encrypt("secret"))


@pytest.mark.parametrize("key", [b"", b"short", b"k" * 31, b"k" * 33])
def test_key_must_be_32_bytes(key):
    with pytest.raises(InvalidKeyLength):
        CredentialVault(key)


def test_key_from_settings_raw_and_base64():
    raw = CredentialVault.from_settings(Settings(encryption_key="k" * 32))
    b64 = CredentialVault.from_settings(Settings(encryption_key="base64:" + base64.b64encode(b"k" * 32).decode()))
    assert b64.decrypt(raw.encrypt("t")) == "t"
    with pytest.raises(InvalidKeyLength):
        CredentialVault.from_settings(Settings(encryption_key=""))


def test_is_encrypted_heuristic(vault):
    assert vault.is_encrypted(vault.encrypt("EAAG-a-real-looking-token"))
    assert not vault.is_encrypted("EAAG-plain-token")
    assert not vault.is_encrypted("x" * 60 + "!")


def test_access_token_helpers_reject_empty(vault):
    with pytest.raises(InvalidRequest):
        vault.encrypt_access_token("")
    with pytest.raises(InvalidRequest):
        vault.decrypt_access_token("")
    assert vault.decrypt_access_token(vault.encrypt_access_token("tok")) == "tok"
