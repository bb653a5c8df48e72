"""Tests for conversation-key encryption of chat messages."""

import base64

import pytest

from src.services.message_crypto import (
    DECRYPTION_SENTINEL,
    decrypt_message,
    derive_key,
    encrypt_message,
)


class TestDeriveKey:
    def test_key_is_order_independent(self):
        assert derive_key("alice", "bob") == derive_key("bob", "alice")

    def test_key_is_32_bytes(self):
        assert len(derive_key("alice", "bob")) == 32

    def test_different_pairs_get_different_keys(self):
        assert derive_key("alice", "bob") != derive_key("alice", "carol")

    def test_salt_override_changes_key(self, monkeypatch):
        default = derive_key("alice", "bob")
        monkeypatch.setenv("DREAMIE_CHAT_SALT", "another-salt")
        assert derive_key("alice", "bob") != default


class TestEncryptDecrypt:
    def test_either_party_decrypts(self):
        envelope = encrypt_message("Gates are open!", "alice", "bob")
        assert decrypt_message(envelope.ciphertext, envelope.iv, "bob", "alice") == "Gates are open!"
        assert decrypt_message(envelope.ciphertext, envelope.iv, "alice", "bob") == "Gates are open!"

    def test_unicode_text_survives(self):
        envelope = encrypt_message("Danke schön 🏝️", "alice", "bob")
        assert decrypt_message(envelope.ciphertext, envelope.iv, "alice", "bob") == "Danke schön 🏝️"

    def test_fresh_nonce_per_message(self):
        first = encrypt_message("hi", "alice", "bob")
        second = encrypt_message("hi", "alice", "bob")
        assert first.iv != second.iv
        assert first.ciphertext != second.ciphertext
        assert len(base64.b64decode(first.iv)) == 12

    def test_wrong_pair_yields_sentinel(self):
        envelope = encrypt_message("secret", "alice", "bob")
        assert decrypt_message(envelope.ciphertext, envelope.iv, "alice", "carol") == DECRYPTION_SENTINEL

    def test_tampered_ciphertext_yields_sentinel(self):
        envelope = encrypt_message("secret", "alice", "bob")
        raw = bytearray(base64.b64decode(envelope.ciphertext))
        raw[0] ^= 0x01
        tampered = base64.b64encode(bytes(raw)).decode("ascii")
        assert decrypt_message(tampered, envelope.iv, "alice", "bob") == DECRYPTION_SENTINEL

    @pytest.mark.parametrize("byte_index,bit", [(0, 0x01), (11, 0x80)])
    def test_flipped_nonce_bit_yields_sentinel(self, byte_index, bit):
        envelope = encrypt_message("secret", "alice", "bob")
        nonce = bytearray(base64.b64decode(envelope.iv))
        nonce[byte_index] ^= bit
        flipped = base64.b64encode(bytes(nonce)).decode("ascii")
        assert decrypt_message(envelope.ciphertext, flipped, "alice", "bob") == DECRYPTION_SENTINEL

    @pytest.mark.parametrize(
        "ciphertext,iv",
        [
            ("not base64!!", base64.b64encode(b"\x00" * 12).decode()),
            (base64.b64encode(b"payload").decode(), "%%%"),
            (base64.b64encode(b"payload").decode(), base64.b64encode(b"short").decode()),
        ],
    )
    def test_malformed_envelope_yields_sentinel(self, ciphertext, iv):
        assert decrypt_message(ciphertext, iv, "alice", "bob") == DECRYPTION_SENTINEL
