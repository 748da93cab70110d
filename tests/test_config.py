"""Tests for tccbridge.config and tccbridge._crypto."""

from __future__ import annotations

import json
import stat
from pathlib import Path

import pytest

from tccbridge._constants import API_BASE, DEFAULT_BRIDGE_URL
from tccbridge._crypto import (
    aes_gcm_decrypt,
    aes_gcm_encrypt,
    decrypt_string,
    encrypt_string,
    load_or_create_key,
)
from tccbridge.config import Config


class TestConfig:
    def test_defaults_when_missing(self, tmp_path):
        config = Config.load(tmp_path / "config.json")
        assert config.base_url == API_BASE
        assert config.poll_interval == 600
        assert config.bridge_url == DEFAULT_BRIDGE_URL
        assert config.rate_per_minute == 1.0
        assert config.rate_burst == 5

    def test_overlay(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(
            json.dumps({"poll_interval": 900, "data_dir": "~/tcc", "unknown_key": 1})
        )
        config = Config.load(path)
        assert config.poll_interval == 900
        assert config.data_dir == Path("~/tcc").expanduser()
        assert config.bridge_url == DEFAULT_BRIDGE_URL

    def test_rejects_non_object(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("[1, 2]")
        with pytest.raises(ValueError):
            Config.load(path)

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "sub" / "config.json"
        Config(bridge_url="http://pi:5540", data_dir=tmp_path).save(path)
        loaded = Config.load(path)
        assert loaded.bridge_url == "http://pi:5540"
        assert loaded.data_dir == tmp_path

    def test_paths(self, tmp_path):
        config = Config(data_dir=tmp_path)
        assert config.credentials_path == tmp_path / "credentials.json"
        assert config.key_path.parent == tmp_path
        assert config.state_path == tmp_path / "state.json"


class TestCrypto:
    def test_key_created_once(self, tmp_path):
        path = tmp_path / "keys" / "encryption.key"
        key = load_or_create_key(path)
        assert len(key) == 32
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert load_or_create_key(path) == key

    def test_wrong_size_key_is_rejected(self, tmp_path):
        path = tmp_path / "encryption.key"
        path.write_bytes(b"short")
        with pytest.raises(ValueError, match="expected 32"):
            load_or_create_key(path)
        assert path.read_bytes() == b"short"

    def test_wrong_size_key_replaced_on_request(self, tmp_path, caplog):
        path = tmp_path / "encryption.key"
        path.write_bytes(b"short")
        assert len(load_or_create_key(path, replace_invalid=True)) == 32
        assert "Replacing invalid key file" in caplog.text

    def test_string_round_trip(self, tmp_path):
        key = load_or_create_key(tmp_path / "k")
        token = encrypt_string("hunter2", key)
        assert "hunter2" not in token
        assert decrypt_string(token, key) == "hunter2"

    def test_nonce_is_random(self, tmp_path):
        key = load_or_create_key(tmp_path / "k")
        assert aes_gcm_encrypt(b"same", key) != aes_gcm_encrypt(b"same", key)

    def test_tampered_ciphertext(self, tmp_path):
        key = load_or_create_key(tmp_path / "k")
        blob = bytearray(aes_gcm_encrypt(b"secret", key))
        blob[-1] ^= 0x01
        with pytest.raises(ValueError):
            aes_gcm_decrypt(bytes(blob), key)

    def test_truncated(self, tmp_path):
        key = load_or_create_key(tmp_path / "k")
        with pytest.raises(ValueError, match="too short"):
            aes_gcm_decrypt(b"\x00" * 10, key)
