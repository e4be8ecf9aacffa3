"""
Tests for keypair file loading.
"""

import json

import base58
import pytest
from solders.keypair import Keypair

from reflector.core.exceptions import ConfigurationError
from reflector.services.keypairs import load_keypair


def test_json_array(tmp_path):
    keypair = Keypair()
    path = tmp_path / "id.json"
    path.write_text(json.dumps(list(bytes(keypair))))

    assert load_keypair(path).pubkey() == keypair.pubkey()


def test_secret_key_object(tmp_path):
    keypair = Keypair()
    path = tmp_path / "id.json"
    path.write_text(json.dumps({"secretKey": list(bytes(keypair))}))

    assert load_keypair(path).pubkey() == keypair.pubkey()


def test_base58_secret(tmp_path):
    keypair = Keypair()
    path = tmp_path / "id.txt"
    path.write_text(base58.b58encode(bytes(keypair)).decode())

    assert load_keypair(str(path)).pubkey() == keypair.pubkey()


def test_missing_or_malformed(tmp_path):
    with pytest.raises(ConfigurationError):
        load_keypair(tmp_path / "missing.json")

    path = tmp_path / "bad.json"
    path.write_text("[1, 2, 3]")
    with pytest.raises(ConfigurationError):
        load_keypair(path)
