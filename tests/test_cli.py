"""Tests for the command-line entry point."""

import json

import pytest

from coldcraft.config import get_settings
from coldcraft.main import build_parser, main
from coldcraft.signing import reset_signer

from conftest import EVM_ADDRESS, TEST_MNEMONIC


@pytest.fixture(autouse=True)
def fresh_settings():
    get_settings.cache_clear()
    reset_signer()
    yield
    get_settings.cache_clear()
    reset_signer()


def test_parser_health_networks():
    """Test that --network is repeatable."""
    args = build_parser().parse_args(["health", "--network", "sepolia", "--network", "solana-devnet"])
    assert args.networks == ["sepolia", "solana-devnet"]


def test_config_is_redacted(capsys, monkeypatch):
    """Test that the config command never prints secrets."""
    monkeypatch.setenv("SIMULATED_SIGNER_MNEMONIC", TEST_MNEMONIC)

    assert main(["config"]) == 0
    output = json.loads(capsys.readouterr().out)
    assert output["signer_backend"] == "simulated"
    assert output["simulated_signer_mnemonic"] == "***"
    assert TEST_MNEMONIC not in json.dumps(output)


def test_address(capsys, monkeypatch):
    """Test reading the default EVM address from the simulated signer."""
    monkeypatch.setenv("SIMULATED_SIGNER_MNEMONIC", TEST_MNEMONIC)

    assert main(["address", "evm"]) == 0
    output = json.loads(capsys.readouterr().out)
    assert output["address"] == EVM_ADDRESS


def test_unknown_network_exit_code(capsys, monkeypatch):
    """Test that a pipeline error prints its structured form and exits 1."""
    monkeypatch.setenv("SIMULATED_SIGNER_MNEMONIC", TEST_MNEMONIC)

    assert main(["fees", "dogechain"]) == 1
    output = json.loads(capsys.readouterr().out)
    assert output["error"]["details"]["rule"] == "unsupported_network"


def test_missing_mnemonic_exit_code(capsys, monkeypatch):
    """Test that a configuration error exits 2."""
    monkeypatch.delenv("SIMULATED_SIGNER_MNEMONIC", raising=False)

    assert main(["address", "evm"]) == 2
    output = json.loads(capsys.readouterr().out)
    assert output["error"]["code"] == "configuration_error"
