import json

import pytest
from click.testing import CliRunner

from content_identity.cli import cli
from content_identity.config import Config
from content_identity.service.hashing import address_for_key, content_hash, recover_signer
from content_identity.service.platform_verifier import find_proof
from tests.fakes import K1

HASH = content_hash(b"cli content")


@pytest.fixture
def signer(monkeypatch):
    monkeypatch.setattr(Config, "SIGNER_PRIVATE_KEY", K1)
    monkeypatch.setattr(Config, "CHAIN_ID", 84532)


def test_proof_command_prints_signed_line(signer):
    result = CliRunner().invoke(cli, ["proof", HASH[2:].upper(), "--issued-at", "1700000000"])

    assert result.exit_code == 0, result.output
    proof = find_proof(result.output, HASH)
    assert proof.issued_at == 1700000000
    assert recover_signer(proof.payload, proof.signature) == address_for_key(K1)


def test_proof_command_needs_a_key(monkeypatch):
    monkeypatch.setattr(Config, "SIGNER_PRIVATE_KEY", "")
    result = CliRunner().invoke(cli, ["proof", HASH])
    assert result.exit_code == 2


def test_invalid_hash_is_a_usage_error(signer):
    result = CliRunner().invoke(cli, ["proof", "0x1234"])
    assert result.exit_code == 2
    assert "64 hex characters" in result.output


def test_manifest_command(signer, tmp_path):
    path = tmp_path / "clip.bin"
    path.write_bytes(b"cli content")

    result = CliRunner().invoke(cli, ["manifest", str(path), "--cid", "bafyCli"])

    assert result.exit_code == 0, result.output
    document = json.loads(result.output.strip().splitlines()[-1])
    assert document["content_hash"] == HASH
    assert document["content_uri"] == "ipfs://bafyCli"
    assert document["creator_did"] == f"did:pkh:eip155:84532:{address_for_key(K1)}"
    assert document["signature"].startswith("0x")
