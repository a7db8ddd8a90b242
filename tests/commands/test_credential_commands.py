import asyncio

import pytest
from click.testing import CliRunner

from trustfi_identity.commands.credential import credential
from trustfi_identity.config import Settings
from trustfi_identity.exceptions import LedgerConnectionError
from trustfi_identity.models import SubjectKind
from trustfi_identity.services import build_services

CONTENTS = {
    "template_id": "1",
    "card_id": "42",
    "tier": 1,
    "issue_date": "2024-01-01",
    "issuer_address": "0xabc",
}


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'identity.db'}"


@pytest.fixture
def issued(database_url):
    """Issues and stores one credential; returns its id and signed payload."""
    async def issue():
        services = build_services(Settings(database_url=database_url, kdf_opslimit=1, kdf_memlimit=8192))
        try:
            issuer = await services.dids.generate_did("0xabc", SubjectKind.ISSUER)
            schema_hash = services.ctypes.get_schema_hash("reputation-card")
            claim = services.credentials.create_credential({"schemaHash": schema_hash, "contents": CONTENTS}, issuer)
            signed = services.credentials.sign_credential(claim, issuer)
            credential_id = await services.credentials.store_credential(signed, card_id="42", template_id="1")
            return credential_id, signed
        finally:
            await services.close()

    return asyncio.run(issue())


def test_credential_show(issued, database_url):
    """Test `credential show` for a stored credential."""
    credential_id, _ = issued
    runner = CliRunner()
    result = runner.invoke(credential, ["show", "--id", credential_id, "--database-url", database_url])

    assert result.exit_code == 0
    assert f'"credentialId": "{credential_id}"' in result.output
    assert '"revoked": false' in result.output


def test_credential_show_missing(database_url):
    runner = CliRunner()
    result = runner.invoke(credential, ["show", "--id", "cred_missing", "--database-url", database_url])

    assert result.exit_code == 0
    assert "Credential cred_missing not found." in result.output


def test_credential_verify_then_revoke(issued, database_url):
    """Test `credential verify` before and after `credential revoke`."""
    credential_id, _ = issued
    runner = CliRunner()

    verified = runner.invoke(credential, ["verify", "--id", credential_id, "--database-url", database_url])
    assert verified.exit_code == 0
    assert "Credential is VALID" in verified.output

    revoked = runner.invoke(credential, ["revoke", "--id", credential_id, "--yes", "--database-url", database_url])
    assert revoked.exit_code == 0
    assert f"Credential {credential_id} revoked." in revoked.output

    reverified = runner.invoke(credential, ["verify", "--id", credential_id, "--database-url", database_url])
    assert reverified.exit_code == 0
    assert "Credential is INVALID" in reverified.output
    assert "Credential has been revoked" in reverified.output


def test_credential_revoke_requires_confirmation(issued, database_url):
    credential_id, _ = issued
    runner = CliRunner()
    result = runner.invoke(credential, ["revoke", "--id", credential_id, "--database-url", database_url], input="n\n")

    assert result.exit_code != 0
    assert "revoked." not in result.output


def test_credential_verify_file(issued, database_url, tmp_path):
    """Test `credential verify --file` with a valid and a tampered payload."""
    _, signed = issued
    runner = CliRunner()
    valid_file = tmp_path / "credential.json"
    valid_file.write_text(signed.model_dump_json())
    tampered = signed.model_copy(deep=True)
    tampered.claim.contents["tier"] = 5
    tampered_file = tmp_path / "tampered.json"
    tampered_file.write_text(tampered.model_dump_json())

    valid = runner.invoke(credential, ["verify", "--file", str(valid_file), "--database-url", database_url])
    invalid = runner.invoke(credential, ["verify", "--file", str(tampered_file), "--database-url", database_url])

    assert "Credential is VALID" in valid.output
    assert "Credential is INVALID" in invalid.output
    assert "Invalid signature" in invalid.output


def test_credential_verify_bad_json(tmp_path, database_url):
    bad_file = tmp_path / "bad.json"
    bad_file.write_text("{not json")
    runner = CliRunner()
    result = runner.invoke(credential, ["verify", "--file", str(bad_file), "--database-url", database_url])

    assert result.exit_code == 0
    assert "Invalid JSON in credential file" in result.output


def test_credential_verify_needs_one_source(database_url):
    runner = CliRunner()
    result = runner.invoke(credential, ["verify", "--database-url", database_url])
    assert "pass exactly one of --id or --file" in result.output


def test_credential_verify_reports_ledger_outage(database_url, mocker):
    """Test `credential verify` shows a retryable error when the ledger is down."""
    mocker.patch(
        "trustfi_identity.commands.credential.run_with_services",
        side_effect=LedgerConnectionError("Failed to connect to ledger", attempts=3),
    )
    runner = CliRunner()
    result = runner.invoke(credential, ["verify", "--id", "cred_1", "--database-url", database_url])

    assert result.exit_code == 0
    assert "Ledger unavailable, try again later" in result.output
