from typing import Optional

import click

from trustfi_identity.commands.did import database_url_option
from trustfi_identity.exceptions import DIDResolutionError, LedgerConnectionError
from trustfi_identity.utils import echo_json, load_signed_credential_from_file, run_with_services


@click.group("credential")
def credential():
    """Inspect, verify and revoke stored verifiable credentials"""
    pass


@credential.command("show")
@click.option("--id", "credential_id", required=True, help="Credential ID (cred_...).")
@database_url_option
def show_credential(credential_id: str, database_url: str):
    """Shows a stored credential."""
    record = run_with_services(database_url, lambda s: s.credentials.get_credential_by_id(credential_id))
    if record is None:
        click.echo(click.style(f"Credential {credential_id} not found.", fg="yellow"))
        return
    echo_json(record)


@credential.command("verify")
@click.option("--id", "credential_id", help="Verify a stored credential by ID.")
@click.option(
    "--file",
    "credential_file",
    type=click.Path(exists=True, dir_okay=False, readable=True),
    help="Verify a signed credential JSON file.",
)
@database_url_option
def verify_credential(credential_id: Optional[str], credential_file: Optional[str], database_url: str):
    """Verifies signature, revocation status and CType conformance of a credential."""
    if bool(credential_id) == bool(credential_file):
        click.echo(click.style("Error: pass exactly one of --id or --file.", fg="red"), err=True)
        return

    if credential_file:
        signed = load_signed_credential_from_file(credential_file)
        if signed is None:
            return

        async def action(services):
            return await services.credentials.verify_credential(signed)
    else:
        async def action(services):
            return await services.credentials.verify_stored_credential(credential_id)

    try:
        result = run_with_services(database_url, action)
    except (LedgerConnectionError, DIDResolutionError) as e:
        click.echo(click.style(f"Ledger unavailable, try again later: {e}", fg="red"), err=True)
        return

    if result is None:
        click.echo(click.style(f"Credential {credential_id} not found.", fg="yellow"))
        return
    if result.valid:
        click.echo(click.style("Credential is VALID", fg="green"))
    else:
        click.echo(click.style("Credential is INVALID", fg="red"))
    echo_json(result)


@credential.command("revoke")
@click.option("--id", "credential_id", required=True, help="Credential ID (cred_...).")
@click.confirmation_option(prompt="Revocation is permanent. Continue?")
@database_url_option
def revoke_credential(credential_id: str, database_url: str):
    """Permanently revokes a stored credential."""
    revoked = run_with_services(database_url, lambda s: s.credentials.revoke_credential(credential_id))
    if not revoked:
        click.echo(click.style(f"Credential {credential_id} not found.", fg="yellow"))
        return
    click.echo(click.style(f"Credential {credential_id} revoked.", fg="green"))
