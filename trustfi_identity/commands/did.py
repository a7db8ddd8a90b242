import click

from trustfi_identity.config import settings
from trustfi_identity.models import SubjectKind
from trustfi_identity.utils import echo_json, run_with_services

KIND_CHOICE = click.Choice([kind.value for kind in SubjectKind])

database_url_option = click.option(
    "--database-url",
    default=settings.database_url,
    show_default=True,
    help="Identity store database URL.",
)


@click.group("did")
def did():
    """Create and inspect holder and issuer DIDs"""
    pass


@did.command("create")
@click.option("--address", "-a", required=True, help="Wallet address of the subject.")
@click.option("--kind", "-k", type=KIND_CHOICE, default=SubjectKind.HOLDER.value, show_default=True)
@database_url_option
def create_did(address: str, kind: str, database_url: str):
    """Generates a DID for the subject, or returns the existing one."""
    document = run_with_services(database_url, lambda s: s.dids.generate_did(address, SubjectKind(kind)))
    click.echo(click.style(f"DID for {kind} {address.lower()}: {document.uri}", fg="cyan"))
    echo_json(document)


@did.command("show")
@click.option("--address", "-a", required=True, help="Wallet address of the subject.")
@click.option("--kind", "-k", type=KIND_CHOICE, default=SubjectKind.HOLDER.value, show_default=True)
@database_url_option
def show_did(address: str, kind: str, database_url: str):
    """Shows the stored DID document of a subject."""
    document = run_with_services(database_url, lambda s: s.dids.get_did(address, SubjectKind(kind)))
    if document is None:
        click.echo(click.style(f"No {kind} DID found for {address}. Create one with 'trustfi did create'.", fg="yellow"))
        return
    echo_json(document)
