import click

from trustfi_identity.commands.credential import credential
from trustfi_identity.commands.ctype import ctype
from trustfi_identity.commands.did import did
from trustfi_identity.logging import configure_logging


@click.group()
def cli():
    """TrustFi Identity - DIDs and verifiable credentials for reputation cards"""
    configure_logging()


cli.add_command(did)
cli.add_command(ctype)
cli.add_command(credential)


if __name__ == "__main__":
    cli()
