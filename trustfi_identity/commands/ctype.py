import click

from trustfi_identity.ctype import REPUTATION_CARD, CTypeRegistry
from trustfi_identity.utils import echo_json


@click.group("ctype")
def ctype():
    """Inspect the credential types (CTypes) claims must conform to"""
    pass


def _schema_name_option(f):
    return click.option("--name", "-n", default=REPUTATION_CARD, show_default=True, help="CType name.")(f)


@ctype.command("info")
@_schema_name_option
def ctype_info(name: str):
    """Shows title, hash and required fields of a CType."""
    registry = CTypeRegistry()
    try:
        info = registry.get_ctype_info(name)
    except KeyError:
        click.echo(click.style(f"Error: unknown CType '{name}'. Known: {', '.join(registry.names())}", fg="red"), err=True)
        return
    echo_json({**info, "schema": registry.get_schema(name).model_dump(mode="json")})


@ctype.command("hash")
@_schema_name_option
def ctype_hash(name: str):
    """Prints only the CType hash, useful for capturing in variables."""
    registry = CTypeRegistry()
    try:
        click.echo(registry.get_schema_hash(name))
    except KeyError:
        click.echo(click.style(f"Error: unknown CType '{name}'.", fg="red"), err=True)
