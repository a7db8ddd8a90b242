import asyncio
import json
from typing import Any, Awaitable, Callable, Optional, TypeVar

import click
from pydantic import BaseModel, ValidationError

from trustfi_identity.config import settings
from trustfi_identity.models import SignedCredential
from trustfi_identity.services import IdentityServices, build_services

T = TypeVar("T")


def run_with_services(database_url: Optional[str], action: Callable[[IdentityServices], Awaitable[T]]) -> T:
    """Builds services against ``database_url``, runs ``action`` on a fresh event loop and closes them."""
    config = settings.model_copy(update={"database_url": database_url}) if database_url else settings

    async def runner() -> T:
        services = build_services(config)
        try:
            return await action(services)
        finally:
            await services.close()

    return asyncio.run(runner())


def echo_json(data: Any):
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json", exclude_none=True)
    click.echo(json.dumps(data, indent=2))


def load_signed_credential_from_file(path: str) -> Optional[SignedCredential]:
    """Loads a signed credential from a JSON file, reporting problems on stderr."""
    try:
        with open(path, "r") as f:
            data = json.load(f)
        return SignedCredential.model_validate(data)
    except FileNotFoundError:
        click.echo(click.style(f"Error: credential file {path} not found.", fg="red"), err=True)
        return None
    except json.JSONDecodeError as e:
        click.echo(click.style(f"Error: Invalid JSON in credential file {path}: {e}", fg="red"), err=True)
        return None
    except ValidationError as e:
        click.echo(click.style(f"Error validating credential data from {path}: {e}", fg="red"), err=True)
        return None
