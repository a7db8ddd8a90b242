"""Builds the identity components from `Settings`.

Nothing here is a module-level singleton: each call returns a fresh, isolated set
of components. Pass ``store`` or ``gateway`` to substitute backends.
"""

from dataclasses import dataclass
from typing import Optional

import httpx

from trustfi_identity.cache import TTLCache
from trustfi_identity.config import Settings, settings as default_settings
from trustfi_identity.credentials import CredentialService
from trustfi_identity.ctype import CTypeRegistry
from trustfi_identity.dids import DidManager
from trustfi_identity.keys import Keyring
from trustfi_identity.ledger import LedgerGateway
from trustfi_identity.logging import get_logger
from trustfi_identity.retry import RetryPolicy
from trustfi_identity.store.base import IdentityStore
from trustfi_identity.store.crud import SqlIdentityStore

logger = get_logger(__name__)


@dataclass
class IdentityServices:
    store: IdentityStore
    gateway: LedgerGateway
    ctypes: CTypeRegistry
    keyring: Keyring
    dids: DidManager
    credentials: CredentialService

    async def close(self) -> None:
        await self.gateway.disconnect()
        await self.store.close()


def build_gateway(config: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> LedgerGateway:
    policy = RetryPolicy(
        max_attempts=config.ledger_max_retries,
        base_delay=config.ledger_retry_base_delay,
        max_delay=config.ledger_retry_max_delay,
        retry_on=(httpx.HTTPError, OSError),
    )
    return LedgerGateway(config.ledger_endpoint, retry_policy=policy, timeout=config.ledger_timeout, transport=transport)


def build_services(
    config: Optional[Settings] = None,
    *,
    store: Optional[IdentityStore] = None,
    gateway: Optional[LedgerGateway] = None,
    ctypes: Optional[CTypeRegistry] = None,
) -> IdentityServices:
    config = config or default_settings
    if config.key_encryption_key is None:
        logger.warning("TRUSTFI_KEY_ENCRYPTION_KEY is not set; issuer keys are sealed with the development placeholder")

    store = store if store is not None else SqlIdentityStore.from_url(config.database_url)
    gateway = gateway if gateway is not None else build_gateway(config)
    ctypes = ctypes if ctypes is not None else CTypeRegistry()
    keyring = Keyring()

    dids = DidManager(
        store,
        gateway,
        encryption_key=config.encryption_secret(),
        keyring=keyring,
        cache=TTLCache(config.did_cache_ttl),
        kdf_opslimit=config.kdf_opslimit,
        kdf_memlimit=config.kdf_memlimit,
    )
    credentials = CredentialService(
        store,
        ctypes,
        dids,
        keyring=keyring,
        verification_cache=TTLCache(config.verification_cache_ttl),
    )
    return IdentityServices(
        store=store,
        gateway=gateway,
        ctypes=ctypes,
        keyring=keyring,
        dids=dids,
        credentials=credentials,
    )
