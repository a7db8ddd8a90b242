"""DID lifecycle for holders and issuers: creation, storage, lookup and caching.

Issuer key material is sealed before it reaches the store; holder keys stay in
the in-process keyring only.
"""

import asyncio
from typing import Any, Dict, Optional, Tuple

from nacl.signing import SigningKey

from trustfi_identity.cache import TTLCache
from trustfi_identity.exceptions import DecryptionError
from trustfi_identity.keys import (
    Keyring,
    LightDid,
    decode_multibase,
    decrypt_payload,
    encode_multibase,
    encrypt_payload,
    is_light_did,
    public_key_multibase,
    resolve_light_did,
)
from trustfi_identity.ledger import LedgerGateway
from trustfi_identity.logging import get_logger
from trustfi_identity.models import DidDocument, EncryptedKeys, SubjectKind
from trustfi_identity.store.base import IdentityStore

logger = get_logger(__name__)

DEFAULT_DID_CACHE_TTL = 3600.0


def _cache_key(subject_address: str, kind: SubjectKind) -> Tuple[str, SubjectKind]:
    return subject_address.lower(), kind


class DidManager:
    def __init__(
        self,
        store: IdentityStore,
        gateway: LedgerGateway,
        *,
        encryption_key: str,
        keyring: Optional[Keyring] = None,
        cache: Optional[TTLCache] = None,
        kdf_opslimit: Optional[int] = None,
        kdf_memlimit: Optional[int] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.keyring = keyring if keyring is not None else Keyring()
        self.cache: TTLCache[Tuple[str, SubjectKind], DidDocument] = (
            cache if cache is not None else TTLCache(DEFAULT_DID_CACHE_TTL)
        )
        self._encryption_key = encryption_key
        self._kdf_opslimit = kdf_opslimit
        self._kdf_memlimit = kdf_memlimit

    async def generate_did(self, subject_address: str, kind: SubjectKind) -> DidDocument:
        """Returns the DID of ``(subject_address, kind)``, creating a light DID only if none exists."""
        existing = await self.get_did(subject_address, kind)
        if existing is not None:
            logger.info(f"DID already exists for {kind.value} {subject_address}")
            return existing

        light_did = self.gateway.create_light_did()
        encrypted_keys = None
        if kind is SubjectKind.ISSUER:
            # Argon2id key derivation runs on a worker thread.
            encrypted_keys = await asyncio.to_thread(
                self.encrypt_keys, light_did.document, light_did.signing_key, self._encryption_key
            )

        await self.store_did(subject_address, light_did.document, kind, encrypted_keys)
        self.keyring.add_light_did(light_did)
        logger.info(f"Generated {kind.value} DID {light_did.uri} for {subject_address}")
        return light_did.document

    async def store_did(
        self,
        subject_address: str,
        did: DidDocument,
        kind: SubjectKind,
        encrypted_keys: Optional[EncryptedKeys] = None,
    ) -> None:
        address = subject_address.lower()
        await self.store.upsert_did(address, kind, did, encrypted_keys if kind is SubjectKind.ISSUER else None)
        self.cache.set(_cache_key(address, kind), did)
        logger.info(f"Stored {kind.value} DID for {address}")

    async def get_did(self, subject_address: str, kind: SubjectKind) -> Optional[DidDocument]:
        key = _cache_key(subject_address, kind)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"DID cache hit for {subject_address}")
            return cached

        record = await self.store.get_did(key[0], kind)
        if record is None:
            logger.info(f"No {kind.value} DID found for {subject_address}")
            return None
        self.cache.set(key, record.document)
        return record.document

    async def resolve_did(self, uri: str) -> Optional[DidDocument]:
        """Resolves any DID: light DIDs from their URI, everything else through the ledger."""
        if is_light_did(uri):
            try:
                return resolve_light_did(uri)
            except ValueError as e:
                logger.warning(f"Malformed light DID {uri}: {e}")
                return None
        return await self.gateway.resolve(uri)

    def encrypt_keys(self, did: DidDocument, signing_key: SigningKey, encryption_key: str) -> EncryptedKeys:
        payload = {
            "uri": did.uri,
            "authentication": [m.model_dump(exclude_none=True) for m in did.authentication],
            "assertionMethod": [m.model_dump(exclude_none=True) for m in did.assertionMethod or []],
            "keyAgreement": [m.model_dump(exclude_none=True) for m in did.keyAgreement or []],
            "signingKeySeed": encode_multibase(bytes(signing_key)),
        }
        return encrypt_payload(payload, encryption_key, opslimit=self._kdf_opslimit, memlimit=self._kdf_memlimit)

    def decrypt_keys(self, encrypted_keys: EncryptedKeys, encryption_key: str) -> Dict[str, Any]:
        """Opens issuer key material. Raises `DecryptionError` if ``encryption_key`` is wrong."""
        return decrypt_payload(encrypted_keys, encryption_key)

    async def unlock_issuer_keys(self, subject_address: str, encryption_key: Optional[str] = None) -> Optional[LightDid]:
        """Loads a stored issuer's signing key into the keyring.

        Returns:
            The issuer DID with its key, or None when the issuer has no stored DID.

        Raises:
            DecryptionError: if the key material cannot be opened or does not match the DID.
        """
        record = await self.store.get_did(subject_address.lower(), SubjectKind.ISSUER)
        if record is None:
            return None
        if record.encryptedKeys is None:
            raise DecryptionError(f"Issuer DID {record.document.uri} has no stored key material")

        keys = await asyncio.to_thread(self.decrypt_keys, record.encryptedKeys, encryption_key or self._encryption_key)
        try:
            signing_key = SigningKey(decode_multibase(keys["signingKeySeed"]))
        except (KeyError, ValueError) as e:
            raise DecryptionError(f"Stored key material for {record.document.uri} is malformed: {e}") from e

        light_did = LightDid(document=record.document, signing_key=signing_key)
        auth = record.document.authentication[0]
        if keys.get("uri") != record.document.uri or auth.publicKeyMultibase != public_key_multibase(signing_key.verify_key):
            raise DecryptionError(f"Stored key material does not belong to {record.document.uri}")
        self.keyring.add_light_did(light_did)
        logger.info(f"Unlocked signing key for issuer DID {record.document.uri}")
        return light_did

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.info("DID cache cleared")

    def cache_stats(self) -> dict:
        return self.cache.stats()
