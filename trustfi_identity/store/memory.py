from datetime import UTC, datetime
from itertools import count
from typing import Any, Dict, List, Optional, Tuple, TypeVar

from pydantic import BaseModel

from trustfi_identity.exceptions import StorageError
from trustfi_identity.models import DidDocument, DidRecord, EncryptedKeys, SubjectKind, VerifiableCredential
from trustfi_identity.store.base import IdentityStore, check_update_fields

M = TypeVar("M", bound=BaseModel)


def _copy(model: Optional[M]) -> Optional[M]:
    # Callers get their own objects; the stored records only change through the store.
    return model.model_copy(deep=True) if model is not None else None


class InMemoryIdentityStore(IdentityStore):
    """Dict-backed store for tests and single-process tools. Nothing survives the process."""

    def __init__(self):
        self._dids: Dict[Tuple[str, SubjectKind], DidRecord] = {}
        self._credentials: Dict[str, VerifiableCredential] = {}
        self._sequence: Dict[str, int] = {}
        self._counter = count()

    async def upsert_did(
        self,
        subject_address: str,
        kind: SubjectKind,
        document: DidDocument,
        encrypted_keys: Optional[EncryptedKeys] = None,
    ) -> DidRecord:
        record = DidRecord(
            subjectAddress=subject_address,
            kind=kind,
            document=document.model_copy(deep=True),
            encryptedKeys=encrypted_keys.model_copy(deep=True) if encrypted_keys else None,
            createdAt=datetime.now(UTC),
        )
        self._dids[(subject_address, kind)] = record
        return _copy(record)

    async def get_did(self, subject_address: str, kind: SubjectKind) -> Optional[DidRecord]:
        return _copy(self._dids.get((subject_address, kind)))

    async def insert_credential(self, record: VerifiableCredential) -> str:
        if record.credentialId in self._credentials:
            raise StorageError(f"Credential '{record.credentialId}' already exists")
        stored = record.model_copy(update={"createdAt": record.createdAt or datetime.now(UTC)}, deep=True)
        self._credentials[stored.credentialId] = stored
        self._sequence[stored.credentialId] = next(self._counter)
        return stored.credentialId

    async def get_credential(self, credential_id: str) -> Optional[VerifiableCredential]:
        return _copy(self._credentials.get(credential_id))

    async def get_credentials_by_holder(self, holder_did: str) -> List[VerifiableCredential]:
        matches = [c for c in self._credentials.values() if c.holderDid == holder_did]
        matches.sort(key=lambda c: (c.createdAt, self._sequence[c.credentialId]), reverse=True)
        return [_copy(c) for c in matches]

    async def get_pending_credential(self, claim_nonce: str) -> Optional[VerifiableCredential]:
        for credential in self._credentials.values():
            if credential.claimNonce == claim_nonce:
                return _copy(credential)
        return None

    async def update_credential(
        self,
        credential_id: str,
        fields: Dict[str, Any],
        *,
        only_if_pending: bool = False,
    ) -> bool:
        check_update_fields(fields)
        current = self._credentials.get(credential_id)
        if current is None:
            return False
        if only_if_pending and not current.is_pending:
            return False
        self._credentials[credential_id] = current.model_copy(update=fields)
        return True

    async def get_revocation_status(
        self,
        issuer_did: str,
        holder_did: str,
        signature: Optional[str] = None,
    ) -> bool:
        return any(
            c.revoked
            for c in self._credentials.values()
            if c.issuerDid == issuer_did
            and (c.signature == signature if signature is not None else c.holderDid == holder_did)
        )
