from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from trustfi_identity.models import DidDocument, DidRecord, EncryptedKeys, SubjectKind, VerifiableCredential

# Fields `update_credential` accepts; everything else on a stored credential is immutable.
UPDATABLE_CREDENTIAL_FIELDS = frozenset({"holderDid", "cardId", "attestationId", "revoked", "revokedAt"})


class IdentityStore(ABC):
    """Persistence contract for DID records and verifiable credentials.

    Every method is a coroutine. "Not found" is reported as None, never raised;
    backend failures surface as `StorageError`.
    """

    @abstractmethod
    async def upsert_did(
        self,
        subject_address: str,
        kind: SubjectKind,
        document: DidDocument,
        encrypted_keys: Optional[EncryptedKeys] = None,
    ) -> DidRecord:
        """Stores the single record for ``(subject_address, kind)``, replacing any previous one."""

    @abstractmethod
    async def get_did(self, subject_address: str, kind: SubjectKind) -> Optional[DidRecord]:
        ...

    @abstractmethod
    async def insert_credential(self, record: VerifiableCredential) -> str:
        """Inserts a new credential and returns its id. The store assigns ``createdAt``."""

    @abstractmethod
    async def get_credential(self, credential_id: str) -> Optional[VerifiableCredential]:
        ...

    @abstractmethod
    async def get_credentials_by_holder(self, holder_did: str) -> List[VerifiableCredential]:
        """Returns the holder's credentials, most recent first."""

    @abstractmethod
    async def get_pending_credential(self, claim_nonce: str) -> Optional[VerifiableCredential]:
        ...

    @abstractmethod
    async def update_credential(
        self,
        credential_id: str,
        fields: Dict[str, Any],
        *,
        only_if_pending: bool = False,
    ) -> bool:
        """Applies ``fields`` to a credential.

        With ``only_if_pending`` the update only applies to an unclaimed, unrevoked
        claim-link credential (see `VerifiableCredential.is_pending`); the check and
        the write happen as one conditional update.

        Returns:
            Whether a record was updated.
        """

    @abstractmethod
    async def get_revocation_status(
        self,
        issuer_did: str,
        holder_did: str,
        signature: Optional[str] = None,
    ) -> bool:
        """True when a matching credential of ``issuer_did`` is revoked.

        Without ``signature`` every credential of the issuer/holder pair is considered.
        With it, the match is the credential carrying that signature, whatever its
        current holder (pending credentials change holder once claimed).
        """

    async def close(self) -> None:
        pass


def check_update_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_CREDENTIAL_FIELDS
    if unknown:
        raise ValueError(f"Credential fields {sorted(unknown)} cannot be updated")
