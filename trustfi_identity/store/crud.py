import asyncio
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from trustfi_identity.exceptions import StorageError
from trustfi_identity.logging import get_logger
from trustfi_identity.models import DidDocument, DidRecord, EncryptedKeys, SubjectKind, VerifiableCredential
from trustfi_identity.store.base import IdentityStore, check_update_fields
from trustfi_identity.store.database import create_tables, make_engine, make_session_factory
from trustfi_identity.store.models import CredentialModel, DidRecordModel

logger = get_logger(__name__)

# Model field -> column for the fields `update_credential` may touch.
_CREDENTIAL_COLUMNS = {
    "holderDid": "holder_did",
    "cardId": "card_id",
    "attestationId": "attestation_id",
    "revoked": "revoked",
    "revokedAt": "revoked_at",
}


def _did_record_from_row(row: DidRecordModel) -> DidRecord:
    return DidRecord(
        subjectAddress=row.subject_address,
        kind=SubjectKind(row.kind),
        document=DidDocument.model_validate(row.did_document),
        encryptedKeys=EncryptedKeys.model_validate(row.encrypted_keys) if row.encrypted_keys else None,
        createdAt=row.created_at,
    )


def _credential_from_row(row: CredentialModel) -> VerifiableCredential:
    data = row.credential_data
    claim = data["claim"]
    return VerifiableCredential(
        credentialId=row.credential_id,
        holderDid=row.holder_did,
        issuerDid=row.issuer_did,
        schemaHash=data.get("ctype_hash") or claim["schemaHash"],
        claimContents=claim["contents"],
        signature=data["signature"]["signature"],
        keyUri=data["signature"]["keyUri"],
        cardId=row.card_id,
        templateId=row.template_id,
        claimNonce=row.claim_nonce,
        attestationId=row.attestation_id,
        revoked=row.revoked,
        revokedAt=row.revoked_at,
        createdAt=row.created_at,
    )


class SqlIdentityStore(IdentityStore):
    """`IdentityStore` over SQLAlchemy.

    Each call runs in its own short-lived session on a worker thread, so database
    I/O never blocks the event loop.
    """

    def __init__(self, session_factory: sessionmaker, engine: Optional[Engine] = None):
        self._session_factory = session_factory
        self._engine = engine

    @classmethod
    def from_url(cls, database_url: str, *, create: bool = True) -> "SqlIdentityStore":
        engine = make_engine(database_url)
        if create:
            create_tables(engine)
        return cls(make_session_factory(engine), engine)

    def _session(self) -> Session:
        return self._session_factory()

    async def upsert_did(
        self,
        subject_address: str,
        kind: SubjectKind,
        document: DidDocument,
        encrypted_keys: Optional[EncryptedKeys] = None,
    ) -> DidRecord:
        return await asyncio.to_thread(self._upsert_did, subject_address, kind, document, encrypted_keys)

    def _upsert_did(
        self,
        subject_address: str,
        kind: SubjectKind,
        document: DidDocument,
        encrypted_keys: Optional[EncryptedKeys],
    ) -> DidRecord:
        values = {
            "did_uri": document.uri,
            "did_document": document.model_dump(mode="json", exclude_none=True),
            "encrypted_keys": encrypted_keys.model_dump(mode="json") if encrypted_keys else None,
        }
        try:
            with self._session() as db:
                row = self._find_did(db, subject_address, kind)
                if row is None:
                    row = DidRecordModel(subject_address=subject_address, kind=kind.value, **values)
                    db.add(row)
                else:
                    for column, value in values.items():
                        setattr(row, column, value)
                try:
                    db.commit()
                except IntegrityError:
                    # Lost an insert race on (subject_address, kind): overwrite the winner.
                    db.rollback()
                    row = self._find_did(db, subject_address, kind)
                    for column, value in values.items():
                        setattr(row, column, value)
                    db.commit()
                db.refresh(row)
                return _did_record_from_row(row)
        except SQLAlchemyError as e:
            logger.error(f"Failed to store {kind.value} DID for {subject_address}: {e}")
            raise StorageError(f"Failed to store DID: {e}") from e

    @staticmethod
    def _find_did(db: Session, subject_address: str, kind: SubjectKind) -> Optional[DidRecordModel]:
        return (
            db.query(DidRecordModel)
            .filter(DidRecordModel.subject_address == subject_address, DidRecordModel.kind == kind.value)
            .first()
        )

    async def get_did(self, subject_address: str, kind: SubjectKind) -> Optional[DidRecord]:
        return await asyncio.to_thread(self._get_did, subject_address, kind)

    def _get_did(self, subject_address: str, kind: SubjectKind) -> Optional[DidRecord]:
        try:
            with self._session() as db:
                row = self._find_did(db, subject_address, kind)
                return _did_record_from_row(row) if row is not None else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to retrieve DID: {e}") from e

    async def insert_credential(self, record: VerifiableCredential) -> str:
        return await asyncio.to_thread(self._insert_credential, record)

    def _insert_credential(self, record: VerifiableCredential) -> str:
        row = CredentialModel(
            credential_id=record.credentialId,
            holder_did=record.holderDid,
            issuer_did=record.issuerDid,
            credential_data={
                "claim": {
                    "schemaHash": record.schemaHash,
                    "contents": record.claimContents,
                    "owner": record.issuerDid,
                },
                "signature": {"signature": record.signature, "keyUri": record.keyUri},
                "ctype_hash": record.schemaHash,
            },
            signature=record.signature,
            card_id=record.cardId,
            template_id=record.templateId,
            claim_nonce=record.claimNonce,
            attestation_id=record.attestationId,
            revoked=record.revoked,
            revoked_at=record.revokedAt,
            created_at=record.createdAt or datetime.now(UTC),
        )
        try:
            with self._session() as db:
                db.add(row)
                db.commit()
                return row.credential_id
        except SQLAlchemyError as e:
            logger.error(f"Failed to store credential {record.credentialId}: {e}")
            raise StorageError(f"Failed to store credential: {e}") from e

    async def get_credential(self, credential_id: str) -> Optional[VerifiableCredential]:
        return await asyncio.to_thread(self._get_credential, credential_id)

    def _get_credential(self, credential_id: str) -> Optional[VerifiableCredential]:
        try:
            with self._session() as db:
                row = db.query(CredentialModel).filter(CredentialModel.credential_id == credential_id).first()
                return _credential_from_row(row) if row is not None else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to fetch credential: {e}") from e

    async def get_credentials_by_holder(self, holder_did: str) -> List[VerifiableCredential]:
        return await asyncio.to_thread(self._get_credentials_by_holder, holder_did)

    def _get_credentials_by_holder(self, holder_did: str) -> List[VerifiableCredential]:
        try:
            with self._session() as db:
                rows = (
                    db.query(CredentialModel)
                    .filter(CredentialModel.holder_did == holder_did)
                    .order_by(CredentialModel.created_at.desc(), CredentialModel.id.desc())
                    .all()
                )
                return [_credential_from_row(row) for row in rows]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to fetch credentials: {e}") from e

    async def get_pending_credential(self, claim_nonce: str) -> Optional[VerifiableCredential]:
        return await asyncio.to_thread(self._get_pending_credential, claim_nonce)

    def _get_pending_credential(self, claim_nonce: str) -> Optional[VerifiableCredential]:
        try:
            with self._session() as db:
                row = db.query(CredentialModel).filter(CredentialModel.claim_nonce == claim_nonce).first()
                return _credential_from_row(row) if row is not None else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to fetch pending credential: {e}") from e

    async def update_credential(
        self,
        credential_id: str,
        fields: Dict[str, Any],
        *,
        only_if_pending: bool = False,
    ) -> bool:
        check_update_fields(fields)
        values = {_CREDENTIAL_COLUMNS[name]: value for name, value in fields.items()}
        return await asyncio.to_thread(self._update_credential, credential_id, values, only_if_pending)

    def _update_credential(self, credential_id: str, values: Dict[str, Any], only_if_pending: bool) -> bool:
        try:
            with self._session() as db:
                query = db.query(CredentialModel).filter(CredentialModel.credential_id == credential_id)
                if only_if_pending:
                    query = query.filter(
                        CredentialModel.holder_did == "",
                        CredentialModel.claim_nonce.is_not(None),
                        CredentialModel.revoked.is_(False),
                    )
                updated = query.update(values, synchronize_session=False)
                db.commit()
                return updated > 0
        except SQLAlchemyError as e:
            logger.error(f"Failed to update credential {credential_id}: {e}")
            raise StorageError(f"Failed to update credential: {e}") from e

    async def get_revocation_status(
        self,
        issuer_did: str,
        holder_did: str,
        signature: Optional[str] = None,
    ) -> bool:
        return await asyncio.to_thread(self._get_revocation_status, issuer_did, holder_did, signature)

    def _get_revocation_status(self, issuer_did: str, holder_did: str, signature: Optional[str]) -> bool:
        try:
            with self._session() as db:
                query = db.query(CredentialModel.id).filter(
                    CredentialModel.issuer_did == issuer_did,
                    CredentialModel.revoked.is_(True),
                )
                if signature is not None:
                    query = query.filter(CredentialModel.signature == signature)
                else:
                    query = query.filter(CredentialModel.holder_did == holder_did)
                return query.first() is not None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read revocation status: {e}") from e

    async def close(self) -> None:
        if self._engine is not None:
            await asyncio.to_thread(self._engine.dispose)
