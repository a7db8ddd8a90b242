from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, UniqueConstraint, func

from trustfi_identity.store.database import Base


class DidRecordModel(Base):
    __tablename__ = "did_records"
    __table_args__ = (UniqueConstraint("subject_address", "kind", name="uq_did_records_subject_kind"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    subject_address = Column(String, index=True, nullable=False)
    kind = Column(String(16), nullable=False)
    did_uri = Column(String, index=True, nullable=False)
    did_document = Column(JSON, nullable=False)
    encrypted_keys = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<DidRecordModel(subject_address='{self.subject_address}', kind='{self.kind}', did_uri='{self.did_uri}')>"


class CredentialModel(Base):
    __tablename__ = "verifiable_credentials"

    # Surrogate key keeps insertion order for credentials created within the same clock tick.
    id = Column(Integer, primary_key=True, autoincrement=True)
    credential_id = Column(String, unique=True, index=True, nullable=False)
    holder_did = Column(String, index=True, nullable=False, default="")
    issuer_did = Column(String, index=True, nullable=False)
    # {"claim": {...}, "signature": {"signature", "keyUri"}, "ctype_hash": "0x..."}
    credential_data = Column(JSON, nullable=False)
    signature = Column(String, index=True, nullable=False)
    card_id = Column(String, index=True, nullable=True)
    template_id = Column(String, index=True, nullable=True)
    claim_nonce = Column(String, index=True, nullable=True)
    attestation_id = Column(String, nullable=True)
    revoked = Column(Boolean, nullable=False, default=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<CredentialModel(credential_id='{self.credential_id}', issuer_did='{self.issuer_did}', revoked={self.revoked})>"
