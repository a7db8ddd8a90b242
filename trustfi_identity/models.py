from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SubjectKind(str, Enum):
    HOLDER = "holder"
    ISSUER = "issuer"


# === DID Document Models ===

class VerificationMethod(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    controller: str
    publicKeyMultibase: Optional[str] = None


class ServiceEndpoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    serviceEndpoint: str


class DidDocument(BaseModel):
    """A DID and its verification material. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    uri: str
    authentication: List[VerificationMethod]
    assertionMethod: Optional[List[VerificationMethod]] = None
    keyAgreement: Optional[List[VerificationMethod]] = None
    service: Optional[List[ServiceEndpoint]] = None

    @model_validator(mode="after")
    def _check_verification_methods(self) -> "DidDocument":
        if not self.authentication:
            raise ValueError(f"DID document {self.uri} must have at least one authentication method.")
        # A method may be referenced from several relationships, but an id names one key
        # and appears at most once per relationship.
        seen: Dict[str, VerificationMethod] = {}
        for relationship in (self.authentication, self.assertionMethod or [], self.keyAgreement or []):
            ids = [method.id for method in relationship]
            repeated = sorted({i for i in ids if ids.count(i) > 1})
            if repeated:
                raise ValueError(f"Duplicate verification method id(s) {repeated} in DID document {self.uri}.")
            for method in relationship:
                known = seen.setdefault(method.id, method)
                if known != method:
                    raise ValueError(f"Conflicting verification method id '{method.id}' in DID document {self.uri}.")
        return self

    def verification_methods(self) -> List[VerificationMethod]:
        """All verification methods across relationships, keeping document order."""
        return [
            *self.authentication,
            *(self.assertionMethod or []),
            *(self.keyAgreement or []),
        ]

    def signing_methods(self) -> List[VerificationMethod]:
        """Methods a claim signature may reference: assertion keys first, then authentication keys."""
        return [*(self.assertionMethod or []), *self.authentication]

    def find_signing_method(self, key_uri: str) -> Optional[VerificationMethod]:
        for method in self.signing_methods():
            if method.id == key_uri:
                return method
        return None


class EncryptedKeys(BaseModel):
    """Envelope-encrypted issuer key material as stored next to the DID document."""

    ciphertext: str
    nonce: str
    salt: str
    algorithm: str = "xsalsa20-poly1305"
    kdf: str = "argon2id"
    opslimit: int
    memlimit: int


class DidRecord(BaseModel):
    subjectAddress: str
    kind: SubjectKind
    document: DidDocument
    encryptedKeys: Optional[EncryptedKeys] = None
    createdAt: Optional[datetime] = None


# === Claims and Credentials ===

class ClaimInput(BaseModel):
    schemaHash: Optional[str] = None
    contents: Optional[Dict[str, Any]] = None


class Claim(BaseModel):
    schemaHash: str
    contents: Dict[str, Any]
    owner: str


class ClaimerSignature(BaseModel):
    signature: str
    keyUri: str


class SignedCredential(BaseModel):
    # Both parts are optional so malformed payloads reach verification's structural check.
    claim: Optional[Claim] = None
    claimerSignature: Optional[ClaimerSignature] = None


class VerifiableCredential(BaseModel):
    """The persisted, addressable form of a signed credential."""

    credentialId: str
    holderDid: str = ""
    issuerDid: str
    schemaHash: str
    claimContents: Dict[str, Any]
    signature: str
    keyUri: str
    cardId: Optional[str] = None
    templateId: Optional[str] = None
    claimNonce: Optional[str] = None
    attestationId: Optional[str] = None
    revoked: bool = False
    revokedAt: Optional[datetime] = None
    createdAt: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        """Issued through a claim link and not yet claimed."""
        return self.claimNonce is not None and self.holderDid == "" and not self.revoked

    def to_signed_credential(self) -> SignedCredential:
        return SignedCredential(
            claim=Claim(schemaHash=self.schemaHash, contents=dict(self.claimContents), owner=self.issuerDid),
            claimerSignature=ClaimerSignature(signature=self.signature, keyUri=self.keyUri),
        )


class VerificationResult(BaseModel):
    """Outcome of one verification. Frozen: cached results are handed to every caller."""

    model_config = ConfigDict(frozen=True)

    valid: bool
    issuerDid: str = ""
    holderDid: str = ""
    revoked: bool = False
    errors: Optional[Tuple[str, ...]] = None
    warnings: Optional[Tuple[str, ...]] = None


# === CType Models ===

class CTypeProperty(BaseModel):
    type: str


class CTypeSchema(BaseModel):
    title: str
    properties: Dict[str, CTypeProperty]
    required: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_required_declared(self) -> "CTypeSchema":
        undeclared = [name for name in self.required if name not in self.properties]
        if undeclared:
            raise ValueError(f"Required fields {undeclared} are not declared in properties of '{self.title}'.")
        return self


class CType(BaseModel):
    schema_: CTypeSchema = Field(alias="schema")
    owner: str = ""
    hash: str

    model_config = ConfigDict(populate_by_name=True)
