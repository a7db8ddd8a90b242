"""Claim -> signed credential -> stored / verified / revoked pipeline."""

from datetime import UTC, datetime
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from pydantic import ValidationError

from trustfi_identity.cache import TTLCache
from trustfi_identity.ctype import REPUTATION_CARD, CTypeRegistry
from trustfi_identity.dids import DidManager
from trustfi_identity.exceptions import ClaimValidationError, CredentialStateError, SignatureError
from trustfi_identity.keys import Keyring, canonical_json, public_key_multibase, sign_bytes, verify_bytes
from trustfi_identity.logging import get_logger, operation_scope
from trustfi_identity.models import (
    Claim,
    ClaimerSignature,
    ClaimInput,
    DidDocument,
    SignedCredential,
    VerifiableCredential,
    VerificationResult,
)
from trustfi_identity.store.base import IdentityStore

logger = get_logger(__name__)

REVOKED_WARNING = "Credential has been revoked"


def claim_message(claim: Claim) -> bytes:
    """The exact bytes a claimer signature covers."""
    return canonical_json(claim.model_dump(mode="json"))


def new_credential_id() -> str:
    return f"cred_{uuid4().hex}"


class CredentialService:
    def __init__(
        self,
        store: IdentityStore,
        ctypes: CTypeRegistry,
        did_manager: DidManager,
        *,
        keyring: Optional[Keyring] = None,
        verification_cache: Optional[TTLCache] = None,
    ):
        self.store = store
        self.ctypes = ctypes
        self.did_manager = did_manager
        self.keyring = keyring if keyring is not None else did_manager.keyring
        self.verification_cache: TTLCache[str, VerificationResult] = (
            verification_cache if verification_cache is not None else TTLCache(None)
        )

    # === Issuance ===

    def create_credential(self, claim: Union[ClaimInput, Dict[str, Any]], issuer_did: DidDocument) -> Claim:
        """Validates ``claim`` against its CType and binds it to ``issuer_did``.

        Raises:
            ClaimValidationError: if the schema hash or contents are missing, or a required field is absent.
        """
        if isinstance(claim, dict):
            try:
                claim = ClaimInput.model_validate(claim)
            except ValidationError as e:
                raise ClaimValidationError(f"Invalid claim input: {e}") from e

        if not claim.schemaHash or claim.contents is None:
            raise ClaimValidationError("Invalid claim input: missing schemaHash or contents")

        # Unregistered hashes are held to the reputation-card requirements.
        schema_name = self.ctypes.name_for_hash(claim.schemaHash) or REPUTATION_CARD
        missing = self.ctypes.missing_fields(claim.contents, schema_name)
        if missing:
            raise ClaimValidationError(
                f"Missing required field(s): {', '.join(missing)}",
                details={"missing": missing, "schema": schema_name},
            )

        logger.info(f"Created claim for CType {claim.schemaHash} owned by {issuer_did.uri}")
        return Claim(schemaHash=claim.schemaHash, contents=dict(claim.contents), owner=issuer_did.uri)

    def sign_credential(self, credential: Claim, issuer_did: DidDocument) -> SignedCredential:
        """Signs ``credential`` with the issuer's first authentication key.

        Raises:
            ClaimValidationError: if the claim is not owned by the issuer or no signing key is available.
            SignatureError: if the keyring key does not match the DID document.
        """
        if credential.owner != issuer_did.uri:
            raise ClaimValidationError(f"Claim is owned by {credential.owner}, not by {issuer_did.uri}")
        if not issuer_did.authentication:
            raise ClaimValidationError(f"No authentication key found in issuer DID {issuer_did.uri}")

        auth_key = issuer_did.authentication[0]
        signing_key = self.keyring.get(auth_key.id)
        if signing_key is None:
            raise ClaimValidationError(f"No signing key available for {auth_key.id}")
        if auth_key.publicKeyMultibase and auth_key.publicKeyMultibase != public_key_multibase(signing_key.verify_key):
            raise SignatureError(f"Signing key for {auth_key.id} does not match the DID document")

        signature = sign_bytes(signing_key, claim_message(credential))
        logger.info(f"Signed claim with {auth_key.id}")
        return SignedCredential(
            claim=credential,
            claimerSignature=ClaimerSignature(signature=signature, keyUri=auth_key.id),
        )

    # === Verification ===

    async def verify_credential(
        self,
        signed_credential: Union[SignedCredential, Dict[str, Any]],
        credential_id: Optional[str] = None,
    ) -> VerificationResult:
        """Checks structure, revocation, signature and schema of a signed credential.

        Problems are reported in the result rather than raised. When ``credential_id``
        is given, a cached result is returned as is and a fresh result is cached.

        Raises:
            LedgerConnectionError, DIDResolutionError: if the issuer DID cannot be resolved.
            StorageError: if the revocation status cannot be read.
        """
        if credential_id is not None:
            cached = self.verification_cache.get(credential_id)
            if cached is not None:
                logger.debug(f"Verification cache hit for {credential_id}")
                return cached

        with operation_scope():
            result = await self._verify(signed_credential)
            logger.info(
                f"Verification complete: {'VALID' if result.valid else 'INVALID'}",
                extra={"credential_id": credential_id, "issuer_did": result.issuerDid},
            )

        if credential_id is not None:
            self.verification_cache.set(credential_id, result)
        return result

    async def verify_stored_credential(self, credential_id: str) -> Optional[VerificationResult]:
        """Verifies a persisted credential by id. Returns None if it does not exist."""
        cached = self.verification_cache.get(credential_id)
        if cached is not None:
            return cached
        record = await self.store.get_credential(credential_id)
        if record is None:
            return None
        return await self.verify_credential(record.to_signed_credential(), credential_id)

    async def _verify(self, signed_credential: Union[SignedCredential, Dict[str, Any]]) -> VerificationResult:
        if isinstance(signed_credential, dict):
            try:
                signed_credential = SignedCredential.model_validate(signed_credential)
            except ValidationError as e:
                return VerificationResult(valid=False, errors=[f"Invalid credential structure: {e.error_count()} error(s)"])

        claim = signed_credential.claim
        proof = signed_credential.claimerSignature
        if claim is None or proof is None:
            return VerificationResult(
                valid=False,
                issuerDid=claim.owner if claim is not None else "",
                errors=["Invalid credential structure"],
            )

        errors: List[str] = []
        warnings: List[str] = []
        issuer_did = claim.owner
        holder_did = str(claim.contents.get("holder_did") or "")

        revoked = await self.store.get_revocation_status(issuer_did, holder_did, proof.signature)
        if revoked:
            warnings.append(REVOKED_WARNING)

        errors.extend(await self._check_signature(claim, proof))

        if not claim.schemaHash:
            errors.append("Missing CType hash")
        else:
            schema_name = self.ctypes.name_for_hash(claim.schemaHash)
            if schema_name is None:
                warnings.append(f"Unknown CType {claim.schemaHash}")
            else:
                missing = self.ctypes.missing_fields(claim.contents, schema_name)
                if missing:
                    errors.append(f"Claim does not conform to CType '{schema_name}': missing {', '.join(missing)}")

        return VerificationResult(
            valid=not errors and not revoked,
            issuerDid=issuer_did,
            holderDid=holder_did,
            revoked=revoked,
            errors=errors or None,
            warnings=warnings or None,
        )

    async def _check_signature(self, claim: Claim, proof: ClaimerSignature) -> List[str]:
        key_uri = proof.keyUri
        if not proof.signature:
            return ["Invalid signature"]
        if not key_uri.startswith("#") and key_uri.split("#", 1)[0] != claim.owner:
            return [f"Signing key {key_uri} does not belong to issuer {claim.owner}"]

        document = await self.did_manager.resolve_did(claim.owner)
        if document is None:
            return [f"Issuer DID {claim.owner} could not be resolved"]

        full_key_uri = f"{claim.owner}{key_uri}" if key_uri.startswith("#") else key_uri
        method = document.find_signing_method(full_key_uri)
        if method is None or not method.publicKeyMultibase:
            return [f"Signing key {key_uri} not found in issuer DID document"]

        try:
            if not verify_bytes(method.publicKeyMultibase, claim_message(claim), proof.signature):
                return ["Invalid signature"]
        except SignatureError as e:
            return [f"Invalid signature: {e.message}"]
        return []

    # === Persistence ===

    @staticmethod
    def _record(signed_credential: SignedCredential, **fields) -> VerifiableCredential:
        if signed_credential.claim is None or signed_credential.claimerSignature is None:
            raise ClaimValidationError("Cannot store a credential without claim and signature")
        claim = signed_credential.claim
        return VerifiableCredential(
            credentialId=new_credential_id(),
            issuerDid=claim.owner,
            schemaHash=claim.schemaHash,
            claimContents=claim.contents,
            signature=signed_credential.claimerSignature.signature,
            keyUri=signed_credential.claimerSignature.keyUri,
            revoked=False,
            **fields,
        )

    async def store_credential(self, signed_credential: SignedCredential, card_id: str, template_id: str) -> str:
        holder_did = str(signed_credential.claim.contents.get("holder_did") or "") if signed_credential.claim else ""
        record = self._record(signed_credential, holderDid=holder_did, cardId=card_id, templateId=str(template_id))
        credential_id = await self.store.insert_credential(record)
        logger.info(f"Credential stored with ID: {credential_id}")
        return credential_id

    async def store_pending_credential(self, signed_credential: SignedCredential, template_id: str, claim_nonce: str) -> str:
        """Stores a credential for a holder not yet known; it is claimed later via ``claim_nonce``."""
        if not claim_nonce:
            raise ClaimValidationError("A pending credential needs a claim nonce")
        record = self._record(
            signed_credential,
            holderDid="",
            cardId=None,
            templateId=str(template_id),
            claimNonce=claim_nonce,
        )
        credential_id = await self.store.insert_credential(record)
        logger.info(f"Pending credential stored with ID: {credential_id}")
        return credential_id

    async def get_pending_credential_by_nonce(self, claim_nonce: str) -> Optional[VerifiableCredential]:
        return await self.store.get_pending_credential(claim_nonce)

    async def update_pending_credential(self, credential_id: str, holder_did: str, card_id: str) -> None:
        """Completes a pending credential once its holder has claimed it.

        Completing again with the same values is a no-op.

        Raises:
            CredentialStateError: if the credential does not exist, is revoked, or was
                already completed with different values.
        """
        if not holder_did:
            raise ClaimValidationError("holder_did must not be empty")

        updated = await self.store.update_credential(
            credential_id,
            {"holderDid": holder_did, "cardId": card_id},
            only_if_pending=True,
        )
        if updated:
            self.verification_cache.evict(credential_id)
            logger.info(f"Pending credential {credential_id} claimed by {holder_did}")
            return

        current = await self.store.get_credential(credential_id)
        if current is None:
            raise CredentialStateError(f"Credential {credential_id} not found")
        if current.holderDid == holder_did and current.cardId == card_id:
            logger.info(f"Pending credential {credential_id} already claimed with the same values")
            return
        if current.revoked:
            raise CredentialStateError(f"Credential {credential_id} is revoked")
        if current.claimNonce is None:
            raise CredentialStateError(f"Credential {credential_id} was not issued through a claim link")
        raise CredentialStateError(
            f"Credential {credential_id} was already claimed by {current.holderDid}",
            details={"holderDid": current.holderDid, "cardId": current.cardId},
        )

    async def get_credentials_by_holder(self, holder_did: str) -> List[VerifiableCredential]:
        credentials = await self.store.get_credentials_by_holder(holder_did)
        logger.debug(f"Found {len(credentials)} credentials for holder {holder_did}")
        return credentials

    async def get_credential_by_id(self, credential_id: str) -> Optional[VerifiableCredential]:
        return await self.store.get_credential(credential_id)

    async def revoke_credential(self, credential_id: str) -> bool:
        """Permanently revokes a credential. The record is kept.

        Returns:
            False if the credential does not exist.
        """
        current = await self.store.get_credential(credential_id)
        if current is None:
            logger.warning(f"Cannot revoke unknown credential {credential_id}")
            return False
        if not current.revoked:
            await self.store.update_credential(credential_id, {"revoked": True, "revokedAt": datetime.now(UTC)})
            logger.info(f"Credential {credential_id} revoked")
        self.verification_cache.evict(credential_id)
        return True
