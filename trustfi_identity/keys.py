"""Key material helpers: multibase keys, light DIDs, claim signatures and
envelope encryption of issuer key material.

Ed25519 keys are represented as multibase base58btc strings carrying the
multicodec prefix (``z`` + base58(0xed01 || key)), the same encoding used in
W3C ``publicKeyMultibase`` fields.
"""

import base64
import json
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

import base58
from nacl import pwhash, utils
from nacl.exceptions import BadSignatureError, CryptoError
from nacl.secret import SecretBox
from nacl.signing import SigningKey, VerifyKey

from trustfi_identity.exceptions import DecryptionError, SignatureError
from trustfi_identity.models import DidDocument, EncryptedKeys, VerificationMethod

ED25519_MULTICODEC = bytes([0xed, 0x01])
X25519_MULTICODEC = bytes([0xec, 0x01])

LIGHT_DID_PREFIX = "did:light:"
AUTHENTICATION_KEY_TYPE = "Ed25519VerificationKey2020"
KEY_AGREEMENT_KEY_TYPE = "X25519KeyAgreementKey2020"


# === Multibase encoding ===

def encode_multibase(data: bytes) -> str:
    return "z" + base58.b58encode(data).decode("ascii")


def decode_multibase(value: str) -> bytes:
    if not value or not value.startswith("z"):
        raise ValueError(f"Multibase value '{value}' must start with 'z' (base58btc).")
    try:
        return base58.b58decode(value[1:])
    except ValueError as e:
        raise ValueError(f"Invalid base58 in multibase value '{value}': {e}")


def public_key_multibase(verify_key: VerifyKey) -> str:
    return encode_multibase(ED25519_MULTICODEC + bytes(verify_key))


def get_verify_key_from_multibase(pk_multibase: str) -> VerifyKey:
    """Decodes a multibase Ed25519 public key into a PyNaCl VerifyKey.

    Accepts the multicodec-prefixed form (0xed01 + 32 bytes) and a bare 32-byte key.
    """
    multicodec_pubkey = decode_multibase(pk_multibase)
    if multicodec_pubkey.startswith(ED25519_MULTICODEC) and len(multicodec_pubkey) == 34:
        public_key_bytes = multicodec_pubkey[2:]
    elif len(multicodec_pubkey) == 32:
        public_key_bytes = multicodec_pubkey
    else:
        raise ValueError(
            f"Invalid Ed25519 multicodec prefix or key length in publicKeyMultibase '{pk_multibase}'. "
            f"Decoded length: {len(multicodec_pubkey)} bytes."
        )
    return VerifyKey(public_key_bytes)


# === Light DIDs ===

@dataclass(frozen=True)
class LightDid:
    """An off-ledger DID together with the private key that controls it."""

    document: DidDocument
    signing_key: SigningKey

    @property
    def uri(self) -> str:
        return self.document.uri

    @property
    def authentication_key_uri(self) -> str:
        return self.document.authentication[0].id


def is_light_did(uri: str) -> bool:
    return uri.startswith(LIGHT_DID_PREFIX)


def light_did_document(verify_key: VerifyKey) -> DidDocument:
    """Builds the deterministic document of the light DID controlled by ``verify_key``."""
    auth_multibase = public_key_multibase(verify_key)
    uri = f"{LIGHT_DID_PREFIX}{auth_multibase}"
    agreement_multibase = encode_multibase(X25519_MULTICODEC + bytes(verify_key.to_curve25519_public_key()))
    return DidDocument(
        uri=uri,
        authentication=[
            VerificationMethod(
                id=f"{uri}#{auth_multibase}",
                type=AUTHENTICATION_KEY_TYPE,
                controller=uri,
                publicKeyMultibase=auth_multibase,
            )
        ],
        keyAgreement=[
            VerificationMethod(
                id=f"{uri}#{agreement_multibase}",
                type=KEY_AGREEMENT_KEY_TYPE,
                controller=uri,
                publicKeyMultibase=agreement_multibase,
            )
        ],
    )


def create_light_did(seed: Optional[bytes] = None) -> LightDid:
    signing_key = SigningKey(seed) if seed is not None else SigningKey.generate()
    return LightDid(document=light_did_document(signing_key.verify_key), signing_key=signing_key)


def resolve_light_did(uri: str) -> DidDocument:
    """Rebuilds a light DID document from its URI alone."""
    if not is_light_did(uri):
        raise ValueError(f"'{uri}' is not a light DID.")
    identifier = uri[len(LIGHT_DID_PREFIX):].split("#", 1)[0]
    return light_did_document(get_verify_key_from_multibase(identifier))


# === Keyring ===

class Keyring:
    """In-process map of verification-method URI to the private key behind it."""

    def __init__(self):
        self._keys: Dict[str, SigningKey] = {}

    def add(self, key_uri: str, signing_key: SigningKey) -> None:
        self._keys[key_uri] = signing_key

    def add_light_did(self, light_did: LightDid) -> None:
        self.add(light_did.authentication_key_uri, light_did.signing_key)

    def get(self, key_uri: str) -> Optional[SigningKey]:
        return self._keys.get(key_uri)

    def remove(self, key_uri: str) -> bool:
        return self._keys.pop(key_uri, None) is not None

    def __contains__(self, key_uri: object) -> bool:
        return key_uri in self._keys

    def __iter__(self) -> Iterator[str]:
        return iter(self._keys)

    def __len__(self) -> int:
        return len(self._keys)


# === Signatures ===

def canonical_json(data: Any) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


def sign_bytes(signing_key: SigningKey, message: bytes) -> str:
    return encode_multibase(signing_key.sign(message).signature)


def verify_bytes(pk_multibase: str, message: bytes, signature: str) -> bool:
    """Checks ``signature`` over ``message``. Returns False on a bad signature.

    Raises:
        SignatureError: if the key or the signature encoding is malformed.
    """
    try:
        verify_key = get_verify_key_from_multibase(pk_multibase)
        signature_bytes = decode_multibase(signature)
    except ValueError as e:
        raise SignatureError(f"Malformed key or signature: {e}")
    try:
        verify_key.verify(message, signature_bytes)
    except BadSignatureError:
        return False
    except ValueError as e:
        raise SignatureError(f"Malformed signature: {e}")
    return True


# === Envelope encryption ===

def _derive_key(secret: str, salt: bytes, opslimit: int, memlimit: int) -> bytes:
    return pwhash.argon2id.kdf(
        SecretBox.KEY_SIZE, secret.encode("utf-8"), salt, opslimit=opslimit, memlimit=memlimit
    )


def encrypt_payload(
    payload: Dict[str, Any],
    encryption_key: str,
    *,
    opslimit: Optional[int] = None,
    memlimit: Optional[int] = None,
) -> EncryptedKeys:
    """Seals ``payload`` with a key derived from ``encryption_key`` (Argon2id + XSalsa20-Poly1305)."""
    if not encryption_key:
        raise ValueError("encryption_key must not be empty")
    opslimit = opslimit or pwhash.argon2id.OPSLIMIT_INTERACTIVE
    memlimit = memlimit or pwhash.argon2id.MEMLIMIT_INTERACTIVE
    salt = utils.random(pwhash.argon2id.SALTBYTES)
    nonce = utils.random(SecretBox.NONCE_SIZE)
    box = SecretBox(_derive_key(encryption_key, salt, opslimit, memlimit))
    sealed = box.encrypt(canonical_json(payload), nonce)
    return EncryptedKeys(
        ciphertext=base64.b64encode(sealed.ciphertext).decode("ascii"),
        nonce=base64.b64encode(nonce).decode("ascii"),
        salt=base64.b64encode(salt).decode("ascii"),
        opslimit=opslimit,
        memlimit=memlimit,
    )


def decrypt_payload(encrypted: EncryptedKeys, encryption_key: str) -> Dict[str, Any]:
    """Opens a payload sealed by `encrypt_payload`.

    Raises:
        DecryptionError: if the key does not match or the envelope is corrupt.
    """
    try:
        ciphertext = base64.b64decode(encrypted.ciphertext, validate=True)
        nonce = base64.b64decode(encrypted.nonce, validate=True)
        salt = base64.b64decode(encrypted.salt, validate=True)
    except ValueError as e:
        raise DecryptionError(f"Encrypted key envelope is not valid base64: {e}")
    try:
        box = SecretBox(_derive_key(encryption_key, salt, encrypted.opslimit, encrypted.memlimit))
        plaintext = box.decrypt(ciphertext, nonce)
    except CryptoError as e:
        raise DecryptionError("Key decryption failed: invalid encryption key or corrupted key material") from e
    return json.loads(plaintext.decode("utf-8"))
