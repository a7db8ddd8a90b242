import httpx
import pytest
from nacl import pwhash
from nacl.signing import SigningKey

from trustfi_identity.ctype import CTypeRegistry
from trustfi_identity.credentials import CredentialService
from trustfi_identity.dids import DidManager
from trustfi_identity.keys import Keyring, public_key_multibase
from trustfi_identity.ledger import LedgerGateway
from trustfi_identity.retry import RetryPolicy
from trustfi_identity.store.memory import InMemoryIdentityStore

LEDGER_ENDPOINT = "https://ledger.test"
RESOLVE_PREFIX = "/1.0/identifiers/"
EXAMPLE_ISSUER = "did:example:issuer1"


async def no_sleep(delay):
    pass


@pytest.fixture
def store():
    return InMemoryIdentityStore()


@pytest.fixture
def ledger_documents():
    """DID documents served by the mocked ledger resolver, keyed by DID."""
    return {}


@pytest.fixture
def gateway(ledger_documents):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/health":
            return httpx.Response(200, json={"status": "ok"})
        did = request.url.path[len(RESOLVE_PREFIX):]
        document = ledger_documents.get(did)
        if document is None:
            return httpx.Response(404, json={"error": "notFound"})
        return httpx.Response(200, json={"didDocument": document})

    return LedgerGateway(
        LEDGER_ENDPOINT,
        retry_policy=RetryPolicy(max_attempts=2, base_delay=0.0, retry_on=(httpx.HTTPError,)),
        transport=httpx.MockTransport(handler),
        sleep=no_sleep,
    )


@pytest.fixture
def keyring():
    return Keyring()


@pytest.fixture
def did_manager(store, gateway, keyring):
    return DidManager(
        store,
        gateway,
        encryption_key="k1",
        keyring=keyring,
        kdf_opslimit=pwhash.argon2id.OPSLIMIT_MIN,
        kdf_memlimit=pwhash.argon2id.MEMLIMIT_MIN,
    )


@pytest.fixture
def ctypes():
    return CTypeRegistry()


@pytest.fixture
def credential_service(store, ctypes, did_manager):
    return CredentialService(store, ctypes, did_manager)


@pytest.fixture
def example_issuer(ledger_documents, keyring):
    """A ledger-anchored issuer DID whose signing key sits in the keyring."""
    signing_key = SigningKey.generate()
    key_uri = f"{EXAMPLE_ISSUER}#key-1"
    ledger_documents[EXAMPLE_ISSUER] = {
        "id": EXAMPLE_ISSUER,
        "verificationMethod": [
            {
                "id": key_uri,
                "type": "Ed25519VerificationKey2020",
                "controller": EXAMPLE_ISSUER,
                "publicKeyMultibase": public_key_multibase(signing_key.verify_key),
            }
        ],
        "authentication": [key_uri],
    }
    keyring.add(key_uri, signing_key)
    return EXAMPLE_ISSUER


@pytest.fixture
def reputation_contents():
    return {
        "template_id": "1",
        "card_id": "42",
        "tier": 1,
        "issue_date": "2024-01-01",
        "issuer_address": "0xabc",
    }
