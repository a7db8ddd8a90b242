import asyncio

import httpx
import pytest

from trustfi_identity.exceptions import DIDResolutionError, LedgerConnectionError
from trustfi_identity.keys import is_light_did
from trustfi_identity.ledger import LedgerGateway, parse_did_document
from trustfi_identity.retry import RetryPolicy

ENDPOINT = "https://ledger.test"

W3C_DOCUMENT = {
    "@context": ["https://www.w3.org/ns/did/v1"],
    "id": "did:kilt:4abc",
    "verificationMethod": [
        {
            "id": "did:kilt:4abc#auth",
            "type": "Ed25519VerificationKey2020",
            "controller": "did:kilt:4abc",
            "publicKeyMultibase": "z6MkAuth",
        },
        {
            "id": "did:kilt:4abc#enc",
            "type": "X25519KeyAgreementKey2019",
            "controller": "did:kilt:4abc",
            "publicKeyMultibase": "z6LSEnc",
        },
    ],
    "authentication": ["did:kilt:4abc#auth"],
    "keyAgreement": ["did:kilt:4abc#enc"],
    "service": [
        {"id": "did:kilt:4abc#web", "type": ["LinkedDomains"], "serviceEndpoint": ["https://trustfi.example"]},
    ],
}


class Ledger:
    """Scripted resolver: ``health`` holds the outcomes of successive health probes."""

    def __init__(self, health=None, documents=None):
        self.health = list(health or [])
        self.documents = documents or {}
        self.health_calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/health":
            self.health_calls += 1
            outcome = self.health.pop(0) if self.health else 200
            if isinstance(outcome, Exception):
                raise outcome
            return httpx.Response(outcome)
        did = request.url.path.rsplit("/", 1)[-1]
        if did not in self.documents:
            return httpx.Response(404)
        payload = self.documents[did]
        if isinstance(payload, int):
            return httpx.Response(payload)
        if isinstance(payload, bytes):
            return httpx.Response(200, content=payload)
        return httpx.Response(200, json=payload)


def make_gateway(ledger: Ledger, max_attempts: int = 3, sleeps=None) -> LedgerGateway:
    async def sleep(delay):
        if sleeps is not None:
            sleeps.append(delay)

    return LedgerGateway(
        ENDPOINT,
        retry_policy=RetryPolicy(max_attempts=max_attempts, base_delay=1.0, retry_on=(httpx.HTTPError,)),
        transport=httpx.MockTransport(ledger),
        sleep=sleep,
    )


@pytest.mark.asyncio
async def test_connect_and_disconnect():
    gateway = make_gateway(Ledger())
    assert gateway.is_connected is False

    await gateway.connect()
    assert gateway.is_connected is True

    await gateway.disconnect()
    assert gateway.is_connected is False


@pytest.mark.asyncio
async def test_connect_is_idempotent():
    ledger = Ledger()
    gateway = make_gateway(ledger)

    await gateway.connect()
    await gateway.connect()

    assert ledger.health_calls == 1
    await gateway.disconnect()


@pytest.mark.asyncio
async def test_connect_retries_transient_failures():
    sleeps = []
    ledger = Ledger(health=[httpx.ConnectError("refused"), 503])
    gateway = make_gateway(ledger, sleeps=sleeps)

    await gateway.connect()

    assert gateway.is_connected
    assert ledger.health_calls == 3
    assert sleeps == [1.0, 2.0]
    await gateway.disconnect()


@pytest.mark.asyncio
async def test_connect_raises_after_retry_budget():
    ledger = Ledger(health=[httpx.ConnectError("refused")] * 5)
    gateway = make_gateway(ledger, max_attempts=3)

    with pytest.raises(LedgerConnectionError) as exc_info:
        await gateway.connect()

    error = exc_info.value
    assert isinstance(error, ConnectionError)
    assert error.attempts == 3
    assert error.code == "NETWORK_ERROR"
    assert isinstance(error.__cause__, httpx.ConnectError)
    assert ledger.health_calls == 3
    assert gateway.is_connected is False

    # The gateway recovers once the ledger is back.
    await gateway.connect()
    assert gateway.is_connected
    await gateway.disconnect()


@pytest.mark.asyncio
async def test_client_errors_still_count_as_reachable():
    gateway = make_gateway(Ledger(health=[404]))
    await gateway.connect()
    assert gateway.is_connected
    await gateway.disconnect()


@pytest.mark.asyncio
async def test_concurrent_connects_share_one_attempt():
    ledger = Ledger()
    gateway = make_gateway(ledger)

    await asyncio.gather(gateway.connect(), gateway.connect(), gateway.connect())

    assert ledger.health_calls == 1
    assert gateway.is_connected
    await gateway.disconnect()


@pytest.mark.asyncio
async def test_resolve_connects_and_parses_w3c_document():
    gateway = make_gateway(Ledger(documents={"did:kilt:4abc": {"didDocument": W3C_DOCUMENT}}))

    document = await gateway.resolve("did:kilt:4abc")

    assert gateway.is_connected
    assert document.uri == "did:kilt:4abc"
    assert document.authentication[0].id == "did:kilt:4abc#auth"
    assert document.authentication[0].publicKeyMultibase == "z6MkAuth"
    assert document.keyAgreement[0].type == "X25519KeyAgreementKey2019"
    assert document.assertionMethod is None
    assert document.service[0].type == "LinkedDomains"
    assert document.service[0].serviceEndpoint == "https://trustfi.example"
    await gateway.disconnect()


@pytest.mark.asyncio
async def test_resolve_unknown_did_returns_none():
    gateway = make_gateway(Ledger())
    assert await gateway.resolve("did:kilt:4missing") is None
    await gateway.disconnect()


@pytest.mark.asyncio
async def test_resolve_empty_document_returns_none():
    gateway = make_gateway(Ledger(documents={"did:kilt:4empty": {"didDocument": {}}}))
    assert await gateway.resolve("did:kilt:4empty") is None
    await gateway.disconnect()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload, code",
    [(500, "NETWORK_ERROR"), (b"not json", "NETWORK_ERROR"), ({"id": "did:kilt:4bad"}, "DID_NOT_FOUND")],
)
async def test_resolve_failures_raise_resolution_error(payload, code):
    gateway = make_gateway(Ledger(documents={"did:kilt:4bad": payload}))

    with pytest.raises(DIDResolutionError) as exc_info:
        await gateway.resolve("did:kilt:4bad")
    assert exc_info.value.code == code

    # The gateway stays usable.
    assert await gateway.resolve("did:kilt:4other") is None
    await gateway.disconnect()


@pytest.mark.asyncio
async def test_create_light_did_needs_no_connection():
    ledger = Ledger()
    gateway = make_gateway(ledger)

    light_did = gateway.create_light_did()

    assert is_light_did(light_did.uri)
    assert ledger.health_calls == 0
    assert gateway.is_connected is False


def test_parse_own_document_shape():
    payload = {
        "uri": "did:example:issuer1",
        "authentication": [
            {"id": "did:example:issuer1#key-1", "type": "Ed25519VerificationKey2020", "controller": "did:example:issuer1"}
        ],
    }
    document = parse_did_document(payload, "did:example:issuer1")
    assert document.uri == "did:example:issuer1"
    assert document.find_signing_method("did:example:issuer1#key-1") is not None


def test_parse_allows_shared_method_references():
    payload = {**W3C_DOCUMENT, "assertionMethod": ["did:kilt:4abc#auth"]}
    document = parse_did_document(payload)
    assert document.signing_methods()[0] == document.authentication[0]


def test_parse_rejects_non_object_payload():
    with pytest.raises(DIDResolutionError) as exc_info:
        parse_did_document(["did:kilt:4abc"], "did:kilt:4abc")
    assert exc_info.value.code == "DID_NOT_FOUND"
