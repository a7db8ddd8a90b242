import asyncio
from datetime import UTC, datetime

import pytest

from trustfi_identity.exceptions import StorageError
from trustfi_identity.keys import create_light_did
from trustfi_identity.models import SubjectKind, VerifiableCredential
from trustfi_identity.store.crud import SqlIdentityStore
from trustfi_identity.store.memory import InMemoryIdentityStore


@pytest.fixture(params=["memory", "sql"])
def identity_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryIdentityStore()
    return SqlIdentityStore.from_url(f"sqlite:///{tmp_path / 'identity.db'}")


def make_credential(credential_id="cred_1", **fields) -> VerifiableCredential:
    values = {
        "credentialId": credential_id,
        "holderDid": "did:example:holder1",
        "issuerDid": "did:example:issuer1",
        "schemaHash": "0xabc",
        "claimContents": {"card_id": "42", "tier": 1},
        "signature": f"zsig-{credential_id}",
        "keyUri": "did:example:issuer1#key-1",
        "cardId": "42",
        "templateId": "1",
    }
    values.update(fields)
    return VerifiableCredential(**values)


@pytest.mark.asyncio
async def test_upsert_did_keeps_one_record_per_subject(identity_store):
    first, second = create_light_did(), create_light_did()

    await identity_store.upsert_did("0xabc", SubjectKind.HOLDER, first.document)
    record = await identity_store.upsert_did("0xabc", SubjectKind.HOLDER, second.document)

    assert record.document == second.document
    assert (await identity_store.get_did("0xabc", SubjectKind.HOLDER)).document == second.document
    assert await identity_store.get_did("0xabc", SubjectKind.ISSUER) is None
    await identity_store.close()


@pytest.mark.asyncio
async def test_did_record_round_trip(identity_store, did_manager):
    light_did = create_light_did()
    encrypted = did_manager.encrypt_keys(light_did.document, light_did.signing_key, "k1")

    await identity_store.upsert_did("0xissuer", SubjectKind.ISSUER, light_did.document, encrypted)
    record = await identity_store.get_did("0xissuer", SubjectKind.ISSUER)

    assert record.kind is SubjectKind.ISSUER
    assert record.subjectAddress == "0xissuer"
    assert record.document == light_did.document
    assert record.encryptedKeys == encrypted
    assert record.createdAt is not None
    await identity_store.close()


@pytest.mark.asyncio
async def test_credential_round_trip(identity_store):
    credential_id = await identity_store.insert_credential(make_credential(claimNonce="n1"))
    stored = await identity_store.get_credential(credential_id)

    assert stored.model_dump(exclude={"createdAt"}) == make_credential(claimNonce="n1").model_dump(exclude={"createdAt"})
    assert stored.createdAt is not None
    assert await identity_store.get_credential("cred_missing") is None
    assert (await identity_store.get_pending_credential("n1")).credentialId == credential_id
    assert await identity_store.get_pending_credential("n2") is None
    await identity_store.close()


@pytest.mark.asyncio
async def test_duplicate_credential_id_is_rejected(identity_store):
    await identity_store.insert_credential(make_credential())
    with pytest.raises(StorageError):
        await identity_store.insert_credential(make_credential())
    await identity_store.close()


@pytest.mark.asyncio
async def test_credentials_by_holder_most_recent_first(identity_store):
    await identity_store.insert_credential(make_credential("cred_a", createdAt=datetime(2024, 1, 1, tzinfo=UTC)))
    await identity_store.insert_credential(make_credential("cred_b", createdAt=datetime(2024, 3, 1, tzinfo=UTC)))
    await identity_store.insert_credential(make_credential("cred_c", createdAt=datetime(2024, 2, 1, tzinfo=UTC)))
    await identity_store.insert_credential(make_credential("cred_other", holderDid="did:example:holder2"))

    credentials = await identity_store.get_credentials_by_holder("did:example:holder1")

    assert [c.credentialId for c in credentials] == ["cred_b", "cred_c", "cred_a"]
    await identity_store.close()


@pytest.mark.asyncio
async def test_conditional_update_applies_once(identity_store):
    await identity_store.insert_credential(make_credential(holderDid="", cardId=None, claimNonce="n1"))

    assert await identity_store.update_credential(
        "cred_1", {"holderDid": "did:example:h9", "cardId": "card77"}, only_if_pending=True
    ) is True
    assert await identity_store.update_credential(
        "cred_1", {"holderDid": "did:example:h10", "cardId": "card78"}, only_if_pending=True
    ) is False

    stored = await identity_store.get_credential("cred_1")
    assert stored.holderDid == "did:example:h9"
    assert stored.cardId == "card77"
    await identity_store.close()


@pytest.mark.asyncio
async def test_conditional_update_skips_non_pending(identity_store):
    await identity_store.insert_credential(make_credential("cred_done", holderDid=""))
    await identity_store.insert_credential(make_credential("cred_revoked", holderDid="", claimNonce="n1", revoked=True))

    assert await identity_store.update_credential("cred_done", {"holderDid": "h"}, only_if_pending=True) is False
    assert await identity_store.update_credential("cred_revoked", {"holderDid": "h"}, only_if_pending=True) is False
    assert await identity_store.update_credential("cred_missing", {"holderDid": "h"}) is False
    await identity_store.close()


@pytest.mark.asyncio
async def test_update_rejects_immutable_fields(identity_store):
    await identity_store.insert_credential(make_credential())
    with pytest.raises(ValueError):
        await identity_store.update_credential("cred_1", {"signature": "zforged"})
    await identity_store.close()


@pytest.mark.asyncio
async def test_revocation_status(identity_store):
    await identity_store.insert_credential(make_credential("cred_1"))
    await identity_store.insert_credential(make_credential("cred_2"))
    assert await identity_store.get_revocation_status("did:example:issuer1", "did:example:holder1") is False

    await identity_store.update_credential("cred_1", {"revoked": True, "revokedAt": datetime.now(UTC)})

    assert await identity_store.get_revocation_status("did:example:issuer1", "did:example:holder1") is True
    assert await identity_store.get_revocation_status("did:example:issuer1", "did:example:holder2") is False
    assert await identity_store.get_revocation_status("did:example:issuer2", "did:example:holder1") is False
    # With a signature only that credential counts, whoever holds it now.
    assert await identity_store.get_revocation_status("did:example:issuer1", "", "zsig-cred_1") is True
    assert await identity_store.get_revocation_status("did:example:issuer1", "did:example:holder1", "zsig-cred_2") is False
    await identity_store.close()


@pytest.mark.asyncio
async def test_returned_credentials_are_detached_from_the_store(identity_store):
    original = make_credential()
    await identity_store.insert_credential(original)
    original.claimContents["tier"] = 9
    await identity_store.update_credential("cred_1", {"revoked": True, "revokedAt": datetime.now(UTC)})

    record = await identity_store.get_credential("cred_1")
    record.revoked = False
    record.claimContents["tier"] = 5
    listed = (await identity_store.get_credentials_by_holder("did:example:holder1"))[0]
    listed.revoked = False

    stored = await identity_store.get_credential("cred_1")
    assert stored.revoked is True
    assert stored.claimContents["tier"] == 1
    assert await identity_store.get_revocation_status("did:example:issuer1", "did:example:holder1") is True
    await identity_store.close()


@pytest.mark.asyncio
async def test_returned_did_records_are_detached_from_the_store(identity_store, did_manager):
    light_did = create_light_did()
    encrypted = did_manager.encrypt_keys(light_did.document, light_did.signing_key, "k1")
    returned = await identity_store.upsert_did("0xissuer", SubjectKind.ISSUER, light_did.document, encrypted)

    returned.encryptedKeys.ciphertext = "tampered"
    (await identity_store.get_did("0xissuer", SubjectKind.ISSUER)).encryptedKeys.nonce = "tampered"

    assert (await identity_store.get_did("0xissuer", SubjectKind.ISSUER)).encryptedKeys == encrypted
    await identity_store.close()


@pytest.mark.asyncio
async def test_sql_store_persists_across_instances(tmp_path):
    url = f"sqlite:///{tmp_path / 'identity.db'}"
    first = SqlIdentityStore.from_url(url)
    await first.insert_credential(make_credential())
    await first.close()

    second = SqlIdentityStore.from_url(url)
    assert (await second.get_credential("cred_1")).cardId == "42"
    await second.close()


@pytest.mark.asyncio
async def test_sql_store_calls_yield_to_event_loop(tmp_path):
    store = SqlIdentityStore.from_url(f"sqlite:///{tmp_path / 'identity.db'}")
    light_did = create_light_did()
    await store.upsert_did("0xabc", SubjectKind.HOLDER, light_did.document)
    ticks = 0
    stop = False

    async def ticker():
        nonlocal ticks
        while not stop:
            ticks += 1
            await asyncio.sleep(0)

    task = asyncio.create_task(ticker())
    for _ in range(20):
        assert (await store.get_did("0xabc", SubjectKind.HOLDER)).document == light_did.document
    stop = True
    await task

    assert ticks > 0
    await store.close()
