"""Gateway to the identity ledger's DID resolver.

The ledger is reached through an HTTP resolver that follows the Universal
Resolver layout (``GET /1.0/identifiers/{did}``). One pooled
``httpx.AsyncClient`` is held per gateway; concurrent ``connect()`` callers share
a single in-flight attempt.
"""

import asyncio
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from trustfi_identity.exceptions import DIDResolutionError, LedgerConnectionError
from trustfi_identity.keys import LightDid, create_light_did
from trustfi_identity.logging import get_logger
from trustfi_identity.models import DidDocument
from trustfi_identity.retry import RetryExhausted, RetryPolicy

logger = get_logger(__name__)

RESOLVE_PATH = "/1.0/identifiers/{did}"
HEALTH_PATH = "/health"

DEFAULT_AUTH_TYPE = "Sr25519VerificationKey2020"
DEFAULT_AGREEMENT_TYPE = "X25519KeyAgreementKey2020"


class LedgerGateway:
    def __init__(
        self,
        endpoint: str,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.retry_policy = retry_policy or RetryPolicy(retry_on=(httpx.HTTPError, OSError))
        self.timeout = timeout
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None
        self._connected = False
        self._connect_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connects to the ledger, retrying with backoff.

        Raises:
            LedgerConnectionError: once the retry policy is exhausted.
        """
        if self._connected:
            return
        if self._connect_task is None or self._connect_task.done():
            self._connect_task = asyncio.ensure_future(self._connect_with_retry())
        task = self._connect_task
        try:
            await asyncio.shield(task)
        finally:
            if self._connect_task is task and task.done():
                self._connect_task = None

    async def _connect_with_retry(self) -> None:
        try:
            await self.retry_policy.run(self._open, description=f"connect {self.endpoint}", sleep=self._sleep)
        except RetryExhausted as e:
            logger.error(f"Failed to connect to ledger at {self.endpoint} after {e.attempts} attempts: {e.last_error}")
            raise LedgerConnectionError(
                f"Failed to connect to ledger at {self.endpoint} after {e.attempts} attempts: {e.last_error}",
                attempts=e.attempts,
                last_error=e.last_error,
            ) from e.last_error
        self._connected = True
        logger.info(f"Connected to ledger at {self.endpoint}")

    async def _open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.endpoint, timeout=self.timeout, transport=self._transport)
        response = await self._client.get(HEALTH_PATH)
        # Any non-5xx answer proves the resolver is reachable.
        if response.status_code >= 500:
            response.raise_for_status()

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._connected:
            logger.info(f"Disconnected from ledger at {self.endpoint}")
        self._connected = False

    async def resolve(self, did_uri: str) -> Optional[DidDocument]:
        """Resolves ``did_uri`` on the ledger.

        Returns:
            The parsed document, or None when the ledger has no record for the DID.

        Raises:
            LedgerConnectionError: if the ledger cannot be reached.
            DIDResolutionError: with code ``NETWORK_ERROR`` on transport failures, or
                ``DID_NOT_FOUND`` when the ledger returns an unparsable document.
        """
        await self.connect()
        logger.debug(f"Resolving DID: {did_uri}")
        try:
            response = await self._client.get(RESOLVE_PATH.format(did=did_uri))
            if response.status_code == 404:
                logger.info(f"DID not found on ledger: {did_uri}")
                return None
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error resolving {did_uri}: {e.response.status_code}")
            raise DIDResolutionError(f"Error resolving {did_uri}: upstream returned {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error(f"Request error resolving {did_uri}: {e}")
            raise DIDResolutionError(f"Could not reach the ledger to resolve {did_uri}: {e}") from e
        except ValueError as e:
            logger.error(f"Invalid JSON resolving {did_uri}: {e}")
            raise DIDResolutionError(f"Ledger returned invalid JSON for {did_uri}") from e

        document = parse_did_document(payload, did_uri)
        if document is not None:
            logger.info(f"Resolved DID: {did_uri}")
        return document

    def create_light_did(self, seed: Optional[bytes] = None) -> LightDid:
        """Builds an off-ledger DID. Needs no connection."""
        light_did = create_light_did(seed)
        logger.info(f"Created light DID: {light_did.uri}")
        return light_did


def parse_did_document(payload: Any, did_uri: str = "") -> Optional[DidDocument]:
    """Parses a resolver payload into a `DidDocument`.

    Accepts the library's own document shape as well as W3C DID-core JSON, either
    bare or wrapped in a ``didDocument`` member. An empty document means not found.
    """
    if isinstance(payload, dict) and "didDocument" in payload:
        payload = payload["didDocument"]
    if not payload:
        return None
    if not isinstance(payload, dict):
        raise DIDResolutionError(
            f"Unexpected DID document payload for {did_uri}: {type(payload).__name__}", code="DID_NOT_FOUND"
        )
    try:
        if "uri" in payload:
            return DidDocument.model_validate(payload)
        return _from_w3c(payload)
    except (ValidationError, KeyError, TypeError) as e:
        raise DIDResolutionError(f"Invalid DID document for {did_uri}: {e}", code="DID_NOT_FOUND") from e


def _from_w3c(doc: Dict[str, Any]) -> DidDocument:
    uri = doc["id"]
    methods = {vm["id"]: vm for vm in doc.get("verificationMethod", [])}

    def relationship(name: str, default_type: str) -> Optional[List[Dict[str, Any]]]:
        entries = doc.get(name)
        if entries is None:
            return None
        result = []
        for entry in entries:
            vm = methods[entry] if isinstance(entry, str) else entry
            result.append({
                "id": vm["id"],
                "type": vm.get("type") or default_type,
                "controller": vm.get("controller") or uri,
                "publicKeyMultibase": vm.get("publicKeyMultibase"),
            })
        return result

    services = doc.get("service")
    return DidDocument(
        uri=uri,
        authentication=relationship("authentication", DEFAULT_AUTH_TYPE) or [],
        assertionMethod=relationship("assertionMethod", DEFAULT_AUTH_TYPE),
        keyAgreement=relationship("keyAgreement", DEFAULT_AGREEMENT_TYPE),
        service=[
            {
                "id": svc["id"],
                "type": svc["type"][0] if isinstance(svc["type"], list) else svc["type"],
                "serviceEndpoint": svc["serviceEndpoint"][0]
                if isinstance(svc["serviceEndpoint"], list)
                else svc["serviceEndpoint"],
            }
            for svc in services
        ] if services is not None else None,
    )
