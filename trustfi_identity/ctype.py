"""Credential types (CTypes): the schemas claims must conform to.

A CType is identified by the hash of its canonical JSON definition, so every
party holding the same schema derives the same identity for it.
"""

import hashlib
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from trustfi_identity.keys import canonical_json
from trustfi_identity.logging import get_logger
from trustfi_identity.models import CType, CTypeSchema

logger = get_logger(__name__)

REPUTATION_CARD = "reputation-card"

REPUTATION_CARD_SCHEMA = CTypeSchema(
    title="TrustFi Reputation Card",
    properties={
        "template_id": {"type": "string"},
        "card_id": {"type": "string"},
        "tier": {"type": "number"},
        "issue_date": {"type": "string"},
        "issuer_address": {"type": "string"},
        "holder_did": {"type": "string"},
    },
    required=["template_id", "card_id", "tier", "issue_date", "issuer_address"],
)

# Claim fields holding ISO 8601 timestamps, checked under strict validation.
DATE_FIELDS = ("issue_date",)


def _is_iso_timestamp(value: Any) -> bool:
    try:
        datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return False
    return True


def _matches_type(value: Any, json_type: str) -> bool:
    # bool is an int subclass but never a JSON number.
    if json_type == "string":
        return isinstance(value, str)
    if json_type == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if json_type == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if json_type == "boolean":
        return isinstance(value, bool)
    if json_type == "array":
        return isinstance(value, list)
    if json_type == "object":
        return isinstance(value, dict)
    return True


def compute_schema_hash(schema: CTypeSchema) -> str:
    return "0x" + hashlib.sha256(canonical_json(schema.model_dump(mode="json"))).hexdigest()


class CTypeRegistry:
    def __init__(self, schemas: Optional[Mapping[str, CTypeSchema]] = None):
        self._schemas: Dict[str, CTypeSchema] = {}
        self._hashes: Dict[str, str] = {}
        for name, schema in (schemas if schemas is not None else {REPUTATION_CARD: REPUTATION_CARD_SCHEMA}).items():
            self.register(name, schema)

    def register(self, name: str, schema: CTypeSchema) -> str:
        """Adds ``schema`` under ``name`` and returns its hash. Re-registering a name must not change the schema."""
        schema_hash = compute_schema_hash(schema)
        existing = self._hashes.get(name)
        if existing is not None and existing != schema_hash:
            raise ValueError(f"CType '{name}' is already registered with a different schema")
        self._schemas[name] = schema
        self._hashes[name] = schema_hash
        logger.debug(f"Registered CType '{name}' with hash {schema_hash}")
        return schema_hash

    def names(self) -> List[str]:
        return list(self._schemas)

    def get_schema(self, schema_name: str) -> CTypeSchema:
        try:
            return self._schemas[schema_name]
        except KeyError:
            raise KeyError(f"Unknown CType '{schema_name}'") from None

    def get_schema_hash(self, schema_name: str) -> str:
        self.get_schema(schema_name)
        return self._hashes[schema_name]

    def get_schema_by_hash(self, schema_hash: str) -> Optional[CTypeSchema]:
        name = self.name_for_hash(schema_hash)
        return self._schemas[name] if name is not None else None

    def name_for_hash(self, schema_hash: str) -> Optional[str]:
        for name, known in self._hashes.items():
            if known == schema_hash:
                return name
        return None

    def missing_fields(self, contents: Mapping[str, Any], schema_name: str) -> List[str]:
        return [field for field in self.get_schema(schema_name).required if field not in contents]

    def validate_claim_contents(self, contents: Mapping[str, Any], schema_name: str = REPUTATION_CARD, *, strict: bool = False) -> bool:
        """True when ``contents`` carries every required field of the schema.

        With ``strict`` the JSON types of declared properties are checked as well, and
        timestamp fields must parse as ISO 8601.
        """
        missing = self.missing_fields(contents, schema_name)
        if missing:
            logger.warning(f"Claim contents for '{schema_name}' missing required fields: {', '.join(missing)}")
            return False
        if strict:
            properties = self.get_schema(schema_name).properties
            for field, value in contents.items():
                prop = properties.get(field)
                if prop is not None and not _matches_type(value, prop.type):
                    logger.warning(f"Claim field '{field}' for '{schema_name}' must be of type {prop.type}")
                    return False
            for field in DATE_FIELDS:
                if field in properties and field in contents and not _is_iso_timestamp(contents[field]):
                    logger.warning(f"Claim field '{field}' for '{schema_name}' must be an ISO 8601 timestamp")
                    return False
        return True

    def create_ctype(self, schema_name: str, owner: str = "") -> CType:
        return CType(schema=self.get_schema(schema_name), owner=owner, hash=self.get_schema_hash(schema_name))

    def get_ctype_info(self, schema_name: str) -> dict:
        schema = self.get_schema(schema_name)
        return {
            "name": schema_name,
            "title": schema.title,
            "hash": self.get_schema_hash(schema_name),
            "requiredFields": list(schema.required),
        }
