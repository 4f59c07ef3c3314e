"""
Remote Request Variants and Payload Codec

DESIGN DECISION: Every queueable operation is one tagged pydantic model.
A discriminated union over `operation_type` and a single TypeAdapter act
as the only codec, so a payload can never drift from the shape the
remote service expects.

Wire documents mirror the remote contract:
- transactions carry their full posting list (no separate posting endpoint)
- amounts travel as decimal strings
- a posting without quantity sends its amount as quantity
"""

import json
from datetime import date
from decimal import Decimal
from typing import Annotated, Any, ClassVar, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError

from ledgersync.errors import SerializationError
from ledgersync.models.ledger import (
    Account,
    EntityType,
    Tag,
    Transaction,
    Unit,
)
from ledgersync.models.mutation import MutationRecord, OperationType


# =============================================================================
# WIRE DOCUMENTS
# =============================================================================

class PostingDocument(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: UUID
    account_id: str
    amount: Decimal
    quantity: Decimal
    unit_code: Optional[str] = None
    tag_ids: Optional[list[str]] = None


class TransactionDocument(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: UUID
    date: date
    description: str
    note: Optional[str] = None
    postings: list[PostingDocument]

    @classmethod
    def from_entity(cls, tx: Transaction) -> "TransactionDocument":
        return cls(
            id=tx.id,
            date=tx.date,
            description=tx.description,
            note=tx.note,
            postings=[
                PostingDocument(
                    id=p.id,
                    account_id=p.account_id,
                    amount=p.amount,
                    quantity=p.effective_quantity,
                    unit_code=p.unit_code,
                    tag_ids=list(p.tag_ids) or None,
                )
                for p in tx.postings
            ],
        )


class AccountDocument(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    category: str
    type: str
    currency: Optional[str] = None
    icon: Optional[str] = None
    parent_id: Optional[str] = None
    related_account_id: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None

    @classmethod
    def from_entity(cls, account: Account) -> "AccountDocument":
        return cls(
            id=account.id,
            name=account.name,
            category=account.category,
            type=account.type,
            currency=account.currency,
            icon=account.icon,
            parent_id=account.parent_id,
            related_account_id=account.related_account_id,
            metadata=account.metadata,
        )


class UnitDocument(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    name: str
    symbol: Optional[str] = None
    type: str

    @classmethod
    def from_entity(cls, unit: Unit) -> "UnitDocument":
        return cls(code=unit.code, name=unit.name, symbol=unit.symbol, type=unit.type)


class TagDocument(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: Optional[str] = None
    color: Optional[str] = None

    @classmethod
    def from_entity(cls, tag: Tag) -> "TagDocument":
        return cls(id=tag.id, name=tag.name, description=tag.description, color=tag.color)


# =============================================================================
# REQUEST VARIANTS
# =============================================================================

class _Request(BaseModel):
    """Common routing for all variants."""
    model_config = ConfigDict(frozen=True)

    entity_type: ClassVar[EntityType]
    collection: ClassVar[str]
    method: ClassVar[str]

    @property
    def entity_id(self) -> str:
        raise NotImplementedError

    @property
    def endpoint(self) -> str:
        if self.method == "POST":
            return self.collection
        return f"{self.collection}/{self.entity_id}"

    def body(self) -> Optional[BaseModel]:
        return getattr(self, "document", None)


class CreateTransactionRequest(_Request):
    entity_type: ClassVar[EntityType] = EntityType.TRANSACTION
    collection: ClassVar[str] = "/transactions"
    method: ClassVar[str] = "POST"

    operation_type: Literal[OperationType.CREATE_TRANSACTION] = OperationType.CREATE_TRANSACTION
    document: TransactionDocument

    @property
    def entity_id(self) -> str:
        return str(self.document.id)


class UpdateTransactionRequest(CreateTransactionRequest):
    method: ClassVar[str] = "PUT"

    operation_type: Literal[OperationType.UPDATE_TRANSACTION] = OperationType.UPDATE_TRANSACTION


class DeleteTransactionRequest(_Request):
    entity_type: ClassVar[EntityType] = EntityType.TRANSACTION
    collection: ClassVar[str] = "/transactions"
    method: ClassVar[str] = "DELETE"

    operation_type: Literal[OperationType.DELETE_TRANSACTION] = OperationType.DELETE_TRANSACTION
    id: UUID

    @property
    def entity_id(self) -> str:
        return str(self.id)


class CreateAccountRequest(_Request):
    entity_type: ClassVar[EntityType] = EntityType.ACCOUNT
    collection: ClassVar[str] = "/accounts"
    method: ClassVar[str] = "POST"

    operation_type: Literal[OperationType.CREATE_ACCOUNT] = OperationType.CREATE_ACCOUNT
    document: AccountDocument

    @property
    def entity_id(self) -> str:
        return self.document.id


class UpdateAccountRequest(CreateAccountRequest):
    method: ClassVar[str] = "PUT"

    operation_type: Literal[OperationType.UPDATE_ACCOUNT] = OperationType.UPDATE_ACCOUNT


class DeleteAccountRequest(_Request):
    entity_type: ClassVar[EntityType] = EntityType.ACCOUNT
    collection: ClassVar[str] = "/accounts"
    method: ClassVar[str] = "DELETE"

    operation_type: Literal[OperationType.DELETE_ACCOUNT] = OperationType.DELETE_ACCOUNT
    id: str

    @property
    def entity_id(self) -> str:
        return self.id


class CreateUnitRequest(_Request):
    entity_type: ClassVar[EntityType] = EntityType.UNIT
    collection: ClassVar[str] = "/units"
    method: ClassVar[str] = "POST"

    operation_type: Literal[OperationType.CREATE_UNIT] = OperationType.CREATE_UNIT
    document: UnitDocument

    @property
    def entity_id(self) -> str:
        return self.document.code


class UpdateUnitRequest(CreateUnitRequest):
    method: ClassVar[str] = "PUT"

    operation_type: Literal[OperationType.UPDATE_UNIT] = OperationType.UPDATE_UNIT


class DeleteUnitRequest(_Request):
    entity_type: ClassVar[EntityType] = EntityType.UNIT
    collection: ClassVar[str] = "/units"
    method: ClassVar[str] = "DELETE"

    operation_type: Literal[OperationType.DELETE_UNIT] = OperationType.DELETE_UNIT
    code: str

    @property
    def entity_id(self) -> str:
        return self.code


class CreateTagRequest(_Request):
    entity_type: ClassVar[EntityType] = EntityType.TAG
    collection: ClassVar[str] = "/tags"
    method: ClassVar[str] = "POST"

    operation_type: Literal[OperationType.CREATE_TAG] = OperationType.CREATE_TAG
    document: TagDocument

    @property
    def entity_id(self) -> str:
        return self.document.id


class UpdateTagRequest(CreateTagRequest):
    method: ClassVar[str] = "PUT"

    operation_type: Literal[OperationType.UPDATE_TAG] = OperationType.UPDATE_TAG


class DeleteTagRequest(_Request):
    entity_type: ClassVar[EntityType] = EntityType.TAG
    collection: ClassVar[str] = "/tags"
    method: ClassVar[str] = "DELETE"

    operation_type: Literal[OperationType.DELETE_TAG] = OperationType.DELETE_TAG
    id: str

    @property
    def entity_id(self) -> str:
        return self.id


MutationRequest = Annotated[
    Union[
        CreateTransactionRequest,
        UpdateTransactionRequest,
        DeleteTransactionRequest,
        CreateAccountRequest,
        UpdateAccountRequest,
        DeleteAccountRequest,
        CreateUnitRequest,
        UpdateUnitRequest,
        DeleteUnitRequest,
        CreateTagRequest,
        UpdateTagRequest,
        DeleteTagRequest,
    ],
    Field(discriminator="operation_type"),
]

# Field holding the entity key on delete variants
_DELETE_KEY_FIELD = {
    EntityType.TRANSACTION: "id",
    EntityType.ACCOUNT: "id",
    EntityType.UNIT: "code",
    EntityType.TAG: "id",
}


# =============================================================================
# CODEC
# =============================================================================

class MutationCodec:
    """
    Converts request variants to queue records and back.

    The payload stored in a record is exactly the body sent on the wire.
    """

    _adapter: ClassVar[TypeAdapter] = TypeAdapter(MutationRequest)

    def __init__(self, include_null_optionals: bool = False):
        self._include_nulls = include_null_optionals

    def encode(self, request: _Request) -> bytes:
        """Serialize the request body. Deletes have an empty body."""
        body = request.body()
        if body is None:
            return b""
        try:
            data = body.model_dump(mode="json", exclude_none=not self._include_nulls)
            return json.dumps(data, separators=(",", ":"), sort_keys=True).encode("utf-8")
        except (PydanticSerializationError, TypeError, ValueError) as e:
            raise SerializationError(
                f"Cannot serialize {request.operation_type.value} for {request.entity_id}: {e}"
            ) from e

    def to_record(self, request: _Request) -> MutationRecord:
        """Build a fresh pending record holding a snapshot of the request."""
        return MutationRecord(
            operation_type=request.operation_type,
            entity_type=request.entity_type,
            entity_id=request.entity_id,
            endpoint=request.endpoint,
            method=request.method,
            payload=self.encode(request),
        )

    def decode(self, record: MutationRecord) -> _Request:
        """Rebuild the typed request a record was created from."""
        op = record.operation_type
        try:
            if op.is_delete:
                data = {
                    "operation_type": op,
                    _DELETE_KEY_FIELD[op.entity_type]: record.entity_id,
                }
            else:
                data = {
                    "operation_type": op,
                    "document": json.loads(record.payload.decode("utf-8")),
                }
            return self._adapter.validate_python(data)
        except (ValidationError, ValueError, UnicodeDecodeError) as e:
            raise SerializationError(
                f"Corrupt payload for record {record.id} ({op.value}): {e}"
            ) from e


# =============================================================================
# BUILDERS
# =============================================================================

_REQUEST_TYPES: dict[OperationType, type[_Request]] = {
    OperationType.CREATE_TRANSACTION: CreateTransactionRequest,
    OperationType.UPDATE_TRANSACTION: UpdateTransactionRequest,
    OperationType.DELETE_TRANSACTION: DeleteTransactionRequest,
    OperationType.CREATE_ACCOUNT: CreateAccountRequest,
    OperationType.UPDATE_ACCOUNT: UpdateAccountRequest,
    OperationType.DELETE_ACCOUNT: DeleteAccountRequest,
    OperationType.CREATE_UNIT: CreateUnitRequest,
    OperationType.UPDATE_UNIT: UpdateUnitRequest,
    OperationType.DELETE_UNIT: DeleteUnitRequest,
    OperationType.CREATE_TAG: CreateTagRequest,
    OperationType.UPDATE_TAG: UpdateTagRequest,
    OperationType.DELETE_TAG: DeleteTagRequest,
}

_DOCUMENT_TYPES = {
    EntityType.TRANSACTION: TransactionDocument,
    EntityType.ACCOUNT: AccountDocument,
    EntityType.UNIT: UnitDocument,
    EntityType.TAG: TagDocument,
}


def build_request(operation_type: OperationType, entity) -> _Request:
    """Snapshot an entity into the request variant for `operation_type`."""
    if operation_type.entity_type != entity.entity_type:
        raise ValueError(
            f"{operation_type.value} cannot be built from a {entity.entity_type.value}"
        )
    if operation_type.is_delete:
        return build_delete_request(entity.entity_type, entity.entity_key)
    document = _DOCUMENT_TYPES[entity.entity_type].from_entity(entity)
    return _REQUEST_TYPES[operation_type](document=document)


def build_delete_request(entity_type: EntityType, entity_id: str) -> _Request:
    operation_type = OperationType(f"DELETE_{entity_type.value.upper()}")
    return _REQUEST_TYPES[operation_type](**{_DELETE_KEY_FIELD[entity_type]: entity_id})
