"""
Core Ledger Models for LedgerSync

These models define the strict schemas for the local double-entry ledger.
They are designed to:
1. Enforce type safety at runtime
2. Carry explicit per-entity sync metadata
3. Be serializable for storage and the remote wire format
4. Keep the double-entry balance rule checkable at any instant

DESIGN DECISION: Sync metadata is an explicit four-state enum instead of
an `is_synced` flag. Every transition is enumerable and testable.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)


# Accounts pulled without a currency are stored with this one
DEFAULT_CURRENCY = "INR"


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class SyncState(str, Enum):
    """
    Per-entity sync state.

    CLEAN           - local copy matches the last known server state
    DIRTY           - at least one pending/retrying mutation references it
    IN_FLIGHT       - a mutation for it is being sent right now
    CONFLICT_FAILED - its latest mutation was rejected or ran out of retries
    """
    CLEAN = "clean"
    DIRTY = "dirty"
    IN_FLIGHT = "in_flight"
    CONFLICT_FAILED = "conflict_failed"

    @property
    def is_protected(self) -> bool:
        """Remote data must not overwrite an entity in this state."""
        return self is not SyncState.CLEAN


class EntityType(str, Enum):
    """Entity kinds held by the local store."""
    ACCOUNT = "account"
    TRANSACTION = "transaction"
    TAG = "tag"
    UNIT = "unit"
    PRICE = "price"


# =============================================================================
# LEDGER ENTITIES
# =============================================================================

class LedgerEntity(BaseModel):
    """
    Base for every entity kept in the local store.

    Subclasses set `entity_type` and expose `entity_key`, the identity
    used by the mutation queue to order records per entity.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    entity_type: ClassVar[EntityType]

    sync_state: SyncState = Field(
        default=SyncState.CLEAN,
        description="Sync state of the local copy"
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        description="Last local modification (UTC)"
    )

    @property
    def entity_key(self) -> str:
        raise NotImplementedError


class Account(LedgerEntity):
    """
    A ledger account.

    Account ids are hierarchical strings ("Assets:Bank:Savings"); the
    first segment is the account category.
    """
    entity_type: ClassVar[EntityType] = EntityType.ACCOUNT

    id: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Account identifier"
    )
    name: str = Field(
        ...,
        min_length=1,
        max_length=200,
    )
    category: str = Field(
        ...,
        min_length=1,
        max_length=50,
        description="Top-level category (Assets, Liabilities, Income, Expenses, Equity)"
    )
    type: str = Field(
        ...,
        min_length=1,
        max_length=50,
    )
    currency: Optional[str] = Field(
        default=None,
        max_length=10,
    )
    icon: Optional[str] = None
    parent_id: Optional[str] = None
    related_account_id: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None

    @property
    def entity_key(self) -> str:
        return self.id


class Tag(LedgerEntity):
    """A label shared by any number of postings."""
    entity_type: ClassVar[EntityType] = EntityType.TAG

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        min_length=1,
    )
    name: str = Field(
        ...,
        min_length=1,
        max_length=100,
    )
    description: Optional[str] = Field(
        default=None,
        max_length=500,
    )
    color: Optional[str] = Field(
        default=None,
        max_length=20,
    )

    @property
    def entity_key(self) -> str:
        return self.id


class Unit(LedgerEntity):
    """
    A currency or commodity postings are denominated in.

    Examples: INR, USD, GOLD, a mutual fund scheme code.
    """
    entity_type: ClassVar[EntityType] = EntityType.UNIT

    code: str = Field(
        ...,
        min_length=1,
        max_length=50,
    )
    name: str = Field(
        ...,
        min_length=1,
        max_length=200,
    )
    symbol: Optional[str] = Field(
        default=None,
        max_length=10,
    )
    type: str = Field(
        default="currency",
        pattern="^(currency|commodity)$",
    )

    @property
    def entity_key(self) -> str:
        return self.code


class Price(LedgerEntity):
    """A unit's price on a date. Prices are pulled, never pushed."""
    entity_type: ClassVar[EntityType] = EntityType.PRICE

    id: UUID = Field(default_factory=uuid4)
    unit_code: str = Field(..., min_length=1)
    date: date
    price: Decimal
    currency: str = Field(default=DEFAULT_CURRENCY, min_length=1)
    source: Optional[str] = None

    @property
    def entity_key(self) -> str:
        return str(self.id)


class Posting(BaseModel):
    """
    One account/amount line of a transaction.

    Postings have no sync state of their own; they live and sync only
    as part of their parent transaction.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    account_id: str = Field(
        ...,
        description="Referenced account (no enforced foreign key)"
    )
    account_name: Optional[str] = None
    amount: Decimal
    quantity: Optional[Decimal] = Field(
        default=None,
        description="Units moved; defaults to the amount"
    )
    unit_code: Optional[str] = None
    tag_ids: list[str] = Field(default_factory=list)

    @property
    def effective_quantity(self) -> Decimal:
        return self.quantity if self.quantity is not None else self.amount


class Transaction(LedgerEntity):
    """
    A balanced set of postings.

    The transaction exclusively owns its postings: replacing or deleting
    the transaction replaces or deletes all of them.
    """
    entity_type: ClassVar[EntityType] = EntityType.TRANSACTION

    id: UUID = Field(default_factory=uuid4)
    date: date
    description: str = Field(
        ...,
        max_length=500,
    )
    note: Optional[str] = Field(
        default=None,
        max_length=1000,
    )
    postings: list[Posting] = Field(default_factory=list)

    @field_validator('note')
    @classmethod
    def blank_note_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None

    @property
    def entity_key(self) -> str:
        return str(self.id)

    @property
    def posting_total(self) -> Decimal:
        """Sum of all posting amounts (zero when balanced)."""
        return sum((p.amount for p in self.postings), Decimal("0"))

    def is_balanced(self, tolerance: float = 0.01) -> bool:
        return abs(self.posting_total) < Decimal(str(tolerance))

    def amount_for_account(self, account_id: str) -> Decimal:
        return sum(
            (p.amount for p in self.postings if p.account_id == account_id),
            Decimal("0"),
        )

