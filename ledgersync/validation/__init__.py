"""Validation package for ledger writes."""

from ledgersync.validation.validator import LedgerValidator

__all__ = ["LedgerValidator"]
