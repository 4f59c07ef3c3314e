"""Remote ledger service client."""

from ledgersync.services.remote.client import (
    RemoteLedgerClient,
    parse_account,
    parse_tag,
    parse_transaction,
    parse_unit,
)

__all__ = [
    "RemoteLedgerClient",
    "parse_account",
    "parse_tag",
    "parse_transaction",
    "parse_unit",
]
