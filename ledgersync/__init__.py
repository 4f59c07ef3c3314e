"""
LedgerSync - Source Package

An offline-first sync engine for a personal double-entry ledger.
Local edits are committed instantly and replayed against the remote
ledger service whenever it can be reached.

DESIGN PRINCIPLES:
1. The local write and its outbound record commit together or not at all
2. One worker sends; records for one entity leave in creation order
3. Server data never overwrites an unsynced local edit
4. Fail visibly: rejected records wait for the user, never vanish
5. Every step must be auditable
"""

__version__ = "1.0.0"
__author__ = "LedgerSync Team"
