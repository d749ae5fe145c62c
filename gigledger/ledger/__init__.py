"""Ledger storage for gigledger."""

from gigledger.ledger.base import LedgerStore, LedgerTransaction
from gigledger.ledger.sqlite import SQLiteLedgerStore

__all__ = ["LedgerStore", "LedgerTransaction", "SQLiteLedgerStore"]
