from payment_gateway.ledger.base import LedgerStore
from payment_gateway.ledger.ledger import TransactionLedger, can_transition
from payment_gateway.ledger.locks import KeyedLock
from payment_gateway.ledger.memory import InMemoryLedgerStore
from payment_gateway.ledger.sql import SqlLedgerStore

__all__ = [
    "InMemoryLedgerStore",
    "KeyedLock",
    "LedgerStore",
    "SqlLedgerStore",
    "TransactionLedger",
    "can_transition",
]
