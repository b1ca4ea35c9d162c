"""Database package for the reconciliation service."""
from .connection import close_db, get_session_factory, init_db
from .models import Base, Bot, Transaction, UserGateway, family_codes, gateway_family
from .repository import CredentialStore, TransactionRepository

__all__ = [
    "Base",
    "Bot",
    "Transaction",
    "UserGateway",
    "family_codes",
    "gateway_family",
    "CredentialStore",
    "TransactionRepository",
    "close_db",
    "get_session_factory",
    "init_db",
]
