from .database import init_database
from .transaction import savepoint, transaction

__all__ = ["init_database", "savepoint", "transaction"]
