"""Transaction boundaries spanning the payment and subscription stores."""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, ContextManager, Iterator

from .db import managed_connection
from .payments.repository import PostgresTransactionRepository, TransactionStore
from .subscriptions.repository import PostgresSubscriptionRepository, SubscriptionStore


@dataclass(frozen=True)
class UnitOfWork:
    """Stores that share one database transaction.

    Everything done through a unit of work commits together when the
    ``with`` block exits cleanly and rolls back together when it raises.
    """

    transactions: TransactionStore
    subscriptions: SubscriptionStore


UnitOfWorkFactory = Callable[[], ContextManager[UnitOfWork]]


@contextmanager
def postgres_unit_of_work() -> Iterator[UnitOfWork]:
    with managed_connection() as (connection, _managed):
        yield UnitOfWork(
            transactions=PostgresTransactionRepository(conn=connection),
            subscriptions=PostgresSubscriptionRepository(conn=connection),
        )


__all__ = ["UnitOfWork", "UnitOfWorkFactory", "postgres_unit_of_work"]
