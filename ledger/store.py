from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
import threading
from typing import Callable, Optional
from uuid import uuid4

import structlog
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    MetaData,
    Numeric,
    String,
    Table,
    TypeDecorator,
    delete,
    false,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine

from ledger.models import Entity, Transaction, entity_from_row, transaction_from_row

logger = structlog.get_logger(__name__)


class LenientNumeric(TypeDecorator):
    """Numeric column that hands back unreadable stored values untouched.

    The dialect's Decimal conversion raises on text such as ``"abc"``, which
    would abort a whole read; ``transaction_from_row`` zeroes such values.
    """

    impl = Numeric
    cache_ok = True

    def result_processor(self, dialect, coltype):
        process = self.impl_instance.result_processor(dialect, coltype)
        if process is None:
            return None

        def tolerant(value):
            try:
                return process(value)
            except (TypeError, ValueError, ArithmeticError):
                return value

        return tolerant


metadata = MetaData()

entities = Table(
    "entities",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("role", String(100)),
    Column("contact", String(255)),
    Column("note", String(1000)),
    Column("created_at", DateTime, nullable=False),
)

# entity_id carries no foreign key: deleting an entity leaves its transactions in place.
transactions = Table(
    "transactions",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("date", Date),
    Column("amount", LenientNumeric(16, 2), nullable=False),
    Column("kind", String(20), nullable=False),
    Column("open_ended", Boolean, nullable=False, server_default=false()),
    Column("entity_id", String(32), index=True),
    Column("description", String(500)),
    Column("unit", String(10)),
    Column("raw_amount", LenientNumeric(18, 4)),
    Column("created_at", DateTime, nullable=False),
)

settings = Table(
    "settings",
    metadata,
    Column("key", String(100), primary_key=True),
    Column("value", String(500), nullable=False),
    Column("updated_at", DateTime, nullable=False),
)


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    action: str
    row_id: str


ChangeCallback = Callable[[ChangeEvent], None]


class ChangeNotifier:
    """Fan-out of committed changes to subscribers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[int, ChangeCallback] = {}
        self._next_id = 0

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        with self._lock:
            subscription_id = self._next_id
            self._next_id += 1
            self._subscribers[subscription_id] = callback

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(subscription_id, None)

        return unsubscribe

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            callbacks = list(self._subscribers.values())
        for callback in callbacks:
            # The write is already committed; one failing listener must not hide it from the rest.
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "change_listener_failed", table=event.table, action=event.action
                )


class LedgerStore:
    def __init__(self, engine: Engine, notifier: ChangeNotifier | None = None) -> None:
        self.engine = engine
        self.notifier = notifier or ChangeNotifier()

    def create_all(self) -> None:
        metadata.create_all(self.engine)

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        return self.notifier.subscribe(callback)

    def list_entities(self) -> list[Entity]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(entities).order_by(entities.c.created_at.desc())
            ).mappings().all()
        return [entity_from_row(row) for row in rows]

    def entity_names(self) -> dict[str, str]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(entities.c.id, entities.c.name).order_by(entities.c.name.asc())
            ).all()
        return {row.id: row.name for row in rows}

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(entities).where(entities.c.id == entity_id)
            ).mappings().first()
        return entity_from_row(row) if row else None

    def insert_entity(
        self,
        name: str,
        role: str | None = None,
        contact: str | None = None,
        note: str | None = None,
    ) -> Entity:
        entity = Entity(
            id=uuid4().hex,
            name=name,
            role=role,
            contact=contact,
            note=note,
            created_at=datetime.now(),
        )
        with self.engine.begin() as conn:
            conn.execute(
                insert(entities).values(
                    id=entity.id,
                    name=entity.name,
                    role=entity.role,
                    contact=entity.contact,
                    note=entity.note,
                    created_at=entity.created_at,
                )
            )
        self.notifier.publish(ChangeEvent("entities", "insert", entity.id))
        return entity

    def delete_entity(self, entity_id: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(delete(entities).where(entities.c.id == entity_id))
        if result.rowcount == 0:
            return False
        self.notifier.publish(ChangeEvent("entities", "delete", entity_id))
        return True

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(transactions).where(transactions.c.id == transaction_id)
            ).mappings().first()
        return transaction_from_row(row) if row else None

    def list_transactions(self) -> list[Transaction]:
        stmt = select(transactions).order_by(
            transactions.c.created_at.desc(),
            transactions.c.date.desc().nulls_last(),
        )
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [transaction_from_row(row) for row in rows]

    def list_transactions_for_entity(self, entity_id: str) -> list[Transaction]:
        stmt = (
            select(transactions)
            .where(transactions.c.entity_id == entity_id)
            .order_by(
                transactions.c.created_at.asc(),
                transactions.c.date.asc().nulls_last(),
            )
        )
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [transaction_from_row(row) for row in rows]

    def list_transactions_by_kind(
        self, kind: str, start_date: date | None = None, end_date: date | None = None
    ) -> list[Transaction]:
        """Rows of one kind; with a range, only dated rows inside it, oldest first."""
        conditions = [transactions.c.kind == kind]
        if start_date is not None or end_date is not None:
            conditions.append(transactions.c.date.isnot(None))
        if start_date is not None:
            conditions.append(transactions.c.date >= start_date)
        if end_date is not None:
            conditions.append(transactions.c.date <= end_date)
        stmt = (
            select(transactions)
            .where(*conditions)
            .order_by(transactions.c.date.asc(), transactions.c.created_at.asc())
        )
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [transaction_from_row(row) for row in rows]

    def insert_transaction(self, txn: Transaction) -> Transaction:
        created_at = txn.created_at or datetime.now()
        with self.engine.begin() as conn:
            conn.execute(
                insert(transactions).values(
                    id=txn.id, created_at=created_at, **_transaction_values(txn)
                )
            )
        self.notifier.publish(ChangeEvent("transactions", "insert", txn.id))
        return self.get_transaction(txn.id) or txn

    def update_transaction(self, txn: Transaction) -> Optional[Transaction]:
        with self.engine.begin() as conn:
            result = conn.execute(
                update(transactions)
                .where(transactions.c.id == txn.id)
                .values(**_transaction_values(txn))
            )
        if result.rowcount == 0:
            return None
        self.notifier.publish(ChangeEvent("transactions", "update", txn.id))
        return self.get_transaction(txn.id)

    def delete_transaction(self, transaction_id: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                delete(transactions).where(transactions.c.id == transaction_id)
            )
        if result.rowcount == 0:
            return False
        self.notifier.publish(ChangeEvent("transactions", "delete", transaction_id))
        return True


class SqlSettingsStore:
    """Key/value settings in the ``settings`` table."""

    def __init__(self, engine: Engine, notifier: ChangeNotifier | None = None) -> None:
        self.engine = engine
        self.notifier = notifier or ChangeNotifier()

    def get(self, key: str, default: str = "") -> str:
        with self.engine.begin() as conn:
            value = conn.execute(
                select(settings.c.value).where(settings.c.key == key)
            ).scalar_one_or_none()
        return default if value is None else value

    def set(self, key: str, value: str) -> None:
        now = datetime.now()
        with self.engine.begin() as conn:
            result = conn.execute(
                update(settings)
                .where(settings.c.key == key)
                .values(value=value, updated_at=now)
            )
            if result.rowcount == 0:
                conn.execute(insert(settings).values(key=key, value=value, updated_at=now))
        self.notifier.publish(ChangeEvent("settings", "update", key))


def _transaction_values(txn: Transaction) -> dict:
    return {
        "date": txn.date,
        "amount": txn.amount,
        "kind": txn.kind,
        "open_ended": txn.open_ended,
        "entity_id": txn.entity_id,
        "description": txn.description,
        "unit": txn.unit,
        "raw_amount": txn.raw_amount,
    }
