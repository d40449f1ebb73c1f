import asyncio
import os
import tempfile
from datetime import date, timedelta

# Point the settings at a throwaway database before anything imports them
_DB_DIR = tempfile.mkdtemp(prefix="orderflow-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'orderflow.db')}"

import pytest

from orderflow.domain.models import Base, Order, OrderItem, UserProfile, UserRole
from orderflow.infrastructure import db
from orderflow.infrastructure.db import session_scope
from orderflow.infrastructure.repository import OrderRepository
from orderflow.infrastructure.storage import StoredFile

# user_id, full name, role, profile department, production station
USERS = [
    ("admin-1", "Asha Admin", "admin", None, None),
    ("sales-1", "Sam Sales", "sales", "sales", None),
    ("design-1", "Dev Design", "design", "design", None),
    ("prepress-1", "Priya Prepress", "prepress", "prepress", None),
    ("production-1", "Pat Printer", "production", "production", "printing"),
    ("production-2", "Cory Cutter", "production", "production", "cutting"),
    ("outsource-1", "Omar Outsource", None, "outsource", None),
    ("dispatch-1", "Dina Dispatch", None, "dispatch", None),
]


def run(coro):
    return asyncio.run(coro)


def in_days(days: int) -> date:
    return date.today() + timedelta(days=days)


class FakeStorage:
    """Object storage double that remembers what was stored and removed."""

    def __init__(self):
        self.uploaded = []
        self.deleted = []

    async def upload(self, content, order_number, file_type, file_name, content_type="application/octet-stream"):
        path = f"{order_number}/{file_type}/{file_name}"
        self.uploaded.append(path)
        return StoredFile(url=f"http://files.test/{path}", path=path)

    async def delete(self, path):
        self.deleted.append(path)


@pytest.fixture
def session_factory():
    Base.metadata.drop_all(db.engine)
    Base.metadata.create_all(db.engine)
    with session_scope(db.SessionLocal) as session:
        for user_id, name, role, department, station in USERS:
            session.add(UserProfile(user_id=user_id, full_name=name, department=department,
                                    production_stage=station))
            if role:
                session.add(UserRole(user_id=user_id, role=role))
    return db.SessionLocal


@pytest.fixture
def actors(session_factory):
    with session_scope(session_factory) as session:
        repo = OrderRepository(session)
        return {user_id: repo.load_actor(user_id) for user_id, *_ in USERS}


@pytest.fixture
def storage():
    return FakeStorage()


def make_order(session_factory, order_number="1001", delivery_date=None, items=None, **fields):
    """Insert an order directly; ``items`` are dicts of OrderItem columns."""
    items = items or [{"product_name": "Business cards"}]
    with session_scope(session_factory) as session:
        order = Order(
            order_number=order_number,
            customer_name=fields.pop("customer_name", "Ravi Kumar"),
            delivery_date=delivery_date,
            order_total=fields.pop("order_total", 1000),
            **fields,
        )
        for columns in items:
            columns = dict(columns)
            columns.setdefault("quantity", 100)
            columns.setdefault("specifications", {"paper": "350gsm"})
            columns.setdefault("delivery_date", delivery_date)
            columns.setdefault("current_stage", "sales")
            columns.setdefault("assigned_department", columns["current_stage"])
            order.items.append(OrderItem(**columns))
        session.add(order)
        session.flush()
        return order.id, [item.id for item in order.items]


def load_item(session_factory, item_id):
    with session_scope(session_factory) as session:
        return session.get(OrderItem, item_id)


def load_order(session_factory, order_id):
    with session_scope(session_factory) as session:
        order = session.get(Order, order_id)
        if order is not None:
            list(order.items)
        return order
