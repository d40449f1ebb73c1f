from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

from sqlalchemy.orm import Session

from orderflow.domain.actor import Actor
from orderflow.domain.constants import Role
from orderflow.domain.errors import NotFoundError
from orderflow.domain.models import (
    Customer,
    DelayReason,
    Order,
    OrderFile,
    OrderItem,
    TimelineEntry,
    UserProfile,
    UserRole,
)


@dataclass
class UserDirectory:
    """Who works where; the input of notification audiences."""

    admins: Set[str] = field(default_factory=set)
    departments: Dict[str, Set[str]] = field(default_factory=dict)

    def department_users(self, department: Optional[str]) -> Set[str]:
        return set(self.departments.get((department or "").lower(), set()))

    def department_of(self, user_id: str) -> Optional[str]:
        for department, users in self.departments.items():
            if user_id in users:
                return department
        return None


class OrderRepository:
    def __init__(self, db: Session):
        self.db = db

    # Orders

    def list_orders(self) -> List[Order]:
        return self.db.query(Order).order_by(Order.created_at.desc(), Order.id.desc()).all()

    def get_order(self, order_id: int) -> Order:
        order = self.db.query(Order).filter(Order.id == order_id).first()
        if not order:
            raise NotFoundError("Order not found")
        return order

    def find_by_number(self, order_number: str) -> Optional[Order]:
        return self.db.query(Order).filter(Order.order_number == order_number).first()

    def find_by_woo_id(self, woo_order_id: int) -> Optional[Order]:
        return self.db.query(Order).filter(Order.woo_order_id == woo_order_id).first()

    def get_item(self, order_id: int, item_id: int) -> OrderItem:
        item = (
            self.db.query(OrderItem)
            .filter(OrderItem.order_id == order_id, OrderItem.id == item_id)
            .first()
        )
        if not item:
            raise NotFoundError("Order item not found")
        return item

    def order_ids_batch(self, limit: int) -> List[int]:
        return [row.id for row in self.db.query(Order.id).order_by(Order.id).limit(limit).all()]

    def touch_order(self, order: Order) -> None:
        order.updated_at = datetime.utcnow()

    # Timeline

    def add_timeline(self, order: Order, actor: Actor, stage: str, action: str, notes: str = None,
                     item: Optional[OrderItem] = None, substage: str = None, attachments: list = None,
                     is_public: bool = True) -> TimelineEntry:
        entry = TimelineEntry(
            order_id=order.id,
            item_id=item.id if item is not None else None,
            product_name=item.product_name if item is not None else None,
            stage=stage,
            substage=substage,
            action=action,
            performed_by=actor.user_id,
            performed_by_name=actor.display_name,
            notes=notes,
            attachments=attachments,
            is_public=is_public,
        )
        self.db.add(entry)
        return entry

    def list_timeline(self, order_ids: Optional[List[int]] = None) -> List[TimelineEntry]:
        query = self.db.query(TimelineEntry)
        if order_ids is not None:
            query = query.filter(TimelineEntry.order_id.in_(order_ids))
        return query.order_by(TimelineEntry.created_at.desc(), TimelineEntry.id.desc()).all()

    # Files

    def get_file(self, order_id: int, file_id: int) -> OrderFile:
        record = (
            self.db.query(OrderFile)
            .filter(OrderFile.order_id == order_id, OrderFile.id == file_id)
            .first()
        )
        if not record:
            raise NotFoundError("File not found")
        return record

    def files_for_item(self, order_id: int, item_id: Optional[int]) -> List[OrderFile]:
        return (
            self.db.query(OrderFile)
            .filter(OrderFile.order_id == order_id, OrderFile.item_id == item_id)
            .all()
        )

    # Delays

    def get_delay_reason(self, order_id: int, reason_id: int) -> DelayReason:
        record = (
            self.db.query(DelayReason)
            .filter(DelayReason.order_id == order_id, DelayReason.id == reason_id)
            .first()
        )
        if not record:
            raise NotFoundError("Delay reason not found")
        return record

    # Customers

    def find_customer(self, email: Optional[str], phone: Optional[str]) -> Optional[Customer]:
        if email:
            customer = self.db.query(Customer).filter(Customer.email == email).first()
            if customer:
                return customer
        if phone:
            return self.db.query(Customer).filter(Customer.phone == phone).first()
        return None

    def find_or_create_customer(self, name: str, email: Optional[str], phone: Optional[str],
                                wc_customer_id: Optional[str] = None) -> Customer:
        customer = None
        if wc_customer_id:
            customer = self.db.query(Customer).filter(Customer.wc_customer_id == wc_customer_id).first()
        customer = customer or self.find_customer(email, phone)
        if customer:
            return customer
        first_name, _, last_name = (name or "").strip().partition(" ")
        customer = Customer(
            wc_customer_id=wc_customer_id or f"manual_{int(datetime.utcnow().timestamp() * 1000)}",
            first_name=first_name,
            last_name=last_name.strip(),
            email=email or None,
            phone=phone or None,
        )
        self.db.add(customer)
        self.db.flush()
        return customer

    # Users

    def load_actor(self, user_id: str) -> Optional[Actor]:
        profile = self.db.query(UserProfile).filter(UserProfile.user_id == user_id).first()
        role_row = self.db.query(UserRole).filter(UserRole.user_id == user_id).first()
        if not profile and not role_row:
            return None
        return Actor(
            user_id=user_id,
            full_name=profile.full_name if profile else "",
            role=role_row.role if role_row else None,
            department=profile.department if profile else None,
            production_stage=profile.production_stage if profile else None,
        )

    def load_user_directory(self) -> UserDirectory:
        directory = UserDirectory()
        roles = {row.user_id: row.role for row in self.db.query(UserRole).all()}
        profiles = {row.user_id: row for row in self.db.query(UserProfile).all()}
        for user_id in set(roles) | set(profiles):
            role = roles.get(user_id)
            if role == Role.ADMIN.value:
                directory.admins.add(user_id)
                continue
            profile = profiles.get(user_id)
            department = role or (profile.department if profile else None)
            if department:
                directory.departments.setdefault(department.lower(), set()).add(user_id)
        return directory

    def user_name(self, user_id: str) -> Optional[str]:
        profile = self.db.query(UserProfile).filter(UserProfile.user_id == user_id).first()
        return profile.full_name if profile else None
