# models/tenants_store.py
"""
Read side of the property/room/tenant collaborator tables, plus the small
creation helpers used by scripts/seed_demo.py and the tests.
"""
from __future__ import annotations
import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from models.base import session_scope
from models.schema import Property, Room, Tenant
from services.datetimex import now_utc


def new_id() -> str:
    return uuid.uuid4().hex


def get_property(property_id: str) -> Optional[dict]:
    if not property_id:
        return None
    with session_scope() as s:
        p = s.get(Property, property_id)
        if not p:
            return None
        return {"id": p.id, "owner": p.owner, "name": p.name, "address": p.address}


def get_tenant(tenant_id: str) -> Optional[dict]:
    """Tenant joined with its room and property (what notifications need)."""
    if not tenant_id:
        return None
    with session_scope() as s:
        row = s.execute(
            select(Tenant, Room, Property)
            .join(Room, Room.id == Tenant.room_id)
            .join(Property, Property.id == Room.property_id)
            .where(Tenant.id == tenant_id)
        ).first()
        if not row:
            return None
        t, r, p = row
        return {
            "id": t.id, "name": t.name, "email": t.email, "phone": t.phone,
            "status": t.status,
            "room": {"id": r.id, "number": r.number, "price": float(r.price)},
            "property_id": p.id, "property_name": p.name, "owner": p.owner,
        }


def create_property(owner: str, name: str, address: str | None = None) -> str:
    pid = new_id()
    with session_scope() as s:
        s.add(Property(id=pid, owner=owner, name=name,
              address=address, created_at=now_utc()))
    return pid


def create_room(property_id: str, number: str, price: Decimal | float = 0) -> str:
    rid = new_id()
    with session_scope() as s:
        s.add(Room(id=rid, property_id=property_id, number=str(number),
                   price=Decimal(str(price))))
    return rid


def create_tenant(room_id: str, name: str, email: str | None = None,
                  phone: str | None = None, status: str = "active") -> str:
    tid = new_id()
    with session_scope() as s:
        s.add(Tenant(id=tid, room_id=room_id, name=name, email=email,
                     phone=phone, status=status, created_at=now_utc()))
    return tid
