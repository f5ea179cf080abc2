"""
Request bodies for the JSON endpoints.

Update models leave every field optional; handlers pass
model_dump(exclude_unset=True) on, so only the fields a client
actually sent end up in the UPDATE.
"""
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


# ── Users ────────────────────────────────────────────────────

class UserCreate(BaseModel):
    name: str
    email: str
    password: str
    age: int = 0
    is_active: int = 1


class UserUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    age: Optional[int] = None
    is_active: Optional[int] = None
    password: Optional[str] = None


class LoginPayload(BaseModel):
    email: str
    password: str


class PasswordChange(BaseModel):
    current_password: str
    new_password: str


# ── Products ─────────────────────────────────────────────────

class MOQIn(BaseModel):
    moq: int = Field(ge=1)
    rate: Decimal = Field(ge=0)


class GroupAssign(BaseModel):
    groupid: Optional[int] = None


# ── Product groups ───────────────────────────────────────────

class GroupCreate(BaseModel):
    groupname: str
    description: str = ""
    is_active: int = 1


class GroupUpdate(BaseModel):
    groupname: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[int] = None


# ── Orders ───────────────────────────────────────────────────

class OrderIn(BaseModel):
    customer_code: str
    item_code: Optional[int] = None
    qty: Optional[int] = None
    rate: Optional[Decimal] = None
    amount: Optional[Decimal] = None
    status: Optional[str] = None
    transaction_id: Optional[str] = None
    address: Optional[str] = None
    delivery_charge: Optional[Decimal] = None
    email: Optional[str] = None


class OrderDetailIn(BaseModel):
    item_code: int
    qty: int
    rate: Optional[Decimal] = None
    amount: Optional[Decimal] = None
    delivery_charge: Optional[Decimal] = None


class OrderCreate(BaseModel):
    order: OrderIn
    details: List[OrderDetailIn] = []


class StatusUpdate(BaseModel):
    status: str


class BulkStatusUpdate(BaseModel):
    ids: List[int] = []
    status: str


class BulkCancel(BaseModel):
    ids: List[int] = []
    cancel: int = 1
