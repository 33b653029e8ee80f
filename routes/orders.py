from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from core.auth import get_current_admin
from core.db import get_db
from schemas.order import (
    ItemRefundRequest,
    OrderCreate,
    OrderItemIn,
    OrderItemOut,
    OrderItemUpdate,
    OrderOut,
    OrderUpdate,
    StatusUpdate,
)
from services import orders as order_service

router = APIRouter(prefix="/orders", tags=["orders"])
admin_only = [Depends(get_current_admin)]


@router.post("/", response_model=OrderOut, status_code=201)
def create_order(data: OrderCreate, db: Session = Depends(get_db)):
    return order_service.create_order(db, data.model_dump())


@router.get("/number/{order_number}", response_model=OrderOut)
def get_order_by_number(order_number: str, email: str = Query(..., min_length=3), db: Session = Depends(get_db)):
    return order_service.get_order_for_customer(db, order_number, email)


@router.get("/", response_model=List[OrderOut], dependencies=admin_only)
def list_orders(
    status: Optional[str] = None,
    user_id: Optional[int] = None,
    guest_email: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return order_service.list_orders(db, status=status, user_id=user_id, guest_email=guest_email, limit=limit, offset=offset)


@router.get("/{order_id}", response_model=OrderOut, dependencies=admin_only)
def get_order(order_id: int, db: Session = Depends(get_db)):
    return order_service.get_order(db, order_id)


@router.patch("/{order_id}", response_model=OrderOut, dependencies=admin_only)
def update_order(order_id: int, data: OrderUpdate, db: Session = Depends(get_db)):
    return order_service.update_order(db, order_id, data.model_dump(exclude_unset=True))


@router.post("/{order_id}/status", response_model=OrderOut, dependencies=admin_only)
def update_order_status(order_id: int, data: StatusUpdate, db: Session = Depends(get_db)):
    return order_service.update_order_status(db, order_id, data.status, data.notes)


@router.post("/{order_id}/recalculate", response_model=OrderOut, dependencies=admin_only)
def recalculate_order(order_id: int, db: Session = Depends(get_db)):
    return order_service.recalculate_totals(db, order_id)


@router.delete("/{order_id}", status_code=204, dependencies=admin_only)
def delete_order(order_id: int, db: Session = Depends(get_db)):
    order_service.delete_order(db, order_id)
    return Response(status_code=204)


@router.get("/{order_id}/items", response_model=List[OrderItemOut], dependencies=admin_only)
def list_order_items(order_id: int, db: Session = Depends(get_db)):
    return order_service.list_order_items(db, order_id)


@router.post("/{order_id}/items", response_model=OrderItemOut, status_code=201, dependencies=admin_only)
def add_order_item(order_id: int, data: OrderItemIn, db: Session = Depends(get_db)):
    return order_service.add_order_item(db, order_id, data.model_dump())


@router.patch("/items/{item_id}", response_model=OrderItemOut, dependencies=admin_only)
def update_order_item(item_id: int, data: OrderItemUpdate, db: Session = Depends(get_db)):
    return order_service.update_order_item(db, item_id, data.model_dump(exclude_unset=True))


@router.post("/items/{item_id}/status", response_model=OrderItemOut, dependencies=admin_only)
def update_order_item_status(item_id: int, data: StatusUpdate, db: Session = Depends(get_db)):
    return order_service.update_order_item_status(db, item_id, data.status, data.notes)


@router.post("/items/{item_id}/refund", response_model=OrderItemOut, dependencies=admin_only)
def refund_order_item(item_id: int, data: ItemRefundRequest, db: Session = Depends(get_db)):
    return order_service.refund_order_item(db, item_id, data.quantity, data.amount, data.reason)


@router.delete("/items/{item_id}", status_code=204, dependencies=admin_only)
def delete_order_item(item_id: int, db: Session = Depends(get_db)):
    order_service.delete_order_item(db, item_id)
    return Response(status_code=204)
