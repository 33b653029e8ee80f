import json
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from core.auth import get_current_admin
from core.db import get_db
from core.logging import get_logger
from schemas.payment import (
    GatewayResult,
    ManualPaymentCreate,
    PaymentCreate,
    PaymentInitRequest,
    PaymentInitResponse,
    PaymentOut,
    PaymentRefundRequest,
    PaymentStatusUpdate,
)
from services import payments as payment_service
from services.gateway import PAYSTACK_SIGNATURE_HEADER, PaymentGateway, get_gateway, verify_paystack_signature

router = APIRouter(prefix="/payments", tags=["payments"])
admin_only = [Depends(get_current_admin)]
logger = get_logger(__name__)


@router.post("/", response_model=PaymentOut, status_code=201)
def create_payment(data: PaymentCreate, db: Session = Depends(get_db)):
    return payment_service.create_payment(db, data.model_dump())


@router.post("/init", response_model=PaymentInitResponse, status_code=201)
def init_payment(
    data: PaymentInitRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    payment, result = payment_service.initialize_payment(db, gateway, data.order_id, data.callback_url)
    return {
        "payment": payment,
        "authorization_url": result.authorization_url if result else None,
        "access_code": result.access_code if result else None,
    }


@router.post("/{transaction_id}/confirm", response_model=PaymentOut)
def confirm_payment(
    transaction_id: str,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    # The outcome always comes from the gateway, never from the caller
    return payment_service.verify_with_gateway(db, gateway, transaction_id)


@router.post("/webhook/paystack")
async def paystack_webhook(
    request: Request,
    signature: Optional[str] = Header(default=None, alias=PAYSTACK_SIGNATURE_HEADER),
    db: Session = Depends(get_db),
):
    body = await request.body()
    if not verify_paystack_signature(body, signature):
        logger.warning("paystack_webhook_rejected", has_signature=signature is not None)
        raise HTTPException(status_code=401, detail="Invalid signature")
    try:
        event = json.loads(body)
    except ValueError:
        event = None
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid event body")
    payment = await run_in_threadpool(payment_service.apply_paystack_event, db, event)
    if payment is None:
        return {"status": "ignored"}
    return {"status": "processed", "transaction_id": payment.transaction_id, "payment_status": payment.status}


@router.post("/manual", response_model=PaymentOut, status_code=201, dependencies=admin_only)
def create_manual_payment(data: ManualPaymentCreate, db: Session = Depends(get_db)):
    return payment_service.create_payment(db, data.model_dump())


@router.post("/{transaction_id}/result", response_model=PaymentOut, dependencies=admin_only)
def record_gateway_result(transaction_id: str, result: GatewayResult, db: Session = Depends(get_db)):
    return payment_service.confirm_payment(db, transaction_id, result)


@router.get("/", response_model=List[PaymentOut], dependencies=admin_only)
def list_payments(
    order_id: Optional[int] = None,
    status: Optional[str] = None,
    user_id: Optional[int] = None,
    payment_provider: Optional[str] = None,
    db: Session = Depends(get_db),
):
    return payment_service.list_payments(
        db, order_id=order_id, status=status, user_id=user_id, payment_provider=payment_provider
    )


@router.get("/failed", response_model=List[PaymentOut], dependencies=admin_only)
def list_failed_payments(limit: int = 100, db: Session = Depends(get_db)):
    return payment_service.list_failed_payments(db, limit=limit)


@router.get("/{payment_id}", response_model=PaymentOut, dependencies=admin_only)
def get_payment(payment_id: int, db: Session = Depends(get_db)):
    return payment_service.get_payment(db, payment_id)


@router.post("/{payment_id}/status", response_model=PaymentOut, dependencies=admin_only)
def update_payment_status(payment_id: int, data: PaymentStatusUpdate, db: Session = Depends(get_db)):
    return payment_service.update_payment_status(db, payment_id, data.status, data.gateway_response, data.error)


@router.post("/{payment_id}/refund", response_model=PaymentOut, dependencies=admin_only)
def refund_payment(payment_id: int, data: PaymentRefundRequest, db: Session = Depends(get_db)):
    return payment_service.refund_payment(db, payment_id, data.amount, data.reason)


@router.post("/{payment_id}/retry", response_model=PaymentOut, dependencies=admin_only)
def retry_payment(payment_id: int, db: Session = Depends(get_db)):
    return payment_service.retry_payment(db, payment_id)


@router.delete("/{payment_id}", status_code=204, dependencies=admin_only)
def delete_payment(payment_id: int, db: Session = Depends(get_db)):
    payment_service.delete_payment(db, payment_id)
    return Response(status_code=204)
