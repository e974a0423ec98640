import hashlib
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from payshare.api.deps import get_app_settings, get_current_user, get_ledger
from payshare.config import Settings
from payshare.ledger import LedgerStore
from payshare.schemas import Payment, PaymentCreate, User

logger = logging.getLogger(__name__)

router = APIRouter()


class WithdrawRequest(BaseModel):
    amount: int = Field(gt=0)
    payment_method: str = Field(min_length=1, max_length=50)  # mobile_money, bank, ...
    details: Optional[dict] = None


class PayoutNotification(BaseModel):
    payment_id: int
    status: str
    transaction_id: Optional[str] = None
    sign: str


def payment_to_dict(payment: Payment) -> dict:
    return {
        "id": payment.id,
        "amount": payment.amount,
        "status": payment.status.value,
        "payment_method": payment.payment_method,
        "transaction_id": payment.transaction_id,
        "created_at": payment.created_at.isoformat(),
        "completed_at": payment.completed_at.isoformat() if payment.completed_at else None,
    }


def sign_notification(payment_id: int, status: str, transaction_id: Optional[str], secret: str) -> str:
    sign_string = f"{payment_id}:{status}:{transaction_id or ''}"
    return hmac.new(secret.encode(), sign_string.encode(), hashlib.sha256).hexdigest()


def verify_notification_sign(data: PayoutNotification, secret: str) -> bool:
    if not secret:
        return False
    expected_sign = sign_notification(data.payment_id, data.status, data.transaction_id, secret)
    return hmac.compare_digest(expected_sign.lower(), data.sign.lower())


@router.post("/withdraw")
async def withdraw(
    data: WithdrawRequest,
    ledger: LedgerStore = Depends(get_ledger),
    settings: Settings = Depends(get_app_settings),
    current_user: User = Depends(get_current_user),
):
    if data.amount < settings.MIN_PAYOUT_AMOUNT:
        raise HTTPException(status_code=400, detail=f"Minimum payout is {settings.MIN_PAYOUT_AMOUNT}")

    # InsufficientBalance from the ledger becomes a 400 in the app-level handler
    payment = await ledger.request_payout(
        PaymentCreate(
            user_id=current_user.id,
            amount=data.amount,
            payment_method=data.payment_method,
            details=data.details,
        )
    )
    logger.info(f"User {current_user.id} requested payout {payment.id} of {payment.amount}")
    return {"ok": True, "payment": payment_to_dict(payment)}


@router.get("/history")
async def payment_history(
    ledger: LedgerStore = Depends(get_ledger),
    current_user: User = Depends(get_current_user),
):
    payments = await ledger.list_user_payments(current_user.id)
    return {"ok": True, "payments": [payment_to_dict(p) for p in payments]}


@router.post("/notify")
async def payout_notify(
    data: PayoutNotification,
    ledger: LedgerStore = Depends(get_ledger),
    settings: Settings = Depends(get_app_settings),
):
    if not verify_notification_sign(data, settings.PAYOUT_WEBHOOK_SECRET):
        logger.warning(f"Payout notification for {data.payment_id} has a wrong sign")
        raise HTTPException(status_code=400, detail="Wrong sign")

    payment = await ledger.update_payment_status(data.payment_id, data.status, data.transaction_id)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")

    return {"ok": True, "payment": payment_to_dict(payment)}
