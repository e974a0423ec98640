from fastapi import APIRouter, Depends

from payshare.api.deps import get_current_user, get_ledger
from payshare.api.v1.auth import user_to_dict
from payshare.ledger import LedgerStore
from payshare.schemas import User

router = APIRouter()


@router.get("/me")
async def get_current_user_info(current_user: User = Depends(get_current_user)):
    return {"ok": True, "user": user_to_dict(current_user)}


@router.get("/balance")
async def get_balance(current_user: User = Depends(get_current_user)):
    return {"ok": True, "balance": current_user.balance}


@router.get("/earnings")
async def get_earnings(
    ledger: LedgerStore = Depends(get_ledger),
    current_user: User = Depends(get_current_user),
):
    downloads = await ledger.list_user_downloads(current_user.id)
    return {
        "ok": True,
        "total": sum(d.earnings for d in downloads),
        "downloads": [
            {
                "id": d.id,
                "file_id": d.file_id,
                "earnings": d.earnings,
                "created_at": d.created_at.isoformat(),
            }
            for d in downloads
        ],
    }
