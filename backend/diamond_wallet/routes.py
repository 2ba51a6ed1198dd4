"""
Diamond Wallet API Routes

Endpoints (mounted under /api):
- GET /diamonds/actions - Action cost table
- GET /diamonds/packs - Purchasable diamond packs
- GET /diamonds/{user_id} - Balance (applies a due refill)
- POST /diamonds/{user_id}/consume - Spend diamonds on an action
- POST /diamonds/{user_id}/refill - Apply today's refill
- GET /diamonds/{user_id}/history - Transaction history
- POST /diamonds/{user_id}/grant - Credit diamonds (service only)
- POST /diamonds/{user_id}/purchase - Credit a diamond pack (service only)
- GET /diamonds/{user_id}/audit - Ledger consistency report (service only)
- DELETE /diamonds/{user_id} - Remove account on user deletion (service only)
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from database import get_db
from utils.auth import get_service_caller
from diamond_wallet.config import (
    ACTION_COSTS,
    ACTION_DESCRIPTIONS,
    DIAMOND_PACKS,
    HISTORY_DEFAULT_LIMIT,
    HISTORY_MAX_LIMIT,
)
from diamond_wallet.errors import InsufficientBalance, LedgerError
from diamond_wallet.ledger_engine import LedgerEngine
from diamond_wallet.models import (
    AuditReport,
    BalanceSnapshot,
    ConsumeRequest,
    ConsumeResult,
    GrantRequest,
    GrantResponse,
    HistoryResponse,
    PurchaseRequest,
    PurchaseResponse,
    RefillResult,
)

logger = logging.getLogger(__name__)

diamond_router = APIRouter(prefix="/diamonds", tags=["Diamonds"])

ERROR_STATUS = {
    "INSUFFICIENT_BALANCE": 402,
    "UNKNOWN_ACTION": 400,
    "UNKNOWN_PACK": 400,
    "INVALID_AMOUNT": 422,
    "STORAGE_UNAVAILABLE": 503,
    "NOT_FOUND": 500,
}


def get_ledger_engine() -> LedgerEngine:
    return LedgerEngine(get_db())


def to_http_error(error: LedgerError) -> HTTPException:
    """Map a ledger error to a response that never exposes internal text."""
    detail = {"error_code": error.error_code, "message": error.message}
    if isinstance(error, InsufficientBalance):
        detail["balance"] = error.balance
        detail["required"] = error.required

    status_code = ERROR_STATUS.get(error.error_code, 500)
    if status_code >= 500:
        logger.error(f"Diamond ledger error ({error.error_code}): {error.detail}")
    return HTTPException(status_code=status_code, detail=detail)


# ==================== CONFIGURATION ====================

@diamond_router.get("/actions")
async def get_action_costs():
    """Diamond cost per gated action."""
    return {
        "actions": ACTION_COSTS,
        "descriptions": ACTION_DESCRIPTIONS
    }


@diamond_router.get("/packs")
async def get_diamond_packs():
    """Diamond packs available for purchase."""
    return {
        "packs": [
            {
                "id": pack_id,
                **pack_info
            }
            for pack_id, pack_info in DIAMOND_PACKS.items()
        ],
        "currency": "JPY"
    }


# ==================== BALANCE ENDPOINTS ====================

@diamond_router.get("/{user_id}", response_model=BalanceSnapshot)
async def get_balance(user_id: str, engine: LedgerEngine = Depends(get_ledger_engine)):
    """
    Current balance and refill timing.

    Creates the account on first access and applies a due daily refill.
    """
    try:
        return await engine.get_balance(user_id)
    except LedgerError as e:
        raise to_http_error(e)


@diamond_router.post("/{user_id}/consume", response_model=ConsumeResult)
async def consume(
    user_id: str,
    request: ConsumeRequest,
    engine: LedgerEngine = Depends(get_ledger_engine)
):
    """
    Spend diamonds for an action.

    Returns 402 with the authoritative balance when the balance is too low.
    Resending the same idempotency_key never charges twice.
    """
    try:
        result = await engine.consume(user_id, request.action, request.idempotency_key)
    except LedgerError as e:
        raise to_http_error(e)

    if not result.ok:
        raise to_http_error(InsufficientBalance(result.balance, engine.cost_of(request.action)))

    return result


@diamond_router.post("/{user_id}/refill", response_model=RefillResult)
async def refill(user_id: str, engine: LedgerEngine = Depends(get_ledger_engine)):
    """Apply today's refill if it has not been used yet."""
    try:
        return await engine.refill(user_id)
    except LedgerError as e:
        raise to_http_error(e)


@diamond_router.get("/{user_id}/history", response_model=HistoryResponse)
async def get_history(
    user_id: str,
    limit: int = Query(HISTORY_DEFAULT_LIMIT, ge=1, le=HISTORY_MAX_LIMIT),
    engine: LedgerEngine = Depends(get_ledger_engine)
):
    """Balance-affecting events, newest first."""
    try:
        transactions = await engine.history(user_id, limit)
    except LedgerError as e:
        raise to_http_error(e)

    return HistoryResponse(transactions=transactions, count=len(transactions))


# ==================== SERVICE ENDPOINTS ====================

@diamond_router.post("/{user_id}/grant", response_model=GrantResponse)
async def grant(
    user_id: str,
    request: GrantRequest,
    caller: dict = Depends(get_service_caller),
    engine: LedgerEngine = Depends(get_ledger_engine)
):
    """Credit diamonds from a purchase flow or a manual grant."""
    details = {"price_context": request.price_context} if request.price_context else {}
    details["granted_by"] = caller["sub"]

    try:
        balance = await engine.grant(
            user_id,
            request.amount,
            kind=request.kind,
            reason=request.reason,
            idempotency_key=request.idempotency_key,
            details=details
        )
    except LedgerError as e:
        raise to_http_error(e)

    return GrantResponse(user_id=user_id, balance=balance)


@diamond_router.post("/{user_id}/purchase", response_model=PurchaseResponse)
async def purchase(
    user_id: str,
    request: PurchaseRequest,
    caller: dict = Depends(get_service_caller),
    engine: LedgerEngine = Depends(get_ledger_engine)
):
    """
    Credit a verified diamond pack purchase.

    Receipt verification happens upstream; purchase_reference makes
    redelivery idempotent.
    """
    try:
        balance = await engine.purchase_pack(user_id, request.pack_id, request.purchase_reference)
    except LedgerError as e:
        raise to_http_error(e)

    logger.info(f"Purchase {request.purchase_reference} ({request.pack_id}) reconciled for user {user_id}")
    return PurchaseResponse(
        user_id=user_id,
        pack_id=request.pack_id,
        diamonds=DIAMOND_PACKS[request.pack_id]["diamonds"],
        balance=balance
    )


@diamond_router.get("/{user_id}/audit", response_model=AuditReport)
async def audit(
    user_id: str,
    caller: dict = Depends(get_service_caller),
    engine: LedgerEngine = Depends(get_ledger_engine)
):
    """Recompute the balance from the transaction log."""
    try:
        return await engine.audit(user_id)
    except LedgerError as e:
        raise to_http_error(e)


@diamond_router.delete("/{user_id}")
async def delete_account(
    user_id: str,
    caller: dict = Depends(get_service_caller),
    engine: LedgerEngine = Depends(get_ledger_engine)
):
    """Remove the account and its history when the user is deleted."""
    try:
        deleted = await engine.delete_account(user_id)
    except LedgerError as e:
        raise to_http_error(e)

    return {
        "success": True,
        "deleted": deleted
    }
