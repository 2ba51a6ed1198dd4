"""
Diamond Wallet Data Models

Pydantic models for ledger documents and request/response payloads.
Account and LedgerTransaction mirror the documents stored in MongoDB.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Literal


TransactionKind = Literal["consumption", "purchase", "refill", "grant"]


# ==================== ACCOUNT MODELS ====================

class Account(BaseModel):
    """One diamond balance record per user"""
    user_id: str
    balance: int = Field(..., ge=0)
    max_balance: int = Field(..., gt=0)
    initial_balance: int
    last_refill_at: str  # ISO datetime string (UTC)
    version: int = 0
    pending_transactions: List[dict] = Field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class BalanceSnapshot(BaseModel):
    """Response model for GetBalance"""
    user_id: str
    balance: int
    max_balance: int
    last_refill_at: str
    next_refill_at: str


# ==================== LEDGER MODELS ====================

class LedgerTransaction(BaseModel):
    """Immutable record of one balance-affecting event"""
    id: str
    user_id: str
    seq: int
    delta: int
    kind: TransactionKind
    reason: str
    idempotency_key: Optional[str] = None
    balance_after: int
    occurred_at: str  # ISO datetime string (UTC)
    details: Optional[dict] = None


class HistoryResponse(BaseModel):
    transactions: List[LedgerTransaction]
    count: int


class AuditReport(BaseModel):
    """Ledger consistency check for a single user"""
    user_id: str
    initial_balance: int
    delta_sum: int
    expected_balance: int
    balance: int
    transaction_count: int
    consistent: bool


# ==================== OPERATION RESULTS ====================

class ConsumeResult(BaseModel):
    """Outcome of a consume call"""
    ok: bool
    balance: int
    reason: Optional[str] = None
    error_code: Optional[str] = None
    transaction_id: Optional[str] = None
    replayed: bool = False


class RefillResult(BaseModel):
    applied: bool
    balance: int
    last_refill_at: str


# ==================== REQUEST MODELS ====================

class ConsumeRequest(BaseModel):
    """Request to spend diamonds on an action"""
    action: str = Field(..., description="Action tag: camera, viewResult, addUser, ...")
    idempotency_key: str = Field(..., min_length=1, max_length=128)


class GrantRequest(BaseModel):
    """Request to credit diamonds (purchase or manual credit)"""
    amount: int
    kind: Literal["purchase", "grant"] = "purchase"
    reason: str = "purchase"
    idempotency_key: Optional[str] = Field(None, max_length=128)
    price_context: Optional[dict] = None


class GrantResponse(BaseModel):
    user_id: str
    balance: int


class PurchaseRequest(BaseModel):
    """Request to credit a configured diamond pack"""
    pack_id: str = Field(..., description="Diamond pack ID: standard, value, or premium")
    purchase_reference: str = Field(..., min_length=1, max_length=128)


class PurchaseResponse(BaseModel):
    user_id: str
    pack_id: str
    diamonds: int
    balance: int
