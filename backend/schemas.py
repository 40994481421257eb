from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field
from typing import Optional, List, Literal

Role = Literal["admin", "user"]
Condition = Literal["new", "good", "fair", "poor"]
LoanKind = Literal["loan", "rental"]

class ErrorOut(BaseModel):
    success: bool = False
    error: str
    code: str
    message: str

class PatronIn(BaseModel):
    email: str
    name: str
    role: Role = "user"

class PatronOut(BaseModel):
    patron_id: int
    email: str
    name: str
    role: str
    is_active: bool
    is_banned: bool
    ban_reason: Optional[str] = None
    ban_expires_at: Optional[datetime] = None
    loan_ids: List[int] = []
    fine_ids: List[int] = []

    class Config:
        from_attributes = True

class BookIn(BaseModel):
    isbn: Optional[str] = None
    title: str
    author: str
    publish_year: Optional[int] = None
    language: Optional[str] = None
    genres: List[str] = []
    condition: Condition = "new"
    copies: int = Field(default=1, ge=0)
    purchase_price: Decimal = Field(default=Decimal("0"), ge=0)
    daily_rental_rate: Decimal = Field(default=Decimal("0"), ge=0)
    rental_deposit: Decimal = Field(default=Decimal("0"), ge=0)

class BookOut(BaseModel):
    book_id: int
    isbn: Optional[str] = None
    title: str
    author: str
    publish_year: Optional[int] = None
    language: Optional[str] = None
    genres: List[str] = []
    condition: str
    is_active: bool
    total_copies: int
    available_copies: int
    on_loan_copies: int
    reserved_copies: int
    purchase_price: Decimal
    daily_rental_rate: Decimal
    rental_deposit: Decimal

    class Config:
        from_attributes = True

class InventoryIn(BaseModel):
    total_copies: Optional[int] = None
    reserved_copies: Optional[int] = None

class LoanIn(BaseModel):
    # users borrow for themselves (taken from the token); admins name the patron
    patron_id: Optional[int] = None
    email: Optional[str] = None
    book_id: int
    kind: LoanKind = "loan"
    duration_days: Optional[int] = Field(default=None, gt=0)

class RenewIn(BaseModel):
    extra_days: Optional[int] = Field(default=None, gt=0)

class NotesIn(BaseModel):
    notes: str

class RenewalOut(BaseModel):
    renewed_at: datetime
    extra_days: int
    extra_cost: Decimal

    class Config:
        from_attributes = True

class LoanOut(BaseModel):
    loan_id: int
    patron_id: int
    book_id: int
    kind: str
    state: str
    borrowed_at: datetime
    due_at: datetime
    returned_at: Optional[datetime] = None
    rental_fee: Decimal
    deposit: Decimal
    fine_amount: Decimal
    total_cost: Decimal
    renewals: List[RenewalOut] = []
    notes: Optional[str] = None
    book: Optional[BookOut] = None

    class Config:
        from_attributes = True

class LoanStatusOut(BaseModel):
    loan: LoanOut
    overdue_days: int

class FineOut(BaseModel):
    fine_id: int
    patron_id: int
    loan_id: int
    kind: str
    amount: Decimal
    state: str
    issued_at: datetime
    due_at: datetime
    paid_at: Optional[datetime] = None
    overdue_days: Optional[int] = None
    description: str

    class Config:
        from_attributes = True

class ReturnIn(BaseModel):
    loan_id: int
    new_condition: Condition
    damaged: bool = False
    damage_description: Optional[str] = None

class ReturnOut(BaseModel):
    success: bool
    message: str
    loan: LoanOut
    overdue_days: int
    fine: Optional[FineOut] = None
    fines: List[FineOut] = []
    deposit_refund: Decimal

    class Config:
        from_attributes = True

class ReturnPreviewOut(BaseModel):
    loan: LoanOut
    overdue_days: int
    is_overdue: bool
    potential_fine: Decimal
    deposit_refund: Decimal

    class Config:
        from_attributes = True

class PayIn(BaseModel):
    fine_id: int
    amount: Decimal = Field(gt=0)
    method: Literal["cash", "card", "transfer", "other"] = "cash"

class DamageFineIn(BaseModel):
    loan_id: int
    kind: Literal["damage", "loss"]

class FineReportOut(BaseModel):
    pending: List[FineOut]
    paid: List[FineOut]
    total_pending: Decimal
    total_paid: Decimal

    class Config:
        from_attributes = True

class SweepOut(BaseModel):
    ran_at: datetime
    overdue_loans: List[int]
    fines_issued: List[int]
    fines_escalated: List[int]
    patrons_banned: List[int]

    class Config:
        from_attributes = True
