import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models as M
from circulation import overdue_days
from db import Settings, settings, transaction
from errors import LibraryError, NotFound, InvalidState, AlreadyReturned, Rejected, \
    InventoryCorruption, Internal
from fines import FineService
from repositories import BookRepo, LoanRepo, Clock, utcnow

logger = logging.getLogger(__name__)

BOOK_CONDITIONS = ("new", "good", "fair", "poor")

@dataclass
class Inspection:
    new_condition: str
    damaged: bool = False
    damage_description: Optional[str] = None

@dataclass
class ReturnResult:
    success: bool
    message: str
    loan: M.Loan
    overdue_days: int = 0
    fines: List[M.Fine] = field(default_factory=list)
    deposit_refund: Decimal = Decimal("0.00")

    @property
    def fine(self) -> Optional[M.Fine]:
        # the damage fine when there is one, otherwise the overdue fine
        return self.fines[-1] if self.fines else None

@dataclass
class ReturnPreview:
    loan: M.Loan
    overdue_days: int
    is_overdue: bool
    potential_fine: Decimal
    deposit_refund: Decimal

class ReturnService:
    def __init__(self, db: Session, cfg: Settings = settings, clock: Clock = utcnow) -> None:
        self.db = db
        self.cfg = cfg
        self.clock = clock
        self.books = BookRepo(db)
        self.loans = LoanRepo(db)
        self.fine_engine = FineService(db, cfg, clock)

    def process_return(self, loan_id: int, inspection: Inspection) -> ReturnResult:
        """Fines are issued first, then the loan is claimed with a compare-and-swap
        on its state; a losing concurrent return leaves nothing behind."""
        if inspection.new_condition not in BOOK_CONDITIONS:
            raise Rejected(f"unknown book condition '{inspection.new_condition}'", code="invalid_condition")

        now = self.clock()
        try:
            with transaction(self.db):
                loan = self.loans.get_with_book(loan_id)
                if loan is None:
                    raise NotFound("loan not found")
                if loan.state == "returned":
                    raise AlreadyReturned("loan was already returned")
                if loan.state not in M.OPEN_LOAN_STATES:
                    raise InvalidState(f"a {loan.state} loan cannot be returned")

                fines = []
                days = overdue_days(loan, now)
                if days > 0:
                    fines.append(self.fine_engine.issue_overdue_fine(loan, days, on_return=True))
                if inspection.damaged:
                    fines.append(self.fine_engine.issue_damage_fine(
                        loan,
                        self.cfg.RETURN_DAMAGE_PERCENT_OF_PRICE,
                        inspection.damage_description or "Unspecified damage",
                    ))

                loan.book.condition = inspection.new_condition

                refund = M.money(0)
                if loan.kind == "rental" and not inspection.damaged:
                    refund = M.money(loan.deposit or 0)

                if not self.loans.transition(loan, M.OPEN_LOAN_STATES,
                                             state="returned", returned_at=now):
                    raise AlreadyReturned("loan was already returned")
                if not self.books.put_back_copy(loan.book):
                    raise InventoryCorruption(
                        f"inventory of book {loan.book_id} is inconsistent; return aborted")
        except LibraryError as exc:
            if exc.is_defect:
                logger.error("return of loan %s failed: %s", loan_id, exc.message)
            raise
        except SQLAlchemyError as exc:
            logger.exception("return of loan %s failed", loan_id)
            raise Internal("could not process the return") from exc

        self.db.refresh(loan)
        logger.info("loan %s returned: overdue_days=%s fines=%s refund=%s",
                    loan.loan_id, days, [f.fine_id for f in fines], refund)
        return ReturnResult(
            success=True,
            message="return processed",
            loan=loan,
            overdue_days=days,
            fines=fines,
            deposit_refund=refund,
        )

    def preview_return(self, loan_id: int) -> ReturnPreview:
        loan = self.loans.get_with_book(loan_id)
        if loan is None:
            raise NotFound("loan not found")
        days = overdue_days(loan, self.clock())
        refund = loan.deposit if loan.kind == "rental" and loan.state in M.OPEN_LOAN_STATES else 0
        return ReturnPreview(
            loan=loan,
            overdue_days=days,
            is_overdue=days > 0,
            potential_fine=M.money(days * Decimal(str(self.cfg.OVERDUE_DAILY_RATE))),
            deposit_refund=M.money(refund or 0),
        )
