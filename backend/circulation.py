import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

import models as M
from db import Settings, settings, transaction
from errors import NotFound, InvalidState, Rejected, LimitExceeded
from repositories import BookRepo, PatronRepo, LoanRepo, FineRepo, Clock, utcnow

logger = logging.getLogger(__name__)

LOAN_KINDS = ("loan", "rental")
DAY = timedelta(days=1)

def overdue_days(loan: M.Loan, now: datetime) -> int:
    """Whole days (rounded up) the loan is past due; 0 once returned."""
    if loan.state == "returned" or now <= loan.due_at:
        return 0
    return math.ceil((now - loan.due_at) / DAY)

@dataclass
class LoanStatus:
    loan: M.Loan
    overdue_days: int

class CirculationService:
    def __init__(self, db: Session, cfg: Settings = settings, clock: Clock = utcnow) -> None:
        self.db = db
        self.cfg = cfg
        self.clock = clock
        self.books = BookRepo(db)
        self.patrons = PatronRepo(db, clock)
        self.loans = LoanRepo(db)
        self.fines = FineRepo(db)

    def check_eligibility(self, patron: M.Patron) -> None:
        if not patron.is_active:
            raise Rejected("patron account is not active", code="patron_inactive")
        if patron.is_banned:
            reason = f": {patron.ban_reason}" if patron.ban_reason else ""
            raise Rejected(f"patron is banned{reason}", code="patron_banned")
        if self.fines.has_pending(patron.patron_id):
            raise Rejected("patron has pending fines", code="pending_fines")
        limit = self.cfg.MAX_ACTIVE_LOANS
        if self.loans.count_open_by_patron(patron.patron_id) >= limit:
            raise LimitExceeded(f"patron has reached the limit of {limit} active loans",
                                code="loan_limit")

    def create_loan(self, patron_ref, book_id: int, kind: str = "loan",
                    duration_days: Optional[int] = None) -> M.Loan:
        if kind not in LOAN_KINDS:
            raise Rejected(f"unknown loan kind '{kind}'", code="invalid_kind")
        days = self.cfg.DEFAULT_LOAN_DAYS if duration_days is None else duration_days
        if days <= 0:
            raise Rejected("loan duration must be at least one day", code="invalid_duration")

        now = self.clock()
        with transaction(self.db):
            patron = self.patrons.find(patron_ref)
            if patron is None:
                raise NotFound("patron not found")
            self.check_eligibility(patron)

            book = self.books.get(book_id)
            if book is None:
                raise NotFound("book not found")
            if not book.is_available() or not self.books.take_copy(book):
                raise Rejected("book not available", code="book_unavailable")

            rental_fee = deposit = M.money(0)
            if kind == "rental":
                rental_fee = M.money(book.daily_rental_rate * days)
                deposit = M.money(book.rental_deposit)

            loan = M.Loan(
                patron=patron,
                book=book,
                kind=kind,
                state="active",
                borrowed_at=now,
                due_at=now + timedelta(days=days),
                rental_fee=rental_fee,
                deposit=deposit,
                fine_amount=M.money(0),
            )
            loan.recompute_total()
            self.loans.add(loan)

        self.db.refresh(loan)
        logger.info("loan %s created: patron=%s book=%s kind=%s due=%s",
                    loan.loan_id, loan.patron_id, loan.book_id, kind, loan.due_at.isoformat())
        return loan

    def renew_loan(self, loan_id: int, extra_days: Optional[int] = None) -> M.Loan:
        days = self.cfg.DEFAULT_RENEWAL_DAYS if extra_days is None else extra_days
        if days <= 0:
            raise Rejected("renewal must extend the loan by at least one day", code="invalid_duration")

        now = self.clock()
        with transaction(self.db):
            loan = self.loans.get_for_update(loan_id)
            if loan is None:
                raise NotFound("loan not found")
            if loan.state != "active":
                raise InvalidState("only active loans can be renewed")
            if self.loans.count_renewals(loan.loan_id) >= self.cfg.MAX_RENEWALS:
                raise LimitExceeded("renewal limit reached", code="renewal_limit")

            extra_cost = M.money(0)
            if loan.kind == "rental":
                extra_cost = M.money(loan.book.daily_rental_rate * days)

            loan.due_at = loan.due_at + timedelta(days=days)
            loan.renewals.append(M.Renewal(renewed_at=now, extra_days=days, extra_cost=extra_cost))
            if extra_cost > 0:
                loan.rental_fee = M.money(loan.rental_fee + extra_cost)
            loan.recompute_total()

        self.db.refresh(loan)
        logger.info("loan %s renewed (%s/%s) by %s days, due=%s", loan.loan_id,
                    len(loan.renewals), self.cfg.MAX_RENEWALS, days, loan.due_at.isoformat())
        return loan

    def promote_if_overdue(self, loan: M.Loan, now: datetime) -> bool:
        """Persist ``active -> overdue`` once the loan is past due."""
        if loan.state != "active" or now <= loan.due_at:
            return False
        if self.loans.transition(loan, ("active",), state="overdue"):
            logger.info("loan %s is overdue", loan.loan_id)
            return True
        return False

    def get_loan_status(self, loan_id: int) -> LoanStatus:
        # a read with a side effect: an expired active loan is promoted here
        now = self.clock()
        with transaction(self.db):
            loan = self.loans.get_with_book(loan_id)
            if loan is None:
                raise NotFound("loan not found")
            self.promote_if_overdue(loan, now)
        return LoanStatus(loan=loan, overdue_days=overdue_days(loan, now))

    def get_loan(self, loan_id: int) -> M.Loan:
        loan = self.loans.get_with_book(loan_id)
        if loan is None:
            raise NotFound("loan not found")
        return loan

    def list_patron_loans(self, patron_ref) -> List[M.Loan]:
        with transaction(self.db):
            patron = self.patrons.find(patron_ref)
            if patron is None:
                raise NotFound("patron not found")
            return self.loans.list_by_patron(patron.patron_id)

    def annotate_loan(self, loan_id: int, notes: str) -> M.Loan:
        with transaction(self.db):
            loan = self.loans.get(loan_id)
            if loan is None:
                raise NotFound("loan not found")
            loan.notes = notes.strip() or None
        self.db.refresh(loan)
        return loan
