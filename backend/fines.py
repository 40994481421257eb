"""Fine engine: issuing, paying, escalating and reporting fines.

Two damage schedules coexist.  The return desk charges
``RETURN_DAMAGE_PERCENT_OF_PRICE`` when a returned copy is found damaged,
while a damage report filed on its own charges ``DAMAGE_PERCENT_OF_PRICE``
(and a loss ``LOSS_PERCENT_OF_PRICE``).  Both are settings so the rates can
be reconciled without code changes.
"""
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

import models as M
from db import Settings, settings, transaction
from errors import NotFound, InvalidState, Rejected, OverPayment, InventoryCorruption
from repositories import BookRepo, PatronRepo, LoanRepo, FineRepo, PaymentRepo, Clock, utcnow

logger = logging.getLogger(__name__)

DAMAGE_KINDS = ("damage", "loss")
PAYMENT_METHODS = ("cash", "card", "transfer", "other")
BAN_REASON = "multiple pending fines"

@dataclass
class FineReport:
    pending: List[M.Fine]
    paid: List[M.Fine]
    total_pending: Decimal
    total_paid: Decimal

@dataclass
class EscalationResult:
    escalated: List[M.Fine] = field(default_factory=list)
    banned_patrons: List[int] = field(default_factory=list)

class FineService:
    def __init__(self, db: Session, cfg: Settings = settings, clock: Clock = utcnow) -> None:
        self.db = db
        self.cfg = cfg
        self.clock = clock
        self.books = BookRepo(db)
        self.patrons = PatronRepo(db, clock)
        self.loans = LoanRepo(db)
        self.fines = FineRepo(db)
        self.payments = PaymentRepo(db)

    # --- issuing (callers own the transaction) ---
    def _issue(self, loan: M.Loan, kind: str, amount, description: str,
               overdue_days: Optional[int] = None) -> M.Fine:
        now = self.clock()
        amount = M.money(amount)
        # a zero fine is settled on issue
        settled = amount <= 0
        fine = M.Fine(
            patron_id=loan.patron_id,
            loan_id=loan.loan_id,
            kind=kind,
            amount=M.money(0) if settled else amount,
            state="paid" if settled else "pending",
            paid_at=now if settled else None,
            issued_at=now,
            due_at=now + timedelta(days=self.cfg.FINE_DUE_DAYS),
            overdue_days=overdue_days,
            description=description,
        )
        self.fines.add(fine)
        loan.fine_amount = M.money((loan.fine_amount or 0) + fine.amount)
        logger.info("%s fine %s issued: patron=%s loan=%s amount=%s state=%s",
                    kind, fine.fine_id, fine.patron_id, loan.loan_id, fine.amount, fine.state)
        return fine

    def issue_overdue_fine(self, loan: M.Loan, days: int, on_return: bool = False,
                           cap_percent_of_price: Optional[float] = None) -> M.Fine:
        amount = M.money(days * Decimal(str(self.cfg.OVERDUE_DAILY_RATE)))
        if cap_percent_of_price is not None:
            cap = M.money(loan.book.purchase_price * Decimal(str(cap_percent_of_price)))
            amount = min(amount, cap)
        if on_return:
            description = f"Returned {days} day(s) late"
        else:
            description = f"{days} day(s) overdue on '{loan.book.title}'"
        return self._issue(loan, "overdue", amount, description, overdue_days=days)

    def issue_damage_fine(self, loan: M.Loan, percent_of_price: float, description: str) -> M.Fine:
        amount = loan.book.purchase_price * Decimal(str(percent_of_price))
        return self._issue(loan, "damage", amount, description)

    # --- standalone damage / loss report ---
    def issue_damage_or_loss_fine(self, loan_id: int, kind: str) -> M.Fine:
        if kind not in DAMAGE_KINDS:
            raise Rejected(f"unknown fine kind '{kind}'", code="invalid_kind")

        with transaction(self.db):
            loan = self.loans.get_with_book(loan_id)
            if loan is None:
                raise NotFound("loan not found")
            if loan.state == "lost":
                raise InvalidState("loan was already reported lost")

            title = loan.book.title
            if kind == "damage":
                fine = self.issue_damage_fine(loan, self.cfg.DAMAGE_PERCENT_OF_PRICE,
                                              f"Damage to the book '{title}'")
            else:
                if not self.loans.transition(loan, M.OPEN_LOAN_STATES, state="lost"):
                    raise InvalidState("only active or overdue loans can be reported lost")
                # the copy leaves the collection for good
                if not self.books.write_off_copy(loan.book):
                    raise InventoryCorruption(
                        f"inventory of book {loan.book_id} is inconsistent; loss not recorded")
                amount = loan.book.purchase_price * Decimal(str(self.cfg.LOSS_PERCENT_OF_PRICE))
                fine = self._issue(loan, "loss", amount, f"Loss of the book '{title}'")
                logger.info("loan %s marked lost", loan.loan_id)

        self.db.refresh(fine)
        return fine

    # --- settlement ---
    def pay_fine(self, fine_id: int, amount_paid, method: str = "cash") -> M.Fine:
        amount = M.money(amount_paid)
        if method not in PAYMENT_METHODS:
            raise Rejected(f"unknown payment method '{method}'", code="invalid_method")

        now = self.clock()
        with transaction(self.db):
            fine = self.fines.get_for_update(fine_id)
            if fine is None:
                raise NotFound("fine not found")
            if fine.state != "pending":
                raise InvalidState("only pending fines can be paid")
            if amount <= 0:
                raise Rejected("payment amount must be positive", code="invalid_amount")
            if amount > fine.amount:
                raise OverPayment(f"payment of {amount} exceeds the {fine.amount} owed")

            fine.amount = M.money(fine.amount - amount)
            self.payments.add(M.Payment(
                patron_id=fine.patron_id, fine_id=fine.fine_id,
                amount=amount, method=method, paid_at=now,
            ))
            if fine.amount <= 0:
                fine.amount = M.money(0)
                fine.state = "paid"
                fine.paid_at = now

        self.db.refresh(fine)
        logger.info("fine %s: %s paid, %s remaining (%s)", fine.fine_id, amount, fine.amount, fine.state)
        return fine

    # --- daily sweep step (caller owns the transaction) ---
    def escalate_overdue_fines(self) -> EscalationResult:
        now = self.clock()
        rate = Decimal(str(self.cfg.FINE_ESCALATION_RATE))
        result = EscalationResult()

        for fine in self.fines.list_pending_past_due(now):
            before = fine.amount
            fine.amount = M.money(fine.amount * (1 + rate))
            fine.description = f"{fine.description} (escalated {rate:.0%} for late payment)"
            result.escalated.append(fine)
            logger.info("fine %s escalated %s -> %s", fine.fine_id, before, fine.amount)

        # only patrons with a fine escalated in this run are considered
        late_payers = {f.patron_id for f in result.escalated}
        until = now + timedelta(days=self.cfg.BAN_DAYS)
        for patron_id in self.fines.patrons_with_pending_over(self.cfg.BAN_PENDING_FINES):
            if patron_id not in late_payers:
                continue
            if self.patrons.ban(patron_id, BAN_REASON, until):
                result.banned_patrons.append(patron_id)
                logger.info("patron %s banned until %s: %s", patron_id, until.isoformat(), BAN_REASON)
        return result

    # --- reporting ---
    def get_fine_report(self, patron_ref) -> FineReport:
        with transaction(self.db):
            patron = self.patrons.find(patron_ref)
            if patron is None:
                raise NotFound("patron not found")
            pending = self.fines.list_by_patron(patron.patron_id, state="pending")
            paid = self.fines.list_by_patron(patron.patron_id, state="paid")

        return FineReport(
            pending=pending,
            paid=paid,
            total_pending=M.money(sum((f.amount for f in pending), Decimal(0))),
            total_paid=M.money(self.payments.total_for_fines([f.fine_id for f in paid])),
        )
