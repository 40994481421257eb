import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.orm import Session, joinedload

import models as M

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

def utcnow() -> datetime:
    # naive UTC, as stored in the DateTime columns
    return datetime.now(timezone.utc).replace(tzinfo=None)

class BookRepo:
    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, book_id: int) -> Optional[M.Book]:
        return self.db.get(M.Book, book_id)

    def find(self, **filters) -> List[M.Book]:
        q = select(M.Book).filter_by(**filters).order_by(M.Book.book_id)
        return list(self.db.scalars(q))

    def add(self, book: M.Book) -> M.Book:
        self.db.add(book)
        self.db.flush()
        return book

    def _counter_update(self, book: M.Book, *conditions, **values) -> bool:
        self.db.flush()
        stmt = (
            update(M.Book)
            .where(M.Book.book_id == book.book_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        ok = self.db.execute(stmt).rowcount == 1
        self.db.refresh(book)
        return ok

    # counters only move through conditional updates; a False return means
    # the post-condition would not have held
    def take_copy(self, book: M.Book) -> bool:
        return self._counter_update(
            book,
            M.Book.is_active.is_(True),
            M.Book.available_copies > 0,
            available_copies=M.Book.available_copies - 1,
            on_loan_copies=M.Book.on_loan_copies + 1,
        )

    def put_back_copy(self, book: M.Book) -> bool:
        return self._counter_update(
            book,
            M.Book.on_loan_copies > 0,
            M.Book.available_copies < M.Book.total_copies,
            available_copies=M.Book.available_copies + 1,
            on_loan_copies=M.Book.on_loan_copies - 1,
        )

    def write_off_copy(self, book: M.Book) -> bool:
        return self._counter_update(
            book,
            M.Book.on_loan_copies > 0,
            M.Book.total_copies > 0,
            on_loan_copies=M.Book.on_loan_copies - 1,
            total_copies=M.Book.total_copies - 1,
        )

class PatronRepo:
    def __init__(self, db: Session, clock: Clock) -> None:
        self.db = db
        self.clock = clock

    def _loaded(self, patron: Optional[M.Patron]) -> Optional[M.Patron]:
        # bans expire lazily, on the next load of the patron
        if patron is not None and patron.lift_expired_ban(self.clock()):
            self.db.flush()
            logger.info("patron %s ban expired; reinstated", patron.patron_id)
        return patron

    def get(self, patron_id: int) -> Optional[M.Patron]:
        return self._loaded(self.db.get(M.Patron, patron_id))

    def get_by_email(self, email: str) -> Optional[M.Patron]:
        q = select(M.Patron).where(M.Patron.email == email.strip().lower())
        return self._loaded(self.db.scalar(q))

    def find(self, ref) -> Optional[M.Patron]:
        """Look a patron up by numeric id or by email."""
        if isinstance(ref, int) or (isinstance(ref, str) and ref.isdigit()):
            return self.get(int(ref))
        return self.get_by_email(ref)

    def add(self, patron: M.Patron) -> M.Patron:
        self.db.add(patron)
        self.db.flush()
        return patron

    def ban(self, patron_id: int, reason: str, until: datetime) -> bool:
        self.db.flush()
        stmt = (
            update(M.Patron)
            .where(M.Patron.patron_id == patron_id)
            .values(is_banned=True, ban_reason=reason, ban_expires_at=until)
            .execution_options(synchronize_session=False)
        )
        ok = self.db.execute(stmt).rowcount == 1
        patron = self.db.get(M.Patron, patron_id)
        if patron is not None:
            self.db.refresh(patron)
        return ok

class LoanRepo:
    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, loan_id: int) -> Optional[M.Loan]:
        return self.db.get(M.Loan, loan_id)

    def get_with_book(self, loan_id: int) -> Optional[M.Loan]:
        q = (
            select(M.Loan)
            .options(joinedload(M.Loan.book), joinedload(M.Loan.patron))
            .where(M.Loan.loan_id == loan_id)
        )
        return self.db.scalar(q)

    def get_for_update(self, loan_id: int) -> Optional[M.Loan]:
        # row lock on MySQL; reloads whatever the session already holds
        q = (
            select(M.Loan)
            .options(joinedload(M.Loan.book, innerjoin=True))
            .where(M.Loan.loan_id == loan_id)
            .with_for_update(of=M.Loan)
            .execution_options(populate_existing=True)
        )
        return self.db.scalar(q)

    def add(self, loan: M.Loan) -> M.Loan:
        self.db.add(loan)
        self.db.flush()
        return loan

    def list_by_patron(self, patron_id: int) -> List[M.Loan]:
        q = (
            select(M.Loan)
            .options(joinedload(M.Loan.book))
            .where(M.Loan.patron_id == patron_id)
            .order_by(M.Loan.borrowed_at.desc(), M.Loan.loan_id.desc())
        )
        return list(self.db.scalars(q).unique())

    def count_open_by_patron(self, patron_id: int) -> int:
        q = select(func.count(M.Loan.loan_id)).where(
            M.Loan.patron_id == patron_id, M.Loan.state.in_(M.OPEN_LOAN_STATES)
        )
        return self.db.scalar(q) or 0

    def count_renewals(self, loan_id: int) -> int:
        q = select(func.count(M.Renewal.renewal_id)).where(M.Renewal.loan_id == loan_id)
        return self.db.scalar(q) or 0

    def list_active_past_due(self, now: datetime) -> List[M.Loan]:
        q = (
            select(M.Loan)
            .options(joinedload(M.Loan.book))
            .where(M.Loan.state == "active", M.Loan.due_at < now)
            .order_by(M.Loan.due_at, M.Loan.loan_id)
        )
        return list(self.db.scalars(q).unique())

    def transition(self, loan: M.Loan, from_states, **values) -> bool:
        """Compare-and-swap on the loan state."""
        self.db.flush()
        stmt = (
            update(M.Loan)
            .where(M.Loan.loan_id == loan.loan_id, M.Loan.state.in_(tuple(from_states)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        ok = self.db.execute(stmt).rowcount == 1
        self.db.refresh(loan)
        return ok

class FineRepo:
    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, fine_id: int) -> Optional[M.Fine]:
        return self.db.get(M.Fine, fine_id)

    def get_for_update(self, fine_id: int) -> Optional[M.Fine]:
        # row lock on MySQL; sqlite serializes writers anyway
        return self.db.get(M.Fine, fine_id, with_for_update=True)

    def add(self, fine: M.Fine) -> M.Fine:
        self.db.add(fine)
        self.db.flush()
        return fine

    def list_by_patron(self, patron_id: int, state: Optional[str] = None) -> List[M.Fine]:
        q = select(M.Fine).where(M.Fine.patron_id == patron_id)
        if state:
            q = q.where(M.Fine.state == state)
        return list(self.db.scalars(q.order_by(M.Fine.fine_id)))

    def has_pending(self, patron_id: int) -> bool:
        return self.count_pending(patron_id) > 0

    def count_pending(self, patron_id: int) -> int:
        q = select(func.count(M.Fine.fine_id)).where(
            M.Fine.patron_id == patron_id, M.Fine.state == "pending"
        )
        return self.db.scalar(q) or 0

    def list_pending_past_due(self, now: datetime) -> List[M.Fine]:
        q = (
            select(M.Fine)
            .where(M.Fine.state == "pending", M.Fine.due_at < now)
            .order_by(M.Fine.fine_id)
        )
        return list(self.db.scalars(q))

    def patrons_with_pending_over(self, threshold: int) -> List[int]:
        q = (
            select(M.Fine.patron_id)
            .where(M.Fine.state == "pending")
            .group_by(M.Fine.patron_id)
            .having(func.count(M.Fine.fine_id) > threshold)
            .order_by(M.Fine.patron_id)
        )
        return list(self.db.scalars(q))

class PaymentRepo:
    def __init__(self, db: Session) -> None:
        self.db = db

    def add(self, payment: M.Payment) -> M.Payment:
        self.db.add(payment)
        self.db.flush()
        return payment

    def total_for_fines(self, fine_ids: List[int]) -> Decimal:
        if not fine_ids:
            return Decimal("0.00")
        q = select(func.coalesce(func.sum(M.Payment.amount), 0)).where(M.Payment.fine_id.in_(fine_ids))
        return Decimal(str(self.db.scalar(q)))
