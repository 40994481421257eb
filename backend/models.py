from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Enum, Text, Numeric, ForeignKey, Boolean,
    CheckConstraint, JSON
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from db import Base

Money = Numeric(12, 2)
CENT = Decimal("0.01")

def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)

# loan states that still hold a copy of the book
OPEN_LOAN_STATES = ("active", "overdue")

class Patron(Base):
    __tablename__ = "patron"
    patron_id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    email = Column(String(120), unique=True, nullable=False)
    name = Column(String(100), nullable=False)
    role = Column(Enum("admin", "user", name="patron_role"), nullable=False, default="user")

    is_active = Column(Boolean, nullable=False, default=True)
    is_banned = Column(Boolean, nullable=False, default=False)
    ban_reason = Column(String(255))
    ban_expires_at = Column(DateTime)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    # back-references only; loans and fines are owned by the system
    loans = relationship("Loan", back_populates="patron", order_by="Loan.loan_id")
    fines = relationship("Fine", back_populates="patron", order_by="Fine.fine_id")

    @property
    def loan_ids(self) -> list[int]:
        return [l.loan_id for l in self.loans]

    @property
    def fine_ids(self) -> list[int]:
        return [f.fine_id for f in self.fines]

    def lift_expired_ban(self, now) -> bool:
        if self.is_banned and self.ban_expires_at is not None and self.ban_expires_at < now:
            self.is_banned = False
            self.ban_reason = None
            self.ban_expires_at = None
            return True
        return False

class Book(Base):
    __tablename__ = "book"
    __table_args__ = (
        CheckConstraint("total_copies >= 0", name="ck_book_total"),
        CheckConstraint("available_copies >= 0", name="ck_book_available"),
        CheckConstraint("on_loan_copies >= 0", name="ck_book_on_loan"),
        CheckConstraint("reserved_copies >= 0", name="ck_book_reserved"),
        CheckConstraint(
            "available_copies + on_loan_copies + reserved_copies = total_copies",
            name="ck_book_inventory",
        ),
    )
    book_id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    isbn = Column(String(20), unique=True)
    title = Column(String(200), nullable=False)
    author = Column(String(120), nullable=False)
    publish_year = Column(Integer)
    language = Column(String(30))
    genres = Column(JSON, nullable=False, default=list)
    condition = Column(Enum("new", "good", "fair", "poor", name="book_condition"), nullable=False, default="new")
    is_active = Column(Boolean, nullable=False, default=True)

    total_copies = Column(Integer, nullable=False, default=0)
    available_copies = Column(Integer, nullable=False, default=0)
    on_loan_copies = Column(Integer, nullable=False, default=0)
    reserved_copies = Column(Integer, nullable=False, default=0)

    purchase_price = Column(Money, nullable=False, default=0)
    daily_rental_rate = Column(Money, nullable=False, default=0)
    rental_deposit = Column(Money, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    def is_available(self) -> bool:
        return self.is_active and self.available_copies > 0

    def inventory_consistent(self) -> bool:
        counters = (self.available_copies, self.on_loan_copies, self.reserved_copies)
        return (
            all(c >= 0 for c in counters)
            and self.total_copies >= 0
            and sum(counters) == self.total_copies
        )

class Loan(Base):
    __tablename__ = "loan"
    loan_id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    patron_id = Column(BigInteger, ForeignKey("patron.patron_id"), nullable=False, index=True)
    book_id = Column(BigInteger, ForeignKey("book.book_id"), nullable=False, index=True)
    kind = Column(Enum("loan", "rental", name="loan_kind"), nullable=False, default="loan")
    state = Column(Enum("active", "overdue", "returned", "lost", name="loan_state"),
                   nullable=False, default="active", index=True)

    borrowed_at = Column(DateTime, nullable=False)
    due_at = Column(DateTime, nullable=False, index=True)
    returned_at = Column(DateTime, nullable=True)

    rental_fee = Column(Money, nullable=False, default=0)
    deposit = Column(Money, nullable=False, default=0)
    fine_amount = Column(Money, nullable=False, default=0)
    total_cost = Column(Money, nullable=False, default=0)

    notes = Column(Text)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    patron = relationship("Patron", back_populates="loans")
    book = relationship("Book")
    renewals = relationship("Renewal", back_populates="loan", order_by="Renewal.renewal_id",
                            cascade="all, delete-orphan", lazy="selectin")

    def recompute_total(self) -> None:
        # renewal surcharges are folded into rental_fee
        self.total_cost = (self.rental_fee or 0) + (self.deposit or 0)

class Renewal(Base):
    __tablename__ = "renewal"
    renewal_id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    loan_id = Column(BigInteger, ForeignKey("loan.loan_id"), nullable=False, index=True)
    renewed_at = Column(DateTime, nullable=False)
    extra_days = Column(Integer, nullable=False)
    extra_cost = Column(Money, nullable=False, default=0)

    loan = relationship("Loan", back_populates="renewals")

class Fine(Base):
    __tablename__ = "fine"
    __table_args__ = (CheckConstraint("amount >= 0", name="ck_fine_amount"),)
    fine_id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    patron_id = Column(BigInteger, ForeignKey("patron.patron_id"), nullable=False, index=True)
    loan_id = Column(BigInteger, ForeignKey("loan.loan_id"), nullable=False, index=True)
    kind = Column(Enum("overdue", "damage", "loss", name="fine_kind"), nullable=False)
    amount = Column(Money, nullable=False)
    state = Column(Enum("pending", "paid", "forgiven", name="fine_state"),
                   nullable=False, default="pending", index=True)

    issued_at = Column(DateTime, nullable=False)
    due_at = Column(DateTime, nullable=False, index=True)
    paid_at = Column(DateTime, nullable=True)

    overdue_days = Column(Integer)
    description = Column(String(500), nullable=False, default="")

    patron = relationship("Patron", back_populates="fines")
    loan = relationship("Loan")
    payments = relationship("Payment", back_populates="fine", order_by="Payment.pay_id")

class Payment(Base):
    __tablename__ = "payment"
    pay_id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    patron_id = Column(BigInteger, ForeignKey("patron.patron_id"), nullable=False, index=True)
    fine_id = Column(BigInteger, ForeignKey("fine.fine_id"), nullable=False, index=True)
    amount = Column(Money, nullable=False)
    method = Column(Enum("cash", "card", "transfer", "other", name="payment_method"),
                    nullable=False, default="cash")
    paid_at = Column(DateTime, nullable=False)

    fine = relationship("Fine", back_populates="payments")
