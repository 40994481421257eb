from datetime import timedelta
from decimal import Decimal

import pytest

from circulation import CirculationService, overdue_days
from db import make_engine, make_session_factory
from errors import NotFound, InvalidState, Rejected, LimitExceeded
from repositories import LoanRepo
from returns import Inspection


def test_create_loan_takes_a_copy(db, circulation, make_patron, make_book, clock):
    patron = make_patron()
    book = make_book(copies=2)

    loan = circulation.create_loan(patron.patron_id, book.book_id)

    assert loan.state == "active"
    assert loan.kind == "loan"
    assert loan.borrowed_at == clock()
    assert loan.due_at == clock() + timedelta(days=14)
    assert loan.total_cost == Decimal("0.00")
    db.refresh(book)
    assert (book.available_copies, book.on_loan_copies) == (1, 1)
    assert book.inventory_consistent()
    db.refresh(patron)
    assert patron.loan_ids == [loan.loan_id]


def test_create_loan_by_email(circulation, make_patron, make_book):
    patron = make_patron(email="ana@example.org")
    loan = circulation.create_loan("ANA@example.org", make_book().book_id)
    assert loan.patron_id == patron.patron_id


def test_rental_charges_fee_and_deposit(circulation, make_patron, make_book):
    book = make_book(daily_rental_rate=Decimal("10"), rental_deposit=Decimal("50"))
    loan = circulation.create_loan(make_patron().patron_id, book.book_id, kind="rental", duration_days=5)

    assert loan.rental_fee == Decimal("50.00")
    assert loan.deposit == Decimal("50.00")
    assert loan.total_cost == Decimal("100.00")
    assert loan.due_at - loan.borrowed_at == timedelta(days=5)


def test_unknown_patron_or_book(circulation, make_patron, make_book):
    with pytest.raises(NotFound, match="patron"):
        circulation.create_loan(999, 999)
    with pytest.raises(NotFound, match="book"):
        circulation.create_loan(make_patron().patron_id, 999)


def test_unavailable_book_rejected(db, circulation, make_patron, make_book):
    book = make_book(copies=1)
    circulation.create_loan(make_patron().patron_id, book.book_id)

    with pytest.raises(Rejected) as exc:
        circulation.create_loan(make_patron().patron_id, book.book_id)
    assert exc.value.code == "book_unavailable"
    db.refresh(book)
    assert (book.available_copies, book.on_loan_copies) == (0, 1)


def test_inactive_patron_rejected(db, circulation, make_patron, make_book):
    patron = make_patron()
    patron.is_active = False
    db.commit()

    with pytest.raises(Rejected) as exc:
        circulation.create_loan(patron.patron_id, make_book().book_id)
    assert exc.value.code == "patron_inactive"


def test_banned_patron_rejected(db, circulation, make_patron, make_book, clock):
    patron = make_patron()
    patron.is_banned = True
    patron.ban_reason = "multiple pending fines"
    patron.ban_expires_at = clock() + timedelta(days=30)
    db.commit()

    with pytest.raises(Rejected) as exc:
        circulation.create_loan(patron.patron_id, make_book().book_id)
    assert exc.value.code == "patron_banned"


def test_expired_ban_is_lifted_on_borrow(db, circulation, make_patron, make_book, clock):
    patron = make_patron()
    patron.is_banned = True
    patron.ban_expires_at = clock() - timedelta(days=1)
    db.commit()

    circulation.create_loan(patron.patron_id, make_book().book_id)

    db.refresh(patron)
    assert patron.is_banned is False
    assert patron.ban_expires_at is None


def test_pending_fine_blocks_borrowing_even_if_book_available(db, circulation, fines, make_patron, make_book):
    patron = make_patron()
    first = circulation.create_loan(patron.patron_id, make_book().book_id)
    fines.issue_damage_or_loss_fine(first.loan_id, "damage")

    other = make_book(copies=5)
    with pytest.raises(Rejected) as exc:
        circulation.create_loan(patron.patron_id, other.book_id)
    assert exc.value.code == "pending_fines"
    db.refresh(other)
    assert other.available_copies == 5


def test_loan_limit(circulation, make_patron, make_book):
    patron = make_patron()
    for _ in range(3):
        circulation.create_loan(patron.patron_id, make_book().book_id)

    with pytest.raises(LimitExceeded):
        circulation.create_loan(patron.patron_id, make_book().book_id)


def test_invalid_kind_and_duration(circulation, make_patron, make_book):
    patron, book = make_patron(), make_book()
    with pytest.raises(Rejected):
        circulation.create_loan(patron.patron_id, book.book_id, kind="lease")
    with pytest.raises(Rejected):
        circulation.create_loan(patron.patron_id, book.book_id, duration_days=0)


def test_renewal_extends_due_date_up_to_the_limit(circulation, make_patron, make_book):
    loan = circulation.create_loan(make_patron().patron_id, make_book().book_id)
    due = loan.due_at

    loan = circulation.renew_loan(loan.loan_id)
    assert loan.due_at == due + timedelta(days=7)
    loan = circulation.renew_loan(loan.loan_id, extra_days=3)
    assert loan.due_at == due + timedelta(days=10)
    assert [r.extra_days for r in loan.renewals] == [7, 3]

    with pytest.raises(LimitExceeded, match="renewal limit"):
        circulation.renew_loan(loan.loan_id)
    assert circulation.get_loan(loan.loan_id).due_at == due + timedelta(days=10)


def test_rental_renewal_adds_cost(circulation, make_patron, make_book):
    book = make_book(daily_rental_rate=Decimal("10"), rental_deposit=Decimal("50"))
    loan = circulation.create_loan(make_patron().patron_id, book.book_id, kind="rental", duration_days=5)

    loan = circulation.renew_loan(loan.loan_id, extra_days=2)

    assert loan.renewals[0].extra_cost == Decimal("20.00")
    assert loan.rental_fee == Decimal("70.00")
    assert loan.total_cost == Decimal("120.00")


def test_only_active_loans_renew(circulation, returns, make_patron, make_book, clock):
    loan = circulation.create_loan(make_patron().patron_id, make_book().book_id)
    clock.advance(days=15)
    circulation.get_loan_status(loan.loan_id)
    with pytest.raises(InvalidState):
        circulation.renew_loan(loan.loan_id)

    returns.process_return(loan.loan_id, Inspection(new_condition="good"))
    with pytest.raises(InvalidState):
        circulation.renew_loan(loan.loan_id)
    with pytest.raises(NotFound):
        circulation.renew_loan(12345)


def test_overdue_days(circulation, make_patron, make_book, clock):
    loan = circulation.create_loan(make_patron().patron_id, make_book().book_id)

    assert overdue_days(loan, clock()) == 0
    assert overdue_days(loan, loan.due_at) == 0
    assert overdue_days(loan, loan.due_at + timedelta(days=5)) == 5
    assert overdue_days(loan, loan.due_at + timedelta(days=4, hours=1)) == 5

    loan.state = "returned"
    assert overdue_days(loan, loan.due_at + timedelta(days=5)) == 0


def test_status_check_promotes_overdue_loan(db, circulation, make_patron, make_book, clock):
    loan = circulation.create_loan(make_patron().patron_id, make_book().book_id)

    status = circulation.get_loan_status(loan.loan_id)
    assert (status.loan.state, status.overdue_days) == ("active", 0)

    clock.advance(days=19)
    status = circulation.get_loan_status(loan.loan_id)
    assert (status.loan.state, status.overdue_days) == ("overdue", 5)

    db.expire_all()
    assert LoanRepo(db).get(loan.loan_id).state == "overdue"


def test_list_patron_loans_newest_first(circulation, make_patron, make_book, clock):
    patron = make_patron()
    first = circulation.create_loan(patron.patron_id, make_book().book_id)
    clock.advance(hours=2)
    second = circulation.create_loan(patron.patron_id, make_book().book_id)

    loans = circulation.list_patron_loans(patron.email)
    assert [l.loan_id for l in loans] == [second.loan_id, first.loan_id]
    assert circulation.list_patron_loans(make_patron().patron_id) == []


def test_annotate_loan(circulation, make_patron, make_book):
    loan = circulation.create_loan(make_patron().patron_id, make_book().book_id)
    loan = circulation.annotate_loan(loan.loan_id, "  cover slightly bent  ")
    assert loan.notes == "cover slightly bent"
    assert loan.state == "active"


def test_renewal_limit_holds_across_sessions(db, cfg, clock, circulation, make_patron, make_book):
    loan = circulation.create_loan(make_patron().patron_id, make_book().book_id)

    engine = make_engine(cfg)
    other = make_session_factory(engine)()
    try:
        elsewhere = CirculationService(other, cfg, clock)
        assert elsewhere.get_loan(loan.loan_id).renewals == []

        circulation.renew_loan(loan.loan_id)
        circulation.renew_loan(loan.loan_id)
        with pytest.raises(LimitExceeded):
            elsewhere.renew_loan(loan.loan_id)
    finally:
        other.close()
        engine.dispose()

    assert len(circulation.get_loan(loan.loan_id).renewals) == 2
