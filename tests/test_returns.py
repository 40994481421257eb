from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

import models as M
from db import make_engine, make_session_factory
from errors import NotFound, InvalidState, AlreadyReturned, Rejected, InventoryCorruption
from repositories import LoanRepo, FineRepo
from returns import Inspection, ReturnService


def test_borrow_and_return_on_time(db, circulation, returns, make_patron, make_book, clock):
    patron = make_patron()
    book = make_book(copies=3)
    loan = circulation.create_loan(patron.patron_id, book.book_id)
    db.refresh(book)
    assert (book.available_copies, book.on_loan_copies) == (2, 1)

    clock.advance(days=10)
    result = returns.process_return(loan.loan_id, Inspection(new_condition="good"))

    assert result.success
    assert result.loan.state == "returned"
    assert result.loan.returned_at == clock()
    assert result.overdue_days == 0
    assert result.fines == []
    assert result.fine is None
    db.refresh(book)
    assert (book.available_copies, book.on_loan_copies) == (3, 0)
    assert book.condition == "good"
    assert book.inventory_consistent()


def test_overdue_rental_returned_damaged(db, circulation, returns, make_patron, make_book, clock):
    book = make_book(purchase_price=Decimal("1000"), rental_deposit=Decimal("50"))
    loan = circulation.create_loan(make_patron().patron_id, book.book_id, kind="rental", duration_days=14)

    clock.advance(days=17)
    result = returns.process_return(
        loan.loan_id, Inspection(new_condition="poor", damaged=True, damage_description="torn pages"))

    assert result.overdue_days == 3
    overdue, damage = result.fines
    assert (overdue.kind, overdue.amount) == ("overdue", Decimal("300.00"))
    assert overdue.description == "Returned 3 day(s) late"
    assert (damage.kind, damage.amount) == ("damage", Decimal("500.00"))
    assert damage.description == "torn pages"
    assert result.fine is damage
    assert result.deposit_refund == Decimal("0.00")
    assert result.loan.fine_amount == Decimal("800.00")
    assert all(f.due_at == clock() + timedelta(days=7) for f in result.fines)


def test_rental_returned_undamaged_refunds_deposit(circulation, returns, make_patron, make_book):
    book = make_book(rental_deposit=Decimal("50"))
    loan = circulation.create_loan(make_patron().patron_id, book.book_id, kind="rental", duration_days=3)

    result = returns.process_return(loan.loan_id, Inspection(new_condition="good"))

    assert result.deposit_refund == Decimal("50.00")


def test_return_is_idempotent(db, circulation, returns, make_patron, make_book):
    book = make_book(copies=1)
    loan = circulation.create_loan(make_patron().patron_id, book.book_id)
    returns.process_return(loan.loan_id, Inspection(new_condition="good"))

    with pytest.raises(AlreadyReturned):
        returns.process_return(loan.loan_id, Inspection(new_condition="good"))

    db.refresh(book)
    assert (book.total_copies, book.available_copies, book.on_loan_copies) == (1, 1, 0)


def test_already_returned_is_an_invalid_state():
    assert issubclass(AlreadyReturned, InvalidState)


def test_return_unknown_or_lost_loan(circulation, returns, fines, make_patron, make_book):
    with pytest.raises(NotFound):
        returns.process_return(42, Inspection(new_condition="good"))

    loan = circulation.create_loan(make_patron().patron_id, make_book().book_id)
    fines.issue_damage_or_loss_fine(loan.loan_id, "loss")
    with pytest.raises(InvalidState):
        returns.process_return(loan.loan_id, Inspection(new_condition="good"))


def test_unknown_condition_rejected(circulation, returns, make_patron, make_book):
    loan = circulation.create_loan(make_patron().patron_id, make_book().book_id)
    with pytest.raises(Rejected):
        returns.process_return(loan.loan_id, Inspection(new_condition="shredded"))


def test_inconsistent_inventory_aborts_the_whole_return(db, circulation, returns, make_patron, make_book, clock):
    book = make_book(copies=1)
    loan = circulation.create_loan(make_patron().patron_id, book.book_id)
    # counters drifted: the copy on loan is recorded as on the shelf
    db.execute(update(M.Book).where(M.Book.book_id == book.book_id)
               .values(available_copies=1, on_loan_copies=0))
    db.commit()
    db.expire_all()

    clock.advance(days=20)
    with pytest.raises(InventoryCorruption):
        returns.process_return(loan.loan_id, Inspection(new_condition="good"))

    db.expire_all()
    assert LoanRepo(db).get(loan.loan_id).state == "active"
    assert FineRepo(db).list_by_patron(loan.patron_id) == []


def test_preview_return(circulation, returns, make_patron, make_book, clock):
    book = make_book(rental_deposit=Decimal("50"))
    loan = circulation.create_loan(make_patron().patron_id, book.book_id, kind="rental", duration_days=7)

    preview = returns.preview_return(loan.loan_id)
    assert (preview.overdue_days, preview.is_overdue) == (0, False)
    assert preview.potential_fine == Decimal("0.00")

    clock.advance(days=9)
    preview = returns.preview_return(loan.loan_id)
    assert (preview.overdue_days, preview.is_overdue) == (2, True)
    assert preview.potential_fine == Decimal("200.00")
    assert preview.deposit_refund == Decimal("50.00")
    # a preview changes nothing
    assert preview.loan.state == "active"


def test_damaged_return_of_a_free_book_settles_the_zero_fine(circulation, returns, make_patron, make_book, clock):
    patron = make_patron()
    book = make_book(purchase_price=Decimal("0"))
    loan = circulation.create_loan(patron.patron_id, book.book_id)

    result = returns.process_return(loan.loan_id, Inspection(new_condition="poor", damaged=True))

    assert (result.fine.kind, result.fine.amount, result.fine.state) == ("damage", Decimal("0.00"), "paid")
    assert result.fine.paid_at == clock()
    assert circulation.create_loan(patron.patron_id, book.book_id).state == "active"


def test_concurrent_returns_settle_the_loan_once(db, cfg, clock, circulation, make_patron, make_book):
    book = make_book(copies=1)
    loan = circulation.create_loan(make_patron().patron_id, book.book_id)
    clock.advance(days=17)

    engine = make_engine(cfg)
    other = make_session_factory(engine)()
    try:
        # both desks hold the open loan before either return goes through
        assert LoanRepo(db).get_with_book(loan.loan_id).state == "active"
        assert LoanRepo(other).get_with_book(loan.loan_id).state == "active"

        result = ReturnService(db, cfg, clock).process_return(loan.loan_id, Inspection(new_condition="good"))
        with pytest.raises(AlreadyReturned):
            ReturnService(other, cfg, clock).process_return(
                loan.loan_id, Inspection(new_condition="fair", damaged=True))
    finally:
        other.close()
        engine.dispose()

    assert result.loan.state == "returned"
    db.expire_all()
    fines = FineRepo(db).list_by_patron(loan.patron_id)
    assert [f.fine_id for f in fines] == [f.fine_id for f in result.fines]
    assert [f.kind for f in fines] == ["overdue"]
    assert LoanRepo(db).get(loan.loan_id).fine_amount == Decimal("300.00")
    db.refresh(book)
    assert (book.total_copies, book.available_copies, book.on_loan_copies) == (1, 1, 0)
    assert book.condition == "good"
