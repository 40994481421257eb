import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import models as M
from db import transaction
from errors import NotFound, Rejected
from repositories import BookRepo

logger = logging.getLogger(__name__)

class CatalogService:
    def __init__(self, db: Session) -> None:
        self.db = db
        self.books = BookRepo(db)

    def add_book(self, title: str, author: str, copies: int = 1, **fields) -> M.Book:
        if copies < 0:
            raise Rejected("number of copies cannot be negative", code="invalid_inventory")
        book = M.Book(
            title=title,
            author=author,
            total_copies=copies,
            available_copies=copies,
            on_loan_copies=0,
            reserved_copies=0,
            **fields,
        )
        for price in ("purchase_price", "daily_rental_rate", "rental_deposit"):
            setattr(book, price, M.money(getattr(book, price) or 0))
        try:
            with transaction(self.db):
                self.books.add(book)
        except IntegrityError as exc:
            raise Rejected(f"a book with ISBN {book.isbn} already exists", code="duplicate_isbn") from exc
        self.db.refresh(book)
        logger.info("book %s added with %s copies", book.book_id, copies)
        return book

    def get_book(self, book_id: int) -> M.Book:
        book = self.books.get(book_id)
        if book is None:
            raise NotFound("book not found")
        return book

    def correct_inventory(self, book_id: int, total: Optional[int] = None,
                          reserved: Optional[int] = None) -> M.Book:
        """Manual correction; ``available`` absorbs the difference."""
        with transaction(self.db):
            book = self.books.get(book_id)
            if book is None:
                raise NotFound("book not found")
            total = book.total_copies if total is None else total
            reserved = book.reserved_copies if reserved is None else reserved
            available = total - book.on_loan_copies - reserved
            if total < 0 or reserved < 0 or available < 0:
                raise Rejected(
                    f"inventory of {total} total with {book.on_loan_copies} on loan "
                    f"and {reserved} reserved is not possible",
                    code="invalid_inventory",
                )
            book.total_copies = total
            book.reserved_copies = reserved
            book.available_copies = available
        self.db.refresh(book)
        logger.info("book %s inventory corrected: total=%s available=%s on_loan=%s reserved=%s",
                    book.book_id, book.total_copies, book.available_copies,
                    book.on_loan_copies, book.reserved_copies)
        return book

    def remove_book(self, book_id: int) -> bool:
        """Delete a book, or deactivate it if it has loan history.

        Returns True when the row was deleted.
        """
        with transaction(self.db):
            book = self.books.get(book_id)
            if book is None:
                raise NotFound("book not found")
            if book.on_loan_copies > 0 or book.reserved_copies > 0:
                raise Rejected("book still has copies on loan or reserved", code="book_in_use")
            # loan history is append-only
            has_history = self.db.scalar(select(M.Loan.loan_id).where(M.Loan.book_id == book_id).limit(1))
            if has_history:
                book.is_active = False
                deleted = False
            else:
                self.db.delete(book)
                deleted = True
        logger.info("book %s %s", book_id, "deleted" if deleted else "deactivated")
        return deleted
