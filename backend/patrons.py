import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import models as M
from db import transaction
from errors import NotFound, Rejected
from repositories import PatronRepo, Clock, utcnow

logger = logging.getLogger(__name__)

class PatronService:
    def __init__(self, db: Session, clock: Clock = utcnow) -> None:
        self.db = db
        self.patrons = PatronRepo(db, clock)

    def register_patron(self, email: str, name: str, role: str = "user") -> M.Patron:
        patron = M.Patron(email=email.strip().lower(), name=name.strip(), role=role,
                          is_active=True, is_banned=False)
        try:
            with transaction(self.db):
                self.patrons.add(patron)
        except IntegrityError as exc:
            raise Rejected(f"a patron with email {patron.email} already exists",
                           code="duplicate_email") from exc
        self.db.refresh(patron)
        logger.info("patron %s registered (%s)", patron.patron_id, patron.role)
        return patron

    def get_patron(self, patron_ref) -> M.Patron:
        # loading may lift an expired ban, so persist it
        with transaction(self.db):
            patron = self.patrons.find(patron_ref)
            if patron is None:
                raise NotFound("patron not found")
        return patron
