import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from circulation import overdue_days
from db import Settings, settings, transaction
from errors import LibraryError, InvalidState, Internal
from fines import FineService
from repositories import LoanRepo, Clock, utcnow

logger = logging.getLogger(__name__)

@dataclass
class SweepReport:
    ran_at: datetime
    overdue_loans: List[int] = field(default_factory=list)
    fines_issued: List[int] = field(default_factory=list)
    fines_escalated: List[int] = field(default_factory=list)
    patrons_banned: List[int] = field(default_factory=list)

class DailyFineSweep:
    def __init__(self, db: Session, cfg: Settings = settings, clock: Clock = utcnow) -> None:
        self.db = db
        self.cfg = cfg
        self.clock = clock
        self.loans = LoanRepo(db)
        self.fine_engine = FineService(db, cfg, clock)

    def run(self) -> SweepReport:
        now = self.clock()
        report = SweepReport(ran_at=now)
        try:
            with transaction(self.db):
                for loan in self.loans.list_active_past_due(now):
                    days = overdue_days(loan, now)
                    fine = self.fine_engine.issue_overdue_fine(
                        loan, days, cap_percent_of_price=self.cfg.SWEEP_OVERDUE_CAP_PERCENT_OF_PRICE)
                    if not self.loans.transition(loan, ("active",), state="overdue"):
                        raise InvalidState(f"loan {loan.loan_id} changed state during the sweep")
                    report.overdue_loans.append(loan.loan_id)
                    report.fines_issued.append(fine.fine_id)

                escalation = self.fine_engine.escalate_overdue_fines()
                report.fines_escalated = [f.fine_id for f in escalation.escalated]
                report.patrons_banned = escalation.banned_patrons
        except LibraryError as exc:
            logger.error("daily fine sweep aborted: %s", exc.message)
            raise
        except SQLAlchemyError as exc:
            logger.exception("daily fine sweep aborted")
            raise Internal("daily fine sweep failed") from exc

        logger.info("daily fine sweep: %s loans overdue, %s fines escalated, %s patrons banned",
                    len(report.overdue_loans), len(report.fines_escalated), len(report.patrons_banned))
        return report
