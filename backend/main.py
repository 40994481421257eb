"""HTTP layer for the circulation service.

Run with ``uvicorn main:create_app --factory``.  ``create_app`` is the
composition root: it builds the engine, session factory and clock once and
hands them to the services per request.
"""
import logging

from fastapi import FastAPI, Depends, HTTPException, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db import Base, Settings, settings, make_engine, make_session_factory
import schemas as S
from security import decode_token
from errors import LibraryError, ErrorKind
from repositories import Clock, FineRepo, utcnow
from catalog import CatalogService
from patrons import PatronService
from circulation import CirculationService
from returns import ReturnService, Inspection
from fines import FineService
from sweep import DailyFineSweep

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.REJECTED: 400,
    ErrorKind.LIMIT_EXCEEDED: 400,
    ErrorKind.OVER_PAYMENT: 400,
    ErrorKind.INVENTORY_CORRUPTION: 500,
    ErrorKind.INTERNAL: 500,
}

def create_app(cfg: Settings | None = None, clock: Clock | None = None) -> FastAPI:
    cfg = cfg or settings
    clock = clock or utcnow

    logging.basicConfig(
        level=cfg.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    engine = make_engine(cfg)
    Base.metadata.create_all(bind=engine)
    SessionLocal = make_session_factory(engine)

    app = FastAPI(title="Library Circulation")
    app.state.engine = engine
    app.state.settings = cfg

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- errors ---
    @app.exception_handler(LibraryError)
    async def library_error(request: Request, exc: LibraryError):
        log = logger.error if exc.is_defect else logger.warning
        log("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
        body = S.ErrorOut(error=exc.kind.value, code=exc.code, message=exc.message)
        return JSONResponse(status_code=STATUS_BY_KIND[exc.kind], content=body.model_dump())

    @app.exception_handler(SQLAlchemyError)
    async def storage_error(request: Request, exc: SQLAlchemyError):
        logger.exception("%s %s -> storage failure", request.method, request.url.path)
        body = S.ErrorOut(error=ErrorKind.INTERNAL.value, code="internal", message="storage failure")
        return JSONResponse(status_code=500, content=body.model_dump())

    # --- deps ---
    def get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    def get_current_user(authorization: str = Header(default="")) -> dict:
        if not authorization.startswith("Bearer "):
            raise HTTPException(status_code=401, detail="Missing token")
        token = authorization.split(" ", 1)[1].strip()
        try:
            return decode_token(token, cfg)
        except ValueError:
            raise HTTPException(status_code=401, detail="Invalid token")

    def require_role(*roles):
        def _dep(user=Depends(get_current_user)):
            if user.get("role") not in roles:
                raise HTTPException(status_code=403, detail="Permission denied")
            return user
        return _dep

    def ensure_owner(user: dict, patron_id: int) -> None:
        if user["role"] != "admin" and user.get("patron_id") != patron_id:
            raise HTTPException(status_code=403, detail="Not your record")

    # --- patrons ---
    @app.post("/api/patrons", response_model=S.PatronOut, status_code=201)
    def create_patron(data: S.PatronIn, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
        return PatronService(db, clock).register_patron(data.email, data.name, data.role)

    @app.get("/api/patrons/{ref}", response_model=S.PatronOut)
    def get_patron(ref: str, db: Session = Depends(get_db), user=Depends(get_current_user)):
        p = PatronService(db, clock).get_patron(ref)
        ensure_owner(user, p.patron_id)
        return p

    @app.get("/api/patrons/{ref}/loans", response_model=list[S.LoanOut])
    def list_patron_loans(ref: str, db: Session = Depends(get_db), user=Depends(get_current_user)):
        p = PatronService(db, clock).get_patron(ref)
        ensure_owner(user, p.patron_id)
        return CirculationService(db, cfg, clock).list_patron_loans(p.patron_id)

    @app.get("/api/patrons/{ref}/fines", response_model=S.FineReportOut)
    def fine_report(ref: str, db: Session = Depends(get_db), user=Depends(get_current_user)):
        p = PatronService(db, clock).get_patron(ref)
        ensure_owner(user, p.patron_id)
        report = FineService(db, cfg, clock).get_fine_report(p.patron_id)
        return S.FineReportOut.model_validate(report)

    # --- books ---
    @app.post("/api/books", response_model=S.BookOut, status_code=201)
    def create_book(data: S.BookIn, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
        return CatalogService(db).add_book(**data.model_dump())

    @app.get("/api/books/{bid}", response_model=S.BookOut)
    def get_book(bid: int, db: Session = Depends(get_db), user=Depends(get_current_user)):
        return CatalogService(db).get_book(bid)

    @app.put("/api/books/{bid}/inventory", response_model=S.BookOut)
    def correct_inventory(bid: int, data: S.InventoryIn, db: Session = Depends(get_db),
                          user=Depends(require_role("admin"))):
        return CatalogService(db).correct_inventory(bid, total=data.total_copies, reserved=data.reserved_copies)

    @app.delete("/api/books/{bid}")
    def delete_book(bid: int, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
        deleted = CatalogService(db).remove_book(bid)
        return {"ok": True, "deleted": deleted}

    # --- loans ---
    @app.post("/api/loans", response_model=S.LoanOut, status_code=201)
    def create_loan(data: S.LoanIn, db: Session = Depends(get_db), user=Depends(get_current_user)):
        if user["role"] == "user":
            patron_ref = user.get("patron_id")
        else:
            patron_ref = data.patron_id or data.email
        if not patron_ref:
            raise HTTPException(status_code=400, detail="patron_id or email is required")
        return CirculationService(db, cfg, clock).create_loan(
            patron_ref, data.book_id, data.kind, data.duration_days)

    @app.get("/api/loans/{loan_id}", response_model=S.LoanOut)
    def get_loan(loan_id: int, db: Session = Depends(get_db), user=Depends(get_current_user)):
        loan = CirculationService(db, cfg, clock).get_loan(loan_id)
        ensure_owner(user, loan.patron_id)
        return loan

    @app.get("/api/loans/{loan_id}/status", response_model=S.LoanStatusOut)
    def loan_status(loan_id: int, db: Session = Depends(get_db), user=Depends(get_current_user)):
        svc = CirculationService(db, cfg, clock)
        ensure_owner(user, svc.get_loan(loan_id).patron_id)
        status = svc.get_loan_status(loan_id)
        return S.LoanStatusOut(loan=S.LoanOut.model_validate(status.loan), overdue_days=status.overdue_days)

    @app.post("/api/loans/{loan_id}/renew", response_model=S.LoanOut)
    def renew_loan(loan_id: int, data: S.RenewIn, db: Session = Depends(get_db), user=Depends(get_current_user)):
        svc = CirculationService(db, cfg, clock)
        ensure_owner(user, svc.get_loan(loan_id).patron_id)
        return svc.renew_loan(loan_id, data.extra_days)

    @app.put("/api/loans/{loan_id}/notes", response_model=S.LoanOut)
    def annotate_loan(loan_id: int, data: S.NotesIn, db: Session = Depends(get_db),
                      user=Depends(require_role("admin"))):
        return CirculationService(db, cfg, clock).annotate_loan(loan_id, data.notes)

    # --- returns ---
    @app.post("/api/returns", response_model=S.ReturnOut)
    def process_return(data: S.ReturnIn, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
        inspection = Inspection(
            new_condition=data.new_condition,
            damaged=data.damaged,
            damage_description=data.damage_description,
        )
        result = ReturnService(db, cfg, clock).process_return(data.loan_id, inspection)
        return S.ReturnOut.model_validate(result)

    @app.get("/api/returns/{loan_id}/preview", response_model=S.ReturnPreviewOut)
    def preview_return(loan_id: int, db: Session = Depends(get_db), user=Depends(get_current_user)):
        preview = ReturnService(db, cfg, clock).preview_return(loan_id)
        ensure_owner(user, preview.loan.patron_id)
        return S.ReturnPreviewOut.model_validate(preview)

    # --- fines ---
    @app.post("/api/fines/pay", response_model=S.FineOut)
    def pay_fine(data: S.PayIn, db: Session = Depends(get_db), user=Depends(get_current_user)):
        fr = FineRepo(db).get(data.fine_id)
        if fr is not None:
            ensure_owner(user, fr.patron_id)
        return FineService(db, cfg, clock).pay_fine(data.fine_id, data.amount, data.method)

    @app.post("/api/fines/damage-or-loss", response_model=S.FineOut, status_code=201)
    def damage_or_loss(data: S.DamageFineIn, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
        return FineService(db, cfg, clock).issue_damage_or_loss_fine(data.loan_id, data.kind)

    @app.post("/api/fines/sweep", response_model=S.SweepOut)
    def daily_sweep(db: Session = Depends(get_db), user=Depends(require_role("admin"))):
        report = DailyFineSweep(db, cfg, clock).run()
        return S.SweepOut.model_validate(report)

    return app
