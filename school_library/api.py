import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from school_library.config import settings
from school_library.database import read_connection
from school_library.errors import (
    CONFLICT,
    INVALID,
    NOT_FOUND,
    POLICY_VIOLATION,
    TRANSIENT,
    LendingError,
)
from school_library.library import Library
from school_library.models import to_iso
from school_library.services.http_client import cleanup_http_client
from school_library.verification import HttpIdentityVerifier, IdentityVerifier, LibrarianCardVerifier

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# LIBRARY_DB_FILE is read here (not only at database import) so a reload picks up a new file.
library = Library(db_file=os.environ.get("LIBRARY_DB_FILE"))

STATUS_BY_KIND = {
    NOT_FOUND: 404,
    CONFLICT: 409,
    POLICY_VIOLATION: 403,
    INVALID: 422,
    TRANSIENT: 503,
}


async def _periodic_sweep(interval: int) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            report = await asyncio.to_thread(library.run_sweep)
            logger.debug(f"Scheduled sweep finished: {report.to_dict()}")
        except LendingError as e:
            logger.error(f"Scheduled sweep failed: {e.message}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweep_task = None
    if settings.sweep_interval_seconds > 0:
        sweep_task = asyncio.create_task(_periodic_sweep(settings.sweep_interval_seconds))
        logger.info(f"Overdue sweep scheduled every {settings.sweep_interval_seconds}s")
    try:
        yield
    finally:
        if sweep_task:
            sweep_task.cancel()
            await asyncio.gather(sweep_task, return_exceptions=True)
        cleanup_http_client()


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    # Lending state changes constantly; never let a proxy serve stale availability.
    if request.url.path.startswith(("/borrowings", "/copies", "/students")):
        response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(LendingError)
async def lending_error_handler(request: Request, exc: LendingError):
    status = STATUS_BY_KIND.get(exc.kind, 400)
    headers = {"Retry-After": "1"} if exc.retryable else None
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected ({exc.code}): {exc.message}")
    return JSONResponse(status_code=status, content=exc.to_dict(), headers=headers)


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")
admin_key_header = APIKeyHeader(name="X-Admin-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that validates the librarian API key."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


def get_admin_key(admin_key: str = Security(admin_key_header)):
    """Dependency that validates the administrator key."""
    if admin_key == settings.admin_api_key:
        return admin_key
    raise HTTPException(status_code=403, detail="Could not validate admin credentials")


def get_verifier() -> IdentityVerifier:
    if settings.biometric_service_url:
        return HttpIdentityVerifier(
            settings.biometric_service_url,
            timeout=settings.biometric_timeout,
            retries=settings.retry_attempts,
        )
    return LibrarianCardVerifier(library.directory)


# --- Models ---
class TitleModel(BaseModel):
    id: str
    title: str
    author: str
    category: str | None = None
    isbn: str | None = None
    due_period_value: int
    due_period_unit: str
    created_at: str | None = None


class TitleCreateModel(BaseModel):
    title: str
    author: str
    category: str | None = None
    isbn: str | None = None
    due_period_value: int | None = Field(default=None, description="Defaults to DEFAULT_DUE_PERIOD_VALUE")
    due_period_unit: str | None = Field(default=None, description="hours, days, weeks, months or years")
    serials: List[str] = Field(default_factory=list, description="Serials of the first copies")


class DuePeriodModel(BaseModel):
    due_period_value: int
    due_period_unit: str


class CopyModel(BaseModel):
    id: str
    title_id: str
    serial: str
    status: str
    created_at: str | None = None


class CopyCreateModel(BaseModel):
    serial: str


class StudentModel(BaseModel):
    id: str
    name: str
    admission_number: str
    class_name: str | None = None
    email: str | None = None
    blacklisted: bool
    blacklisted_until: str | None = None
    blacklist_reason: str | None = None
    created_at: str | None = None


class StudentCreateModel(BaseModel):
    name: str
    admission_number: str
    class_name: str | None = None
    email: str | None = None


class RecordModel(BaseModel):
    id: str
    copy_id: str
    student_id: str
    borrowed_at: str
    due_at: str
    returned_at: str | None = None
    status: str
    fine_amount: str
    fine_paid: bool
    overdue_flagged_at: str | None = None
    current_fine: str | None = None


class IssueRequestModel(BaseModel):
    student_id: str
    copy_id: str
    evidence: Dict[str, Any] = Field(default_factory=dict, description="Passed to the identity verifier")
    period_value: int | None = None
    period_unit: str | None = None


class ReturnReceiptModel(BaseModel):
    record: RecordModel
    fine_amount: str


class SweepReportModel(BaseModel):
    checked: int
    flagged: int
    blacklisted: int
    skipped: int


class UnblacklistModel(BaseModel):
    reason: str
    admin_id: str | None = None


class AuditEntryModel(BaseModel):
    id: int
    kind: str
    student_id: str | None = None
    copy_id: str | None = None
    record_id: str | None = None
    detail: str
    created_at: str


class StatsModel(BaseModel):
    total_titles: int
    total_copies: int
    available_copies: int
    borrowed_copies: int
    total_students: int
    blacklisted_students: int
    open_records: int
    overdue_records: int
    unpaid_fines: str


def _record_model(record) -> RecordModel:
    return RecordModel(
        **record.to_dict(),
        current_fine=str(library.ledger.current_fine(record, library.now())),
    )


# --- Health ---
@app.get("/health")
def health_check():
    """Lightweight health endpoint for container checks."""
    db_ok = True
    try:
        with read_connection(library.db_file, library.timeout) as conn:
            conn.execute("SELECT 1")
    except Exception:
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": to_iso(library.now()),
        "db": db_ok,
        "version": settings.app_version,
    }


@app.get("/stats", response_model=StatsModel)
def get_library_stats():
    """Dashboard counts."""
    return StatsModel(**library.get_statistics())


# --- Catalog ---
@app.post("/titles", response_model=TitleModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_title(payload: TitleCreateModel):
    book = library.add_title(
        payload.title,
        payload.author,
        category=payload.category,
        isbn=payload.isbn,
        due_period_value=payload.due_period_value,
        due_period_unit=payload.due_period_unit,
        serials=payload.serials,
    )
    return TitleModel(**book.to_dict())


@app.get("/titles", response_model=List[TitleModel])
def list_titles(q: str | None = Query(default=None, description="Search title, author, category or ISBN")):
    return [TitleModel(**t.to_dict()) for t in library.list_titles(q)]


@app.get("/titles/{title_id}", response_model=TitleModel)
def get_title(title_id: str):
    return TitleModel(**library.get_title(title_id).to_dict())


@app.put("/titles/{title_id}/due-period", response_model=TitleModel, dependencies=[Depends(get_api_key)])
def set_due_period(title_id: str, payload: DuePeriodModel):
    book = library.set_due_period(title_id, payload.due_period_value, payload.due_period_unit)
    return TitleModel(**book.to_dict())


@app.post("/titles/{title_id}/copies", response_model=CopyModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_copy(title_id: str, payload: CopyCreateModel):
    return CopyModel(**library.add_copy(title_id, payload.serial).to_dict())


@app.get("/copies", response_model=List[CopyModel])
def list_copies(title_id: str | None = None, status: str | None = None):
    return [CopyModel(**c.to_dict()) for c in library.list_copies(title_id, status)]


@app.get("/copies/{copy_id}", response_model=CopyModel)
def get_copy(copy_id: str):
    return CopyModel(**library.get_copy(copy_id).to_dict())


# --- Students ---
@app.post("/students", response_model=StudentModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_student(payload: StudentCreateModel):
    student = library.add_student(
        payload.name, payload.admission_number, class_name=payload.class_name, email=payload.email
    )
    return StudentModel(**student.to_dict())


@app.get("/students", response_model=List[StudentModel])
def list_students(q: str | None = None, blacklisted: bool | None = None):
    return [StudentModel(**s.to_dict()) for s in library.list_students(q, blacklisted)]


@app.get("/students/{student_id}", response_model=StudentModel)
def get_student(student_id: str):
    return StudentModel(**library.get_student(student_id).to_dict())


# --- Borrowings ---
@app.post("/borrowings", response_model=RecordModel, status_code=201, dependencies=[Depends(get_api_key)])
def issue_book(payload: IssueRequestModel, verifier: IdentityVerifier = Depends(get_verifier)):
    """Verify the student at the desk, then issue the copy to them."""
    identity = library.verify_identity(verifier, payload.student_id, payload.evidence)
    record = library.issue(identity, payload.copy_id, payload.period_value, payload.period_unit)
    return _record_model(record)


@app.get("/borrowings", response_model=List[RecordModel])
def list_borrowings(
    student_id: str | None = None,
    copy_id: str | None = None,
    status: str | None = None,
    overdue: bool = False,
):
    records = library.list_records(student_id, copy_id, status, overdue_only=overdue)
    return [_record_model(r) for r in records]


@app.get("/borrowings/{record_id}", response_model=RecordModel)
def get_borrowing(record_id: str):
    return _record_model(library.get_record(record_id))


@app.post("/borrowings/{record_id}/return", response_model=ReturnReceiptModel, dependencies=[Depends(get_api_key)])
def return_book(record_id: str):
    receipt = library.return_book(record_id)
    return ReturnReceiptModel(record=_record_model(receipt.record), fine_amount=str(receipt.fine_amount))


@app.post("/borrowings/{record_id}/fine-payment", response_model=RecordModel, dependencies=[Depends(get_api_key)])
def pay_fine(record_id: str):
    return _record_model(library.settle_fine(record_id))


# --- Administration ---
@app.post("/admin/sweep", response_model=SweepReportModel, dependencies=[Depends(get_admin_key)])
def run_sweep():
    return SweepReportModel(**library.run_sweep().to_dict())


@app.post(
    "/admin/students/{student_id}/unblacklist",
    response_model=StudentModel,
    dependencies=[Depends(get_admin_key)],
)
def unblacklist_student(student_id: str, payload: UnblacklistModel):
    student = library.unblacklist(student_id, payload.reason, admin_id=payload.admin_id)
    return StudentModel(**student.to_dict())


@app.get("/admin/audit", response_model=List[AuditEntryModel], dependencies=[Depends(get_admin_key)])
def list_audit(
    student_id: str | None = None,
    kind: str | None = None,
    record_id: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
):
    return [AuditEntryModel(**e.to_dict()) for e in library.list_audit(student_id, kind, record_id, limit)]
