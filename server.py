"""FastAPI server exposing the event portal API.

Run locally:
  uvicorn server:app --reload

Configuration comes from the environment (or a .env file); see portal_config.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Literal, Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, EmailStr, Field, HttpUrl, validator

from portal_auth import authenticate_admin, create_access_token, decode_access_token
from portal_config import Settings, load_settings, setup_logging
from portal_stores import InMemoryStore, MongoStore
from portal_system import (
    AuthorizationError,
    BaseStore,
    Candidate,
    CapacityExceeded,
    DeadlinePassed,
    DuplicateRegistration,
    Event,
    EventNotFound,
    PortalError,
    PortalSystem,
    Profile,
    Registration,
    RegistrationClosed,
    RegistrationNotFound,
    StoreUnavailableError,
    TransientStoreError,
    ValidationError,
    event_status,
    export_filename,
    is_closing_soon,
)

settings = load_settings()
setup_logging(settings.log_level)
logger = logging.getLogger(__name__)


def build_store(cfg: Settings) -> BaseStore:
    if cfg.db_backend == "mongodb":
        return MongoStore(
            uri=cfg.mongodb_uri,
            db_name=cfg.db_name,
            collection_prefix=cfg.collection_prefix,
            duplicate_key=cfg.duplicate_key,
            timeout=cfg.store_timeout_seconds,
        )
    return InMemoryStore(duplicate_key=cfg.duplicate_key, timeout=cfg.store_timeout_seconds)


def get_system(cfg: Settings = settings) -> PortalSystem:
    return PortalSystem(store=build_store(cfg), retry_attempts=cfg.retry_attempts)


portal = get_system()

app = FastAPI(title="Department Event Portal")

# Enable CORS for the browser frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- Error mapping ----------


ERROR_STATUS = {
    ValidationError: 422,
    EventNotFound: 404,
    RegistrationNotFound: 404,
    RegistrationClosed: 400,
    DeadlinePassed: 400,
    CapacityExceeded: 409,
    DuplicateRegistration: 409,
    TransientStoreError: 503,
    AuthorizationError: 401,
}


@app.exception_handler(PortalError)
async def portal_error_handler(request: Request, exc: PortalError) -> JSONResponse:
    status_code = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 400)
    body = {"detail": exc.message, "code": exc.code}
    headers = {}
    if isinstance(exc, ValidationError):
        body["field"] = exc.field
    elif isinstance(exc, TransientStoreError):
        headers["Retry-After"] = "1"
    elif isinstance(exc, AuthorizationError):
        headers["WWW-Authenticate"] = "Bearer"
    return JSONResponse(status_code=status_code, content=body, headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report schema rejections in the same shape as ValidationError."""
    first = exc.errors()[0] if exc.errors() else {}
    loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
    field = ".".join(loc) or None
    reason = first.get("msg", "is invalid")
    body = {
        "detail": f"{field}: {reason}" if field else reason,
        "code": ValidationError.code,
        "field": field,
    }
    return JSONResponse(status_code=422, content=body)


# ---------- Auth dependency ----------


bearer_scheme = HTTPBearer(auto_error=False)


def current_admin(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> Profile:
    """Resolve the admin profile from the bearer token; any failure looks the same."""
    if credentials is None:
        raise AuthorizationError()
    profile = decode_access_token(credentials.credentials, settings.secret_key, settings.token_algorithm)
    if not profile.is_admin:
        raise AuthorizationError()
    return profile


# ---------- Pydantic Schemas ----------


class EventIn(BaseModel):
    title: str = Field(min_length=3, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    event_type: Literal["symposium", "workshop", "contest", "seminar", "hackathon", "other"]
    event_date: datetime
    registration_deadline: datetime
    venue: Optional[str] = Field(default=None, max_length=200)
    max_participants: Optional[int] = Field(default=None, gt=0)
    registration_open: bool = True
    poster_url: Optional[HttpUrl] = None

    @validator("description", "venue", "max_participants", "poster_url", pre=True)
    def _blank_to_none(cls, v):
        return None if v == "" else v

    def to_event(self) -> Event:
        return Event(
            id=None,
            title=self.title,
            event_type=self.event_type,
            event_date=self.event_date,
            registration_deadline=self.registration_deadline,
            description=self.description,
            venue=self.venue,
            max_participants=self.max_participants,
            registration_open=self.registration_open,
            poster_url=str(self.poster_url) if self.poster_url else None,
        )


class RegistrationToggle(BaseModel):
    registration_open: bool


class RegistrationIn(BaseModel):
    student_name: str = Field(min_length=2, max_length=100)
    student_email: EmailStr
    student_roll_number: str = Field(min_length=1, max_length=50)
    student_phone: Optional[str] = Field(default=None, max_length=20)
    department: Optional[str] = Field(default=None, max_length=100)
    year_of_study: Optional[str] = None

    @validator("student_phone", "department", "year_of_study", pre=True)
    def _blank_to_none(cls, v):
        return None if v == "" else v

    def to_candidate(self) -> Candidate:
        return Candidate(
            student_name=self.student_name,
            student_email=str(self.student_email),
            student_roll_number=self.student_roll_number,
            student_phone=self.student_phone,
            department=self.department,
            year_of_study=self.year_of_study,
        )


class LoginIn(BaseModel):
    email: str
    password: str


# ---------- Serialization ----------


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def event_out(e: Event, registration_count: Optional[int] = None) -> dict:
    now = portal.now()
    out = {
        "id": e.id,
        "title": e.title,
        "description": e.description,
        "event_type": e.event_type,
        "event_date": _iso(e.event_date),
        "registration_deadline": _iso(e.registration_deadline),
        "venue": e.venue,
        "max_participants": e.max_participants,
        "registration_open": e.registration_open,
        "poster_url": e.poster_url,
        "created_by": e.created_by,
        "created_at": _iso(e.created_at),
        "updated_at": _iso(e.updated_at),
        "status": event_status(e, now).value,
        "closing_soon": is_closing_soon(e, now),
    }
    if registration_count is not None:
        out["registration_count"] = registration_count
    return out


def registration_out(r: Registration) -> dict:
    return {
        "id": r.id,
        "event_id": r.event_id,
        "student_name": r.student_name,
        "student_email": r.student_email,
        "student_roll_number": r.student_roll_number,
        "student_phone": r.student_phone,
        "department": r.department,
        "year_of_study": r.year_of_study,
        "created_at": _iso(r.created_at),
    }


# ---------- Public routes ----------


@app.get("/api/health")
def health():
    try:
        portal.store.ping()
    except StoreUnavailableError as e:
        logger.error(f"Health check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "unhealthy", "store": settings.db_backend})
    return {"status": "healthy", "store": settings.db_backend}


@app.get("/api/events")
def list_events(scope: Literal["all", "upcoming", "past"] = "all"):
    return [event_out(e) for e in portal.list_events(scope)]


@app.get("/api/events/{event_id}")
def event_detail(event_id: int):
    detail = portal.event_detail(event_id)
    out = event_out(detail["event"], detail["registration_count"])
    out["can_register"] = detail["can_register"]
    out["spots_left"] = detail["spots_left"]
    return out


@app.post("/api/events/{event_id}/registrations", status_code=201)
def create_registration(event_id: int, payload: RegistrationIn):
    reg = portal.register(event_id, payload.to_candidate())
    return registration_out(reg)


# ---------- Auth routes ----------


@app.post("/api/auth/login")
def login(payload: LoginIn):
    profile = authenticate_admin(payload.email, payload.password, settings)
    token = create_access_token(
        profile,
        settings.secret_key,
        settings.token_algorithm,
        timedelta(minutes=settings.token_expire_minutes),
    )
    return {
        "access_token": token,
        "token_type": "bearer",
        "user": {"email": profile.email, "name": profile.full_name, "role": profile.role},
    }


# ---------- Admin routes ----------


@app.get("/api/admin/events")
def admin_list_events(admin: Profile = Depends(current_admin)):
    return [event_out(e, count) for e, count in portal.events_with_counts(admin)]


@app.get("/api/admin/stats")
def admin_stats(admin: Profile = Depends(current_admin)):
    return portal.dashboard_stats(admin)


@app.post("/api/admin/events", status_code=201)
def admin_create_event(payload: EventIn, admin: Profile = Depends(current_admin)):
    return event_out(portal.create_event(admin, payload.to_event()))


@app.put("/api/admin/events/{event_id}")
def admin_update_event(event_id: int, payload: EventIn, admin: Profile = Depends(current_admin)):
    return event_out(portal.update_event(admin, event_id, payload.to_event()))


@app.patch("/api/admin/events/{event_id}/registration")
def admin_toggle_registration(event_id: int, payload: RegistrationToggle, admin: Profile = Depends(current_admin)):
    return event_out(portal.set_registration_open(admin, event_id, payload.registration_open))


@app.delete("/api/admin/events/{event_id}")
def admin_delete_event(event_id: int, admin: Profile = Depends(current_admin)):
    removed = portal.delete_event(admin, event_id)
    return {"ok": True, "registrations_deleted": removed}


@app.get("/api/admin/events/{event_id}/registrations")
def admin_list_registrations(event_id: int, admin: Profile = Depends(current_admin)) -> List[dict]:
    return [registration_out(r) for r in portal.list_registrations(admin, event_id)]


@app.delete("/api/admin/registrations/{registration_id}")
def admin_delete_registration(registration_id: int, admin: Profile = Depends(current_admin)):
    portal.delete_registration(admin, registration_id)
    return {"ok": True}


@app.get("/api/admin/export")
def admin_export(event_id: int, admin: Profile = Depends(current_admin)):
    body = portal.export_csv(admin, event_id, settings.export_tz)
    filename = export_filename(settings.site_name, event_id)
    return Response(
        content=body,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
