import hmac
import logging
import os
import secrets
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from hachevents.config import Config
from hachevents.database import Database
from hachevents.errors import AuthError, ErrorCode, StoreError, ValidationError
from hachevents.identity import AuthClient, IdentityProvider
from hachevents.log import setup_logging
from hachevents.mailer import Mailer
from hachevents.models import (
    CATEGORIES,
    CATEGORY_ICONS,
    CITIES,
    Category,
    City,
    Event,
    LocationType,
    RegistrationStatus,
)
from hachevents.services import ActionResult, EventService, ProfileService, RegistrationService, registration_payload
from hachevents.store import RecordStore
from hachevents.wizard import AttendeeInfo, RegistrationWizard, WizardStep

config = Config.load()
setup_logging(config.log_level)
logger = logging.getLogger(__name__)

db = Database(config.database_path)
identity = IdentityProvider(
    db,
    Mailer.from_config(config),
    code_ttl_seconds=config.otp_ttl_seconds,
    max_attempts=config.otp_max_attempts,
    resend_interval_seconds=config.otp_resend_seconds,
)
record_store = RecordStore(db)
profiles = ProfileService(db)
events = EventService(db)
registrations = RegistrationService(db)
SESSION_COOKIE = config.session_cookie
WIZARD_COOKIE_PREFIX = "hach_wizard_"
WIZARD_TTL_SECONDS = config.wizard_ttl_seconds
FAILURE_STATUS = {ErrorCode.NOT_FOUND: 404, ErrorCode.FORBIDDEN: 403}

app = FastAPI(title="Hach Events")


@dataclass
class WizardEntry:
    wizard: RegistrationWizard
    client_key: str
    redirect_to: Optional[str] = None
    session_token: Optional[str] = None
    last_seen: float = field(default_factory=time.monotonic)


wizards: Dict[str, WizardEntry] = {}


class SendCodeRequest(BaseModel):
    email: str


class VerifyCodeRequest(BaseModel):
    email: str
    code: str


class ProfileUpdateRequest(BaseModel):
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None


class TicketPayload(BaseModel):
    id: Optional[str] = None
    name: str
    price: int = Field(default=0, ge=0)
    description: str = ""
    requires_approval: bool = False
    capacity: Optional[int] = Field(default=None, ge=1)


class EventCreateRequest(BaseModel):
    title: str
    description: Optional[str] = None
    date: str
    time: str
    location_type: LocationType = LocationType.IN_PERSON
    location: Optional[str] = None
    link: Optional[str] = None
    city: Optional[City] = None
    category: Category = Category.OTHER
    cover_image: Optional[str] = None
    tickets: Optional[List[TicketPayload]] = None


class EventUpdateRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None
    location_type: Optional[LocationType] = None
    location: Optional[str] = None
    link: Optional[str] = None
    city: Optional[City] = None
    category: Optional[Category] = None
    cover_image: Optional[str] = None
    tickets: Optional[List[TicketPayload]] = None


class TicketSelectRequest(BaseModel):
    ticket_id: str


class AttendeeInfoRequest(BaseModel):
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""


class WizardCodeRequest(BaseModel):
    code: str


class StatusUpdateRequest(BaseModel):
    status: RegistrationStatus


def session_token(request: Request) -> Optional[str]:
    return request.cookies.get(SESSION_COOKIE)


def _set_session(response: Response, token: Optional[str]) -> None:
    if token:
        response.set_cookie(SESSION_COOKIE, token, httponly=True, samesite="lax")
    else:
        response.delete_cookie(SESSION_COOKIE)


def _current_user(token: Optional[str]) -> Optional[str]:
    return identity.get_user(token)


def _require_user(token: Optional[str]) -> str:
    user_id = _current_user(token)
    if not user_id:
        raise HTTPException(status_code=401, detail="Sign in first.")
    return user_id


def _require_event(slug: str) -> Event:
    event = events.get(slug)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found.")
    return event


def _failure_status(result: ActionResult) -> int:
    return FAILURE_STATUS.get(result.code, 400)


def _profile_payload(user_id: str) -> Optional[Dict[str, Any]]:
    profile = profiles.get(user_id)
    return profile.to_dict() if profile else None


def _wizard_cookie(wizard_id: str) -> str:
    return f"{WIZARD_COOKIE_PREFIX}{wizard_id}"


def _sweep_wizards() -> None:
    now = time.monotonic()
    expired = [wizard_id for wizard_id, entry in wizards.items() if now - entry.last_seen > WIZARD_TTL_SECONDS]
    for wizard_id in expired:
        wizards.pop(wizard_id).wizard.close()
    if expired:
        logger.info("Dropped %s idle registration dialogs", len(expired))


def _get_wizard(wizard_id: str, request: Request) -> WizardEntry:
    entry = wizards.get(wizard_id)
    # a dialog only answers the browser that opened it
    client_key = request.cookies.get(_wizard_cookie(wizard_id)) or ""
    if not entry or not hmac.compare_digest(client_key, entry.client_key):
        raise HTTPException(status_code=404, detail="Registration dialog is closed.")
    entry.last_seen = time.monotonic()
    return entry


def _wizard_payload(wizard_id: str, entry: WizardEntry, response: Response) -> Dict[str, Any]:
    wizard = entry.wizard
    # verify_code signs the browser in; hand the new session over once
    if wizard.auth.token and wizard.auth.token != entry.session_token:
        _set_session(response, wizard.auth.token)
        entry.session_token = wizard.auth.token
    payload = wizard.snapshot()
    payload["wizard_id"] = wizard_id
    payload["notices"] = [asdict(notice) for notice in wizard.pop_notices()]
    payload["redirect_to"] = entry.redirect_to
    if wizard.step == WizardStep.RECEIPT:
        wizards.pop(wizard_id, None)
        response.delete_cookie(_wizard_cookie(wizard_id))
    return payload


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/meta")
def meta() -> Dict[str, Any]:
    return {
        "cities": {city.value: label for city, label in CITIES.items()},
        "categories": {category.value: label for category, label in CATEGORIES.items()},
        "category_icons": {category.value: icon for category, icon in CATEGORY_ICONS.items()},
    }


@app.post("/api/auth/otp")
def send_code(payload: SendCodeRequest) -> Dict[str, Any]:
    try:
        identity.send_one_time_code(payload.email, create_if_missing=True)
    except AuthError as exc:
        raise HTTPException(status_code=400, detail=exc.message) from exc
    return {"ok": True}


@app.post("/api/auth/verify")
def verify_code(payload: VerifyCodeRequest, response: Response) -> Dict[str, Any]:
    try:
        session = identity.verify_one_time_code(payload.email, payload.code)
    except AuthError as exc:
        raise HTTPException(status_code=400, detail=exc.message) from exc
    _set_session(response, session.token)
    return {"ok": True, "user_id": session.user_id}


@app.post("/api/auth/logout")
def logout(response: Response, token: Optional[str] = Depends(session_token)) -> Dict[str, Any]:
    identity.sign_out(token)
    _set_session(response, None)
    return {"ok": True}


@app.get("/api/me")
def me(token: Optional[str] = Depends(session_token)) -> Dict[str, Any]:
    user_id = _require_user(token)
    return {"user_id": user_id, "email": identity.get_email(user_id), "profile": _profile_payload(user_id)}


@app.put("/api/profile")
def update_profile(
    payload: ProfileUpdateRequest,
    token: Optional[str] = Depends(session_token),
) -> Dict[str, Any]:
    user_id = _require_user(token)
    result = profiles.update(user_id, payload.full_name, payload.avatar_url)
    if not result.success:
        raise HTTPException(status_code=_failure_status(result), detail=result.message)
    return {"ok": True, "profile": result.data.to_dict()}


@app.get("/api/events")
def list_events(
    category: Optional[Category] = None,
    city: Optional[City] = None,
    limit: Optional[int] = None,
) -> Dict[str, Any]:
    return {"items": [event.to_dict() for event in events.list(category=category, city=city, limit=limit)]}


@app.post("/api/events")
def create_event(
    payload: EventCreateRequest,
    token: Optional[str] = Depends(session_token),
) -> Dict[str, Any]:
    user_id = _require_user(token)
    try:
        event = events.create(user_id, payload.model_dump())
    except (ValidationError, StoreError) as exc:
        raise HTTPException(status_code=400, detail=exc.message) from exc
    return {"ok": True, "event": event.to_dict()}


@app.get("/api/events/{slug}")
def event_detail(slug: str, token: Optional[str] = Depends(session_token)) -> Dict[str, Any]:
    detail = events.detail(slug, _current_user(token))
    if not detail:
        raise HTTPException(status_code=404, detail="Event not found.")
    registration = detail["registration"]
    return {
        "event": detail["event"].to_dict(),
        "creator": detail["creator"].to_dict() if detail["creator"] else None,
        "registration_count": detail["registration_count"],
        "is_full": detail["is_full"],
        "is_creator": detail["is_creator"],
        "registration": registration_payload(registration, detail["event"]) if registration else None,
    }


@app.put("/api/events/{slug}")
def update_event(
    slug: str,
    payload: EventUpdateRequest,
    token: Optional[str] = Depends(session_token),
) -> Dict[str, Any]:
    user_id = _require_user(token)
    result = events.update(slug, user_id, payload.model_dump(exclude_unset=True))
    if not result.success:
        raise HTTPException(status_code=_failure_status(result), detail=result.message)
    return {"ok": True, "message": result.message, "event": result.data.to_dict()}


@app.delete("/api/events/{slug}")
def delete_event(slug: str, token: Optional[str] = Depends(session_token)) -> Dict[str, Any]:
    user_id = _require_user(token)
    result = events.delete(slug, user_id)
    if not result.success:
        raise HTTPException(status_code=_failure_status(result), detail=result.message)
    return {"ok": True, "message": result.message, "removed": result.data}


@app.get("/api/dashboard")
def dashboard(token: Optional[str] = Depends(session_token)) -> Dict[str, Any]:
    user_id = _require_user(token)
    data = events.dashboard(user_id)
    return {key: [event.to_dict() for event in items] for key, items in data.items()}


@app.post("/api/events/{slug}/wizard")
async def open_wizard(
    slug: str,
    response: Response,
    token: Optional[str] = Depends(session_token),
) -> Dict[str, Any]:
    _sweep_wizards()
    event = _require_event(slug)
    auth = AuthClient(identity, token)
    user_id = await auth.get_current_user()
    if user_id and await record_store.get_registration(event.id, user_id):
        raise HTTPException(status_code=409, detail="Already registered for this event.")

    wizard_id = uuid.uuid4().hex

    def remember_redirect(path: str) -> None:
        entry = wizards.get(wizard_id)
        if entry:
            entry.redirect_to = path

    wizard = RegistrationWizard(
        event,
        auth,
        record_store,
        is_logged_in=user_id is not None,
        user_email=identity.get_email(user_id) if user_id else None,
        user_profile=profiles.get(user_id) if user_id else None,
        navigate=remember_redirect,
    )
    wizard.open()
    entry = WizardEntry(wizard=wizard, client_key=secrets.token_urlsafe(16), session_token=token)
    wizards[wizard_id] = entry
    response.set_cookie(_wizard_cookie(wizard_id), entry.client_key, httponly=True, samesite="lax")
    logger.info("Registration dialog %s opened for event %s", wizard_id, event.id)
    return _wizard_payload(wizard_id, entry, response)


@app.get("/api/wizards/{wizard_id}")
def wizard_state(wizard_id: str, request: Request, response: Response) -> Dict[str, Any]:
    entry = _get_wizard(wizard_id, request)
    return _wizard_payload(wizard_id, entry, response)


@app.post("/api/wizards/{wizard_id}/ticket")
def wizard_select_ticket(
    wizard_id: str,
    request: Request,
    payload: TicketSelectRequest,
    response: Response,
) -> Dict[str, Any]:
    entry = _get_wizard(wizard_id, request)
    if not entry.wizard.select_ticket(payload.ticket_id):
        raise HTTPException(status_code=400, detail="Ticket cannot be selected now.")
    return _wizard_payload(wizard_id, entry, response)


@app.post("/api/wizards/{wizard_id}/confirm_ticket")
def wizard_confirm_ticket(wizard_id: str, request: Request, response: Response) -> Dict[str, Any]:
    entry = _get_wizard(wizard_id, request)
    entry.wizard.confirm_ticket()
    return _wizard_payload(wizard_id, entry, response)


@app.post("/api/wizards/{wizard_id}/back")
def wizard_back(wizard_id: str, request: Request, response: Response) -> Dict[str, Any]:
    entry = _get_wizard(wizard_id, request)
    entry.wizard.back_to_tickets()
    return _wizard_payload(wizard_id, entry, response)


@app.post("/api/wizards/{wizard_id}/info")
async def wizard_submit_info(
    wizard_id: str,
    request: Request,
    payload: AttendeeInfoRequest,
    response: Response,
) -> Dict[str, Any]:
    entry = _get_wizard(wizard_id, request)
    await entry.wizard.submit_info(AttendeeInfo(**payload.model_dump()))
    return _wizard_payload(wizard_id, entry, response)


@app.post("/api/wizards/{wizard_id}/verify")
async def wizard_verify(
    wizard_id: str,
    request: Request,
    payload: WizardCodeRequest,
    response: Response,
) -> Dict[str, Any]:
    entry = _get_wizard(wizard_id, request)
    await entry.wizard.verify_code(payload.code)
    return _wizard_payload(wizard_id, entry, response)


@app.post("/api/wizards/{wizard_id}/change_email")
def wizard_change_email(wizard_id: str, request: Request, response: Response) -> Dict[str, Any]:
    entry = _get_wizard(wizard_id, request)
    entry.wizard.change_email()
    return _wizard_payload(wizard_id, entry, response)


@app.delete("/api/wizards/{wizard_id}")
def close_wizard(wizard_id: str, request: Request, response: Response) -> Dict[str, Any]:
    entry = _get_wizard(wizard_id, request)
    wizards.pop(wizard_id, None)
    entry.wizard.close()
    response.delete_cookie(_wizard_cookie(wizard_id))
    return {"ok": True}


@app.get("/api/events/{slug}/ticket")
def ticket_view(slug: str, token: Optional[str] = Depends(session_token)) -> Dict[str, Any]:
    user_id = _require_user(token)
    view = registrations.ticket_view(slug, user_id)
    if not view:
        raise HTTPException(status_code=404, detail="No registration for this event.")
    return {
        "event": view["event"].to_dict(),
        "registration": registration_payload(view["registration"], view["event"]),
        "ticket": view["ticket"].to_dict() if view["ticket"] else None,
        "creator": view["creator"].to_dict() if view["creator"] else None,
    }


@app.delete("/api/events/{slug}/registration")
def cancel_registration(slug: str, token: Optional[str] = Depends(session_token)) -> Dict[str, Any]:
    user_id = _require_user(token)
    result = registrations.cancel_own(slug, user_id)
    if not result.success:
        raise HTTPException(status_code=_failure_status(result), detail=result.message)
    return {"ok": True, "message": result.message}


@app.get("/api/events/{slug}/attendees")
def attendees(
    slug: str,
    status: Optional[RegistrationStatus] = None,
    token: Optional[str] = Depends(session_token),
) -> Dict[str, Any]:
    user_id = _require_user(token)
    result = registrations.attendees(slug, user_id, status=status)
    if not result.success:
        raise HTTPException(status_code=_failure_status(result), detail=result.message)
    event = result.data["event"]
    return {
        "event": event.to_dict(),
        "counts": result.data["counts"],
        "items": [registration_payload(r, event) for r in result.data["registrations"]],
    }


@app.get("/api/events/{slug}/attendees/export_xlsx")
def export_attendees(slug: str, token: Optional[str] = Depends(session_token)) -> StreamingResponse:
    user_id = _require_user(token)
    result = registrations.export_attendees_xlsx(slug, user_id)
    if not result.success:
        raise HTTPException(status_code=_failure_status(result), detail=result.message)
    headers = {"Content-Disposition": f'attachment; filename="{slug}_attendees.xlsx"'}
    return StreamingResponse(
        result.data,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers=headers,
    )


@app.post("/api/registrations/{registration_id}/status")
def set_registration_status(
    registration_id: str,
    payload: StatusUpdateRequest,
    token: Optional[str] = Depends(session_token),
) -> Dict[str, Any]:
    user_id = _require_user(token)
    result = registrations.set_status(registration_id, payload.status, user_id)
    if not result.success:
        raise HTTPException(status_code=_failure_status(result), detail=result.message)
    return {"ok": True, "message": result.message, "registration": result.data.to_dict()}


@app.delete("/api/registrations/{registration_id}")
def delete_registration(
    registration_id: str,
    token: Optional[str] = Depends(session_token),
) -> Dict[str, Any]:
    user_id = _require_user(token)
    result = registrations.delete(registration_id, user_id)
    if not result.success:
        raise HTTPException(status_code=_failure_status(result), detail=result.message)
    return {"ok": True, "message": result.message}


def main() -> None:
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8080"))
    uvicorn.run("hachevents.server:app", host=host, port=port, reload=os.getenv("RELOAD", "0") == "1")


if __name__ == "__main__":
    main()
