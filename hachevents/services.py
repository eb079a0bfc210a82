import logging
import uuid
from collections import Counter
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Dict, List, Optional

from openpyxl import Workbook

from hachevents.database import Database, parse_event_date, parse_event_time
from hachevents.errors import ErrorCode, ValidationError
from hachevents.formatting import format_price
from hachevents.models import (
    Category,
    City,
    Event,
    LocationType,
    Profile,
    Registration,
    RegistrationStatus,
    STATUS_LABELS,
    TicketOption,
)

DEFAULT_TICKET_NAME = "رایگان"

logger = logging.getLogger(__name__)


@dataclass
class ActionResult:
    success: bool
    message: str
    data: Optional[Any] = None
    code: Optional[ErrorCode] = None


def default_ticket() -> TicketOption:
    return TicketOption(id=str(uuid.uuid4()), name=DEFAULT_TICKET_NAME)


def normalize_tickets(raw_tickets: List[Dict[str, Any]]) -> List[TicketOption]:
    tickets = []
    for raw in raw_tickets:
        name = str(raw.get("name") or "").strip()
        if not name:
            raise ValidationError("Every ticket needs a name.")
        ticket = TicketOption.from_dict({**raw, "id": raw.get("id") or str(uuid.uuid4()), "name": name})
        if ticket.price < 0:
            raise ValidationError("Ticket price must be non-negative.")
        if ticket.capacity is not None and ticket.capacity <= 0:
            ticket.capacity = None
        tickets.append(ticket)
    ids = [ticket.id for ticket in tickets]
    if len(ids) != len(set(ids)):
        raise ValidationError("Ticket ids must be unique within an event.")
    return tickets


def _creator_check(event: Optional[Event], actor_id: str, action: str) -> Optional[ActionResult]:
    if not event:
        return ActionResult(False, "Event not found.", code=ErrorCode.NOT_FOUND)
    if event.creator_id != actor_id:
        return ActionResult(False, f"Only the event creator can {action}.", event, ErrorCode.FORBIDDEN)
    return None


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class ProfileService:
    def __init__(self, db: Database) -> None:
        self.db = db

    def get(self, user_id: str) -> Optional[Profile]:
        return self.db.get_profile(user_id)

    def update(self, user_id: str, full_name: Optional[str], avatar_url: Optional[str]) -> ActionResult:
        ok, message, profile = self.db.update_profile(
            user_id,
            _blank_to_none(full_name),
            _blank_to_none(avatar_url),
        )
        return ActionResult(ok, message, profile, None if ok else ErrorCode.NOT_FOUND)


class EventService:
    def __init__(self, db: Database) -> None:
        self.db = db

    def _clean_values(self, values: Dict[str, Any]) -> Dict[str, Any]:
        cleaned: Dict[str, Any] = {}
        for key, value in values.items():
            if key in {"description", "location", "link", "cover_image"}:
                value = _blank_to_none(value)
            elif key == "title":
                value = str(value or "").strip()
                if not value:
                    raise ValidationError("Title is required.")
            elif key == "date":
                try:
                    parse_event_date(str(value))
                except ValueError as exc:
                    raise ValidationError("Invalid date format. Use YYYY-MM-DD") from exc
            elif key == "time":
                try:
                    parse_event_time(str(value))
                except ValueError as exc:
                    raise ValidationError("Invalid time format. Use HH:MM") from exc
            elif key in {"city", "category", "location_type"}:
                try:
                    if key == "city":
                        value = City(value) if value else None
                    elif key == "category":
                        value = Category(value) if value else Category.OTHER
                    else:
                        value = LocationType(value)
                except ValueError as exc:
                    raise ValidationError(f"Invalid value for {key}: {value}") from exc
            elif key == "tickets":
                value = normalize_tickets(value or [])
            cleaned[key] = value
        return cleaned

    def create(self, creator_id: str, values: Dict[str, Any]) -> Event:
        values = dict(values)
        raw_tickets = values.pop("tickets", None)
        cleaned = self._clean_values(values)
        for required in ("title", "date", "time"):
            if not cleaned.get(required):
                raise ValidationError(f"{required} is required.")
        # the creation form starts with a single free ticket
        cleaned["tickets"] = normalize_tickets(raw_tickets) if raw_tickets is not None else [default_ticket()]
        # capacity is not collected on creation
        cleaned.pop("capacity", None)
        return self.db.create_event(creator_id=creator_id, **cleaned)

    def update(self, slug: str, creator_id: str, values: Dict[str, Any]) -> ActionResult:
        denied = _creator_check(self.db.get_event_by_slug(slug), creator_id, "edit it")
        if denied:
            return denied
        try:
            cleaned = self._clean_values(values)
        except ValidationError as exc:
            return ActionResult(False, exc.message, code=exc.code)
        ok, message, event = self.db.update_event(slug, creator_id, cleaned)
        return ActionResult(ok, message, event, None if ok else ErrorCode.INVALID)

    def delete(self, slug: str, creator_id: str) -> ActionResult:
        denied = _creator_check(self.db.get_event_by_slug(slug), creator_id, "delete it")
        if denied:
            return denied
        ok, message, counts = self.db.delete_event(slug, creator_id)
        return ActionResult(ok, message, counts, None if ok else ErrorCode.INVALID)

    def list(
        self,
        category: Optional[Category] = None,
        city: Optional[City] = None,
        limit: Optional[int] = None,
    ) -> List[Event]:
        return self.db.list_events(category=category, city=city, limit=limit)

    def get(self, slug: str) -> Optional[Event]:
        return self.db.get_event_by_slug(slug)

    def detail(self, slug: str, viewer_id: Optional[str]) -> Optional[Dict[str, Any]]:
        event = self.db.get_event_by_slug(slug)
        if not event:
            return None
        registration_count = self.db.count_registrations(event.id)
        registration = self.db.get_registration_for(event.id, viewer_id) if viewer_id else None
        return {
            "event": event,
            "creator": self.db.get_profile(event.creator_id),
            "registration_count": registration_count,
            # advisory only, registration is not blocked by the wizard
            "is_full": event.capacity is not None and registration_count >= event.capacity,
            "is_creator": viewer_id is not None and viewer_id == event.creator_id,
            "registration": registration,
        }

    def dashboard(self, user_id: str) -> Dict[str, List[Event]]:
        my_events = self.db.list_events_by_creator(user_id)
        event_ids = [registration.event_id for registration in self.db.list_registrations_for_user(user_id)]
        return {
            "my_events": my_events,
            "registered_events": self.db.list_events_by_ids(event_ids),
        }


class RegistrationService:
    def __init__(self, db: Database) -> None:
        self.db = db

    def _owned_event(self, slug: str, actor_id: str) -> ActionResult:
        event = self.db.get_event_by_slug(slug)
        return _creator_check(event, actor_id, "view attendees") or ActionResult(True, "", event)

    def _owned_registration(self, registration_id: str, actor_id: str) -> ActionResult:
        registration = self.db.get_registration(registration_id)
        if not registration:
            return ActionResult(False, "Registration not found.", code=ErrorCode.NOT_FOUND)
        event = self.db.get_event(registration.event_id)
        return _creator_check(event, actor_id, "manage registrations") or ActionResult(True, "", registration)

    def attendees(
        self,
        slug: str,
        actor_id: str,
        status: Optional[RegistrationStatus] = None,
    ) -> ActionResult:
        owned = self._owned_event(slug, actor_id)
        if not owned.success:
            return owned
        event = owned.data
        registrations = self.db.list_registrations_for_event(event.id)
        by_status = Counter(registration.status for registration in registrations)
        counts = {"all": len(registrations)}
        counts.update({item.value: by_status.get(item, 0) for item in RegistrationStatus})
        if status:
            registrations = [r for r in registrations if r.status == RegistrationStatus(status)]
        return ActionResult(
            True,
            "OK",
            {"event": event, "registrations": registrations, "counts": counts},
        )

    def set_status(self, registration_id: str, status: RegistrationStatus, actor_id: str) -> ActionResult:
        owned = self._owned_registration(registration_id, actor_id)
        if not owned.success:
            return owned
        ok, message, registration = self.db.set_registration_status(registration_id, status, actor_id)
        return ActionResult(ok, message, registration, None if ok else ErrorCode.INVALID)

    def delete(self, registration_id: str, actor_id: str) -> ActionResult:
        owned = self._owned_registration(registration_id, actor_id)
        if not owned.success:
            return owned
        ok, message, registration = self.db.delete_registration(registration_id, actor_id)
        return ActionResult(ok, message, registration, None if ok else ErrorCode.INVALID)

    def cancel_own(self, slug: str, user_id: str) -> ActionResult:
        event = self.db.get_event_by_slug(slug)
        if not event:
            return ActionResult(False, "Event not found.", code=ErrorCode.NOT_FOUND)
        ok, message, registration = self.db.cancel_registration(event.id, user_id)
        return ActionResult(ok, message, registration, None if ok else ErrorCode.NOT_FOUND)

    def ticket_view(self, slug: str, user_id: str) -> Optional[Dict[str, Any]]:
        event = self.db.get_event_by_slug(slug)
        if not event:
            return None
        registration = self.db.get_registration_for(event.id, user_id)
        if not registration:
            return None
        return {
            "event": event,
            "registration": registration,
            "ticket": event.ticket_by_id(registration.ticket_id),
            "creator": self.db.get_profile(event.creator_id),
        }

    def export_attendees_xlsx(self, slug: str, actor_id: str) -> ActionResult:
        owned = self._owned_event(slug, actor_id)
        if not owned.success:
            return owned
        event: Event = owned.data

        workbook = Workbook()
        sheet = workbook.active
        sheet.title = "Attendees"
        sheet.sheet_view.rightToLeft = True
        sheet.append(["نام", "نام خانوادگی", "موبایل", "بلیط", "قیمت", "وضعیت", "تاریخ ثبت‌نام"])
        for registration in self.db.list_registrations_for_event(event.id):
            ticket = event.ticket_by_id(registration.ticket_id)
            sheet.append(
                [
                    registration.first_name or "",
                    registration.last_name or "",
                    registration.phone or "",
                    ticket.name if ticket else "",
                    format_price(ticket.price) if ticket else "",
                    STATUS_LABELS[registration.status],
                    registration.created_at,
                ]
            )

        output = BytesIO()
        workbook.save(output)
        output.seek(0)
        logger.info("Attendee export for event %s by %s", event.id, actor_id)
        return ActionResult(True, "OK", output)


def registration_payload(registration: Registration, event: Optional[Event] = None) -> Dict[str, Any]:
    payload = registration.to_dict()
    if event is not None:
        ticket = event.ticket_by_id(registration.ticket_id)
        payload["ticket"] = ticket.to_dict() if ticket else None
    return payload
