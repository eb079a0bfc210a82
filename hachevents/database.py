import json
import logging
import os
import re
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from hachevents.errors import ErrorCode, StoreError
from hachevents.models import (
    Category,
    City,
    Event,
    LocationType,
    Profile,
    Registration,
    RegistrationStatus,
    TicketOption,
)

EVENT_DATE_FORMAT = "%Y-%m-%d"
EVENT_TIME_FORMAT = "%H:%M"

logger = logging.getLogger(__name__)


def parse_event_date(value: str) -> datetime:
    return datetime.strptime(value, EVENT_DATE_FORMAT)


def parse_event_time(value: str) -> datetime:
    return datetime.strptime(value, EVENT_TIME_FORMAT)


def slugify(title: str) -> str:
    base = re.sub(r"[^\w]+", "-", title.strip().lower()).strip("-_")
    return base[:48].strip("-") or "event"


class Database:
    def __init__(self, path: str) -> None:
        dir_name = os.path.dirname(path)
        if dir_name:
            os.makedirs(dir_name, exist_ok=True)
        self.conn = sqlite3.connect(path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.execute("PRAGMA journal_mode = WAL")
        self.conn.execute("PRAGMA synchronous = NORMAL")
        self._init_schema()

    def _init_schema(self) -> None:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS profiles (
                id TEXT PRIMARY KEY,
                email TEXT NOT NULL,
                full_name TEXT,
                avatar_url TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS events (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                description TEXT,
                date TEXT NOT NULL,
                time TEXT NOT NULL,
                location_type TEXT NOT NULL CHECK (location_type IN ('online', 'in_person')),
                location TEXT,
                link TEXT,
                capacity INTEGER,
                cover_image TEXT,
                creator_id TEXT NOT NULL,
                city TEXT,
                category TEXT NOT NULL DEFAULT 'other',
                tickets TEXT NOT NULL DEFAULT '[]',
                slug TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS registrations (
                id TEXT PRIMARY KEY,
                event_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                ticket_id TEXT,
                first_name TEXT,
                last_name TEXT,
                phone TEXT,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'approved', 'rejected')),
                created_at TEXT NOT NULL,
                UNIQUE (event_id, user_id),
                FOREIGN KEY (event_id) REFERENCES events(id) ON DELETE CASCADE
            )
            """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS auth_users (
                id TEXT PRIMARY KEY,
                email TEXT NOT NULL UNIQUE,
                metadata TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                last_sign_in_at TEXT
            )
            """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS one_time_codes (
                email TEXT PRIMARY KEY,
                code_hash TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
            """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                token TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY (user_id) REFERENCES auth_users(id) ON DELETE CASCADE
            )
            """
        )
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_events_date ON events(date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_events_creator ON events(creator_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_registrations_user ON registrations(user_id)")
        self.conn.commit()

    def _utc_now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def _new_id(self) -> str:
        return str(uuid.uuid4())

    def _store_error(self, exc: sqlite3.Error) -> StoreError:
        text = str(exc)
        if isinstance(exc, sqlite3.IntegrityError):
            if "UNIQUE constraint failed" in text:
                return StoreError(ErrorCode.UNIQUE_VIOLATION, text)
            if "FOREIGN KEY constraint failed" in text:
                return StoreError(ErrorCode.NOT_FOUND, text)
            return StoreError(ErrorCode.INVALID, text)
        return StoreError(ErrorCode.INTERNAL, text)

    def _write(self, sql: str, params: Iterable[Any]) -> sqlite3.Cursor:
        cursor = self.conn.cursor()
        try:
            cursor.execute(sql, tuple(params))
            self.conn.commit()
        except sqlite3.Error as exc:
            self.conn.rollback()
            logger.warning("Write failed: %s", exc)
            raise self._store_error(exc) from exc
        return cursor

    # Profiles

    def _profile_from_row(self, row: sqlite3.Row) -> Profile:
        return Profile(**dict(row))

    def get_profile(self, user_id: str) -> Optional[Profile]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM profiles WHERE id = ?", (user_id,))
        row = cursor.fetchone()
        return self._profile_from_row(row) if row else None

    def upsert_profile(
        self,
        user_id: str,
        email: str,
        full_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Profile:
        now = self._utc_now()
        # email is written once; later upserts only touch the name/avatar
        self._write(
            """
            INSERT INTO profiles (id, email, full_name, avatar_url, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                full_name = COALESCE(excluded.full_name, profiles.full_name),
                avatar_url = COALESCE(excluded.avatar_url, profiles.avatar_url),
                updated_at = excluded.updated_at
            """,
            (user_id, email, full_name, avatar_url, now, now),
        )
        return self.get_profile(user_id)

    def update_profile(
        self,
        user_id: str,
        full_name: Optional[str],
        avatar_url: Optional[str],
    ) -> Tuple[bool, str, Optional[Profile]]:
        cursor = self._write(
            "UPDATE profiles SET full_name = ?, avatar_url = ?, updated_at = ? WHERE id = ?",
            (full_name, avatar_url, self._utc_now(), user_id),
        )
        if cursor.rowcount <= 0:
            return False, "Profile not found.", None
        return True, "Profile updated.", self.get_profile(user_id)

    # Events

    def _event_from_row(self, row: sqlite3.Row) -> Event:
        data = dict(row)
        tickets = [TicketOption.from_dict(item) for item in json.loads(data.pop("tickets") or "[]")]
        data["location_type"] = LocationType(data["location_type"])
        data["city"] = City(data["city"]) if data["city"] else None
        data["category"] = Category(data["category"] or Category.OTHER.value)
        return Event(tickets=tickets, **data)

    def _check_tickets(self, tickets: List[TicketOption]) -> None:
        seen = set()
        for ticket in tickets:
            if ticket.id in seen:
                raise StoreError(ErrorCode.INVALID, f"Duplicate ticket id: {ticket.id}")
            seen.add(ticket.id)
            if ticket.price < 0:
                raise StoreError(ErrorCode.INVALID, "Ticket price must be non-negative.")
            if ticket.capacity is not None and ticket.capacity <= 0:
                raise StoreError(ErrorCode.INVALID, "Ticket capacity must be positive.")

    def _tickets_json(self, tickets: List[TicketOption]) -> str:
        return json.dumps([ticket.to_dict() for ticket in tickets], ensure_ascii=False)

    def _unique_slug(self, title: str) -> str:
        base = slugify(title)
        cursor = self.conn.cursor()
        while True:
            candidate = f"{base}-{uuid.uuid4().hex[:6]}"
            cursor.execute("SELECT 1 FROM events WHERE slug = ?", (candidate,))
            if cursor.fetchone() is None:
                return candidate

    def create_event(
        self,
        creator_id: str,
        title: str,
        date: str,
        time: str,
        location_type: LocationType = LocationType.IN_PERSON,
        description: Optional[str] = None,
        location: Optional[str] = None,
        link: Optional[str] = None,
        capacity: Optional[int] = None,
        cover_image: Optional[str] = None,
        city: Optional[City] = None,
        category: Category = Category.OTHER,
        tickets: Optional[List[TicketOption]] = None,
    ) -> Event:
        tickets = list(tickets or [])
        self._check_tickets(tickets)
        try:
            parse_event_date(date)
            parse_event_time(time)
        except ValueError as exc:
            raise StoreError(ErrorCode.INVALID, "Invalid date/time format. Use YYYY-MM-DD and HH:MM") from exc

        event_id = self._new_id()
        now = self._utc_now()
        self._write(
            """
            INSERT INTO events (
                id, title, description, date, time, location_type, location, link,
                capacity, cover_image, creator_id, city, category, tickets, slug,
                created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event_id,
                title,
                description,
                date,
                time,
                LocationType(location_type).value,
                location,
                link,
                capacity,
                cover_image,
                creator_id,
                City(city).value if city else None,
                Category(category).value,
                self._tickets_json(tickets),
                self._unique_slug(title),
                now,
                now,
            ),
        )
        logger.info("Event %s created by %s", event_id, creator_id)
        return self.get_event(event_id)

    def get_event(self, event_id: str) -> Optional[Event]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM events WHERE id = ?", (event_id,))
        row = cursor.fetchone()
        return self._event_from_row(row) if row else None

    def get_event_by_slug(self, slug: str) -> Optional[Event]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM events WHERE slug = ?", (slug,))
        row = cursor.fetchone()
        return self._event_from_row(row) if row else None

    def list_events(
        self,
        category: Optional[Category] = None,
        city: Optional[City] = None,
        limit: Optional[int] = None,
    ) -> List[Event]:
        query = "SELECT * FROM events WHERE 1 = 1"
        params: List[Any] = []
        if category:
            query += " AND category = ?"
            params.append(Category(category).value)
        if city:
            query += " AND city = ?"
            params.append(City(city).value)
        query += " ORDER BY date ASC, time ASC"
        if limit is not None and int(limit) > 0:
            query += " LIMIT ?"
            params.append(int(limit))
        cursor = self.conn.cursor()
        cursor.execute(query, tuple(params))
        return [self._event_from_row(row) for row in cursor.fetchall()]

    def list_events_by_creator(self, creator_id: str) -> List[Event]:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM events WHERE creator_id = ? ORDER BY date ASC, time ASC",
            (creator_id,),
        )
        return [self._event_from_row(row) for row in cursor.fetchall()]

    def list_events_by_ids(self, event_ids: List[str]) -> List[Event]:
        if not event_ids:
            return []
        placeholders = ", ".join(["?"] * len(event_ids))
        cursor = self.conn.cursor()
        cursor.execute(
            f"SELECT * FROM events WHERE id IN ({placeholders}) ORDER BY date ASC, time ASC",
            tuple(event_ids),
        )
        return [self._event_from_row(row) for row in cursor.fetchall()]

    def update_event(
        self,
        slug: str,
        creator_id: str,
        updates: Dict[str, Any],
    ) -> Tuple[bool, str, Optional[Event]]:
        allowed = {
            "title",
            "description",
            "date",
            "time",
            "location_type",
            "location",
            "link",
            "capacity",
            "cover_image",
            "city",
            "category",
            "tickets",
        }
        if not updates:
            return False, "No fields provided.", None

        event = self.get_event_by_slug(slug)
        if not event:
            return False, "Event not found.", None
        if event.creator_id != creator_id:
            return False, "Only the event creator can edit it.", event

        assignments: List[str] = []
        params: List[Any] = []
        for key, value in updates.items():
            if key not in allowed:
                return False, f"Unsupported field: {key}", event
            if key == "date":
                try:
                    parse_event_date(str(value))
                except ValueError:
                    return False, "Invalid date format. Use YYYY-MM-DD", event
            if key == "time":
                try:
                    parse_event_time(str(value))
                except ValueError:
                    return False, "Invalid time format. Use HH:MM", event
            if key == "tickets":
                tickets = [t if isinstance(t, TicketOption) else TicketOption.from_dict(t) for t in value]
                try:
                    self._check_tickets(tickets)
                except StoreError as exc:
                    return False, exc.message, event
                value = self._tickets_json(tickets)
            try:
                if key == "location_type":
                    value = LocationType(value).value
                if key == "city":
                    value = City(value).value if value else None
                if key == "category":
                    value = Category(value or Category.OTHER).value
            except ValueError:
                return False, f"Invalid value for {key}: {value}", event
            assignments.append(f"{key} = ?")
            params.append(value)

        assignments.append("updated_at = ?")
        params.append(self._utc_now())
        params.append(event.id)
        self._write(f"UPDATE events SET {', '.join(assignments)} WHERE id = ?", params)
        return True, "Event updated.", self.get_event(event.id)

    def delete_event(self, slug: str, creator_id: str) -> Tuple[bool, str, Dict[str, int]]:
        event = self.get_event_by_slug(slug)
        if not event:
            return False, "Event not found.", {"events": 0, "registrations": 0}
        if event.creator_id != creator_id:
            return False, "Only the event creator can delete it.", {"events": 0, "registrations": 0}

        registration_count = self.count_registrations(event.id)
        self._write("DELETE FROM events WHERE id = ?", (event.id,))
        logger.info("Event %s deleted with %s registrations", event.id, registration_count)
        return (
            True,
            f"Event deleted. Removed {registration_count} registrations.",
            {"events": 1, "registrations": registration_count},
        )

    # Registrations

    def _registration_from_row(self, row: sqlite3.Row) -> Registration:
        data = dict(row)
        data["status"] = RegistrationStatus(data["status"])
        return Registration(**data)

    def insert_registration(
        self,
        event_id: str,
        user_id: str,
        ticket_id: Optional[str],
        first_name: Optional[str],
        last_name: Optional[str],
        phone: Optional[str],
        status: RegistrationStatus = RegistrationStatus.PENDING,
    ) -> Registration:
        event = self.get_event(event_id)
        if not event:
            raise StoreError(ErrorCode.NOT_FOUND, "Event not found")
        if ticket_id is not None and event.ticket_by_id(ticket_id) is None:
            raise StoreError(ErrorCode.INVALID, "Unknown ticket for this event")

        registration_id = self._new_id()
        self._write(
            """
            INSERT INTO registrations (
                id, event_id, user_id, ticket_id, first_name, last_name, phone, status, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                registration_id,
                event_id,
                user_id,
                ticket_id,
                first_name,
                last_name,
                phone,
                RegistrationStatus(status).value,
                self._utc_now(),
            ),
        )
        logger.info("Registration %s created for event %s", registration_id, event_id)
        return self.get_registration(registration_id)

    def get_registration(self, registration_id: str) -> Optional[Registration]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM registrations WHERE id = ?", (registration_id,))
        row = cursor.fetchone()
        return self._registration_from_row(row) if row else None

    def get_registration_for(self, event_id: str, user_id: str) -> Optional[Registration]:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM registrations WHERE event_id = ? AND user_id = ?",
            (event_id, user_id),
        )
        row = cursor.fetchone()
        return self._registration_from_row(row) if row else None

    def list_registrations_for_event(
        self,
        event_id: str,
        status: Optional[RegistrationStatus] = None,
    ) -> List[Registration]:
        query = "SELECT * FROM registrations WHERE event_id = ?"
        params: List[Any] = [event_id]
        if status:
            query += " AND status = ?"
            params.append(RegistrationStatus(status).value)
        query += " ORDER BY created_at DESC"
        cursor = self.conn.cursor()
        cursor.execute(query, tuple(params))
        return [self._registration_from_row(row) for row in cursor.fetchall()]

    def list_registrations_for_user(self, user_id: str) -> List[Registration]:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM registrations WHERE user_id = ? ORDER BY created_at DESC",
            (user_id,),
        )
        return [self._registration_from_row(row) for row in cursor.fetchall()]

    def count_registrations(self, event_id: str) -> int:
        cursor = self.conn.cursor()
        cursor.execute("SELECT COUNT(*) AS cnt FROM registrations WHERE event_id = ?", (event_id,))
        return int(cursor.fetchone()["cnt"])

    def _owned_registration(
        self,
        registration_id: str,
        actor_id: str,
    ) -> Tuple[Optional[Registration], Optional[str]]:
        registration = self.get_registration(registration_id)
        if not registration:
            return None, "Registration not found."
        event = self.get_event(registration.event_id)
        if not event or event.creator_id != actor_id:
            return registration, "Only the event creator can manage registrations."
        return registration, None

    def set_registration_status(
        self,
        registration_id: str,
        status: RegistrationStatus,
        actor_id: str,
    ) -> Tuple[bool, str, Optional[Registration]]:
        registration, problem = self._owned_registration(registration_id, actor_id)
        if problem:
            return False, problem, registration
        status = RegistrationStatus(status)
        if registration.status == status:
            return False, f"Registration is already {status.value}.", registration

        self._write(
            "UPDATE registrations SET status = ? WHERE id = ?",
            (status.value, registration_id),
        )
        logger.info("Registration %s moved to %s by %s", registration_id, status.value, actor_id)
        return True, f"Registration {status.value}.", self.get_registration(registration_id)

    def delete_registration(self, registration_id: str, actor_id: str) -> Tuple[bool, str, Optional[Registration]]:
        registration, problem = self._owned_registration(registration_id, actor_id)
        if problem:
            return False, problem, registration
        self._write("DELETE FROM registrations WHERE id = ?", (registration_id,))
        logger.info("Registration %s deleted by %s", registration_id, actor_id)
        return True, "Registration deleted.", registration

    def cancel_registration(self, event_id: str, user_id: str) -> Tuple[bool, str, Optional[Registration]]:
        registration = self.get_registration_for(event_id, user_id)
        if not registration:
            return False, "Registration not found for your account.", None
        self._write("DELETE FROM registrations WHERE id = ?", (registration.id,))
        logger.info("Registration %s cancelled by registrant", registration.id)
        return True, "Registration cancelled.", registration

    # Identity tables

    def get_auth_user_by_email(self, email: str) -> Optional[sqlite3.Row]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM auth_users WHERE email = ?", (email,))
        return cursor.fetchone()

    def get_auth_user(self, user_id: str) -> Optional[sqlite3.Row]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM auth_users WHERE id = ?", (user_id,))
        return cursor.fetchone()

    def create_auth_user(self, email: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        user_id = self._new_id()
        self._write(
            "INSERT INTO auth_users (id, email, metadata, created_at) VALUES (?, ?, ?, ?)",
            (user_id, email, json.dumps(metadata or {}, ensure_ascii=False), self._utc_now()),
        )
        return user_id

    def mark_signed_in(self, user_id: str) -> None:
        self._write(
            "UPDATE auth_users SET last_sign_in_at = ? WHERE id = ?",
            (self._utc_now(), user_id),
        )

    def save_one_time_code(self, email: str, code_hash: str, expires_at: str, created_at: str) -> None:
        self._write(
            """
            INSERT INTO one_time_codes (email, code_hash, expires_at, attempts, created_at)
            VALUES (?, ?, ?, 0, ?)
            ON CONFLICT(email) DO UPDATE SET
                code_hash = excluded.code_hash,
                expires_at = excluded.expires_at,
                attempts = 0,
                created_at = excluded.created_at
            """,
            (email, code_hash, expires_at, created_at),
        )

    def get_one_time_code(self, email: str) -> Optional[sqlite3.Row]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM one_time_codes WHERE email = ?", (email,))
        return cursor.fetchone()

    def bump_code_attempts(self, email: str) -> None:
        self._write("UPDATE one_time_codes SET attempts = attempts + 1 WHERE email = ?", (email,))

    def delete_one_time_code(self, email: str) -> None:
        self._write("DELETE FROM one_time_codes WHERE email = ?", (email,))

    def create_session(self, user_id: str, token: str) -> None:
        self._write(
            "INSERT INTO sessions (token, user_id, created_at) VALUES (?, ?, ?)",
            (token, user_id, self._utc_now()),
        )

    def get_session_user(self, token: str) -> Optional[str]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT user_id FROM sessions WHERE token = ?", (token,))
        row = cursor.fetchone()
        return row["user_id"] if row else None

    def delete_session(self, token: str) -> None:
        self._write("DELETE FROM sessions WHERE token = ?", (token,))
