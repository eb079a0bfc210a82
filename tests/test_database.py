import os
import tempfile
import unittest

from hachevents.database import Database, slugify
from hachevents.errors import ErrorCode, StoreError
from hachevents.models import Category, City, LocationType, RegistrationStatus, TicketOption


class DatabaseTests(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.temp_dir.name, "test.db")
        self.db = Database(self.db_path)

        self.creator_id = self.db.create_auth_user("creator@example.com")
        self.db.upsert_profile(self.creator_id, "creator@example.com", full_name="Sara Ahmadi")
        self.user_id = self.db.create_auth_user("guest@example.com")

    def tearDown(self):
        self.temp_dir.cleanup()

    def _create_event(self, title="Sample Event", tickets=None, **kwargs):
        if tickets is None:
            tickets = [
                TicketOption(id="free", name="Free"),
                TicketOption(id="vip", name="VIP", price=250000, requires_approval=True),
            ]
        return self.db.create_event(
            creator_id=self.creator_id,
            title=title,
            date=kwargs.pop("date", "2026-05-01"),
            time=kwargs.pop("time", "18:30"),
            location="Azadi Hall",
            tickets=tickets,
            **kwargs,
        )

    def _register(self, event, user_id=None, ticket_id="free", status=RegistrationStatus.APPROVED):
        return self.db.insert_registration(
            event_id=event.id,
            user_id=user_id or self.user_id,
            ticket_id=ticket_id,
            first_name="Ali",
            last_name="Rezaei",
            phone="09120000000",
            status=status,
        )

    def test_slugify_keeps_persian_letters(self):
        self.assertEqual(slugify("Python Meetup #3"), "python-meetup-3")
        self.assertEqual(slugify("همایش  برنامه‌نویسی"), "همایش-برنامه-نویسی")
        self.assertEqual(slugify("!!!"), "event")

    def test_create_event_round_trips_tickets_and_defaults(self):
        event = self._create_event(city=City.SHIRAZ)

        loaded = self.db.get_event_by_slug(event.slug)
        self.assertIsNotNone(loaded)
        self.assertEqual(loaded.id, event.id)
        self.assertEqual(loaded.category, Category.OTHER)
        self.assertEqual(loaded.location_type, LocationType.IN_PERSON)
        self.assertEqual(loaded.city, City.SHIRAZ)
        self.assertEqual([ticket.id for ticket in loaded.tickets], ["free", "vip"])
        self.assertTrue(loaded.ticket_by_id("vip").requires_approval)
        self.assertEqual(loaded.ticket_by_id("vip").price, 250000)
        self.assertTrue(loaded.slug.startswith("sample-event-"))

    def test_event_slugs_are_unique_for_same_title(self):
        first = self._create_event()
        second = self._create_event()
        self.assertNotEqual(first.slug, second.slug)

    def test_create_event_rejects_duplicate_ticket_ids(self):
        tickets = [TicketOption(id="a", name="One"), TicketOption(id="a", name="Two")]
        with self.assertRaises(StoreError) as ctx:
            self._create_event(tickets=tickets)
        self.assertEqual(ctx.exception.code, ErrorCode.INVALID)

    def test_create_event_rejects_bad_date(self):
        with self.assertRaises(StoreError):
            self._create_event(date="01/05/2026")

    def test_list_events_filters_and_orders(self):
        later = self._create_event(title="Later", date="2026-06-01", category=Category.TECH)
        earlier = self._create_event(title="Earlier", date="2026-04-01", category=Category.TECH, city=City.TEHRAN)
        self._create_event(title="Music", date="2026-05-01", category=Category.MUSIC)

        tech = self.db.list_events(category=Category.TECH)
        self.assertEqual([event.id for event in tech], [earlier.id, later.id])

        tehran = self.db.list_events(city=City.TEHRAN)
        self.assertEqual([event.id for event in tehran], [earlier.id])

        self.assertEqual(len(self.db.list_events(limit=2)), 2)

    def test_update_event_only_by_creator(self):
        event = self._create_event()

        ok, msg, _ = self.db.update_event(event.slug, self.user_id, {"title": "Hijacked"})
        self.assertFalse(ok)
        self.assertIn("Only the event creator", msg)

        ok, msg, updated = self.db.update_event(
            event.slug,
            self.creator_id,
            {"title": "Renamed", "category": "tech", "city": None},
        )
        self.assertTrue(ok, msg)
        self.assertEqual(updated.title, "Renamed")
        self.assertEqual(updated.category, Category.TECH)
        self.assertIsNone(updated.city)
        self.assertEqual(updated.slug, event.slug)

    def test_update_event_rejects_unknown_field_and_bad_time(self):
        event = self._create_event()

        ok, msg, _ = self.db.update_event(event.slug, self.creator_id, {"creator_id": self.user_id})
        self.assertFalse(ok)
        self.assertIn("Unsupported field", msg)

        ok, msg, _ = self.db.update_event(event.slug, self.creator_id, {"time": "25:99"})
        self.assertFalse(ok)
        self.assertIn("HH:MM", msg)

    def test_registration_is_unique_per_event_and_user(self):
        event = self._create_event()
        self._register(event)

        with self.assertRaises(StoreError) as ctx:
            self._register(event, ticket_id="vip")
        self.assertTrue(ctx.exception.is_unique_violation)
        self.assertEqual(ctx.exception.code.value, "23505")
        self.assertEqual(self.db.count_registrations(event.id), 1)

    def test_insert_registration_checks_event_and_ticket(self):
        event = self._create_event()

        with self.assertRaises(StoreError) as ctx:
            self.db.insert_registration("missing", self.user_id, "free", "A", "B", "1")
        self.assertEqual(ctx.exception.code, ErrorCode.NOT_FOUND)

        with self.assertRaises(StoreError) as ctx:
            self._register(event, ticket_id="nope")
        self.assertEqual(ctx.exception.code, ErrorCode.INVALID)

    def test_registration_tracking_code_is_id_prefix(self):
        event = self._create_event()
        registration = self._register(event)
        self.assertEqual(registration.tracking_code, registration.id[:8].upper())
        self.assertEqual(len(registration.tracking_code), 8)

    def test_set_status_only_by_creator_and_only_on_change(self):
        event = self._create_event()
        registration = self._register(event, ticket_id="vip", status=RegistrationStatus.PENDING)

        ok, msg, _ = self.db.set_registration_status(registration.id, RegistrationStatus.APPROVED, self.user_id)
        self.assertFalse(ok)
        self.assertIn("Only the event creator", msg)

        ok, msg, updated = self.db.set_registration_status(
            registration.id,
            RegistrationStatus.APPROVED,
            self.creator_id,
        )
        self.assertTrue(ok, msg)
        self.assertEqual(updated.status, RegistrationStatus.APPROVED)

        ok, msg, _ = self.db.set_registration_status(registration.id, "approved", self.creator_id)
        self.assertFalse(ok)
        self.assertIn("already approved", msg)

    def test_list_registrations_filters_by_status(self):
        event = self._create_event()
        other_id = self.db.create_auth_user("other@example.com")
        self._register(event, status=RegistrationStatus.APPROVED)
        self._register(event, user_id=other_id, ticket_id="vip", status=RegistrationStatus.PENDING)

        pending = self.db.list_registrations_for_event(event.id, status=RegistrationStatus.PENDING)
        self.assertEqual([r.user_id for r in pending], [other_id])
        self.assertEqual(len(self.db.list_registrations_for_event(event.id)), 2)

    def test_delete_event_cascades_registrations(self):
        event = self._create_event()
        registration = self._register(event)

        ok, _msg, _counts = self.db.delete_event(event.slug, self.user_id)
        self.assertFalse(ok)

        ok, msg, counts = self.db.delete_event(event.slug, self.creator_id)
        self.assertTrue(ok, msg)
        self.assertEqual(counts, {"events": 1, "registrations": 1})
        self.assertIsNone(self.db.get_event(event.id))
        self.assertIsNone(self.db.get_registration(registration.id))

    def test_cancel_registration_frees_the_slot(self):
        event = self._create_event()
        self._register(event)

        ok, msg, _ = self.db.cancel_registration(event.id, self.user_id)
        self.assertTrue(ok, msg)
        self.assertIsNone(self.db.get_registration_for(event.id, self.user_id))

        registration = self._register(event, ticket_id="vip")
        self.assertEqual(registration.ticket_id, "vip")

        ok, _msg, _ = self.db.cancel_registration(event.id, self.creator_id)
        self.assertFalse(ok)

    def test_upsert_profile_keeps_email_and_existing_name(self):
        self.db.upsert_profile(self.user_id, "guest@example.com", full_name="Ali Rezaei")
        profile = self.db.upsert_profile(self.user_id, "changed@example.com", full_name=None)

        self.assertEqual(profile.email, "guest@example.com")
        self.assertEqual(profile.full_name, "Ali Rezaei")

        profile = self.db.upsert_profile(self.user_id, "guest@example.com", full_name="Ali R")
        self.assertEqual(profile.full_name, "Ali R")

    def test_one_time_code_is_replaced_per_email(self):
        self.db.save_one_time_code("guest@example.com", "hash-1", "2026-01-01T00:10:00+00:00", "2026-01-01T00:00:00+00:00")
        self.db.bump_code_attempts("guest@example.com")
        self.db.save_one_time_code("guest@example.com", "hash-2", "2026-01-01T00:20:00+00:00", "2026-01-01T00:10:00+00:00")

        row = self.db.get_one_time_code("guest@example.com")
        self.assertEqual(row["code_hash"], "hash-2")
        self.assertEqual(row["attempts"], 0)

        self.db.delete_one_time_code("guest@example.com")
        self.assertIsNone(self.db.get_one_time_code("guest@example.com"))

    def test_sessions_resolve_to_users(self):
        self.db.create_session(self.user_id, "token-1")
        self.assertEqual(self.db.get_session_user("token-1"), self.user_id)
        self.db.delete_session("token-1")
        self.assertIsNone(self.db.get_session_user("token-1"))


if __name__ == "__main__":
    unittest.main()
