import importlib
import os
import tempfile
import unittest
from io import BytesIO

from fastapi.testclient import TestClient
from openpyxl import load_workbook


class RecordingMailer:
    def __init__(self):
        self.sent = []

    def send_code(self, email, code):
        self.sent.append((email, code))

    @property
    def last_code(self):
        return self.sent[-1][1]


class ApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.temp_dir.name, "api_test.db")
        self._env_keys = ("DATABASE_PATH", "SMTP_HOST", "SESSION_COOKIE", "OTP_RESEND_SECONDS", "WEB_APP_URL")
        self._env_backup = {key: os.environ.get(key) for key in self._env_keys}
        os.environ["DATABASE_PATH"] = self.db_path
        os.environ["SMTP_HOST"] = ""
        os.environ["SESSION_COOKIE"] = "hach_session"
        os.environ["OTP_RESEND_SECONDS"] = "0"
        os.environ["WEB_APP_URL"] = "https://example.invalid"

        import hachevents.server as server

        self.server = importlib.reload(server)
        self.mailer = RecordingMailer()
        self.server.identity.mailer = self.mailer
        self.client = TestClient(self.server.app)
        self.db = self.server.db

        self.host_token, self.host_id = self._session_for("host@example.com", "Sara Ahmadi")

    def tearDown(self) -> None:
        try:
            self.client.close()
        except Exception:
            pass
        for key, value in self._env_backup.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value
        self.temp_dir.cleanup()

    def _session_for(self, email, full_name):
        identity = self.server.identity
        identity.send_one_time_code(email, metadata={"full_name": full_name})
        session = identity.verify_one_time_code(email, self.mailer.last_code)
        return session.token, session.user_id

    def _use(self, token):
        self.client.cookies.clear()
        if token:
            self.client.cookies.set("hach_session", token)

    def _create_event(self, tickets=None, **values):
        self._use(self.host_token)
        payload = {"title": "Python Night", "date": "2026-05-01", "time": "19:00", "category": "tech"}
        payload.update(values)
        if tickets is not None:
            payload["tickets"] = tickets
        response = self.client.post("/api/events", json=payload)
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["event"]

    def _multi_ticket_event(self):
        return self._create_event(
            tickets=[
                {"id": "free", "name": "رایگان"},
                {"id": "vip", "name": "VIP", "price": 250000, "requires_approval": True},
            ]
        )

    def test_health(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_meta_lists_cities_and_categories(self):
        payload = self.client.get("/api/meta").json()
        self.assertEqual(len(payload["cities"]), 15)
        self.assertEqual(payload["categories"]["other"], "سایر")
        self.assertIn("tech", payload["category_icons"])

    def test_email_sign_in_sets_session_cookie(self):
        self._use(None)
        response = self.client.post("/api/auth/otp", json={"email": "guest@example.com"})
        self.assertEqual(response.status_code, 200, response.text)

        bad = self.client.post("/api/auth/verify", json={"email": "guest@example.com", "code": "abc"})
        self.assertEqual(bad.status_code, 400)

        response = self.client.post(
            "/api/auth/verify",
            json={"email": "guest@example.com", "code": self.mailer.last_code},
        )
        self.assertEqual(response.status_code, 200, response.text)

        me = self.client.get("/api/me")
        self.assertEqual(me.status_code, 200, me.text)
        self.assertEqual(me.json()["email"], "guest@example.com")

        self.client.post("/api/auth/logout")
        self.assertEqual(self.client.get("/api/me").status_code, 401)

    def test_create_event_requires_sign_in(self):
        self._use(None)
        response = self.client.post("/api/events", json={"title": "X", "date": "2026-05-01", "time": "19:00"})
        self.assertEqual(response.status_code, 401)

    def test_create_and_filter_events(self):
        created = self._create_event(city="tehran")
        self.assertEqual(created["category"], "tech")
        self.assertEqual(len(created["tickets"]), 1)
        self._create_event(title="Jazz", category="music")

        self._use(None)
        listing = self.client.get("/api/events", params={"category": "tech"}).json()["items"]
        self.assertEqual([item["slug"] for item in listing], [created["slug"]])
        listing = self.client.get("/api/events", params={"city": "tehran"}).json()["items"]
        self.assertEqual(len(listing), 1)

        invalid = self.client.get("/api/events", params={"city": "atlantis"})
        self.assertEqual(invalid.status_code, 422)

    def test_create_event_rejects_bad_date(self):
        self._use(self.host_token)
        response = self.client.post("/api/events", json={"title": "X", "date": "tomorrow", "time": "19:00"})
        self.assertEqual(response.status_code, 400)

    def test_update_and_delete_are_creator_only(self):
        event = self._create_event()
        guest_token, _ = self._session_for("guest@example.com", "Ali Rezaei")

        self._use(guest_token)
        response = self.client.put(f"/api/events/{event['slug']}", json={"title": "Mine now"})
        self.assertEqual(response.status_code, 403)
        response = self.client.delete(f"/api/events/{event['slug']}")
        self.assertEqual(response.status_code, 403)

        self._use(self.host_token)
        response = self.client.put(f"/api/events/{event['slug']}", json={"title": "Python Night II"})
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["event"]["title"], "Python Night II")

        response = self.client.put("/api/events/missing", json={"title": "Nope"})
        self.assertEqual(response.status_code, 404)

        response = self.client.delete(f"/api/events/{event['slug']}")
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(self.client.get(f"/api/events/{event['slug']}").status_code, 404)

    def test_anonymous_wizard_registers_and_signs_in(self):
        event = self._multi_ticket_event()
        slug = event["slug"]
        self._use(None)

        state = self.client.post(f"/api/events/{slug}/wizard").json()
        wizard_id = state["wizard_id"]
        self.assertEqual(state["step"], "ticket_selection")
        self.assertEqual(state["selected_ticket_id"], "free")

        state = self.client.post(f"/api/wizards/{wizard_id}/ticket", json={"ticket_id": "vip"}).json()
        self.assertEqual(state["selected_ticket_id"], "vip")
        state = self.client.post(f"/api/wizards/{wizard_id}/confirm_ticket").json()
        self.assertEqual(state["step"], "attendee_info")
        self.assertTrue(state["can_go_back"])

        state = self.client.post(f"/api/wizards/{wizard_id}/info", json={"first_name": "Ali"}).json()
        self.assertEqual(state["step"], "attendee_info")
        self.assertEqual(state["notices"][0]["title"], "لطفاً همه فیلدها رو پر کن")

        info = {"first_name": "Ali", "last_name": "Rezaei", "email": "ali@example.com", "phone": "0912"}
        state = self.client.post(f"/api/wizards/{wizard_id}/info", json=info).json()
        self.assertEqual(state["step"], "otp_verification")

        response = self.client.post(f"/api/wizards/{wizard_id}/verify", json={"code": self.mailer.last_code})
        self.assertEqual(response.status_code, 200, response.text)
        state = response.json()
        self.assertEqual(state["step"], "receipt")
        self.assertEqual(state["redirect_to"], f"/{slug}/ticket")
        self.assertTrue(state["receipt"]["awaiting_approval"])

        ticket = self.client.get(f"/api/events/{slug}/ticket")
        self.assertEqual(ticket.status_code, 200, ticket.text)
        self.assertEqual(ticket.json()["registration"]["status"], "pending")
        self.assertEqual(ticket.json()["ticket"]["id"], "vip")

        again = self.client.post(f"/api/events/{slug}/wizard")
        self.assertEqual(again.status_code, 409)

    def test_closed_wizard_is_gone(self):
        event = self._create_event()
        self._use(None)
        wizard_id = self.client.post(f"/api/events/{event['slug']}/wizard").json()["wizard_id"]

        self.assertEqual(self.client.delete(f"/api/wizards/{wizard_id}").status_code, 200)
        self.assertEqual(self.client.get(f"/api/wizards/{wizard_id}").status_code, 404)
        self.assertEqual(self.client.post("/api/events/missing/wizard").status_code, 404)

    def test_wizard_answers_only_the_browser_that_opened_it(self):
        event = self._create_event()
        self._use(None)
        wizard_id = self.client.post(f"/api/events/{event['slug']}/wizard").json()["wizard_id"]

        other = TestClient(self.server.app)
        self.addCleanup(other.close)
        self.assertEqual(other.get(f"/api/wizards/{wizard_id}").status_code, 404)
        other.cookies.set(f"hach_wizard_{wizard_id}", "guessed")
        self.assertEqual(other.post(f"/api/wizards/{wizard_id}/confirm_ticket").status_code, 404)
        self.assertEqual(other.delete(f"/api/wizards/{wizard_id}").status_code, 404)

        self.assertIn(wizard_id, self.server.wizards)
        self.assertEqual(self.client.get(f"/api/wizards/{wizard_id}").status_code, 200)

    def test_wizard_is_dropped_after_receipt(self):
        event = self._create_event()
        guest_token, _ = self._session_for("guest@example.com", "Ali Rezaei")
        self._use(guest_token)
        wizard_id = self.client.post(f"/api/events/{event['slug']}/wizard").json()["wizard_id"]

        info = {"first_name": "Ali", "last_name": "Rezaei", "email": "guest@example.com", "phone": "0912"}
        state = self.client.post(f"/api/wizards/{wizard_id}/info", json=info).json()

        self.assertEqual(state["step"], "receipt")
        self.assertNotIn(wizard_id, self.server.wizards)
        self.assertEqual(self.client.get(f"/api/wizards/{wizard_id}").status_code, 404)

    def test_idle_wizards_are_swept_when_another_opens(self):
        event = self._create_event()
        self._use(None)
        stale_ids = [
            self.client.post(f"/api/events/{event['slug']}/wizard").json()["wizard_id"] for _ in range(3)
        ]
        for wizard_id in stale_ids:
            self.server.wizards[wizard_id].last_seen -= self.server.WIZARD_TTL_SECONDS + 1

        fresh_id = self.client.post(f"/api/events/{event['slug']}/wizard").json()["wizard_id"]

        self.assertEqual(list(self.server.wizards), [fresh_id])
        self.assertEqual(self.client.get(f"/api/wizards/{stale_ids[0]}").status_code, 404)

    def test_signed_in_wizard_is_prefilled(self):
        event = self._create_event()
        guest_token, guest_id = self._session_for("guest@example.com", "Ali Rezaei")
        self._use(guest_token)

        state = self.client.post(f"/api/events/{event['slug']}/wizard").json()
        self.assertEqual(state["step"], "attendee_info")
        self.assertTrue(state["email_locked"])
        self.assertEqual(state["info"]["first_name"], "Ali")
        self.assertEqual(state["info"]["email"], "guest@example.com")

        info = {"first_name": "Ali", "last_name": "Rezaei", "email": "x@example.com", "phone": "0912"}
        state = self.client.post(f"/api/wizards/{state['wizard_id']}/info", json=info).json()
        self.assertEqual(state["step"], "receipt")
        self.assertEqual(state["receipt"]["email"], "guest@example.com")

        detail = self.client.get(f"/api/events/{event['slug']}").json()
        self.assertEqual(detail["registration"]["user_id"], guest_id)
        self.assertEqual(detail["registration_count"], 1)

        dashboard = self.client.get("/api/dashboard").json()
        self.assertEqual([e["slug"] for e in dashboard["registered_events"]], [event["slug"]])

        cancel = self.client.delete(f"/api/events/{event['slug']}/registration")
        self.assertEqual(cancel.status_code, 200, cancel.text)
        self.assertEqual(self.client.get(f"/api/events/{event['slug']}/ticket").status_code, 404)

    def test_creator_moderates_attendees(self):
        event = self._multi_ticket_event()
        guest_token, guest_id = self._session_for("guest@example.com", "Ali Rezaei")
        registration = self.db.insert_registration(
            event_id=event["id"],
            user_id=guest_id,
            ticket_id="vip",
            first_name="Ali",
            last_name="Rezaei",
            phone="0912",
        )

        self._use(guest_token)
        self.assertEqual(self.client.get(f"/api/events/{event['slug']}/attendees").status_code, 403)
        response = self.client.post(f"/api/registrations/{registration.id}/status", json={"status": "approved"})
        self.assertEqual(response.status_code, 403)

        self._use(self.host_token)
        payload = self.client.get(f"/api/events/{event['slug']}/attendees", params={"status": "pending"}).json()
        self.assertEqual(payload["counts"]["pending"], 1)
        self.assertEqual(payload["items"][0]["tracking_code"], registration.tracking_code)

        response = self.client.post(f"/api/registrations/{registration.id}/status", json={"status": "approved"})
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["registration"]["status"], "approved")

        response = self.client.post(f"/api/registrations/{registration.id}/status", json={"status": "approved"})
        self.assertEqual(response.status_code, 400)

        export = self.client.get(f"/api/events/{event['slug']}/attendees/export_xlsx")
        self.assertEqual(export.status_code, 200, export.text)
        self.assertIn("spreadsheetml", export.headers.get("content-type", ""))
        sheet = load_workbook(BytesIO(export.content))["Attendees"]
        self.assertEqual(sheet.cell(row=2, column=1).value, "Ali")

        response = self.client.delete(f"/api/registrations/{registration.id}")
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(self.client.delete(f"/api/registrations/{registration.id}").status_code, 404)

    def test_profile_update(self):
        self._use(self.host_token)
        response = self.client.put("/api/profile", json={"full_name": "Sara A.", "avatar_url": ""})
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["profile"]["full_name"], "Sara A.")
        self.assertIsNone(response.json()["profile"]["avatar_url"])


if __name__ == "__main__":
    unittest.main()
