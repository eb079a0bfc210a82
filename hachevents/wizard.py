"""Registration wizard: ticket -> attendee info -> email code -> receipt.

One wizard instance backs one open registration dialog. It keeps the form
state in memory, awaits the identity provider and the record store at each
step and commits exactly one registration row on success. Every failure
leaves the wizard on the step it was on, with the entered data intact, and
queues a short notice for the user.
"""

import logging
import re
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from hachevents.errors import AuthError, StoreError
from hachevents.formatting import format_price, ticket_label
from hachevents.identity import AuthClient
from hachevents.models import Event, Profile, Registration, RegistrationStatus, TicketOption
from hachevents.store import RecordStore

CODE_RE = re.compile(r"^\d{6}$")

MSG_FILL_ALL_FIELDS = "لطفاً همه فیلدها رو پر کن"
MSG_CODE_SEND_FAILED = "خطا در ارسال کد تأیید"
MSG_CODE_SENT = "کد تأیید ارسال شد!"
MSG_CHECK_INBOX = "ایمیلت رو چک کن 📧"
MSG_CODE_FORMAT = "کد باید ۶ رقم باشه"
MSG_WRONG_CODE = "کد اشتباهه"
MSG_TRY_AGAIN = "دوباره امتحان کن"
MSG_SIGNED_IN = "وارد شدی! 🎉"
MSG_SIGN_IN_AGAIN = "لطفاً دوباره وارد شو"
MSG_ALREADY_REGISTERED = "قبلاً ثبت‌نام کردی!"
MSG_SOMETHING_WRONG = "یه مشکلی پیش اومد"
MSG_REGISTERED = "ثبت‌نام با موفقیت انجام شد! 🎉"

logger = logging.getLogger(__name__)


class WizardStep(str, Enum):
    TICKET_SELECTION = "ticket_selection"
    ATTENDEE_INFO = "attendee_info"
    OTP_VERIFICATION = "otp_verification"
    RECEIPT = "receipt"


@dataclass
class AttendeeInfo:
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def missing_fields(self) -> List[str]:
        return [name for name, value in asdict(self).items() if not value.strip()]

    def stripped(self) -> "AttendeeInfo":
        return AttendeeInfo(**{name: value.strip() for name, value in asdict(self).items()})


@dataclass
class Notice:
    level: str
    title: str
    description: Optional[str] = None


class RegistrationWizard:
    def __init__(
        self,
        event: Event,
        auth: AuthClient,
        store: RecordStore,
        is_logged_in: bool = False,
        user_email: Optional[str] = None,
        user_profile: Optional[Profile] = None,
        on_success: Optional[Callable[[], Any]] = None,
        navigate: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self.event = event
        self.tickets: List[TicketOption] = list(event.tickets)
        self.auth = auth
        self.store = store
        self.is_logged_in = is_logged_in
        self.user_email = user_email
        self.user_profile = user_profile
        self.on_success = on_success
        self.navigate = navigate

        self.is_open = False
        self.is_busy = False
        self.notices: List[Notice] = []
        self._reset()

    @property
    def initial_step(self) -> WizardStep:
        # zero or one ticket: nothing to choose
        if len(self.tickets) <= 1:
            return WizardStep.ATTENDEE_INFO
        return WizardStep.TICKET_SELECTION

    @property
    def email_locked(self) -> bool:
        return self.is_logged_in

    @property
    def can_go_back(self) -> bool:
        return self.step == WizardStep.ATTENDEE_INFO and len(self.tickets) > 1

    def _default_ticket(self) -> Optional[TicketOption]:
        return self.tickets[0] if self.tickets else None

    def _prefilled_info(self) -> AttendeeInfo:
        if self.is_logged_in and self.user_profile:
            parts = (self.user_profile.full_name or "").split(" ")
            return AttendeeInfo(
                first_name=parts[0],
                last_name=" ".join(parts[1:]),
                email=self.user_profile.email or self.user_email or "",
            )
        return AttendeeInfo(email=self.user_email or "")

    def _reset(self) -> None:
        self.step = self.initial_step
        self.selected_ticket = self._default_ticket()
        self.info = self._prefilled_info()
        self.code = ""
        self.registration: Optional[Registration] = None

    def _notify(self, level: str, title: str, description: Optional[str] = None) -> None:
        self.notices.append(Notice(level=level, title=title, description=description))

    def _move(self, step: WizardStep) -> None:
        logger.debug("Wizard for event %s: %s -> %s", self.event.id, self.step.value, step.value)
        self.step = step

    def pop_notices(self) -> List[Notice]:
        notices, self.notices = self.notices, []
        return notices

    def open(self) -> None:
        if self.is_open:
            return
        self._reset()
        self.is_open = True

    def close(self) -> None:
        """Dialog dismissed: forget everything entered and go idle."""
        self._reset()
        self.notices = []
        self.is_open = False

    def select_ticket(self, ticket_id: str) -> bool:
        if self.step != WizardStep.TICKET_SELECTION:
            return False
        for ticket in self.tickets:
            if ticket.id == ticket_id:
                self.selected_ticket = ticket
                return True
        return False

    def confirm_ticket(self) -> bool:
        if self.step != WizardStep.TICKET_SELECTION or self.selected_ticket is None:
            return False
        self._move(WizardStep.ATTENDEE_INFO)
        return True

    def back_to_tickets(self) -> bool:
        if not self.can_go_back:
            return False
        self._move(WizardStep.TICKET_SELECTION)
        return True

    def change_email(self) -> bool:
        if self.step != WizardStep.OTP_VERIFICATION:
            return False
        self.code = ""
        self._move(WizardStep.ATTENDEE_INFO)
        return True

    def update_info(self, info: AttendeeInfo) -> None:
        email = self.info.email if self.email_locked else info.email
        self.info = AttendeeInfo(
            first_name=info.first_name,
            last_name=info.last_name,
            email=email,
            phone=info.phone,
        )

    async def submit_info(self, info: Optional[AttendeeInfo] = None) -> None:
        if self.step != WizardStep.ATTENDEE_INFO or self.is_busy:
            return
        if info is not None:
            self.update_info(info)
        if self.info.missing_fields():
            self._notify("error", MSG_FILL_ALL_FIELDS)
            return
        self.info = self.info.stripped()

        self.is_busy = True
        try:
            if self.is_logged_in:
                await self._complete_registration()
                return
            try:
                await self.auth.request_one_time_code(
                    self.info.email,
                    create_if_missing=True,
                    metadata={"full_name": self.info.full_name},
                )
            except AuthError as exc:
                logger.warning("Code request for %s failed: %s", self.info.email, exc)
                self._notify("error", MSG_CODE_SEND_FAILED, exc.message)
                return
            self._notify("success", MSG_CODE_SENT, MSG_CHECK_INBOX)
            self._move(WizardStep.OTP_VERIFICATION)
        finally:
            self.is_busy = False

    async def verify_code(self, code: str) -> None:
        if self.step != WizardStep.OTP_VERIFICATION or self.is_busy:
            return
        if self.is_logged_in:
            # code already accepted; only the commit is left to retry
            self.is_busy = True
            try:
                await self._complete_registration()
            finally:
                self.is_busy = False
            return
        self.code = (code or "").strip()
        if not CODE_RE.match(self.code):
            self._notify("error", MSG_CODE_FORMAT)
            return

        self.is_busy = True
        try:
            try:
                user_id = await self.auth.verify_one_time_code(self.info.email, self.code)
            except AuthError as exc:
                logger.info("Code verification for %s failed: %s", self.info.email, exc)
                self.code = ""
                self._notify("error", MSG_WRONG_CODE, MSG_TRY_AGAIN)
                return

            self.code = ""
            self.is_logged_in = True
            try:
                await self.store.upsert_profile(user_id, self.info.email, full_name=self.info.full_name)
            except StoreError as exc:
                logger.warning("Profile upsert for %s failed: %s", user_id, exc)
            self._notify("success", MSG_SIGNED_IN)
            await self._complete_registration()
        finally:
            self.is_busy = False

    def _status_for(self, ticket: Optional[TicketOption]) -> RegistrationStatus:
        if ticket is not None and ticket.requires_approval:
            return RegistrationStatus.PENDING
        return RegistrationStatus.APPROVED

    async def _complete_registration(self) -> bool:
        # the session may have been created a moment ago by verify_code
        try:
            user_id = await self.auth.get_current_user()
        except AuthError as exc:
            logger.warning("Could not read current user: %s", exc)
            user_id = None
        if not user_id:
            self._notify("error", MSG_SIGN_IN_AGAIN)
            return False

        ticket = self.selected_ticket
        try:
            registration = await self.store.insert_registration(
                event_id=self.event.id,
                user_id=user_id,
                ticket_id=ticket.id if ticket else None,
                first_name=self.info.first_name,
                last_name=self.info.last_name,
                phone=self.info.phone,
                status=self._status_for(ticket),
            )
        except StoreError as exc:
            if exc.is_unique_violation:
                self._notify("error", MSG_ALREADY_REGISTERED)
            else:
                logger.warning("Registration insert for event %s failed: %s", self.event.id, exc)
                self._notify("error", MSG_SOMETHING_WRONG, exc.message or None)
            return False

        self.registration = registration
        self._move(WizardStep.RECEIPT)
        self._notify("success", MSG_REGISTERED)
        if self.on_success:
            self.on_success()
        if self.navigate:
            self.navigate(f"/{self.event.slug}/ticket")
        return True

    def receipt(self) -> Optional[Dict[str, Any]]:
        if self.step != WizardStep.RECEIPT or self.registration is None:
            return None
        ticket = self.selected_ticket
        return {
            "event_title": self.event.title,
            "event_date": self.event.date,
            "event_location": self.event.location,
            "attendee": self.info.full_name,
            "email": self.info.email,
            "phone": self.info.phone,
            "ticket_name": ticket.name if ticket else None,
            "ticket_price": format_price(ticket.price) if ticket else None,
            "awaiting_approval": self.registration.status == RegistrationStatus.PENDING,
            "tracking_code": self.registration.tracking_code,
        }

    def snapshot(self) -> Dict[str, Any]:
        return {
            "is_open": self.is_open,
            "step": self.step.value,
            "is_busy": self.is_busy,
            "tickets": [{**ticket.to_dict(), "label": ticket_label(ticket)} for ticket in self.tickets],
            "selected_ticket_id": self.selected_ticket.id if self.selected_ticket else None,
            "info": asdict(self.info),
            "email_locked": self.email_locked,
            "can_go_back": self.can_go_back,
            "receipt": self.receipt(),
        }
