"""Async facade over the sqlite record store.

The registration wizard awaits every collaborator call; this keeps the
wizard independent of how the rows are actually stored. Database calls
run in the threadpool.
"""

from typing import Optional

from starlette.concurrency import run_in_threadpool

from hachevents.database import Database
from hachevents.errors import ErrorCode, StoreError
from hachevents.models import Event, Profile, Registration, RegistrationStatus


class RecordStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def insert_registration(
        self,
        event_id: str,
        user_id: str,
        ticket_id: Optional[str],
        first_name: str,
        last_name: str,
        phone: str,
        status: RegistrationStatus,
    ) -> Registration:
        return await run_in_threadpool(
            self.db.insert_registration,
            event_id=event_id,
            user_id=user_id,
            ticket_id=ticket_id,
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            status=status,
        )

    async def upsert_profile(self, user_id: str, email: str, full_name: Optional[str] = None) -> Profile:
        return await run_in_threadpool(self.db.upsert_profile, user_id, email, full_name=full_name)

    async def get_event(self, slug: Optional[str] = None, event_id: Optional[str] = None) -> Optional[Event]:
        if slug is not None:
            return await run_in_threadpool(self.db.get_event_by_slug, slug)
        if event_id is not None:
            return await run_in_threadpool(self.db.get_event, event_id)
        raise StoreError(ErrorCode.INVALID, "Either slug or event_id is required.")

    async def get_registration(self, event_id: str, user_id: str) -> Optional[Registration]:
        return await run_in_threadpool(self.db.get_registration_for, event_id, user_id)
