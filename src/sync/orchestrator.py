from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any, Callable, Dict, Optional

from state.models import Account, PortalCredentials, Student, StudentIdentity
from state.supabase_store import PersistenceError


logger = logging.getLogger(__name__)

SYNC_INTERVAL_MINUTES = 15

# One sync at a time per process; a tick that finds it held is skipped
_RUN_LOCK = threading.Lock()


def due_slot(now: datetime) -> int:
    """Schedule slot due at `now`: [0,15)->0, [15,30)->15, [30,45)->30, [45,60)->45."""
    return (now.minute // SYNC_INTERVAL_MINUTES) * SYNC_INTERVAL_MINUTES


@dataclass
class SyncStats:
    slot: int
    ok: bool = True
    accounts: int = 0
    accounts_failed: int = 0
    students: int = 0
    students_failed: int = 0
    courses: int = 0
    courses_failed: int = 0
    history_appended: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SyncOrchestrator:
    """
    Runs one scheduling tick: select due accounts, then for each account
    decrypt credentials, fetch every student's gradebook and reconcile each
    course.

    Accounts, students and courses are processed one after another. Any failure
    is logged and confined to its own unit: the loop moves on to the next
    course, student or account.

    An account is marked synced once its student loop finishes, even if every
    student in it failed. Accounts whose own credentials cannot be decrypted are
    not marked.
    """

    def __init__(
        self,
        *,
        store,
        vault,
        portal,
        reconciler,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._vault = vault
        self._portal = portal
        self._reconciler = reconciler
        self._clock = clock or (lambda: datetime.now(UTC))

    def run(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        if not _RUN_LOCK.acquire(blocking=False):
            logger.warning("Previous grade sync still running; skipping this tick")
            return {"ok": True, "skipped": True}
        try:
            return self._run(now or self._clock()).as_dict()
        finally:
            _RUN_LOCK.release()

    def _run(self, now: datetime) -> SyncStats:
        stats = SyncStats(slot=due_slot(now))
        logger.info("Running grade sync at %s for schedule slot %d", now.isoformat(), stats.slot)

        try:
            accounts = self._store.due_accounts(stats.slot)
        except PersistenceError:
            logger.exception("Failed to load accounts due for slot %d", stats.slot)
            stats.ok = False
            return stats

        if not accounts:
            logger.info("No accounts due for sync at this time")
            return stats

        logger.info("Found %d accounts to sync", len(accounts))
        for account in accounts:
            stats.accounts += 1
            if not self.sync_account(account, stats):
                stats.accounts_failed += 1

        logger.info(
            "Grade sync completed: %d/%d students ok, %d history entries",
            stats.students - stats.students_failed,
            stats.students,
            stats.history_appended,
        )
        return stats

    def sync_account(self, account: Account, stats: SyncStats) -> bool:
        logger.info("Syncing account %s (%d students)", account.id, len(account.students))
        try:
            payload = self._vault.decrypt_envelope(account.credentials)
            credentials = PortalCredentials.model_validate_json(payload)
        except Exception:
            logger.exception("Failed to decrypt credentials for account %s", account.id)
            return False

        for student in account.students:
            self.sync_student(student, credentials, stats)

        try:
            self._store.mark_account_synced(account.id, self._clock())
        except Exception:
            logger.exception("Failed to record last sync for account %s", account.id)
            return False

        logger.info("Account %s synced", account.id)
        return True

    def sync_student(self, student: Student, credentials: PortalCredentials, stats: SyncStats) -> None:
        stats.students += 1
        try:
            secret = student.identity_secret()
            identity = StudentIdentity.model_validate_json(self._vault.decrypt_envelope(secret))
            courses = self._portal.fetch_grades(credentials.username, credentials.password, identity.int_id)
        except Exception:
            stats.students_failed += 1
            logger.exception("Error syncing student %s", student.id)
            return

        for course in courses:
            stats.courses += 1
            try:
                outcome = self._reconciler.reconcile(student.id, course)
            except Exception:
                stats.courses_failed += 1
                logger.exception("Error updating grade for student %s, course %r", student.id, course.title)
                continue
            if outcome.history_appended:
                stats.history_appended += 1

        logger.info("Updated %d grades for student %s", len(courses), student.id)
