from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable, Optional

from state.models import CourseRecord, CurrentGrade, GradeHistoryEntry
from state.supabase_store import DuplicateRowError, PersistenceError


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class ReconcileOutcome:
    inserted: bool
    history_appended: bool


class GradeReconciler:
    """
    Folds one fetched course into the current-grade table and the history.

    - First sighting of (student, course): insert the current row and one
      history entry with the same values.
    - Known course: overwrite teacher/room/period/score/last_updated; append a
      history entry only when the score differs from the stored one.

    The update is conditional on the stored score still being the one that was
    read, and an insert that collides with a concurrent insert is retried as an
    update. Overlapping runs therefore record a given transition at most once.
    """

    def __init__(
        self,
        store,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        max_attempts: int = 2,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        self._store = store
        self._clock = clock or _utcnow
        self._max_attempts = max_attempts

    def reconcile(self, student_id: str, course: CourseRecord) -> ReconcileOutcome:
        for _ in range(self._max_attempts):
            existing = self._store.get_current_grade(student_id, course.title)
            now = self._clock()

            if existing is None:
                try:
                    self._store.insert_current_grade(CurrentGrade.from_course(student_id, course, now))
                except DuplicateRowError:
                    logger.info(
                        "Concurrent insert of %r for student %s; re-reading", course.title, student_id
                    )
                    continue
                self._append_history(student_id, course, now, previous_score=None)
                return ReconcileOutcome(inserted=True, history_appended=True)

            updated = self._store.update_current_grade(
                existing.id,
                teacher_name=course.teacher,
                room=course.room,
                period=course.period,
                calculated_score=course.calculated_score,
                last_updated=now,
                expected_score=existing.calculated_score,
            )
            if not updated:
                logger.info(
                    "Grade for %r of student %s changed underneath us; re-reading", course.title, student_id
                )
                continue

            if existing.calculated_score == course.calculated_score:
                return ReconcileOutcome(inserted=False, history_appended=False)

            self._append_history(student_id, course, now, previous_score=existing.calculated_score)
            return ReconcileOutcome(inserted=False, history_appended=True)

        raise PersistenceError(
            f"Gave up reconciling {course.title!r} for student {student_id} "
            f"after {self._max_attempts} attempts"
        )

    def _append_history(
        self, student_id: str, course: CourseRecord, now: datetime, *, previous_score: Optional[str]
    ) -> None:
        # The current row is already committed; a later sync sees no change, so
        # a failed write here loses the transition unless it is backfilled.
        try:
            self._store.append_history(GradeHistoryEntry.from_course(student_id, course, now))
        except PersistenceError:
            logger.error(
                "History entry lost for student %s, course %r: %s -> %r at %s; backfill grade_history",
                student_id,
                course.title,
                "first sighting" if previous_score is None else repr(previous_score),
                course.calculated_score,
                now.isoformat(),
            )
            raise
