from __future__ import annotations

import json
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# Quarter-hour offsets an account can be scheduled on
SCHEDULE_SLOTS = (0, 15, 30, 45)


class _Row(BaseModel):
    """Base for records read from the store (PostgREST rows)."""

    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)


class EnvelopeSecret(BaseModel):
    """
    Envelope-encrypted secret as written by the provisioning flow.

    Stored as a single JSON text column (``dek_wrapped_scheduler``) with the keys
    ``encryptedData, iv, tag, wrappedDEK, wrappedIV, wrappedTag``; every value is
    a hex string. The six fields are produced together and only make sense
    together: the payload is sealed under a random data key (DEK), and the DEK
    is sealed under a key derived from the scheduler master key.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    ciphertext: str = Field(..., alias="encryptedData")
    iv: str
    tag: str
    wrapped_dek: str = Field(..., alias="wrappedDEK")
    wrapped_iv: str = Field(..., alias="wrappedIV")
    wrapped_tag: str = Field(..., alias="wrappedTag")

    @model_validator(mode="before")
    @classmethod
    def _parse_json_text(cls, data: Any) -> Any:
        # The column holds JSON text rather than a jsonb object
        if isinstance(data, (str, bytes)):
            return json.loads(data)
        return data

    def to_json(self) -> str:
        return json.dumps(self.model_dump(by_alias=True), separators=(",", ":"), sort_keys=True)


class Student(_Row):
    """
    A student linked to an account.

    ``identity`` holds the secret column as stored (JSON text, a dict, an
    EnvelopeSecret, or None). It is only validated by `identity_secret()` so a
    malformed row fails that student alone, not the whole account.
    """

    id: str
    account_id: Optional[str] = None
    identity: Any = Field(None, alias="dek_wrapped_scheduler")

    def identity_secret(self) -> EnvelopeSecret:
        return EnvelopeSecret.model_validate(self.identity)


class Account(_Row):
    """
    A parent's school-portal account and the students linked to it.

    Fields
    - credentials: envelope holding ``{"username", "password"}`` for the portal.
    - schedule_slot: minute offset (0/15/30/45) the account is synced on.
    - verified: only verified accounts are ever synced.
    - last_sync_at: set after each completed sync of the account.
    """

    id: str
    credentials: EnvelopeSecret = Field(..., alias="dek_wrapped_scheduler")
    schedule_slot: int = Field(0, alias="cron_schedule_minutes")
    verified: bool = Field(False, alias="is_verified")
    last_sync_at: Optional[datetime] = None
    students: List[Student] = Field(default_factory=list)

    @field_validator("schedule_slot")
    @classmethod
    def _known_slot(cls, v: int) -> int:
        if v not in SCHEDULE_SLOTS:
            raise ValueError(f"schedule slot must be one of {SCHEDULE_SLOTS}, got {v}")
        return v

    @field_validator("students", mode="before")
    @classmethod
    def _null_students(cls, v: Any) -> Any:
        return [] if v is None else v

    @model_validator(mode="after")
    def _link_students(self) -> "Account":
        for student in self.students:
            if student.account_id is None:
                student.account_id = self.id
        return self


class PortalCredentials(BaseModel):
    """Decrypted account payload."""

    username: str
    password: str


class StudentIdentity(_Row):
    """Decrypted student payload; ``intId`` is the portal's ChildIntID."""

    int_id: str = Field(..., alias="intId")


class CourseRecord(BaseModel):
    title: str = ""
    teacher: str = ""
    room: str = ""
    period: str = ""
    calculated_score: str = ""


class CurrentGrade(_Row):
    """Latest known state of one course for one student; one row per (student_id, course_title)."""

    id: Optional[str] = None
    student_id: str
    course_title: str
    teacher_name: str = ""
    room: str = ""
    period: str = ""
    calculated_score: str = ""
    last_updated: datetime

    @field_validator("teacher_name", "room", "period", "calculated_score", mode="before")
    @classmethod
    def _blank_if_none(cls, v: Any) -> Any:
        return "" if v is None else v

    @classmethod
    def from_course(cls, student_id: str, course: CourseRecord, now: datetime) -> "CurrentGrade":
        return cls(
            student_id=student_id,
            course_title=course.title,
            teacher_name=course.teacher,
            room=course.room,
            period=course.period,
            calculated_score=course.calculated_score,
            last_updated=now,
        )


class GradeHistoryEntry(_Row):
    """Append-only record of a score transition (including the first sighting)."""

    student_id: str
    course_title: str
    teacher_name: str = ""
    room: str = ""
    period: str = ""
    calculated_score: str = ""
    recorded_at: datetime

    @field_validator("teacher_name", "room", "period", "calculated_score", mode="before")
    @classmethod
    def _blank_if_none(cls, v: Any) -> Any:
        return "" if v is None else v

    @classmethod
    def from_course(cls, student_id: str, course: CourseRecord, now: datetime) -> "GradeHistoryEntry":
        return cls(
            student_id=student_id,
            course_title=course.title,
            teacher_name=course.teacher,
            room=course.room,
            period=course.period,
            calculated_score=course.calculated_score,
            recorded_at=now,
        )
