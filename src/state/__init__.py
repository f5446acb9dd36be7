"""
State models and persistence for the grade scheduler.

- models: pydantic records for accounts, students, envelope secrets and grades
- vault: AES-GCM envelope decryption of stored secrets
- supabase_store: PostgREST-backed persistence for accounts and grades
"""

from .models import (
    Account,
    CourseRecord,
    CurrentGrade,
    EnvelopeSecret,
    GradeHistoryEntry,
    Student,
)

__all__ = [
    "Account",
    "CourseRecord",
    "CurrentGrade",
    "EnvelopeSecret",
    "GradeHistoryEntry",
    "Student",
]
