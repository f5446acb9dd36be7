"""
Common utilities for the grade scheduler.

Modules:
- edupoint: EduPoint ParentVUE PXP SOAP client and response decoding
"""

__all__ = [
    "edupoint",
]
