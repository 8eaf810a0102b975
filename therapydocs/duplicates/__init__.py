"""
Duplicate-session safeguards for Therapy Docs.

Design intent:
- Warn before a clinician documents the same session twice.
- Keep detection pure so it can be recomputed on any client/date change.
"""
