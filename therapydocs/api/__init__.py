"""
HTTP boundary for the Therapy Docs authoring runtime.

Design intent:
- Expose one authoring workspace per id over thin, typed endpoints.
- Map domain exceptions onto predictable status codes.
- Orchestrate the entry flow, drafts and narrative jobs without embedding their logic.
"""
