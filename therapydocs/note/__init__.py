"""
Note authoring boundary for Therapy Docs.

Design intent:
- Hold the live progress-note model and its content predicate.
- Decide between direct edits and append-only amendments on submit.
- Keep originals immutable once the amendment policy applies.
"""
