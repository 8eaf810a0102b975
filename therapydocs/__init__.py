"""
Therapy Docs session-authoring runtime.

Design intent:
- Drive client/form selection into an autosaved authoring workspace.
- Keep domain modules (drafts/duplicates/entry/note/narrative) free of HTTP concerns.
- Inject every store and feed so the runtime can be exercised without a backend.
"""
