"""
AI narrative generation for Therapy Docs.

Design intent:
- Build prompts from editable templates and the live note.
- Demultiplex streamed output into reasoning and narrative as it arrives.
- Keep backends (mock, local model, HTTP) behind one feed contract.
"""
