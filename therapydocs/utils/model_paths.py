from __future__ import annotations

import os
from pathlib import Path

DEFAULT_NARRATIVE_GGUF = "gemma-3-4b-it-Q5_K_M.gguf"


def project_root() -> Path:
    # therapydocs/utils/model_paths.py -> therapydocs -> repo root
    return Path(__file__).resolve().parents[2]


def model_search_roots() -> list[Path]:
    """Configured model root first, then the repo's models dirs; duplicates dropped."""
    base = project_root()
    configured = os.getenv("THERAPYDOCS_MODEL_ROOT", "").strip()
    roots = [Path(configured).expanduser()] if configured else []
    roots += [base / "models", base, base.parent / "models"]
    return list(dict.fromkeys(roots))


def discover_narrative_gguf() -> str:
    for root in model_search_roots():
        for candidate in (root / "narrative" / DEFAULT_NARRATIVE_GGUF, root / DEFAULT_NARRATIVE_GGUF):
            try:
                if candidate.is_file():
                    return str(candidate.resolve())
            except OSError:
                continue
    return ""


def resolve_narrative_gguf_path(explicit_path: str | None = None) -> str:
    """
    Resolve the local narrative model path: explicit argument, then
    THERAPYDOCS_NARRATIVE_GGUF, then discovery under the model search roots.
    Returns "" when nothing is found.
    """
    for candidate in (explicit_path, os.getenv("THERAPYDOCS_NARRATIVE_GGUF")):
        value = str(candidate or "").strip()
        if value:
            return value
    return discover_narrative_gguf()
