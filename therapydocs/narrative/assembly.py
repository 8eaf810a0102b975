from __future__ import annotations

"""
Build the narrative generation prompt from plain-text templates and session data.

Design intent:
- Keep prompt templates as plain text files for clinician-friendly editing.
- Assemble user-editable sections and examples into a fixed meta-template.
- Reconcile stored settings field by field against packaged defaults.
- Every placeholder has a readable default so the prompt never shows `{{...}}`.
"""

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from therapydocs.internal_core.contracts import Client, ClientContext
from therapydocs.note.models import MSEEntry, Note

logger = logging.getLogger(__name__)

DEFAULT_PREFILL = "<thinking>\nThis is a"
DEFAULT_TEMPERATURE = 0.5
DEFAULT_MAX_TOKENS = 2048
NARRATIVE_SEPARATOR = "\n\n---\n\n"


class PromptExample(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = ""
    description: str = ""
    input: str = ""
    output: str = ""


class PromptSections(BaseModel):
    model_config = ConfigDict(extra="forbid")

    progress_note_data: str = ""
    instructions: str = ""
    thinking_output_format: str = ""
    narrative_output_format: str = ""


class NarrativeSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    system_prompt: str
    sections: Optional[PromptSections] = None
    prompt_template: Optional[str] = None
    examples: Optional[List[PromptExample]] = None
    temperature: float = Field(default=DEFAULT_TEMPERATURE, ge=0.0, le=2.0)
    max_tokens: int = Field(default=DEFAULT_MAX_TOKENS, ge=1, le=32768)
    prefill: str = DEFAULT_PREFILL
    model_id: str = ""


@dataclass(frozen=True)
class NarrativeRequest:
    prompt: str
    system_prompt: str
    temperature: float
    max_tokens: int
    prefill: str
    model_id: str

    def params(self) -> dict[str, Any]:
        return {
            "system_prompt": self.system_prompt,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "prefill": self.prefill,
            "model_id": self.model_id,
        }


def _template_root() -> Path:
    return Path(__file__).resolve().parent / "templates"


@lru_cache(maxsize=1)
def _load_default_templates() -> tuple[str, str, PromptSections, tuple[PromptExample, ...]]:
    root = _template_root()
    system_prompt = (root / "system_prompt.txt").read_text(encoding="utf-8").strip()
    meta_template = (root / "meta_template.txt").read_text(encoding="utf-8").strip()
    sections_root = root / "sections"
    sections = PromptSections(
        progress_note_data=(sections_root / "progress_note_data.txt").read_text(encoding="utf-8").strip(),
        instructions=(sections_root / "instructions.txt").read_text(encoding="utf-8").strip(),
        thinking_output_format=(sections_root / "thinking_output_format.txt").read_text(encoding="utf-8").strip(),
        narrative_output_format=(sections_root / "narrative_output_format.txt").read_text(encoding="utf-8").strip(),
    )
    raw_examples = json.loads((root / "examples.json").read_text(encoding="utf-8"))
    examples = tuple(PromptExample.model_validate(item) for item in raw_examples)
    return system_prompt, meta_template, sections, examples


def meta_template() -> str:
    return _load_default_templates()[1]


def default_examples() -> List[PromptExample]:
    return [item.model_copy() for item in _load_default_templates()[3]]


def default_settings() -> NarrativeSettings:
    system_prompt, _, sections, _ = _load_default_templates()
    return NarrativeSettings(system_prompt=system_prompt, sections=sections.model_copy())


def reconcile_settings(raw: Optional[Mapping[str, Any]]) -> NarrativeSettings:
    """
    Overlay stored settings onto defaults one field at a time.

    Missing, empty or invalid values keep the default; unknown keys are dropped
    with a warning.
    """
    settings = default_settings()
    if not raw:
        return settings
    unknown = sorted(key for key in raw if key not in NarrativeSettings.model_fields)
    if unknown:
        logger.warning("Ignoring unknown narrative settings keys: %s", unknown)
    updates: dict[str, Any] = {}
    for name in NarrativeSettings.model_fields:
        if name not in raw or raw[name] is None:
            continue
        value = raw[name]
        if name in {"system_prompt", "prompt_template", "model_id"} and not str(value).strip():
            continue
        try:
            candidate = NarrativeSettings.model_validate({**settings.model_dump(), name: value})
        except ValidationError:
            logger.warning("Ignoring invalid narrative setting: %s", name)
            continue
        updates[name] = getattr(candidate, name)
    return settings.model_copy(update=updates)


def format_examples(examples: Optional[List[PromptExample]]) -> str:
    if not examples:
        return "<!-- No examples provided -->"
    blocks = []
    for example in examples:
        description = f"<!-- {example.description} -->\n" if example.description else ""
        blocks.append(
            "<example>\n"
            f"{description}<input>\n{example.input}\n</input>\n"
            f"<output>\n{example.output}\n</output>\n"
            "</example>"
        )
    return "\n\n".join(blocks)


def assemble_prompt(template: str, sections: PromptSections, examples: Optional[List[PromptExample]]) -> str:
    result = template
    result = result.replace("{{progressNoteData}}", sections.progress_note_data or "", 1)
    result = result.replace("{{instructions}}", sections.instructions or "", 1)
    result = result.replace("{{thinkingOutputFormat}}", sections.thinking_output_format or "", 1)
    result = result.replace("{{narrativeOutputFormat}}", sections.narrative_output_format or "", 1)
    return result.replace("{{examples}}", format_examples(examples), 1)


def resolve_prompt_template(settings: NarrativeSettings) -> str:
    if settings.sections is not None:
        examples = settings.examples if settings.examples is not None else default_examples()
        return assemble_prompt(meta_template(), settings.sections, examples)
    if settings.prompt_template:
        return settings.prompt_template
    defaults = default_settings()
    return assemble_prompt(meta_template(), defaults.sections or PromptSections(), default_examples())


def _with_other(values: List[str], other: str) -> List[str]:
    return [other if value == "other" and other else value for value in values]


def _format_mse_entry(entry: MSEEntry) -> List[str]:
    parts: List[str] = []
    if entry.note.strip():
        parts.append(f"Notes: {entry.note}")
    labelled = (
        ("Mood", entry.mood, entry.mood_other),
        ("Disturbances", entry.disturbance, entry.disturbance_other),
        ("Perception", entry.perception, entry.perception_other),
        ("Thought Content", entry.thought_content, entry.thought_content_other),
        ("Thought Process", entry.thought_process, entry.thought_process_other),
    )
    for label, values, other in labelled:
        if values:
            parts.append(f"{label}: {', '.join(_with_other(values, other))}")
    if entry.risk:
        if "none" in entry.risk:
            parts.append("Risk Factors: None identified")
        else:
            risk_text = f"Risk Factors: {', '.join(_with_other(entry.risk, entry.risk_other))}"
            if entry.risk_details.strip():
                risk_text += f" ({entry.risk_details.strip()})"
            parts.append(risk_text)
    return parts


def format_mse(note: Note) -> str:
    if not note.mse_entries:
        return "No MSE observations recorded."
    multiple = len(note.mse_entries) > 1
    blocks = []
    for index, entry in enumerate(note.mse_entries, start=1):
        parts = _format_mse_entry(entry)
        identifier = entry.name.strip() or (f"Observation {index}" if multiple else "")
        if not parts:
            blocks.append(f"{identifier}: No specific findings noted." if identifier else "No specific findings noted.")
            continue
        header = f"{identifier}:\n" if identifier else ""
        blocks.append(header + "\n".join(parts))
    return "\n\n".join(blocks)


def _readable_approach(value: str, names: Optional[Mapping[str, str]]) -> str:
    if names and value in names:
        return names[value]
    return " ".join(word.capitalize() for word in value.replace("-", " ").split())


def format_therapeutic_approaches(note: Note, names: Optional[Mapping[str, str]] = None) -> str:
    other = note.therapeutic_approaches_other.strip()
    if not note.therapeutic_approaches and not other:
        return "No therapeutic approaches specified."
    labels = [_readable_approach(item, names) for item in note.therapeutic_approaches]
    if other:
        labels.append(other)
    return ", ".join(labels)


def format_interventions(note: Note) -> str:
    if not note.interventions:
        return "No interventions recorded."
    blocks = []
    for item in note.interventions:
        lines = [f"Intervention: {item.label}"]
        if item.notes.strip():
            lines.append(f"Notes: {item.notes}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def format_client_location(note: Note) -> str:
    if note.client_location == "Other" and note.client_location_other.strip():
        return note.client_location_other.strip()
    return note.client_location or "Not specified"


def build_replacements(
    note: Note,
    client: Optional[Client],
    context: Optional[ClientContext],
    approach_names: Optional[Mapping[str, str]] = None,
) -> dict[str, str]:
    context = context or ClientContext()
    plan = context.treatment_plan
    last_session = context.last_session
    include_future = bool(note.future_notes.strip()) and note.include_future_notes
    return {
        "{{date}}": note.date or "Not specified",
        "{{duration}}": str(note.duration) if note.duration else "Not specified",
        "{{clientName}}": client.name if client else "Client",
        "{{clientType}}": client.client_type.capitalize() if client else "Individual",
        "{{clientLocation}}": format_client_location(note),
        "{{sessionPurpose}}": note.purpose.strip() or "Not specified",
        "{{mseEntries}}": format_mse(note),
        "{{therapeuticApproaches}}": format_therapeutic_approaches(note, approach_names),
        "{{interventions}}": format_interventions(note),
        "{{responseToInterventions}}": note.response_to_interventions.strip() or "Not documented",
        "{{additionalNotes}}": note.additional_notes.strip() or "None noted",
        "{{futureNotes}}": note.future_notes.strip() or "None noted",
        "{{includeFutureNotes}}": "TRUE" if include_future else "FALSE",
        "{{diagnosis}}": context.diagnosis or "No diagnosis on file",
        "{{treatmentGoals}}": (
            "\n".join(f"- {goal}" for goal in plan.goals)
            if plan and plan.goals
            else "No treatment goals on file"
        ),
        "{{targetSymptoms}}": ", ".join(plan.target_symptoms) if plan and plan.target_symptoms else "None specified",
        "{{treatmentNotes}}": (plan.notes.strip() if plan else "") or "No treatment plan notes",
        "{{lastSessionDate}}": last_session.date if last_session else "No previous session",
        "{{lastSessionNarrative}}": (
            (last_session.narrative.strip() if last_session else "") or "No previous narrative available"
        ),
        "{{riskLevel}}": (client.risk_level if client else None) or "Not assessed",
        "{{totalSessions}}": (
            str(client.total_sessions) if client and client.total_sessions is not None else "Unknown"
        ),
        "{{treatmentStartDate}}": (client.start_date if client else None) or "Unknown",
        "{{sessionBasis}}": (client.session_basis if client else None) or "Not specified",
    }


def interpolate(template: str, replacements: Mapping[str, str]) -> str:
    result = template
    for placeholder, value in replacements.items():
        result = result.replace(placeholder, value)
    return result


def build_narrative_request(
    settings: NarrativeSettings,
    note: Note,
    client: Optional[Client],
    context: Optional[ClientContext],
    approach_names: Optional[Mapping[str, str]] = None,
) -> NarrativeRequest:
    template = resolve_prompt_template(settings)
    prompt = interpolate(template, build_replacements(note, client, context, approach_names))
    return NarrativeRequest(
        prompt=prompt,
        system_prompt=settings.system_prompt,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
        prefill=settings.prefill,
        model_id=settings.model_id,
    )
