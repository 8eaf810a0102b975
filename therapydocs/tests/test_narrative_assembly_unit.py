from therapydocs.internal_core.contracts import (
    Client,
    ClientContext,
    LastSessionContext,
    TreatmentPlanContext,
)
from therapydocs.narrative.assembly import (
    DEFAULT_PREFILL,
    PromptExample,
    PromptSections,
    assemble_prompt,
    build_narrative_request,
    build_replacements,
    default_settings,
    format_examples,
    format_interventions,
    format_mse,
    format_therapeutic_approaches,
    interpolate,
    reconcile_settings,
    resolve_prompt_template,
)
from therapydocs.note.models import Intervention, MSEEntry, Note


def _client() -> Client:
    return Client(
        id="client_1",
        name="ReTo",
        client_type="couple",
        session_basis="weekly",
        created_at="2025-01-15T09:00:00+00:00",
    )


def test_default_settings_load_packaged_templates() -> None:
    settings = default_settings()
    assert settings.temperature == 0.5
    assert settings.max_tokens == 2048
    assert settings.prefill == DEFAULT_PREFILL
    assert settings.sections is not None
    assert "{{sessionPurpose}}" in settings.sections.progress_note_data
    assert settings.system_prompt


def test_reconcile_settings_keeps_defaults_for_missing_invalid_or_unknown_keys(caplog) -> None:
    settings = reconcile_settings(
        {
            "temperature": 0.9,
            "max_tokens": "lots",
            "system_prompt": "   ",
            "legacy_cache_key": True,
        }
    )
    assert settings.temperature == 0.9
    assert settings.max_tokens == 2048
    assert settings.system_prompt == default_settings().system_prompt
    assert "legacy_cache_key" in caplog.text


def test_resolve_prompt_template_prefers_sections_over_legacy_template() -> None:
    sections = PromptSections(
        progress_note_data="DATA {{date}}",
        instructions="INSTR",
        thinking_output_format="THINK",
        narrative_output_format="NARR",
    )
    settings = default_settings().model_copy(
        update={"sections": sections, "prompt_template": "legacy", "examples": []}
    )
    template = resolve_prompt_template(settings)
    assert "DATA {{date}}" in template
    assert "INSTR" in template
    assert "<!-- No examples provided -->" in template
    assert "{{progressNoteData}}" not in template

    legacy = default_settings().model_copy(update={"sections": None, "prompt_template": "Legacy {{date}}"})
    assert resolve_prompt_template(legacy) == "Legacy {{date}}"


def test_assemble_prompt_fills_every_section_placeholder() -> None:
    meta = "{{progressNoteData}}|{{instructions}}|{{thinkingOutputFormat}}|{{narrativeOutputFormat}}|{{examples}}"
    result = assemble_prompt(
        meta,
        PromptSections(progress_note_data="a", instructions="b", thinking_output_format="c", narrative_output_format="d"),
        [PromptExample(id="x", description="desc", input="in", output="out")],
    )
    assert result == (
        "a|b|c|d|<example>\n<!-- desc -->\n<input>\nin\n</input>\n<output>\nout\n</output>\n</example>"
    )
    assert format_examples([]) == "<!-- No examples provided -->"


def test_format_mse_orders_parts_and_resolves_other_values() -> None:
    note = Note(
        mse_entries=[
            MSEEntry(
                name="Partner A",
                note="Tearful at times",
                mood=["depressed", "other"],
                mood_other="flat",
                thought_process=["linear"],
                risk=["suicidal-ideation"],
                risk_details="passive, no plan",
            ),
            MSEEntry(risk=["none"]),
            MSEEntry(),
        ]
    )
    assert format_mse(note) == (
        "Partner A:\nNotes: Tearful at times\nMood: depressed, flat\nThought Process: linear\n"
        "Risk Factors: suicidal-ideation (passive, no plan)\n\n"
        "Observation 2:\nRisk Factors: None identified\n\n"
        "Observation 3: No specific findings noted."
    )
    assert format_mse(Note()) == "No MSE observations recorded."


def test_format_approaches_and_interventions() -> None:
    note = Note(
        therapeutic_approaches=["cognitive-behavioral-therapy", "act"],
        therapeutic_approaches_other="Sandplay",
        interventions=[Intervention(label="Thought record", notes="Weekly review"), Intervention(label="Breathing")],
    )
    assert format_therapeutic_approaches(note) == "Cognitive Behavioral Therapy, Act, Sandplay"
    assert format_therapeutic_approaches(note, {"act": "Acceptance and Commitment Therapy"}).startswith(
        "Cognitive Behavioral Therapy, Acceptance and Commitment Therapy"
    )
    assert format_interventions(note) == (
        "Intervention: Thought record\nNotes: Weekly review\n\nIntervention: Breathing"
    )
    assert format_therapeutic_approaches(Note()) == "No therapeutic approaches specified."
    assert format_interventions(Note()) == "No interventions recorded."


def test_replacements_fall_back_to_readable_defaults() -> None:
    replacements = build_replacements(Note(), None, None)
    assert replacements["{{clientName}}"] == "Client"
    assert replacements["{{clientType}}"] == "Individual"
    assert replacements["{{date}}"] == "Not specified"
    assert replacements["{{diagnosis}}"] == "No diagnosis on file"
    assert replacements["{{treatmentGoals}}"] == "No treatment goals on file"
    assert replacements["{{lastSessionDate}}"] == "No previous session"
    assert replacements["{{includeFutureNotes}}"] == "FALSE"
    assert replacements["{{totalSessions}}"] == "Unknown"


def test_replacements_use_client_context_and_future_toggle() -> None:
    note = Note(
        date="2025-03-10",
        future_notes="Review budget check-in",
        client_location="Other",
        client_location_other="Park",
    )
    context = ClientContext(
        diagnosis="F41.1 Generalized anxiety disorder",
        treatment_plan=TreatmentPlanContext(goals=["Reduce conflict"], target_symptoms=["anxiety", "insomnia"]),
        last_session=LastSessionContext(date="2025-03-03", narrative="Cpl practiced repair."),
    )
    replacements = build_replacements(note, _client(), context)
    assert replacements["{{clientType}}"] == "Couple"
    assert replacements["{{clientLocation}}"] == "Park"
    assert replacements["{{includeFutureNotes}}"] == "TRUE"
    assert replacements["{{treatmentGoals}}"] == "- Reduce conflict"
    assert replacements["{{targetSymptoms}}"] == "anxiety, insomnia"
    assert replacements["{{lastSessionNarrative}}"] == "Cpl practiced repair."
    assert replacements["{{sessionBasis}}"] == "weekly"

    toggled = build_replacements(note.model_copy(update={"include_future_notes": False}), _client(), context)
    assert toggled["{{includeFutureNotes}}"] == "FALSE"


def test_build_narrative_request_leaves_no_known_placeholders() -> None:
    note = Note(date="2025-03-10", purpose="Interrupt escalating arguments")
    request = build_narrative_request(default_settings(), note, _client(), ClientContext())
    assert "Interrupt escalating arguments" in request.prompt
    assert "ReTo" in request.prompt
    for placeholder in build_replacements(note, _client(), ClientContext()):
        assert placeholder not in request.prompt
    assert request.params()["max_tokens"] == 2048
    assert interpolate("{{date}} {{unknown}}", {"{{date}}": "d"}) == "d {{unknown}}"
