"""Narrative and character-creation services on top of an injected LLM.

Both services render a Handlebars prompt, call the LLM with a stage name,
parse the JSON reply and validate it into pydantic models. Everything that
can go wrong on the way (transport errors, template errors, invalid JSON,
a payload that fails validation) is raised as GenerationError, so callers
never see half-parsed data.

Two creation calls are cosmetic and never fail: visual_theme() and
canon_events() log the problem and return a fixed fallback instead.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from pydantic import TypeAdapter, ValidationError

from taleweaver.llm import LLM, LLMError
from taleweaver.models import (
    Character,
    CharacterDraft,
    CreatorOptions,
    CustomizationArea,
    Message,
    TurnResult,
    VisualTheme,
)
from taleweaver.prompts import (
    CANON_EVENTS_PROMPT,
    NARRATOR_PROMPT,
    SCAFFOLD_PROMPT,
    SIMPLE_CHARACTER_PROMPT,
    TAB_OPTIONS_PROMPT,
    VISUAL_THEME_PROMPT,
    PromptError,
    render_prompt,
)

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_WINDOW = 250

DEFAULT_VISUAL_THEME = VisualTheme(
    main_background_color="#2b3626",
    text_color="#f0fdf4",
    accent_color="#fbbf24",
    button_color="#14532d",
    border_color="#ca8a04",
    font="serif",
)

DEFAULT_CANON_EVENTS = "The threads of fate are tangled and unclear at this moment."

_tab_areas_adapter = TypeAdapter(list[CustomizationArea])
_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")


class GenerationError(RuntimeError):
    """A generation call failed or returned content that could not be used."""


# ---------------------------------------------------------------------------
# Output parsing
# ---------------------------------------------------------------------------

def parse_json_output(output: str) -> Any:
    """Parse an LLM reply as JSON, tolerating a surrounding markdown fence."""
    text = _FENCE_RE.sub("", output.strip())
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise GenerationError(f"Model returned invalid JSON: {e}") from e


async def _call(llm: LLM, stage: str, template: str, context: dict[str, Any]) -> str:
    try:
        prompt = render_prompt(template, context)
    except PromptError as e:
        raise GenerationError(f"Prompt template error ({stage}): {e}") from e
    try:
        return await llm(stage, prompt)
    except LLMError as e:
        raise GenerationError(str(e)) from e


def _creation_context(
    name: str,
    world: str | None,
    backstory: str | None,
    world_details: str | None,
) -> dict[str, Any]:
    return {
        "name": name,
        "world": world or "",
        "backstory": backstory or "",
        "world_details": world_details or "",
    }


# ---------------------------------------------------------------------------
# Narrative Generation Service
# ---------------------------------------------------------------------------

class NarrativeService:
    """Turns (character, history, input) into a validated TurnResult.

    Only the most recent `history_window` messages are sent to the model.
    """

    def __init__(self, llm: LLM, history_window: int = DEFAULT_HISTORY_WINDOW) -> None:
        self._llm = llm
        self._history_window = history_window

    async def generate_turn(
        self, character: Character, history: list[Message], player_input: str
    ) -> TurnResult:
        window = history[-self._history_window:] if self._history_window > 0 else []
        context = {
            "theme": character.theme,
            "character_json": character.model_dump_json(exclude={"visual_theme"}),
            "history": [m.model_dump() for m in window],
            "player_input": player_input,
        }
        output = await _call(self._llm, "narrator", NARRATOR_PROMPT, context)
        data = parse_json_output(output)
        try:
            return TurnResult.model_validate(data)
        except ValidationError as e:
            raise GenerationError(f"Narrator returned an invalid turn: {e}") from e


# ---------------------------------------------------------------------------
# Character Creation Service
# ---------------------------------------------------------------------------

class CreationService:
    def __init__(self, llm: LLM) -> None:
        self._llm = llm

    async def scaffold(
        self,
        name: str,
        world: str | None = None,
        backstory: str | None = None,
        world_details: str | None = None,
    ) -> CreatorOptions:
        """Creation taxonomy with every area's option list left empty."""
        context = _creation_context(name, world, backstory, world_details)
        output = await _call(self._llm, "scaffold", SCAFFOLD_PROMPT, context)
        data = parse_json_output(output)
        try:
            options = CreatorOptions.model_validate(data)
        except ValidationError as e:
            raise GenerationError(f"Scaffold response was invalid: {e}") from e

        for tab in options.customization_tabs:
            for area in tab.areas:
                area.options = []
        return options

    async def tab_options(
        self, theme: str, character_name: str, tab_name: str, area_names: list[str]
    ) -> list[CustomizationArea]:
        context = {
            "theme": theme,
            "name": character_name,
            "tab_name": tab_name,
            "area_names": area_names,
        }
        output = await _call(self._llm, "tab_options", TAB_OPTIONS_PROMPT, context)
        data = parse_json_output(output)
        try:
            return _tab_areas_adapter.validate_python(data)
        except ValidationError as e:
            raise GenerationError(f"Failed to load options for {tab_name}: {e}") from e

    async def visual_theme(self, name: str, theme: str, description: str) -> VisualTheme:
        context = {"name": name, "theme": theme, "description": description}
        try:
            output = await _call(self._llm, "visual_theme", VISUAL_THEME_PROMPT, context)
            return VisualTheme.model_validate(parse_json_output(output))
        except (GenerationError, ValidationError) as e:
            logger.warning("Visual theme generation failed, using default: %s", e)
            return DEFAULT_VISUAL_THEME.model_copy()

    async def canon_events(self, theme: str) -> str:
        try:
            output = await _call(self._llm, "canon_events", CANON_EVENTS_PROMPT, {"theme": theme})
        except GenerationError as e:
            logger.warning("Canon events generation failed for %r: %s", theme, e)
            return DEFAULT_CANON_EVENTS
        return output.strip() or DEFAULT_CANON_EVENTS

    async def simple_character(
        self,
        name: str,
        world: str | None = None,
        backstory: str | None = None,
        world_details: str | None = None,
    ) -> CharacterDraft:
        """A complete, ready-to-finalize character. The name is always `name`."""
        context = _creation_context(name, world, backstory, world_details)
        output = await _call(self._llm, "simple_character", SIMPLE_CHARACTER_PROMPT, context)
        data = parse_json_output(output)
        if not isinstance(data, dict):
            raise GenerationError("Quick start response must be a JSON object")
        data["name"] = name
        try:
            return CharacterDraft.model_validate(data)
        except ValidationError as e:
            raise GenerationError(f"Quick start response was invalid: {e}") from e
