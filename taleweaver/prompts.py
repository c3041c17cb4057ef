"""Handlebars prompt templates for the generation stages.

One template per stage. Values that may contain markup-like characters are
rendered with triple-stash ({{{ }}}) so pybars does not HTML-escape them.
Every JSON-returning template spells out the exact snake_case shape that the
pydantic models in taleweaver.models validate.
"""

from collections.abc import Callable, Mapping
from typing import Any

import pybars

_compiler = pybars.Compiler()
_compiled: dict[str, Callable] = {}


class PromptError(Exception):
    """A stage template did not compile, or failed while rendering."""


def _join(this, items, separator=", "):
    """{{join area_names ", "}} renders a list inline."""
    return separator.join(str(item) for item in items)


HELPERS: dict[str, Callable] = {"join": _join}


def _template(source: str) -> Callable:
    template = _compiled.get(source)
    if template is None:
        template = _compiled[source] = _compiler.compile(source)
    return template


def render_prompt(source: str, values: Mapping[str, Any]) -> str:
    """Render one of the templates below (or any Handlebars source) to a prompt string.

    Compiled templates are kept per source text, so each stage template is
    compiled once per process.
    """
    try:
        return str(_template(source)(dict(values), helpers=HELPERS))
    except Exception as e:
        raise PromptError(f"Cannot render prompt template: {e}") from e


# ── Shared fragments ─────────────────────────────────────

_CREATION_BASE = """\
{{#if world}}The game's world/theme is "{{{world}}}". The generated "theme" must be exactly "{{{world}}}".
{{else}}The game is based on the character name. If the name is from a known universe, base the theme on that universe; otherwise invent a creative, compelling theme.
{{/if}}The character's name is "{{{name}}}".
{{#if world_details}}
The player provided cultural and historical details for the world. Incorporate them deeply.
--- WORLD HISTORY & CULTURE ---
{{{world_details}}}
------------------------------
{{/if}}{{#if backstory}}
The player provided a custom backstory. It MUST be the primary foundation for the character; the generated backstory should be a polished, slightly expanded version of it.
--- PLAYER'S BACKSTORY ---
{{{backstory}}}
--------------------------
{{/if}}"""

_ITEM_SHAPE = '{"name": str, "description": str, "quantity": int, "type": "weapon"|"armor"|"item"}'

# ── Stage templates ──────────────────────────────────────

NARRATOR_SYSTEM = (
    "You are a world-class dungeon master for a dynamic text adventure game. "
    "Create a compelling, coherent, reactive story based on the player's choices "
    "and character profile. Balance action with periods of calm, mystery and role-play."
)

NARRATOR_PROMPT = """\
The theme is "{{{theme}}}".

Character State: {{{character_json}}}

Game History (recent history):
{{#each history}}[{{speaker}}] {{{text}}}
{{/each}}
Player's Latest Input:
---
{{{player_input}}}
---

Continue the story. The input may be a pre-defined choice, an action, a line of dialogue, a desired story event, or a combination. If a story event is given, treat it as the player exerting narrative control and weave it in unless it is nonsensical.

Vary the pacing: not every situation is a life-or-death struggle. Let the player's choices guide the tone.

- Incorporate existing companions naturally.
- Never add companions yourself. If a DISTINCT, NAMED, friendly or neutral character who could join the party appears, list them in "new_characters".
- Set "is_combat" only if the action inevitably leads to a fight.
- Only report an "add" inventory change for a genuinely new item or a new copy, never for inspecting or using an item already held.
- Reflect damage or healing in "updated_health" (the new absolute value).
- If the character dies or wins, set "is_game_over" to true.

Return only a JSON object:
{"scene_description": str, "choices": [3-4 str], "is_combat": bool, "attack_options": [str], "updated_health": int, "inventory_change": null | {"action": "add"|"remove", "item": """ + _ITEM_SHAPE + """ }, "is_game_over": bool, "new_characters": null | [{"name": str, "kind": str, "description": str}]}"""

SCAFFOLD_PROMPT = """\
Generate a hyper-detailed, massively customizable character creator SCAFFOLD for a text adventure game.
""" + _CREATION_BASE + """
Provide 5-7 thematic alignments. Provide 8-10 distinct customization tabs; if the concept implies multiple forms, give each form its own tab with appearance areas. Each tab has 4-6 area names. DO NOT generate the options for these areas, only the area names.
Suggest 1-2 thematically appropriate companions (name and kind).
Provide 2-4 starting items, each typed "weapon", "armor" or "item".

Return only a JSON object:
{"theme": str, "description": str, "backstory": str, "alignments": [str], "customization_tabs": [{"tab_name": str, "areas": [{"area_name": str}]}], "starting_inventory": [""" + _ITEM_SHAPE + """], "starting_health": int, "starting_companions": [{"name": str, "kind": str}]}"""

TAB_OPTIONS_PROMPT = """\
For a character named "{{{name}}}" in a "{{{theme}}}" world, generate detailed options for the customization tab "{{{tab_name}}}".
The areas to generate for are: {{{join area_names ", "}}}.
For each area, provide a rich list of 20-30 creative, thematic options.

Return only a JSON array:
[{"area_name": str, "options": [str]}]"""

VISUAL_THEME_PROMPT = """\
Generate a UI color theme and font style for a text adventure game.
Character Name: "{{{name}}}"
World Theme: "{{{theme}}}"
Character Description: "{{{description}}}"

Dark atmospheric background, light readable text, vibrant accent, distinct buttons, subtle borders. Pick the font from the era and vibe.

Return only a JSON object:
{"main_background_color": "#rrggbb", "text_color": "#rrggbb", "accent_color": "#rrggbb", "button_color": "#rrggbb", "border_color": "#rrggbb", "font": "serif"|"sans-serif"|"mono"}"""

CANON_EVENTS_PROMPT = """\
The text adventure game is set in the world of "{{{theme}}}". Briefly summarize 3-5 key plot points, character arcs or "canon events" central to the original story of this world, as an intriguing, concise summary for the player. If the theme is not a known fictional universe, state that the character's fate is entirely unwritten."""

SIMPLE_CHARACTER_PROMPT = """\
Generate a COMPLETE, ready-to-play character for a text adventure game.
""" + _CREATION_BASE + """
Provide a single thematic alignment. Generate 8-10 varied customizations, each with an "area" and a list of "selections". Type each inventory item as "weapon", "armor" or "item". If suitable, add 0-2 fully detailed companions, each with a unique id, how they met and the nature of their bond. Also generate a fitting visual theme. Set health and max_health to 100. The name must be "{{{name}}}".

Return only a JSON object:
{"name": str, "theme": str, "description": str, "backstory": str, "alignment": str, "health": int, "max_health": int, "customizations": [{"area": str, "selections": [str]}], "inventory": [""" + _ITEM_SHAPE + """], "companions": [{"id": str, "name": str, "kind": str, "backstory": str, "relationship": str}], "visual_theme": {"main_background_color": str, "text_color": str, "accent_color": str, "button_color": str, "border_color": str, "font": "serif"|"sans-serif"|"mono"} }"""


# ── Opening and framing inputs ───────────────────────────

OPENING_INPUT = "The adventure begins."

SUCCESSOR_OPENING_INPUT = (
    'The hero named "{{{previous}}}" has fallen. A new character, "{{{name}}}", '
    'now enters the world of "{{{theme}}}". Describe their arrival and what they '
    "see first, taking into account the events that just transpired in the history."
)

PERSPECTIVE_OPENING_INPUT = (
    'The story continues in the world of "{{{theme}}}". The previous protagonist, '
    '"{{{previous}}}", is still active in the world. However, the perspective now '
    'shifts to a NEW character, "{{{name}}}". Describe where this new character is '
    "and what they are doing, potentially reacting to the ripples caused by the "
    "previous character's recent actions."
)

FATE_INPUT = (
    "The hero, {{{name}}}, has just been defeated, their health at or below zero. "
    "However, their story is not over. Describe a dramatic turn of events that "
    "prevents their permanent death: a rescue, a divine intervention, or waking up "
    "captured. Bring them back from the brink but keep them in a precarious "
    "situation. Restore their health to a low but non-zero value (10-25% of "
    "{{max_health}}). IMPORTANTLY, do NOT set is_game_over to true. Set the scene "
    "and provide new choices."
)
