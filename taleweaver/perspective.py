"""World continuity across characters.

Several characters can share one world timeline. Two handoffs exist:

  dead   the protagonist fell; "continue as new character" carries the
         world theme and the full message log into the next creation.
  alive  the player switches perspective. Either an existing save in the
         same world is loaded (with a "meanwhile" recap of the departing
         character appended), or a new character is created with the
         departing character's log as prior history.

Switch targets are limited to saves sharing the current character's theme.
"""

from __future__ import annotations

from typing import Literal

from taleweaver.models import (
    Character,
    Message,
    PreviousProtagonist,
    SaveData,
    Session,
    WorldContinuationContext,
)
from taleweaver.prompts import (
    OPENING_INPUT,
    PERSPECTIVE_OPENING_INPUT,
    SUCCESSOR_OPENING_INPUT,
    render_prompt,
)

RECAP_MESSAGES = 5


def continuation_context(
    session: Session, status: Literal["dead", "alive"]
) -> WorldContinuationContext:
    character = session.character
    if character is None:
        raise ValueError("No character to continue from")
    return WorldContinuationContext(
        world_theme=character.theme,
        previous_protagonist=PreviousProtagonist(name=character.name, status=status),
        prior_history=list(session.messages),
    )


def switch_candidates(saves: list[SaveData], current: Character) -> list[SaveData]:
    """Saves in the same world as `current`, excluding `current` itself."""
    return [
        s for s in saves
        if s.character.theme == current.theme and s.character.id != current.id
    ]


def meanwhile_message(departing: Character, messages: list[Message]) -> Message:
    recent = "\n".join(f"[{m.speaker}]: {m.text}" for m in messages[-RECAP_MESSAGES:])
    return Message(
        speaker="system",
        text=(
            "*** MEANWHILE ***\n"
            "The threads of fate have shifted. You return to the perspective of another.\n\n"
            f"Recent events elsewhere involving {departing.name}:\n{recent}\n\n"
        ),
    )


def opening_turn(
    character: Character, context: WorldContinuationContext | None
) -> tuple[str, list[Message]]:
    """First-turn input and the seeded message log for a new character.

    Without a context the log starts with a scene-setting line. With one,
    the log starts with the prior protagonist's history followed by a
    framing line, and the input narrates what became of them.
    """
    if context is None:
        seed = Message(
            speaker="system",
            text=f"Your adventure in the world of {character.theme} begins...",
        )
        return OPENING_INPUT, [seed]

    previous = context.previous_protagonist
    values = {"previous": previous.name, "name": character.name, "theme": character.theme}
    if previous.status == "dead":
        player_input = render_prompt(SUCCESSOR_OPENING_INPUT, values)
        framing = f"The tale of {previous.name} has ended. A new story begins..."
    else:
        player_input = render_prompt(PERSPECTIVE_OPENING_INPUT, values)
        framing = "The perspective shifts..."
    return player_input, [*context.prior_history, Message(speaker="system", text=framing)]
