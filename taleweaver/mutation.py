"""Character mutation: pure reducers over Character values.

apply_turn() is the only reducer the turn pipeline uses:

  health     replaced wholesale by result.updated_health (no clamping)
  inventory  add    → merge into the entry with the same case-insensitive name
                      (original casing kept, quantities summed) or append
             remove → decrement; entry removed at <= 0; unknown name is a no-op
  companions untouched; result.new_characters are candidates for the caller

The remaining helpers back explicit, player-confirmed edits from the
character sheet. No function here mutates its input.
"""

from __future__ import annotations

import uuid

from taleweaver.models import (
    Character,
    Companion,
    InventoryChange,
    InventoryItem,
    NewCharacter,
    TurnResult,
)


def _find_item(inventory: list[InventoryItem], name: str) -> int | None:
    key = name.lower()
    for i, item in enumerate(inventory):
        if item.name.lower() == key:
            return i
    return None


def apply_inventory_change(
    inventory: list[InventoryItem], change: InventoryChange
) -> list[InventoryItem]:
    """Return a new inventory list with `change` applied."""
    updated = list(inventory)
    index = _find_item(updated, change.item.name)

    if change.action == "add":
        if index is None:
            updated.append(change.item.model_copy())
        else:
            existing = updated[index]
            updated[index] = existing.model_copy(
                update={"quantity": existing.quantity + change.item.quantity}
            )
        return updated

    # remove
    if index is None:
        return updated
    existing = updated[index]
    remaining = existing.quantity - change.item.quantity
    if remaining <= 0:
        del updated[index]
    else:
        updated[index] = existing.model_copy(update={"quantity": remaining})
    return updated


def apply_turn(character: Character, result: TurnResult) -> Character:
    update: dict = {"health": result.updated_health}
    if result.inventory_change is not None:
        update["inventory"] = apply_inventory_change(
            character.inventory, result.inventory_change
        )
    return character.model_copy(update=update)


# ---------------------------------------------------------------------------
# Player-confirmed edits
# ---------------------------------------------------------------------------

def new_character_id(name: str) -> str:
    """Fresh on every finalize, so a reused name never overwrites an older save."""
    return f"{''.join(name.split()) or 'character'}-{uuid.uuid4().hex[:12]}"


def new_companion_id(name: str) -> str:
    return f"{''.join(name.split()) or 'companion'}-{uuid.uuid4().hex[:8]}"


def promote_companion(character: Character, candidate: NewCharacter) -> Character:
    """Recruit a surfaced candidate. The description seeds the backstory."""
    companion = Companion(
        id=new_companion_id(candidate.name),
        name=candidate.name,
        kind=candidate.kind,
        backstory=candidate.description,
        relationship="Newly met",
    )
    return character.model_copy(update={"companions": [*character.companions, companion]})


def dismiss_companion(character: Character, companion_id: str) -> Character:
    companions = [c for c in character.companions if c.id != companion_id]
    return character.model_copy(update={"companions": companions})


def drop_item(character: Character, name: str) -> Character:
    """Remove the whole entry regardless of quantity."""
    index = _find_item(character.inventory, name)
    if index is None:
        return character
    inventory = list(character.inventory)
    del inventory[index]
    return character.model_copy(update={"inventory": inventory})


def update_backstory(character: Character, backstory: str) -> Character:
    return character.model_copy(update={"backstory": backstory})
