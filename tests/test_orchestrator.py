"""Tests for taleweaver.orchestrator: the live session driven end to end.

The LLM is a GatedLLM (a StubLLM whose narrator calls can be held open), so
in-flight and stale-response behaviour can be exercised deterministically.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from stubs import (
    GatedLLM,
    MemoryStore,
    make_character,
    make_draft,
    make_orchestrator,
    session_for,
    turn_json,
)

from taleweaver.generation import DEFAULT_VISUAL_THEME, GenerationError
from taleweaver.llm import HttpLLM, LLMError
from taleweaver.models import (
    Companion,
    CreatorOptions,
    CustomizationArea,
    GamePhase,
    InventoryItem,
    Message,
    Session,
)
from taleweaver.orchestrator import FATE_FRAMING, SAVE_NOT_FOUND, merge_tab_options
from taleweaver.state_machine import InvalidTransitionError
from taleweaver.storage import CORRUPTED_ARCHIVED, DEFAULT_SAVES_KEY, SAVE_OK, SaveRepository

SCAFFOLD = {
    "theme": "Generic Fantasy",
    "description": "A wanderer.",
    "backstory": "Nobody knows.",
    "alignments": ["Good", "Evil"],
    "customization_tabs": [
        {"tab_name": "Appearance", "areas": [{"area_name": "Hair", "options": ["Red"]}, {"area_name": "Eyes"}]},
        {"tab_name": "Gear", "areas": [{"area_name": "Weapon"}]},
        {"tab_name": "Past", "areas": [{"area_name": "Homeland"}]},
    ],
    "starting_inventory": [{"name": "Torch", "quantity": 1, "type": "item"}],
    "starting_health": 100,
    "starting_companions": [],
}

SIMPLE_CHARACTER = {
    "name": "ignored",
    "theme": "Oakhaven",
    "description": "A blacksmith's apprentice.",
    "alignment": "Lawful Good",
    "backstory": "Grew up by the forge.",
    "health": 100,
    "max_health": 100,
    "inventory": [{"name": "Hammer", "quantity": 1, "type": "weapon"}],
}

THEME_JSON = json.dumps(DEFAULT_VISUAL_THEME.model_dump())


def _areas(*names: str) -> str:
    return json.dumps([{"area_name": n, "options": [f"{n} option"]} for n in names])


class FakeMonotonic:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def llm() -> GatedLLM:
    return GatedLLM()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def clock() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def orch(llm, store, clock):
    return make_orchestrator(llm, store, clock=clock)


async def start_playing(orch, llm, draft=None, opening=None) -> None:
    llm.queue("narrator", opening or turn_json("You wake at a crossroads."))
    await orch.finalize_character(draft or make_draft(), is_from_known_world=False)


async def play_until_dead(orch, llm) -> None:
    await start_playing(orch, llm)
    llm.queue("narrator", turn_json("The troll's club finds you.", health=0, is_combat=True))
    await orch.submit_turn("Fight the troll")
    assert orch.session.phase is GamePhase.GAME_OVER


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

class TestFinalize:
    async def test_opening_turn(self, orch, llm) -> None:
        await start_playing(orch, llm)
        session = orch.session
        assert session.phase is GamePhase.GAMEPLAY
        assert session.character.name == "Aria"
        assert session.character.id.startswith("Aria-")
        assert [m.text for m in session.messages] == [
            "Your adventure in the world of Oakhaven begins...",
            "You wake at a crossroads.",
        ]
        assert session.choices == ["Walk on", "Rest"]
        assert not session.is_loading
        assert not orch.can_undo
        assert "The adventure begins." in llm.prompts("narrator")[0]
        llm.assert_exhausted()

    async def test_fresh_id_every_finalize(self, orch, llm) -> None:
        await start_playing(orch, llm)
        first = orch.session.character.id
        orch.start_anew()
        await start_playing(orch, llm)
        assert orch.session.character.id != first

    async def test_known_world_fetches_canon_and_theme(self, orch, llm) -> None:
        llm.queue("canon_events", "The old king fell at Oakhaven bridge.")
        llm.queue("visual_theme", LLMError("timed out"))
        llm.queue("narrator", turn_json())
        await orch.finalize_character(make_draft(visual_theme=None), is_from_known_world=True)
        character = orch.session.character
        assert character.canon_events == "The old king fell at Oakhaven bridge."
        assert character.visual_theme == DEFAULT_VISUAL_THEME
        assert character.is_from_known_world
        llm.assert_exhausted()

    async def test_opening_can_start_in_combat(self, orch, llm) -> None:
        await start_playing(orch, llm, opening=turn_json("Ambush!", is_combat=True, attack_options=["Parry"]))
        assert orch.session.phase is GamePhase.COMBAT
        assert orch.session.attack_options == ["Parry"]

    async def test_failure_leaves_creation_retryable(self, orch, llm) -> None:
        llm.queue("narrator", LLMError("LLM backend timed out after 120.0s"))
        await orch.finalize_character(make_draft(), is_from_known_world=False)
        session = orch.session
        assert session.character is None
        assert session.phase is GamePhase.CHARACTER_CREATION_START
        assert session.last_error == "LLM backend timed out after 120.0s"
        assert session.messages[-1].speaker == "system"
        assert session.messages[-1].text.startswith("Error:")
        assert not session.is_loading

        await start_playing(orch, llm)
        assert orch.session.phase is GamePhase.GAMEPLAY
        assert orch.session.last_error is None

    async def test_finalize_during_play_is_rejected(self, orch, llm) -> None:
        await start_playing(orch, llm)
        with pytest.raises(InvalidTransitionError):
            await orch.finalize_character(make_draft(), is_from_known_world=False)


class TestDetailedCreation:
    async def test_scaffold_moves_to_finalize(self, orch, llm) -> None:
        llm.queue("scaffold", json.dumps(SCAFFOLD))
        await orch.begin_creation("Aria", world="Oakhaven")
        session = orch.session
        assert session.phase is GamePhase.CHARACTER_CREATION_FINALIZE
        assert session.creator_options.theme == "Oakhaven"
        assert all(not a.options for t in session.creator_options.customization_tabs for a in t.areas)
        assert not session.is_loading

    async def test_scaffold_keeps_generated_theme_without_world(self, orch, llm) -> None:
        llm.queue("scaffold", json.dumps(SCAFFOLD))
        await orch.begin_creation("Aria")
        assert orch.session.creator_options.theme == "Generic Fantasy"

    async def test_scaffold_failure(self, orch, llm) -> None:
        llm.queue("scaffold", LLMError("Cannot connect to LLM backend at http://localhost:5001"))
        await orch.begin_creation("Aria")
        assert orch.session.phase is GamePhase.CHARACTER_CREATION_START
        assert orch.session.last_error.startswith("Failed to generate character theme.")
        assert orch.session.creator_options is None

    async def test_prefetch_continues_past_a_failed_tab(self, orch, llm) -> None:
        llm.queue("scaffold", json.dumps(SCAFFOLD))
        await orch.begin_creation("Aria")
        llm.queue("tab_options", _areas("Hair", "Eyes"), LLMError("HTTP 500"), _areas("Homeland"))

        failed = await orch.prefetch_tab_options()

        assert failed == [1]
        tabs = orch.session.creator_options.customization_tabs
        assert [a.options for a in tabs[0].areas] == [["Hair option"], ["Eyes option"]]
        assert tabs[1].areas[0].options == []
        assert tabs[2].areas[0].options == ["Homeland option"]

        llm.queue("tab_options", _areas("Weapon"))
        await orch.fetch_tab_options(1)
        assert orch.session.creator_options.customization_tabs[1].areas[0].options == ["Weapon option"]
        llm.assert_exhausted()

    async def test_prefetch_skips_populated_tabs(self, orch, llm) -> None:
        llm.queue("scaffold", json.dumps(SCAFFOLD))
        await orch.begin_creation("Aria")
        llm.queue("tab_options", _areas("Hair", "Eyes"))
        await orch.fetch_tab_options(0)

        llm.queue("tab_options", _areas("Weapon"), _areas("Homeland"))
        assert await orch.prefetch_tab_options() == []
        assert [p.split('tab "')[1].split('"')[0] for p in llm.prompts("tab_options")] == [
            "Appearance", "Gear", "Past",
        ]

    async def test_fetch_tab_failure_raises_and_sets_error(self, orch, llm) -> None:
        llm.queue("scaffold", json.dumps(SCAFFOLD))
        await orch.begin_creation("Aria")
        llm.queue("tab_options", LLMError("HTTP 500"))
        with pytest.raises(GenerationError):
            await orch.fetch_tab_options(2)
        assert orch.session.last_error == "HTTP 500"

    async def test_fetch_tab_outside_creation(self, orch) -> None:
        with pytest.raises(InvalidTransitionError):
            await orch.fetch_tab_options(0)

    def test_merge_tab_options_keeps_order(self) -> None:
        options = CreatorOptions.model_validate(SCAFFOLD)
        merged = merge_tab_options(options, 0, [
            CustomizationArea(area_name="Eyes", options=["Grey"]),
            CustomizationArea(area_name="Wings", options=["Feathered"]),
        ])
        areas = merged.customization_tabs[0].areas
        assert [a.area_name for a in areas] == ["Hair", "Eyes"]
        assert areas[1].options == ["Grey"]
        assert options.customization_tabs[0].areas[1].options == []


class TestQuickStart:
    async def test_known_world(self, orch, llm) -> None:
        llm.queue("simple_character", json.dumps(SIMPLE_CHARACTER))
        llm.queue("canon_events", "Lore.")
        llm.queue("visual_theme", THEME_JSON)
        llm.queue("narrator", turn_json("The forge is cold this morning."))
        await orch.quick_start("Bren", world="Oakhaven")

        character = orch.session.character
        assert character.name == "Bren"
        assert character.is_from_known_world
        assert character.canon_events == "Lore."
        assert character.inventory[0].name == "Hammer"
        assert orch.session.phase is GamePhase.GAMEPLAY
        llm.assert_exhausted()

    async def test_invented_world_skips_canon(self, orch, llm) -> None:
        llm.queue("simple_character", json.dumps(SIMPLE_CHARACTER))
        llm.queue("visual_theme", THEME_JSON)
        llm.queue("narrator", turn_json())
        await orch.quick_start("Bren")
        assert not orch.session.character.is_from_known_world
        assert orch.session.character.canon_events is None
        llm.assert_exhausted()

    async def test_generation_failure(self, orch, llm) -> None:
        llm.queue("simple_character", "not json at all")
        await orch.quick_start("Bren")
        assert orch.session.character is None
        assert "invalid JSON" in orch.session.last_error
        assert not orch.session.is_loading


# ---------------------------------------------------------------------------
# Turns
# ---------------------------------------------------------------------------

class TestTurns:
    async def test_basic_turn(self, orch, llm) -> None:
        await start_playing(orch, llm)
        llm.queue("narrator", turn_json(
            "A blade glints in the rubble.",
            health=80,
            inventory_change={"action": "add", "item": {"name": "Rusty Sword", "quantity": 1, "type": "weapon"}},
        ))
        await orch.submit_turn("Search the ruins")

        session = orch.session
        assert session.character.health == 80
        assert [(i.name, i.quantity, i.type) for i in session.character.inventory] == [
            ("Rusty Sword", 1, "weapon"),
        ]
        assert session.phase is GamePhase.GAMEPLAY
        assert [(m.speaker, m.text) for m in session.messages[-2:]] == [
            ("player", "Search the ruins"),
            ("game", "A blade glints in the rubble."),
        ]
        assert not session.is_loading
        assert orch.can_undo

    async def test_stacking(self, orch, llm) -> None:
        await start_playing(orch, llm, draft=make_draft(inventory=[InventoryItem(name="Torch", quantity=1)]))
        llm.queue("narrator", turn_json(
            inventory_change={"action": "add", "item": {"name": "torch", "quantity": 2, "type": "item"}},
        ))
        await orch.submit_turn("Gather torches")
        assert [(i.name, i.quantity) for i in orch.session.character.inventory] == [("Torch", 3)]

    async def test_combat_then_death(self, orch, llm) -> None:
        await start_playing(orch, llm)
        llm.queue("narrator", turn_json("A troll!", is_combat=True, attack_options=["Slash", "Flee"]))
        await orch.submit_turn("Cross the bridge")
        assert orch.session.phase is GamePhase.COMBAT
        assert orch.session.attack_options == ["Slash", "Flee"]

        llm.queue("narrator", turn_json("The troll wins.", health=0, is_combat=True, attack_options=["Slash"]))
        await orch.submit_turn("Slash")
        session = orch.session
        assert session.phase is GamePhase.GAME_OVER
        assert session.choices == []
        assert session.attack_options == []
        assert not orch.can_undo

        with pytest.raises(InvalidTransitionError):
            await orch.submit_turn("Get up")

    async def test_declared_game_over(self, orch, llm) -> None:
        await start_playing(orch, llm)
        llm.queue("narrator", turn_json("You claim the throne. The end.", is_game_over=True))
        await orch.submit_turn("Sit on the throne")
        assert orch.session.phase is GamePhase.GAME_OVER

    async def test_failure_keeps_state_and_undo(self, orch, llm) -> None:
        await start_playing(orch, llm)
        before = orch.session
        llm.queue("narrator", LLMError("LLM backend timed out after 120.0s"))
        await orch.submit_turn("Open the door")

        session = orch.session
        assert session.phase is before.phase
        assert session.character == before.character
        assert session.last_error == "LLM backend timed out after 120.0s"
        assert session.messages[-2] == Message(speaker="player", text="Open the door")
        assert session.messages[-1] == Message(
            speaker="system", text="Error: LLM backend timed out after 120.0s"
        )
        assert not session.is_loading
        assert orch.can_undo

        assert orch.undo()
        assert orch.session.messages == before.messages
        assert orch.session.last_error is None

    async def test_unreadable_backend_reply_is_a_turn_failure(self) -> None:
        reply = MagicMock(status_code=200, text="<html>gateway</html>")
        reply.json.side_effect = ValueError("Expecting value")
        orch = make_orchestrator(HttpLLM(provider_url="http://localhost:5001"))
        orch.session = session_for(make_character())
        before = orch.session

        with patch("httpx.AsyncClient.post", AsyncMock(return_value=reply)):
            await orch.submit_turn("look")

        session = orch.session
        assert session.last_error == "LLM backend returned a non-JSON body"
        assert session.messages[-1] == Message(
            speaker="system", text="Error: LLM backend returned a non-JSON body"
        )
        assert session.character == before.character
        assert session.phase is GamePhase.GAMEPLAY
        assert not session.is_loading

    async def test_dropped_connection_is_a_turn_failure(self) -> None:
        orch = make_orchestrator(HttpLLM(provider_url="http://localhost:5001"))
        orch.session = session_for(make_character())

        with patch("httpx.AsyncClient.post", AsyncMock(side_effect=httpx.ReadError("reset"))):
            await orch.submit_turn("look")

        assert "failed" in orch.session.last_error
        assert orch.session.messages[-1].speaker == "system"

    async def test_invalid_turn_payload(self, orch, llm) -> None:
        await start_playing(orch, llm)
        llm.queue("narrator", '{"scene_description": "Half a turn"')
        await orch.submit_turn("Look")
        assert "invalid JSON" in orch.session.last_error
        assert orch.session.character.health == 100

    async def test_turn_requires_character(self, orch) -> None:
        with pytest.raises(InvalidTransitionError, match="without a character"):
            await orch.submit_turn("Hello?")

    async def test_undo_is_single_level(self, orch, llm) -> None:
        await start_playing(orch, llm)
        llm.queue("narrator", turn_json("One.", health=90), turn_json("Two.", health=70))
        await orch.submit_turn("first")
        after_first = orch.session
        await orch.submit_turn("second")

        assert orch.undo()
        assert orch.session.character.health == 90
        assert orch.session.messages == after_first.messages
        assert not orch.undo()
        assert orch.session.character.health == 90

    async def test_history_window_passed_to_narrator(self, llm, store) -> None:
        orch = make_orchestrator(llm, store)
        orch._narrative._history_window = 2
        await start_playing(orch, llm)
        llm.queue("narrator", turn_json())
        await orch.submit_turn("Onward")
        prompt = llm.prompts("narrator")[-1]
        assert "Your adventure in the world of Oakhaven begins" not in prompt
        assert "[game] You wake at a crossroads." in prompt
        assert "[player] Onward" in prompt


class TestInFlight:
    async def test_second_submit_while_loading_raises(self, orch, llm) -> None:
        await start_playing(orch, llm)
        llm.gate.clear()
        llm.queue("narrator", turn_json("Slow reply."))
        task = asyncio.create_task(orch.submit_turn("Wait"))
        await asyncio.sleep(0)

        assert orch.session.is_loading
        assert not orch.can_undo
        with pytest.raises(InvalidTransitionError, match="in flight"):
            await orch.submit_turn("Again")

        llm.gate.set()
        await task
        assert not orch.session.is_loading
        assert orch.session.messages[-1].text == "Slow reply."
        assert [m.text for m in orch.session.messages].count("Again") == 0

    async def test_stale_response_after_reset_is_discarded(self, orch, llm) -> None:
        await start_playing(orch, llm)
        llm.gate.clear()
        llm.queue("narrator", turn_json("Too late.", health=5))
        task = asyncio.create_task(orch.submit_turn("Open the chest"))
        await asyncio.sleep(0)

        orch.start_anew()
        llm.gate.set()
        await task

        assert orch.session == Session()
        llm.assert_exhausted()

    async def test_stale_response_after_load_is_discarded(self, orch, llm) -> None:
        await start_playing(orch, llm)
        orch.save_game()
        saved = orch.session

        llm.gate.clear()
        llm.queue("narrator", turn_json("Too late.", health=5))
        task = asyncio.create_task(orch.submit_turn("Open the chest"))
        await asyncio.sleep(0)

        assert orch.load_game(saved.character.id)
        llm.gate.set()
        await task

        assert orch.session.messages == saved.messages
        assert orch.session.character.health == 100
        assert not orch.session.is_loading


class TestFate:
    async def test_fate_revives(self, orch, llm) -> None:
        await play_until_dead(orch, llm)
        llm.queue("narrator", turn_json("A healer drags you from the mud.", health=20))
        await orch.let_fate_decide()

        session = orch.session
        assert session.phase is GamePhase.GAMEPLAY
        assert session.character.health == 20
        assert [m.text for m in session.messages[-2:]] == [
            FATE_FRAMING,
            "A healer drags you from the mud.",
        ]
        prompt = llm.prompts("narrator")[-1]
        assert "The hero, Aria, has just been defeated" in prompt
        assert "10-25% of 100" in prompt
        assert not orch.can_undo

    async def test_fate_failure_stays_game_over(self, orch, llm) -> None:
        await play_until_dead(orch, llm)
        llm.queue("narrator", LLMError("HTTP 500"))
        await orch.let_fate_decide()
        assert orch.session.phase is GamePhase.GAME_OVER
        assert orch.session.messages[-1].text == "Error: Fate itself recoils in error. HTTP 500"

    async def test_fate_only_after_game_over(self, orch, llm) -> None:
        await start_playing(orch, llm)
        with pytest.raises(InvalidTransitionError):
            await orch.let_fate_decide()


# ---------------------------------------------------------------------------
# Character sheet
# ---------------------------------------------------------------------------

class TestCharacterSheet:
    async def test_add_companion_from_candidates(self, orch, llm) -> None:
        await start_playing(orch, llm, opening=turn_json(
            "A scout waves from the treeline.",
            new_characters=[{"name": "Mira", "kind": "Elf", "description": "A wary scout."}],
        ))
        assert [c.name for c in orch.session.potential_companions] == ["Mira"]

        character = orch.add_companion("mira")
        [companion] = character.companions
        assert companion.name == "Mira"
        assert companion.backstory == "A wary scout."
        assert orch.session.potential_companions == []

    async def test_add_unknown_companion(self, orch, llm) -> None:
        await start_playing(orch, llm)
        with pytest.raises(InvalidTransitionError):
            orch.add_companion("Nobody")

    async def test_edits(self, orch, llm) -> None:
        draft = make_draft(
            inventory=[InventoryItem(name="Arrow", quantity=12), InventoryItem(name="Bow")],
            companions=[Companion(id="dog-1", name="Rex", kind="Dog")],
        )
        await start_playing(orch, llm, draft=draft)
        orch.drop_item("arrow")
        orch.dismiss_companion("dog-1")
        orch.update_backstory("A hunter no longer.")
        character = orch.session.character
        assert [i.name for i in character.inventory] == ["Bow"]
        assert character.companions == []
        assert character.backstory == "A hunter no longer."


# ---------------------------------------------------------------------------
# Saves
# ---------------------------------------------------------------------------

class TestSaves:
    async def test_save_load_round_trip(self, orch, llm, clock) -> None:
        await start_playing(orch, llm)
        result = orch.save_game()
        assert result.ok
        assert orch.notice.text == SAVE_OK
        assert not orch.notice.is_error
        saved = orch.session

        clock.now += 3.5
        assert orch.notice is None

        llm.queue("narrator", turn_json("Later.", health=40))
        await orch.submit_turn("Keep going")
        assert orch.load_game(saved.character.id)

        session = orch.session
        assert session.character == saved.character
        assert session.messages == saved.messages
        assert session.choices == saved.choices
        assert session.phase is saved.phase
        assert not orch.can_undo

    async def test_save_failure_notice(self, orch, llm, store) -> None:
        await start_playing(orch, llm)
        store.unavailable = True
        result = orch.save_game()
        assert not result.ok
        assert orch.notice.is_error

    async def test_load_unknown_keeps_session(self, orch, llm) -> None:
        await start_playing(orch, llm)
        before = orch.session
        assert not orch.load_game("missing")
        assert orch.session.last_error == SAVE_NOT_FOUND
        assert orch.session.character == before.character
        assert orch.session.messages == before.messages

    async def test_delete(self, orch, llm) -> None:
        await start_playing(orch, llm)
        orch.save_game()
        save_id = orch.session.character.id
        assert orch.delete_game(save_id)
        assert orch.saves == []
        assert not orch.delete_game(save_id)
        assert orch.session.last_error == SAVE_NOT_FOUND

    def test_corrupted_storage_warning_surfaces_once(self, orch, store) -> None:
        store.data[DEFAULT_SAVES_KEY] = "{{{ not json"
        assert orch.refresh_saves() == []
        assert orch.session.last_error == CORRUPTED_ARCHIVED
        orch.start_anew()
        assert orch.refresh_saves() == []
        assert orch.session.last_error is None


# ---------------------------------------------------------------------------
# Perspective
# ---------------------------------------------------------------------------

class TestPerspective:
    async def test_death_and_continuation(self, orch, llm) -> None:
        await play_until_dead(orch, llm)
        prior = list(orch.session.messages)

        context = orch.continue_as_new_character()
        assert context.previous_protagonist.status == "dead"
        assert orch.session.phase is GamePhase.CHARACTER_CREATION_START
        assert orch.session.character is None

        llm.queue("canon_events", "Lore.")
        llm.queue("narrator", turn_json("Bren arrives at the crossroads."))
        await orch.finalize_character(make_draft(name="Bren"), is_from_known_world=True)

        session = orch.session
        assert session.character.name == "Bren"
        assert session.phase is GamePhase.GAMEPLAY
        assert session.messages[: len(prior)] == prior
        assert session.messages[len(prior)].text == "The tale of Aria has ended. A new story begins..."
        assert session.messages[-1].text == "Bren arrives at the crossroads."
        assert '"Aria" has fallen' in llm.prompts("narrator")[-1]
        assert orch.continuation is None

    async def test_continuation_world_overrides_quick_start(self, orch, llm) -> None:
        await play_until_dead(orch, llm)
        orch.continue_as_new_character()
        llm.queue("simple_character", json.dumps(SIMPLE_CHARACTER))
        llm.queue("canon_events", "Lore.")
        llm.queue("visual_theme", THEME_JSON)
        llm.queue("narrator", turn_json())
        await orch.quick_start("Bren", world="Somewhere Else")
        assert 'must be exactly "Oakhaven"' in llm.prompts("simple_character")[0]
        assert orch.session.character.is_from_known_world

    async def test_continue_requires_game_over(self, orch, llm) -> None:
        await start_playing(orch, llm)
        with pytest.raises(InvalidTransitionError):
            orch.continue_as_new_character()

    async def test_switch_lists_same_world_only(self, llm, store) -> None:
        seed = SaveRepository(store)
        seed.save(session_for(make_character(id="a", name="Aria", theme="Oakhaven")))
        seed.save(session_for(make_character(id="b", name="Kael", theme="Skyreach")))
        seed.save(session_for(make_character(id="c", name="Cora", theme="Oakhaven")))

        orch = make_orchestrator(llm, store)
        orch.refresh_saves()
        assert orch.load_game("a")

        candidates = orch.open_switch_perspective()
        assert [s.id for s in candidates] == ["c"]

        with pytest.raises(InvalidTransitionError):
            orch.confirm_switch("b")

        assert orch.confirm_switch("c")
        session = orch.session
        assert session.character.name == "Cora"
        assert session.messages[-1].speaker == "system"
        assert session.messages[-1].text.startswith("*** MEANWHILE ***")
        assert "involving Aria" in session.messages[-1].text

    async def test_switch_new_character(self, orch, llm) -> None:
        await start_playing(orch, llm)
        prior = list(orch.session.messages)
        orch.open_switch_perspective()
        assert len(orch.saves) == 1

        context = orch.confirm_switch_new()
        assert context.previous_protagonist.status == "alive"
        assert orch.session.phase is GamePhase.CHARACTER_CREATION_START

        llm.queue("narrator", turn_json("Elsewhere in Oakhaven..."))
        await orch.finalize_character(make_draft(name="Bren"), is_from_known_world=False)
        session = orch.session
        assert session.messages[: len(prior)] == prior
        assert session.messages[len(prior)].text == "The perspective shifts..."
        assert "still active in the world" in llm.prompts("narrator")[-1]

    async def test_switch_new_saves_the_departing_character(self, orch, llm) -> None:
        await start_playing(orch, llm)
        departing = orch.session.character

        orch.confirm_switch_new()

        [slot] = orch.refresh_saves()
        assert slot.id == departing.id
        assert slot.character == departing

    async def test_confirm_switch_saves_the_departing_character(self, llm, store) -> None:
        SaveRepository(store).save(session_for(make_character(id="c", name="Cora")))
        orch = make_orchestrator(llm, store)
        orch.refresh_saves()
        orch.session = session_for(make_character(), messages=[Message(speaker="game", text="Dusk.")])

        assert orch.confirm_switch("c")

        saved = {s.id: s for s in orch.refresh_saves()}
        assert saved["aria-1"].messages == [Message(speaker="game", text="Dusk.")]
        assert orch.session.character.name == "Cora"

    async def test_switch_not_offered_after_death(self, orch, llm) -> None:
        await play_until_dead(orch, llm)
        with pytest.raises(InvalidTransitionError):
            orch.open_switch_perspective()
