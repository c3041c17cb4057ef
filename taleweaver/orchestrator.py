"""Game session orchestrator: owns the one live Session and runs every intent.

Turn flow (submit_turn):
  1. Snapshot the session for undo.
  2. Append the player's message.
  3. is_loading = True, last_error cleared, a new request token issued.
  4. NarrativeService.generate_turn(character, recent history, input).
  5. Success → apply_turn() on the character, append the scene as a game
     message, take choices/attack options, move to the next phase. Reaching
     game_over clears choices and the undo snapshot.
  6. Failure → append a system error message and set last_error; phase and
     character stay as they were and the undo snapshot survives.
  7. is_loading = False.

Request tokens: every turn-like request (submit, finalize, quick start,
scaffold, fate) advances `_sequence` and remembers the value. Resets (load,
start anew, continuation, switch) advance it too. A response that arrives
when its token is no longer current is dropped without touching the session.

At most one turn-like request may be in flight. Entry points raise
InvalidTransitionError when called while is_loading is set; the presentation
layer is expected to prevent that.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from taleweaver.generation import CreationService, GenerationError, NarrativeService
from taleweaver.models import (
    Character,
    CharacterDraft,
    CreatorOptions,
    CustomizationArea,
    GamePhase,
    Message,
    NewCharacter,
    Notice,
    SaveData,
    Session,
    TurnResult,
    WorldContinuationContext,
)
from taleweaver.mutation import (
    apply_turn,
    dismiss_companion,
    drop_item,
    new_character_id,
    promote_companion,
    update_backstory,
)
from taleweaver.perspective import (
    continuation_context,
    meanwhile_message,
    opening_turn,
    switch_candidates,
)
from taleweaver.prompts import FATE_INPUT, render_prompt
from taleweaver.state_machine import (
    CREATION_PHASES,
    PLAY_PHASES,
    InvalidTransitionError,
    phase_after_turn,
    require_phase,
    transition,
)
from taleweaver.storage import (
    SaveNotFoundError,
    SaveRepository,
    SaveResult,
    StorageUnavailableError,
)
from taleweaver.undo import UndoManager

logger = logging.getLogger(__name__)

SAVE_NOT_FOUND = "Could not find the selected save file."
DELETE_FAILED = "Failed to delete game. Storage might be full or data is corrupt."
FATE_FRAMING = "A thread of fate refuses to be severed..."
UNNAMED_CHARACTER = "User's Character"


def merge_tab_options(
    options: CreatorOptions, tab_index: int, areas: list[CustomizationArea]
) -> CreatorOptions:
    """Substitute fetched areas by name, keeping the scaffold's order."""
    by_name = {a.area_name: a for a in areas}
    tabs = list(options.customization_tabs)
    tab = tabs[tab_index]
    tabs[tab_index] = tab.model_copy(update={
        "areas": [by_name.get(a.area_name, a) for a in tab.areas],
    })
    return options.model_copy(update={"customization_tabs": tabs})


class GameOrchestrator:
    def __init__(
        self,
        narrative: NarrativeService,
        creation: CreationService,
        repository: SaveRepository,
        *,
        tab_prefetch_delay: float = 1.5,
        save_notice_seconds: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._narrative = narrative
        self._creation = creation
        self._repository = repository
        self._tab_prefetch_delay = tab_prefetch_delay
        self._save_notice_seconds = save_notice_seconds
        self._clock = clock
        self._sleep = sleep

        self.session = Session()
        self.undo_manager = UndoManager()
        self.continuation: WorldContinuationContext | None = None
        self._creation_name: str | None = None
        self._notice: Notice | None = None
        self._sequence = 0

    # ------------------------------------------------------------------
    # Session plumbing
    # ------------------------------------------------------------------

    def _replace(self, **update) -> None:
        self.session = self.session.model_copy(update=update)

    def _reset(self, session: Session | None = None) -> None:
        """Swap in a new session; anything still in flight becomes stale."""
        self._sequence += 1
        self.undo_manager.clear()
        self._creation_name = None
        self.session = session or Session()

    def _begin_request(self, action: str, **update) -> int:
        if self.session.is_loading:
            raise InvalidTransitionError(f"Cannot {action} while a turn is in flight")
        self._sequence += 1
        self._replace(is_loading=True, last_error=None, **update)
        return self._sequence

    def _is_current(self, token: int) -> bool:
        return token == self._sequence

    def _end_request(self, token: int) -> None:
        if self._is_current(token):
            self._replace(is_loading=False)

    def _require_character(self, action: str) -> Character:
        if self.session.character is None:
            raise InvalidTransitionError(f"Cannot {action} without a character")
        return self.session.character

    @property
    def can_undo(self) -> bool:
        return self.undo_manager.can_undo(self.session)

    @property
    def notice(self) -> Notice | None:
        if self._notice is not None and self._clock() >= self._notice.expires_at:
            self._notice = None
        return self._notice

    @property
    def saves(self) -> list[SaveData]:
        return list(self._repository.saves)

    # ------------------------------------------------------------------
    # Character creation
    # ------------------------------------------------------------------

    def _creation_world(self, world: str | None) -> str | None:
        if self.continuation is not None:
            return self.continuation.world_theme
        return world

    async def begin_creation(
        self,
        name: str,
        world: str | None = None,
        backstory: str | None = None,
        world_details: str | None = None,
    ) -> None:
        """Detailed creation: fetch the scaffold and move to finalize."""
        require_phase(self.session.phase, frozenset({GamePhase.CHARACTER_CREATION_START}),
                      "begin character creation")
        final_world = self._creation_world(world)
        token = self._begin_request("begin character creation")
        try:
            try:
                options = await self._creation.scaffold(name, final_world, backstory, world_details)
            except GenerationError as e:
                if self._is_current(token):
                    self._replace(last_error=f"Failed to generate character theme. {e}")
                return
            if not self._is_current(token):
                logger.warning("Discarding stale creation scaffold for %r", name)
                return
            if final_world:
                options = options.model_copy(update={"theme": final_world})
            self._creation_name = name
            self._replace(
                phase=transition(self.session.phase, GamePhase.CHARACTER_CREATION_FINALIZE),
                creator_options=options,
            )
        finally:
            self._end_request(token)

    async def fetch_tab_options(self, tab_index: int) -> None:
        """Populate one customization tab. Raises GenerationError on failure."""
        require_phase(self.session.phase, frozenset({GamePhase.CHARACTER_CREATION_FINALIZE}),
                      "load customization options")
        options = self.session.creator_options
        if options is None or not 0 <= tab_index < len(options.customization_tabs):
            raise InvalidTransitionError(f"No customization tab at index {tab_index}")

        token = self._sequence
        tab = options.customization_tabs[tab_index]
        try:
            areas = await self._creation.tab_options(
                options.theme,
                self._creation_name or UNNAMED_CHARACTER,
                tab.tab_name,
                [a.area_name for a in tab.areas],
            )
        except GenerationError as e:
            if self._is_current(token):
                self._replace(last_error=str(e))
            raise

        current = self.session.creator_options
        if not self._is_current(token) or current is None:
            logger.warning("Discarding stale options for tab %r", tab.tab_name)
            return
        self._replace(creator_options=merge_tab_options(current, tab_index, areas))

    async def prefetch_tab_options(self) -> list[int]:
        """Fetch every unpopulated tab in order, pausing between calls.

        A failed tab is logged and skipped; it stays retryable through
        fetch_tab_options(). Returns the indices that failed.
        """
        token = self._sequence
        failed: list[int] = []
        options = self.session.creator_options
        if options is None:
            return failed

        for index in range(len(options.customization_tabs)):
            if not self._is_current(token) or self.session.creator_options is None:
                break
            tab = self.session.creator_options.customization_tabs[index]
            if not tab.areas or tab.areas[0].options:
                continue
            try:
                await self.fetch_tab_options(index)
            except GenerationError as e:
                logger.warning(
                    "Background fetch for tab %r failed; it can be retried: %s",
                    tab.tab_name, e,
                )
                failed.append(index)
            await self._sleep(self._tab_prefetch_delay)
        return failed

    async def quick_start(
        self,
        name: str,
        world: str | None = None,
        backstory: str | None = None,
        world_details: str | None = None,
    ) -> None:
        """Simple creation: generate a full character and play its first turn."""
        require_phase(self.session.phase, frozenset({GamePhase.CHARACTER_CREATION_START}),
                      "quick start")
        final_world = self._creation_world(world)
        token = self._begin_request("quick start")
        try:
            try:
                draft = await self._creation.simple_character(
                    name, final_world, backstory, world_details
                )
            except GenerationError as e:
                if self._is_current(token):
                    self._replace(last_error=str(e))
                return
            if not self._is_current(token):
                return
            await self._finalize(draft, bool(final_world), token)
        finally:
            self._end_request(token)

    async def finalize_character(self, draft: CharacterDraft, is_from_known_world: bool) -> None:
        """Give the draft an identity and play the opening turn."""
        require_phase(self.session.phase, CREATION_PHASES, "finalize a character")
        token = self._begin_request("finalize a character")
        try:
            await self._finalize(draft, is_from_known_world, token)
        finally:
            self._end_request(token)

    async def _finalize(self, draft: CharacterDraft, is_from_known_world: bool, token: int) -> None:
        self.undo_manager.clear()

        canon_events = None
        if is_from_known_world:
            canon_events = await self._creation.canon_events(draft.theme)
        visual_theme = draft.visual_theme
        if visual_theme is None:
            visual_theme = await self._creation.visual_theme(
                draft.name, draft.theme, draft.description
            )
        if not self._is_current(token):
            return

        character = Character(
            id=new_character_id(draft.name),
            **draft.model_dump(exclude={"visual_theme"}),
            canon_events=canon_events,
            visual_theme=visual_theme,
            is_from_known_world=is_from_known_world,
        )
        player_input, seeded = opening_turn(character, self.continuation)

        try:
            result = await self._narrative.generate_turn(character, seeded, player_input)
        except GenerationError as e:
            if self._is_current(token):
                self._replace(
                    last_error=str(e),
                    messages=[*self.session.messages, Message(speaker="system", text=f"Error: {e}")],
                )
            return
        if not self._is_current(token):
            logger.warning("Discarding stale opening turn for %r", character.name)
            return

        target = GamePhase.COMBAT if result.is_combat else GamePhase.GAMEPLAY
        self.continuation = None
        self._creation_name = None
        self._replace(
            phase=transition(self.session.phase, target),
            character=apply_turn(character, result),
            messages=[*seeded, Message(speaker="game", text=result.scene_description)],
            choices=result.choices,
            attack_options=result.attack_options,
            creator_options=None,
            potential_companions=result.new_characters or [],
        )

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def submit_turn(self, player_input: str) -> None:
        self._require_character("submit a turn")
        if self.session.is_loading:
            raise InvalidTransitionError("Cannot submit a turn while a turn is in flight")
        require_phase(self.session.phase, PLAY_PHASES, "submit a turn")

        self.undo_manager.snapshot(self.session)
        history = [*self.session.messages, Message(speaker="player", text=player_input)]
        token = self._begin_request("submit a turn", messages=history)
        try:
            await self._resolve_turn(token, history, player_input)
        finally:
            self._end_request(token)

    async def let_fate_decide(self) -> None:
        """One last turn from game_over that asks the narrator for a rescue."""
        character = self._require_character("let fate decide")
        require_phase(self.session.phase, frozenset({GamePhase.GAME_OVER}), "let fate decide")

        self.undo_manager.clear()
        history = [*self.session.messages, Message(speaker="system", text=FATE_FRAMING)]
        prompt = render_prompt(FATE_INPUT, {
            "name": character.name,
            "max_health": character.max_health,
        })
        token = self._begin_request("let fate decide", messages=history)
        try:
            await self._resolve_turn(token, history, prompt, fate=True)
        finally:
            self._end_request(token)

    async def _resolve_turn(
        self, token: int, history: list[Message], player_input: str, fate: bool = False
    ) -> None:
        character = self.session.character
        try:
            result = await self._narrative.generate_turn(character, history, player_input)
        except GenerationError as e:
            if not self._is_current(token):
                return
            text = f"Error: Fate itself recoils in error. {e}" if fate else f"Error: {e}"
            update: dict = {
                "last_error": str(e),
                "messages": [*history, Message(speaker="system", text=text)],
            }
            if fate:
                update["phase"] = transition(self.session.phase, GamePhase.GAME_OVER)
            self._replace(**update)
            return

        if not self._is_current(token):
            logger.warning("Discarding stale turn response (token %d)", token)
            return
        self._apply_result(history, result)

    def _apply_result(self, history: list[Message], result: TurnResult) -> None:
        character = apply_turn(self.session.character, result)
        phase = phase_after_turn(self.session.phase, character, result)
        messages = [*history, Message(speaker="game", text=result.scene_description)]

        if phase is GamePhase.GAME_OVER:
            self.undo_manager.clear()
            self._replace(
                phase=phase, character=character, messages=messages,
                choices=[], attack_options=[], potential_companions=[],
            )
            return

        self._replace(
            phase=phase, character=character, messages=messages,
            choices=result.choices,
            attack_options=result.attack_options,
            potential_companions=result.new_characters or [],
        )

    def undo(self) -> bool:
        restored = self.undo_manager.undo(self.session)
        if restored is None:
            return False
        self.session = restored
        return True

    # ------------------------------------------------------------------
    # Player-confirmed character edits
    # ------------------------------------------------------------------

    def add_companion(self, name: str) -> Character:
        """Recruit a candidate the last turn introduced."""
        character = self._require_character("add a companion")
        remaining: list[NewCharacter] = []
        chosen: NewCharacter | None = None
        for candidate in self.session.potential_companions:
            if chosen is None and candidate.name.lower() == name.lower():
                chosen = candidate
            else:
                remaining.append(candidate)
        if chosen is None:
            raise InvalidTransitionError(f"No companion candidate named {name!r}")

        updated = promote_companion(character, chosen)
        self._replace(character=updated, potential_companions=remaining)
        return updated

    def dismiss_companion(self, companion_id: str) -> Character:
        updated = dismiss_companion(self._require_character("dismiss a companion"), companion_id)
        self._replace(character=updated)
        return updated

    def drop_item(self, name: str) -> Character:
        updated = drop_item(self._require_character("drop an item"), name)
        self._replace(character=updated)
        return updated

    def update_backstory(self, backstory: str) -> Character:
        updated = update_backstory(self._require_character("edit the backstory"), backstory)
        self._replace(character=updated)
        return updated

    # ------------------------------------------------------------------
    # Saves
    # ------------------------------------------------------------------

    def _surface_storage_warning(self) -> None:
        if self._repository.warning:
            self._replace(last_error=self._repository.warning)
            self._repository.warning = None

    def refresh_saves(self) -> list[SaveData]:
        saves = self._repository.list_saves()
        self._surface_storage_warning()
        return saves

    def save_game(self) -> SaveResult:
        self._require_character("save")
        result = self._repository.save(self.session)
        self._notice = Notice(
            text=result.message,
            is_error=not result.ok,
            expires_at=self._clock() + self._save_notice_seconds,
        )
        self._surface_storage_warning()
        return result

    def load_game(self, save_id: str, context_messages: list[Message] | None = None) -> bool:
        """Replace the live session with a save. Unknown ids leave it untouched."""
        try:
            slot = self._repository.get(save_id)
        except SaveNotFoundError:
            self._replace(last_error=SAVE_NOT_FOUND)
            return False

        self.continuation = None
        self._reset(Session(
            phase=slot.phase,
            character=slot.character,
            messages=[*slot.messages, *(context_messages or [])],
            choices=slot.choices,
            attack_options=slot.attack_options,
        ))
        return True

    def delete_game(self, save_id: str) -> bool:
        try:
            self._repository.delete(save_id)
        except SaveNotFoundError:
            self._replace(last_error=SAVE_NOT_FOUND)
            return False
        except StorageUnavailableError as e:
            logger.error("Failed to delete save %s: %s", save_id, e)
            self._replace(last_error=DELETE_FAILED)
            return False
        finally:
            self._surface_storage_warning()
        return True

    # ------------------------------------------------------------------
    # Endings and perspective
    # ------------------------------------------------------------------

    def start_anew(self) -> None:
        """Back to creation with no world continuity. Saves are kept."""
        self.continuation = None
        self._reset()

    def continue_as_new_character(self) -> WorldContinuationContext:
        """After a death: same world, the fallen hero's log as prior history."""
        self._require_character("continue as a new character")
        require_phase(self.session.phase, frozenset({GamePhase.GAME_OVER}),
                      "continue as a new character")
        context = continuation_context(self.session, "dead")
        self._reset()
        self.continuation = context
        return context

    def _require_switchable(self) -> Character:
        character = self._require_character("switch perspective")
        if self.session.is_loading:
            raise InvalidTransitionError("Cannot switch perspective while a turn is in flight")
        require_phase(self.session.phase, PLAY_PHASES, "switch perspective")
        return character

    def open_switch_perspective(self) -> list[SaveData]:
        """Save the current character and list same-world characters to switch to."""
        character = self._require_switchable()
        self.save_game()
        return switch_candidates(self._repository.saves, character)

    def confirm_switch(self, target_id: str) -> bool:
        """Take over an existing character, carrying a recap of the one left behind."""
        character = self._require_switchable()
        try:
            target = self._repository.get(target_id)
        except SaveNotFoundError:
            self._replace(last_error=SAVE_NOT_FOUND)
            return False
        if target not in switch_candidates([target], character):
            raise InvalidTransitionError(
                f"Cannot switch to {target.character.name!r}: not another character "
                f"in {character.theme!r}"
            )
        self.save_game()
        recap = meanwhile_message(character, self.session.messages)
        return self.load_game(target_id, [recap])

    def confirm_switch_new(self) -> WorldContinuationContext:
        """Leave the current character alive and create a new one in the same world."""
        self._require_switchable()
        self.save_game()
        context = continuation_context(self.session, "alive")
        self._reset()
        self.continuation = context
        return context
