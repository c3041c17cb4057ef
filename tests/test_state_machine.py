"""Tests for taleweaver.state_machine: phase legality."""

import pytest
from stubs import make_character

from taleweaver.models import GamePhase, TurnResult
from taleweaver.state_machine import (
    InvalidTransitionError,
    can_transition,
    is_game_over,
    phase_after_turn,
    require_phase,
    transition,
)


def _turn(**fields) -> TurnResult:
    fields.setdefault("scene_description", "...")
    fields.setdefault("updated_health", 100)
    return TurnResult(**fields)


class TestTransitions:
    @pytest.mark.parametrize("source,target", [
        (GamePhase.CHARACTER_CREATION_START, GamePhase.CHARACTER_CREATION_FINALIZE),
        (GamePhase.CHARACTER_CREATION_START, GamePhase.GAMEPLAY),
        (GamePhase.CHARACTER_CREATION_FINALIZE, GamePhase.COMBAT),
        (GamePhase.GAMEPLAY, GamePhase.GAME_OVER),
        (GamePhase.COMBAT, GamePhase.GAMEPLAY),
        (GamePhase.GAME_OVER, GamePhase.CHARACTER_CREATION_START),
        (GamePhase.GAME_OVER, GamePhase.GAMEPLAY),
    ])
    def test_legal(self, source: GamePhase, target: GamePhase) -> None:
        assert can_transition(source, target)
        assert transition(source, target) is target

    @pytest.mark.parametrize("source,target", [
        (GamePhase.CHARACTER_CREATION_START, GamePhase.GAME_OVER),
        (GamePhase.CHARACTER_CREATION_FINALIZE, GamePhase.CHARACTER_CREATION_START),
        (GamePhase.GAMEPLAY, GamePhase.CHARACTER_CREATION_FINALIZE),
        (GamePhase.COMBAT, GamePhase.CHARACTER_CREATION_START),
    ])
    def test_illegal(self, source: GamePhase, target: GamePhase) -> None:
        assert not can_transition(source, target)
        with pytest.raises(InvalidTransitionError, match="Illegal phase transition"):
            transition(source, target)

    def test_require_phase(self) -> None:
        require_phase(GamePhase.GAMEPLAY, frozenset({GamePhase.GAMEPLAY}), "act")
        with pytest.raises(InvalidTransitionError, match="Cannot act in phase game_over"):
            require_phase(GamePhase.GAME_OVER, frozenset({GamePhase.GAMEPLAY}), "act")


class TestPhaseAfterTurn:
    def test_combat_flag(self) -> None:
        character = make_character(health=90)
        assert phase_after_turn(GamePhase.GAMEPLAY, character, _turn(is_combat=True)) is GamePhase.COMBAT

    def test_peaceful_turn(self) -> None:
        character = make_character(health=90)
        assert phase_after_turn(GamePhase.COMBAT, character, _turn()) is GamePhase.GAMEPLAY

    def test_zero_health_beats_combat(self) -> None:
        character = make_character(health=0)
        result = _turn(is_combat=True, updated_health=0)
        assert phase_after_turn(GamePhase.GAMEPLAY, character, result) is GamePhase.GAME_OVER

    def test_declared_game_over(self) -> None:
        character = make_character(health=100)
        assert is_game_over(character, _turn(is_game_over=True))
        assert not is_game_over(character, _turn())

    def test_negative_health_is_game_over(self) -> None:
        assert is_game_over(make_character(health=-3), _turn())
