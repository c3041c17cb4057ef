"""Game phase transitions.

Legal transitions (source -> destinations):

  character_creation_start     -> character_creation_finalize  (detailed scaffold fetched)
                               -> gameplay | combat            (quick start + first turn)
  character_creation_finalize  -> gameplay | combat            (finalize + first turn)
  gameplay | combat            -> gameplay | combat | game_over (each turn)
  game_over                    -> character_creation_start     (start anew / continue as new)
                               -> gameplay | combat | game_over (let fate decide)

Any phase may be reset to character_creation_start, and loading a save puts
the session in whatever phase the save recorded; both replace the session
outright rather than going through transition().
"""

from __future__ import annotations

from taleweaver.models import Character, GamePhase, TurnResult

_TRANSITIONS: dict[GamePhase, frozenset[GamePhase]] = {
    GamePhase.CHARACTER_CREATION_START: frozenset({
        GamePhase.CHARACTER_CREATION_FINALIZE,
        GamePhase.GAMEPLAY,
        GamePhase.COMBAT,
    }),
    GamePhase.CHARACTER_CREATION_FINALIZE: frozenset({
        GamePhase.GAMEPLAY,
        GamePhase.COMBAT,
    }),
    GamePhase.GAMEPLAY: frozenset({
        GamePhase.GAMEPLAY,
        GamePhase.COMBAT,
        GamePhase.GAME_OVER,
    }),
    GamePhase.COMBAT: frozenset({
        GamePhase.GAMEPLAY,
        GamePhase.COMBAT,
        GamePhase.GAME_OVER,
    }),
    GamePhase.GAME_OVER: frozenset({
        GamePhase.CHARACTER_CREATION_START,
        GamePhase.GAMEPLAY,
        GamePhase.COMBAT,
        GamePhase.GAME_OVER,
    }),
}

CREATION_PHASES = frozenset({
    GamePhase.CHARACTER_CREATION_START,
    GamePhase.CHARACTER_CREATION_FINALIZE,
})
PLAY_PHASES = frozenset({GamePhase.GAMEPLAY, GamePhase.COMBAT})


class InvalidTransitionError(RuntimeError):
    """Raised when a caller asks for something the current phase does not allow."""


def can_transition(source: GamePhase, target: GamePhase) -> bool:
    return target in _TRANSITIONS[source]


def transition(source: GamePhase, target: GamePhase) -> GamePhase:
    """Return `target` if the move is legal, else raise InvalidTransitionError."""
    if not can_transition(source, target):
        raise InvalidTransitionError(
            f"Illegal phase transition {source.value} -> {target.value}"
        )
    return target


def require_phase(current: GamePhase, allowed: frozenset[GamePhase], action: str) -> None:
    if current not in allowed:
        names = ", ".join(sorted(p.value for p in allowed))
        raise InvalidTransitionError(
            f"Cannot {action} in phase {current.value} (allowed: {names})"
        )


def is_game_over(character: Character, result: TurnResult) -> bool:
    """Post-mutation check: the turn declared it, or health ran out."""
    return result.is_game_over or character.health <= 0


def phase_after_turn(source: GamePhase, character: Character, result: TurnResult) -> GamePhase:
    """Destination phase once `result` has been applied to `character`."""
    if is_game_over(character, result):
        target = GamePhase.GAME_OVER
    elif result.is_combat:
        target = GamePhase.COMBAT
    else:
        target = GamePhase.GAMEPLAY
    return transition(source, target)
