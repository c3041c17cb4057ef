"""Single-level undo.

At most one snapshot is retained: snapshot() overwrites, undo() consumes.
A second undo() without an intervening snapshot() is a no-op.
"""

from __future__ import annotations

from taleweaver.models import Session, UndoSnapshot


class UndoManager:
    def __init__(self) -> None:
        self._snapshot: UndoSnapshot | None = None

    @property
    def has_snapshot(self) -> bool:
        return self._snapshot is not None

    def can_undo(self, session: Session) -> bool:
        return self._snapshot is not None and not session.is_loading

    def snapshot(self, session: Session) -> None:
        self._snapshot = UndoSnapshot(
            phase=session.phase,
            character=session.character,
            messages=session.messages,
            choices=session.choices,
            attack_options=session.attack_options,
        ).model_copy(deep=True)

    def clear(self) -> None:
        self._snapshot = None

    def undo(self, session: Session) -> Session | None:
        """Return `session` rolled back to the snapshot, or None if unavailable."""
        if not self.can_undo(session):
            return None
        snap = self._snapshot
        self._snapshot = None
        return session.model_copy(update={
            "phase": snap.phase,
            "character": snap.character,
            "messages": snap.messages,
            "choices": snap.choices,
            "attack_options": snap.attack_options,
            "last_error": None,
            "potential_companions": [],
        })
