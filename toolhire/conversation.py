"""
Conversation state threading.

The caller owns the turn history and sends it whole on every request. Nothing
here keeps a reference to it between calls; every operation returns a new list
so the caller's copy is never modified behind its back.
"""
from __future__ import annotations

from typing import Iterable

from toolhire.models import Turn


def normalize(state: Iterable[Turn | dict] | None) -> list[Turn]:
    """Coerce a history of Turn objects or raw dicts into a fresh list of Turns."""
    if not state:
        return []
    return [t if isinstance(t, Turn) else Turn.model_validate(t) for t in state]


def append_turn(state: Iterable[Turn | dict] | None, role: str, text: str) -> list[Turn]:
    return [*normalize(state), Turn(role=role, text=text)]


def append_exchange(state: Iterable[Turn | dict] | None, user_input: str, model_output: str) -> list[Turn]:
    """Return the history with one user turn and its model reply appended."""
    return append_turn(append_turn(state, "user", user_input), "model", model_output)
