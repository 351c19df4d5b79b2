from __future__ import annotations

from loguru import logger


class ActivationTracker:
    """Remembers the last position at which each lorebook entry was selected.

    An entry selected at position P stays sticky while ``current - P < window``
    and its record is pruned once ``current - P > window``.
    """

    def __init__(self, window: int = 10, data: dict[str, int] | None = None, current_position: int = 0):
        if window <= 0:
            raise ValueError("stickiness window must be positive")
        self.window = window
        self.current_position = current_position
        self._last: dict[str, int] = {str(key): int(value) for key, value in (data or {}).items()}

    def set_position(self, position: int) -> None:
        self.current_position = position

    def record_activation(self, entry_id: str, position: int | None = None) -> None:
        if entry_id.startswith("live-"):
            return
        self._last[entry_id] = self.current_position if position is None else position

    def get_last_activation(self, entry_id: str) -> int | None:
        return self._last.get(entry_id)

    def is_sticky(self, entry_id: str) -> bool:
        last = self._last.get(entry_id)
        if last is None:
            return False
        return 0 <= self.current_position - last < self.window

    def turns_left(self, entry_id: str) -> int:
        last = self._last.get(entry_id)
        if last is None:
            return 0
        return max(0, self.window - (self.current_position - last) - 1)

    def prune(self) -> list[str]:
        stale = [entry_id for entry_id, last in self._last.items() if self.current_position - last > self.window]
        for entry_id in stale:
            del self._last[entry_id]
        if stale:
            logger.bind(position=self.current_position).debug("Pruned {} stale activations", len(stale))
        return stale

    def to_dict(self) -> dict[str, int]:
        return dict(self._last)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._last

    def __len__(self) -> int:
        return len(self._last)
