"""Append-only diagnostic log of issued device actions and their outcomes."""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandLogEntry:
    id: str
    hint: str
    phase: str | None
    tile: str | None
    timestamp: float
    sequence: int
    group: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class CommandLog:
    """Ordered record of what the runner asked the hardware to do.

    Entries are never modified or replayed.  ``group`` ties the request
    entry and its outcome entry together (the command correlation id, or a
    batch label for grouped moves).
    """

    def __init__(self) -> None:
        self._entries: list[CommandLogEntry] = []
        self._seq = itertools.count(1)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[CommandLogEntry]:
        return iter(list(self._entries))

    @property
    def entries(self) -> tuple[CommandLogEntry, ...]:
        return tuple(self._entries)

    def record(
        self,
        hint: str,
        *,
        phase: str | None = None,
        tile: str | None = None,
        group: str | None = None,
        **metadata: Any,
    ) -> CommandLogEntry:
        sequence = next(self._seq)
        entry = CommandLogEntry(
            id=f"cmd-{sequence}",
            hint=hint,
            phase=phase,
            tile=tile,
            timestamp=time.time(),
            sequence=sequence,
            group=group,
            metadata=dict(metadata),
        )
        self._entries.append(entry)
        logger.debug("[%s] %s %s %s", phase or "-", hint, tile or "", metadata or "")
        return entry
