"""Last-run status holder -- what an admin surface polls while a run is going.

Lifecycle per run: start() resets every field and stamps startedAt;
update() records progress (inserted count so far); finish() stamps
finishedAt and the final count or error. snapshot() is safe to call at
any point, including before the first run.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .schemas import RunStatus


@dataclass
class _RunState:
    run_id: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    active_sources: Optional[int] = None
    articles_inserted: Optional[int] = None
    error: Optional[str] = None
    running: bool = False


class RunStatusHolder:
    """Single-writer status of the latest ingestion run."""

    def __init__(self):
        self._state = _RunState()

    def start(self, run_id: str) -> None:
        self._state = _RunState(
            run_id=run_id,
            started_at=datetime.now(timezone.utc),
            articles_inserted=0,
            running=True,
        )

    def update(self, *, active_sources: Optional[int] = None, articles_inserted: Optional[int] = None) -> None:
        if active_sources is not None:
            self._state.active_sources = active_sources
        if articles_inserted is not None:
            self._state.articles_inserted = articles_inserted

    def finish(self, *, articles_inserted: Optional[int] = None, error: Optional[str] = None) -> None:
        self._state.finished_at = datetime.now(timezone.utc)
        if articles_inserted is not None:
            self._state.articles_inserted = articles_inserted
        self._state.error = error
        self._state.running = False

    @property
    def run_id(self) -> Optional[str]:
        return self._state.run_id

    @property
    def is_running(self) -> bool:
        return self._state.running

    def snapshot(self) -> RunStatus:
        s = self._state
        return RunStatus(
            started_at=s.started_at,
            finished_at=s.finished_at,
            active_sources=s.active_sources,
            articles_inserted=s.articles_inserted,
            error=s.error,
        )
