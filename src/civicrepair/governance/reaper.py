"""Ballot reaper — expires stale ballots promptly instead of on next read."""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from civicrepair.governance.voting import QuorumVotingEngine
from civicrepair.models.ballot import Ballot

log = structlog.get_logger(__name__)


class BallotReaper:
    """Daemon thread that sweeps ``expire_stale`` on a fixed interval.

    Usage:
        reaper = BallotReaper(engine, interval_seconds=60)
        reaper.start()
        ...
        reaper.stop()
    """

    def __init__(
        self,
        engine: QuorumVotingEngine,
        interval_seconds: float,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("Reaper interval must be positive")
        self._engine = engine
        self._interval = interval_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> list[Ballot]:
        settled = self._engine.expire_stale(self._clock())
        for ballot in settled:
            log.info("reaper.settled", ballot_id=ballot.ballot_id, status=ballot.status.value)
        return settled

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="civicrepair-ballot-reaper", daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self.run_once()
            except Exception:
                # A bad sweep must not kill the reaper; the next tick retries.
                log.exception("reaper.sweep_failed")
