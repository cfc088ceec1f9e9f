"""Garbage collection of abandoned rooms.

Two mechanisms converge on ``RoomRegistry.delete_room``:

- a deferred check, scheduled whenever a room becomes empty. There is at most
  one pending timer per room; emptying the room again restarts it.
- a periodic sweep over every room, which catches rooms whose deferred check
  never ran (rooms created but never joined, cancelled timers).

Both pass the retention window as ``min_idle_seconds``, so a room that was
refilled in the meantime, or emptied again more recently, survives.
"""
import threading
from typing import Callable, Dict, List, Optional, Tuple

from constants import ROOM_RETENTION_SECONDS, ROOM_SWEEP_INTERVAL_SECONDS
from logging_config import get_logger, short_token
from room_registry import RoomRegistry

logger = get_logger(__name__)


class ExpirationSweeper:
    def __init__(
        self,
        registry: RoomRegistry,
        retention_seconds: float = ROOM_RETENTION_SECONDS,
        sweep_interval_seconds: float = ROOM_SWEEP_INTERVAL_SECONDS,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ):
        self.registry = registry
        self.retention_seconds = retention_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.timer_factory = timer_factory

        # room token -> (generation, timer); only the latest generation may fire
        self._timers: Dict[str, Tuple[int, threading.Timer]] = {}
        self._generation = 0
        self._timers_lock = threading.Lock()
        self._shutdown = threading.Event()
        self._sweep_thread: Optional[threading.Thread] = None

    # -- deferred checks ---------------------------------------------------

    def schedule_deletion(self, room_token: str, delay: Optional[float] = None) -> None:
        """Schedule a deletion attempt for ``room_token``, by default after the retention window."""
        if self._shutdown.is_set():
            return
        if delay is None:
            delay = self.retention_seconds
        with self._timers_lock:
            self._generation += 1
            generation = self._generation
        timer = self.timer_factory(delay, self._fire, args=(room_token, generation))
        timer.daemon = True
        with self._timers_lock:
            previous = self._timers.get(room_token)
            self._timers[room_token] = (generation, timer)
        if previous is not None:
            previous[1].cancel()
        timer.start()
        logger.debug(f"Deletion check for room {short_token(room_token)} scheduled in {delay}s")

    def _fire(self, room_token: str, generation: int) -> None:
        with self._timers_lock:
            entry = self._timers.get(room_token)
            if entry is None or entry[0] != generation:
                # Superseded by a newer check or cancelled
                return
            del self._timers[room_token]
        try:
            idle = self.registry.idle_seconds(room_token)
            if idle is None:
                logger.debug(f"Room {short_token(room_token)} kept: occupied or already gone")
            elif idle < self.retention_seconds:
                # Timer and room clocks can drift apart slightly; check again when due
                self.schedule_deletion(room_token, delay=self.retention_seconds - idle)
            elif self.registry.delete_room(room_token, min_idle_seconds=self.retention_seconds):
                logger.info(f"Room {short_token(room_token)} expired after {self.retention_seconds}s empty")
        except Exception:
            logger.exception(f"Deferred deletion of room {short_token(room_token)} failed")

    def cancel(self, room_token: str) -> bool:
        with self._timers_lock:
            entry = self._timers.pop(room_token, None)
        if entry is None:
            return False
        entry[1].cancel()
        return True

    def is_scheduled(self, room_token: str) -> bool:
        with self._timers_lock:
            return room_token in self._timers

    def pending(self) -> int:
        with self._timers_lock:
            return len(self._timers)

    # -- periodic sweep ----------------------------------------------------

    def sweep_once(self) -> List[str]:
        """Delete every room that has been empty longer than the retention window."""
        deleted = []
        for room_token in self.registry.idle_rooms(self.retention_seconds):
            if self.registry.delete_room(room_token, min_idle_seconds=self.retention_seconds):
                self.cancel(room_token)
                deleted.append(room_token)
        if deleted:
            logger.info(f"Sweep removed {len(deleted)} abandoned room(s), {len(self.registry)} remain")
        return deleted

    def _sweep_loop(self) -> None:
        while not self._shutdown.wait(self.sweep_interval_seconds):
            try:
                self.sweep_once()
            except Exception:
                logger.exception("Room sweep failed")

    def start(self) -> None:
        self._shutdown.clear()
        if self.sweep_interval_seconds <= 0:
            logger.info("Periodic room sweep disabled")
            return
        if self._sweep_thread is not None and self._sweep_thread.is_alive():
            return
        self._sweep_thread = threading.Thread(target=self._sweep_loop, name="room-sweeper", daemon=True)
        self._sweep_thread.start()
        logger.info(
            f"Room sweeper started: interval={self.sweep_interval_seconds}s, retention={self.retention_seconds}s"
        )

    def stop(self) -> None:
        self._shutdown.set()
        with self._timers_lock:
            timers = [timer for _, timer in self._timers.values()]
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        if self._sweep_thread is not None:
            self._sweep_thread.join(timeout=5.0)
            self._sweep_thread = None
        logger.info(f"Room sweeper stopped, {len(timers)} pending check(s) cancelled")
