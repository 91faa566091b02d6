"""Per-watch state machine gating filesystem events into sync passes.

This module provides:
- WatchCoordinator: Debounce / min-age / sync state machine for one watch

State machine:
    | State           | Trigger                          | Next state          |
    |-----------------|----------------------------------|---------------------|
    | IDLE            | change event                     | DEBOUNCING          |
    | DEBOUNCING      | change event                     | DEBOUNCING (re-arm) |
    | DEBOUNCING      | debounce deadline passed         | WAITING_MIN_AGE     |
    | WAITING_MIN_AGE | some dirty path too young        | WAITING_MIN_AGE     |
    | WAITING_MIN_AGE | every dirty path old enough      | SYNCING             |
    | SYNCING         | pass finished                    | IDLE                |
    | SYNCING         | pass finished, files deferred    | WAITING_MIN_AGE     |
    | SYNCING         | fatal error                      | ERRORED             |
    | ERRORED         | change event / restart           | DEBOUNCING / SYNCING|
    | any             | disable                          | DISABLED            |
    | any             | unexpected error in the loop     | ERRORED             |
    | DISABLED        | enable                           | IDLE (+ start pass) |

The coordinator runs on its own thread, consuming a queue of change
events and commands. Timers are deadlines checked between queue reads,
so a pass in progress delays (never overlaps) the next one, and commands
issued during a pass take effect once it finishes.

``handle_event`` and ``tick`` hold all transition logic and take the
current time explicitly, so the machine can be driven without threads.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
from enum import Enum, auto
from typing import TYPE_CHECKING

from cicada.core.errors import CicadaError, WatchRuntimeError
from cicada.core.types import WatchPhase
from cicada.sync.exclude import ExcludeMatcher
from cicada.watch.watcher import ChangeEvent, SourceWatcher

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from cicada.core.config import WatchConfig
    from cicada.sync.engine import SyncReport

logger = logging.getLogger(__name__)

# Upper bound for a single min-age recheck wait
DEFAULT_RECHECK_INTERVAL = 5.0

# How often the thread wakes up to check the event source when no timer is armed
HEALTH_CHECK_INTERVAL = 1.0


class _Command(Enum):
    ENABLE = auto()
    DISABLE = auto()
    RESTART = auto()
    STOP = auto()


class WatchCoordinator:
    """Drives one watch from filesystem events to completed sync passes.

    Usage:
        coordinator = WatchCoordinator(config, runner=run_pass)
        coordinator.start()
        ...
        coordinator.disable()
        coordinator.stop()
    """

    def __init__(
        self,
        config: WatchConfig,
        runner: Callable[[], SyncReport],
        *,
        pending: Iterable[str] = (),
        on_sync_complete: Callable[[str, SyncReport], None] | None = None,
        on_sync_error: Callable[[str, str], None] | None = None,
        on_state_change: Callable[[str, WatchPhase, list[str]], None] | None = None,
        watcher_factory: Callable[[WatchConfig, Callable[[ChangeEvent], None]], SourceWatcher] | None = None,
        clock: Callable[[], float] = time.time,
        mtime_of: Callable[[str], float | None] | None = None,
        recheck_interval: float = DEFAULT_RECHECK_INTERVAL,
    ) -> None:
        """Initialize the coordinator.

        Args:
            config: Watch definition.
            runner: Runs one whole-tree sync pass and returns its report.
            pending: Dirty paths restored from a previous run.
            on_sync_complete: Called with (watch id, report) after every pass.
            on_sync_error: Called with (watch id, message) on a fatal failure.
            on_state_change: Called with (watch id, phase, pending paths).
            watcher_factory: Builds the event source (defaults to SourceWatcher).
            clock: Wall-clock time source for timers and file ages.
            mtime_of: Returns the mtime of a source-relative path, or None
                if it no longer exists (defaults to os.stat).
            recheck_interval: Maximum wait between two min-age checks.
        """
        self._config = config
        self._runner = runner
        self._on_sync_complete = on_sync_complete
        self._on_sync_error = on_sync_error
        self._on_state_change = on_state_change
        self._watcher_factory = watcher_factory or _default_watcher
        self._clock = clock
        self._mtime_of = mtime_of or self._stat_mtime
        self._recheck_interval = recheck_interval

        self._lock = threading.RLock()
        self._phase = WatchPhase.STOPPED
        self._dirty: set[str] = set(pending)
        self._deadline: float | None = None
        self._last_error: str | None = None
        self._last_report: SyncReport | None = None
        self._started_at: float | None = None

        self._queue: queue.Queue[ChangeEvent | _Command] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._watcher: SourceWatcher | None = None

    # === Read-only state ===

    @property
    def watch_id(self) -> str:
        return self._config.id

    @property
    def config(self) -> WatchConfig:
        return self._config

    @property
    def phase(self) -> WatchPhase:
        return self._phase

    @property
    def pending_paths(self) -> list[str]:
        """Dirty paths awaiting the next pass, sorted."""
        with self._lock:
            return sorted(self._dirty)

    @property
    def deadline(self) -> float | None:
        """Time at which the armed timer fires, if any."""
        return self._deadline

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def last_report(self) -> SyncReport | None:
        return self._last_report

    @property
    def started_at(self) -> float | None:
        return self._started_at

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # === Lifecycle (thread-safe, asynchronous) ===

    def start(self) -> None:
        """Start the coordinator thread."""
        with self._lock:
            if self._thread is not None:
                logger.warning("Watch %s already running", self.watch_id)
                return
            self._started_at = self._clock()
            self._thread = threading.Thread(
                target=self._run,
                name=f"Watch-{self.watch_id}",
                daemon=True,
            )
            self._thread.start()
        logger.info("Watch %s started: %s -> %s", self.watch_id, self._config.source, self._config.destination)

    def stop(self, timeout: float | None = 10.0) -> None:
        """Stop the coordinator, letting an in-flight pass finish."""
        self.request_stop()
        self.join(timeout)

    def request_stop(self) -> None:
        """Ask the thread to stop without waiting for it."""
        self._queue.put(_Command.STOP)

    def join(self, timeout: float | None = None) -> None:
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Watch %s did not stop within %.1fs", self.watch_id, timeout or 0.0)
                return
        with self._lock:
            self._thread = None

    def notify(self, event: ChangeEvent) -> None:
        """Queue a change event (called from the watcher thread)."""
        self._queue.put(event)

    def enable(self) -> None:
        self._queue.put(_Command.ENABLE)

    def disable(self) -> None:
        self._queue.put(_Command.DISABLE)

    def restart(self) -> None:
        self._queue.put(_Command.RESTART)

    # === Transitions ===

    def handle_event(self, event: ChangeEvent, now: float | None = None) -> None:
        """Record a change and (re)arm the debounce timer."""
        now = self._clock() if now is None else now
        with self._lock:
            if self._phase in (WatchPhase.DISABLED, WatchPhase.STOPPED):
                return
            if not event.is_directory:
                self._dirty.add(event.path)
            if self._phase == WatchPhase.ERRORED:
                logger.info("Watch %s recovering from error on new change", self.watch_id)
            self._deadline = now + self._config.debounce_seconds
            self._set_phase(WatchPhase.DEBOUNCING)
        logger.debug("Watch %s: %s %s", self.watch_id, event.change_type.value, event.path)

    def tick(self, now: float | None = None) -> bool:
        """Advance timers.

        Returns:
            True when a sync pass should run now.
        """
        now = self._clock() if now is None else now
        with self._lock:
            if self._deadline is None or now < self._deadline:
                return False
            if self._phase == WatchPhase.DEBOUNCING:
                self._set_phase(WatchPhase.WAITING_MIN_AGE)
            if self._phase != WatchPhase.WAITING_MIN_AGE:
                return False
            return self._check_min_age(now)

    def _check_min_age(self, now: float) -> bool:
        """Check every dirty path against the minimum age.

        Arms a recheck timer when some path is still too young.
        """
        min_age = self._config.min_age_seconds
        waits: list[float] = []
        for path in self._dirty:
            mtime = self._mtime_of(path)
            if mtime is None:
                # Deleted; the pass will pick up the removal
                continue
            remaining = min_age - (now - mtime)
            if remaining > 0:
                waits.append(remaining)

        if waits:
            delay = min(min(waits), self._recheck_interval)
            self._deadline = now + delay
            logger.debug(
                "Watch %s: %d paths younger than %.1fs, rechecking in %.1fs",
                self.watch_id, len(waits), min_age, delay,
            )
            return False

        self._deadline = None
        return True

    def run_pass(self) -> SyncReport | None:
        """Run one sync pass and apply its outcome.

        Returns:
            The pass report, or None if the pass failed fatally.
        """
        with self._lock:
            previous = set(self._dirty)
            self._dirty.clear()
            self._deadline = None
            self._set_phase(WatchPhase.SYNCING)

        logger.info("Watch %s: syncing (%d changed paths)", self.watch_id, len(previous))
        try:
            report = self._runner()
        except CicadaError as e:
            self._fail(str(e), previous)
            return None
        except Exception as e:
            logger.exception("Watch %s: unexpected error during sync", self.watch_id)
            self._fail(f"{type(e).__name__}: {e}", previous)
            return None

        self._last_report = report
        with self._lock:
            self._last_error = None
            self._dirty.update(report.deferred)
            if self._dirty:
                self._set_phase(WatchPhase.WAITING_MIN_AGE)
                self._check_min_age(self._clock())
                if self._deadline is None:
                    # Everything became eligible while the pass ran
                    self._deadline = self._clock()
            else:
                self._set_phase(WatchPhase.IDLE)

        if report.result is not None and not report.result.ok:
            logger.warning(
                "Watch %s: pass finished with %d failures",
                self.watch_id, len(report.result.failed),
            )
        else:
            logger.info(
                "Watch %s: pass finished, %d files / %d bytes transferred",
                self.watch_id, report.files_transferred, report.bytes_transferred,
            )
        if self._on_sync_complete:
            self._on_sync_complete(self.watch_id, report)
        return report

    def _fail(self, message: str, previous: set[str]) -> None:
        logger.error("Watch %s errored: %s", self.watch_id, message)
        with self._lock:
            # Keep the changes so the recovery pass still knows about them
            self._dirty.update(previous)
            self._deadline = None
            self._last_error = message
            self._set_phase(WatchPhase.ERRORED)
        if self._on_sync_error:
            self._on_sync_error(self.watch_id, message)

    def apply_disable(self) -> None:
        with self._lock:
            self._deadline = None
            self._set_phase(WatchPhase.DISABLED)
        self._stop_watcher()
        logger.info("Watch %s disabled", self.watch_id)

    def _set_phase(self, phase: WatchPhase) -> None:
        if phase == self._phase:
            return
        logger.debug("Watch %s: %s -> %s", self.watch_id, self._phase.value, phase.value)
        self._phase = phase
        if self._on_state_change:
            self._on_state_change(self.watch_id, phase, sorted(self._dirty))

    # === Thread ===

    def _run(self) -> None:
        """Main loop of the coordinator thread."""
        self._guarded(self._begin)

        while True:
            try:
                item = self._queue.get(timeout=self._wait_timeout())
            except queue.Empty:
                item = None

            if item is _Command.STOP:
                break
            self._guarded(self._step, item)

        try:
            self._stop_watcher()
            with self._lock:
                self._deadline = None
                self._set_phase(WatchPhase.STOPPED)
        except Exception:
            logger.exception("Watch %s: error while stopping", self.watch_id)
            self._phase = WatchPhase.STOPPED
        logger.info("Watch %s stopped", self.watch_id)

    def _begin(self) -> None:
        if self._config.enabled:
            self.activate()
        else:
            with self._lock:
                self._set_phase(WatchPhase.DISABLED)

    def _step(self, item: ChangeEvent | _Command | None) -> None:
        if isinstance(item, ChangeEvent):
            self.handle_event(item)
        elif isinstance(item, _Command):
            self._apply_command(item)

        self._check_watcher()
        if self.tick():
            self.run_pass()

    def _guarded(self, func: Callable[..., None], *args: object) -> None:
        """Run one step of the loop; unexpected errors move the watch to ERRORED."""
        try:
            func(*args)
        except Exception as e:
            logger.exception("Watch %s: unexpected error", self.watch_id)
            try:
                self._fail(f"{type(e).__name__}: {e}", set())
            except Exception:
                logger.exception("Watch %s: cannot record error", self.watch_id)

    def _wait_timeout(self) -> float:
        deadline = self._deadline
        if deadline is None:
            return HEALTH_CHECK_INTERVAL
        return min(max(deadline - self._clock(), 0.0), HEALTH_CHECK_INTERVAL)

    def _apply_command(self, command: _Command) -> None:
        if command == _Command.DISABLE:
            if self._phase != WatchPhase.DISABLED:
                self.apply_disable()
        elif command == _Command.ENABLE:
            if self._phase == WatchPhase.DISABLED:
                logger.info("Watch %s enabled", self.watch_id)
                self.activate()
        elif command == _Command.RESTART:
            if self._phase == WatchPhase.DISABLED:
                logger.warning("Watch %s is disabled; enable it instead", self.watch_id)
                return
            logger.info("Watch %s restarting", self.watch_id)
            self._stop_watcher()
            self.activate(force_sync=True)

    def activate(self, force_sync: bool = False) -> None:
        """Start the event source and run the start-up pass.

        Called by the coordinator thread on start, enable and restart.
        Callers driving the machine without a thread call it once directly.
        """
        with self._lock:
            self._set_phase(WatchPhase.IDLE)
        try:
            self._start_watcher()
        except CicadaError as e:
            self._fail(str(e), set())
            return

        if force_sync or self._config.sync_on_start:
            self.run_pass()
        elif self._dirty:
            # Restored from a previous run
            with self._lock:
                self._deadline = self._clock() + self._config.debounce_seconds
                self._set_phase(WatchPhase.DEBOUNCING)

    def _start_watcher(self) -> None:
        if self._watcher is None:
            self._watcher = self._watcher_factory(self._config, self.notify)
        self._watcher.start()

    def _stop_watcher(self) -> None:
        watcher = self._watcher
        self._watcher = None
        if watcher is not None:
            watcher.stop()

    def _check_watcher(self) -> None:
        """Move to ERRORED if the event source died underneath us."""
        if self._phase in (WatchPhase.DISABLED, WatchPhase.STOPPED, WatchPhase.ERRORED):
            return
        watcher = self._watcher
        if watcher is not None and watcher.is_running and not watcher.is_alive:
            error = WatchRuntimeError(f"Event source lost for {self._config.source_path}")
            self._watcher = None
            self._fail(str(error), set())

    def _stat_mtime(self, path: str) -> float | None:
        try:
            return os.stat(os.path.join(self._config.source_path, path)).st_mtime
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Cannot stat %s: %s", path, e.strerror or e)
            return None


def _default_watcher(config: WatchConfig, sink: Callable[[ChangeEvent], None]) -> SourceWatcher:
    return SourceWatcher(config.source_path, sink, ExcludeMatcher(config.exclude))
