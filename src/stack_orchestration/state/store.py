"""
File-backed installation state shared between the installer and the monitor.

Only the installer writes; the monitor opens the store read-only and watches
it. Writes go to a temporary file in the same directory followed by an atomic
rename, so readers never observe a partial document. Every write increments
``revision``; a writer that passes ``expected_revision`` is rejected when the
file changed underneath it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import threading
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import aiofiles
import aiofiles.os
from pydantic import ValidationError
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from stack_orchestration.core.errors import (
    Corrupt,
    ErrorKind,
    Invalid,
    NotFound,
    Ok,
    Problem,
    problems_from_validation_error,
)
from .models import InstallationState, ProfileSelection, ServiceEntry, ServiceSummary, utc_now_iso

logger = logging.getLogger(__name__)

ReadResult = Union[Ok[InstallationState], NotFound, Corrupt]
WriteResult = Union[Ok[InstallationState], Invalid]
WatchCallback = Callable[[ReadResult], Any]

DEFAULT_STATE_PATH = Path(".kaspa-aio") / "installation-state.json"


class _StateFileHandler(FileSystemEventHandler):
    """Debounces filesystem events for one file and re-reads it once per burst."""

    def __init__(self, store: "SharedStateStore", callback: WatchCallback, debounce: float,
                 loop: Optional[asyncio.AbstractEventLoop]):
        self.store = store
        self.callback = callback
        self.debounce = debounce
        self.loop = loop
        self._timer: Optional[threading.Timer] = None
        self._timer_lock = threading.Lock()
        self._dispatch_lock = threading.Lock()
        self._last_seen: Optional[tuple] = None
        self._active = True

    def _concerns_state_file(self, event: FileSystemEvent) -> bool:
        name = self.store.path.name
        paths = [getattr(event, "src_path", ""), getattr(event, "dest_path", "")]
        return any(p and Path(os.fsdecode(p)).name == name for p in paths)

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or not self._active or not self._concerns_state_file(event):
            return
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self) -> None:
        with self._dispatch_lock:
            if not self._active:
                return
            result = self.store.read()
            fingerprint = _fingerprint(result)
            if fingerprint == self._last_seen:
                return
            self._last_seen = fingerprint
            self._dispatch(result)

    def _dispatch(self, result: ReadResult) -> None:
        try:
            if self.loop is not None and not self.loop.is_closed():
                if asyncio.iscoroutinefunction(self.callback):
                    asyncio.run_coroutine_threadsafe(self.callback(result), self.loop)
                else:
                    self.loop.call_soon_threadsafe(self.callback, result)
            else:
                self.callback(result)
        except Exception:
            logger.exception("State watch callback failed")

    def cancel(self) -> None:
        self._active = False
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


def _fingerprint(result: ReadResult) -> tuple:
    if isinstance(result, Ok):
        return ("ok", result.value.revision, result.value.last_modified)
    if isinstance(result, Corrupt):
        return ("corrupt", tuple(p.message for p in result.problems))
    return ("missing",)


class SharedStateStore:
    """
    Durable installation record at a well-known path.

    read() never raises for expected conditions: a missing file is NotFound and
    unparseable or schema-invalid content is Corrupt.
    """

    def __init__(
        self,
        path: str | Path = DEFAULT_STATE_PATH,
        debounce_seconds: float = 0.25,
        poll_interval_seconds: float = 1.0,
        read_only: bool = False,
        use_polling: bool = False,
    ) -> None:
        self._path = Path(path)
        self.debounce_seconds = debounce_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.read_only = read_only
        self.use_polling = use_polling
        self.logger = logging.getLogger(__name__)
        self._observer = None
        self._observer_lock = threading.Lock()
        self._handlers: List[tuple] = []

    @property
    def path(self) -> Path:
        return self._path

    # ===== Reading =====

    def read(self) -> ReadResult:
        """Parse the persisted record."""
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return NotFound(f"No installation state at {self._path}")
        except OSError as e:
            return Corrupt([Problem(ErrorKind.FATAL, "unreadable", f"Cannot read {self._path}: {e}")])
        return self._parse(text)

    async def aread(self) -> ReadResult:
        """Asynchronous read()."""
        try:
            async with aiofiles.open(self._path, "r", encoding="utf-8") as f:
                text = await f.read()
        except FileNotFoundError:
            return NotFound(f"No installation state at {self._path}")
        except OSError as e:
            return Corrupt([Problem(ErrorKind.FATAL, "unreadable", f"Cannot read {self._path}: {e}")])
        return self._parse(text)

    def _parse(self, text: str) -> ReadResult:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            return Corrupt([Problem(ErrorKind.FATAL, "invalid_json", f"State file is not valid JSON: {e}")])
        if not isinstance(data, dict):
            return Corrupt([Problem(ErrorKind.FATAL, "invalid_document", "State file must contain a JSON object")])
        try:
            return Ok(InstallationState.model_validate(data))
        except ValidationError as e:
            return Corrupt(problems_from_validation_error(e))

    def has_installation(self) -> bool:
        return isinstance(self.read(), Ok)

    # ===== Writing =====

    def write(self, state: InstallationState | Dict[str, Any],
              expected_revision: Optional[int] = None) -> WriteResult:
        """
        Validate and atomically persist a record.

        Args:
            state: Record to persist, as a model or a camelCase document
            expected_revision: Reject the write unless the file is at this revision

        Returns:
            Ok with the record as written, or Invalid without touching the file
        """
        prepared = self._prepare(state, expected_revision, self.read())
        if isinstance(prepared, Invalid):
            return prepared

        payload = json.dumps(prepared.to_document(), indent=2)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        self.logger.debug("Wrote installation state revision %d to %s", prepared.revision, self._path)
        return Ok(prepared)

    async def awrite(self, state: InstallationState | Dict[str, Any],
                     expected_revision: Optional[int] = None) -> WriteResult:
        """Asynchronous write() with the same atomic rename."""
        prepared = self._prepare(state, expected_revision, await self.aread())
        if isinstance(prepared, Invalid):
            return prepared

        payload = json.dumps(prepared.to_document(), indent=2)
        await aiofiles.os.makedirs(self._path.parent, exist_ok=True)
        tmp_path = self._path.parent / f".{self._path.name}.{uuid.uuid4().hex}.tmp"
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(payload)
                await f.flush()
            await aiofiles.os.replace(tmp_path, self._path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

        self.logger.debug("Wrote installation state revision %d to %s", prepared.revision, self._path)
        return Ok(prepared)

    def _prepare(self, state, expected_revision: Optional[int], current: ReadResult):
        if self.read_only:
            return Invalid([Problem(
                ErrorKind.VALIDATION, "read_only", "This process opened the installation state read-only"
            )])

        if not isinstance(state, InstallationState):
            try:
                state = InstallationState.model_validate(state)
            except ValidationError as e:
                return Invalid(problems_from_validation_error(e))

        current_revision = current.value.revision if isinstance(current, Ok) else None
        if expected_revision is not None and current_revision is not None and current_revision != expected_revision:
            return Invalid([Problem(
                ErrorKind.VALIDATION,
                "stale_revision",
                f"State changed since it was read (expected revision {expected_revision}, found {current_revision})",
                {"expected": expected_revision, "found": current_revision},
            )])

        base_revision = max(state.revision, current_revision or 0)
        return state.model_copy(update={"last_modified": utc_now_iso(), "revision": base_revision + 1})

    def update(self, patch: Dict[str, Any]) -> Union[Ok[InstallationState], NotFound, Corrupt, Invalid]:
        """
        Read-modify-write of top-level fields.

        Accepts camelCase keys as stored in the file. ``profiles`` may be given
        as a plain list of ids. When services change without a new summary, the
        summary is recomputed.
        """
        current = self.read()
        if not isinstance(current, Ok):
            return current
        document = self._apply_patch(current.value, patch)
        if isinstance(document, Invalid):
            return document
        return self.write(document, expected_revision=current.value.revision)

    async def aupdate(self, patch: Dict[str, Any]) -> Union[Ok[InstallationState], NotFound, Corrupt, Invalid]:
        """Async variant of ``update`` for use inside the event loop."""
        current = await self.aread()
        if not isinstance(current, Ok):
            return current
        document = self._apply_patch(current.value, patch)
        if isinstance(document, Invalid):
            return document
        return await self.awrite(document, expected_revision=current.value.revision)

    @staticmethod
    def _apply_patch(state: InstallationState, patch: Dict[str, Any]) -> Union[Dict[str, Any], Invalid]:
        document = state.to_document()
        patch = dict(patch)
        if isinstance(patch.get("profiles"), list):
            patch["profiles"] = ProfileSelection.of(patch["profiles"]).model_dump()
        document.update(patch)
        if "services" in patch and "summary" not in patch:
            try:
                services = [ServiceEntry.model_validate(s) for s in document["services"]]
            except ValidationError as e:
                return Invalid(problems_from_validation_error(e))
            document["summary"] = ServiceSummary.from_services(services).model_dump()
        return document

    def clear(self) -> bool:
        """Remove the record. Returns False when there was nothing to remove."""
        if self.read_only:
            return False
        try:
            self._path.unlink()
        except FileNotFoundError:
            return False
        self.logger.info("Removed installation state at %s", self._path)
        return True

    # ===== Watching =====

    def watch(self, callback: WatchCallback) -> Callable[[], None]:
        """
        Invoke callback with the freshly read state after the file changes.

        Bursts of writes within the debounce window produce one callback. When
        called from a running event loop, callbacks (sync or async) are
        delivered on that loop; otherwise on a watcher thread.

        Returns:
            A function that stops this subscription
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        self._path.parent.mkdir(parents=True, exist_ok=True)
        handler = _StateFileHandler(self, callback, self.debounce_seconds, loop)

        with self._observer_lock:
            try:
                watch = self._ensure_observer().schedule(handler, str(self._path.parent), recursive=False)
            except OSError as e:
                if self.use_polling:
                    raise
                self.logger.warning("Native file watching unavailable (%s), falling back to polling", e)
                self._switch_to_polling()
                watch = self._observer.schedule(handler, str(self._path.parent), recursive=False)
            self._handlers.append((handler, watch))

        def unsubscribe() -> None:
            handler.cancel()
            with self._observer_lock:
                entry = next((e for e in self._handlers if e[0] is handler), None)
                if entry is None:
                    return
                self._handlers.remove(entry)
                if self._observer is None:
                    return
                try:
                    self._observer.unschedule(entry[1])
                except KeyError:
                    pass
                if not self._handlers:
                    self._stop_observer()

        return unsubscribe

    def _ensure_observer(self):
        if self._observer is not None:
            return self._observer
        if not self.use_polling:
            observer = Observer()
            try:
                observer.start()
                self._observer = observer
                return observer
            except OSError as e:
                self.logger.warning("Native file watching unavailable (%s), falling back to polling", e)
        observer = PollingObserver(timeout=self.poll_interval_seconds)
        observer.start()
        self._observer = observer
        return observer

    def _switch_to_polling(self) -> None:
        self._stop_observer()
        self.use_polling = True
        observer = self._ensure_observer()
        rescheduled = []
        for handler, _ in self._handlers:
            rescheduled.append((handler, observer.schedule(handler, str(self._path.parent), recursive=False)))
        self._handlers = rescheduled

    def _stop_observer(self) -> None:
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            observer.join(timeout=5)

    def close(self) -> None:
        """Stop all watches."""
        with self._observer_lock:
            for handler, _ in self._handlers:
                handler.cancel()
            self._handlers.clear()
            self._stop_observer()
