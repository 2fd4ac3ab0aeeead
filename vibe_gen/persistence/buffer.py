"""
Best-effort persistence of in-progress work.

Two channels feed the artifact store:

- edited documents, written once edits have been quiet for a debounce window;
- streaming partial output, flushed periodically while a generation runs and
  only when enough new content has arrived since the previous save.

A per-session manifest records the latest saved content per variant, and a
session snapshot records everything else, so an interrupted session can be
resumed by a new process. Write failures are logged and counted, never raised
into generation.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, Hashable, Optional, Tuple

from pydantic import ValidationError as SchemaError

from vibe_gen.errors import PersistenceError
from vibe_gen.io.stores import ArtifactStore
from vibe_gen.models import SessionRecord


log = logging.getLogger(__name__)

SaveFunc = Callable[[], Awaitable[object]]


class DebouncedScheduler:
    """Keyed delayed calls. Scheduling a key again cancels its pending call."""

    def __init__(self):
        self._pending: Dict[Hashable, Tuple[asyncio.Task, SaveFunc]] = {}

    def schedule(self, key: Hashable, delay: float, func: SaveFunc) -> asyncio.Task:
        self.cancel(key)
        task = asyncio.get_running_loop().create_task(self._run(key, delay, func))
        self._pending[key] = (task, func)
        return task

    async def _run(self, key: Hashable, delay: float, func: SaveFunc):
        await asyncio.sleep(delay)
        # Once the write starts a newer schedule must not cancel it
        entry = self._pending.get(key)
        if entry is not None and entry[0] is asyncio.current_task():
            del self._pending[key]
        await func()

    def is_pending(self, key: Hashable) -> bool:
        return key in self._pending

    def cancel(self, key: Hashable) -> bool:
        entry = self._pending.pop(key, None)
        if entry is None:
            return False
        entry[0].cancel()
        return True

    async def flush(self, key: Hashable):
        """Run a pending call now instead of waiting for its timer."""
        entry = self._pending.pop(key, None)
        if entry is None:
            return
        entry[0].cancel()
        await entry[1]()

    async def flush_all(self):
        for key in list(self._pending):
            await self.flush(key)


@dataclass
class _StreamState:
    latest: str = ""
    saved_bytes: int = 0
    save_count: int = 0
    task: Optional[asyncio.Task] = None
    stop: asyncio.Event = field(default_factory=asyncio.Event)


class PersistenceBuffer:
    """Debounced and threshold-gated saves of variant content."""

    def __init__(
        self,
        store: ArtifactStore,
        edit_debounce: float = 1.0,
        partial_interval: float = 3.0,
        partial_min_bytes: int = 5 * 1024,
    ):
        """
        Initialize the buffer.

        Args:
            store: Destination for saved content and manifests.
            edit_debounce: Quiet seconds before an edited document is written.
            partial_interval: Seconds between partial-output flush attempts.
            partial_min_bytes: New bytes required before another partial save.
        """
        self.store = store
        self.edit_debounce = edit_debounce
        self.partial_interval = partial_interval
        self.partial_min_bytes = partial_min_bytes
        self.scheduler = DebouncedScheduler()
        self.failures = 0
        self._streams: Dict[Tuple[str, int], _StreamState] = {}
        self._manifests: Dict[str, Dict[str, Dict[str, object]]] = {}
        self._manifest_locks: Dict[str, asyncio.Lock] = {}
        self._session_locks: Dict[str, asyncio.Lock] = {}

    @staticmethod
    def content_key(session_id: str, variant_index: int) -> str:
        return f"sessions/{session_id}/variants/{variant_index}/latest.html"

    @staticmethod
    def partial_key(session_id: str, variant_index: int) -> str:
        return f"sessions/{session_id}/variants/{variant_index}/partial.html"

    @staticmethod
    def manifest_key(session_id: str) -> str:
        return f"sessions/{session_id}/manifest.json"

    @staticmethod
    def session_key(session_id: str) -> str:
        return f"sessions/{session_id}/session.json"

    async def _record(self, session_id: str, variant_index: int, url: str, kind: str, size: int):
        lock = self._manifest_locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            manifest = self._manifests.setdefault(session_id, {})
            manifest[str(variant_index)] = {
                "url": url,
                "kind": kind,
                "bytes": size,
                "saved_at": datetime.now().isoformat(),
            }
            await self.store.put(json.dumps(manifest, indent=2), key=self.manifest_key(session_id))

    async def save(self, session_id: str, variant_index: int, content: str, kind: str = "final") -> Optional[str]:
        """
        Write content for a variant immediately.

        Returns:
            URL of the saved content, or None if the write failed.
        """
        try:
            key = (
                self.partial_key(session_id, variant_index) if kind == "partial"
                else self.content_key(session_id, variant_index)
            )
            url = await self.store.put(content, key=key)
            await self._record(session_id, variant_index, url, kind, len(content.encode("utf-8")))
        except (PersistenceError, OSError) as e:
            self.failures += 1
            log.warning("Could not persist %s content for %s/%d: %s", kind, session_id, variant_index, e)
            return None
        return url

    # Edited documents

    def schedule_edited_save(self, session_id: str, variant_index: int, html: str) -> asyncio.Task:
        """Write html once no further edit arrives within the debounce window."""
        return self.scheduler.schedule(
            ("edited", session_id, variant_index),
            self.edit_debounce,
            lambda: self.save(session_id, variant_index, html, kind="edited"),
        )

    # Streaming partial output

    def begin_stream(self, session_id: str, variant_index: int):
        key = (session_id, variant_index)
        self.end_stream_nowait(session_id, variant_index)
        state = _StreamState()
        state.task = asyncio.get_running_loop().create_task(self._flush_loop(session_id, variant_index, state))
        self._streams[key] = state

    def update_stream(self, session_id: str, variant_index: int, text: str):
        state = self._streams.get((session_id, variant_index))
        if state is not None:
            state.latest = text

    async def _flush_loop(self, session_id: str, variant_index: int, state: _StreamState):
        while True:
            try:
                await asyncio.wait_for(state.stop.wait(), self.partial_interval)
                return
            except asyncio.TimeoutError:
                await self.flush_stream(session_id, variant_index, state)

    async def flush_stream(
        self,
        session_id: str,
        variant_index: int,
        state: Optional[_StreamState] = None,
    ) -> bool:
        """
        Save the latest partial output if enough new content has arrived.

        The first save of a stream is exempt from the size threshold.

        Returns:
            True if a save was written.
        """
        state = state or self._streams.get((session_id, variant_index))
        if state is None or state.stop.is_set() or not state.latest:
            return False

        size = len(state.latest.encode("utf-8"))
        if state.save_count > 0 and size - state.saved_bytes < self.partial_min_bytes:
            return False

        url = await self.save(session_id, variant_index, state.latest, kind="partial")
        if url is None:
            return False
        state.saved_bytes = size
        state.save_count += 1
        return True

    def end_stream_nowait(self, session_id: str, variant_index: int):
        state = self._streams.pop((session_id, variant_index), None)
        if state is not None:
            state.stop.set()

    async def end_stream(self, session_id: str, variant_index: int):
        """
        Stop periodic flushing for a stream.

        A partial write already in progress is allowed to finish, so it cannot
        land after content saved once the stream has ended.
        """
        state = self._streams.pop((session_id, variant_index), None)
        if state is None:
            return
        state.stop.set()
        if state.task is not None:
            await state.task

    # Resumption

    async def save_session(self, record: SessionRecord) -> Optional[str]:
        """Write the session snapshot; later calls always land after earlier ones."""
        session_id = record.session.id
        content = record.model_dump_json(by_alias=True, indent=2)
        lock = self._session_locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            try:
                return await self.store.put(content, key=self.session_key(session_id))
            except (PersistenceError, OSError) as e:
                self.failures += 1
                log.warning("Could not persist session %s: %s", session_id, e)
                return None

    async def load_session(self, session_id: str) -> Optional[SessionRecord]:
        """The saved snapshot of a session, or None if there is no usable one."""
        try:
            raw = await self.store.get(self.store.url_for(self.session_key(session_id)))
            return SessionRecord.model_validate_json(raw)
        except (PersistenceError, OSError) as e:
            log.info("No saved session %s: %s", session_id, e)
        except SchemaError as e:
            self.failures += 1
            log.warning("Saved session %s is unreadable: %d validation errors", session_id, e.error_count())
        return None

    async def load_partials(self, session_id: str) -> Dict[int, str]:
        """
        Latest saved content per variant for a session.

        Returns:
            Mapping of variant index to content; empty if nothing was saved.
        """
        try:
            raw = await self.store.get(self.store.url_for(self.manifest_key(session_id)))
            manifest = json.loads(raw)
        except (PersistenceError, OSError, json.JSONDecodeError) as e:
            log.info("No saved progress for session %s: %s", session_id, e)
            return {}

        self._manifests[session_id] = manifest
        partials: Dict[int, str] = {}
        for index, entry in manifest.items():
            try:
                partials[int(index)] = await self.store.get(entry["url"])
            except (PersistenceError, OSError) as e:
                self.failures += 1
                log.warning("Could not load saved content for %s/%s: %s", session_id, index, e)
        return partials

    async def close(self):
        """Write pending edits and stop every stream."""
        await self.scheduler.flush_all()
        for session_id, variant_index in list(self._streams):
            await self.end_stream(session_id, variant_index)
