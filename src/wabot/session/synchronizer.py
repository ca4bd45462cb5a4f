"""
Bridges the chat client's local auth directory and the session store.

- restore: pull the last snapshot into the directory before the client starts
- snapshot: push the whole directory after every credential rotation
- reset: wipe the directory and the stored row for a fresh pairing

Store and filesystem calls are blocking, so they run in worker threads.
"""

import asyncio
import shutil
from pathlib import Path
from typing import Awaitable, Callable, Optional, Set

from wabot.config import Config
from wabot.database import SessionStore
from wabot.logger import get_logger
from wabot.session.snapshot import decode_file, encode_directory

logger = get_logger(__name__)


class SessionSynchronizer:
    """Keeps one named session in the store in step with a local directory."""

    def __init__(self, store: SessionStore, session_id: Optional[str] = None):
        self.store = store
        self.session_id = session_id or Config.SESSION_ID
        self._snapshot_lock = asyncio.Lock()
        self._pending: Set[asyncio.Task] = set()
        self._epoch = 0

    async def restore(self, local_dir) -> bool:
        """
        Write the stored snapshot into local_dir.

        Returns True when a snapshot was applied. With nothing stored, the
        store unreachable or the directory unwritable, the client starts
        unauthenticated.
        """
        local_dir = Path(local_dir)

        try:
            snapshot = await asyncio.to_thread(self.store.load, self.session_id)
        except Exception as e:
            logger.error(f"Failed to load session {self.session_id} from store: {e}")
            return False

        if snapshot is None:
            logger.info(f"No stored session for {self.session_id}; starting unauthenticated")
            try:
                await asyncio.to_thread(local_dir.mkdir, parents=True, exist_ok=True)
            except OSError as e:
                logger.error(f"Failed to create auth directory {local_dir}: {e}")
            return False

        try:
            written = await asyncio.to_thread(self._write_files, local_dir, snapshot.files)
        except OSError as e:
            logger.error(f"Failed to restore session {self.session_id} into {local_dir}: {e}")
            return False

        logger.info(
            f"Restored session {self.session_id}: {written}/{len(snapshot.files)} files into {local_dir}"
        )
        return True

    def _write_files(self, local_dir: Path, files: dict) -> int:
        local_dir.mkdir(parents=True, exist_ok=True)
        written = 0
        for filename, content in files.items():
            name, raw = decode_file(filename, content)
            if name is None:
                continue
            try:
                (local_dir / name).write_bytes(raw)
                written += 1
            except OSError as e:
                logger.error(f"Failed to restore {name} into {local_dir}: {e}")
        return written

    async def snapshot(
        self,
        local_dir,
        epoch: Optional[int] = None,
        prepare: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> bool:
        """
        Save every file in local_dir as the new snapshot.

        Returns True on success. Failures are logged and reported as False.
        A snapshot requested before a reset (epoch given and outdated) is dropped.
        prepare runs under the snapshot lock right before the directory is read,
        letting the driver flush its on-disk state.
        """
        local_dir = Path(local_dir)

        async with self._snapshot_lock:
            if epoch is not None and epoch != self._epoch:
                logger.debug(f"Dropping snapshot of {self.session_id} requested before reset")
                return False

            if prepare is not None:
                try:
                    await prepare()
                except Exception as e:
                    logger.warning(f"Pre-snapshot flush failed (continuing): {e}")

            try:
                files = await asyncio.to_thread(encode_directory, local_dir)
            except OSError as e:
                logger.error(f"Failed to read auth directory {local_dir}: {e}")
                return False

            if files is None:
                logger.warning(f"Auth directory {local_dir} missing; snapshot skipped")
                return False

            try:
                await asyncio.to_thread(self.store.save, self.session_id, files)
            except Exception as e:
                logger.error(f"Failed to save session {self.session_id} to store: {e}")
                return False

        logger.debug(f"Snapshot of {self.session_id} saved ({len(files)} files)")
        return True

    def schedule_snapshot(
        self, local_dir, prepare: Optional[Callable[[], Awaitable[None]]] = None
    ) -> asyncio.Task:
        """Enqueue a snapshot without waiting for it."""
        task = asyncio.create_task(self.snapshot(local_dir, self._epoch, prepare))
        self._pending.add(task)
        task.add_done_callback(self._on_snapshot_done)
        return task

    def _on_snapshot_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        if (exc := task.exception()) is not None:
            logger.error(f"Background snapshot failed: {exc}")

    async def flush(self) -> None:
        """Wait for scheduled snapshots to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def reset(self, local_dir) -> bool:
        """
        Remove local_dir, recreate it empty and delete the stored snapshot.

        Filesystem errors propagate so the caller does not start a client on
        stale keys. Returns False when the store row could not be cleared.
        """
        local_dir = Path(local_dir)

        # An in-flight snapshot must not re-save the old keys after the clear
        async with self._snapshot_lock:
            self._epoch += 1
            await asyncio.to_thread(self._wipe_directory, local_dir)
            logger.info(f"Cleared auth directory {local_dir}")

            try:
                await asyncio.to_thread(self.store.clear, self.session_id)
            except Exception as e:
                logger.error(f"Failed to clear session {self.session_id} in store: {e}")
                return False

        logger.info(f"Cleared stored session {self.session_id}")
        return True

    @staticmethod
    def _wipe_directory(local_dir: Path) -> None:
        if local_dir.exists():
            shutil.rmtree(local_dir)
        local_dir.mkdir(parents=True, exist_ok=True)
