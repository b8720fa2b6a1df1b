"""
Watched-folder ingestion.

Media files appearing in a watched root are imported and queued once they can
be opened exclusively and their size and modification time have stopped
changing. ``{mediaId}.json`` files appearing in a root's
transcripts folder are attached to their item and indexed directly.
"""

import concurrent.futures
import logging
import os
import threading
import uuid
from pathlib import Path
from typing import Callable, List, Optional, Set

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from mip.config.models import WatchConfig
from mip.domain.cancellation import CancellationToken
from mip.domain.errors import OperationCancelled
from mip.infrastructure.file_scanner import FileScanner
from mip.pipeline.retry import RetryPolicy

if os.name == "nt":
    import msvcrt
else:
    import fcntl


class WatchEventHandler(FileSystemEventHandler):
    """Forwards relevant watchdog events to the FolderWatcher."""

    def __init__(self, watcher: "FolderWatcher"):
        super().__init__()
        self.watcher = watcher

    def on_created(self, event: FileSystemEvent):
        if event.is_directory:
            return
        self.watcher.notify(Path(event.src_path))

    def on_modified(self, event: FileSystemEvent):
        # Media is picked up on creation only; transcripts may be rewritten
        if event.is_directory:
            return
        path = Path(event.src_path)
        if self.watcher.is_transcript(path):
            self.watcher.notify(path)

    def on_moved(self, event: FileSystemEvent):
        if event.is_directory:
            return
        self.watcher.notify(Path(event.dest_path))


class FolderWatcher:
    """Watches media folders and forwards ready files to ingestion.

    Args:
        config: Watch settings (folders, extensions, readiness budget).
        media_service: Imports/queues media and attaches transcripts.
        indexer: Optional indexer for transcripts dropped into a watched root.
        skip_dirs: Extra folder names never treated as media input.
        observer_factory: Builds the watchdog observer.
    """

    def __init__(
        self,
        config: WatchConfig,
        media_service,
        indexer=None,
        skip_dirs: Optional[List[str]] = None,
        observer_factory: Callable[[], Observer] = Observer,
    ):
        self.config = config
        self.media_service = media_service
        self.indexer = indexer
        self.roots = [Path(folder).expanduser().resolve() for folder in config.folders]
        self.skip_dirs = {config.transcript_dir_name, *(skip_dirs or [])}
        self.scanner = FileScanner(
            config.media_extensions,
            include_subfolders=config.include_subfolders,
            skip_dirs=self.skip_dirs,
        )
        self.ready_policy = RetryPolicy(
            max_attempts=config.ready_retries,
            delay_s=config.ready_delay_s,
            retry_on=(OSError,),
        )
        self.observer_factory = observer_factory
        self.logger = logging.getLogger(__name__)

        self._processing: Set[Path] = set()
        self._processing_lock = threading.Lock()
        self._token = CancellationToken()
        self._observer = None
        self._executor: Optional[concurrent.futures.ThreadPoolExecutor] = None

    # ── Lifecycle ─────────────────────────────────────────────────────

    def start(self, token: Optional[CancellationToken] = None) -> None:
        if token is not None:
            self._token = CancellationToken(token)
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.config.event_workers,
            thread_name_prefix="mip-watch",
        )
        handler = WatchEventHandler(self)
        self._observer = self.observer_factory()
        for root in self.roots:
            root.mkdir(parents=True, exist_ok=True)
            # Recursive even without include_subfolders: transcripts live one level down
            self._observer.schedule(handler, str(root), recursive=True)
            self.logger.info(f"WATCH_START: {root}")
        self._observer.start()

        if self.config.process_existing_files:
            count = self.scan_existing()
            self.logger.info(f"WATCH_SCAN: {count} existing media file(s) submitted")

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        self._token.cancel("Watcher stopped")
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout)
            self._observer = None
        if self._executor is not None:
            self._executor.shutdown(wait=True, cancel_futures=True)
            self._executor = None
        self.logger.info("WATCH_STOP")

    def scan_existing(self) -> int:
        """Feeds every media file already present through the live-event path."""
        submitted = 0
        for root in self.roots:
            if not root.is_dir():
                continue
            for path in self.scanner.scan(root):
                if self.notify(path):
                    submitted += 1
        return submitted

    # ── Classification ────────────────────────────────────────────────

    def _root_of(self, path: Path) -> Optional[Path]:
        for root in self.roots:
            if path == root or root in path.parents:
                return root
        return None

    def is_transcript(self, path: Path) -> bool:
        path = path.resolve()
        if path.suffix.lower() != ".json" or path.parent.name != self.config.transcript_dir_name:
            return False
        return path.parent.parent in self.roots

    def is_media(self, path: Path) -> bool:
        path = path.resolve()
        if not self.scanner.is_media(path):
            return False
        root = self._root_of(path)
        if root is None:
            return False
        relative_dirs = path.parent.relative_to(root).parts
        if any(part in self.skip_dirs for part in relative_dirs):
            return False
        return self.config.include_subfolders or path.parent == root

    def notify(self, path: Path) -> bool:
        """Routes a file event; returns True when work was scheduled for it."""
        if self._executor is None or self._token.is_cancelled:
            return False
        if self.is_media(path):
            handler = self.handle_media
        elif self.is_transcript(path):
            handler = self.handle_transcript
        else:
            return False
        try:
            self._executor.submit(self._guarded, handler, path.resolve())
        except RuntimeError:
            # Executor already shut down
            return False
        return True

    def _guarded(self, handler: Callable[[Path], None], path: Path) -> None:
        try:
            handler(path)
        except Exception as e:
            self.logger.error(f"WATCH_ERROR: {path.name}: {e}", exc_info=True)

    # ── Readiness ─────────────────────────────────────────────────────

    def _claim_path(self, path: Path) -> bool:
        with self._processing_lock:
            if path in self._processing:
                return False
            self._processing.add(path)
            return True

    def _release_path(self, path: Path) -> None:
        with self._processing_lock:
            self._processing.discard(path)

    def _try_open_exclusive(self, path: Path) -> None:
        """Raises OSError while another process still holds the file."""
        with open(path, "rb") as f:
            if os.name == "nt":
                msvcrt.locking(f.fileno(), msvcrt.LK_NBLCK, 1)
                msvcrt.locking(f.fileno(), msvcrt.LK_UNLCK, 1)
            else:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    def _assert_stable(self, path: Path) -> None:
        """Raises OSError while the file still grows or changes (plain writers take no lock)."""
        before = os.stat(path)
        if self._token.wait(self.config.ready_delay_s):
            raise OperationCancelled(self._token.reason or "Watcher stopped")
        after = os.stat(path)
        if (before.st_size, before.st_mtime_ns) != (after.st_size, after.st_mtime_ns):
            raise OSError(f"{path.name} is still being written")

    def _check_ready(self, path: Path) -> None:
        self._try_open_exclusive(path)
        self._assert_stable(path)

    def wait_until_readable(self, path: Path) -> bool:
        """Retries the readiness check; False (never an exception) once attempts run out."""
        try:
            self.ready_policy.call(lambda: self._check_ready(path), self._token)
            return True
        except OperationCancelled:
            return False
        except OSError as e:
            self.logger.warning(
                f"FILE_NOT_READY: {path.name} still unavailable after {self.config.ready_retries} attempts: {e}"
            )
            return False

    # ── Handlers ──────────────────────────────────────────────────────

    def handle_media(self, path: Path) -> None:
        if not self._claim_path(path):
            self.logger.debug(f"Already handling {path.name}, duplicate event ignored")
            return
        try:
            if not self.wait_until_readable(path):
                return
            item = self.media_service.ingest(path)
            if item is not None:
                self.logger.info(f"WATCH_INGESTED: {path.name} -> {item.id} ({item.status.value})")
        finally:
            self._release_path(path)

    def handle_transcript(self, path: Path) -> None:
        media_id = path.stem
        try:
            uuid.UUID(media_id)
        except ValueError:
            self.logger.warning(f"Transcript file name is not a media id: {path.name}")
            return
        if not self._claim_path(path):
            return
        try:
            if not self.wait_until_readable(path):
                return
            if not self.media_service.attach_transcript(media_id, path):
                return
            if self.indexer is None:
                return
            result = self.indexer.index_media(media_id)
            if result.success:
                self.logger.info(f"WATCH_TRANSCRIPT_INDEXED: {media_id}")
            else:
                self.logger.warning(f"Indexing {media_id} from {path.name} failed: {result.error}")
        finally:
            self._release_path(path)
