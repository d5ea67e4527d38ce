"""
Directory watcher feeding the task pipeline.

A single recursive inotify watch covers the whole tree and uses one inotify
instance however many directories it holds. Directories moved in from outside
the tree are the one case inotify does not follow, and they get a recursive
watch of their own. Completed writes and files moved into the tree are
processed synchronously on the observer thread and uploaded through the asset
API.
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from threading import Lock
from typing import Dict, Optional

from watchdog.events import (
    DirCreatedEvent,
    DirMovedEvent,
    FileClosedEvent,
    FileCreatedEvent,
    FileMovedEvent,
    FileSystemEventHandler,
)
from watchdog.observers.api import BaseObserver, ObservedWatch
from watchdog.observers.inotify import InotifyObserver

from .errors import AssetUploadError, PipelineError
from .tasks import TaskProcessor, UploadDescriptor, processed_filename, should_replace
from .uploader import AssetUploader
from .utils import PrefixedLogger, ensure_directory, human_readable_size

logger = logging.getLogger(__name__)

WATCHED_EVENTS = [DirCreatedEvent, DirMovedEvent, FileCreatedEvent, FileClosedEvent, FileMovedEvent]


def copy_to_undone(path: Path, watch_dir: Path, undone_dir: Path) -> Path:
    """Copy a file into the quarantine directory, keeping its path relative to the watch root."""
    try:
        relative = path.resolve().relative_to(watch_dir.resolve())
    except ValueError:
        relative = Path(path.name)
    destination = undone_dir / relative
    ensure_directory(destination.parent)
    shutil.copy2(path, destination)
    return destination


class FileWatcher(FileSystemEventHandler):
    """
    Watches a directory tree and uploads every completed file.

    Attributes:
        watch_dir: Root of the watched tree
        undone_dir: Quarantine for files whose upload failed
        watches: Root path -> recursive watch, never shrinks while running
    """

    def __init__(
        self,
        watch_dir: Path,
        undone_dir: Path,
        processor: TaskProcessor,
        uploader: AssetUploader,
        observer: Optional[BaseObserver] = None,
    ) -> None:
        super().__init__()
        self.watch_dir = watch_dir.resolve()
        self.undone_dir = undone_dir
        self.processor = processor
        self.uploader = uploader
        # full events report files moved in from outside the tree as moves, not creations
        self.observer = observer if observer is not None else InotifyObserver(generate_full_events=True)
        self.watches: Dict[str, ObservedWatch] = {}
        self._lock = Lock()

    def start(self) -> None:
        logger.info(f"starting recursive file watcher on directory: {self.watch_dir}")
        ensure_directory(self.undone_dir)
        self.add_watch(self.watch_dir)
        self.process_existing(self.watch_dir)
        self.observer.start()

    def stop(self) -> None:
        self.observer.stop()
        self.observer.join()
        logger.info("file watcher stopped")

    def add_watch(self, directory: Path) -> None:
        """Schedule a recursive watch rooted at ``directory`` unless one exists."""
        key = str(directory)
        with self._lock:
            if key in self.watches:
                return
            self.watches[key] = self.observer.schedule(self, key, recursive=True, event_filter=WATCHED_EVENTS)
        logger.info(f"added recursive watch for directory: {key}")

    def process_existing(self, directory: Path) -> None:
        for current, _, files in os.walk(directory):
            for name in sorted(files):
                self.process_file(Path(current) / name)

    def on_created(self, event: DirCreatedEvent | FileCreatedEvent) -> None:
        # files are handled once closed; the recursive watch picks up new directories itself
        if event.is_directory:
            logger.debug(f"new directory: {os.fsdecode(event.src_path)}")

    def on_closed(self, event: FileClosedEvent) -> None:
        self.process_file(Path(os.fsdecode(event.src_path)))

    def on_moved(self, event: DirMovedEvent | FileMovedEvent) -> None:
        if not event.dest_path:
            return
        destination = Path(os.fsdecode(event.dest_path))
        if not event.is_directory:
            self.process_file(destination)
            return
        if not event.src_path:
            # inotify only follows directories created in place or moved within the
            # tree, a directory arriving from outside needs a watch of its own
            try:
                self.add_watch(destination)
            except OSError as exc:
                logger.error(f"unable to watch directory {destination}: {exc}")
        self.process_existing(destination)

    def process_file(self, path: Path) -> None:
        """Run one file through the pipeline and upload whichever version wins."""
        try:
            self._process_file(path)
        except Exception:
            logger.exception(f"unexpected error while handling {path}, leaving it in place")

    def _process_file(self, path: Path) -> None:
        if not path.is_file():
            logger.debug(f"skipping {path}: not a regular file")
            return

        log = PrefixedLogger(logger, f"file {path.name}: ")
        try:
            upload = UploadDescriptor.from_path(path)
        except OSError as exc:
            log.error(f"unable to read file: {exc}")
            return

        if not self.processor.handles(upload.extension):
            log.info(f"extension {upload.extension or '(none)'} not configured for processing, uploading original")
            self.upload(path, path, log)
            return

        try:
            processed = self.processor.process(upload, log)
        except PipelineError as exc:
            log.error(f"processing failed, uploading original: {exc}")
            self.upload(path, path, log)
            return

        with processed:
            if should_replace(upload.size, processed.size):
                filename = processed_filename(upload.filename, upload.extension, processed.extension)
                log.info(f"optimized {human_readable_size(upload.size)} -> {human_readable_size(processed.size)}, uploading {filename}")
                self.upload(processed.path, path, log, filename=filename)
            else:
                log.info(
                    f"original file uploaded (no optimization achieved: {human_readable_size(upload.size)} -> {human_readable_size(processed.size)})"
                )
                self.upload(path, path, log)

    def upload(self, source: Path, original: Path, log: logging.LoggerAdapter, filename: Optional[str] = None) -> bool:
        """
        Upload ``source`` and remove ``original`` on success.

        On failure the original stays in place and a copy goes to the undone directory.
        """
        try:
            self.uploader.upload(source, filename=filename or original.name)
        except AssetUploadError as exc:
            log.error(f"upload failed: {exc}")
            try:
                destination = copy_to_undone(original, self.watch_dir, self.undone_dir)
            except OSError as copy_exc:
                log.error(f"unable to copy file to undone directory: {copy_exc}")
            else:
                log.info(f"copied to {destination}")
            return False

        try:
            original.unlink()
        except OSError as exc:
            log.error(f"unable to remove file after upload: {exc}")
        return True
