"""
Watcher: turns filesystem changes under the library root into change events.

The watcher only writes to the store and to local .m3u files; it never talks
to the remote provider. Duplicate notifications are coalesced against the
in-memory LibraryTree, so a create for a file already known emits nothing.
"""

import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from loguru import logger
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from playlist_sync.core import database
from playlist_sync.core.config import Config
from playlist_sync.core.errors import (
    LocalIOError,
    StoreContentionError,
    StoreCorruptionError,
)
from playlist_sync.core.models import EventAction
from playlist_sync.domain.library.playlist_files import (
    is_playlist_file,
    ordered_tracks,
    read_playlist_file,
    write_playlist_file,
)
from playlist_sync.domain.library.tree import LibraryTree


class LibraryEventHandler(FileSystemEventHandler):
    """Maps watchdog events to change events, with debounced .m3u rewrites."""

    def __init__(self, config: Config, tree: LibraryTree):
        self.config = config
        self.tree = tree
        self.debounce_seconds = config.watcher.debounce_ms / 1000.0
        # folder -> time of last change; its .m3u is rewritten once quiet
        self.pending_changes: Dict[Path, float] = {}
        # playlist file -> track lines we last wrote (to tell our writes from user edits)
        self.written: Dict[Path, List[str]] = {}
        self.fatal: Optional[StoreCorruptionError] = None
        # (playlist, action, track_path, extra, timestamp_ms) not yet in the store
        self.unsent: List[Tuple[str, EventAction, Optional[str], Optional[dict], int]] = []
        self.emitted = 0
        self._lock = threading.RLock()

    # ---- watchdog entry points ----

    def dispatch(self, event: FileSystemEvent) -> None:
        with self._lock:
            try:
                super().dispatch(event)
            except LocalIOError as e:
                logger.warning(f"Local I/O error, continuing: {e}")
            except StoreContentionError as e:
                logger.error(f"Could not record {event.event_type} of {event.src_path}: {e}")
            except StoreCorruptionError as e:
                logger.critical(f"Store corrupted: {e}")
                self.fatal = e

    def on_created(self, event: FileSystemEvent) -> None:
        path = Path(event.src_path)
        if event.is_directory:
            self.folder_created(path)
        else:
            self.file_added(path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        path = Path(event.src_path)
        if event.is_directory or path in self.tree.nodes:
            self.folder_deleted(path)
        else:
            self.file_removed(path)

    def on_moved(self, event: FileSystemEvent) -> None:
        src, dest = Path(event.src_path), Path(event.dest_path)
        if event.is_directory:
            self.folder_moved(src, dest)
        elif is_playlist_file(self.config, self.tree, dest):
            self.playlist_file_edited(dest)
        else:
            self.file_moved(src, dest)

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        path = Path(event.src_path)
        if is_playlist_file(self.config, self.tree, path):
            self.playlist_file_edited(path)

    # ---- event emission ----

    def _emit(
        self,
        playlist_name: str,
        action: EventAction,
        track_path: Optional[Path] = None,
        extra: Optional[dict] = None,
    ) -> None:
        """Record one change event.

        The tree already reflects the change, so an event the store cannot take
        right now (locked past its retries) is held in unsent and written by
        flush_unsent() ahead of anything newer.
        """
        event = (
            playlist_name,
            action,
            str(track_path) if track_path is not None else None,
            extra,
            database.now_ms(),
        )
        self.unsent.append(event)
        self.emitted += 1
        logger.debug(f"{action.value} {playlist_name} {track_path or ''}".rstrip())
        self.flush_unsent()

    def flush_unsent(self) -> int:
        """Write held events in order, stopping at the first store contention.

        Returns:
            Number of events still held
        """
        while self.unsent:
            playlist_name, action, track_path, extra, timestamp_ms = self.unsent[0]
            try:
                database.enqueue_event(
                    playlist_name,
                    action,
                    track_path=track_path,
                    extra=extra,
                    timestamp_ms=timestamp_ms,
                )
            except StoreContentionError as e:
                logger.warning(
                    f"Store busy, holding {len(self.unsent)} event(s) for retry: {e}"
                )
                break
            self.unsent.pop(0)
        return len(self.unsent)

    def _touch(self, folder: Path) -> None:
        """Schedule .m3u rewrites for folder and its ancestors."""
        now = time.time()
        while True:
            if folder in self.tree.nodes:
                self.pending_changes[folder] = now
            if folder == self.tree.root or self.tree.root not in folder.parents:
                return
            folder = folder.parent

    # ---- tracks ----

    def file_added(self, path: Path) -> None:
        if path.name.startswith(".") or not self.tree.add_track(path):
            return
        for name in self.tree.playlists_containing(path):
            self._emit(name, EventAction.ADD, path)
        self._touch(path.parent)

    def file_removed(self, path: Path) -> None:
        if not self.tree.remove_track(path):
            return
        for name in self.tree.playlists_containing(path):
            self._emit(name, EventAction.REMOVE, path)
        self._touch(path.parent)

    def file_moved(self, src: Path, dest: Path) -> None:
        known = self.tree.has_track(src)
        self.file_removed(src)
        if known and self.tree.is_audio(dest):
            database.relocate_track_resolutions(str(src), str(dest))
        self.file_added(dest)

    # ---- folders ----

    def folder_created(self, folder: Path) -> None:
        added = self.tree.add_folder(folder)
        for new_folder in added:
            self._emit(self.tree.playlist_name(new_folder), EventAction.CREATE)
        for new_folder in added:
            for track in sorted(self.tree.nodes[new_folder].tracks):
                for name in self.tree.playlists_containing(track):
                    self._emit(name, EventAction.ADD, track)
            self._touch(new_folder)
        if added:
            self._touch(folder.parent)

    def folder_deleted(self, folder: Path) -> None:
        removed = self.tree.remove_folder(folder)
        for node in removed:
            self.pending_changes.pop(node.path, None)
            self.written.pop(node.path, None)
            self._emit(self.tree.playlist_name(node.path), EventAction.DELETE)
        # Surviving ancestors (flat mode) lose the tracks that were below them
        for node in removed:
            for track in sorted(node.tracks):
                for name in self.tree.playlists_containing(track):
                    self._emit(name, EventAction.REMOVE, track)
        if removed:
            self._touch(folder.parent)

    def folder_moved(self, src: Path, dest: Path) -> None:
        if src not in self.tree.nodes:
            self.folder_created(dest)
            return
        if not self.tree.is_allowed(dest):
            self.folder_deleted(src)
            return

        old_folders = self.tree.subtree(src)
        old_names = {self.tree.playlist_name(f) for f in old_folders}
        # Ancestor playlists outside the moved subtree, per track, before the move
        before = {
            track: [n for n in self.tree.playlists_containing(track) if n not in old_names]
            for folder in old_folders
            for track in self.tree.nodes[folder].tracks
        }

        moved = self.tree.move_folder(src, dest)
        database.relocate_track_resolutions(str(src), str(dest))
        new_names = {self.tree.playlist_name(node.path) for node in moved}

        for folder in old_folders:
            old_name = self.tree.playlist_name(folder)
            new_folder = dest / folder.relative_to(src)
            if new_folder in self.tree.nodes:
                new_name = self.tree.playlist_name(new_folder)
                self._emit(
                    old_name, EventAction.RENAME, extra={"from": old_name, "to": new_name}
                )
            else:
                self._emit(old_name, EventAction.DELETE)
            self.written.pop(folder, None)
            self.pending_changes.pop(folder, None)

        for old_track, names in sorted(before.items()):
            for name in names:
                self._emit(name, EventAction.REMOVE, old_track)
            new_track = dest / old_track.relative_to(src)
            if self.tree.has_track(new_track):
                for name in self.tree.playlists_containing(new_track):
                    if name not in new_names:
                        self._emit(name, EventAction.ADD, new_track)

        for node in moved:
            self._touch(node.path)
        self._touch(src.parent)

    # ---- playlist files ----

    def playlist_file_edited(self, path: Path) -> None:
        """A user edit of a .m3u file reorders the playlist (append mode only)."""
        if self.config.playlists.playlist_order_mode != "append":
            return
        name = self.tree.playlist_name(path.parent)
        members = {str(t) for t in self.tree.playlist_tracks(name)}
        order = [str(e) for e in read_playlist_file(path) if str(e) in members]
        if order == self.written.get(path):
            return
        self.written[path] = order
        self._emit(name, EventAction.REORDER, extra={"order": order})
        logger.info(f"{name}: order changed in {path.name}")

    def write_playlist(self, folder: Path) -> Optional[Path]:
        name = self.tree.playlist_name(folder)
        try:
            path = write_playlist_file(self.config, self.tree, name)
        except LocalIOError as e:
            logger.warning(str(e))
            return None
        self.written[path] = [
            str(t) for t in ordered_tracks(self.config, self.tree, name)
        ]
        return path

    def write_all_playlist_files(self) -> List[Path]:
        with self._lock:
            written = [self.write_playlist(folder) for folder in sorted(self.tree.nodes)]
        return [p for p in written if p is not None]

    def check_pending_changes(self) -> List[Path]:
        """Rewrite .m3u files of folders that have been quiet for the debounce window.

        Returns:
            Playlist files rewritten
        """
        current_time = time.time()
        rewritten = []

        with self._lock:
            self.flush_unsent()
            for folder, timestamp in list(self.pending_changes.items()):
                if current_time - timestamp < self.debounce_seconds:
                    continue
                del self.pending_changes[folder]
                if folder not in self.tree.nodes:
                    continue
                path = self.write_playlist(folder)
                if path is not None:
                    rewritten.append(path)

        return rewritten


def run_watcher(
    config: Config,
    stop_event: Optional[threading.Event] = None,
    poll_interval: float = 0.1,
) -> None:
    """Watch the library until interrupted or stop_event is set.

    Raises:
        StoreCorruptionError: If the store becomes unusable
    """
    stop_event = stop_event or threading.Event()
    tree = LibraryTree.from_config(config)
    handler = LibraryEventHandler(config, tree)
    handler.write_all_playlist_files()

    observer = Observer()
    observer.schedule(handler, str(tree.root), recursive=True)
    observer.start()
    logger.info(f"Watching {tree.root} ({len(tree.nodes)} playlists)")

    try:
        while not stop_event.is_set():
            handler.check_pending_changes()
            if handler.fatal is not None:
                raise handler.fatal
            stop_event.wait(poll_interval)
    except KeyboardInterrupt:
        logger.info("Watcher interrupted")
    finally:
        observer.stop()
        observer.join(timeout=5.0)
        if handler.unsent:
            logger.warning(
                f"{len(handler.unsent)} change event(s) were never recorded; "
                "the next reconcile will pick them up"
            )
        logger.info(f"Watcher stopped after {handler.emitted} events")
