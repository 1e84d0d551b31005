"""
In-memory view of the local library.

Every allowed folder below the root is a playlist, keyed by its path relative
to the root ("Artist/Album"); the root itself is keyed by its own name. In
flat mode a folder's playlist holds every track below it, in linked mode only
its direct tracks.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set

from loguru import logger

from playlist_sync.core.config import Config


def expand_template(template: str, folder_name: str, path_to_parent: str) -> str:
    """Fill ${folder_name}, ${path_to_parent} and ${relative_path}.

    path_to_parent already ends with its separator ("Artist/" or "Artist| "),
    so ${relative_path} is path_to_parent + folder_name.
    """
    return (
        template.replace("${folder_name}", folder_name)
        .replace("${path_to_parent}", path_to_parent)
        .replace("${relative_path}", f"{path_to_parent}{folder_name}")
    )


def remote_playlist_name(config: Config, playlist_name: str) -> str:
    """Remote display name: nested folders flattened with the remote delimiter."""
    parts = playlist_name.split("/")
    delimiter = config.playlists.remote_path_delimiter
    path_to_parent = "".join(f"{part}{delimiter}" for part in parts[:-1])
    return expand_template(
        config.playlists.remote_playlist_template, parts[-1], path_to_parent
    )


def remote_playlist_description(config: Config, playlist_name: str) -> str:
    template = config.playlists.playlist_description_template
    if not template:
        return ""
    parts = playlist_name.split("/")
    path_to_parent = "".join(f"{part}/" for part in parts[:-1])
    return expand_template(template, parts[-1], path_to_parent)


@dataclass
class FolderNode:
    path: Path
    tracks: Set[Path] = field(default_factory=set)  # direct audio files only


class LibraryTree:
    """Folders and audio files under the configured root."""

    def __init__(
        self,
        root: Path,
        extensions: List[str],
        whitelist: Optional[List[str]] = None,
        flat: bool = True,
    ):
        self.root = root
        self.extensions = {e.lower().lstrip("*").lstrip(".") for e in extensions}
        self.whitelist = [
            Path(w).expanduser() if Path(w).expanduser().is_absolute() else root / w
            for w in (whitelist or [])
        ]
        self.flat = flat
        self.nodes: Dict[Path, FolderNode] = {}

    @classmethod
    def from_config(cls, config: Config) -> "LibraryTree":
        tree = cls(
            config.root_folder,
            config.library.file_extensions,
            config.library.whitelist,
            flat=config.playlists.playlist_mode == "flat",
        )
        tree.scan()
        return tree

    # ---- classification ----

    def is_audio(self, path: Path) -> bool:
        return path.suffix.lower().lstrip(".") in self.extensions

    def is_allowed(self, folder: Path) -> bool:
        if folder != self.root and self.root not in folder.parents:
            return False
        if any(part.startswith(".") for part in folder.relative_to(self.root).parts):
            return False
        if not self.whitelist:
            return True
        return any(folder == w or w in folder.parents for w in self.whitelist)

    def playlist_name(self, folder: Path) -> str:
        relative = folder.relative_to(self.root)
        if relative == Path("."):
            return self.root.name
        return relative.as_posix()

    def folder_for(self, playlist_name: str) -> Path:
        if playlist_name == self.root.name:
            return self.root
        return self.root / playlist_name

    # ---- queries ----

    def playlist_names(self) -> List[str]:
        return sorted(self.playlist_name(folder) for folder in self.nodes)

    def has_playlist(self, playlist_name: str) -> bool:
        return self.folder_for(playlist_name) in self.nodes

    def has_track(self, path: Path) -> bool:
        node = self.nodes.get(path.parent)
        return node is not None and path in node.tracks

    def playlists_containing(self, path: Path) -> List[str]:
        """Playlists a track at path belongs to (nearest folder first)."""
        names = []
        folder = path.parent
        while True:
            if folder in self.nodes:
                names.append(self.playlist_name(folder))
            if not self.flat or folder == self.root or self.root not in folder.parents:
                break
            folder = folder.parent
        return names

    def subtree(self, folder: Path) -> List[Path]:
        """Known folders at or below folder."""
        return sorted(
            f for f in self.nodes if f == folder or folder in f.parents
        )

    def playlist_tracks(self, playlist_name: str) -> List[Path]:
        """Tracks of a playlist, sorted by path."""
        folder = self.folder_for(playlist_name)
        if folder not in self.nodes:
            return []
        if not self.flat:
            return sorted(self.nodes[folder].tracks)
        tracks: Set[Path] = set()
        for sub in self.subtree(folder):
            tracks.update(self.nodes[sub].tracks)
        return sorted(tracks)

    def child_folders(self, folder: Path) -> List[Path]:
        return sorted(f for f in self.nodes if f.parent == folder and f != folder)

    # ---- mutation ----

    def scan(self) -> None:
        """Rebuild the tree from disk."""
        self.nodes = {}
        if not self.root.is_dir():
            logger.warning(f"Library root {self.root} is not a directory")
            return

        for dirpath, dirnames, filenames in os.walk(self.root, onerror=self._walk_error):
            dirnames[:] = [d for d in dirnames if not d.startswith(".")]
            folder = Path(dirpath)
            if not self.is_allowed(folder):
                continue
            node = FolderNode(folder)
            for filename in filenames:
                path = folder / filename
                if self.is_audio(path):
                    node.tracks.add(path)
            self.nodes[folder] = node

        logger.info(f"Library scan: {len(self.nodes)} playlists under {self.root}")

    @staticmethod
    def _walk_error(error: OSError) -> None:
        logger.warning(f"Cannot read {error.filename}: {error.strerror}")

    def add_track(self, path: Path) -> bool:
        """Record a new audio file. False if unknown folder, not audio, or already known."""
        node = self.nodes.get(path.parent)
        if node is None or not self.is_audio(path) or path in node.tracks:
            return False
        node.tracks.add(path)
        return True

    def remove_track(self, path: Path) -> bool:
        node = self.nodes.get(path.parent)
        if node is None or path not in node.tracks:
            return False
        node.tracks.discard(path)
        return True

    def add_folder(self, folder: Path) -> List[Path]:
        """Scan a new folder subtree into the tree.

        Returns:
            Newly added folders (already known folders are skipped)
        """
        added = []
        walk = [folder] if folder.is_dir() else []
        for dirpath, dirnames, filenames in (
            os.walk(folder, onerror=self._walk_error) if walk else []
        ):
            dirnames[:] = [d for d in dirnames if not d.startswith(".")]
            current = Path(dirpath)
            if current in self.nodes or not self.is_allowed(current):
                continue
            node = FolderNode(current)
            node.tracks = {current / f for f in filenames if self.is_audio(current / f)}
            self.nodes[current] = node
            added.append(current)
        return added

    def remove_folder(self, folder: Path) -> List[FolderNode]:
        """Drop a folder and everything below it. Returns the removed nodes."""
        removed = [self.nodes.pop(f) for f in self.subtree(folder)]
        return removed

    def move_folder(self, old: Path, new: Path) -> List[FolderNode]:
        """Re-key a folder subtree after a move. Returns the nodes at their new paths."""
        moved = []
        for node in self.remove_folder(old):
            new_path = new / node.path.relative_to(old)
            if not self.is_allowed(new_path):
                continue
            moved_node = FolderNode(
                new_path, {new_path / t.relative_to(node.path) for t in node.tracks}
            )
            self.nodes[new_path] = moved_node
            moved.append(moved_node)
        return moved
