"""
Local .m3u playlist files.

One file per folder, named by local_playlist_template. Tracks are written as
absolute paths; in linked mode child playlist files follow the folder's own
tracks, referenced relative to the folder or absolutely.
"""

import os
from pathlib import Path
from typing import List

from loguru import logger

from playlist_sync.core.config import Config
from playlist_sync.core.errors import LocalIOError

from .tree import LibraryTree, expand_template

M3U_HEADER = "#EXTM3U"


def playlist_file_path(config: Config, tree: LibraryTree, folder: Path) -> Path:
    relative = folder.relative_to(tree.root)
    parent = relative.parent.as_posix() if relative != Path(".") else "."
    path_to_parent = "" if parent == "." else f"{parent}/"
    filename = expand_template(
        config.playlists.local_playlist_template, folder.name, path_to_parent
    )
    # Templates may contain path_to_parent; keep the file inside its folder
    return folder / filename.replace("/", "_")


def read_playlist_file(path: Path) -> List[Path]:
    """Entries of an .m3u file, resolved against its folder.

    Raises:
        LocalIOError: If the file exists but cannot be read
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    except (OSError, UnicodeDecodeError) as e:
        raise LocalIOError(f"Cannot read playlist file {path}: {e}") from e

    entries = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        entry = Path(line)
        entries.append(entry if entry.is_absolute() else path.parent / entry)
    return entries


def _mtime(path: Path) -> float:
    try:
        return path.stat().st_mtime
    except OSError:
        return 0.0


def ordered_tracks(config: Config, tree: LibraryTree, playlist_name: str) -> List[Path]:
    """Tracks of a playlist in the configured local order."""
    tracks = tree.playlist_tracks(playlist_name)
    mode = config.playlists.playlist_order_mode

    if mode == "alphabetical":
        return tracks
    if mode == "modified":
        return sorted(tracks, key=lambda t: (_mtime(t), str(t)))

    # append: keep the order already in the file, new tracks go last
    current = set(tracks)
    folder = tree.folder_for(playlist_name)
    ordered: List[Path] = []
    seen = set()
    try:
        existing = read_playlist_file(playlist_file_path(config, tree, folder))
    except LocalIOError as e:
        logger.warning(str(e))
        existing = []
    for entry in existing:
        if entry in current and entry not in seen:
            ordered.append(entry)
            seen.add(entry)
    ordered.extend(t for t in tracks if t not in seen)
    return ordered


def render_playlist(config: Config, tree: LibraryTree, playlist_name: str) -> List[str]:
    """Lines (without header) of a playlist's .m3u file."""
    folder = tree.folder_for(playlist_name)
    lines = [str(track) for track in ordered_tracks(config, tree, playlist_name)]

    if not tree.flat:
        for child in tree.child_folders(folder):
            child_file = playlist_file_path(config, tree, child)
            if config.playlists.linked_reference_format == "absolute":
                lines.append(str(child_file))
            else:
                lines.append(child_file.relative_to(folder).as_posix())
    return lines


def write_playlist_file(config: Config, tree: LibraryTree, playlist_name: str) -> Path:
    """Rewrite a playlist's .m3u file atomically.

    Raises:
        LocalIOError: If the file cannot be written
    """
    folder = tree.folder_for(playlist_name)
    path = playlist_file_path(config, tree, folder)
    lines = render_playlist(config, tree, playlist_name)
    tmp_path = path.with_name(f".{path.name}.tmp")

    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write("\n".join([M3U_HEADER, *lines]) + "\n")
        os.replace(tmp_path, path)
    except OSError as e:
        raise LocalIOError(f"Cannot write playlist file {path}: {e}") from e

    logger.debug(f"Wrote {path} ({len(lines)} entries)")
    return path


def is_playlist_file(config: Config, tree: LibraryTree, path: Path) -> bool:
    """True if path is the playlist file of a known folder."""
    return (
        path.parent in tree.nodes
        and path == playlist_file_path(config, tree, path.parent)
    )
