"""Local library: folder tree, playlist files and track metadata."""

from .metadata import build_track_query
from .playlist_files import ordered_tracks, read_playlist_file, write_playlist_file
from .tree import LibraryTree, expand_template, remote_playlist_name

__all__ = [
    "LibraryTree",
    "build_track_query",
    "expand_template",
    "ordered_tracks",
    "read_playlist_file",
    "remote_playlist_name",
    "write_playlist_file",
]
