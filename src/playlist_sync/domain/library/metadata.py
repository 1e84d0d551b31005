"""
Track identity extraction for remote search.

Reads ISRC, artist and title with Mutagen; falls back to the
"Artist - Title" file name convention when tags are missing.
"""

from pathlib import Path
from typing import Optional, Tuple

from loguru import logger
from mutagen import File as MutagenFile
from mutagen import MutagenError

from playlist_sync.domain.remote.provider import TrackQuery

# ID3, MP4 freeform atom, Vorbis/FLAC comment (both cases)
ISRC_TAGS = ["TSRC", "----:com.apple.iTunes:ISRC", "ISRC", "isrc"]
TITLE_TAGS = ["TIT2", "\xa9nam", "TITLE", "title"]
ARTIST_TAGS = ["TPE1", "\xa9ART", "ARTIST", "artist"]


def get_tag_value(audio_file: MutagenFile, tag_names: list[str]) -> Optional[str]:
    """Get tag value, trying multiple possible tag names."""
    for tag_name in tag_names:
        try:
            value = audio_file.get(tag_name)
        except (KeyError, ValueError):
            # Vorbis raises ValueError for keys it cannot represent
            continue
        if not value:
            continue
        if isinstance(value, list):
            value = value[0]
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        text = str(value).strip()
        if text:
            return text
    return None


def parse_filename(local_path: str) -> Tuple[Optional[str], str]:
    """Split an "Artist - Title" file stem.

    Returns:
        (artist or None, title)
    """
    title = Path(local_path).stem
    if " - " in title:
        artist, _, rest = title.partition(" - ")
        if artist.strip() and rest.strip():
            return artist.strip(), rest.strip()
    return None, title.strip()


def build_track_query(local_path: str) -> TrackQuery:
    """Collect everything a provider search can use for a local file."""
    artist, title = parse_filename(local_path)
    isrc = None

    try:
        audio_file = MutagenFile(local_path)
    except (MutagenError, OSError) as e:
        logger.debug(f"Cannot read tags from {local_path}: {e}")
        audio_file = None

    if audio_file is not None:
        raw_isrc = get_tag_value(audio_file, ISRC_TAGS)
        isrc = raw_isrc.replace("-", "").upper() if raw_isrc else None
        artist = get_tag_value(audio_file, ARTIST_TAGS) or artist
        title = get_tag_value(audio_file, TITLE_TAGS) or title

    return TrackQuery(local_path=local_path, isrc=isrc, artist=artist, title=title)
