"""
Index records and change detection for dupelink

An IndexEntry mirrors one row of the files table. The scanner builds a
candidate entry from live stat results, asks decide_action() whether the row
needs to be written, and persists the row returned by merge_entry().
"""

import os
import stat
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from constants import NOT_CALCULATED, SENTINELS


class EntryKind(str, Enum):
    """Type of filesystem entry recorded in the index."""

    REGULAR = 'F'
    DIRECTORY = 'D'
    SYMLINK = 'L'
    HARDLINK = 'H'  # regular file whose path was produced by a relink

    @classmethod
    def from_mode(cls, mode):
        if stat.S_ISLNK(mode):
            return cls.SYMLINK
        if stat.S_ISDIR(mode):
            return cls.DIRECTORY
        return cls.REGULAR

    @property
    def comparable(self):
        """Kind used for change detection: link-sourced files are regular files."""
        return EntryKind.REGULAR if self is EntryKind.HARDLINK else self


class Action(Enum):
    SKIP = 0
    INSERT = 1
    UPDATE = 2


def is_digest(value):
    """True if value is a real digest rather than NULL or a sentinel."""
    return bool(value) and value not in SENTINELS


def split_name(path):
    """Return (filename, extension) for a path; extension has no leading dot."""
    filename = os.path.basename(path)
    stem, dot, extension = filename.rpartition('.')
    if not dot or not stem:
        # No dot, or a dotfile such as ".bashrc"
        return filename, ''
    return filename, extension


def parse_extensions(text):
    """Parse a comma-separated extension list into a lowercase set.

    Returns None for an empty list, meaning every extension is allowed.
    """
    if not text:
        return None
    extensions = {part.strip().lstrip('.').lower() for part in text.split(',')}
    extensions.discard('')
    return frozenset(extensions) or None


def extension_allowed(extension, allowed):
    """Case-insensitive allow-list check; allowed=None accepts everything."""
    if allowed is None:
        return True
    return (extension or '').lower() in allowed


@dataclass
class IndexEntry:
    """One indexed filesystem entry."""

    path: str
    content_hash: str = NOT_CALCULATED
    audio_hash: str = NOT_CALCULATED
    filename: str = ''
    extension: str = ''
    size: int = 0
    mtime: int = 0
    kind: EntryKind = EntryKind.REGULAR
    last_checked: int = 0
    id: Optional[int] = None

    @classmethod
    def from_stat(cls, path, st, checked_at, content_hash=NOT_CALCULATED,
                  audio_hash=NOT_CALCULATED, kind=None):
        filename, extension = split_name(path)
        return cls(
            path=path,
            content_hash=content_hash,
            audio_hash=audio_hash,
            filename=filename,
            extension=extension,
            size=st.st_size,
            mtime=int(st.st_mtime),
            kind=kind or EntryKind.from_mode(st.st_mode),
            last_checked=int(checked_at),
        )


def decide_action(stored, live_size, live_mtime, live_kind,
                  hash_content=False, hash_audio=False, force=False):
    """Decide whether a scanned entry must be written to the index.

    Args:
        stored: IndexEntry from the database, or None if the path is new
        live_size: Current size from stat
        live_mtime: Current integer modification time from stat
        live_kind: Current EntryKind from lstat
        hash_content: Content hashing requested for this run
        hash_audio: Audio hashing requested for this run
        force: Rewrite every known entry regardless of metadata

    Returns:
        Action.INSERT, Action.UPDATE or Action.SKIP
    """
    if stored is None:
        return Action.INSERT
    if force:
        return Action.UPDATE

    if stored.size != live_size:
        return Action.UPDATE
    if stored.mtime != int(live_mtime):
        return Action.UPDATE
    if EntryKind(stored.kind).comparable != EntryKind(live_kind).comparable:
        return Action.UPDATE

    # A file indexed without a fingerprint must be revisited once that
    # fingerprint is asked for.
    if hash_content and stored.content_hash == NOT_CALCULATED:
        return Action.UPDATE
    if hash_audio and stored.audio_hash == NOT_CALCULATED:
        return Action.UPDATE

    return Action.SKIP


def merge_entry(old, candidate, hash_content, hash_audio, link_count=1):
    """Build the row to persist from the stored row and a fresh candidate.

    Fingerprints are overwritten only when they were requested this run;
    everything else comes from the candidate. The row id of the stored entry
    is preserved.
    """
    if old is None:
        return candidate

    merged = replace(
        candidate,
        id=old.id,
        content_hash=candidate.content_hash if hash_content else old.content_hash,
        audio_hash=candidate.audio_hash if hash_audio else old.audio_hash,
    )
    if (EntryKind(old.kind) is EntryKind.HARDLINK
            and EntryKind(candidate.kind) is EntryKind.REGULAR
            and link_count > 1):
        merged.kind = EntryKind.HARDLINK
    return merged
