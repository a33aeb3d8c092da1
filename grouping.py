"""
Duplicate grouping for dupelink

Walks the index in fingerprint order and cuts it into runs of equal
fingerprints. Whether a fingerprint is duplicated is decided over the whole
index; the path and extension scope only decide which rows of a run become
group members. A run with five indexed copies of which two are in scope is
therefore reported as a group of two, and a run with a single member in
scope is not reported at all.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

from records import extension_allowed
import metrics

logger = logging.getLogger('dupelink.grouping')

FINGERPRINT_KINDS = ('content', 'audio')


@dataclass
class DupeEntry:
    """A group member: index metadata plus the live stat taken at grouping time"""

    path: str
    content_hash: str
    audio_hash: str
    filename: str
    extension: str
    size: int
    mtime: int
    last_checked: int
    stat: Optional[os.stat_result] = None

    @property
    def depth(self):
        return self.path.count(os.sep)

    @classmethod
    def from_entry(cls, entry):
        member = cls(
            path=entry.path,
            content_hash=entry.content_hash,
            audio_hash=entry.audio_hash,
            filename=entry.filename,
            extension=entry.extension,
            size=entry.size,
            mtime=entry.mtime,
            last_checked=entry.last_checked,
        )
        try:
            member.stat = os.stat(entry.path)
        except OSError as e:
            logger.warning(f"Cannot stat duplicate candidate {entry.path}: {e}")
        return member


@dataclass
class DuplicateGroup:
    fingerprint: str
    kind: str
    members: List[DupeEntry] = field(default_factory=list)

    def __len__(self):
        return len(self.members)

    @property
    def paths(self):
        return [member.path for member in self.members]


class PathScope:
    """Restricts group membership to a directory.

    With recurse, every path below the directory is in scope; otherwise only
    its direct children are.
    """

    def __init__(self, path, recurse=False):
        self.path = os.path.realpath(path)
        self.recurse = recurse

    def __contains__(self, file_path):
        if self.recurse:
            prefix = self.path if self.path.endswith(os.sep) else self.path + os.sep
            return file_path.startswith(prefix)
        return os.path.dirname(file_path) == self.path

    def __repr__(self):
        return f"PathScope({self.path!r}, recurse={self.recurse})"


class DuplicateGrouper:
    """Produces duplicate groups from the index.

    Args:
        db: Connected IndexDatabase
        kind: 'content' or 'audio'
        min_count: Minimum number of in-scope members for a group (>= 2)
        scope: Optional PathScope limiting membership
        extensions: Optional set of lowercase extensions limiting membership
    """

    def __init__(self, db, kind='content', min_count=2, scope=None, extensions=None):
        if kind not in FINGERPRINT_KINDS:
            raise ValueError(f"Unknown fingerprint kind: {kind}")
        if min_count < 2:
            raise ValueError(f"Minimum group size must be at least 2, got {min_count}")
        self.db = db
        self.kind = kind
        self.min_count = min_count
        self.scope = scope
        self.extensions = extensions

    def in_scope(self, entry):
        if self.scope is not None and entry.path not in self.scope:
            return False
        return extension_allowed(entry.extension, self.extensions)

    def iter_groups(self):
        """Yield DuplicateGroup objects in ascending fingerprint order"""
        current = None
        for entry in self.db.iter_by_fingerprint(self.kind):
            fingerprint = entry.content_hash if self.kind == 'content' else entry.audio_hash

            if current is None or fingerprint != current.fingerprint:
                if current is not None and len(current) >= self.min_count:
                    metrics.inc('duplicate_groups_total')
                    yield current
                current = DuplicateGroup(fingerprint=fingerprint, kind=self.kind)

            if self.in_scope(entry):
                current.members.append(DupeEntry.from_entry(entry))

        if current is not None and len(current) >= self.min_count:
            metrics.inc('duplicate_groups_total')
            yield current
