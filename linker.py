"""
Hardlink engine for dupelink

Picks one canonical file per duplicate group and replaces every other member
with a hardlink to it. A member is never removed before its replacement
exists: the target is first linked to a temporary name beside the member and
that name is then renamed over the member, so an interruption leaves either
the original file or a stray temporary link.
"""

import os
import sqlite3
import logging
import secrets
import time
from enum import Enum

from records import is_digest
import metrics

logger = logging.getLogger('dupelink.linker')

TEMP_SUFFIX = '.dupelink'
TEMP_NAME_ATTEMPTS = 10


class LinkPolicy(str, Enum):
    """Rule used to choose the canonical file of a group"""

    SHALLOWEST = 'shallowest'
    DEEPEST = 'deepest'
    COMPLETE = 'complete'
    OLDEST = 'oldest'
    NEWEST = 'newest'


class LinkOutcome(str, Enum):
    KEEP = 'keep'
    LINK = 'link'      # dry run: would be linked
    LINKED = 'linked'
    SKIP = 'skip'


def completeness_score(member):
    """Count the metadata fields of a member that carry a real value"""
    score = 0
    if is_digest(member.content_hash):
        score += 1
    if is_digest(member.audio_hash):
        score += 1
    if member.filename:
        score += 1
    if member.extension:
        score += 1
    if member.size > 0:
        score += 1
    if member.last_checked > 0:
        score += 1
    return score


def _is_better(policy, candidate, best):
    """True only if candidate is strictly better than best under policy"""
    if policy is LinkPolicy.SHALLOWEST:
        return candidate.depth < best.depth
    if policy is LinkPolicy.DEEPEST:
        return candidate.depth > best.depth
    if policy is LinkPolicy.COMPLETE:
        return completeness_score(candidate) > completeness_score(best)

    # Age policies compare live mtimes; a member that could not be stat'ed
    # is never preferred
    if candidate.stat is None:
        return False
    if best.stat is None:
        return True
    if policy is LinkPolicy.OLDEST:
        return candidate.stat.st_mtime < best.stat.st_mtime
    return candidate.stat.st_mtime > best.stat.st_mtime


def select_target(members, policy):
    """Return the canonical member of a group; ties keep the first member.

    Raises:
        ValueError: if members is empty
    """
    if not members:
        raise ValueError("Cannot select a target from an empty group")
    policy = LinkPolicy(policy)

    best = members[0]
    for candidate in members[1:]:
        if _is_better(policy, candidate, best):
            best = candidate
    return best


def _temp_link_path(member_path):
    directory, name = os.path.split(member_path)
    return os.path.join(directory, f".{name}.{secrets.token_hex(4)}{TEMP_SUFFIX}")


class Linker:
    """Collapses duplicate groups into hardlinks.

    Args:
        db: Connected IndexDatabase
        policy: LinkPolicy (or its value) for choosing the canonical file
        by: Fingerprint kind the groups were built from, 'content' or 'audio'
        dry_run: Report intended links without touching files or the index
    """

    def __init__(self, db, policy, by='content', dry_run=False):
        self.db = db
        self.policy = LinkPolicy(policy)
        self.by = by
        self.dry_run = dry_run

    def link_group(self, group):
        """Link every member of a group to its canonical file.

        Returns:
            List of (LinkOutcome, path) tuples, the kept target first
        """
        target = select_target(group.members, self.policy)
        outcomes = [(LinkOutcome.KEEP, target.path)]
        logger.debug(f"Group {group.fingerprint[:16]}: keeping {target.path} ({self.policy.value})")

        try:
            for member in group.members:
                if member is target:
                    continue
                outcome = self.relink(target, member)
                outcomes.append((outcome, member.path))
            if not self.dry_run:
                self.db.commit_transaction()
        except sqlite3.Error as e:
            logger.error(f"Index update failed for group {group.fingerprint[:16]}: {e}")
            self.db.rollback_transaction()
            raise

        return outcomes

    def _skip_reason(self, target, member):
        if target.stat is None or member.stat is None:
            return "missing file information"
        if target.stat.st_dev != member.stat.st_dev:
            return "different filesystem"
        if target.stat.st_ino == member.stat.st_ino:
            return "already linked"
        for side in (target, member):
            if side.stat.st_size != side.size or int(side.stat.st_mtime) != side.mtime:
                return f"{side.path} changed since it was indexed"
        return None

    def relink(self, target, member):
        """Replace member with a hardlink to target.

        Returns:
            LinkOutcome.LINK (dry run), LINKED or SKIP
        """
        reason = self._skip_reason(target, member)
        if reason:
            logger.info(f"Skipping {member.path}: {reason}")
            metrics.inc('link_skips_total')
            return LinkOutcome.SKIP

        if self.dry_run:
            logger.info(f"DRY RUN: Would link {member.path} -> {target.path}")
            return LinkOutcome.LINK

        try:
            self._replace_with_link(target.path, member.path)
        except OSError as e:
            logger.error(f"Failed to link {member.path} -> {target.path}: {e}")
            metrics.inc('link_skips_total')
            return LinkOutcome.SKIP

        size = content_hash = None
        if self.by == 'audio' and (member.size != target.size
                                   or member.content_hash != target.content_hash):
            # Same audio in a different container; the path now holds the target's bytes
            size = target.size
            content_hash = target.content_hash

        self.db.mark_relinked(member.path, time.time(), target.stat.st_mtime,
                              size=size, content_hash=content_hash)

        logger.info(f"Linked {member.path} -> {target.path}")
        metrics.inc('files_linked_total')
        metrics.inc('bytes_reclaimed_total', member.size)
        return LinkOutcome.LINKED

    def _replace_with_link(self, target_path, member_path):
        """Hardlink target_path to a temporary name, then rename it over member_path"""
        for _ in range(TEMP_NAME_ATTEMPTS):
            temp_path = _temp_link_path(member_path)
            try:
                os.link(target_path, temp_path)
                break
            except FileExistsError:
                continue
        else:
            raise FileExistsError(f"No free temporary name beside {member_path}")

        try:
            os.replace(temp_path, member_path)
        except OSError:
            try:
                os.unlink(temp_path)
            except OSError as e:
                logger.warning(f"Could not remove temporary link {temp_path}: {e}")
            raise
