"""
Directory scanning for dupelink
Walks a directory tree and keeps the file index current

Only files whose size, mtime or type changed since the last scan, or that
lack a fingerprint requested for this run, are hashed and written. Writes
are grouped into transactions of batch_size entries, so an interrupted scan
loses at most one batch.
"""

import os
import sqlite3
import stat
import logging
import time
from dataclasses import dataclass

from constants import BATCH_SIZE, NOT_APPLICABLE, NOT_CALCULATED, ZERO_BYTE_FILE
from hashing import HashError
from records import (
    Action,
    EntryKind,
    IndexEntry,
    decide_action,
    extension_allowed,
    merge_entry,
    split_name,
)
import metrics

logger = logging.getLogger('dupelink.scanner')


@dataclass
class ScanResult:
    """Counters for one scan run"""

    directories: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0

    @property
    def written(self):
        return self.inserted + self.updated

    @property
    def processed(self):
        return self.inserted + self.updated + self.skipped + self.failed


class DirectoryScanner:
    """Incremental indexer for one directory tree.

    Args:
        db: Connected IndexDatabase
        oracle: HashOracle used for fingerprints
        batch_size: Index writes per transaction
    """

    def __init__(self, db, oracle, batch_size=BATCH_SIZE):
        self.db = db
        self.oracle = oracle
        self.batch_size = max(1, int(batch_size))

    def scan(self, start_path, extensions=None, recurse=False,
             hash_content=False, hash_audio=False, force=False):
        """Scan start_path and update the index.

        Args:
            start_path: Directory to scan
            extensions: Set of lowercase extensions to index, None for all
            recurse: Descend into subdirectories
            hash_content: Compute content fingerprints
            hash_audio: Compute audio fingerprints
            force: Rewrite every matching entry even if unchanged

        Returns:
            ScanResult

        Raises:
            sqlite3.Error: if an index write fails; the open batch is rolled back
        """
        root = os.path.realpath(start_path)
        logger.info(f"Starting scan of {root} (recurse={recurse}, content={hash_content}, "
                    f"audio={hash_audio}, force={force})")
        start_time = time.time()

        result = ScanResult()
        pending_writes = 0

        # Explicit stack of directories still to visit
        stack = [root]

        self.db.begin_transaction()
        try:
            while stack:
                current = stack.pop()
                result.directories += 1
                logger.debug(f"Scanning directory: {current}")

                try:
                    with os.scandir(current) as it:
                        entries = list(it)
                except OSError as e:
                    logger.error(f"Error opening directory {current}: {e}")
                    continue

                for entry in entries:
                    try:
                        st = entry.stat(follow_symlinks=False)
                    except OSError as e:
                        logger.error(f"Error getting file information for {entry.path}: {e}")
                        continue

                    kind = EntryKind.from_mode(st.st_mode)

                    if kind is EntryKind.DIRECTORY:
                        if recurse:
                            stack.append(entry.path)
                        continue

                    # FIFOs, sockets and device nodes
                    if kind is EntryKind.REGULAR and not stat.S_ISREG(st.st_mode):
                        logger.debug(f"Skipping special file {entry.path!r}")
                        continue

                    _, extension = split_name(entry.name)
                    if not extension_allowed(extension, extensions):
                        continue

                    metrics.inc('files_scanned_total')
                    try:
                        action = self.process_entry(entry.path, st, kind,
                                                    hash_content, hash_audio, force)
                    except (HashError, OSError) as e:
                        logger.error(f"Error processing file {entry.path!r}: {e}")
                        metrics.inc('hash_failures_total')
                        result.failed += 1
                        continue
                    except UnicodeError as e:
                        # Names that are not valid UTF-8 cannot be stored as TEXT
                        logger.error(f"Cannot index file with undecodable name {entry.path!r}: {e}")
                        result.failed += 1
                        continue

                    if action is Action.SKIP:
                        result.skipped += 1
                    else:
                        if action is Action.INSERT:
                            result.inserted += 1
                        else:
                            result.updated += 1

                        pending_writes += 1
                        if pending_writes >= self.batch_size:
                            self.db.commit_transaction()
                            self.db.begin_transaction()
                            pending_writes = 0
                            logger.debug(f"Committed transaction at {result.processed} files")

                    if result.processed % 1000 == 0:
                        logger.info(f"Scanned {result.processed} files, wrote {result.written}...")

            self.db.set_metadata('last_scan_time', int(time.time()))
            self.db.set_metadata('last_scan_root', root)
            self.db.commit_transaction()

        except sqlite3.Error as e:
            logger.error(f"Index write failed during scan, rolling back current batch: {e}")
            self.db.rollback_transaction()
            raise

        elapsed = time.time() - start_time
        logger.info(f"Scan complete: {result.inserted} inserted, {result.updated} updated, "
                    f"{result.skipped} unchanged, {result.failed} failed "
                    f"in {result.directories} directories ({elapsed:.1f}s)")

        metrics.inc('files_inserted_total', result.inserted)
        metrics.inc('files_updated_total', result.updated)
        metrics.inc('files_skipped_total', result.skipped)
        metrics.observe_duration('last_scan_duration_seconds', start_time)
        metrics.log_structured('scan_complete',
                               root=root,
                               inserted=result.inserted,
                               updated=result.updated,
                               skipped=result.skipped,
                               failed=result.failed,
                               duration_seconds=round(elapsed, 3))
        return result

    def process_entry(self, path, st, kind, hash_content, hash_audio, force):
        """Run change detection for one entry and write it if needed.

        Returns:
            The Action taken

        Raises:
            HashError: if a requested content fingerprint cannot be computed
        """
        stored = self.db.get_entry(path)
        action = decide_action(stored, st.st_size, st.st_mtime, kind,
                               hash_content, hash_audio, force)
        if action is Action.SKIP:
            return action

        content_hash = NOT_CALCULATED
        audio_hash = NOT_CALCULATED
        write_content, write_audio = hash_content, hash_audio

        if kind is EntryKind.SYMLINK:
            # Links are recorded, never hashed or followed
            content_hash = audio_hash = NOT_APPLICABLE
            write_content = write_audio = True
        elif st.st_size == 0:
            if hash_content:
                content_hash = ZERO_BYTE_FILE
            if hash_audio:
                audio_hash = ZERO_BYTE_FILE
        elif hash_content or hash_audio:
            if hash_content:
                content_hash = self.oracle.content_fingerprint(path)
                metrics.inc('files_hashed_total')
            if hash_audio:
                audio_hash = self.oracle.audio_fingerprint(path)
            # Record the metadata the fingerprints were taken from
            st = os.lstat(path)

        candidate = IndexEntry.from_stat(path, st, time.time(),
                                         content_hash=content_hash,
                                         audio_hash=audio_hash,
                                         kind=kind)
        row = merge_entry(stored, candidate, write_content, write_audio,
                          link_count=st.st_nlink)
        self.db.save_entry(row)

        logger.debug(f"{action.name} {path} (content={row.content_hash}, audio={row.audio_hash})")
        return action
