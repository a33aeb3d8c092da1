"""Tests for incremental directory scanning."""

import hashlib
import os
import sqlite3

import pytest

import metrics
import scanner as scanner_module
from constants import NOT_APPLICABLE, NOT_CALCULATED, ZERO_BYTE_FILE
from records import EntryKind
from scanner import DirectoryScanner


@pytest.fixture
def sample_tree(tree):
    """A small tree: two identical files, one unique file, an empty file, a subdirectory."""
    (tree / "a.txt").write_bytes(b"same content")
    (tree / "b.txt").write_bytes(b"same content")
    (tree / "c.dat").write_bytes(b"different")
    (tree / "empty.txt").write_bytes(b"")
    sub = tree / "sub"
    sub.mkdir()
    (sub / "d.txt").write_bytes(b"nested")
    return tree


def rows(db):
    return {entry.path: entry for entry in (
        db.get_entry(row['filepath']) for row in db.execute("SELECT filepath FROM files"))}


class TestScan:
    """Test scanning and change detection."""

    def test_first_scan_inserts_top_level_files(self, db, oracle, sample_tree):
        result = DirectoryScanner(db, oracle).scan(str(sample_tree))

        assert result.inserted == 4
        assert result.updated == 0
        assert result.directories == 1
        indexed = rows(db)
        assert set(indexed) == {str(sample_tree / name)
                                for name in ("a.txt", "b.txt", "c.dat", "empty.txt")}
        assert all(e.content_hash == NOT_CALCULATED for e in indexed.values())
        assert oracle.content_calls == []

    def test_recursive_scan_descends(self, db, oracle, sample_tree):
        result = DirectoryScanner(db, oracle).scan(str(sample_tree), recurse=True)

        assert result.inserted == 5
        assert result.directories == 2
        assert db.get_entry(str(sample_tree / "sub" / "d.txt")) is not None

    def test_directories_are_not_recorded(self, db, oracle, sample_tree):
        DirectoryScanner(db, oracle).scan(str(sample_tree), recurse=True)
        assert db.get_entry(str(sample_tree / "sub")) is None

    def test_rescan_is_idempotent(self, db, oracle, sample_tree):
        """An unchanged tree scanned twice with the same flags writes nothing the second time."""
        scanner = DirectoryScanner(db, oracle)
        scanner.scan(str(sample_tree), recurse=True, hash_content=True)
        hashed = len(oracle.content_calls)

        result = scanner.scan(str(sample_tree), recurse=True, hash_content=True)

        assert result.written == 0
        assert result.skipped == 5
        assert len(oracle.content_calls) == hashed

    def test_hashing_completes_unhashed_rows(self, db, oracle, sample_tree):
        """Rows indexed without hashing get digests once hashing is requested."""
        scanner = DirectoryScanner(db, oracle)
        scanner.scan(str(sample_tree))

        result = scanner.scan(str(sample_tree), hash_content=True)

        assert result.updated == 4
        assert result.skipped == 0
        indexed = rows(db)
        assert indexed[str(sample_tree / "a.txt")].content_hash == hashlib.md5(b"same content").hexdigest()
        assert indexed[str(sample_tree / "empty.txt")].content_hash == ZERO_BYTE_FILE
        assert all(e.content_hash != NOT_CALCULATED for e in indexed.values())

    def test_zero_byte_files_are_not_hashed(self, db, oracle, sample_tree):
        DirectoryScanner(db, oracle).scan(str(sample_tree), hash_content=True, hash_audio=True)

        entry = db.get_entry(str(sample_tree / "empty.txt"))
        assert entry.content_hash == ZERO_BYTE_FILE
        assert entry.audio_hash == ZERO_BYTE_FILE
        assert str(sample_tree / "empty.txt") not in oracle.content_calls
        assert str(sample_tree / "empty.txt") not in oracle.audio_calls

    def test_audio_rescan_keeps_content_fingerprint(self, db, oracle_factory, sample_tree):
        """An audio-only rescan never alters a stored content fingerprint."""
        oracle = oracle_factory(audio={"a.txt": "feedface"})
        scanner = DirectoryScanner(db, oracle)
        scanner.scan(str(sample_tree), hash_content=True)
        before = {path: e.content_hash for path, e in rows(db).items()}

        result = scanner.scan(str(sample_tree), hash_audio=True)

        after = rows(db)
        assert result.updated == 4
        assert {path: e.content_hash for path, e in after.items()} == before
        assert after[str(sample_tree / "a.txt")].audio_hash == "feedface"
        assert after[str(sample_tree / "b.txt")].audio_hash == NOT_APPLICABLE

    def test_modified_file_is_rehashed(self, db, oracle, sample_tree):
        scanner = DirectoryScanner(db, oracle)
        scanner.scan(str(sample_tree), hash_content=True)
        row_id = db.get_entry(str(sample_tree / "c.dat")).id

        target = sample_tree / "c.dat"
        target.write_bytes(b"changed and longer")
        st = target.stat()
        os.utime(target, (st.st_atime, st.st_mtime + 10))

        result = scanner.scan(str(sample_tree), hash_content=True)

        assert result.updated == 1
        entry = db.get_entry(str(target))
        assert entry.id == row_id
        assert entry.content_hash == hashlib.md5(b"changed and longer").hexdigest()
        assert entry.size == len(b"changed and longer")

    def test_force_rewrites_everything(self, db, oracle, sample_tree):
        scanner = DirectoryScanner(db, oracle)
        scanner.scan(str(sample_tree))
        result = scanner.scan(str(sample_tree), force=True)
        assert result.updated == 4
        assert result.skipped == 0

    def test_extension_filter(self, db, oracle, sample_tree):
        (sample_tree / "LOUD.TXT").write_bytes(b"upper")

        result = DirectoryScanner(db, oracle).scan(str(sample_tree), extensions=frozenset({'txt'}))

        assert result.inserted == 4
        assert db.get_entry(str(sample_tree / "c.dat")) is None
        assert db.get_entry(str(sample_tree / "LOUD.TXT")) is not None

    def test_symlink_is_recorded_not_followed(self, db, oracle, sample_tree):
        link = sample_tree / "link.txt"
        link.symlink_to(sample_tree / "a.txt")

        DirectoryScanner(db, oracle).scan(str(sample_tree), hash_content=True)

        entry = db.get_entry(str(link))
        assert entry.kind is EntryKind.SYMLINK
        assert entry.content_hash == NOT_APPLICABLE
        assert entry.audio_hash == NOT_APPLICABLE
        assert str(link) not in oracle.content_calls

    def test_symlinked_directory_is_not_followed(self, db, oracle, sample_tree):
        (sample_tree / "loop").symlink_to(sample_tree)

        result = DirectoryScanner(db, oracle).scan(str(sample_tree), recurse=True)

        assert result.directories == 2
        assert db.get_entry(str(sample_tree / "loop")).kind is EntryKind.SYMLINK

    def test_records_last_scan(self, db, oracle, sample_tree):
        DirectoryScanner(db, oracle).scan(str(sample_tree))
        assert db.get_metadata('last_scan_root') == str(sample_tree)
        assert int(db.get_metadata('last_scan_time')) > 0
        assert metrics.get_metrics().get_gauge('last_scan_duration_seconds') >= 0


class TestScanFailures:
    """Test recoverable failures during a scan."""

    def test_hash_failure_skips_only_that_file(self, db, oracle_factory, sample_tree):
        oracle = oracle_factory(failures={"b.txt"})

        result = DirectoryScanner(db, oracle).scan(str(sample_tree), hash_content=True)

        assert result.failed == 1
        assert result.inserted == 3
        assert db.get_entry(str(sample_tree / "b.txt")) is None
        assert metrics.get_metrics().get_counter('hash_failures_total') == 1

    def test_unreadable_directory_is_skipped(self, db, oracle, sample_tree, monkeypatch):
        real_scandir = os.scandir
        blocked = str(sample_tree / "sub")

        def scandir(path):
            if str(path) == blocked:
                raise PermissionError(13, "Permission denied", blocked)
            return real_scandir(path)

        monkeypatch.setattr(scanner_module.os, "scandir", scandir)

        result = DirectoryScanner(db, oracle).scan(str(sample_tree), recurse=True)

        assert result.inserted == 4
        assert db.get_entry(str(sample_tree / "sub" / "d.txt")) is None

    def test_writes_are_committed_in_batches(self, db, oracle, sample_tree, monkeypatch):
        commits = []
        real_commit = db.commit_transaction

        def commit():
            commits.append(db.execute("SELECT COUNT(*) FROM files").fetchone()[0])
            real_commit()

        monkeypatch.setattr(db, "commit_transaction", commit)

        DirectoryScanner(db, oracle, batch_size=2).scan(str(sample_tree), recurse=True)

        # Two full batches of two, then the final commit
        assert commits == [2, 4, 5]

    def test_undecodable_name_skips_only_that_file(self, db, oracle, tree):
        """A name that is not valid UTF-8 is a per-file failure, not a fatal one."""
        (tree / "good.txt").write_bytes(b"fine")
        (tree / os.fsdecode(b"caf\xe9.txt")).write_bytes(b"legacy name")

        result = DirectoryScanner(db, oracle).scan(str(tree), hash_content=True)

        assert result.failed == 1
        assert result.inserted == 1
        assert db.get_entry(str(tree / "good.txt")).content_hash == hashlib.md5(b"fine").hexdigest()

    @pytest.mark.skipif(not hasattr(os, "mkfifo"), reason="needs os.mkfifo")
    def test_special_files_are_not_indexed(self, db, oracle, tree):
        (tree / "a.txt").write_bytes(b"regular")
        os.mkfifo(tree / "pipe.txt")

        result = DirectoryScanner(db, oracle).scan(str(tree), hash_content=True)

        assert result.inserted == 1
        assert result.failed == 0
        assert db.get_entry(str(tree / "pipe.txt")) is None
        assert str(tree / "pipe.txt") not in oracle.content_calls

    def test_write_failure_rolls_back_open_batch(self, db, oracle, sample_tree, monkeypatch):
        """Committed batches survive a failed write; the open batch does not."""
        real_save = db.save_entry
        saves = []

        def save_entry(entry):
            saves.append(entry.path)
            if len(saves) == 3:
                raise sqlite3.OperationalError("disk I/O error")
            return real_save(entry)

        monkeypatch.setattr(db, "save_entry", save_entry)

        with pytest.raises(sqlite3.OperationalError):
            DirectoryScanner(db, oracle, batch_size=2).scan(str(sample_tree), recurse=True)

        indexed = [row['filepath'] for row in db.execute("SELECT filepath FROM files")]
        assert sorted(indexed) == sorted(saves[:2])
        assert db.get_metadata('last_scan_time') is None
