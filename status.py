"""
Status display for dupelink
"""

import logging
from datetime import datetime

import humanize
from tabulate import tabulate

from constants import SENTINELS

logger = logging.getLogger('dupelink.status')

KIND_LABELS = {
    'F': 'Regular files',
    'H': 'Hardlinked files',
    'L': 'Symlinks',
    'D': 'Directories',
}


class StatusReport:
    """Prints a summary of an index database

    Args:
        db: Connected IndexDatabase
        config: Loaded configuration dict
    """

    def __init__(self, db, config):
        self.db = db
        self.binary_units = config.get('size_unit_type', 'decimal') == 'binary'
        self.top_groups = int(config.get('status_top_groups', 10))

    def format_size(self, size):
        return humanize.naturalsize(size, binary=self.binary_units)

    def display(self):
        stats = self.db.get_statistics()
        total = stats['total_files']

        print("\n" + "=" * 80)
        print(f"dupelink Status Report - {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        print("=" * 80)

        print("\n📁 INDEX")
        print(f"  Database: {self.db.db_path}")
        print(f"  Schema version: {stats['db_version']}")
        last_scan = self.db.get_metadata('last_scan_time')
        if last_scan:
            scanned_at = datetime.fromtimestamp(int(last_scan))
            root = self.db.get_metadata('last_scan_root', 'unknown')
            print(f"  Last scan: {humanize.naturaltime(scanned_at)} ({root})")
        else:
            print("  Last scan: never")

        print("\n📊 FILE STATISTICS")
        print(f"  Entries tracked: {total:,}")
        for kind, count in stats['kinds'].items():
            print(f"  {KIND_LABELS.get(kind, kind)}: {count:,}")

        for kind in ('content', 'audio'):
            hashed = stats[f'{kind}_hashed']
            progress = (hashed / total * 100) if total else 0
            print(f"  {kind.capitalize()} fingerprints: {hashed:,} ({progress:.1f}%)")
            sentinels = stats[f'{kind}_sentinels']
            for value in SENTINELS:
                if sentinels.get(value):
                    print(f"    {value}: {sentinels[value]:,}")

        print("\n♻️  DUPLICATES (by content)")
        print(f"  Duplicate groups: {stats['duplicate_groups']:,}")
        print(f"  Files in groups: {stats['duplicate_files']:,}")
        print(f"  Space reclaimable by linking: {self.format_size(stats['space_saveable'])}")

        top_duplicates = self.db.get_top_duplicate_groups(self.top_groups)
        if top_duplicates:
            print("\n🏆 TOP DUPLICATE GROUPS (by reclaimable space)")
            table_data = []
            for i, dup in enumerate(top_duplicates, 1):
                table_data.append([
                    i,
                    dup['content_hash'][:12] + "...",
                    self.format_size(dup['size']),
                    dup['file_count'],
                    dup['linked_count'],
                    self.format_size(dup['waste']),
                ])

            headers = ['#', 'Hash', 'File Size', 'Count', 'Linked', 'Reclaimable']
            print(tabulate(table_data, headers=headers, tablefmt='simple'))

        print("\n" + "=" * 80)
