"""
Configuration loading for dupelink

Settings live in a TOML file, by default dupelink.toml beside the database.
A commented default file is written on first use.
"""

import logging
from pathlib import Path

try:
    import tomli as toml  # Python < 3.11 (for reading)
except ImportError:
    import tomllib as toml  # Python >= 3.11 (for reading)
import tomlkit  # For writing TOML with comments

from constants import BATCH_SIZE

logger = logging.getLogger('dupelink.config')

CONFIG_FILENAME = 'dupelink.toml'

HASH_ALGORITHMS = ('md5', 'xxh64', 'xxh128')

DEFAULT_CONFIG = {
    'batch_size': str(BATCH_SIZE),  # Entries per scan transaction
    'content_hash_algorithm': 'md5',  # 'md5', 'xxh64' or 'xxh128'
    'hash_chunk_size': '1048576',  # Read size when hashing (1MB)
    'ffprobe_path': 'ffprobe',
    'ffmpeg_path': 'ffmpeg',
    'default_extensions': '',  # Used by scan when -e is not given, '' = all
    'size_unit_type': 'decimal',  # 'decimal' (KB/MB/GB), 'binary' (KiB/MiB/GiB)
    'status_top_groups': '10',  # Rows in the status duplicate table
}


def default_config_path(db_path):
    """Config file location used when --config is not given."""
    return Path(db_path).resolve().parent / CONFIG_FILENAME


def load_config(config_path, create_missing=True):
    """Load configuration from a TOML file.

    Values are returned as strings (lists are kept as lists) and converted
    where they are used. Missing keys take their defaults.
    """
    config_path = Path(config_path)

    if not config_path.exists():
        if create_missing:
            logger.info("No config found, creating default TOML config")
            create_default_config(config_path)
        return DEFAULT_CONFIG.copy()

    try:
        logger.debug(f"Loading TOML config from {config_path}")
        with open(config_path, 'rb') as f:
            config_data = toml.load(f)
    except (OSError, toml.TOMLDecodeError) as e:
        logger.error(f"Error loading TOML config: {e}")
        logger.info("Falling back to defaults")
        return DEFAULT_CONFIG.copy()

    config = {}
    for key, value in DEFAULT_CONFIG.items():
        toml_value = config_data.get(key, value)
        if isinstance(toml_value, list):
            config[key] = toml_value
        else:
            config[key] = str(toml_value)

    unknown = sorted(set(config_data) - set(DEFAULT_CONFIG))
    if unknown:
        logger.warning(f"Ignoring unknown config keys: {', '.join(unknown)}")

    algorithm = config['content_hash_algorithm'].lower()
    if algorithm not in HASH_ALGORITHMS:
        logger.warning(f"Unknown content_hash_algorithm '{algorithm}', using md5")
        algorithm = 'md5'
    config['content_hash_algorithm'] = algorithm

    if int(config['batch_size']) < 1:
        logger.warning("batch_size must be at least 1, using default")
        config['batch_size'] = DEFAULT_CONFIG['batch_size']

    return config


def create_default_config(config_path):
    """Create a default TOML configuration file with comments"""
    config_path = Path(config_path)
    doc = tomlkit.document()

    doc.add(tomlkit.comment("dupelink configuration file"))
    doc.add(tomlkit.nl())

    doc.add(tomlkit.comment("=== Scanning ==="))
    doc.add(tomlkit.nl())

    doc.add(tomlkit.comment("Number of index writes per transaction during a scan"))
    doc.add(tomlkit.comment("At most this many entries are lost if a scan is interrupted"))
    doc["batch_size"] = BATCH_SIZE
    doc.add(tomlkit.nl())

    doc.add(tomlkit.comment("Digest used for content fingerprints"))
    doc.add(tomlkit.comment("Options: 'md5', 'xxh64', 'xxh128'"))
    doc.add(tomlkit.comment("Changing this on an existing index requires a forced rescan (-f -H)"))
    doc["content_hash_algorithm"] = "md5"
    doc.add(tomlkit.nl())

    doc.add(tomlkit.comment("Read size in bytes when hashing file content"))
    doc["hash_chunk_size"] = 1048576
    doc.add(tomlkit.nl())

    doc.add(tomlkit.comment("Extensions indexed when -e is not given (comma separated, empty = all)"))
    doc["default_extensions"] = ""
    doc.add(tomlkit.nl())

    doc.add(tomlkit.comment("=== Audio fingerprints ==="))
    doc.add(tomlkit.nl())

    doc.add(tomlkit.comment("Tools used to fingerprint the audio stream of media files"))
    doc["ffprobe_path"] = "ffprobe"
    doc["ffmpeg_path"] = "ffmpeg"
    doc.add(tomlkit.nl())

    doc.add(tomlkit.comment("=== Display ==="))
    doc.add(tomlkit.nl())

    doc.add(tomlkit.comment("Size unit type for human-readable sizes"))
    doc.add(tomlkit.comment("Options: 'decimal' (KB/MB/GB), 'binary' (KiB/MiB/GiB)"))
    doc["size_unit_type"] = "decimal"
    doc.add(tomlkit.nl())

    doc.add(tomlkit.comment("Number of duplicate groups listed by the status command"))
    doc["status_top_groups"] = 10

    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, 'w') as f:
            f.write(tomlkit.dumps(doc))
        logger.info(f"Created default TOML config at {config_path}")
    except OSError as e:
        logger.error(f"Error creating TOML config: {e}")
