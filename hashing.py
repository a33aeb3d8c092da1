"""
Fingerprint computation for dupelink

Content fingerprints are digests of the whole file (md5 by default, xxHash
optionally). Audio fingerprints are md5 digests of the first audio stream's
packets, extracted without re-encoding by ffmpeg, so the same recording in
differently tagged containers fingerprints identically.
"""

import hashlib
import json
import logging
import os
import shutil
import subprocess

import xxhash

from constants import BAD_AUDIO, NOT_APPLICABLE

logger = logging.getLogger('dupelink.hashing')

CONTENT_HASHERS = {
    'md5': hashlib.md5,
    'xxh64': xxhash.xxh64,
    'xxh128': xxhash.xxh128,
}


class HashError(Exception):
    """A fingerprint could not be computed for a file"""

    def __init__(self, path, reason):
        super().__init__(f"{path}: {reason}")
        self.path = str(path)
        self.reason = reason


class ToolMissingError(Exception):
    """An external program needed for fingerprinting is not installed"""
    pass


class HashOracle:
    """Computes content and audio fingerprints for files.

    Args:
        algorithm: Content digest name, one of CONTENT_HASHERS
        chunk_size: Bytes read per iteration when hashing content
        ffprobe_path: ffprobe executable used to find audio streams
        ffmpeg_path: ffmpeg executable used to extract audio packets
        runner: subprocess.run compatible callable
    """

    def __init__(self, algorithm='md5', chunk_size=1024 * 1024,
                 ffprobe_path='ffprobe', ffmpeg_path='ffmpeg', runner=subprocess.run):
        if algorithm not in CONTENT_HASHERS:
            raise ValueError(f"Unknown content hash algorithm: {algorithm}")
        self.algorithm = algorithm
        self.chunk_size = chunk_size
        self.ffprobe_path = ffprobe_path
        self.ffmpeg_path = ffmpeg_path
        self.runner = runner

    @classmethod
    def from_config(cls, config):
        return cls(
            algorithm=config.get('content_hash_algorithm', 'md5'),
            chunk_size=int(config.get('hash_chunk_size', 1024 * 1024)),
            ffprobe_path=config.get('ffprobe_path', 'ffprobe'),
            ffmpeg_path=config.get('ffmpeg_path', 'ffmpeg'),
        )

    def ensure_audio_tools(self):
        """Check that ffprobe and ffmpeg can be found"""
        missing = [tool for tool in (self.ffprobe_path, self.ffmpeg_path)
                   if not shutil.which(tool)]
        if missing:
            raise ToolMissingError(f"Missing required tools: {', '.join(missing)}")
        logger.debug("Audio fingerprint tools found")

    # ==========================================================================
    # CONTENT FINGERPRINTS
    # ==========================================================================

    def content_fingerprint(self, filepath):
        """Hash a file's content, detecting changes made while hashing.

        Raises:
            HashError: if the file cannot be read or changed during hashing
        """
        try:
            stat_before = os.stat(filepath)
        except OSError as e:
            raise HashError(filepath, f"cannot stat before hashing: {e}") from e

        hasher = CONTENT_HASHERS[self.algorithm]()
        try:
            with open(filepath, 'rb') as f:
                while chunk := f.read(self.chunk_size):
                    hasher.update(chunk)
        except OSError as e:
            raise HashError(filepath, f"error reading file: {e}") from e

        try:
            stat_after = os.stat(filepath)
        except OSError as e:
            raise HashError(filepath, f"cannot verify file after hashing: {e}") from e

        if (stat_after.st_mtime != stat_before.st_mtime or
                stat_after.st_size != stat_before.st_size):
            raise HashError(filepath, "file changed during hashing")

        return hasher.hexdigest()

    # ==========================================================================
    # AUDIO FINGERPRINTS
    # ==========================================================================

    def _run_command(self, cmd):
        """Run a command and return the completed process"""
        logger.debug(f"Running command: {' '.join(cmd)}")
        try:
            return self.runner(cmd, capture_output=True, text=True, errors='replace', check=False)
        except FileNotFoundError as e:
            raise ToolMissingError(f"Cannot run {cmd[0]}: {e}") from e

    def has_audio_stream(self, filepath):
        """Return True/False for audio presence, or None if the file is not media"""
        result = self._run_command([
            self.ffprobe_path, '-v', 'error',
            '-select_streams', 'a',
            '-show_entries', 'stream=index',
            '-of', 'json',
            str(filepath),
        ])
        if result.returncode != 0:
            logger.debug(f"ffprobe could not read {filepath}: {result.stderr.strip()}")
            return None
        try:
            streams = json.loads(result.stdout or '{}').get('streams', [])
        except json.JSONDecodeError:
            logger.debug(f"Unparseable ffprobe output for {filepath}")
            return None
        return len(streams) > 0

    def audio_fingerprint(self, filepath):
        """Hash the first audio stream of a media file.

        Returns:
            Hex digest, NOT_APPLICABLE when the file has no audio stream (or
            is not a media file), BAD_AUDIO when the stream cannot be read
        """
        has_audio = self.has_audio_stream(filepath)
        if not has_audio:
            return NOT_APPLICABLE

        result = self._run_command([
            self.ffmpeg_path, '-v', 'error', '-nostdin',
            '-i', str(filepath),
            '-map', '0:a:0',
            '-c', 'copy',
            '-f', 'md5', '-',
        ])
        if result.returncode != 0:
            logger.warning(f"Error reading audio stream of {filepath}: {result.stderr.strip()}")
            return BAD_AUDIO

        for line in result.stdout.splitlines():
            if line.startswith('MD5='):
                return line[4:].strip().lower()

        logger.warning(f"No audio digest produced for {filepath}")
        return BAD_AUDIO
