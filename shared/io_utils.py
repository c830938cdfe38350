"""Shared I/O utilities: crash-safe JSON persistence for checkpoints and results."""

import hashlib
import json
import logging
import os
import shutil
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


def _backup_path(filepath: Path) -> Path:
    return filepath.with_suffix(".json.bak")


def safe_json_read(filepath: Path, default=None):
    """Read a JSON file, recovering from the ``.json.bak`` copy if needed.

    Args:
        filepath: Path to the JSON file.
        default: Value returned when neither the file nor its backup parse.

    Returns:
        Parsed JSON data, or *default*.
    """
    for candidate in (filepath, _backup_path(filepath)):
        try:
            with open(candidate, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, FileNotFoundError, OSError):
            continue
        if candidate != filepath:
            logger.warning(
                "Recovered JSON from backup %s (primary %s was unreadable)",
                candidate,
                filepath,
            )
        return data

    return default


def atomic_json_write(filepath: Path, data, *, mkdir: bool = True):
    """Write JSON via a temp file and ``os.replace``.

    The previous version of *filepath* is kept as ``.json.bak`` so that
    :func:`safe_json_read` can fall back to it after an interrupted run.

    Args:
        filepath: Destination file path.
        data: JSON-serialisable data (dates are written with ``str``).
        mkdir: Create parent directories as needed.
    """
    filepath = Path(filepath)
    if mkdir:
        filepath.parent.mkdir(parents=True, exist_ok=True)

    if filepath.exists():
        try:
            shutil.copy2(filepath, _backup_path(filepath))
        except OSError as e:
            logger.debug("Could not back up %s: %s", filepath, e)

    fd, tmp_path = tempfile.mkstemp(dir=filepath.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(tmp_path, filepath)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def config_hash(config) -> str:
    """Short SHA-256 fingerprint (12 hex chars) of a JSON-serialisable config."""
    payload = json.dumps(config, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:12]
