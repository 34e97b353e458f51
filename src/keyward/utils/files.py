"""File helpers shared by the on-disk stores."""

import json
import os
import tempfile
from typing import Any


def atomic_write_bytes(path: str, data: bytes, mode: int = 0o600) -> None:
    """Write ``data`` to ``path`` through a temp file and ``os.replace``.

    Readers see either the old file or the complete new one, never a
    truncated write.
    """
    target_dir = os.path.dirname(path) or "."
    os.makedirs(target_dir, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=target_dir, suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(temp_path, mode)
        os.replace(temp_path, path)
    except BaseException:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def atomic_write_json(path: str, payload: Any, mode: int = 0o600) -> None:
    """Serialize ``payload`` as indented JSON and write it atomically."""
    atomic_write_bytes(path, json.dumps(payload, indent=2).encode("utf-8"), mode)
