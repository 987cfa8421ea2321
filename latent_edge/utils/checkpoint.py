"""
Utility: atomic checkpoint files

Checkpoints are written to a temporary file in the destination directory,
fsynced, and moved into place with ``os.replace``.  A reader therefore sees
either the previous complete checkpoint or the new complete one, never a
partially written file, even if training is interrupted mid-write.

Usage:
    from latent_edge.utils.checkpoint import write_atomic, read_checkpoint
    write_atomic("checkpoints/encoder.pt", encoder.state_bytes())
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]


def write_atomic(path: PathLike, data: bytes) -> Path:
    """Atomically replace ``path`` with ``data``."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
    logger.debug("Wrote checkpoint %s (%d bytes)", target, len(data))
    return target


def read_checkpoint(path: PathLike) -> Optional[bytes]:
    """Return checkpoint bytes, or None when no checkpoint exists yet."""
    target = Path(path)
    if not target.exists():
        return None
    return target.read_bytes()
