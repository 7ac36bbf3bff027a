from __future__ import annotations

import os
from pathlib import Path

_DEFAULT_CONF = "/etc/overlayRoot.conf"

STAGING_DIR = "/mnt"
LOWER_DIR = "/mnt/lower"
NEWROOT_DIR = "/mnt/newroot"
STAGING_LOG = "/mnt/overlayRoot.log"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def config_path() -> str:
    """Return the location of the override file.

    ``OVERLAYROOT_CONF`` points somewhere else, which is mostly useful when
    exercising the pipeline outside of a real boot.  Unset means the usual
    ``/etc/overlayRoot.conf``.
    """

    override = os.environ.get("OVERLAYROOT_CONF")
    if override:
        return _expand(override)
    return _DEFAULT_CONF


def rw_dir(rw_name: str) -> str:
    return str(Path(STAGING_DIR) / rw_name)


def inside(root: str, path: str) -> str:
    """Join an absolute in-system ``path`` below ``root``."""

    return str(Path(root) / path.lstrip("/"))
