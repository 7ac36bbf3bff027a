"""Read fstab entries and rewrite the new root's copy."""
from typing import Iterable, Optional

from .model import FstabEntry
from .sysops import SystemOps

FSTAB_PATH = "/etc/fstab"

REMOVAL_NOTE = (
    "#the original root mount has been removed by overlayRoot.sh",
    "#this is only a temporary modification, the original fstab",
    "#stored on the disk can be found in /ro/etc/fstab",
)


def _normalize_mountpoint(path: str) -> str:
    path = path.replace("\\040", " ")
    if path != "/":
        path = path.rstrip("/") or "/"
    return path


def parse_line(line: str) -> Optional[FstabEntry]:
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None
    parts = stripped.split()
    if len(parts) < 2:
        return None
    defaults = ["auto", "defaults", "0", "0"]
    rest = parts[2:6] + defaults[len(parts[2:6]):]
    return FstabEntry(parts[0], _normalize_mountpoint(parts[1]), *rest)


def entries(text: str) -> Iterable[FstabEntry]:
    for line in text.splitlines():
        entry = parse_line(line)
        if entry is not None:
            yield entry


def find_entry(text: str, mountpoint: str) -> Optional[FstabEntry]:
    wanted = _normalize_mountpoint(mountpoint)
    for entry in entries(text):
        if entry.mountpoint == wanted:
            return entry
    return None


def read_fstab_entry(mountpoint: str, ops: SystemOps, path: str = FSTAB_PATH) -> Optional[FstabEntry]:
    try:
        text = ops.read_text(path)
    except FileNotFoundError:
        return None
    return find_entry(text, mountpoint)


def without_root(text: str) -> str:
    """Drop the ``/`` entry and append the explanatory comment block."""

    kept = []
    for line in text.splitlines():
        entry = parse_line(line)
        if entry is not None and entry.mountpoint == "/":
            continue
        kept.append(line)
    kept.extend(REMOVAL_NOTE)
    return "\n".join(kept) + "\n"


def write_new_root_fstab(lower_root: str, new_root: str, ops: SystemOps) -> str:
    """Write ``new_root``'s fstab from the read-only original under ``lower_root``.

    Only the copy inside the overlay changes; the original stays untouched
    and is reachable as ``/ro/etc/fstab`` once the root is switched.
    """

    src = lower_root.rstrip("/") + FSTAB_PATH
    dst = new_root.rstrip("/") + FSTAB_PATH
    try:
        text = ops.read_text(src)
    except FileNotFoundError:
        text = ""
    ops.write_text(dst, without_root(text))
    return dst
