"""Writable medium validation and destructive re-initialisation."""
from __future__ import annotations

from typing import Optional

from .config import Config
from .devices import await_device, parent_disk, resolve_specifier
from .errors import FormatFailure, PartitionMismatch
from .executil import trace
from .model import DeviceSpecifier, PartitionLayout
from .outcome import Outcome
from .sysops import OPS_ERRORS, SystemOps

PARTITION_TIMEOUT = 10
LATE_CANDIDATE_TIMEOUT = 5


def partition_path(disk: str, number: int) -> str:
    # mmcblk0 / nvme0n1 need a ``p`` before the partition index, sda does not
    suffix = "p" if disk[-1:].isdigit() else ""
    return f"{disk}{suffix}{number}"


def parse_parted(device: str, text: str) -> PartitionLayout:
    """Read ``parted -m ... print`` output.

    The partition count is the number of the last listed partition, so a
    lone partition 2 does not pass for a single-partition layout.
    """

    count, fstype = 0, ""
    for raw in (text or "").splitlines():
        fields = raw.strip().rstrip(";").split(":")
        if not fields or not fields[0].isdigit():
            continue
        count = int(fields[0])
        fstype = fields[4] if len(fields) > 4 else ""
    return PartitionLayout(device=device, partition_count=count, last_partition_fstype=fstype)


def read_layout(device: str, ops: SystemOps) -> PartitionLayout:
    try:
        text = ops.partition_table(device)
    except OPS_ERRORS as exc:
        # parted refuses media without a partition table
        trace("partitioning.read_layout.error", device=device, error=str(exc))
        return PartitionLayout(device=device, partition_count=0)
    return parse_parted(device, text)


def recover_writable_medium(
    device: str,
    fstype: str,
    outcome: Outcome,
    ops: SystemOps,
    label: Optional[str] = None,
) -> bool:
    """Wipe ``device`` down to one primary partition and format it.

    Destroys whatever the medium held.  Only ever called for the writable
    layer's medium, never for the disk backing the read-only root.
    """

    outcome.info(f"Removing existing partitions from {device} and creating one linux partition.")
    try:
        ops.write_single_partition_table(device)
    except OPS_ERRORS as exc:
        outcome.fail(FormatFailure, f"Could not repartition {device}: {exc}")
        return False
    ops.reread_partitions(device)
    part = partition_path(device, 1)
    if not await_device(part, PARTITION_TIMEOUT, ops):
        outcome.fail(FormatFailure, f"{part} did not appear after repartitioning {device}")
        return False
    outcome.info(f"Created one partition on {device}. Formatting {part} as {fstype}.")
    try:
        ops.mkfs(part, fstype, label)
    except OPS_ERRORS as exc:
        outcome.fail(FormatFailure, f"mkfs.{fstype} failed on {part}: {exc}")
        return False
    layout = read_layout(device, ops)
    if not layout.matches(fstype):
        outcome.fail(
            FormatFailure,
            f"{device} still has {layout.partition_count} partitions "
            f"({layout.last_partition_fstype or 'unknown'}) after recovery",
        )
        return False
    outcome.info(f"Format done on {part}.")
    return True


def ensure_single_partition(
    device: str,
    fstype: str,
    outcome: Outcome,
    ops: SystemOps,
    *,
    label: Optional[str] = None,
    recover: bool = True,
) -> bool:
    layout = read_layout(device, ops)
    outcome.info(
        f"Device {device} has {layout.partition_count} partitions, "
        f"last is of type: {layout.last_partition_fstype or 'none'}."
    )
    if layout.matches(fstype):
        return True
    outcome.info(
        f"Device {device} must contain exactly 1 partition of type {fstype}.",
        kind=PartitionMismatch,
    )
    if not recover:
        outcome.warn(PartitionMismatch, f"Not recreating {device}: RECOVER_RW_MEDIA is off")
        return False
    outcome.info(f"RECREATING {device}.")
    return recover_writable_medium(device, fstype, outcome, ops, label=label)


def _quick_resolve(specifiers, ops: SystemOps) -> Optional[str]:
    for text in specifiers:
        if not text:
            continue
        try:
            spec = DeviceSpecifier.parse(text)
        except ValueError:
            continue
        path = resolve_specifier(spec, ops)
        if path and ops.exists(path):
            return path
    return None


def _first_present_candidate(config: Config, outcome: Outcome, ops: SystemOps) -> Optional[str]:
    for idx, disk in enumerate(config.rw_candidates):
        timeout = config.rw_timeout if idx == 0 else LATE_CANDIDATE_TIMEOUT
        outcome.info(f"Checking USB Device {disk}")
        if await_device(disk, timeout, ops):
            outcome.info(f"{disk} appeared")
            return disk
        outcome.info(f"{disk} did not appear after {timeout} seconds")
    return None


def prepare_writable_medium(
    specifier: Optional[str],
    config: Config,
    outcome: Outcome,
    ops: SystemOps,
    protected: Optional[str] = None,
) -> Optional[str]:
    """Make sure the disk behind the writable layer is usable; return that disk.

    The fstab specifier (or ``SECONDARY_RW_RESOLUTION``) decides which disk
    that is.  ``RW_CANDIDATES`` only say what to wait for while removable
    media enumerate; a candidate is validated on its own account only when
    nothing resolves, which is the case for blank or foreign media.  The disk
    holding ``protected`` (the read-only root) is never touched.
    """

    specifiers = (specifier, config.secondary_rw_resolution)
    resolved = _quick_resolve(specifiers, ops)
    if resolved is None:
        candidate = _first_present_candidate(config, outcome, ops)
        if candidate is None:
            return None
        resolved = _quick_resolve(specifiers, ops)
        disk = parent_disk(resolved) if resolved else candidate
    else:
        disk = parent_disk(resolved)

    if protected and parent_disk(protected) == disk:
        outcome.info(f"{disk} also holds the root filesystem; leaving its partitions alone")
        return None

    ready = ensure_single_partition(
        disk,
        config.rw_fstype,
        outcome,
        ops,
        label=config.rw_name,
        recover=config.recover_rw_media,
    )
    if not ready:
        return None
    part = partition_path(disk, 1)
    if not await_device(part, config.rw_timeout, ops):
        outcome.warn(PartitionMismatch, f"{part} did not appear after {config.rw_timeout} seconds")
        return None
    return disk
