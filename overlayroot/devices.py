"""Device resolution: fstab specifiers to block device paths, with polling."""
from __future__ import annotations

import re
from typing import Callable, Optional

from .errors import DeviceAbsent, DeviceUnresolved
from .executil import trace
from .model import DeviceSpecifier, ResolvedDevice
from .outcome import Outcome
from .sysops import OPS_ERRORS, SystemOps

POLL_INTERVAL = 1.0


def _poll(predicate: Callable[[], bool], timeout: float, ops: SystemOps) -> bool:
    """Check ``predicate`` once per second until it holds or ``timeout`` passes."""

    deadline = ops.monotonic() + max(0.0, timeout)
    while True:
        if predicate():
            return True
        remaining = deadline - ops.monotonic()
        if remaining <= 0:
            return False
        ops.sleep(min(POLL_INTERVAL, remaining))


def await_device(path: str, timeout: float, ops: SystemOps) -> bool:
    """Return ``True`` as soon as ``path`` exists, ``False`` after ``timeout`` seconds."""

    if not path:
        return False
    trace("devices.await.start", path=path, timeout=timeout)
    present = _poll(lambda: ops.exists(path), timeout, ops)
    trace("devices.await.done", path=path, present=present)
    return present


def resolve_specifier(spec: DeviceSpecifier, ops: SystemOps) -> Optional[str]:
    """Map one specifier to a device path, or ``None``.

    Tagged specifiers prefer the udev ``/dev/disk/by-*`` symlinks and fall
    back to asking ``blkid``, which also works before udev has populated
    anything.
    """

    if spec.kind == "path":
        return spec.value
    link = f"/dev/disk/by-{spec.kind}/{spec.value}"
    try:
        if ops.exists(link):
            return ops.realpath(link)
        return ops.blkid_lookup(f"{spec.kind.upper()}={spec.value}")
    except OPS_ERRORS as exc:
        trace("devices.resolve.error", spec=str(spec), error=str(exc))
        return None


def _parse(text: Optional[str], outcome: Outcome) -> Optional[DeviceSpecifier]:
    if not text:
        return None
    try:
        return DeviceSpecifier.parse(text)
    except ValueError as exc:
        outcome.info(f"Ignoring specifier: {exc}")
        return None


def resolve(
    specifier: Optional[str],
    fallback: Optional[str],
    timeout: float,
    outcome: Outcome,
    ops: SystemOps,
    *,
    required: bool = True,
    fstype: str = "auto",
    options: str = "defaults",
) -> Optional[ResolvedDevice]:
    """Resolve ``specifier``, consulting ``fallback`` only when it yields nothing.

    Resolution is retried once per second for up to ``timeout`` seconds so
    late-enumerating media get a chance to show up, and the resulting path is
    then awaited for the same budget.  Failing to resolve records exactly one
    ``DeviceUnresolved``; a path that never appears records one
    ``DeviceAbsent``.  Both are failures when ``required``; otherwise they are
    only logged and the caller applies its own policy.  Returns ``None`` in
    either case.
    """

    if required:
        record = outcome.fail
    else:
        def record(kind, message):
            outcome.info(message, kind=kind)
    primary = _parse(specifier, outcome)
    secondary = _parse(fallback, outcome)
    found: dict = {}

    def _attempt() -> bool:
        for spec in (primary, secondary):
            if spec is None:
                continue
            path = resolve_specifier(spec, ops)
            if path:
                found["spec"], found["path"] = spec, path
                return True
        return False

    _poll(_attempt, timeout, ops)
    if not found:
        record(
            DeviceUnresolved,
            f"Can't resolve device from [{specifier}] or [{fallback}]. "
            "Try changing entry to UUID or plain device",
        )
        return None

    path = found["path"]
    outcome.info(f"Resolved [{found['spec']}] as [{path}]")
    if not await_device(path, timeout, ops):
        record(DeviceAbsent, f"Resolved {found['spec']} to {path} but can't find the device")
        return None
    return ResolvedDevice(path=path, fstype=fstype, options=options)


_WHOLE_DISK_RE = re.compile(r"^(/dev/(?:mmcblk\d+|nvme\d+n\d+|loop\d+))(?:p\d+)?$")


def parent_disk(dev: str) -> str:
    """Return the whole disk behind a partition path (``/dev/sda1`` -> ``/dev/sda``)."""

    m = _WHOLE_DISK_RE.match(dev)
    if m:
        return m.group(1)
    return re.sub(r"\d+$", "", dev)
