from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Optional, Tuple

SPECIFIER_KINDS = ("label", "uuid", "partuuid", "partlabel")


@dataclass(frozen=True)
class DeviceSpecifier:
    kind: str
    value: str

    @classmethod
    def parse(cls, text: str) -> "DeviceSpecifier":
        """Parse an fstab source field such as ``LABEL=rootfs`` or ``/dev/sda1``."""

        raw = (text or "").strip()
        if not raw:
            raise ValueError("empty device specifier")
        if raw.startswith("/"):
            return cls("path", raw)
        if "=" not in raw:
            raise ValueError(f"unrecognised device specifier {raw!r}")
        tag, value = raw.split("=", 1)
        kind = tag.strip().lower()
        value = value.strip().strip('"')
        if kind not in SPECIFIER_KINDS or not value:
            raise ValueError(f"unrecognised device specifier {raw!r}")
        return cls(kind, value)

    def __str__(self) -> str:
        if self.kind == "path":
            return self.value
        return f"{self.kind.upper()}={self.value}"


@dataclass(frozen=True)
class FstabEntry:
    source: str
    mountpoint: str
    fstype: str = "auto"
    options: str = "defaults"
    dump: str = "0"
    passno: str = "0"


@dataclass(frozen=True)
class ResolvedDevice:
    path: str
    fstype: str = "auto"
    options: str = "defaults"


@dataclass
class MountPlan:
    source: str
    target: str
    fstype: str
    options: Tuple[str, ...] = ()
    read_only: bool = False

    def mount_options(self) -> list[str]:
        opts = [o for o in self.options if o]
        if self.read_only:
            opts = [o for o in opts if o != "rw"]
            if "ro" not in opts:
                opts.append("ro")
        return opts

    def command(self) -> list[str]:
        cmd = ["mount", "-t", self.fstype]
        opts = self.mount_options()
        if opts:
            cmd += ["-o", ",".join(opts)]
        cmd += [self.source, self.target]
        return cmd


@dataclass(frozen=True)
class PartitionLayout:
    device: str
    partition_count: int
    last_partition_fstype: str = ""

    def matches(self, fstype: str) -> bool:
        return self.partition_count == 1 and self.last_partition_fstype == fstype


class Handoff(enum.Enum):
    NORMAL = "normal"
    RESCUE = "rescue"
    FATAL_ABORT = "fatal_abort"


@dataclass
class Continue:
    state: Any = None


@dataclass
class Terminate:
    handoff: Handoff
    reason: str = ""


@dataclass
class BootState:
    root: Optional[ResolvedDevice] = None
    root_plan: Optional[MountPlan] = None
    rw_plan: Optional[MountPlan] = None
    staged_root: Optional[str] = None
