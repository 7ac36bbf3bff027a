"""Every side effect on the real system goes through ``SystemOps``.

Command helpers raise ``subprocess.CalledProcessError`` (via
:func:`executil.run`) and filesystem helpers raise ``OSError``; callers record
those into an ``Outcome`` rather than letting them escape the pipeline.
"""
from __future__ import annotations

import os
import subprocess
import time
from typing import Optional, Sequence

from .executil import Result, run, trace, udev_settle

# o: new DOS label, n/p/1: primary partition 1 over the default span,
# t/83: Linux type, w: write.
FDISK_SINGLE_PARTITION = "o\nn\np\n1\n\n\nt\n83\nw\n"

# What a failed command or filesystem helper can raise.
OPS_ERRORS = (subprocess.CalledProcessError, OSError)


class SystemOps:
    # -- probing ---------------------------------------------------------
    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def realpath(self, path: str) -> str:
        return os.path.realpath(path)

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)

    def monotonic(self) -> float:
        return time.monotonic()

    def blkid_lookup(self, token: str) -> Optional[str]:
        """Return the first device carrying ``token`` (``LABEL=x``, ``UUID=y``)."""

        r = run(["blkid", "-l", "-o", "device", "-t", token], check=False)
        if r.rc != 0:
            return None
        lines = [line.strip() for line in (r.out or "").splitlines() if line.strip()]
        return lines[0] if lines else None

    def partition_table(self, device: str) -> str:
        return run(["parted", "-s", "-m", device, "unit", "s", "print"], check=True).out

    # -- destructive -----------------------------------------------------
    def write_single_partition_table(self, device: str) -> None:
        run(["fdisk", device], check=True, input=FDISK_SINGLE_PARTITION, timeout=120.0)

    def reread_partitions(self, device: str) -> None:
        run(["blockdev", "--rereadpt", device], check=False)
        run(["partprobe", device], check=False)
        udev_settle()

    def mkfs(self, device: str, fstype: str, label: Optional[str] = None) -> None:
        args = [f"mkfs.{fstype}"]
        if fstype.startswith("ext"):
            # twice: also overwrite a filesystem that looks mounted
            args += ["-F", "-F"]
        if label:
            args += ["-L", label]
        run(args + [device], check=True, timeout=600.0)

    # -- mounts ----------------------------------------------------------
    def mount(self, source: str, target: str, fstype: Optional[str] = None,
              options: Optional[Sequence[str]] = None) -> None:
        cmd = ["mount"]
        if fstype:
            cmd += ["-t", fstype]
        if options:
            cmd += ["-o", ",".join(options)]
        cmd += [source, target]
        run(cmd, check=True)

    def move_mount(self, source: str, target: str) -> None:
        run(["mount", "--move", source, target], check=True)

    def umount(self, path: str, lazy: bool = False) -> Result:
        cmd = ["umount", "-l", path] if lazy else ["umount", path]
        return run(cmd, check=False)

    def modprobe(self, module: str) -> None:
        run(["modprobe", module], check=True)

    # -- files -----------------------------------------------------------
    def makedirs(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)

    def read_text(self, path: str) -> str:
        with open(path, "r", encoding="utf-8") as fh:
            return fh.read()

    def write_text(self, path: str, data: str) -> None:
        os.makedirs(os.path.dirname(path) or "/", exist_ok=True)
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(data)
            try:
                fh.flush()
                os.fsync(fh.fileno())
            except OSError:
                pass

    def append_text(self, path: str, data: str) -> None:
        os.makedirs(os.path.dirname(path) or "/", exist_ok=True)
        with open(path, "a", encoding="utf-8") as fh:
            fh.write(data)

    # -- root switch -----------------------------------------------------
    def chdir(self, path: str) -> None:
        os.chdir(path)

    def pivot_root(self, new_root: str, put_old: str) -> None:
        run(["pivot_root", new_root, put_old], check=True)

    def chroot(self, path: str) -> None:
        os.chroot(path)
        os.chdir("/")

    # -- hardware triggers -----------------------------------------------
    def gpio_read(self, pin: int) -> Optional[str]:
        """Enable the pull-up on ``pin`` and read it; ``None`` when unreadable."""

        try:
            run(["gpio", "mode", str(pin), "up"], check=False)
            r = run(["gpio", "read", str(pin)], check=False)
        except OSError as exc:
            trace("sysops.gpio_missing", pin=pin, error=str(exc))
            return None
        if r.rc != 0:
            return None
        return (r.out or "").strip()

    # -- terminal --------------------------------------------------------
    def execv(self, path: str, args: Sequence[str]) -> None:
        os.execv(path, list(args))
