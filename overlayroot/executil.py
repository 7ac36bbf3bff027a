from __future__ import annotations

"""Subprocess wrapper and JSONL trace log."""

import datetime as _dt
import json
import os
import subprocess
import time
from typing import Sequence

from .paths import STAGING_DIR


LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "overlayroot.jsonl"

TIMEOUT_RC = 124


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    # The staging tmpfs is the only writable place during early boot.
    return [STAGING_DIR]


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        if not os.path.isdir(d) or not os.access(d, os.W_OK):
            continue
        LOG_PATH = os.path.join(d, LOG_NAME)
        return LOG_PATH
    return None


class Result:
    def __init__(self, rc: int, out: str, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration


LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}
LOG_LEVEL = os.environ.get("OVERLAYROOT_LOG_LEVEL", "INFO").upper()


def _write_jsonl(obj: dict):
    path = _ensure_logger()
    try:
        if path:
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(obj) + "\n")
    except OSError:
        pass


def log(level: str, event: str, **fields):
    lvl = LEVELS.get(level.upper(), 100)
    cur = LEVELS.get(LOG_LEVEL, 100)
    if lvl < cur:
        return
    ts = _dt.datetime.now(_dt.timezone.utc).isoformat()
    rec = {"ts": ts, "level": level.upper(), "event": event}
    rec.update(fields)
    _write_jsonl(rec)


def trace(event: str, **fields):
    log("TRACE", event, **fields)


def info(event: str, **fields):
    log("INFO", event, **fields)


def run(
    cmd: Sequence[str],
    check: bool = True,
    timeout: float = 60.0,
    input: str | None = None,
) -> Result:
    trace("exec.start", cmd=list(cmd))
    started = time.time()
    try:
        proc = subprocess.run(
            list(cmd),
            capture_output=True,
            text=True,
            timeout=timeout,
            input=input,
        )
    except subprocess.TimeoutExpired as exc:
        # Never re-run on timeout: several callers are destructive (fdisk, mkfs).
        dur = time.time() - started
        info("exec.timeout", cmd=list(cmd), timeout=timeout, dur=dur)
        out = exc.stdout if isinstance(exc.stdout, str) else ""
        err = exc.stderr if isinstance(exc.stderr, str) else ""
        if check:
            raise subprocess.CalledProcessError(TIMEOUT_RC, list(cmd), out, err) from exc
        return Result(TIMEOUT_RC, out, err, dur)
    dur = time.time() - started
    trace("exec.done", cmd=list(cmd), rc=proc.returncode, dur=dur, out=proc.stdout, err=proc.stderr)
    if check and proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, list(cmd), proc.stdout, proc.stderr)
    return Result(proc.returncode, proc.stdout, proc.stderr, dur)


def udev_settle(timeout: int = 10):
    try:
        subprocess.run(["udevadm", "settle", f"--timeout={timeout}"], check=False)
    except OSError:
        # No udev in a bare /sbin/init environment.
        pass
