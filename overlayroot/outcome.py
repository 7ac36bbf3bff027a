"""Failure/warning aggregation, the boot log, and the single abort gate."""
from __future__ import annotations

import sys
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Type

from .config import Config
from .errors import OverlayRootError
from .executil import info as trace_info
from .model import Continue, Handoff, Terminate
from .paths import STAGING_LOG

FAIL = "FAIL"
WARN = "WARN"
INFO = "INFO"


class OverlayLog:
    """Tee ``[LEVEL:overlay]`` lines to the console and the staging log."""

    def __init__(self, verbosity: str = "warning", path: Optional[str] = STAGING_LOG, stream=None):
        self.verbosity = verbosity
        self.path = path
        self.stream = stream if stream is not None else sys.stdout

    def emits(self, level: str) -> bool:
        if level == FAIL:
            return True
        if level == WARN:
            return self.verbosity in ("warning", "info")
        return self.verbosity == "info"

    def write(self, level: str, message: str) -> None:
        if not self.emits(level):
            return
        prefix = "INFO" if level == INFO else "FAIL"
        line = f"[{prefix}:overlay] {message}"
        try:
            print(line, file=self.stream, flush=True)
        except (OSError, ValueError):
            pass
        if not self.path:
            return
        try:
            with open(self.path, "a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        except OSError:
            # Before the staging tmpfs is mounted there is nowhere to write.
            pass


Record = Tuple[str, str, str]


@dataclass
class Outcome:
    failures: int = 0
    warnings: int = 0
    records: List[Record] = field(default_factory=list)
    log: Optional[OverlayLog] = field(default=None, repr=False, compare=False)

    def _record(self, level: str, kind: Optional[Type[OverlayRootError]], message: str) -> None:
        name = kind.__name__ if kind else ""
        self.records.append((level, name, message))
        trace_info("outcome.record", record_level=level, kind=name, message=message)
        if self.log is not None:
            self.log.write(level, message)

    def fail(self, kind: Optional[Type[OverlayRootError]], message: str) -> None:
        self.failures += 1
        self._record(FAIL, kind, message)

    def warn(self, kind: Optional[Type[OverlayRootError]], message: str) -> None:
        self.warnings += 1
        self._record(WARN, kind, message)

    def info(self, message: str, kind: Optional[Type[OverlayRootError]] = None) -> None:
        self._record(INFO, kind, message)

    def kinds(self, level: Optional[str] = None) -> List[str]:
        return [k for (lvl, k, _m) in self.records if level is None or lvl == level]


def rescue(config: Config, reason: str = "") -> Terminate:
    if config.on_fail == "original":
        return Terminate(Handoff.NORMAL, reason)
    if config.on_fail == "console":
        return Terminate(Handoff.RESCUE, reason)
    # Unknown ON_FAIL value: a shell is the only safe place to land.
    return Terminate(Handoff.FATAL_ABORT, reason or f"unknown ON_FAIL value {config.on_fail!r}")


def gate(outcome: Outcome, config: Config, state=None):
    """Return ``Continue(state)`` when nothing failed, otherwise the rescue handoff."""

    if outcome.failures == 0:
        return Continue(state)
    message = (
        f"Fix {outcome.failures} failures and maybe {outcome.warnings} warnings "
        "before overlayRoot will work"
    )
    if outcome.log is not None:
        outcome.log.write(FAIL, message)
    return rescue(config, message)
