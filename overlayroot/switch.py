"""Pivot into the staged overlay and hand the machine to the real init.

The switch is an ordered list of steps.  Everything before ``pivot_root``
can still fall back to the ``ON_FAIL`` policy; once the root has moved, a
failed relocation can only end in a shell.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List

from .config import Config
from .errors import MountFailure, RelocationFailure
from .executil import trace
from .model import Handoff, Terminate
from .outcome import Outcome, rescue
from .paths import LOWER_DIR, inside, rw_dir
from .sysops import OPS_ERRORS, SystemOps

PREPARE = "prepare"
COMMIT = "commit"
RELOCATE = "relocate"
DETACH = "detach"

OLD_ROOT = "/mnt"


@dataclass
class Step:
    name: str
    phase: str
    action: Callable[[], object]


def plan_switch(staged_root: str, config: Config, ops: SystemOps) -> List[Step]:
    # After pivot_root the old root sits at /mnt, so staging mounts that
    # used to live under /mnt are now under /mnt/mnt.
    old_lower = inside(OLD_ROOT, LOWER_DIR)
    old_rw = inside(OLD_ROOT, rw_dir(config.rw_name))

    def _detach(path, lazy=False):
        def _run():
            r = ops.umount(path, lazy=lazy)
            if r is not None and getattr(r, "rc", 0) != 0:
                raise MountFailure(f"umount {path} returned {r.rc}")
        return _run

    return [
        Step("mkdir put_old", PREPARE, lambda: ops.makedirs(inside(staged_root, OLD_ROOT))),
        Step("chdir new root", PREPARE, lambda: ops.chdir(staged_root)),
        Step("pivot_root", COMMIT, lambda: ops.pivot_root(".", OLD_ROOT.lstrip("/"))),
        Step("chroot", RELOCATE, lambda: ops.chroot(".")),
        Step("move ro", RELOCATE, lambda: ops.move_mount(old_lower, "/ro")),
        Step("move rw", RELOCATE, lambda: ops.move_mount(old_rw, "/rw")),
        Step("umount staging", DETACH, _detach(inside(OLD_ROOT, OLD_ROOT))),
        Step("umount proc", DETACH, _detach(inside(OLD_ROOT, "/proc"))),
        Step("umount dev", DETACH, _detach(inside(OLD_ROOT, "/dev"))),
        # this interpreter is still mapped from the old root
        Step("umount old root", DETACH, _detach(OLD_ROOT, lazy=True)),
    ]


def switch_and_handoff(staged_root: str, config: Config, outcome: Outcome, ops: SystemOps,
                       steps: List[Step] | None = None) -> Terminate:
    """Run the switch; the returned ``Terminate`` is the only way out.

    ``Handoff.NORMAL`` means the new root is in place and the real init should
    be exec'd.  Relocation failures return ``Handoff.FATAL_ABORT`` regardless
    of ``ON_FAIL``: the old root is already gone, so running the original
    init is no longer an option.
    """

    steps = steps if steps is not None else plan_switch(staged_root, config, ops)
    for step in steps:
        trace("switch.step", name=step.name, phase=step.phase)
        try:
            step.action()
        except (MountFailure,) + OPS_ERRORS as exc:
            if step.phase in (PREPARE, COMMIT):
                outcome.fail(MountFailure, f"ERROR: {step.name} failed before the switch: {exc}")
                return rescue(config, f"{step.name} failed")
            if step.phase == RELOCATE:
                outcome.fail(RelocationFailure, f"ERROR: could not {step.name} into newroot: {exc}")
                return Terminate(Handoff.FATAL_ABORT, f"{step.name} failed after pivot_root")
            outcome.warn(MountFailure, f"{step.name} failed: {exc}")
            continue
        if step.phase == COMMIT and outcome.log is not None and outcome.log.path:
            # the staging log now lives under the old root; keep writing in the new one
            outcome.log.path = config.log_file
    return Terminate(Handoff.NORMAL, "overlay root in place")
