"""Boot entrypoint: assemble the overlay root and exec the real init.

Runs as PID 1 (``init=/usr/sbin/overlayroot`` or similar) and never returns
to the kernel on purpose: every path ends in :func:`handoff`, which replaces
the process image with the real init or a shell.
"""

from __future__ import annotations

import sys
from typing import Optional

from . import devices
from .config import Config, load_config
from .errors import DeviceAbsent, MountFailure
from .executil import info as trace_info
from .fstab import read_fstab_entry
from .model import BootState, Handoff, Terminate
from .mounts import assemble, plan_root, plan_rw, plan_tmpfs, prepare_new_root
from .outcome import FAIL, Outcome, OverlayLog, gate, rescue
from .partitioning import prepare_writable_medium
from .paths import STAGING_DIR, rw_dir
from .switch import switch_and_handoff
from .sysops import OPS_ERRORS, SystemOps
from .triggers import check_triggers

FALLBACK_SHELL = "/bin/sh"


def _protected(cmd_desc: str, action, outcome: Outcome) -> bool:
    outcome.info(f"Run: {cmd_desc}")
    try:
        action()
    except OPS_ERRORS as exc:
        outcome.fail(MountFailure, f"ERROR: error executing {cmd_desc}: {exc}")
        return False
    return True


def basic_setup(outcome: Outcome, ops: SystemOps) -> None:
    _protected("mount -t proc proc /proc", lambda: ops.mount("proc", "/proc", fstype="proc"), outcome)
    _protected(
        f"mount -t tmpfs inittemp {STAGING_DIR}",
        lambda: ops.mount("inittemp", STAGING_DIR, fstype="tmpfs"),
        outcome,
    )
    _protected("modprobe overlay", lambda: ops.modprobe("overlay"), outcome)


def _fstab_entry(mountpoint: str, outcome: Outcome, ops: SystemOps):
    try:
        return read_fstab_entry(mountpoint, ops)
    except (OSError, ValueError) as exc:
        outcome.fail(MountFailure, f"ERROR: could not read /etc/fstab: {exc}")
        return None


def collect(config: Config, outcome: Outcome, ops: SystemOps) -> BootState:
    """Phase 1: decide what to mount without mounting anything."""

    state = BootState()

    root_entry = _fstab_entry("/", outcome, ops)
    if root_entry is not None:
        outcome.info(f"Found {root_entry.source} for root")
    root = devices.resolve(
        root_entry.source if root_entry else None,
        config.secondary_root_resolution,
        config.root_timeout,
        outcome,
        ops,
        required=True,
        fstype=root_entry.fstype if root_entry else "auto",
        options=root_entry.options if root_entry else "defaults",
    )
    if root is not None:
        state.root = root
        state.root_plan = plan_root(root)

    rw_target = rw_dir(config.rw_name)
    rw_entry = _fstab_entry(rw_target, outcome, ops)
    if rw_entry is None:
        outcome.info("No rw fstab entry, will mount a tmpfs")
        state.rw_plan = plan_tmpfs("tmp-root-rw", config)
        return state

    outcome.info(f"found fstab entry for {rw_target}")
    if root is None or outcome.failures:
        # the boot aborts at the gate anyway; never repartition for nothing
        outcome.info("Skipping writable media checks after earlier failures")
    else:
        prepare_writable_medium(rw_entry.source, config, outcome, ops, protected=root.path)
    rw = devices.resolve(
        rw_entry.source,
        config.secondary_rw_resolution,
        config.rw_timeout,
        outcome,
        ops,
        required=False,
        fstype=rw_entry.fstype,
        options=rw_entry.options,
    )
    if rw is not None:
        state.rw_plan = plan_rw(rw, config)
    elif config.on_rw_media_not_found == "tmpfs":
        outcome.warn(DeviceAbsent, f"Could not resolve the RW media from [{rw_entry.source}]; using tmpfs")
        state.rw_plan = plan_tmpfs("emergency-root-rw", config)
    else:
        outcome.fail(DeviceAbsent, "Rw media required but not found")
    return state


def run_pipeline(config: Config, outcome: Outcome, ops: SystemOps) -> Terminate:
    basic_setup(outcome, ops)

    bypass = check_triggers(config, outcome, ops)
    if bypass is not None:
        return bypass

    decision = gate(outcome, config, collect(config, outcome, ops))
    if isinstance(decision, Terminate):
        return decision

    state = decision.state
    state.staged_root = assemble(state.root_plan, state.rw_plan, outcome, ops)
    decision = gate(outcome, config, state)
    if isinstance(decision, Terminate):
        return decision

    state = decision.state
    prepare_new_root(state.staged_root, config, outcome, ops)
    decision = gate(outcome, config, state)
    if isinstance(decision, Terminate):
        return decision

    return switch_and_handoff(decision.state.staged_root, config, outcome, ops)


def handoff(result: Terminate, config: Config, outcome: Outcome, ops: SystemOps) -> None:
    """Replace this process with init or a shell; only returns if every exec failed."""

    if result.handoff is Handoff.NORMAL:
        targets = [config.init_path, config.shell_path, FALLBACK_SHELL]
    else:
        if result.handoff is Handoff.FATAL_ABORT and outcome.log is not None:
            outcome.log.write(FAIL, f"{result.reason}; dropping to a shell")
        targets = [config.shell_path, FALLBACK_SHELL]
    trace_info("cli.handoff", handoff=result.handoff.value, reason=result.reason)

    seen = set()
    for path in targets:
        if not path or path in seen:
            continue
        seen.add(path)
        outcome.info(f"exec {path} ({result.reason or result.handoff.value})")
        try:
            ops.execv(path, [path])
        except OSError as exc:
            outcome.fail(None, f"could not exec {path}: {exc}")
            continue
        return


def main(argv: Optional[list[str]] = None, ops: Optional[SystemOps] = None) -> int:
    ops = ops or SystemOps()
    try:
        config = load_config()
    except (OSError, ValueError) as exc:
        print(f"[FAIL:overlay] could not read configuration: {exc}", file=sys.stderr)
        config = Config()
    outcome = Outcome(log=OverlayLog(config.logging))

    try:
        result = run_pipeline(config, outcome, ops)
    except Exception as exc:  # noqa: BLE001 - PID 1 must still hand off
        outcome.fail(None, f"unexpected error: {exc!r}")
        result = rescue(config, "unexpected error")

    handoff(result, config, outcome, ops)
    return 1


if __name__ == "__main__":
    sys.exit(main())
