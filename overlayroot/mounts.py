"""Overlay assembly at the staging paths (steps 1-5 before the switch)."""
from typing import Optional

from .config import Config
from .errors import MountFailure
from .executil import trace
from .fstab import write_new_root_fstab
from .model import MountPlan, ResolvedDevice
from .outcome import Outcome
from .paths import LOWER_DIR, NEWROOT_DIR, STAGING_LOG, inside, rw_dir
from .sysops import OPS_ERRORS, SystemOps

OVERLAY_SOURCE = "overlayfs-root"


def _split_options(options: str) -> tuple:
    return tuple(o for o in (options or "").split(",") if o)


def plan_root(device: ResolvedDevice) -> MountPlan:
    """Read-only plan for the lower layer, whatever fstab declared."""

    return MountPlan(
        source=device.path,
        target=LOWER_DIR,
        fstype=device.fstype or "auto",
        options=_split_options(device.options),
        read_only=True,
    )


def plan_rw(device: ResolvedDevice, config: Config) -> MountPlan:
    return MountPlan(
        source=device.path,
        target=rw_dir(config.rw_name),
        fstype=device.fstype or "auto",
        options=_split_options(device.options),
    )


def plan_tmpfs(name: str, config: Config) -> MountPlan:
    return MountPlan(source=name, target=rw_dir(config.rw_name), fstype="tmpfs")


def plan_overlay(rw_target: str) -> MountPlan:
    return MountPlan(
        source=OVERLAY_SOURCE,
        target=NEWROOT_DIR,
        fstype="overlay",
        options=(
            f"lowerdir={LOWER_DIR}",
            f"upperdir={rw_target}/upper",
            f"workdir={rw_target}/work",
        ),
    )


def _mkdir(path: str, outcome: Outcome, ops: SystemOps) -> bool:
    try:
        ops.makedirs(path)
    except OSError as exc:
        outcome.fail(MountFailure, f"ERROR: could not create {path}: {exc}")
        return False
    return True


def mount_plan(plan: MountPlan, outcome: Outcome, ops: SystemOps) -> bool:
    """Run one mount; a failure is recorded, never raised."""

    outcome.info("Run: " + " ".join(plan.command()))
    try:
        ops.mount(plan.source, plan.target, fstype=plan.fstype, options=plan.mount_options())
    except OPS_ERRORS as exc:
        outcome.fail(MountFailure, f"ERROR: error executing {' '.join(plan.command())}: {exc}")
        return False
    return True


def assemble(root_plan: MountPlan, rw_plan: MountPlan, outcome: Outcome, ops: SystemOps) -> str:
    """Mount the writable layer, the read-only root and the overlay on top.

    Every step runs even when an earlier one failed; failures only land in
    ``outcome`` and the caller's gate decides whether to carry on.
    """

    for path in (root_plan.target, rw_plan.target, NEWROOT_DIR):
        _mkdir(path, outcome, ops)

    mount_plan(rw_plan, outcome, ops)
    mount_plan(root_plan, outcome, ops)

    _mkdir(f"{rw_plan.target}/upper", outcome, ops)
    _mkdir(f"{rw_plan.target}/work", outcome, ops)

    overlay = plan_overlay(rw_plan.target)
    mount_plan(overlay, outcome, ops)
    trace("mounts.assemble.done", failures=outcome.failures, target=overlay.target)
    return overlay.target


def prepare_new_root(
    staged_root: str,
    config: Config,
    outcome: Outcome,
    ops: SystemOps,
    staging_log: Optional[str] = STAGING_LOG,
) -> bool:
    """Mount points, fstab copy and carried-over log inside the staged root."""

    ok = _mkdir(inside(staged_root, "/ro"), outcome, ops)
    ok = _mkdir(inside(staged_root, "/rw"), outcome, ops) and ok
    try:
        write_new_root_fstab(LOWER_DIR, staged_root, ops)
    except (OSError, ValueError) as exc:
        outcome.fail(MountFailure, f"ERROR: could not rewrite fstab in {staged_root}: {exc}")
        ok = False
    if staging_log:
        carry_log(staging_log, inside(staged_root, config.log_file), ops)
    return ok


def carry_log(staging_log: str, target: str, ops: SystemOps) -> None:
    try:
        text = ops.read_text(staging_log)
    except (OSError, ValueError):
        return
    try:
        ops.append_text(target, text)
    except OSError as exc:
        trace("mounts.carry_log.error", target=target, error=str(exc))
