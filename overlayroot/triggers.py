"""Jumper pins that bypass the overlay entirely."""
from typing import Optional

from .config import Config
from .model import Handoff, Terminate
from .outcome import Outcome
from .sysops import SystemOps


def asserted(pin: int, ops: SystemOps) -> bool:
    # pull-up enabled, so a jumper to ground reads 0
    return ops.gpio_read(pin) == "0"


def check_triggers(config: Config, outcome: Outcome, ops: SystemOps) -> Optional[Terminate]:
    """Return the bypass handoff for an asserted jumper, else ``None``."""

    if asserted(config.gpio_disable, ops):
        outcome.info(f"Jumper on GPIO {config.gpio_disable} overlayRoot -- will run {config.init_path} directly")
        return Terminate(Handoff.NORMAL, f"GPIO {config.gpio_disable} jumper")
    if asserted(config.gpio_console, ops):
        outcome.info(f"Jumper on GPIO {config.gpio_console} overlayRoot -- dropping straight to shell")
        return Terminate(Handoff.RESCUE, f"GPIO {config.gpio_console} jumper")
    outcome.info(
        f"No jumper detected on {config.gpio_console} or {config.gpio_disable} -- continuing overlayRoot"
    )
    return None
