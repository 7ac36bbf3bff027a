"""Compiled-in defaults and /etc/overlayRoot.conf overrides."""
from __future__ import annotations

import dataclasses
import shlex
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .executil import trace
from .paths import config_path

ON_FAIL_CHOICES = ("original", "console")
RW_NOT_FOUND_CHOICES = ("tmpfs", "fail")
LOGGING_CHOICES = ("warning", "info")


@dataclass(frozen=True)
class Config:
    # original = run /sbin/init, console = start a shell
    on_fail: str = "original"
    secondary_root_resolution: str = "LABEL=rootfs"
    rw_name: str = "root-rw"
    secondary_rw_resolution: str = "LABEL=root-rw"
    # tmpfs = mount a tmpfs in place of missing rw media, fail = ON_FAIL logic
    on_rw_media_not_found: str = "tmpfs"
    logging: str = "warning"
    log_file: str = "/var/log/overlayRoot.log"
    gpio_disable: int = 4
    gpio_console: int = 1
    init_path: str = "/sbin/init"
    shell_path: str = "/bin/bash"
    rw_candidates: Tuple[str, ...] = ("/dev/sda", "/dev/sdb")
    recover_rw_media: bool = True
    rw_fstype: str = "ext4"
    rw_timeout: int = 20
    root_timeout: int = 10


_KEYS = {f.name.upper(): f for f in dataclasses.fields(Config)}


def _coerce(name: str, raw: str):
    default = getattr(Config, name)
    if isinstance(default, bool):
        return raw.strip().lower() in {"1", "yes", "true", "on"}
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, tuple):
        return tuple(raw.split())
    return raw


def parse_assignments(text: str) -> Dict[str, str]:
    """Return ``KEY=value`` pairs from shell-style assignment lines."""

    values: Dict[str, str] = {}
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        try:
            tokens = shlex.split(stripped, comments=True)
        except ValueError:
            trace("config.unparsable", line=stripped)
            continue
        if tokens and tokens[0] == "export":
            tokens = tokens[1:]
        if len(tokens) != 1 or "=" not in tokens[0]:
            trace("config.ignored", line=stripped)
            continue
        key, value = tokens[0].split("=", 1)
        values[key.strip()] = value
    return values


def from_mapping(values: Dict[str, str], base: Optional[Config] = None) -> Config:
    base = base or Config()
    overrides = {}
    for key, raw in values.items():
        field = _KEYS.get(key.upper())
        if field is None:
            trace("config.unknown_key", key=key)
            continue
        try:
            overrides[field.name] = _coerce(field.name, raw)
        except ValueError:
            trace("config.bad_value", key=key, value=raw)
    return dataclasses.replace(base, **overrides)


def load_config(path: Optional[str] = None) -> Config:
    """Load overrides; a missing file just means the defaults apply."""

    path = path or config_path()
    try:
        with open(path, "r", encoding="utf-8") as fh:
            text = fh.read()
    except FileNotFoundError:
        trace("config.missing", path=path)
        return Config()
    return from_mapping(parse_assignments(text))
