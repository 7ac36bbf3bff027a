import ast
import io
import subprocess
import sys
import threading
from collections import defaultdict
from pathlib import Path
from types import SimpleNamespace
from typing import Dict, Iterable, Set

import pytest

from overlayroot import executil
from overlayroot.devices import parent_disk
from overlayroot.outcome import Outcome, OverlayLog

_ROOT_DIR = Path(__file__).absolute().parent.parent
_PACKAGE_DIR = (_ROOT_DIR / "overlayroot").absolute()

_EXECUTED_LINES: Dict[Path, Set[int]] = defaultdict(set)
_CANDIDATE_LINES: Dict[Path, Set[int]] = {}
_PREVIOUS_TRACE = None
_PREVIOUS_THREAD_TRACE = None
_TRACE_ACTIVE = False


# --- line coverage for the overlayroot package --------------------------

def _iter_python_files(directory: Path) -> Iterable[Path]:
    for path in directory.rglob("*.py"):
        if path.is_file():
            yield path.absolute()


def _candidate_lines_for(path: Path) -> Set[int]:
    source = path.read_text(encoding="utf-8")
    try:
        tree = ast.parse(source, filename=str(path))
    except SyntaxError:
        return set()
    source_lines = source.splitlines()
    lines = set()
    for node in ast.walk(tree):
        if not isinstance(node, ast.stmt):
            continue
        lineno = node.lineno
        if lineno > len(source_lines):
            continue
        text = source_lines[lineno - 1].strip()
        if text and not text.startswith("#"):
            lines.add(lineno)
    return lines


for file_path in _iter_python_files(_PACKAGE_DIR):
    _CANDIDATE_LINES[file_path] = _candidate_lines_for(file_path)


def _trace(frame, event, arg):
    if event != "line":
        return _trace
    filename = Path(frame.f_code.co_filename)
    if filename in _CANDIDATE_LINES:
        _EXECUTED_LINES[filename].add(frame.f_lineno)
    return _trace


def pytest_sessionstart(session):
    global _PREVIOUS_TRACE, _PREVIOUS_THREAD_TRACE, _TRACE_ACTIVE
    if _TRACE_ACTIVE:
        return
    _TRACE_ACTIVE = True
    _EXECUTED_LINES.clear()
    _PREVIOUS_TRACE = sys.gettrace()
    _PREVIOUS_THREAD_TRACE = threading.gettrace()
    sys.settrace(_trace)
    threading.settrace(_trace)


def pytest_sessionfinish(session, exitstatus):
    global _TRACE_ACTIVE
    if not _TRACE_ACTIVE:
        return
    _TRACE_ACTIVE = False
    sys.settrace(_PREVIOUS_TRACE)
    threading.settrace(_PREVIOUS_THREAD_TRACE)

    terminal = session.config.pluginmanager.get_plugin("terminalreporter")
    write_line = terminal.write_line if terminal else print
    total, covered = 0, 0
    write_line("")
    write_line("Coverage summary for 'overlayroot':")
    for path in sorted(_CANDIDATE_LINES):
        candidates = _CANDIDATE_LINES[path]
        if not candidates:
            continue
        hit = len(_EXECUTED_LINES.get(path, set()) & candidates)
        total += len(candidates)
        covered += hit
        write_line(f"{str(path.relative_to(_ROOT_DIR)):<40} {len(candidates):>5} {hit / len(candidates) * 100.0:>6.1f}%")
    if total:
        write_line(f"{'TOTAL':<40} {total:>5} {covered / total * 100.0:>6.1f}%")


# --- in-memory system ----------------------------------------------------

def parted_text(disk, parts):
    """Render ``parted -m`` output for ``parts`` = [(number, fstype), ...]."""

    lines = ["BYT;", f"{disk}:61071360s:scsi:512:512:msdos:Generic Flash Disk:;"]
    for number, fstype in parts:
        lines.append(f"{number}:2048s:61071359s:61069312s:{fstype}::;")
    return "\n".join(lines) + "\n"


class FakeOps:
    """Records every side effect and fakes devices, files and mounts."""

    def __init__(self):
        self.now = 0.0
        self.devices = set()
        self.appear_at = {}
        self.links = {}
        self.blkid = {}
        self.tables = {}
        self.files = {}
        self.dirs = set()
        self.mounts = []
        self.calls = []
        self.failing = {}
        self.umount_rc = {}
        self.lazy_umounts = set()
        self.gpio = {}
        self.execs = []
        self.exec_errors = set()

    def _maybe_fail(self, name, *args):
        check = self.failing.get(name)
        if check is not None and check(*args):
            raise subprocess.CalledProcessError(1, [name, *args], "", f"{name} failed")

    def add_device(self, path, at=None):
        if at is None:
            self.devices.add(path)
        else:
            self.appear_at[path] = at

    def op_names(self):
        return [c[0] for c in self.calls]

    # probing
    def exists(self, path):
        if path in self.devices or path in self.links or path in self.files or path in self.dirs:
            return True
        at = self.appear_at.get(path)
        return at is not None and self.now >= at

    def realpath(self, path):
        return self.links.get(path, path)

    def sleep(self, seconds):
        self.calls.append(("sleep", seconds))
        self.now += seconds

    def monotonic(self):
        return self.now

    def blkid_lookup(self, token):
        self.calls.append(("blkid", token))
        dev = self.blkid.get(token)
        if dev is not None and not self.exists(dev):
            return None
        return dev

    def partition_table(self, device):
        self.calls.append(("parted", device))
        self._maybe_fail("parted", device)
        if device not in self.tables:
            raise subprocess.CalledProcessError(1, ["parted", device], "", "unrecognised disk label")
        return self.tables[device]

    # destructive
    def write_single_partition_table(self, device):
        self.calls.append(("fdisk", device))
        self._maybe_fail("fdisk", device)
        self.tables[device] = parted_text(device, [(1, "")])
        suffix = "p" if device[-1:].isdigit() else ""
        self.devices.add(f"{device}{suffix}1")

    def reread_partitions(self, device):
        self.calls.append(("reread", device))

    def mkfs(self, device, fstype, label=None):
        self.calls.append(("mkfs", device, fstype, label))
        self._maybe_fail("mkfs", device)
        disk = parent_disk(device)
        self.tables[disk] = parted_text(disk, [(1, fstype)])
        if label:
            self.blkid[f"LABEL={label}"] = device

    # mounts
    def mount(self, source, target, fstype=None, options=None):
        self.calls.append(("mount", source, target))
        self._maybe_fail("mount", source, target)
        self.mounts.append(SimpleNamespace(source=source, target=target, fstype=fstype, options=list(options or [])))

    def move_mount(self, source, target):
        self.calls.append(("move", source, target))
        self._maybe_fail("move", source, target)

    def umount(self, path, lazy=False):
        self.calls.append(("umount", path))
        if lazy:
            self.lazy_umounts.add(path)
        return SimpleNamespace(rc=self.umount_rc.get(path, 0))

    def modprobe(self, module):
        self.calls.append(("modprobe", module))

    # files
    def makedirs(self, path):
        self.calls.append(("mkdir", path))
        self.dirs.add(path)

    def read_text(self, path):
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    def write_text(self, path, data):
        self.calls.append(("write", path))
        self.files[path] = data

    def append_text(self, path, data):
        self.calls.append(("append", path))
        self.files[path] = self.files.get(path, "") + data

    # root switch
    def chdir(self, path):
        self.calls.append(("chdir", path))

    def pivot_root(self, new_root, put_old):
        self.calls.append(("pivot_root", new_root, put_old))
        self._maybe_fail("pivot_root", new_root, put_old)

    def chroot(self, path):
        self.calls.append(("chroot", path))

    def gpio_read(self, pin):
        return self.gpio.get(pin, "1")

    def execv(self, path, args):
        self.calls.append(("exec", path))
        if path in self.exec_errors:
            raise FileNotFoundError(path)
        self.execs.append(path)


@pytest.fixture
def fake_ops():
    return FakeOps()


@pytest.fixture
def console():
    return io.StringIO()


@pytest.fixture
def outcome(console):
    return Outcome(log=OverlayLog("info", path=None, stream=console))


@pytest.fixture(autouse=True)
def _no_trace_file(monkeypatch, tmp_path):
    monkeypatch.setattr(executil, "LOG_DIRS", [str(tmp_path / "trace")])
    monkeypatch.setattr(executil, "LOG_PATH", None)
