import io
import json

import pytest

from overlayroot import executil
from overlayroot.config import Config
from overlayroot.errors import DeviceAbsent, MountFailure
from overlayroot.model import Continue, Handoff, Terminate
from overlayroot.outcome import Outcome, OverlayLog, gate, rescue


def test_log_line_format_and_staging_file(tmp_path):
    stream = io.StringIO()
    path = tmp_path / "overlayRoot.log"
    outcome = Outcome(log=OverlayLog("info", path=str(path), stream=stream))

    outcome.fail(MountFailure, "mount broke")
    outcome.warn(DeviceAbsent, "no stick")
    outcome.info("all good")

    expected = "[FAIL:overlay] mount broke\n[FAIL:overlay] no stick\n[INFO:overlay] all good\n"
    assert stream.getvalue() == expected
    assert path.read_text(encoding="utf-8") == expected


def test_warning_verbosity_hides_info():
    stream = io.StringIO()
    outcome = Outcome(log=OverlayLog("warning", path=None, stream=stream))

    outcome.warn(DeviceAbsent, "no stick")
    outcome.info("chatter")

    assert stream.getvalue() == "[FAIL:overlay] no stick\n"
    assert outcome.warnings == 1
    assert len(outcome.records) == 2


def test_log_survives_unwritable_staging(tmp_path):
    log = OverlayLog("info", path=str(tmp_path / "missing" / "x.log"), stream=io.StringIO())
    log.write("FAIL", "still fine")


def test_records_reach_the_trace_log(tmp_path, monkeypatch):
    monkeypatch.setattr(executil, "LOG_DIRS", [str(tmp_path)])
    monkeypatch.setattr(executil, "LOG_LEVEL", "INFO")
    outcome = Outcome()

    outcome.fail(MountFailure, "x")
    outcome.warn(DeviceAbsent, "y")
    outcome.info("z")

    lines = (tmp_path / "overlayroot.jsonl").read_text(encoding="utf-8").splitlines()
    data = [json.loads(line) for line in lines]
    assert [d["record_level"] for d in data] == ["FAIL", "WARN", "INFO"]
    assert {d["level"] for d in data} == {"INFO"}
    assert data[0]["kind"] == "MountFailure"
    assert (outcome.failures, outcome.warnings) == (1, 1)
    assert outcome.kinds() == ["MountFailure", "DeviceAbsent", ""]


def test_gate_continues_without_failures():
    outcome = Outcome()
    outcome.warn(DeviceAbsent, "tmpfs instead")
    decision = gate(outcome, Config(), state="boot state")
    assert isinstance(decision, Continue)
    assert decision.state == "boot state"


@pytest.mark.parametrize(
    "on_fail, handoff",
    [("original", Handoff.NORMAL), ("console", Handoff.RESCUE), ("bogus", Handoff.FATAL_ABORT)],
)
def test_gate_aborts_into_rescue(on_fail, handoff):
    stream = io.StringIO()
    outcome = Outcome(log=OverlayLog("warning", path=None, stream=stream))
    outcome.fail(MountFailure, "x")

    decision = gate(outcome, Config(on_fail=on_fail))

    assert isinstance(decision, Terminate)
    assert decision.handoff is handoff
    assert "Fix 1 failures and maybe 0 warnings" in stream.getvalue()


def test_rescue_reason_for_unknown_policy():
    assert "ON_FAIL" in rescue(Config(on_fail="reboot")).reason
