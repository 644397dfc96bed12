"""Golden-test runner for the VM.

Each golden YAML record holds a program (hex words), an optional config and
held keys, and the expected end state: run state, ticks, registers, memory,
framebuffer rows and log lines.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import processor
import pytest
from config import load_config
from errors import MachineError
from processor import ControlUnit, make_datapath

_SPECIAL_REGS = ("I", "PC", "SP", "DT", "ST")


def _close_logging() -> None:
    root = logging.getLogger()
    for h in list(root.handlers):
        h.flush()
        h.close()
        root.removeHandler(h)


@pytest.mark.golden_test("golden/*.yaml")
def test_golden_program(golden: Any) -> None:  # noqa: C901
    """Run one golden record and compare the end state."""
    if "__yaml_load_error__" in golden:
        pytest.fail(f"bad golden file {golden['__path__']}: {golden['__yaml_load_error__']}")
    if "program_bytes" not in golden:
        pytest.skip("No program provided in golden record")

    cfg = load_config(golden.get("config") or {})
    keys = [int(k) for k in golden.get("keys") or []]

    with tempfile.TemporaryDirectory() as tmp:
        log_path = os.path.join(tmp, "processor.log")
        processor.init_logging(logfile=log_path, debug=True, console=False)
        try:
            dp = make_datapath(golden["program_bytes"], cfg)
            for k in keys:
                dp.set_key_state(k, True)
            cu = ControlUnit(dp)
            try:
                state = cu.run(cfg["tick_limit"], cfg["steps_per_timer_tick"], cfg["pause_tick"])
            except MachineError as e:
                state = type(e).__name__
        finally:
            _close_logging()
        log_text = Path(log_path).read_text(encoding="utf-8")

    expect = golden.get("expect") or {}

    if "state" in expect:
        assert state == expect["state"], f"state mismatch: got {state} expected {expect['state']}"

    if "ticks" in expect:
        assert dp.tick == int(expect["ticks"]), f"ticks mismatch: got {dp.tick} expected {expect['ticks']}"

    for name, value in (expect.get("registers") or {}).items():
        if name in _SPECIAL_REGS:
            got = getattr(dp, name)
        else:
            got = dp.V[int(name[1:], 16)]
        assert got == int(value), f"{name} mismatch: got {got:#x} expected {int(value):#x}"

    for addr, values in (expect.get("memory") or {}).items():
        if not isinstance(values, list):
            values = [values]
        got_mem = list(dp.memory[int(addr) : int(addr) + len(values)])
        assert got_mem == [int(v) for v in values], f"memory[{int(addr):#05x}] mismatch: got {got_mem}"

    if "display_rows" in expect:
        lines = dp.display.render().splitlines()
        for row, text in expect["display_rows"].items():
            assert lines[int(row)].startswith(text), f"row {row} mismatch:\n{lines[int(row)]}\n{text}"

    if "lit_pixels" in expect:
        assert dp.display.lit_count() == int(expect["lit_pixels"])

    for fragment in expect.get("log_contains") or []:
        assert fragment in log_text, f"log line missing: {fragment!r}"
