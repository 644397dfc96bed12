"""Processor (Datapath + ControlUnit) and CLI wrapper.

The Datapath owns all machine state: memory, registers, the return stack,
timers, the pressed-key set and the framebuffer. The ControlUnit runs the
FETCH-DECODE-EXEC cycle over it, one instruction per `step()`. Timing is the
host's business: it calls `step()` at its instruction rate and
`tick_timers()` at 60Hz.
"""

from __future__ import annotations

import logging
import random
import struct
import sys
from pathlib import Path
from typing import Any

from config import ConfigError, load_config
from display import Display
from errors import (
    MachineError,
    OutOfBoundsMemoryAccessError,
    ProgramTooLargeError,
    StackOverflowError,
    StackUnderflowError,
    UnknownOpcodeError,
)
from isa import INSTR_SIZE, Fields, OpCode, decode, mnemonic

LOGFILE = "processor.log"

MEM_SIZE = 0x1000
PROGRAM_START = 0x200
MAX_PROGRAM_SIZE = MEM_SIZE - PROGRAM_START
NUM_REGISTERS = 16
STACK_DEPTH = 16
NUM_KEYS = 16

FONT_START = 0x000
GLYPH_SIZE = 5
# hex digits 0-F, 4x5 pixels each
FONT = bytes(
    [
        0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
        0x20, 0x60, 0x20, 0x20, 0x70,  # 1
        0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
        0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
        0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
        0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
        0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
        0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
        0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
        0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
        0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
        0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
        0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
        0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
        0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
        0xF0, 0x80, 0xF0, 0x80, 0x80,  # F
    ]
)

# step() results
RUNNING = "running"
WAITING = "waiting"


def init_logging(logfile: str = LOGFILE, debug: bool = False, console: bool = False) -> None:
    """Configure root logger to write to `logfile`.

    If debug=True set DEBUG level. If console=True also echo logs to stdout.
    In debug mode every record after the first is indented by four spaces so
    the per-step trace lines up under the header line.
    """
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    lvl = logging.DEBUG if debug else logging.CRITICAL
    root.setLevel(lvl)

    if debug:
        file_fmt = "%(levelname)s %(name)s:%(filename)s:%(lineno)d %(message)s"
    else:
        file_fmt = "%(levelname)-5s %(message)s"

    class _IndentOnceFormatter(logging.Formatter):
        def __init__(self, fmt: str | None = None):
            super().__init__(fmt)
            self._seen_first = False

        def format(self, record: logging.LogRecord) -> str:
            s = super().format(record)
            if not self._seen_first:
                self._seen_first = True
                return s
            return "    " + s

    fh = logging.FileHandler(logfile, mode="w", encoding="utf-8")
    fh.setLevel(lvl)
    fh.setFormatter(_IndentOnceFormatter(file_fmt) if debug else logging.Formatter(file_fmt))
    root.addHandler(fh)

    if debug and console:
        ch = logging.StreamHandler(sys.stdout)
        ch.setLevel(lvl)
        ch.setFormatter(logging.Formatter("%(levelname)5s %(message)s"))
        root.addHandler(ch)


class Datapath:
    """Datapath (memory + registers + stack + timers + keys + display) for the VM."""

    program: bytes
    memory: bytearray

    V: list[int]
    I: int  # noqa: E741
    PC: int

    stack: list[int]
    SP: int  # next free stack slot, 0..STACK_DEPTH

    DT: int
    ST: int

    keys: set[int]
    display: Display

    tick: int
    shift_flag_lsb: bool
    load_font: bool
    lenient_log: bool
    rng: random.Random

    def __init__(
        self,
        program: bytes = b"",
        shift_flag_lsb: bool = False,
        load_font: bool = True,
        rng_seed: int | None = None,
        lenient_log: bool = False,
    ) -> None:
        """Initialize power-on state and load `program` at PROGRAM_START."""
        self.shift_flag_lsb = bool(shift_flag_lsb)
        self.load_font = bool(load_font)
        self.lenient_log = bool(lenient_log)
        self.rng = random.Random(rng_seed)
        self.display = Display()
        self.program = b""
        self.reset()
        if program:
            self.load(program)

    def reset(self) -> None:
        """Restore power-on state. The loaded program stays in memory."""
        self.memory = bytearray(MEM_SIZE)
        if self.load_font:
            self.memory[FONT_START : FONT_START + len(FONT)] = FONT
        if self.program:
            self.memory[PROGRAM_START : PROGRAM_START + len(self.program)] = self.program

        self.V = [0] * NUM_REGISTERS
        self.I = 0
        self.PC = PROGRAM_START
        self.stack = [0] * STACK_DEPTH
        self.SP = 0
        self.DT = 0
        self.ST = 0
        self.keys = set()
        self.display.clear()
        self.display.clear_redraw()
        self.tick = 0

    def load(self, program: bytes) -> None:
        """Copy `program` into memory at PROGRAM_START.

        Raises ProgramTooLargeError if it does not fit below MEM_SIZE.
        """
        data = bytes(program)
        if len(data) > MAX_PROGRAM_SIZE:
            msg = f"Program is {len(data)} bytes, at most {MAX_PROGRAM_SIZE} fit above {PROGRAM_START:#05x}"
            raise ProgramTooLargeError(msg)
        self.memory[PROGRAM_START : PROGRAM_START + len(data)] = data
        self.program = data
        logging.debug("Datapath: loaded %d program bytes at %03X", len(data), PROGRAM_START)

    # memory access; every effective address must lie in 0..MEM_SIZE-1
    def _check_range(self, addr: int, length: int = 1) -> None:
        if addr < 0 or addr + length > MEM_SIZE:
            last = addr + length - 1
            msg = f"memory access {addr:#05x}..{last:#05x} outside 0x000..{MEM_SIZE - 1:#05x}"
            raise OutOfBoundsMemoryAccessError(msg)

    def read_byte(self, addr: int) -> int:
        self._check_range(addr)
        return self.memory[addr]

    def write_byte(self, addr: int, value: int) -> None:
        self._check_range(addr)
        self.memory[addr] = value & 0xFF

    def read_block(self, addr: int, length: int) -> bytes:
        """Read `length` bytes at `addr`, checked as a whole before reading."""
        self._check_range(addr, length)
        return bytes(self.memory[addr : addr + length])

    def write_block(self, addr: int, data: list[int]) -> None:
        """Write `data` at `addr`, checked as a whole before writing."""
        self._check_range(addr, len(data))
        for i, b in enumerate(data):
            self.memory[addr + i] = b & 0xFF

    def fetch_word(self, addr: int) -> int:
        """Read one big-endian instruction word."""
        self._check_range(addr, INSTR_SIZE)
        (word,) = struct.unpack(">H", self.memory[addr : addr + INSTR_SIZE])
        return int(word)

    def stack_push(self, value: int) -> None:
        if self.SP >= STACK_DEPTH:
            msg = f"return stack full ({STACK_DEPTH} entries) pushing {value:#05x}"
            raise StackOverflowError(msg)
        self.stack[self.SP] = value & 0xFFFF
        self.SP += 1
        logging.debug("stack_push: %03X (SP=%d)", value, self.SP)

    def stack_pop(self) -> int:
        if self.SP <= 0:
            msg = "return with empty stack"
            raise StackUnderflowError(msg)
        self.SP -= 1
        value = self.stack[self.SP]
        logging.debug("stack_pop: %03X (SP=%d)", value, self.SP)
        return value

    def tick_timers(self) -> None:
        """Decrement DT and ST by one, never below zero. Called at 60Hz."""
        if self.DT > 0:
            self.DT -= 1
        if self.ST > 0:
            self.ST -= 1
            if self.ST == 0:
                logging.debug("sound timer expired")

    @property
    def sound_on(self) -> bool:
        return self.ST > 0

    def set_key_state(self, key: int, pressed: bool) -> None:
        """Mark a key 0..15 as held or released."""
        if not 0 <= key < NUM_KEYS:
            msg = f"key must be in 0..{NUM_KEYS - 1}, got {key}"
            raise ValueError(msg)
        if pressed:
            self.keys.add(key)
        else:
            self.keys.discard(key)

    def held_key(self) -> int | None:
        """Lowest held key, or None when nothing is held."""
        if not self.keys:
            return None
        return min(self.keys)


class ControlUnit:
    """Control unit implementing the FETCH-DECODE-EXEC cycle for the Datapath."""

    dp: Datapath
    last_opcode: OpCode | None  # operation executed by the latest step

    def __init__(self, dp: Datapath) -> None:
        """Create a ControlUnit bound to `dp`."""
        self.dp = dp
        self.last_opcode = None

    def _log_step(self, pc: int, instr: str, state: str) -> None:
        if self.dp.lenient_log:
            return
        dp = self.dp
        regs = " ".join(f"{v:02X}" for v in dp.V)
        left = f"TICK: {dp.tick:5d} PC: {pc:03X} I: {dp.I:03X} SP: {dp.SP:2d} DT: {dp.DT:3d} ST: {dp.ST:3d} "
        right = f"V: {regs} STATE: {state:<8}\tINSTR: {instr}"
        logging.debug(left + right)

    def step(self) -> str:
        """Fetch, decode and execute one instruction.

        Returns WAITING when a key-wait found no key held (the same
        instruction runs again on the next call), otherwise RUNNING.
        Machine faults propagate to the caller.
        """
        dp = self.dp
        pc = dp.PC
        try:
            opcode, f = decode(dp.fetch_word(pc))
            dp.PC = (pc + INSTR_SIZE) & 0xFFFF
            state = self.exec(opcode, f)
            self.last_opcode = opcode
        except MachineError as e:
            logging.debug("[tick %d] fault at PC %03X: %s", dp.tick, pc, e)
            raise
        dp.tick += 1
        self._log_step(pc, mnemonic(opcode, f), state)
        return state

    # host surface, forwarded to the datapath
    def load(self, program: bytes) -> None:
        self.dp.load(program)

    def set_key_state(self, key: int, pressed: bool) -> None:
        self.dp.set_key_state(key, pressed)

    def tick_timers(self) -> None:
        self.dp.tick_timers()

    def run(self, tick_limit: int, steps_per_timer_tick: int = 10, pause_tick: int | None = None) -> str:
        """Step until the tick limit, a pause, a stuck key-wait or a JP to itself.

        Returns "stopped", "paused", "waiting" or "halted".
        Key state cannot change during the run, so a key-wait with nothing
        held ends it.
        """
        dp = self.dp
        while dp.tick < tick_limit:
            if pause_tick is not None and dp.tick == pause_tick:
                logging.debug("[tick %d] paused", dp.tick)
                return "paused"
            pc = dp.PC
            state = self.step()
            if dp.tick % steps_per_timer_tick == 0:
                dp.tick_timers()
            if state == WAITING:
                logging.debug("[tick %d] waiting for a key with none held -> stop", dp.tick)
                return WAITING
            if self.last_opcode == OpCode.JP and dp.PC == pc:
                logging.debug("[tick %d] jump to self at %03X -> halt", dp.tick, pc)
                return "halted"
        return "stopped"

    def exec(self, opcode: OpCode, f: Fields) -> str:  # noqa: C901
        """Execute a single decoded instruction (hardwired control unit)."""
        dp = self.dp
        V = dp.V
        vx = V[f.x]
        vy = V[f.y]

        # flow control
        if opcode == OpCode.SYS:
            logging.debug("SYS %03X ignored", f.nnn)
            return RUNNING
        if opcode == OpCode.CLS:
            dp.display.clear()
            return RUNNING
        if opcode == OpCode.RET:
            dp.PC = dp.stack_pop()
            return RUNNING
        if opcode == OpCode.JP:
            dp.PC = f.nnn
            return RUNNING
        if opcode == OpCode.CALL:
            dp.stack_push(dp.PC)
            dp.PC = f.nnn
            return RUNNING
        if opcode == OpCode.JP_V0:
            dp.PC = (f.nnn + V[0]) & 0xFFFF
            return RUNNING

        # conditional skips
        if opcode in (OpCode.SE_IMM, OpCode.SNE_IMM, OpCode.SE_REG, OpCode.SNE_REG, OpCode.SKP, OpCode.SKNP):
            if opcode == OpCode.SE_IMM:
                skip = vx == f.nn
            elif opcode == OpCode.SNE_IMM:
                skip = vx != f.nn
            elif opcode == OpCode.SE_REG:
                skip = vx == vy
            elif opcode == OpCode.SNE_REG:
                skip = vx != vy
            elif opcode == OpCode.SKP:
                skip = vx in dp.keys
            else:
                skip = vx not in dp.keys
            if skip:
                dp.PC = (dp.PC + INSTR_SIZE) & 0xFFFF
            return RUNNING

        # immediates
        if opcode == OpCode.LD_IMM:
            V[f.x] = f.nn
            return RUNNING
        if opcode == OpCode.ADD_IMM:
            V[f.x] = (vx + f.nn) & 0xFF
            return RUNNING

        # register ALU; flags come from the operands before the write and
        # VF is written last, so the flag wins when X is F
        if opcode == OpCode.LD_REG:
            V[f.x] = vy
            return RUNNING
        if opcode == OpCode.OR:
            V[f.x] = vx | vy
            return RUNNING
        if opcode == OpCode.AND:
            V[f.x] = vx & vy
            return RUNNING
        if opcode == OpCode.XOR:
            V[f.x] = vx ^ vy
            return RUNNING
        if opcode == OpCode.ADD_REG:
            total = vx + vy
            V[f.x] = total & 0xFF
            V[0xF] = 1 if total > 0xFF else 0
            return RUNNING
        if opcode == OpCode.SUB:
            V[f.x] = (vx - vy) & 0xFF
            V[0xF] = 1 if vx >= vy else 0
            return RUNNING
        if opcode == OpCode.SUBN:
            V[f.x] = (vy - vx) & 0xFF
            V[0xF] = 1 if vy >= vx else 0
            return RUNNING
        if opcode == OpCode.SHR:
            V[f.x] = vx >> 1
            V[0xF] = vx & 0x1
            return RUNNING
        if opcode == OpCode.SHL:
            V[f.x] = (vx << 1) & 0xFF
            V[0xF] = vx & 0x1 if dp.shift_flag_lsb else (vx >> 7) & 0x1
            return RUNNING

        # index register and memory
        if opcode == OpCode.LD_I:
            dp.I = f.nnn
            return RUNNING
        if opcode == OpCode.ADD_I:
            dp.I = (dp.I + vx) & 0xFFFF
            return RUNNING
        if opcode == OpCode.LD_FONT:
            dp.I = FONT_START + vx * GLYPH_SIZE
            return RUNNING
        if opcode == OpCode.LD_BCD:
            dp.write_block(dp.I, [vx // 100, (vx // 10) % 10, vx % 10])
            return RUNNING
        if opcode == OpCode.STORE_REGS:
            dp.write_block(dp.I, V[: f.x + 1])
            return RUNNING
        if opcode == OpCode.LOAD_REGS:
            V[: f.x + 1] = list(dp.read_block(dp.I, f.x + 1))
            return RUNNING

        if opcode == OpCode.RND:
            V[f.x] = dp.rng.randrange(256) & f.nn
            return RUNNING

        if opcode == OpCode.DRW:
            rows = dp.read_block(dp.I, f.n)
            V[0xF] = 0
            if dp.display.draw_sprite(vx, vy, rows):
                V[0xF] = 1
            return RUNNING

        # timers and keys
        if opcode == OpCode.LD_VX_DT:
            V[f.x] = dp.DT
            return RUNNING
        if opcode == OpCode.LD_DT:
            dp.DT = vx
            return RUNNING
        if opcode == OpCode.LD_ST:
            dp.ST = vx
            return RUNNING
        if opcode == OpCode.LD_KEY:
            key = dp.held_key()
            if key is None:
                # re-run this instruction on the next step
                dp.PC = (dp.PC - INSTR_SIZE) & 0xFFFF
                return WAITING
            V[f.x] = key
            logging.debug("LD_KEY: V%X <- key %X", f.x, key)
            return RUNNING

        # decode() only yields known operations
        msg = f"Unhandled opcode: {opcode!r}"
        raise UnknownOpcodeError(msg)


# ---------- Public API ----------
def make_datapath(program: bytes, config: dict[str, Any] | None = None) -> Datapath:
    """Build a Datapath from normalized or partial config."""
    cfg = load_config(dict(config) if config is not None else None)
    return Datapath(
        program,
        shift_flag_lsb=cfg["shift_flag_lsb"],
        load_font=cfg["load_font"],
        rng_seed=cfg["rng_seed"],
        lenient_log=cfg["lenient_log"],
    )


def run_bytes(
    program: bytes, config: dict[str, Any] | None, keys: list[int] | None = None
) -> tuple[str, int, str]:
    """Run the VM headless on `program` and return (display_text, ticks, state).

    `keys` are held for the whole run. State is one of "stopped", "paused",
    "waiting", "halted" or "fault".
    """
    cfg = load_config(dict(config) if config is not None else None)
    dp = make_datapath(program, cfg)
    for k in keys or []:
        dp.set_key_state(k, True)
    cu = ControlUnit(dp)
    try:
        state = cu.run(cfg["tick_limit"], cfg["steps_per_timer_tick"], cfg["pause_tick"])
    except MachineError as e:
        logging.debug("run_bytes: machine fault after %d ticks: %s", dp.tick, e)
        state = "fault"
    return dp.display.render(), dp.tick, state


# ---------- CLI ----------
if __name__ == "__main__":
    import argparse

    ap = argparse.ArgumentParser(
        description="Headless VM runner. Loads a binary program at 0x200, runs it and prints the framebuffer."
    )
    ap.add_argument("program", help="program binary (.ch8)")
    ap.add_argument("--config", help="path to yaml config", default=None)
    ap.add_argument("--keys", help="comma separated hex keys held during the run, e.g. 1,A", default="")

    help_debug = "enable debug logging to logfile (detailed per-step state)."
    help_logfile = "path to processor log"
    help_console = "also echo logs to console (only when --debug)"
    ap.add_argument("--debug", action="store_true", help=help_debug)
    ap.add_argument("--logfile", default=LOGFILE, help=help_logfile)
    ap.add_argument("--console", action="store_true", help=help_console)
    args = ap.parse_args()

    init_logging(logfile=args.logfile, debug=args.debug, console=args.console)

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        print("Bad config:", e)
        sys.exit(2)

    try:
        held = [int(k, 16) for k in args.keys.split(",") if k.strip()]
    except ValueError:
        print("Bad --keys value:", args.keys)
        sys.exit(2)

    code_path = Path(args.program)
    if not code_path.exists():
        print("Program file not found:", args.program)
        sys.exit(2)

    try:
        screen, ticks, state = run_bytes(code_path.read_bytes(), cfg, held)
    except (ProgramTooLargeError, ValueError) as e:
        print("Cannot run program:", e)
        sys.exit(2)

    sys.stdout.write(screen)
    sys.stdout.write("\n")
    sys.stdout.write("TICKS: " + str(ticks) + " STATE: " + state)
    sys.stdout.write("\n")
