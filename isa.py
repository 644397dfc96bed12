"""ISA: instruction encodings and helpers."""

import struct
from enum import IntEnum
from typing import NamedTuple

from errors import UnknownOpcodeError


class OpCode(IntEnum):
    """Keeps every concrete operation, valued by its word with operands zeroed."""

    SYS = 0x0000  # 0NNN legacy machine-code call, ignored
    CLS = 0x00E0
    RET = 0x00EE

    JP = 0x1000  # PC = NNN
    CALL = 0x2000
    SE_IMM = 0x3000  # skip if VX == NN
    SNE_IMM = 0x4000  # skip if VX != NN
    SE_REG = 0x5000  # skip if VX == VY
    LD_IMM = 0x6000  # VX = NN
    ADD_IMM = 0x7000  # VX += NN, VF untouched

    LD_REG = 0x8000
    OR = 0x8001
    AND = 0x8002
    XOR = 0x8003
    ADD_REG = 0x8004  # VF = carry
    SUB = 0x8005  # VF = no borrow
    SHR = 0x8006  # VF = bit 0
    SUBN = 0x8007  # VX = VY - VX, VF = no borrow
    SHL = 0x800E  # VF = bit 7

    SNE_REG = 0x9000  # skip if VX != VY
    LD_I = 0xA000
    JP_V0 = 0xB000  # PC = NNN + V0
    RND = 0xC000
    DRW = 0xD000

    SKP = 0xE09E  # skip if key VX held
    SKNP = 0xE0A1  # skip if key VX not held

    LD_VX_DT = 0xF007
    LD_KEY = 0xF00A  # wait for key
    LD_DT = 0xF015
    LD_ST = 0xF018
    ADD_I = 0xF01E
    LD_FONT = 0xF029
    LD_BCD = 0xF033
    STORE_REGS = 0xF055  # MEM[I..I+X] = V0..VX
    LOAD_REGS = 0xF065  # V0..VX = MEM[I..I+X]


# Instructions are two bytes, high byte first.
INSTR_SIZE = 2


class Fields(NamedTuple):
    """Structural fields of one instruction word."""

    word: int
    family: int
    x: int
    y: int
    n: int
    nn: int
    nnn: int


_FAMILY: dict[int, OpCode] = {
    0x1: OpCode.JP,
    0x2: OpCode.CALL,
    0x3: OpCode.SE_IMM,
    0x4: OpCode.SNE_IMM,
    0x6: OpCode.LD_IMM,
    0x7: OpCode.ADD_IMM,
    0xA: OpCode.LD_I,
    0xB: OpCode.JP_V0,
    0xC: OpCode.RND,
    0xD: OpCode.DRW,
}

# family 0x8 selects on N
_ALU: dict[int, OpCode] = {
    0x0: OpCode.LD_REG,
    0x1: OpCode.OR,
    0x2: OpCode.AND,
    0x3: OpCode.XOR,
    0x4: OpCode.ADD_REG,
    0x5: OpCode.SUB,
    0x6: OpCode.SHR,
    0x7: OpCode.SUBN,
    0xE: OpCode.SHL,
}

# family 0xE selects on NN
_KEY: dict[int, OpCode] = {
    0x9E: OpCode.SKP,
    0xA1: OpCode.SKNP,
}

# family 0xF selects on NN
_MISC: dict[int, OpCode] = {
    0x07: OpCode.LD_VX_DT,
    0x0A: OpCode.LD_KEY,
    0x15: OpCode.LD_DT,
    0x18: OpCode.LD_ST,
    0x1E: OpCode.ADD_I,
    0x29: OpCode.LD_FONT,
    0x33: OpCode.LD_BCD,
    0x55: OpCode.STORE_REGS,
    0x65: OpCode.LOAD_REGS,
}


def fields(word: int) -> Fields:
    """Split a 16-bit word into its bit fields. No validation is done."""
    word &= 0xFFFF
    return Fields(
        word=word,
        family=(word >> 12) & 0xF,
        x=(word >> 8) & 0xF,
        y=(word >> 4) & 0xF,
        n=word & 0xF,
        nn=word & 0xFF,
        nnn=word & 0xFFF,
    )


def decode(word: int) -> tuple[OpCode, Fields]:
    """Decode an instruction word.

    Returns (OpCode, Fields).
    Raises UnknownOpcodeError if the word matches no operation.
    """
    f = fields(word)
    op: OpCode | None
    if f.family == 0x0:
        if f.word == OpCode.CLS:
            op = OpCode.CLS
        elif f.word == OpCode.RET:
            op = OpCode.RET
        else:
            op = OpCode.SYS
    elif f.family in (0x5, 0x9):
        # 5XY0 / 9XY0 only; other low nibbles are undefined
        op = None
        if f.n == 0:
            op = OpCode.SE_REG if f.family == 0x5 else OpCode.SNE_REG
    elif f.family == 0x8:
        op = _ALU.get(f.n)
    elif f.family == 0xE:
        op = _KEY.get(f.nn)
    elif f.family == 0xF:
        op = _MISC.get(f.nn)
    else:
        op = _FAMILY.get(f.family)

    if op is None:
        msg = f"Unknown opcode {f.word:04X}"
        raise UnknownOpcodeError(msg)
    return op, f


def encode(opcode: OpCode, x: int = 0, y: int = 0, n: int = 0, nn: int = 0, nnn: int = 0) -> int:
    """Encode an instruction word from its operation and operands.

    Operands that the operation does not use must be left at 0.
    """
    word = int(opcode) | ((x & 0xF) << 8) | ((y & 0xF) << 4) | (n & 0xF) | (nn & 0xFF) | (nnn & 0xFFF)
    return word & 0xFFFF


def encode_program(words: list[int]) -> bytes:
    """Pack instruction words big-endian into program bytes."""
    return b"".join(struct.pack(">H", w & 0xFFFF) for w in words)


def mnemonic(opcode: OpCode, f: Fields) -> str:
    """Get operation mnemonic."""
    if opcode in (OpCode.CLS, OpCode.RET):
        return opcode.name
    if opcode in (OpCode.SYS, OpCode.JP, OpCode.CALL, OpCode.LD_I, OpCode.JP_V0):
        return f"{opcode.name} {f.nnn:03X}"
    if opcode in (OpCode.SE_IMM, OpCode.SNE_IMM, OpCode.LD_IMM, OpCode.ADD_IMM, OpCode.RND):
        return f"{opcode.name} V{f.x:X}, {f.nn:02X}"
    if opcode == OpCode.DRW:
        return f"{opcode.name} V{f.x:X}, V{f.y:X}, {f.n}"
    if opcode in (OpCode.SE_REG, OpCode.SNE_REG) or f.family == 0x8:
        return f"{opcode.name} V{f.x:X}, V{f.y:X}"
    return f"{opcode.name} V{f.x:X}"
