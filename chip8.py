"""
CHIP-8 Virtual Machine Core
============================
A cycle-step interpreter for the CHIP-8 fantasy console: 4 KiB of memory,
sixteen 8-bit registers V0-VF, a 16-entry call stack, delay and sound
timers, a 64x32 monochrome frame buffer and a 16-key hex keypad.

Every instruction is a big-endian 16-bit word.  ``cycle()`` fetches the
word at PC, decodes it into an ``Instruction`` (an ``Op`` plus operand
fields), dispatches to the handler for that ``Op`` and finally ticks the
timers.  Decoding is table driven on the high nibble; groups 0x0, 0x8,
0xE and 0xF select the operation through a second table.

Fatal conditions are raised, never printed:
  HaltError    the 0x0000 stop word
  DecodeError  a word that is not a known instruction
  StackError   CALL with a full stack / RET with an empty one
"""

from __future__ import annotations
import functools
import random
import time
from enum import Enum
from typing import Callable, NamedTuple, Optional

from devices import FrameBuffer, Keypad, Timers, NUM_KEYS, first_pressed

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

MEM_SIZE      = 0x1000
MEM_MASK      = MEM_SIZE - 1
FONT_ADDR     = 0x000
PROGRAM_START = 0x200
MAX_PROGRAM   = MEM_SIZE - PROGRAM_START

NUM_REGS    = 16
FLAG        = 0xF     # VF: carry / borrow / collision output
STACK_DEPTH = 16

GLYPH_BYTES = 5

# Built-in hex digit glyphs 0-F, 4x5 pixels each (high nibble used)
FONT = bytes((
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
))

# ---------------------------------------------------------------------------
#  Exceptions
# ---------------------------------------------------------------------------

class Chip8Error(Exception):
    """Base for fatal conditions raised by the interpreter."""
    pass


class HaltError(Chip8Error):
    def __init__(self, pc: int, message: str = ""):
        self.pc = pc
        super().__init__(message or f"Halt instruction at {pc:#05x}")


class DecodeError(Chip8Error):
    def __init__(self, word: int, pc: Optional[int] = None):
        self.word = word
        self.pc = pc
        where = f" at {pc:#05x}" if pc is not None else ""
        super().__init__(f"Unknown instruction {word:#06x}{where}")


class StackError(Chip8Error):
    def __init__(self, pc: int, message: str):
        self.pc = pc
        super().__init__(f"{message} at {pc:#05x}")

# ---------------------------------------------------------------------------
#  Decoder
# ---------------------------------------------------------------------------

class Op(Enum):
    HALT     = "HALT"
    CLS      = "CLS"
    RET      = "RET"
    JP       = "JP"
    CALL     = "CALL"
    SE_BYTE  = "SE_BYTE"
    SNE_BYTE = "SNE_BYTE"
    SE_REG   = "SE_REG"
    LD_BYTE  = "LD_BYTE"
    ADD_BYTE = "ADD_BYTE"
    LD_REG   = "LD_REG"
    OR       = "OR"
    AND      = "AND"
    XOR      = "XOR"
    ADD_REG  = "ADD_REG"
    SUB      = "SUB"
    SHR      = "SHR"
    SUBN     = "SUBN"
    SHL      = "SHL"
    SNE_REG  = "SNE_REG"
    LD_I     = "LD_I"
    JP_V0    = "JP_V0"
    RND      = "RND"
    DRW      = "DRW"
    SKP      = "SKP"
    SKNP     = "SKNP"
    LD_VX_DT = "LD_VX_DT"
    LD_VX_K  = "LD_VX_K"
    LD_DT_VX = "LD_DT_VX"
    LD_ST_VX = "LD_ST_VX"
    ADD_I_VX = "ADD_I_VX"
    LD_F_VX  = "LD_F_VX"
    LD_B_VX  = "LD_B_VX"
    LD_I_VX  = "LD_I_VX"
    LD_VX_I  = "LD_VX_I"


# Groups keyed by the full word (0x0), the low nibble (0x8) or the low byte
# (0xE, 0xF).  Every other high nibble maps straight to an Op.
GROUP_0 = {
    0x0000: Op.HALT,
    0x00E0: Op.CLS,
    0x00EE: Op.RET,
}

GROUP_8 = {
    0x0: Op.LD_REG,
    0x1: Op.OR,
    0x2: Op.AND,
    0x3: Op.XOR,
    0x4: Op.ADD_REG,
    0x5: Op.SUB,
    0x6: Op.SHR,
    0x7: Op.SUBN,
    0xE: Op.SHL,
}

GROUP_E = {
    0x9E: Op.SKP,
    0xA1: Op.SKNP,
}

GROUP_F = {
    0x07: Op.LD_VX_DT,
    0x0A: Op.LD_VX_K,
    0x15: Op.LD_DT_VX,
    0x18: Op.LD_ST_VX,
    0x1E: Op.ADD_I_VX,
    0x29: Op.LD_F_VX,
    0x33: Op.LD_B_VX,
    0x55: Op.LD_I_VX,
    0x65: Op.LD_VX_I,
}

PRIMARY = {
    0x1: Op.JP,
    0x2: Op.CALL,
    0x3: Op.SE_BYTE,
    0x4: Op.SNE_BYTE,
    0x5: Op.SE_REG,     # 5xyN: low nibble ignored
    0x6: Op.LD_BYTE,
    0x7: Op.ADD_BYTE,
    0x9: Op.SNE_REG,    # 9xyN: low nibble ignored
    0xA: Op.LD_I,
    0xB: Op.JP_V0,
    0xC: Op.RND,
    0xD: Op.DRW,
}

MNEMONICS = {
    Op.HALT:     "HALT",
    Op.CLS:      "CLS",
    Op.RET:      "RET",
    Op.JP:       "JP {nnn:#05x}",
    Op.CALL:     "CALL {nnn:#05x}",
    Op.SE_BYTE:  "SE V{x:X}, {kk:#04x}",
    Op.SNE_BYTE: "SNE V{x:X}, {kk:#04x}",
    Op.SE_REG:   "SE V{x:X}, V{y:X}",
    Op.LD_BYTE:  "LD V{x:X}, {kk:#04x}",
    Op.ADD_BYTE: "ADD V{x:X}, {kk:#04x}",
    Op.LD_REG:   "LD V{x:X}, V{y:X}",
    Op.OR:       "OR V{x:X}, V{y:X}",
    Op.AND:      "AND V{x:X}, V{y:X}",
    Op.XOR:      "XOR V{x:X}, V{y:X}",
    Op.ADD_REG:  "ADD V{x:X}, V{y:X}",
    Op.SUB:      "SUB V{x:X}, V{y:X}",
    Op.SHR:      "SHR V{x:X}, V{y:X}",
    Op.SUBN:     "SUBN V{x:X}, V{y:X}",
    Op.SHL:      "SHL V{x:X}, V{y:X}",
    Op.SNE_REG:  "SNE V{x:X}, V{y:X}",
    Op.LD_I:     "LD I, {nnn:#05x}",
    Op.JP_V0:    "JP V0, {nnn:#05x}",
    Op.RND:      "RND V{x:X}, {kk:#04x}",
    Op.DRW:      "DRW V{x:X}, V{y:X}, {n}",
    Op.SKP:      "SKP V{x:X}",
    Op.SKNP:     "SKNP V{x:X}",
    Op.LD_VX_DT: "LD V{x:X}, DT",
    Op.LD_VX_K:  "LD V{x:X}, K",
    Op.LD_DT_VX: "LD DT, V{x:X}",
    Op.LD_ST_VX: "LD ST, V{x:X}",
    Op.ADD_I_VX: "ADD I, V{x:X}",
    Op.LD_F_VX:  "LD F, V{x:X}",
    Op.LD_B_VX:  "LD B, V{x:X}",
    Op.LD_I_VX:  "LD [I], V{x:X}",
    Op.LD_VX_I:  "LD V{x:X}, [I]",
}


class Instruction(NamedTuple):
    """A decoded instruction word and its operand fields."""
    op: Op
    word: int
    x: int      # bits 11-8
    y: int      # bits 7-4
    n: int      # bits 3-0
    kk: int     # bits 7-0
    nnn: int    # bits 11-0

    def mnemonic(self) -> str:
        return MNEMONICS[self.op].format(x=self.x, y=self.y, n=self.n,
                                          kk=self.kk, nnn=self.nnn)


@functools.lru_cache(maxsize=None)
def decode(word: int) -> Instruction:
    """Decode a 16-bit instruction word.  Raises DecodeError if unknown."""
    word &= 0xFFFF
    family = word >> 12
    if family == 0x0:
        op = GROUP_0.get(word)
    elif family == 0x8:
        op = GROUP_8.get(word & 0xF)
    elif family == 0xE:
        op = GROUP_E.get(word & 0xFF)
    elif family == 0xF:
        op = GROUP_F.get(word & 0xFF)
    else:
        op = PRIMARY[family]
    if op is None:
        raise DecodeError(word)
    return Instruction(op, word,
                       (word >> 8) & 0xF,
                       (word >> 4) & 0xF,
                       word & 0xF,
                       word & 0xFF,
                       word & 0xFFF)

# ---------------------------------------------------------------------------
#  CPU
# ---------------------------------------------------------------------------

class Chip8:
    """CHIP-8 interpreter: machine state plus the execution engine."""

    def __init__(self, clock: Callable[[], float] = time.monotonic,
                 seed: Optional[int] = None,
                 rng: Optional[random.Random] = None,
                 wrap_sprites: bool = False):
        self.clock = clock
        self.rng = rng if rng is not None else random.Random(seed)
        self.wrap_sprites = wrap_sprites

        self.memory = bytearray(MEM_SIZE)
        self.v = bytearray(NUM_REGS)
        self.stack: list[int] = [0] * STACK_DEPTH
        self.sp: int = 0
        self.pc: int = PROGRAM_START
        self._i: int = PROGRAM_START

        self.fb = FrameBuffer()
        self.keypad = Keypad()
        self.timers = Timers(clock=clock)

        self.halted: bool = False
        self.cycle_count: int = 0
        self._keys: tuple[bool, ...] = (False,) * NUM_KEYS

        self._dispatch = self._build_dispatch()
        self._load_font()

    # -- Property shortcuts --

    @property
    def i(self) -> int:
        return self._i

    @i.setter
    def i(self, value: int):
        self._i = value & MEM_MASK

    @property
    def frame_buffer(self) -> FrameBuffer:
        return self.fb

    @property
    def delay_timer(self) -> int:
        return self.timers.delay

    @delay_timer.setter
    def delay_timer(self, value: int):
        self.timers.delay = value & 0xFF

    @property
    def sound_timer(self) -> int:
        return self.timers.sound

    @sound_timer.setter
    def sound_timer(self, value: int):
        self.timers.sound = value & 0xFF

    # -- Reset / loading --

    def reset(self):
        """Return to power-on state: everything zeroed, font reloaded."""
        self.memory[:] = bytes(MEM_SIZE)
        self.v[:] = bytes(NUM_REGS)
        self.stack = [0] * STACK_DEPTH
        self.sp = 0
        self.pc = PROGRAM_START
        self._i = PROGRAM_START
        self.fb.reset()
        self.keypad.reset()
        self.timers.reset()
        self.halted = False
        self.cycle_count = 0
        self._load_font()

    def _load_font(self):
        self.memory[FONT_ADDR:FONT_ADDR + len(FONT)] = FONT

    def load_program(self, data: bytes | bytearray):
        """Reset the machine, then place *data* at 0x200."""
        if len(data) > MAX_PROGRAM:
            raise ValueError(f"Program image of {len(data)} bytes does not "
                             f"fit in {MAX_PROGRAM} bytes at {PROGRAM_START:#x}")
        self.reset()
        self.memory[PROGRAM_START:PROGRAM_START + len(data)] = data

    # -- Memory access --

    def mem_read8(self, addr: int) -> int:
        return self.memory[addr & MEM_MASK]

    def mem_write8(self, addr: int, val: int):
        self.memory[addr & MEM_MASK] = val & 0xFF

    def fetch(self) -> int:
        """Read the big-endian instruction word at PC (PC is not advanced)."""
        return (self.mem_read8(self.pc) << 8) | self.mem_read8(self.pc + 1)

    # =====================================================================
    #  CYCLE: fetch / decode / execute / timer tick
    # =====================================================================

    def cycle(self):
        """Execute one instruction and tick the timers."""
        if self.halted:
            raise HaltError(self.pc, "CPU is halted")

        word = self.fetch()
        try:
            inst = decode(word)
        except DecodeError:
            raise DecodeError(word, self.pc) from None

        self._keys = self.keypad.snapshot()
        self._dispatch[inst.op](inst)
        self.cycle_count += 1
        self.timers.tick()

    def run(self, max_cycles: int = 1_000_000) -> int:
        """Run until HALT or max_cycles.  Returns cycles executed."""
        count = 0
        for _ in range(max_cycles):
            try:
                self.cycle()
            except HaltError:
                break
            count += 1
        return count

    def _build_dispatch(self) -> dict:
        table = {
            Op.HALT:     self._op_halt,
            Op.CLS:      self._op_cls,
            Op.RET:      self._op_ret,
            Op.JP:       self._op_jp,
            Op.CALL:     self._op_call,
            Op.SE_BYTE:  self._op_se_byte,
            Op.SNE_BYTE: self._op_sne_byte,
            Op.SE_REG:   self._op_se_reg,
            Op.LD_BYTE:  self._op_ld_byte,
            Op.ADD_BYTE: self._op_add_byte,
            Op.LD_REG:   self._op_ld_reg,
            Op.OR:       self._op_or,
            Op.AND:      self._op_and,
            Op.XOR:      self._op_xor,
            Op.ADD_REG:  self._op_add_reg,
            Op.SUB:      self._op_sub,
            Op.SHR:      self._op_shr,
            Op.SUBN:     self._op_subn,
            Op.SHL:      self._op_shl,
            Op.SNE_REG:  self._op_sne_reg,
            Op.LD_I:     self._op_ld_i,
            Op.JP_V0:    self._op_jp_v0,
            Op.RND:      self._op_rnd,
            Op.DRW:      self._op_drw,
            Op.SKP:      self._op_skp,
            Op.SKNP:     self._op_sknp,
            Op.LD_VX_DT: self._op_ld_vx_dt,
            Op.LD_VX_K:  self._op_ld_vx_k,
            Op.LD_DT_VX: self._op_ld_dt_vx,
            Op.LD_ST_VX: self._op_ld_st_vx,
            Op.ADD_I_VX: self._op_add_i_vx,
            Op.LD_F_VX:  self._op_ld_f_vx,
            Op.LD_B_VX:  self._op_ld_b_vx,
            Op.LD_I_VX:  self._op_ld_i_vx,
            Op.LD_VX_I:  self._op_ld_vx_i,
        }
        missing = set(Op) - set(table)
        if missing:
            raise RuntimeError(f"No handler for {sorted(m.name for m in missing)}")
        return table

    def _next(self):
        self.pc = (self.pc + 2) & MEM_MASK

    def _skip_if(self, cond: bool):
        self.pc = (self.pc + (4 if cond else 2)) & MEM_MASK

    # =====================================================================
    #  Control flow
    # =====================================================================

    def _op_halt(self, inst: Instruction):
        self.halted = True
        raise HaltError(self.pc)

    def _op_cls(self, inst: Instruction):
        self.fb.clear()
        self._next()

    def _op_ret(self, inst: Instruction):
        if self.sp == 0:
            raise StackError(self.pc, "Return with empty stack")
        self.sp -= 1
        # the stack holds the call site, resume after it
        self.pc = self.stack[self.sp]
        self._next()

    def _op_jp(self, inst: Instruction):
        self.pc = inst.nnn

    def _op_call(self, inst: Instruction):
        if self.sp >= STACK_DEPTH:
            raise StackError(self.pc, "Stack overflow")
        self.stack[self.sp] = self.pc
        self.sp += 1
        self.pc = inst.nnn

    def _op_se_byte(self, inst: Instruction):
        self._skip_if(self.v[inst.x] == inst.kk)

    def _op_sne_byte(self, inst: Instruction):
        self._skip_if(self.v[inst.x] != inst.kk)

    def _op_se_reg(self, inst: Instruction):
        self._skip_if(self.v[inst.x] == self.v[inst.y])

    def _op_sne_reg(self, inst: Instruction):
        self._skip_if(self.v[inst.x] != self.v[inst.y])

    def _op_ld_i(self, inst: Instruction):
        self.i = inst.nnn
        self._next()

    def _op_jp_v0(self, inst: Instruction):
        self.pc = (self.v[0] + inst.nnn) & MEM_MASK

    # =====================================================================
    #  Register / arithmetic
    # =====================================================================

    def _op_ld_byte(self, inst: Instruction):
        self.v[inst.x] = inst.kk
        self._next()

    def _op_add_byte(self, inst: Instruction):
        # no carry flag for the immediate form
        self.v[inst.x] = (self.v[inst.x] + inst.kk) & 0xFF
        self._next()

    def _op_ld_reg(self, inst: Instruction):
        self.v[inst.x] = self.v[inst.y]
        self._next()

    def _op_or(self, inst: Instruction):
        self.v[inst.x] |= self.v[inst.y]
        self._next()

    def _op_and(self, inst: Instruction):
        self.v[inst.x] &= self.v[inst.y]
        self._next()

    def _op_xor(self, inst: Instruction):
        self.v[inst.x] ^= self.v[inst.y]
        self._next()

    def _op_add_reg(self, inst: Instruction):
        total = self.v[inst.x] + self.v[inst.y]
        self.v[FLAG] = 1 if total > 0xFF else 0
        self.v[inst.x] = total & 0xFF
        self._next()

    def _op_sub(self, inst: Instruction):
        a, b = self.v[inst.x], self.v[inst.y]
        self.v[FLAG] = 1 if a > b else 0
        self.v[inst.x] = (a - b) & 0xFF
        self._next()

    def _op_subn(self, inst: Instruction):
        a, b = self.v[inst.x], self.v[inst.y]
        self.v[FLAG] = 1 if b > a else 0
        self.v[inst.x] = (b - a) & 0xFF
        self._next()

    def _op_shr(self, inst: Instruction):
        src = self.v[inst.y]
        self.v[FLAG] = src & 1
        self.v[inst.x] = src >> 1
        self._next()

    def _op_shl(self, inst: Instruction):
        src = self.v[inst.y]
        self.v[FLAG] = src >> 7
        self.v[inst.x] = (src << 1) & 0xFF
        self._next()

    def _op_rnd(self, inst: Instruction):
        self.v[inst.x] = self.rng.randrange(256) & inst.kk
        self._next()

    # =====================================================================
    #  Display
    # =====================================================================

    def _op_drw(self, inst: Instruction):
        sprite = bytes(self.mem_read8(self._i + row) for row in range(inst.n))
        collided = self.fb.draw_sprite(self.v[inst.x], self.v[inst.y], sprite,
                                       wrap=self.wrap_sprites)
        self.v[FLAG] = 1 if collided else 0
        self._next()

    # =====================================================================
    #  Keypad / timers / memory block ops
    # =====================================================================

    def _op_skp(self, inst: Instruction):
        self._skip_if(self._keys[self.v[inst.x] & 0xF])

    def _op_sknp(self, inst: Instruction):
        self._skip_if(not self._keys[self.v[inst.x] & 0xF])

    def _op_ld_vx_k(self, inst: Instruction):
        key = first_pressed(self._keys)
        if key is None:
            return      # PC stays put and the word runs again next cycle
        self.v[inst.x] = key
        self._next()

    def _op_ld_vx_dt(self, inst: Instruction):
        self.v[inst.x] = self.timers.delay
        self._next()

    def _op_ld_dt_vx(self, inst: Instruction):
        self.timers.delay = self.v[inst.x]
        self._next()

    def _op_ld_st_vx(self, inst: Instruction):
        self.timers.sound = self.v[inst.x]
        self._next()

    def _op_add_i_vx(self, inst: Instruction):
        self.i = self._i + self.v[inst.x]
        self._next()

    def _op_ld_f_vx(self, inst: Instruction):
        self.i = FONT_ADDR + (self.v[inst.x] & 0xF) * GLYPH_BYTES
        self._next()

    def _op_ld_b_vx(self, inst: Instruction):
        val = self.v[inst.x]
        self.mem_write8(self._i,     val // 100)
        self.mem_write8(self._i + 1, (val // 10) % 10)
        self.mem_write8(self._i + 2, val % 10)
        self._next()

    def _op_ld_i_vx(self, inst: Instruction):
        for n in range(inst.x + 1):
            self.mem_write8(self._i + n, self.v[n])
        self.i = self._i + inst.x + 1
        self._next()

    def _op_ld_vx_i(self, inst: Instruction):
        for n in range(inst.x + 1):
            self.v[n] = self.mem_read8(self._i + n)
        self.i = self._i + inst.x + 1
        self._next()

    # -- Debug / introspection --

    def dump_regs(self) -> str:
        lines = []
        for row in range(0, NUM_REGS, 4):
            lines.append("  " + "  ".join(
                f"V{r:X}={self.v[r]:#04x}" for r in range(row, row + 4)))
        lines.append(f"  PC={self.pc:#05x}  I={self._i:#05x}  SP={self.sp}  "
                     f"DT={self.timers.delay}  ST={self.timers.sound}")
        if self.sp:
            lines.append("  STACK = " + " ".join(
                f"{a:#05x}" for a in self.stack[:self.sp]))
        return "\n".join(lines)
