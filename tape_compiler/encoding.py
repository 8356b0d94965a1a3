"""Instruction encoding for the tape machine.

Every instruction is four words wide: an opcode and three operand fields
(two sources, one destination).  The opcode is a plain sum:

    opcode = operation class + operation/predicate [+ JUMP_IF_RESULT]
             [+ IMMEDIATE_OPERAND_0] [+ IMMEDIATE_OPERAND_1]

Non-immediate operands name one of the machine registers below.  Reading or
writing ``Address.RAM`` goes through the RAM cell currently selected by
``Address.RAM_ADDRESS_REGISTER``; ``Address.JUMP_BACK_RAM`` works the same way
with ``Address.JUMP_BACK_RAM_ADDRESS``.  Writing ``Address.PROGRAM_COUNTER``
is a jump.

Jump targets are word addresses, i.e. ``instruction_index * 4``.  Targets that
are not known yet are emitted as a ``Label`` and filled in by ``Tape.resolve``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import IntEnum
import logging
from typing import List, Optional, Tuple, Union

from tape_compiler.errors import UnclosedConstruct

logger = logging.getLogger(__name__)

INSTRUCTION_WIDTH = 4


class OpClass(IntEnum):
    ALU = 0
    CONDITIONS = 16
    SHIFT_LEFT = 32
    SHIFT_RIGHT = 48


class AluOp(IntEnum):
    ADD = 0
    SUBTRACT = 1
    AND = 2
    OR = 3
    NOT = 4
    XOR = 5
    MOVE = 6


class Predicate(IntEnum):
    EQUAL = 0
    NOT_EQUAL = 1
    SMALLER = 2
    SMALLER_EQUAL = 3
    GREATER = 4
    GREATER_EQUAL = 5
    ALWAYS = 6
    NEVER = 7


# Predicates use the low three bits, the classes start at 16.
JUMP_IF_RESULT = 8
IMMEDIATE_OPERAND_1 = 64
IMMEDIATE_OPERAND_0 = 128


class Address(IntEnum):
    """Fixed machine registers; never handed out by the memory pool."""

    RAM = 0
    JUMP_BACK_RAM = 1
    PROGRAM_COUNTER = 2
    RAM_ADDRESS_REGISTER = 3
    JUMP_BACK_RAM_ADDRESS = 4
    SCRATCH_0 = 5
    SCRATCH_1 = 6
    JUMP_TARGET_REGISTER = 7
    JUMP_BACK_DEPTH = 8


@dataclass(frozen=True)
class Opcode:
    op_class: OpClass
    operation: int
    jump: bool = False
    immediate_0: bool = False
    immediate_1: bool = False

    def encode(self) -> int:
        value = int(self.op_class) + int(self.operation)
        if self.jump:
            value += JUMP_IF_RESULT
        if self.immediate_0:
            value += IMMEDIATE_OPERAND_0
        if self.immediate_1:
            value += IMMEDIATE_OPERAND_1
        return value

    def with_immediates(self, immediate_0: bool = False, immediate_1: bool = False) -> "Opcode":
        return replace(self, immediate_0=immediate_0, immediate_1=immediate_1)

    def as_branch(self) -> "Opcode":
        if self.op_class != OpClass.CONDITIONS:
            raise ValueError(f"only conditions can branch, got {self.op_class.name}")
        return replace(self, jump=True)

    def __str__(self) -> str:
        return str(self.encode())


def alu(op: AluOp, immediate_0: bool = False, immediate_1: bool = False) -> Opcode:
    return Opcode(OpClass.ALU, op, immediate_0=immediate_0, immediate_1=immediate_1)


def condition(predicate: Predicate, jump: bool = False,
              immediate_0: bool = False, immediate_1: bool = False) -> Opcode:
    return Opcode(OpClass.CONDITIONS, predicate, jump=jump,
                  immediate_0=immediate_0, immediate_1=immediate_1)


class Label:
    """A word address that becomes known after the instruction using it."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.address: Optional[int] = None

    @property
    def bound(self) -> bool:
        return self.address is not None

    def bind(self, address: int) -> None:
        if self.address is not None:
            raise ValueError(f"label {self.name} already bound to {self.address}")
        self.address = address
        logger.debug("label %s -> %d", self.name, address)

    def __repr__(self) -> str:
        return f"Label({self.name!r}, {self.address!r})"


Operand = Union[int, Label]


@dataclass(frozen=True)
class Instruction:
    opcode: Opcode
    a: Operand = 0
    b: Operand = 0
    destination: Operand = 0
    comment: str = ""

    @property
    def resolved(self) -> bool:
        return not any(isinstance(v, Label) for v in (self.a, self.b, self.destination))

    def fields(self) -> Tuple[int, int, int, int]:
        if not self.resolved:
            raise ValueError(f"instruction has unresolved operands: {self}")
        return self.opcode.encode(), int(self.a), int(self.b), int(self.destination)

    def render(self, index: int, comments: bool = True, comment_prefix: str = " # ",
               instruction_numbers: bool = False) -> str:
        opcode, a, b, destination = self.fields()
        line = f"{opcode} {a} {b} {destination}"
        if comments:
            numbers = ""
            if instruction_numbers:
                start = index * INSTRUCTION_WIDTH
                numbers = "[" + ", ".join(str(start + i) for i in range(INSTRUCTION_WIDTH)) + "]"
            line += f"{comment_prefix}{numbers}{self.comment}"
        return line


@dataclass
class Fixup:
    index: int
    field_name: str
    label: Label


@dataclass
class Tape:
    """The single output list of a compilation.

    Instructions keep their index once emitted; jump targets that depend on
    later code are recorded as fixups and patched in one pass by ``resolve``.
    """

    instructions: List[Instruction] = field(default_factory=list)
    fixups: List[Fixup] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.instructions)

    def here(self) -> int:
        """Word address of the next instruction to be emitted."""
        return self.address_of(len(self.instructions))

    @staticmethod
    def address_of(index: int) -> int:
        return index * INSTRUCTION_WIDTH

    def emit(self, opcode: Opcode, a: Operand = 0, b: Operand = 0,
             destination: Operand = 0, comment: str = "") -> int:
        index = len(self.instructions)
        instruction = Instruction(opcode, a, b, destination, comment)
        self.instructions.append(instruction)
        for name in ("a", "b", "destination"):
            value = getattr(instruction, name)
            if isinstance(value, Label):
                self.fixups.append(Fixup(index, name, value))
        return index

    def resolve(self) -> List[Instruction]:
        for fixup in self.fixups:
            if not fixup.label.bound:
                raise UnclosedConstruct(f"jump target '{fixup.label.name}' was never closed")
            current = self.instructions[fixup.index]
            self.instructions[fixup.index] = replace(current, **{fixup.field_name: fixup.label.address})
            logger.debug("backpatched instruction %d (%s) with %d",
                         fixup.index, fixup.field_name, fixup.label.address)
        self.fixups = []
        return list(self.instructions)
