#!/usr/bin/env python3
"""Single-pass compiler from tape assembly to numeric machine instructions.

Statements are one per line, keywords are case-insensitive and `#` starts a
comment.  Operands use the sigils described in ``tape_compiler.scopes``.

    SET   dest value          (VAR is an alias)
    ADD   a b dest            also SUB, AND, OR, XOR
    EQ    a b dest            also NEQ, SM, SMEQ, GR, GREQ
    AW    dest                also NV
    DEF   name ... ENDDEF
    CALL  name
    IF    <condition> ... ENDIF
    WHILE <condition> ... ENDWHILE

Inside IF/WHILE the condition is one comparison without destination
(``IF GR $x 0``) or AW/NV without operands.  It compiles to a conditional
jump into the block body followed by a jump past the block, so the body is
skipped when the comparison does not hold.

Example:

    SET $n 3
    WHILE GR $n 0
      SUB $n 1 $n
    ENDWHILE

Functions emulate a call stack in RAM: CALL stores its return address in the
jump-back cell selected by the current call depth, bumps the depth and jumps
to the body.  ENDDEF drops the depth again and jumps back through that cell.
A body is entered through CALL only; falling through a DEF jumps over it.

    python -m tape_compiler.compiler program.tape -o program.out --numbers
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from tape_compiler.encoding import (
    Address,
    AluOp,
    Instruction,
    Label,
    Opcode,
    Predicate,
    Tape,
    alu,
    condition,
)
from tape_compiler.errors import (
    CompilerError,
    IllegalNestedConstruct,
    MalformedStatement,
    UnclosedConstruct,
)
from tape_compiler.memory import DEFAULT_MEMORY_SIZE, MemoryPool
from tape_compiler.registries import (
    BranchBlock,
    BranchRegistry,
    ConditionRegistry,
    DefinitionRegistry,
    LoopRegistry,
)
from tape_compiler.scopes import IDENT_RE, ResolvedAddress, ScopeTable

logger = logging.getLogger(__name__)

ARITHMETIC: Dict[str, Tuple[AluOp, str]] = {
    "ADD": (AluOp.ADD, "+"),
    "SUB": (AluOp.SUBTRACT, "-"),
    "AND": (AluOp.AND, "&"),
    "OR": (AluOp.OR, "|"),
    "XOR": (AluOp.XOR, "^"),
}

COMPARISONS: Dict[str, Tuple[Predicate, str]] = {
    "EQ": (Predicate.EQUAL, "=="),
    "NEQ": (Predicate.NOT_EQUAL, "!="),
    "SM": (Predicate.SMALLER, "<"),
    "SMEQ": (Predicate.SMALLER_EQUAL, "<="),
    "GR": (Predicate.GREATER, ">"),
    "GREQ": (Predicate.GREATER_EQUAL, ">="),
}

CONSTANT_CONDITIONS: Dict[str, Predicate] = {
    "AW": Predicate.ALWAYS,
    "NV": Predicate.NEVER,
}

PREDICATE_KEYWORDS = frozenset(COMPARISONS) | frozenset(CONSTANT_CONDITIONS)

# CALL emits a fixed prologue; the return address is the word right after it.
CALL_LENGTH = 4

USAGE: Dict[str, str] = {
    "SET": "SET dest value",
    "VAR": "VAR dest value",
    "DEF": "DEF name",
    "ENDDEF": "ENDDEF",
    "CALL": "CALL name",
    "IF": "IF <condition>",
    "ENDIF": "ENDIF",
    "WHILE": "WHILE <condition>",
    "ENDWHILE": "ENDWHILE",
}


@dataclass
class CompilerOptions:
    comments: bool = True
    comment_prefix: str = " # "
    instruction_numbers: bool = False
    memory_size: int = DEFAULT_MEMORY_SIZE


@dataclass
class PredicateContext:
    keyword: str
    target: Label
    branches: int = 0


class TapeCompiler:
    def __init__(self, text: str, options: Optional[CompilerOptions] = None,
                 source_name: str = "<string>") -> None:
        self.text = text
        self.options = options or CompilerOptions()
        self.source_name = source_name
        self.memory = MemoryPool(self.options.memory_size)
        self.scopes = ScopeTable(self.memory)
        self.definitions = DefinitionRegistry()
        self.conditions = ConditionRegistry()
        self.loops = LoopRegistry()
        self.tape = Tape()
        self.instructions: List[Instruction] = []
        self._blocks: List[Tuple[str, int]] = []
        self._predicate: Optional[PredicateContext] = None
        self._lineno = 0
        self._result: Optional[List[str]] = None
        self._handlers: Dict[str, Callable[[str, Sequence[str]], None]] = {
            "SET": self._stmt_set,
            "VAR": self._stmt_set,
            "DEF": self._stmt_def,
            "ENDDEF": self._stmt_enddef,
            "CALL": self._stmt_call,
            "IF": self._stmt_if,
            "ENDIF": self._stmt_endif,
            "WHILE": self._stmt_while,
            "ENDWHILE": self._stmt_endwhile,
        }
        for keyword in ARITHMETIC:
            self._handlers[keyword] = self._stmt_arithmetic
        for keyword in COMPARISONS:
            self._handlers[keyword] = self._stmt_compare
        for keyword in CONSTANT_CONDITIONS:
            self._handlers[keyword] = self._stmt_constant

    # ------------------------------------------------------------------ utils
    @staticmethod
    def _expect(keyword: str, args: Sequence[str], count: int, usage: Optional[str] = None) -> None:
        if len(args) != count:
            raise MalformedStatement(f"{keyword} expects: {usage or USAGE[keyword]}")

    def _emit(self, opcode: Opcode, a=0, b=0, destination=0, comment: str = "") -> int:
        return self.tape.emit(opcode, a, b, destination, comment)

    def _select_cell(self, address: int, what: str) -> None:
        self._emit(alu(AluOp.MOVE, immediate_0=True), address, 0, Address.RAM_ADDRESS_REGISTER,
                   f"Move {what} address to ram-address-register")

    def _stage(self, address: int, scratch: Address, what: str) -> None:
        self._select_cell(address, what)
        self._emit(alu(AluOp.MOVE), Address.RAM, 0, scratch,
                   f"Move {what} value to {scratch.name.lower().replace('_', '-')}")

    def _jump(self, target, comment: str) -> int:
        return self._emit(alu(AluOp.MOVE, immediate_0=True), target, 0, Address.PROGRAM_COUNTER, comment)

    def _emit_binary(self, opcode: Opcode, left: ResolvedAddress, right: ResolvedAddress,
                     destination: Optional[int] = None, target: Optional[Label] = None,
                     comment: str = "") -> None:
        """Emit ``left <op> right`` into a RAM cell or as a branch to ``target``.

        Operands held in RAM are first copied into the scratch registers;
        immediates go straight into the combining instruction.
        """
        if not left.immediate and not right.immediate:
            self._stage(left.value, Address.SCRATCH_0, "first")
            self._stage(right.value, Address.SCRATCH_1, "second")
            a, b = Address.SCRATCH_0, Address.SCRATCH_1
        elif not left.immediate:
            self._stage(left.value, Address.SCRATCH_0, "first")
            a, b = Address.SCRATCH_0, right.value
        elif not right.immediate:
            self._stage(right.value, Address.SCRATCH_0, "second")
            a, b = left.value, Address.SCRATCH_0
        else:
            a, b = left.value, right.value

        if target is None:
            assert destination is not None
            self._select_cell(destination, "result")
            sink = Address.RAM
        else:
            sink = target
        self._emit(opcode.with_immediates(left.immediate, right.immediate), a, b, sink, comment)

    # ----------------------------------------------------------------- blocks
    def _open_block(self, keyword: str) -> None:
        self._blocks.append((keyword, self._lineno))

    def _close_block(self, keyword: str, closer: str) -> None:
        inner, lineno = self._blocks[-1]
        if inner != keyword:
            raise IllegalNestedConstruct(
                f"{closer} while {inner} opened on line {lineno} is still open")
        self._blocks.pop()

    def _compile_predicate(self, keyword: str, block: BranchBlock, args: Sequence[str]) -> None:
        if not args:
            raise MalformedStatement(f"{keyword} expects: {USAGE[keyword]}")
        context = PredicateContext(keyword, block.body)
        self._predicate = context
        try:
            self._process(args)
        finally:
            self._predicate = None
        if context.branches != 1:
            raise MalformedStatement(f"{keyword} condition must be a single comparison")

    def _open_branch(self, keyword: str, registry: BranchRegistry, args: Sequence[str]) -> BranchBlock:
        block = registry.open(self.tape.here())
        self._compile_predicate(keyword, block, args)
        block.skip_index = self._jump(block.end, f"Skip the {keyword} body")
        block.body.bind(self.tape.here())
        self._open_block(keyword)
        return block

    # ------------------------------------------------------------- statements
    def _stmt_set(self, keyword: str, args: Sequence[str]) -> None:
        self._expect(keyword, args, 2)
        value = self.scopes.resolve_address(args[1])
        destination = self.scopes.resolve_destination(args[0], allocate=True)
        self._select_cell(destination, "destination")
        self._emit(alu(AluOp.MOVE, immediate_0=value.immediate), value.value, 0, Address.RAM,
                   f"Move value to ram ({args[0]} = {args[1]})")

    def _stmt_arithmetic(self, keyword: str, args: Sequence[str]) -> None:
        self._expect(keyword, args, 3, f"{keyword} a b dest")
        op, symbol = ARITHMETIC[keyword]
        left = self.scopes.resolve_address(args[0])
        right = self.scopes.resolve_address(args[1])
        destination = self.scopes.resolve_destination(args[2])
        self._emit_binary(alu(op), left, right, destination=destination,
                          comment=f"{args[2]} = {args[0]} {symbol} {args[1]}")

    def _stmt_compare(self, keyword: str, args: Sequence[str]) -> None:
        predicate, symbol = COMPARISONS[keyword]
        if self._predicate is not None:
            self._expect(keyword, args, 2, f"{keyword} a b")
            left = self.scopes.resolve_address(args[0])
            right = self.scopes.resolve_address(args[1])
            self._emit_binary(condition(predicate, jump=True), left, right, target=self._predicate.target,
                              comment=f"Jump into the {self._predicate.keyword} body if "
                                      f"{args[0]} {symbol} {args[1]}")
            self._predicate.branches += 1
            return
        self._expect(keyword, args, 3, f"{keyword} a b dest")
        left = self.scopes.resolve_address(args[0])
        right = self.scopes.resolve_address(args[1])
        destination = self.scopes.resolve_destination(args[2])
        self._emit_binary(condition(predicate), left, right, destination=destination,
                          comment=f"{args[2]} = {args[0]} {symbol} {args[1]}")

    def _stmt_constant(self, keyword: str, args: Sequence[str]) -> None:
        predicate = CONSTANT_CONDITIONS[keyword]
        zero = ResolvedAddress(0, immediate=True)
        if self._predicate is not None:
            self._expect(keyword, args, 0, keyword)
            self._emit_binary(condition(predicate, jump=True), zero, zero, target=self._predicate.target,
                              comment=f"Jump into the {self._predicate.keyword} body ({predicate.name.lower()})")
            self._predicate.branches += 1
            return
        self._expect(keyword, args, 1, f"{keyword} dest")
        destination = self.scopes.resolve_destination(args[0])
        self._emit_binary(condition(predicate), zero, zero, destination=destination,
                          comment=f"{args[0]} = {predicate.name.lower()}")

    def _stmt_def(self, keyword: str, args: Sequence[str]) -> None:
        self._expect(keyword, args, 1)
        name = args[0]
        if not IDENT_RE.match(name):
            raise MalformedStatement(f"invalid definition name '{name}'")
        if self.definitions.is_open:
            open_name = self.definitions.latest_open().name
            raise IllegalNestedConstruct(f"DEF {name} cannot be nested inside DEF {open_name}")
        body_start_index = len(self.tape)
        definition = self.definitions.create(
            name, Tape.address_of(body_start_index + 1), body_start_index)
        definition.scope = self.scopes.create_child(f"definition.{name}")
        self._jump(definition.end, f"Jump to the end of the definition {name}")
        self.scopes.enter(definition.scope)
        self.definitions.open(definition)
        self._open_block(keyword)

    def _stmt_enddef(self, keyword: str, args: Sequence[str]) -> None:
        self._expect(keyword, args, 0)
        self.definitions.latest_open()
        self._close_block("DEF", keyword)
        definition = self.definitions.close_latest()

        depth = Address.JUMP_BACK_DEPTH
        self._emit(alu(AluOp.SUBTRACT, immediate_1=True), depth, 1, depth,
                   "Subtract 1 from the jump-back depth")
        self._emit(alu(AluOp.MOVE), depth, 0, Address.JUMP_BACK_RAM_ADDRESS,
                   "Move the jump-back depth to the jump-back-ram-address-register")
        self._emit(alu(AluOp.MOVE), Address.JUMP_BACK_RAM, 0, Address.PROGRAM_COUNTER,
                   "Jump to the instruction from the jump-back-ram")
        definition.end.bind(self.tape.here())
        self.scopes.leave()

    def _stmt_call(self, keyword: str, args: Sequence[str]) -> None:
        self._expect(keyword, args, 1)
        definition = self.definitions.resolve(args[0])
        return_address = Tape.address_of(len(self.tape) + CALL_LENGTH)

        depth = Address.JUMP_BACK_DEPTH
        self._emit(alu(AluOp.MOVE), depth, 0, Address.JUMP_BACK_RAM_ADDRESS,
                   "Move the jump-back depth to the jump-back-ram-address-register")
        self._emit(alu(AluOp.ADD, immediate_1=True), depth, 1, depth,
                   "Add 1 to the jump-back depth")
        self._emit(alu(AluOp.MOVE, immediate_0=True), return_address, 0, Address.JUMP_BACK_RAM,
                   "Store the return address in the jump-back-ram")
        self._jump(definition.start_instruction_address, f"Jump to the start of {definition.name}")

    def _stmt_if(self, keyword: str, args: Sequence[str]) -> None:
        self._open_branch(keyword, self.conditions, args)

    def _stmt_endif(self, keyword: str, args: Sequence[str]) -> None:
        self._expect(keyword, args, 0)
        self.conditions.latest()
        self._close_block("IF", keyword)
        block = self.conditions.close()
        block.end.bind(self.tape.here())

    def _stmt_while(self, keyword: str, args: Sequence[str]) -> None:
        self._open_branch(keyword, self.loops, args)

    def _stmt_endwhile(self, keyword: str, args: Sequence[str]) -> None:
        self._expect(keyword, args, 0)
        self.loops.latest()
        self._close_block("WHILE", keyword)
        block = self.loops.close()
        self._jump(block.start_address, "Jump back to the WHILE condition")
        block.end.bind(self.tape.here())

    # -------------------------------------------------------------- main pass
    def _process(self, parts: Sequence[str]) -> None:
        keyword = parts[0].upper()
        handler = self._handlers.get(keyword)
        if handler is None:
            raise MalformedStatement(f"unknown keyword '{parts[0]}'")
        if self._predicate is not None and keyword not in PREDICATE_KEYWORDS:
            raise IllegalNestedConstruct(
                f"{keyword} is not allowed inside an {self._predicate.keyword} condition")
        handler(keyword, parts[1:])

    def compile(self) -> List[str]:
        if self._result is not None:
            return self._result

        for lineno, raw in enumerate(self.text.splitlines(), start=1):
            stripped = raw.split("#", 1)[0].strip()
            if not stripped:
                continue
            self._lineno = lineno
            try:
                self._process(stripped.split())
            except CompilerError as exc:
                raise exc.locate(lineno, self.source_name)

        if self._blocks:
            keyword, lineno = self._blocks[-1]
            raise UnclosedConstruct(f"{keyword} is never closed", lineno, self.source_name)

        self.instructions = self.tape.resolve()
        options = self.options
        self._result = [
            instruction.render(index, options.comments, options.comment_prefix,
                               options.instruction_numbers)
            for index, instruction in enumerate(self.instructions)
        ]
        logger.info("compiled %s: %d instructions, %d RAM cells, %d definitions",
                    self.source_name, len(self.instructions), self.memory.allocated,
                    len(self.definitions.definitions))
        return self._result


def compile_source(text: str, options: Optional[CompilerOptions] = None,
                   source_name: str = "<string>") -> List[str]:
    return TapeCompiler(text, options, source_name).compile()


def compile_text(text: str, options: Optional[CompilerOptions] = None,
                 source_name: str = "<string>") -> str:
    return "\n".join(compile_source(text, options, source_name))


def main(argv: Optional[Sequence[str]] = None) -> int:
    argp = argparse.ArgumentParser(description="Compile tape assembly into numeric instructions")
    argp.add_argument("source", type=Path, help="Path to the source file")
    argp.add_argument("-o", "--output", type=Path, help="Destination file (defaults to stdout)")
    argp.add_argument("--no-comments", action="store_true", help="Do not append comments to instructions")
    argp.add_argument("--comment-prefix", default=" # ", help="Text placed before each comment")
    argp.add_argument("--numbers", action="store_true",
                      help="Annotate comments with the addresses each instruction occupies")
    argp.add_argument("--memory-size", type=int, default=DEFAULT_MEMORY_SIZE,
                      help="Number of RAM cells available for variables")
    argp.add_argument("-v", "--verbose", action="store_true", help="Log compilation steps to stderr")
    args = argp.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")

    options = CompilerOptions(
        comments=not args.no_comments,
        comment_prefix=args.comment_prefix,
        instruction_numbers=args.numbers,
        memory_size=args.memory_size,
    )
    try:
        tape = compile_text(args.source.read_text(), options, str(args.source))
    except CompilerError as exc:
        raise SystemExit(f"error: {exc}") from exc

    if args.output:
        args.output.write_text(tape + "\n")
    else:
        print(tape)
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
