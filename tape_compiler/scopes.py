"""Variable scopes and operand address resolution.

Operands are written with a sigil:

    $name   variable, resolved through the current scope
    *12     direct RAM address (``@12`` is accepted as well)
    12      immediate value

Lookups only ever see the current scope; a function body does not read the
variables of the scope it was defined in.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
import re
from typing import Dict, List, Optional

from tape_compiler.errors import AddressResolutionError, DuplicateDefinition
from tape_compiler.memory import MemoryPool

logger = logging.getLogger(__name__)

VARIABLE_SIGIL = "$"
POINTER_SIGILS = ("*", "@")
GLOBAL_SCOPE = "global"

IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

I32_MIN = -(2 ** 31)
I32_MAX = 2 ** 31 - 1
U32_MAX = 2 ** 32 - 1


class AddressKind(Enum):
    IMMEDIATE = "immediate"
    DIRECT = "direct"
    VARIABLE = "variable"


@dataclass(frozen=True)
class AddressExpression:
    kind: AddressKind
    value: int = 0
    name: str = ""

    @property
    def immediate(self) -> bool:
        return self.kind is AddressKind.IMMEDIATE

    @classmethod
    def parse(cls, token: str) -> "AddressExpression":
        token = token.strip()
        if not token:
            raise AddressResolutionError("empty operand")
        if token.startswith(VARIABLE_SIGIL):
            name = token[len(VARIABLE_SIGIL):]
            if not IDENT_RE.match(name):
                raise AddressResolutionError(f"invalid variable name '{token}'")
            return cls(AddressKind.VARIABLE, name=name)
        if token.startswith(POINTER_SIGILS):
            address = _parse_number(token[1:], token)
            if not 0 <= address <= U32_MAX:
                raise AddressResolutionError(f"address out of range: '{token}'")
            return cls(AddressKind.DIRECT, value=address)
        value = _parse_number(token, token)
        if not I32_MIN <= value <= I32_MAX:
            raise AddressResolutionError(f"immediate does not fit 32 bits: '{token}'")
        return cls(AddressKind.IMMEDIATE, value=value)


@dataclass(frozen=True)
class ResolvedAddress:
    value: int
    immediate: bool


def _parse_number(text: str, token: str) -> int:
    try:
        return int(text, 0)
    except ValueError as exc:
        raise AddressResolutionError(f"invalid operand '{token}'") from exc


@dataclass
class Scope:
    name: str
    parent: Optional["Scope"] = None
    bindings: Dict[str, int] = field(default_factory=dict)

    def exists(self, name: str) -> bool:
        return name in self.bindings

    def resolve(self, name: str) -> int:
        try:
            return self.bindings[name]
        except KeyError:
            raise AddressResolutionError(
                f"variable '${name}' is not bound in scope '{self.name}'") from None

    def bind(self, name: str, address: int) -> None:
        self.bindings[name] = address
        logger.debug("bound $%s -> %d in scope %s", name, address, self.name)

    def __repr__(self) -> str:
        parent = self.parent.name if self.parent else None
        return f"Scope({self.name!r}, parent={parent!r}, bindings={self.bindings!r})"


class ScopeTable:
    """All scopes of a compilation plus the stack of scopes being compiled."""

    def __init__(self, memory: MemoryPool, root: str = GLOBAL_SCOPE) -> None:
        self.memory = memory
        self.root = Scope(root)
        self.scopes: Dict[str, Scope] = {root: self.root}
        self._stack: List[Scope] = [self.root]

    @property
    def current(self) -> Scope:
        return self._stack[-1]

    @property
    def depth(self) -> int:
        return len(self._stack) - 1

    # ------------------------------------------------------------ scope tree
    def create_child(self, qualified_name: str) -> Scope:
        if qualified_name in self.scopes:
            raise DuplicateDefinition(f"scope '{qualified_name}' already exists")
        scope = Scope(qualified_name, parent=self.current)
        self.scopes[qualified_name] = scope
        return scope

    def enter(self, scope: Scope) -> None:
        self._stack.append(scope)
        logger.debug("entered scope %s", scope.name)

    def leave(self) -> Scope:
        if len(self._stack) == 1:
            raise ValueError("cannot leave the root scope")
        scope = self._stack.pop()
        logger.debug("left scope %s", scope.name)
        return scope

    def get(self, qualified_name: str) -> Scope:
        return self.scopes[qualified_name]

    # -------------------------------------------------------------- bindings
    def exists(self, name: str) -> bool:
        return self.current.exists(name)

    def resolve(self, name: str) -> int:
        return self.current.resolve(name)

    def bind(self, name: str, address: int) -> None:
        self.current.bind(name, address)

    def bind_or_allocate(self, name: str) -> int:
        """Address of ``name`` in the current scope, allocating on first use."""
        if self.current.exists(name):
            return self.current.resolve(name)
        address = self.memory.allocate()
        self.current.bind(name, address)
        return address

    # ---------------------------------------------------------------- operands
    def resolve_address(self, token: str) -> ResolvedAddress:
        expression = AddressExpression.parse(token)
        if expression.kind is AddressKind.VARIABLE:
            return ResolvedAddress(self.resolve(expression.name), immediate=False)
        return ResolvedAddress(expression.value, immediate=expression.immediate)

    def resolve_destination(self, token: str, allocate: bool = False) -> int:
        """Address for a write target; immediates are rejected."""
        expression = AddressExpression.parse(token)
        if expression.kind is AddressKind.IMMEDIATE:
            raise AddressResolutionError(
                f"destination '{token}' must be a pointer or a variable, not an immediate")
        if expression.kind is AddressKind.DIRECT:
            return expression.value
        if allocate:
            return self.bind_or_allocate(expression.name)
        return self.resolve(expression.name)
