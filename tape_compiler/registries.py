"""Bookkeeping for the block constructs: DEF bodies, IF and WHILE blocks.

Each record remembers where its skip jump sits on the tape and carries the
labels the closing keyword binds.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Dict, List, Optional

from tape_compiler.encoding import Label
from tape_compiler.errors import (
    DuplicateDefinition,
    IllegalNestedConstruct,
    NoOpenConstruct,
    UnknownDefinition,
)
from tape_compiler.scopes import Scope

logger = logging.getLogger(__name__)


@dataclass
class Definition:
    name: str
    start_instruction_address: int
    body_start_index: int
    end: Label
    scope: Optional[Scope] = None
    closed: bool = False


class DefinitionRegistry:
    def __init__(self) -> None:
        self.definitions: Dict[str, Definition] = {}
        self._open: List[Definition] = []

    def __contains__(self, name: str) -> bool:
        return name in self.definitions

    def create(self, name: str, start_instruction_address: int, body_start_index: int) -> Definition:
        if name in self.definitions:
            raise DuplicateDefinition(f"a definition named '{name}' already exists")
        definition = Definition(name, start_instruction_address, body_start_index,
                                end=Label(f"{name}.end"))
        self.definitions[name] = definition
        logger.debug("registered definition %s at %d", name, start_instruction_address)
        return definition

    def resolve(self, name: str) -> Definition:
        try:
            return self.definitions[name]
        except KeyError:
            raise UnknownDefinition(f"definition '{name}' not found") from None

    # -------------------------------------------------------------- open bodies
    @property
    def is_open(self) -> bool:
        return bool(self._open)

    def open(self, definition: Definition) -> None:
        self._open.append(definition)

    def latest_open(self) -> Definition:
        if not self._open:
            raise NoOpenConstruct("ENDDEF without an open DEF")
        return self._open[-1]

    def close_latest(self) -> Definition:
        definition = self.latest_open()
        self._open.pop()
        definition.closed = True
        return definition


@dataclass
class BranchBlock:
    keyword: str
    start_address: int
    body: Label
    end: Label
    skip_index: Optional[int] = None


class BranchRegistry:
    """Open-flag bookkeeping for one kind of branch block.

    Only a single block of each kind may be open at a time.
    """

    keyword = ""
    closer = ""

    def __init__(self) -> None:
        self.blocks: List[BranchBlock] = []
        self._open: Optional[BranchBlock] = None

    @property
    def is_open(self) -> bool:
        return self._open is not None

    def open(self, start_address: int) -> BranchBlock:
        if self._open is not None:
            raise IllegalNestedConstruct(
                f"{self.keyword} cannot be nested inside another open {self.keyword}")
        number = len(self.blocks)
        block = BranchBlock(
            keyword=self.keyword,
            start_address=start_address,
            body=Label(f"{self.keyword.lower()}{number}.body"),
            end=Label(f"{self.keyword.lower()}{number}.end"),
        )
        self.blocks.append(block)
        self._open = block
        logger.debug("opened %s block %d at %d", self.keyword, number, start_address)
        return block

    def latest(self) -> BranchBlock:
        if self._open is None:
            raise NoOpenConstruct(f"{self.closer} without an open {self.keyword}")
        return self._open

    def close(self) -> BranchBlock:
        block = self.latest()
        self._open = None
        return block


class ConditionRegistry(BranchRegistry):
    keyword = "IF"
    closer = "ENDIF"


class LoopRegistry(BranchRegistry):
    keyword = "WHILE"
    closer = "ENDWHILE"
