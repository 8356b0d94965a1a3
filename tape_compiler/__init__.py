"""Compiler from tape assembly to the numeric instruction tape of the ALU/RAM machine."""

from tape_compiler.compiler import CompilerOptions, TapeCompiler, compile_source, compile_text
from tape_compiler.errors import CompilerError

__all__ = ["CompilerError", "CompilerOptions", "TapeCompiler", "compile_source", "compile_text"]
