import pytest

from tape_compiler.compiler import CompilerOptions, TapeCompiler, compile_source, compile_text, main
from tape_compiler.errors import (
    AddressResolutionError,
    CompilerError,
    DuplicateDefinition,
    IllegalNestedConstruct,
    MalformedStatement,
    NoOpenConstruct,
    OutOfMemory,
    UnclosedConstruct,
    UnknownDefinition,
)

PLAIN = CompilerOptions(comments=False)


def compile_plain(text, **kwargs):
    return compile_source(text, CompilerOptions(comments=False, **kwargs))


def jump_target(line):
    """Target of an unconditional jump (a MOVE of an immediate into the program counter)."""
    opcode, a, _, destination = line.split()
    assert (opcode, destination) == ("134", "2")
    return int(a)


# ----------------------------------------------------------------- SET / ADD / SUB
def test_set_binds_variable_once():
    compiler = TapeCompiler("SET $x 5\nSET $x 7", PLAIN)
    assert compiler.compile() == ["134 0 0 3", "134 5 0 0", "134 0 0 3", "134 7 0 0"]
    assert compiler.memory.allocated == 1
    assert compiler.scopes.resolve("x") == 0


def test_set_from_variable_and_pointer():
    lines = compile_plain("SET $x 1\nSET $y 2\nSET *10 $y\nVAR @11 $x")
    assert lines[4:] == ["134 10 0 3", "6 1 0 0", "134 11 0 3", "6 0 0 0"]


def test_var_is_an_alias_for_set():
    assert compile_plain("VAR $a 3") == compile_plain("SET $a 3")


def test_set_rejects_immediate_destination():
    with pytest.raises(AddressResolutionError):
        compile_plain("SET 4 5")


def test_set_source_must_be_bound():
    with pytest.raises(AddressResolutionError):
        compile_plain("SET $x $x")


PRELUDE = "SET $a 1\nSET $b 2\nSET $c 0\n"


@pytest.mark.parametrize("statement, count", [
    ("ADD $a $b $c", 6),
    ("ADD $a 1 $c", 4),
    ("ADD 1 $b $c", 4),
    ("ADD 1 2 $c", 2),
    ("SUB $a $b $c", 6),
    ("SUB 9 $b *4", 4),
    ("XOR $a 255 $c", 4),
])
def test_arithmetic_instruction_counts(statement, count):
    assert len(compile_plain(PRELUDE + statement)) == 6 + count


def test_add_both_in_ram():
    lines = compile_plain(PRELUDE + "ADD $a $b $c")
    assert lines[6:] == ["134 0 0 3", "6 0 0 5", "134 1 0 3", "6 0 0 6", "134 2 0 3", "0 5 6 0"]


def test_sub_immediate_operands_keep_order():
    lines = compile_plain(PRELUDE + "SUB 10 $a $c\nSUB $a 10 $c\nSUB 7 3 *9")
    assert lines[6:10] == ["134 0 0 3", "6 0 0 5", "134 2 0 3", "129 10 5 0"]
    assert lines[10:14] == ["134 0 0 3", "6 0 0 5", "134 2 0 3", "65 5 10 0"]
    assert lines[14:] == ["134 9 0 3", "193 7 3 0"]


def test_bitwise_statements():
    lines = compile_plain(PRELUDE + "AND $a 1 $c\nOR 1 2 $c")
    assert lines[9] == "66 5 1 0"
    assert lines[11] == "195 1 2 0"


def test_arithmetic_destination_must_exist():
    with pytest.raises(AddressResolutionError):
        compile_plain("ADD 1 2 $nothing")
    with pytest.raises(AddressResolutionError):
        compile_plain("ADD 1 2 3")


# ----------------------------------------------------------------- comparisons
def test_comparison_stores_boolean():
    lines = compile_plain("SET $x 4\nEQ $x 4 *9\nGREQ 1 2 *9")
    assert lines[2:] == ["134 0 0 3", "6 0 0 5", "134 9 0 3", "80 5 4 0",
                         "134 9 0 3", "213 1 2 0"]


def test_constant_conditions_store():
    assert compile_plain("AW *4\nNV *5") == ["134 4 0 3", "214 0 0 0", "134 5 0 3", "215 0 0 0"]


def test_comparison_arity():
    with pytest.raises(MalformedStatement):
        compile_plain("EQ 1 2")
    with pytest.raises(MalformedStatement):
        compile_plain("IF EQ 1 2 *3\nENDIF")
    with pytest.raises(MalformedStatement):
        compile_plain("IF AW *3\nENDIF")


# ----------------------------------------------------------------- DEF / CALL
FUNCTION = """\
DEF f
    SET $x 1
ENDDEF
CALL f
"""


def test_definition_is_skipped_and_called():
    compiler = TapeCompiler(FUNCTION, PLAIN)
    lines = compiler.compile()
    assert lines == [
        "134 24 0 2",   # jump over the body
        "134 0 0 3",
        "134 1 0 0",
        "65 8 1 8",     # depth - 1
        "6 8 0 4",
        "6 1 0 2",      # return through the jump-back cell
        "6 8 0 4",      # CALL f
        "64 8 1 8",     # depth + 1
        "134 40 0 1",   # return address
        "134 4 0 2",    # jump to the body
    ]
    definition = compiler.definitions.resolve("f")
    assert definition.start_instruction_address == 4
    assert definition.body_start_index == 0
    assert compiler.scopes.get("definition.f").bindings == {"x": 0}
    assert compiler.scopes.get("definition.f").parent is compiler.scopes.root


def test_fall_through_skips_body():
    lines = compile_plain("SET $a 1\n" + FUNCTION)
    # the skip jump sits where the body starts and lands right after ENDDEF
    assert jump_target(lines[2]) == 8 * 4
    assert lines[7] == "6 1 0 2"


def test_call_returns_to_next_instruction():
    lines = compile_plain(FUNCTION + "SET $y 2\nCALL f")
    assert lines[8] == "134 40 0 1"
    assert len(lines) == 16
    assert lines[14] == "134 64 0 1"


def test_call_depth_round_trip():
    lines = compile_plain("DEF g\nENDDEF\nDEF f\nCALL g\nENDDEF\nCALL f\nCALL g")
    increments = [line for line in lines if line == "64 8 1 8"]
    decrements = [line for line in lines if line == "65 8 1 8"]
    assert len(increments) == 3
    assert len(decrements) == 2


def test_recursive_call_is_allowed():
    lines = compile_plain("DEF loop\nCALL loop\nENDDEF")
    assert lines[4] == "134 4 0 2"


def test_duplicate_definition():
    with pytest.raises(DuplicateDefinition):
        compile_plain("DEF f\nENDDEF\nDEF f\nENDDEF")


def test_unknown_definition():
    with pytest.raises(UnknownDefinition) as excinfo:
        compile_plain("SET $a 1\nCALL nowhere")
    assert str(excinfo.value) == "<string>:2: definition 'nowhere' not found"
    assert excinfo.value.lineno == 2


def test_enddef_without_def():
    with pytest.raises(NoOpenConstruct):
        compile_plain("ENDDEF")


def test_nested_definition_is_rejected():
    with pytest.raises(IllegalNestedConstruct):
        compile_plain("DEF f\nDEF g\nENDDEF\nENDDEF")


def test_definition_scope_is_isolated():
    with pytest.raises(AddressResolutionError):
        compile_plain("SET $x 1\nDEF f\nADD $x 1 $x\nENDDEF")
    compiler = TapeCompiler("SET $x 1\nDEF f\nSET $x 2\nENDDEF", PLAIN)
    compiler.compile()
    assert compiler.scopes.root.bindings == {"x": 0}
    assert compiler.scopes.get("definition.f").bindings == {"x": 1}


# ----------------------------------------------------------------- IF / WHILE
def test_if_branches_past_skip_jump():
    lines = compile_plain("SET $x 5\nIF EQ $x 5\nSET $x 1\nENDIF")
    assert lines[2:4] == ["134 0 0 3", "6 0 0 5"]
    assert lines[4] == "88 5 5 24"     # into the body
    assert jump_target(lines[5]) == 32  # past ENDIF
    assert len(lines) == 8


def test_if_always():
    assert compile_plain("IF AW\nENDIF") == ["222 0 0 8", "134 8 0 2"]


def test_while_loop_targets():
    lines = compile_plain("WHILE GR *0 0\nSUB *0 1 *0\nENDWHILE")
    assert lines == [
        "134 0 0 3",
        "6 0 0 5",
        "92 5 0 16",
        "134 36 0 2",
        "134 0 0 3",
        "6 0 0 5",
        "134 0 0 3",
        "65 5 1 0",
        "134 0 0 2",
    ]
    # exit lands right after the loop-back jump, loop-back hits the first instruction
    assert jump_target(lines[3]) == len(lines) * 4
    assert jump_target(lines[-1]) == 0


def test_while_after_code_jumps_back_to_condition():
    lines = compile_plain("SET $n 3\nWHILE NEQ $n 0\nSUB $n 1 $n\nENDWHILE")
    assert jump_target(lines[-1]) == 8


def test_if_inside_while_and_definition():
    text = """\
DEF countdown
    SET $n 3
    WHILE GR $n 0
        IF EQ $n 1
            SET $last 1
        ENDIF
        SUB $n 1 $n
    ENDWHILE
ENDDEF
CALL countdown
"""
    lines = compile_plain(text)
    assert jump_target(lines[0]) == (len(lines) - 4) * 4
    assert len(lines) == 1 + 2 + 4 + 4 + 2 + 4 + 1 + 3 + 4


def test_predicate_rejects_statements():
    for text in ("IF SET $x 1", "IF ADD 1 2 *3", "WHILE CALL f", "IF IF AW", "WHILE DEF f",
                 "IF WHILE AW", "IF SUB 1 2 *3"):
        with pytest.raises(IllegalNestedConstruct):
            compile_plain(text + "\nENDIF")


def test_single_open_if_and_while():
    with pytest.raises(IllegalNestedConstruct):
        compile_plain("IF AW\nIF NV\nENDIF\nENDIF")
    with pytest.raises(IllegalNestedConstruct):
        compile_plain("WHILE AW\nWHILE NV\nENDWHILE\nENDWHILE")
    assert compile_plain("IF AW\nENDIF\nIF NV\nENDIF")


def test_blocks_close_in_order():
    with pytest.raises(IllegalNestedConstruct):
        compile_plain("IF AW\nWHILE NV\nENDIF\nENDWHILE")
    with pytest.raises(IllegalNestedConstruct):
        compile_plain("DEF f\nIF AW\nENDDEF\nENDIF")


def test_closers_without_opener():
    for text in ("ENDIF", "ENDWHILE", "IF AW\nENDIF\nENDIF"):
        with pytest.raises(NoOpenConstruct):
            compile_plain(text)


def test_unclosed_blocks():
    with pytest.raises(UnclosedConstruct) as excinfo:
        compile_plain("SET $x 1\nWHILE AW\nSET $x 2")
    assert excinfo.value.lineno == 2
    with pytest.raises(UnclosedConstruct):
        compile_plain("DEF f")


def test_empty_condition():
    with pytest.raises(MalformedStatement):
        compile_plain("IF\nENDIF")


# ----------------------------------------------------------------- source and output
def test_comments_blank_lines_and_case():
    text = "\n  # setup\nset $x 5   # five\n\nadd $x 1 $x\n"
    assert compile_plain(text) == compile_plain("SET $x 5\nADD $x 1 $x")


def test_unknown_keyword_and_arity():
    with pytest.raises(MalformedStatement, match="unknown keyword 'JMP'"):
        compile_plain("JMP 4")
    with pytest.raises(MalformedStatement):
        compile_plain("SET $x")
    with pytest.raises(MalformedStatement):
        compile_plain("ENDDEF now")


def test_out_of_memory():
    with pytest.raises(OutOfMemory):
        compile_plain("SET $a 1\nSET $b 2\nSET $c 3", memory_size=2)


def test_default_comments():
    lines = compile_source("SET *1 2")
    assert lines[0] == "134 1 0 3 # Move destination address to ram-address-register"
    assert lines[1].startswith("134 2 0 0 # ")


def test_instruction_numbers_follow_final_positions():
    options = CompilerOptions(comment_prefix=" ; ", instruction_numbers=True)
    lines = compile_source("DEF f\nENDDEF", options)
    assert lines[0].startswith("134 16 0 2 ; [0, 1, 2, 3]")
    assert lines[3].startswith("6 1 0 2 ; [12, 13, 14, 15]")


def test_compile_text_and_cached_result():
    compiler = TapeCompiler("SET $x 1", PLAIN)
    first = compiler.compile()
    assert compiler.compile() is first
    assert compile_text("SET $x 1", PLAIN) == "134 0 0 3\n134 1 0 0"
    assert compile_text("", PLAIN) == ""


def test_errors_share_a_base_class():
    with pytest.raises(CompilerError):
        compile_plain("CALL f")


# ----------------------------------------------------------------- command line
def test_main_writes_output(tmp_path):
    source = tmp_path / "prog.tape"
    source.write_text(FUNCTION)
    out = tmp_path / "prog.out"
    assert main([str(source), "-o", str(out), "--no-comments"]) == 0
    assert out.read_text().splitlines() == compile_plain(FUNCTION)


def test_main_prints_to_stdout(tmp_path, capsys):
    source = tmp_path / "prog.tape"
    source.write_text("SET $x 1")
    main([str(source), "--numbers", "--comment-prefix", " // "])
    printed = capsys.readouterr().out.splitlines()
    assert printed[0].startswith("134 0 0 3 // [0, 1, 2, 3]")


def test_main_reports_errors(tmp_path):
    source = tmp_path / "bad.tape"
    source.write_text("CALL f")
    with pytest.raises(SystemExit) as excinfo:
        main([str(source)])
    assert str(excinfo.value) == f"error: {source}:1: definition 'f' not found"
