import pytest

from rigoros.console import Console
from rigoros.memory import DynamicMemory, MemoryEntryType, MemoryMapEntry
from rigoros.shell import Shell


@pytest.fixture
def memory():
    return DynamicMemory([MemoryMapEntry(0x00800000, 0x00200000, MemoryEntryType.USABLE)])


@pytest.fixture
def console():
    return Console()


@pytest.fixture
def shell(console, memory):
    return Shell(console, memory, lambda: 7)


def _lines(console):
    return [
        "".join(" " if cell.character == 0 else chr(cell.character) for cell in row).rstrip()
        for row in console.buffer
    ]


def test_unknown_command(shell, console):
    shell.input_line("foo bar")
    assert "'foo': command not found" in _lines(console)


def test_blank_line_prints_nothing(shell, console):
    before = _lines(console)
    shell.input_line("   ")
    assert _lines(console) == before


def test_help_lists_every_command(shell, console):
    shell.input_line("help")
    lines = _lines(console)
    for command in shell.commands:
        assert f"{command.name} : {command.help}" in lines
    assert "To see more detail help of specific command, enter 'help [command]'" in lines


def test_help_for_command_with_usage(shell, console):
    shell.input_line("help help")
    lines = _lines(console)
    assert "help : show help" in lines
    assert "Usage) help (specific command)" in lines


def test_help_for_command_without_usage(shell, console):
    shell.input_line("help tick")
    lines = _lines(console)
    assert "tick : show tick count" in lines
    assert not any(line.startswith("Usage)") for line in lines)


def test_help_for_unknown_command(shell, console):
    shell.input_line("help nope")
    assert "'nope' is not command. type <help> to see help of whole commands." in _lines(console)


def test_tick(shell, console):
    shell.input_line("tick")
    assert "tick: 7" in _lines(console)


def test_meminfo(shell, console, memory):
    shell.input_line("meminfo")
    lines = _lines(console)
    levels = memory.allocator_info().buddy.levels
    assert "===dynamic memory allocator infomation===" in lines
    assert f"total bitmap level   : {levels}" in lines
    assert lines.count("=========================================") == 2


def test_printmmap(shell, console):
    shell.input_line("printmmap")
    lines = _lines(console)
    assert "BIOS e820 Memory Map: 1 entries" in lines
    assert "Dynamic Memory Map: 1 entries" in lines


def test_printpage(shell, console):
    shell.input_line("printpage")
    lines = _lines(console)
    assert any(line.startswith("PML4E") for line in lines)
    assert any(line.startswith("   PT ") for line in lines)


def test_testtask_and_quit(shell, console, memory):
    shell.input_line("testtask")
    assert "hello task(parameter=42)" in _lines(console)
    assert memory.allocator_size_info().used > 0
    shell.input_line("testtask --quit")
    assert memory.allocator_size_info().used == 0


def test_testdynseq_frees_everything(shell, console, memory):
    shell.input_line("testdynseq")
    lines = _lines(console)
    assert memory.allocator_size_info().used == 0
    assert any(line.startswith("Bitmap Level #0 ") for line in lines)
    assert not any("fail" in line for line in lines)


def test_testdynran_frees_everything(shell, console, memory):
    shell.input_line("testdynran")
    lines = _lines(console)
    assert memory.allocator_size_info().used == 0
    assert not any("fail" in line for line in lines)


def test_prompt_starts_input(shell, console):
    shell.prompt()
    console.process_input("x")
    assert console.has_input()
    assert console.display.row_text(0) == "> x"