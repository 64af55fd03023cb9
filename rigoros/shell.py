"""Command shell reading lines from the console."""

from __future__ import annotations

import random
import struct
from collections.abc import Callable
from dataclasses import dataclass

from .console import Console
from .memory import PAGE_SIZE, DynamicMemory
from .task import TestTask
from .terminal import ColorCode


@dataclass(frozen=True)
class Command:
    name: str
    handler: Callable[[list[str]], None]
    help: str
    usage: str | None = None


class Shell:
    """Parses input lines and runs the matching built-in command."""

    def __init__(
        self,
        console: Console,
        memory: DynamicMemory,
        ticks: Callable[[], int],
        test_task: TestTask | None = None,
    ) -> None:
        self._console = console
        self._memory = memory
        self._ticks = ticks
        self._test_task = test_task if test_task is not None else TestTask(console, memory)
        self.commands = (
            Command("help", self._cmd_help, "show help", "help (specific command)"),
            Command("tick", self._cmd_tick, "show tick count"),
            Command("printpage", self._cmd_print_page, "print page table"),
            Command("printmmap", self._cmd_print_mmap, "print memory map"),
            Command("meminfo", self._cmd_mem_info, "print memory info"),
            Command("testtask", self._cmd_test_task, "run test task", "testtask (--quit)"),
            Command("testdynseq", self._cmd_test_dyn_seq, "test dynamic memory in sequencial order"),
            Command("testdynran", self._cmd_test_dyn_ran, "test dynamic memory in random order"),
        )

    def prompt(self) -> None:
        self._console.print("> ")
        self._console.start_inputting()

    def input_line(self, line: str) -> None:
        args = line.split()
        if not args:
            return
        command = self._find(args[0])
        if command is None:
            self._console.print(f"'{args[0]}': command not found\n", ColorCode.ERROR)
        else:
            command.handler(args)

    def _find(self, name: str) -> Command | None:
        return next((command for command in self.commands if command.name == name), None)

    def _print(self, text: str) -> None:
        self._console.print(text)

    def _println(self, text: str = "") -> None:
        self._console.print(text + "\n")

    def _show_help(self, command: Command) -> None:
        self._println(f"{command.name} : {command.help}")

    def _cmd_help(self, args: list[str]) -> None:
        if len(args) <= 1:
            for command in self.commands:
                self._show_help(command)
            self._println("To see more detail help of specific command, enter 'help [command]'")
            return

        command = self._find(args[1])
        if command is None:
            self._println(f"'{args[1]}' is not command. type <help> to see help of whole commands.")
            return
        self._show_help(command)
        if command.usage is not None:
            self._println(f"Usage) {command.usage}")

    def _cmd_tick(self, args: list[str]) -> None:
        self._println(f"tick: {self._ticks()}")

    def _cmd_print_page(self, args: list[str]) -> None:
        self._console.log(self._memory.format_page_tables(), ColorCode.DEFAULT, False)

    def _cmd_print_mmap(self, args: list[str]) -> None:
        self._console.log(self._memory.format_e820_map(), ColorCode.DEFAULT, False)
        self._console.log(self._memory.format_dynmem_map(), ColorCode.DEFAULT, False)

    def _cmd_mem_info(self, args: list[str]) -> None:
        info = self._memory.allocator_info()
        buddy = info.buddy
        separator = "========================================="
        self._println("===dynamic memory allocator infomation===")
        self._println(f"metadata address     : {buddy.raw_addr:#018x}")
        self._println(f"metadata size        : {buddy.metadata_len:#018x}")
        self._println(f"count of unit blocks : {buddy.units:#018x}")
        self._println(f"total bitmap level   : {buddy.levels}")
        self._println(separator)
        self._println(f"start address        : {buddy.data_addr():#018x}")
        self._println(f"dynmem size          : {buddy.data_len():#018x}")
        self._println(f"used size            : {info.used:#018x}")
        self._println(separator)

    def _cmd_test_task(self, args: list[str]) -> None:
        self._test_task.run(len(args) >= 2 and args[1] == "--quit")

    def _cmd_test_dyn_seq(self, args: list[str]) -> None:
        self._test_dyn(shuffle=False)

    def _cmd_test_dyn_ran(self, args: list[str]) -> None:
        self._test_dyn(shuffle=True)

    def _expect_used(self, expected: int) -> None:
        used = self._memory.allocator_size_info().used
        if used != expected:
            raise RuntimeError(f"allocator reports {used:#x} bytes used, expected {expected:#x}")

    def _test_dyn(self, shuffle: bool) -> None:
        """Fill every level of the allocator with blocks, verify them and free them."""
        buddy = self._memory.allocator_info().buddy
        ram = self._memory.memory
        rng = random.Random()

        self._println(f"memory chunk starts at {buddy.data_addr():#x}")
        self._println(f"data range: [{buddy.data_addr():#x}, {buddy.raw_addr + buddy.total_len:#x})")

        for level in range(buddy.levels):
            block_count = buddy.units >> level
            size = PAGE_SIZE << level
            self._println(f"Bitmap Level #{level} (block_count={block_count}, size={size:#x})")
            self._expect_used(0)

            pattern = struct.pack(f"<{size // 4}I", *range(size // 4))
            addresses: list[int] = []

            self._print("Alloc & Comp : ")
            for index in range(block_count):
                addr = self._memory.alloc_zero(size)
                if addr is None:
                    self._println(f"alloc() fail: level={level} size={size} index={index}")
                    return
                addresses.append(addr)
                ram.write(addr, pattern)
                if ram.read(addr, size) != pattern:
                    self._println(f"comparison fail: level={level} size={size} index={index}")
                self._print(".")

            size_info = self._memory.allocator_size_info()
            self._expect_used(size_info.length // size * size)

            if shuffle:
                rng.shuffle(addresses)
            else:
                addresses = [buddy.data_addr() + size * index for index in range(block_count)]

            self._print("\nDeallocation : ")
            for addr in addresses:
                self._memory.deallocate(addr, size)
                self._print(".")

            self._expect_used(0)
            self._println()