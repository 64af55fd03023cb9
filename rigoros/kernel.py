"""Kernel core: interrupt controller model, timer, interrupt queue and main loop."""

from __future__ import annotations

import argparse
import enum
import sys
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import TextIO

from .console import Console, KeyCode, LineTooLongError
from .memory import DynamicMemory, MemoryMapEntry
from .ring_buffer import RingBuffer
from .shell import Shell
from .task import TestTask
from .terminal import VIDEO_HEIGHT, StatusLineKind, VideoDisplay

PIC_INT_OFFSET = 0x20

TIMER_FREQ = 1000
PIT_FREQ = 1193180

QUEUE_SIZE = 4096

# A 64 MiB PC as reported by the BIOS e820 call.
DEFAULT_E820 = (
    MemoryMapEntry(0x00000000, 0x0009FC00, 1),
    MemoryMapEntry(0x0009FC00, 0x00000400, 2),
    MemoryMapEntry(0x000F0000, 0x00010000, 2),
    MemoryMapEntry(0x00100000, 0x03EE0000, 1),
    MemoryMapEntry(0xFFFC0000, 0x00040000, 2),
)


class Irq(enum.IntEnum):
    """Interrupt request lines of the chained PICs."""

    TIMER = 0
    KEYBOARD = 1
    SLAVE = 2
    SERIAL1 = 3
    SERIAL2 = 4
    PARALLEL1 = 5
    FLOPPY = 6
    PARALLEL2 = 7
    RTC = 8
    MOUSE = 12
    COPROC = 13
    HDD1 = 14
    HDD2 = 15

    def as_intn(self) -> int:
        """Interrupt vector the line is remapped to."""
        return PIC_INT_OFFSET + int(self)


class Mask(enum.IntFlag):
    """Set of enabled IRQ lines."""

    TIMER = 1 << Irq.TIMER
    KEYBOARD = 1 << Irq.KEYBOARD
    SLAVE = 1 << Irq.SLAVE
    SERIAL1 = 1 << Irq.SERIAL1
    SERIAL2 = 1 << Irq.SERIAL2
    PARALLEL1 = 1 << Irq.PARALLEL1
    FLOPPY = 1 << Irq.FLOPPY
    PARALLEL2 = 1 << Irq.PARALLEL2
    RTC = 1 << Irq.RTC
    MOUSE = 1 << Irq.MOUSE
    COPROC = 1 << Irq.COPROC
    HDD1 = 1 << Irq.HDD1
    HDD2 = 1 << Irq.HDD2


@dataclass(frozen=True)
class TimerMessage:
    """A timer tick reported by the interrupt handler."""


@dataclass(frozen=True)
class KeyboardMessage:
    """A decoded key reported by the keyboard handler."""

    key: str | KeyCode


InterruptMessage = TimerMessage | KeyboardMessage


class InterruptQueue:
    """Bounded FIFO of interrupt messages; messages arriving when full are dropped."""

    def __init__(self) -> None:
        self._queue: RingBuffer[InterruptMessage] = RingBuffer(QUEUE_SIZE, TimerMessage())

    def push(self, msg: InterruptMessage) -> None:
        if len(self._queue) < QUEUE_SIZE:
            self._queue.try_push(msg)

    def pop(self) -> InterruptMessage | None:
        return self._queue.try_pop()

    def __len__(self) -> int:
        return len(self._queue)


class Timer:
    """Tick counter driven by the programmable interval timer."""

    def __init__(self) -> None:
        self._ticks = 0
        self.reload = PIT_FREQ // TIMER_FREQ

    def tick(self) -> int:
        return self._ticks

    def handle(self) -> None:
        self._ticks += 1


class Kernel:
    """Boots the terminal, memory and shell, then services queued interrupts."""

    def __init__(self, e820_entries: Iterable[MemoryMapEntry] = DEFAULT_E820) -> None:
        self._e820 = list(e820_entries)
        self.serial: TextIO | None = None
        self.display = VideoDisplay()
        self.queue = InterruptQueue()
        self.timer = Timer()
        self.pic_mask = Mask(0)
        self.interrupts_enabled = False
        self.console: Console | None = None
        self.memory: DynamicMemory | None = None
        self.test_task: TestTask | None = None
        self.shell: Shell | None = None

    def boot(self) -> None:
        """Initialise every subsystem in order and show the first prompt."""
        if self.serial is not None:
            self.serial.write("rigoros connected\n")

        console = Console(self.display)
        console.serial = self.serial
        console.set_status_lines(StatusLineKind.BACK, 1)
        self.console = console
        console.log("terminal initialized")
        console.log("gdt initialized")
        console.log("idt initialized")

        self.memory = DynamicMemory(self._e820)
        console.log("page initialized")

        self.pic_mask = Mask(0)
        console.log("pic initialized")
        console.log("pit initialized")
        console.log("keyboard initialized")

        self.pic_mask = Mask.TIMER | Mask.KEYBOARD | Mask.SLAVE
        self.interrupts_enabled = True
        console.log("interrupt enabled")
        console.log("done")

        self.test_task = TestTask(console, self.memory)
        self.shell = Shell(console, self.memory, self.timer.tick, self.test_task)
        self.shell.prompt()

    def _deliver(self, irq: Irq, msg: InterruptMessage) -> None:
        if self.interrupts_enabled and Mask(1 << irq) in self.pic_mask:
            self.queue.push(msg)

    def timer_interrupt(self) -> None:
        self._deliver(Irq.TIMER, TimerMessage())

    def keyboard_interrupt(self, key: str | KeyCode) -> None:
        self._deliver(Irq.KEYBOARD, KeyboardMessage(key))

    def run_pending(self) -> int:
        """Handle every queued message; return how many were handled."""
        if self.console is None or self.shell is None:
            raise RuntimeError("kernel has not been booted")

        handled = 0
        while (msg := self.queue.pop()) is not None:
            if isinstance(msg, TimerMessage):
                self.timer.handle()
            else:
                self.console.process_input(msg.key)
            handled += 1

            try:
                line = self.console.getline()
            except LineTooLongError:
                line = None
            if line is not None:
                self.shell.input_line(line)
                self.shell.prompt()
        return handled

    def screen_text(self) -> str:
        """All rows of the display, one per line."""
        return "\n".join(self.display.row_text(row) for row in range(VIDEO_HEIGHT))


def _type_line(kernel: Kernel, line: str) -> None:
    for ch in line:
        kernel.keyboard_interrupt(ch)
    kernel.keyboard_interrupt("\n")
    kernel.run_pending()


def main(argv: Sequence[str] | None = None) -> int:
    """Boot the kernel, type shell commands into it and print the final screen."""
    parser = argparse.ArgumentParser(prog="rigoros", description="Run the kernel shell.")
    parser.add_argument(
        "-c",
        "--command",
        action="append",
        dest="commands",
        help="shell command to type; may be repeated (default: read lines from stdin)",
    )
    parser.add_argument("--serial", action="store_true", help="echo the serial log to stderr")
    args = parser.parse_args(argv)

    kernel = Kernel()
    if args.serial:
        kernel.serial = sys.stderr
    kernel.boot()

    lines = args.commands if args.commands is not None else (line.rstrip("\n") for line in sys.stdin)
    for line in lines:
        _type_line(kernel, line)

    sys.stdout.write(kernel.screen_text().rstrip("\n") + "\n")
    return 0