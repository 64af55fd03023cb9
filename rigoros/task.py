"""CPU register context and a cooperative demonstration task."""

from __future__ import annotations

import dataclasses
from collections.abc import Generator
from dataclasses import dataclass

from .memory import DynamicMemory
from .terminal import Terminal

KERNEL_CODE_SELECTOR = 0x08
KERNEL_DATA_SELECTOR = 0x10

TASK_PARAMETER = 42
TASK_STACK_SIZE = 8192
# Reserved bit 1 plus the interrupt flag, as read while interrupts are enabled.
_INITIAL_RFLAGS = 0x202


@dataclass
class Context:
    """Saved register state of a task, in the order it is stored in memory."""

    gs: int = 0
    fs: int = 0
    es: int = 0
    ds: int = 0
    r15: int = 0
    r14: int = 0
    r13: int = 0
    r12: int = 0
    r11: int = 0
    r10: int = 0
    r9: int = 0
    r8: int = 0
    rsi: int = 0
    rdi: int = 0
    rdx: int = 0
    rcx: int = 0
    rbx: int = 0
    rax: int = 0
    rbp: int = 0
    rip: int = 0
    cs: int = 0
    rflags: int = 0
    rsp: int = 0
    ss: int = 0


CONTEXT_SIZE = 8 * len(dataclasses.fields(Context))
_PARAMETER_SIZE = 8
# Layout of the task block: parameter, task context, caller context, stack.
CTX_DATA_SIZE = _PARAMETER_SIZE + 2 * CONTEXT_SIZE + TASK_STACK_SIZE


class TestTask:
    """A task that greets once and then reports each time it is switched to."""

    __test__ = False

    def __init__(self, console: Terminal, memory: DynamicMemory) -> None:
        self._console = console
        self._memory = memory
        self.address: int | None = None
        self.context: Context | None = None
        self.main_context = Context()
        self._task: Generator[None, None, None] | None = None

    def run(self, quit: bool = False) -> None:
        """Switch to the task, creating it first; with quit, free it instead."""
        if quit:
            if self.address is not None:
                self._memory.deallocate(self.address, CTX_DATA_SIZE)
                self.address = None
                self.context = None
                self._task = None
            return

        if self.address is None:
            address = self._memory.alloc_zero(CTX_DATA_SIZE)
            if address is None:
                raise MemoryError("no memory for the test task")

            stack_end = address + CTX_DATA_SIZE
            self.context = Context(
                cs=KERNEL_CODE_SELECTOR,
                rflags=_INITIAL_RFLAGS,
                rsp=stack_end,
                rbp=stack_end,
                ss=KERNEL_DATA_SELECTOR,
                ds=KERNEL_DATA_SELECTOR,
                es=KERNEL_DATA_SELECTOR,
                fs=KERNEL_DATA_SELECTOR,
                gs=KERNEL_DATA_SELECTOR,
                rdi=address,
            )
            self._memory.memory.write(address, TASK_PARAMETER.to_bytes(_PARAMETER_SIZE, "little"))
            self.address = address
            self._task = self._task_main(address)

        next(self._task)

    def _task_main(self, arg: int) -> Generator[None, None, None]:
        parameter = int.from_bytes(self._memory.memory.read(arg, _PARAMETER_SIZE), "little")
        self._console.print(f"hello task(parameter={parameter})\n")
        count = 1
        while True:
            self._console.print(f"task loop #{count}, rsp={self.context.rsp:#x}\n")
            count += 1
            yield