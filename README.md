# rigoros

`rigoros` is the core of a small x86-64 hobby kernel in plain Python: a buddy
allocator, a slab allocator, the page-table builder for dynamic memory, a
scroll-back text terminal, a line editor and a command shell. Memory is
simulated and the screen is a simulated 80 × 25 VGA text display, so
everything can be driven and inspected from an ordinary Python process.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Modules

| Module | Contents |
| --- | --- |
| `rigoros.buddy` | `BuddyBlock`, a bitmap-based buddy allocator working in 4096-byte units, and `BuddyBlockInfo`, the layout of the region it manages (metadata size, data offset, unit count, bitmap levels). |
| `rigoros.ring_buffer` | `RingBuffer`, a fixed-capacity circular buffer with `push`/`try_push`, `pop`/`try_pop`, `peek`/`try_peek`, `push_force`, `insert_force` and indexing. |
| `rigoros.pagelist` | `PageList` and `PageLink`, an intrusive doubly linked list; iterable forwards and with `reversed()`. |
| `rigoros.slab` | `SlabAllocator`, an allocator of equally sized objects with red zones and poison fills; `ObjectLayout` (object size and alignment), the `PageAllocator` protocol, `HeapPageAllocator`, `Page`, `Allocation` and `SlabCorruptionError`. |
| `rigoros.memory` | BIOS e820 map clean-up (`create_dynmem_map`), page tables (`PageTable`, `PageTableEntry`, `PageTableFlags`), dynamic-memory paging (`create_dyn_page`), address translation helpers, `SparseMemory` and `DynamicMemory`, which ties the paging to a buddy allocator. |
| `rigoros.terminal` | `Terminal`, a scroll-back terminal drawn on a `VideoDisplay`, with status lines at the top and bottom, plus `Color`, `ColorCode`, `VideoChar`, `StatusLineKind` and `LineInfo`. |
| `rigoros.console` | `Console`, the line editor on top of the terminal: cursor movement, backspace, delete, recall of the previous line and `getline`; `KeyCode`, `InputStatus` and `LineTooLongError`. |
| `rigoros.task` | `Context`, the saved register set, and `TestTask`, a cooperative task that prints a greeting and then a line each time it is switched to. |
| `rigoros.shell` | `Shell` and its `Command` table. |
| `rigoros.kernel` | `Kernel`, the boot sequence and main loop; `InterruptQueue`, `Timer`, `Irq`, `Mask`, `TimerMessage`, `KeyboardMessage` and `main`. |

## The `rigoros` command

`rigoros` boots a kernel on a simulated 64 MiB machine, types shell commands
into it one line at a time, and then prints the final contents of the 25-row
screen to standard output.

```
rigoros -c help -c meminfo
echo tick | rigoros
```

- `-c COMMAND`, `--command COMMAND`: a shell line to type; may be given
  several times. Without it, lines are read from standard input.
- `--serial`: echo the serial log (boot messages and memory maps) to
  standard error.

The shell knows these commands:

| Command | Does |
| --- | --- |
| `help` / `help <command>` | list the commands, or show one command's help and usage |
| `tick` | show the timer tick count |
| `printpage` | print the page table hierarchy, merging contiguous page runs |
| `printmmap` | print the e820 map and the dynamic memory map |
| `meminfo` | print the dynamic allocator's layout and usage |
| `testtask` / `testtask --quit` | switch to the test task, creating it on first use; with `--quit`, free it |
| `testdynseq` | fill every allocator level with blocks, check them, free them in order |
| `testdynran` | the same, freeing the blocks in random order |

An unknown name prints `'<name>': command not found`.

## Using the pieces from Python

The buddy allocator hands out addresses inside the range it manages:

```python
from rigoros.buddy import BuddyBlock

buddy = BuddyBlock(0x100000, 0x200000)
addr = buddy.alloc(4096)
print(hex(addr), buddy.used(), buddy.left())
buddy.dealloc(addr, 4096)
```

`alloc` returns `None` when no block of the requested size is free;
`dealloc` raises `ValueError` for a range outside the data area or a block
that is already free.

The slab allocator takes pages from a page allocator and checks its red zones
on every free:

```python
from rigoros.slab import HeapPageAllocator, ObjectLayout, SlabAllocator

slab = SlabAllocator(ObjectLayout(size=64, align=8), HeapPageAllocator())
obj = slab.alloc()
obj.payload()[:4] = b"data"
slab.dealloc(obj)
```

Writing past an object, or freeing it twice, raises `SlabCorruptionError`.

The ring buffer keeps a fixed number of items and can overwrite the oldest:

```python
from rigoros.ring_buffer import RingBuffer

ring = RingBuffer(3, 0)
for value in (1, 2, 3, 4):
    ring.push_force(value)
print([ring[i] for i in range(len(ring))])   # [2, 3, 4]
```

A whole kernel can be driven by feeding it interrupts. Keys are one-character
strings or `KeyCode` members:

```python
from rigoros.kernel import Kernel

kernel = Kernel()
kernel.boot()
for ch in "tick\n":
    kernel.keyboard_interrupt(ch)
kernel.timer_interrupt()
kernel.run_pending()
print(kernel.screen_text())
```

## What it does not do

There is no real hardware behind any of this. The boot sequence logs
`gdt initialized`, `idt initialized`, `pic initialized` and so on, but no
descriptor tables, interrupt handlers, CPU exceptions, serial port or PIT
programming are modelled: interrupts are method calls, the PIC is a `Mask`
value and the timer is a counter. Keyboard scancodes are not decoded; keys
are handed in already decoded. The `rigoros` command is not an interactive
terminal: it types the given lines and prints the screen once at the end.