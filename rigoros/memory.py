"""Physical memory map, dynamic-memory page tables and the dynamic allocator."""

from __future__ import annotations

import dataclasses
import enum
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field

from .buddy import BuddyBlock, BuddyBlockInfo

DYNMEM_START_PHYS = 0x00800000
DYNMEM_START_VIRT = 0x00200000

KERNEL_START_VIRT = 0xFFFF800000000000
KERNEL_START_PHYS = 0x00200000

KSTACK_START_VIRT = 0xFFFF80000F000000
KSTACK_START_PHYS = 0x00600000

PAGE_SIZE = 4096
ENTRY_COUNT = 512

_MAP_CAPACITY = 1024
_PHYS_LIMIT = 1 << 52
_PML4_USABLE_ENTRIES = 256
_SIGN_EXTENSION = 0xFFFF800000000000


def _div_ceil(value: int, divisor: int) -> int:
    return -(-value // divisor)


class MemoryEntryType(enum.IntEnum):
    """Region types reported by the BIOS e820 call."""

    USABLE = 1
    RESERVED = 2
    ACPI_RECLAIMABLE = 3
    ACPI_NVS = 4
    BAD_AREA = 5


_TYPE_LABELS = {
    MemoryEntryType.USABLE: "Usable",
    MemoryEntryType.RESERVED: "Reserved",
    MemoryEntryType.ACPI_RECLAIMABLE: "AcpiReclaimable",
    MemoryEntryType.ACPI_NVS: "AcpiNVS",
    MemoryEntryType.BAD_AREA: "BadArea",
}


@dataclass(frozen=True)
class MemoryMapEntry:
    """One physical memory region: [base, base + size)."""

    base: int
    size: int
    mem_type: int
    attrib: int = 0


class PageTableFlags(enum.IntFlag):
    """Flag bits of an x86-64 page table entry."""

    PRESENT = 1 << 0
    WRITABLE = 1 << 1
    USER_ACCESSIBLE = 1 << 2
    WRITE_THROUGH = 1 << 3
    NO_CACHE = 1 << 4
    ACCESSED = 1 << 5
    DIRTY = 1 << 6
    HUGE_PAGE = 1 << 7
    GLOBAL = 1 << 8
    NO_EXECUTE = 1 << 63


_TABLE_FLAGS = PageTableFlags.WRITABLE | PageTableFlags.PRESENT


def _format_flags(flags: PageTableFlags) -> str:
    names = [member.name for member in PageTableFlags if member in flags]
    return f"PageTableFlags({' | '.join(names) if names else '0x0'})"


@dataclass(slots=True)
class PageTableEntry:
    """Physical frame address and flags of one table slot."""

    addr: int = 0
    flags: PageTableFlags = PageTableFlags(0)

    def set_addr(self, addr: int, flags: PageTableFlags) -> None:
        if addr < 0 or addr >= _PHYS_LIMIT or addr % PAGE_SIZE:
            raise ValueError(f"physical address {addr:#x} is not a valid page frame")
        self.addr = addr
        self.flags = PageTableFlags(flags)

    def set_unused(self) -> None:
        self.addr = 0
        self.flags = PageTableFlags(0)

    def present(self) -> bool:
        return PageTableFlags.PRESENT in self.flags


class PageTable:
    """A 512-entry page table."""

    def __init__(self) -> None:
        self._entries = [PageTableEntry() for _ in range(ENTRY_COUNT)]

    def __getitem__(self, index: int) -> PageTableEntry:
        return self._entries[index]

    def __iter__(self) -> Iterator[PageTableEntry]:
        return iter(self._entries)

    def zero(self) -> None:
        for entry in self._entries:
            entry.set_unused()


@dataclass
class DynamicPaging:
    """Result of mapping dynamic memory: sizes and the tables by virtual address."""

    total_len: int
    page_table_len: int
    tables: dict[int, PageTable] = field(default_factory=dict)


class SparseMemory:
    """Byte-addressable memory; bytes never written read as zero."""

    def __init__(self) -> None:
        self._pages: dict[int, bytearray] = {}

    @staticmethod
    def _spans(addr: int, length: int) -> Iterator[tuple[int, int, int, int]]:
        if addr < 0 or length < 0:
            raise ValueError("address and length must not be negative")
        position = 0
        while position < length:
            page, offset = divmod(addr + position, PAGE_SIZE)
            count = min(PAGE_SIZE - offset, length - position)
            yield page, offset, count, position
            position += count

    def read(self, addr: int, length: int) -> bytes:
        out = bytearray(length)
        for page, offset, count, position in self._spans(addr, length):
            data = self._pages.get(page)
            if data is not None:
                out[position:position + count] = data[offset:offset + count]
        return bytes(out)

    def write(self, addr: int, data: bytes) -> None:
        view = memoryview(bytes(data))
        for page, offset, count, position in self._spans(addr, len(view)):
            buffer = self._pages.setdefault(page, bytearray(PAGE_SIZE))
            buffer[offset:offset + count] = view[position:position + count]

    def fill(self, addr: int, length: int, value: int) -> None:
        if not 0 <= value <= 0xFF:
            raise ValueError("fill value must be a byte")
        for page, offset, count, _ in self._spans(addr, length):
            if value == 0 and count == PAGE_SIZE:
                self._pages.pop(page, None)
                continue
            if value == 0 and page not in self._pages:
                continue
            buffer = self._pages.setdefault(page, bytearray(PAGE_SIZE))
            buffer[offset:offset + count] = bytes([value]) * count


@dataclass(frozen=True)
class AllocatorInfo:
    buddy: BuddyBlockInfo
    used: int


@dataclass(frozen=True)
class AllocatorSizeInfo:
    length: int
    used: int


def create_dynmem_map(entries: Iterable[MemoryMapEntry]) -> list[MemoryMapEntry]:
    """Page-align usable regions above the dynamic-memory start, dropping the rest."""
    ordered = sorted(list(entries)[:_MAP_CAPACITY], key=lambda entry: entry.base)

    result: list[MemoryMapEntry] = []
    prev_end = DYNMEM_START_PHYS
    for entry in ordered:
        if entry.mem_type != MemoryEntryType.USABLE:
            continue
        align_start = max(prev_end, _div_ceil(entry.base, PAGE_SIZE) * PAGE_SIZE)
        align_end = (entry.base + entry.size) // PAGE_SIZE * PAGE_SIZE
        if align_start < align_end:
            result.append(
                dataclasses.replace(entry, base=align_start, size=align_end - align_start)
            )
            prev_end = align_end
    return result


def create_tmp_page(pml4t: PageTable) -> tuple[PageTable, PageTable, PageTable]:
    """Set up the first three dynamic pages as PDPT, PD and PT mapping themselves."""

    def dyn_phys(index: int) -> int:
        return DYNMEM_START_PHYS + index * PAGE_SIZE

    pdpt, pdt, pt = PageTable(), PageTable(), PageTable()
    pml4t[0].set_addr(dyn_phys(0), _TABLE_FLAGS)
    pdpt[0].set_addr(dyn_phys(1), _TABLE_FLAGS)
    pdt[1].set_addr(dyn_phys(2), _TABLE_FLAGS)
    for index in range(3):
        pt[index].set_addr(dyn_phys(index), _TABLE_FLAGS)
    # The temporary self-mapping slot is released once the tables are written.
    pml4t[1].set_unused()
    return pdpt, pdt, pt


class _PageInitWalker:
    """Maps pages one after another, placing new tables in dynamic memory."""

    def __init__(
        self,
        pml4t: PageTable,
        boot_tables: tuple[PageTable, PageTable, PageTable],
        memory_map: Sequence[MemoryMapEntry],
        start_virt: int,
        first_dir: int = 1,
    ) -> None:
        self._start_virt = start_virt
        self._map = memory_map
        self.tables = {
            start_virt + index * PAGE_SIZE: table for index, table in enumerate(boot_tables)
        }
        self._next_virt = start_virt + len(boot_tables) * PAGE_SIZE
        self._levels = [pml4t, *boot_tables]
        self._indices = [1, 1, first_dir + 1, 3]
        self._skip = 3

    def count(self) -> int:
        return (self._next_virt - self._start_virt) // PAGE_SIZE

    def map_next(self, addr: int) -> None:
        if self._skip:
            self._skip -= 1
        else:
            self._set(3, addr)

    def _set(self, level: int, addr: int) -> None:
        if level == 0 and self._indices[0] >= _PML4_USABLE_ENTRIES:
            raise OverflowError("page table walker out of bound")

        if self._indices[level] >= ENTRY_COUNT:
            virt = self._next_virt
            table = PageTable()
            self.tables[virt] = table
            self._levels[level] = table
            self._indices[level] = 0
            self._next_virt += PAGE_SIZE
            self._set(level - 1, virt_to_phys_dynmem(virt, self._map, self._start_virt))

        self._levels[level][self._indices[level]].set_addr(addr, _TABLE_FLAGS)
        self._indices[level] += 1


def create_dyn_page(
    pml4t: PageTable, memory_map: Sequence[MemoryMapEntry], start_virt: int
) -> DynamicPaging:
    """Map every page of the dynamic memory map contiguously from start_virt."""
    walker = _PageInitWalker(pml4t, create_tmp_page(pml4t), memory_map, start_virt)

    page_count = 0
    for entry in memory_map:
        for base in range(entry.base, entry.base + entry.size, PAGE_SIZE):
            page_count += 1
            walker.map_next(base)

    return DynamicPaging(
        total_len=page_count * PAGE_SIZE,
        page_table_len=walker.count() * PAGE_SIZE,
        tables=walker.tables,
    )


def virt_to_phys_dynmem(virt: int, memory_map: Sequence[MemoryMapEntry], start_virt: int) -> int:
    offset = virt - start_virt
    if offset >= 0:
        total = 0
        for entry in memory_map:
            previous = total
            total += entry.size
            if offset < total:
                return entry.base + (offset - previous)
    raise ValueError("invalid dynmem virtual address")


def phys_to_virt_dynmem(phys: int, memory_map: Sequence[MemoryMapEntry], start_virt: int) -> int:
    total = 0
    for entry in memory_map:
        if entry.base <= phys < entry.base + entry.size:
            return start_virt + total + (phys - entry.base)
        total += entry.size
    raise ValueError("invalid dynmem physical address")


def virt_to_phys_kernel(virt: int) -> int:
    return virt - KERNEL_START_VIRT + KERNEL_START_PHYS


def phys_to_virt_kernel(phys: int) -> int:
    return phys - KERNEL_START_PHYS + KERNEL_START_VIRT


def format_memory_map(entries: Iterable[MemoryMapEntry], title: str) -> str:
    """Render a memory map as text, one region per line."""
    entries = list(entries)
    lines = [f"{title}: {len(entries)} entries"]
    for entry in entries:
        try:
            label = _TYPE_LABELS[MemoryEntryType(entry.mem_type)]
        except ValueError:
            label = "(unknown)"
        lines.append(f"    [{entry.base:#018x}, {entry.base + entry.size:#018x}) {label}")
    return "".join(line + "\n" for line in lines)


class DynamicMemory:
    """Dynamic memory built from an e820 map: page tables plus a buddy allocator."""

    def __init__(self, e820_entries: Iterable[MemoryMapEntry]) -> None:
        self.e820_map = list(e820_entries)
        self.dynmem_map = create_dynmem_map(self.e820_map)
        self.pml4t = PageTable()
        self.paging = create_dyn_page(self.pml4t, self.dynmem_map, DYNMEM_START_VIRT)
        self.memory = SparseMemory()

        start = DYNMEM_START_VIRT + self.paging.page_table_len
        length = self.paging.total_len - self.paging.page_table_len
        self._buddy = BuddyBlock(start, length)
        self.buddy_len = self._buddy.info().data_offset

    def allocator_info(self) -> AllocatorInfo:
        return AllocatorInfo(buddy=self._buddy.info(), used=self._buddy.used())

    def allocator_size_info(self) -> AllocatorSizeInfo:
        return AllocatorSizeInfo(length=self._buddy.info().data_len(), used=self._buddy.used())

    def alloc_zero(self, length: int) -> int | None:
        """Allocate length bytes filled with zeros; None when memory is exhausted."""
        addr = self._buddy.alloc(length)
        if addr is not None:
            self.memory.fill(addr, length, 0)
        return addr

    def deallocate(self, addr: int, length: int) -> None:
        self._buddy.dealloc(addr, length)

    def phys_to_virt(self, phys: int) -> int:
        if phys >= DYNMEM_START_PHYS:
            return phys_to_virt_dynmem(phys, self.dynmem_map, DYNMEM_START_VIRT)
        if phys < KSTACK_START_PHYS:
            return phys_to_virt_kernel(phys)
        raise ValueError("invalid physical address")

    def format_e820_map(self) -> str:
        return format_memory_map(self.e820_map, "BIOS e820 Memory Map")

    def format_dynmem_map(self) -> str:
        return format_memory_map(self.dynmem_map, "Dynamic Memory Map")

    def format_page_tables(self) -> str:
        """Render the page table hierarchy, merging contiguous page runs."""
        names = ("PML4E", " PDPE", "  PDE")
        lines: list[str] = []
        self._format_table(self.pml4t, names, 0, 0, lines)
        return "".join(line + "\n" for line in lines)

    def _format_table(
        self, table: PageTable, names: Sequence[str], depth: int, virt: int, lines: list[str]
    ) -> None:
        for index, entry in enumerate(table):
            if not entry.present():
                continue
            lines.append(
                f"{names[depth]} {index:#5x} to {entry.addr:#x}: {_format_flags(entry.flags)}"
            )
            if PageTableFlags.HUGE_PAGE in entry.flags:
                continue
            subtable = self.paging.tables.get(self.phys_to_virt(entry.addr))
            if subtable is None:
                raise ValueError(f"no page table at physical address {entry.addr:#x}")
            sub_virt = virt << 9 | index
            if depth + 1 < len(names):
                self._format_table(subtable, names, depth + 1, sub_virt, lines)
            else:
                self._format_pages(subtable, sub_virt, lines)

    @staticmethod
    def _format_pages(table: PageTable, virt: int, lines: list[str]) -> None:
        found: int | None = None
        for index in range(ENTRY_COUNT + 1):
            present = index < ENTRY_COUNT and table[index].present()
            if found is None:
                if present:
                    found = index
            elif not present or table[index - 1].addr + PAGE_SIZE != table[index].addr:
                count = index - found
                v_raw = (virt << 9 | found) << 12
                v = v_raw if v_raw & _SIGN_EXTENSION == 0 else v_raw | _SIGN_EXTENSION
                p = table[found].addr
                lines.append(
                    f"   PT {v:#018x}-{v + count * PAGE_SIZE:#018x} "
                    f"to {p:#x}-{p + count * PAGE_SIZE:#x}"
                )
                found = index if present else None