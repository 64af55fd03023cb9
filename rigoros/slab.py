"""Slab allocator for fixed-size objects, with redzones and poisoning checks."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Protocol

from .pagelist import PageLink, PageList

PAGE_SIZE = 4096
REDZONE_SIZE = 16

_EMPTY_MAGIC = 0x3A49
_OBJECT_MAGIC = 0x6B5C
_REDZONE_FILL = 0xF1
_UNUSED_FILL = 0xF2

# Per-object header: magic and offset of the next free object.
_OBJECT_HEADER = struct.Struct("<HH")
_OBJECT_HEADER_ALIGN = 2
# Per-page header: two link pointers, free index and allocation count, padded.
_PAGE_HEADER_SIZE = 24


class SlabCorruptionError(Exception):
    """Raised when slab metadata, redzones or poison fills are found damaged."""


def _align_ceil(value: int, align: int) -> int:
    mask = align - 1
    return (value + mask) & ~mask


@dataclass(frozen=True)
class ObjectLayout:
    """Size and alignment of the objects a slab hands out."""

    size: int
    align: int = 1

    def __post_init__(self) -> None:
        if self.size < 0:
            raise ValueError("object size must not be negative")
        if self.align <= 0 or self.align & (self.align - 1):
            raise ValueError("alignment must be a power of two")
        if self.object_offset() + self.slot_size() > PAGE_SIZE:
            raise ValueError("object size is too big for a page")

    def _slot_align(self) -> int:
        return max(_OBJECT_HEADER_ALIGN, self.align)

    def payload_offset(self) -> int:
        """Offset of the payload inside a slot."""
        return _align_ceil(_OBJECT_HEADER.size + REDZONE_SIZE, self.align)

    def _redzone2_offset(self) -> int:
        return self.payload_offset() + self.size

    def slot_size(self) -> int:
        """Bytes taken by one slot: header, redzones and payload."""
        return _align_ceil(self._redzone2_offset() + REDZONE_SIZE, self._slot_align())

    def object_offset(self) -> int:
        """Offset of the first slot inside a page."""
        return _align_ceil(_PAGE_HEADER_SIZE, self._slot_align())

    def objects_per_page(self) -> int:
        return max(1, (PAGE_SIZE - 1 - self.object_offset()) // self.slot_size())


@dataclass(eq=False)
class Page:
    """One page-aligned page of memory."""

    address: int
    data: bytearray = field(default_factory=lambda: bytearray(PAGE_SIZE))

    def __post_init__(self) -> None:
        if self.address < 0 or self.address % PAGE_SIZE:
            raise ValueError(f"page address {self.address:#x} is not page-aligned")
        if len(self.data) != PAGE_SIZE:
            raise ValueError("page data must be exactly one page long")


class PageAllocator(Protocol):
    """Source of pages for a slab allocator."""

    def allocate(self) -> Page | None:
        """Return a fresh page, or None if none is available."""

    def deallocate(self, page: Page) -> None:
        """Take back a page previously returned by allocate."""


class HeapPageAllocator:
    """Page allocator handing out consecutive page addresses from base."""

    def __init__(self, base: int = 0x100000) -> None:
        if base < 0 or base % PAGE_SIZE:
            raise ValueError(f"base {base:#x} is not page-aligned")
        self._next = base
        self._free: list[int] = []
        self._live: dict[int, Page] = {}

    def allocate(self) -> Page:
        if self._free:
            address = self._free.pop()
        else:
            address = self._next
            self._next += PAGE_SIZE
        page = Page(address)
        self._live[address] = page
        return page

    def deallocate(self, page: Page) -> None:
        if self._live.get(page.address) is not page:
            raise ValueError(f"page at {page.address:#x} was not allocated here")
        del self._live[page.address]
        self._free.append(page.address)


@dataclass(frozen=True)
class Allocation:
    """An object handed out by a slab: its page and payload offset."""

    page: Page
    offset: int
    size: int

    def address(self) -> int:
        return self.page.address + self.offset

    def payload(self) -> memoryview:
        return memoryview(self.page.data)[self.offset:self.offset + self.size]


class _SlotPage(PageLink):
    """Bookkeeping for one page carved into slots."""

    def __init__(self, page: Page, layout: ObjectLayout) -> None:
        super().__init__()
        self.page = page
        self.layout = layout
        self.alloc_count = 0

        start = layout.object_offset()
        step = layout.slot_size()
        offsets = [start + step * i for i in range(layout.objects_per_page())]
        for offset, following in zip(offsets, offsets[1:] + [0]):
            self._init_object(offset, following)
        self.free_index = offsets[0]

    def _header(self, offset: int) -> tuple[int, int]:
        return _OBJECT_HEADER.unpack_from(self.page.data, offset)

    def _set_header(self, offset: int, magic: int, following: int) -> None:
        _OBJECT_HEADER.pack_into(self.page.data, offset, magic, following)

    def _redzones(self, offset: int) -> tuple[tuple[int, int], tuple[int, int]]:
        layout = self.layout
        return (
            (offset + _OBJECT_HEADER.size, offset + layout.payload_offset()),
            (offset + layout.payload_offset() + layout.size, offset + layout.slot_size()),
        )

    def _payload_range(self, offset: int) -> tuple[int, int]:
        start = offset + self.layout.payload_offset()
        return start, start + self.layout.size

    def _fill(self, start: int, end: int, value: int) -> None:
        self.page.data[start:end] = bytes([value]) * (end - start)

    def _is_filled(self, start: int, end: int, value: int) -> bool:
        return self.page.data[start:end] == bytes([value]) * (end - start)

    def _init_object(self, offset: int, following: int) -> None:
        self._set_header(offset, _EMPTY_MAGIC, following)
        for start, end in self._redzones(offset):
            self._fill(start, end, _REDZONE_FILL)
        self._fill(*self._payload_range(offset), _UNUSED_FILL)

    def _check_redzone(self, offset: int) -> None:
        if not all(self._is_filled(start, end, _REDZONE_FILL) for start, end in self._redzones(offset)):
            raise SlabCorruptionError("redzone is corrupted")

    def pop_object(self) -> tuple[int, bool]:
        """Take the first free slot; return its offset and whether the page is now full."""
        if self.free_index == 0:
            raise SlabCorruptionError("slab is corrupted: try to pop object from an fully-allocated page")
        offset = self.free_index
        magic, following = self._header(offset)
        self.free_index = following
        self._set_header(offset, magic, 0)
        self.alloc_count += 1
        return offset, following == 0

    def push_object(self, offset: int) -> None:
        magic, _ = self._header(offset)
        self._set_header(offset, magic, self.free_index)
        self.free_index = offset
        self.alloc_count -= 1

    def on_alloc(self, offset: int) -> None:
        magic, following = self._header(offset)
        if magic != _EMPTY_MAGIC or following != 0:
            raise SlabCorruptionError("slab is poisoned")
        self._check_redzone(offset)
        if not self._is_filled(*self._payload_range(offset), _UNUSED_FILL):
            raise SlabCorruptionError("slab is poisoned")
        self._set_header(offset, _OBJECT_MAGIC, 0)
        self._fill(*self._payload_range(offset), 0)

    def on_dealloc(self, offset: int) -> None:
        magic, following = self._header(offset)
        if magic != _OBJECT_MAGIC or following != 0:
            raise SlabCorruptionError("try to deallocate an object that is not allocated")
        self._check_redzone(offset)
        self._set_header(offset, _EMPTY_MAGIC, 0)
        self._fill(*self._payload_range(offset), _UNUSED_FILL)


class SlabAllocator:
    """Allocator of equally sized objects packed into pages."""

    def __init__(self, layout: ObjectLayout, page_allocator: PageAllocator) -> None:
        self._layout = layout
        self._page_allocator = page_allocator
        self._partial = PageList()
        self._pages: dict[int, _SlotPage] = {}

    def alloc(self) -> Allocation | None:
        """Hand out one object, or None when no page can be obtained."""
        if not self._partial:
            page = self._page_allocator.allocate()
            if page is None:
                return None
            slot_page = _SlotPage(page, self._layout)
            self._pages[page.address] = slot_page
            self._partial.assign_singleton(slot_page)

        slot_page = self._partial.head
        offset, full = slot_page.pop_object()
        if full:
            self._partial.remove(slot_page)

        slot_page.on_alloc(offset)
        return Allocation(slot_page.page, offset + self._layout.payload_offset(), self._layout.size)

    def dealloc(self, allocation: Allocation) -> None:
        """Return an object; a page whose objects are all free goes back to the page allocator."""
        layout = self._layout
        slot_page = self._pages.get(allocation.page.address)
        if slot_page is None or slot_page.page is not allocation.page:
            raise SlabCorruptionError("try to deallocate an object that is not allocated")

        offset = allocation.offset - layout.payload_offset()
        relative = offset - layout.object_offset()
        if (
            relative < 0
            or relative % layout.slot_size()
            or relative // layout.slot_size() >= layout.objects_per_page()
        ):
            raise SlabCorruptionError("try to deallocate an object that is not allocated")

        slot_page.on_dealloc(offset)
        was_full = slot_page.free_index == 0
        slot_page.push_object(offset)

        if slot_page.alloc_count == 0:
            if not was_full:
                self._partial.remove(slot_page)
            del self._pages[slot_page.page.address]
            self._page_allocator.deallocate(slot_page.page)
        elif was_full:
            self._partial.push_back(slot_page)