import random

import pytest

from rigoros.slab import (
    PAGE_SIZE,
    Allocation,
    HeapPageAllocator,
    ObjectLayout,
    Page,
    SlabAllocator,
    SlabCorruptionError,
)


class MockPageAllocator:
    def __init__(self):
        self._next = 0x200000
        self.pages = []
        self.deallocated = []
        self.max_live = 0

    def allocate(self):
        page = Page(self._next)
        self._next += PAGE_SIZE
        self.pages.append(page)
        self.max_live = max(self.max_live, len(self.pages))
        return page

    def deallocate(self, page):
        assert any(p is page for p in self.pages)
        self.pages = [p for p in self.pages if p is not page]
        self.deallocated.append(page)
        page.data[:] = b"\xdd" * PAGE_SIZE

    def released_untouched(self):
        return all(page.data == b"\xdd" * PAGE_SIZE for page in self.deallocated)


class FailingAllocator:
    def allocate(self):
        return None

    def deallocate(self, page):
        raise AssertionError("nothing was allocated")


def make(size, align):
    mock = MockPageAllocator()
    return SlabAllocator(ObjectLayout(size, align), mock), mock


def assert_all_released(mock):
    assert mock.pages == []
    assert mock.released_untouched()


def test_layout_values():
    layout = ObjectLayout(32, 8)
    assert layout.payload_offset() == 24
    assert layout.slot_size() == 72
    assert layout.object_offset() == 24
    assert layout.objects_per_page() == 56


def test_layout_large_alignment_values():
    layout = ObjectLayout(1024, 1024)
    assert layout.payload_offset() == 1024
    assert layout.object_offset() == 1024
    assert layout.objects_per_page() == 1


def test_layout_object_too_large_for_page():
    with pytest.raises(ValueError):
        ObjectLayout(PAGE_SIZE - 60 + 1, 1)
    assert ObjectLayout(PAGE_SIZE - 60, 1).objects_per_page() == 1


def test_layout_rejects_bad_alignment():
    with pytest.raises(ValueError):
        ObjectLayout(16, 3)


def test_slab_allocator_creation():
    slab, mock = make(64, 8)
    assert mock.pages == []


def test_slab_alloc_dealloc_once():
    slab, mock = make(64, 8)
    chunk = slab.alloc()
    assert isinstance(chunk, Allocation)
    assert len(mock.pages) == 1
    slab.dealloc(chunk)
    assert_all_released(mock)
    assert len(mock.deallocated) == 1


@pytest.mark.parametrize("size, align", [(24, 8), (32, 16), (128, 64), (1024, 1024), (256, 256)])
def test_slab_alignment(size, align):
    slab, mock = make(size, align)
    ptr = slab.alloc()
    assert ptr.address() % align == 0
    slab.dealloc(ptr)
    assert_all_released(mock)


def test_slab_alignment_multiple_chunks():
    slab, mock = make(64, 32)
    ptrs = [slab.alloc() for _ in range(10)]
    assert all(p.address() % 32 == 0 for p in ptrs)
    for p in ptrs:
        slab.dealloc(p)
    assert_all_released(mock)


def test_slab_alignment_random_sizes():
    slab, mock = make(256, 128)
    ptrs = [slab.alloc() for _ in range(5)]
    assert all(p.address() % 128 == 0 for p in ptrs)
    for p in ptrs:
        slab.dealloc(p)
    assert_all_released(mock)


def test_slab_payload_zeroed_and_writable():
    slab, mock = make(32, 8)
    ptr = slab.alloc()
    assert bytes(ptr.payload()) == bytes(32)
    view = ptr.payload()
    view[:] = bytes(range(32))
    view.release()
    assert bytes(ptr.payload()) == bytes(range(32))
    slab.dealloc(ptr)
    assert_all_released(mock)


def test_slab_exhaustion_and_reuse():
    slab, mock = make(32, 16)
    chunks_per_page = PAGE_SIZE // 32
    ptrs = [slab.alloc() for _ in range(chunks_per_page)]
    extra = slab.alloc()
    assert extra is not None
    for p in ptrs + [extra]:
        slab.dealloc(p)
    assert_all_released(mock)
    again = slab.alloc()
    assert again is not None
    slab.dealloc(again)
    assert mock.pages == []


def test_slab_random_alloc_dealloc_pattern():
    slab, mock = make(40, 8)
    rng = random.Random(42)
    ptrs = []
    for _ in range(100):
        if rng.random() < 0.6 or not ptrs:
            ptrs.append(slab.alloc())
        else:
            idx = rng.randrange(len(ptrs))
            ptrs[idx], ptrs[-1] = ptrs[-1], ptrs[idx]
            slab.dealloc(ptrs.pop())
    assert len({p.address() for p in ptrs}) == len(ptrs)
    for p in ptrs:
        slab.dealloc(p)
    assert_all_released(mock)


def test_slab_null_alloc_returns_none():
    slab = SlabAllocator(ObjectLayout(64, 8), FailingAllocator())
    assert slab.alloc() is None


def test_slab_large_chunk():
    slab, mock = make(PAGE_SIZE // 2, 8)
    ptr1 = slab.alloc()
    ptr2 = slab.alloc()
    ptr3 = slab.alloc()
    assert len({ptr1.address(), ptr2.address(), ptr3.address()}) == 3
    for p in (ptr1, ptr2, ptr3):
        slab.dealloc(p)
    assert_all_released(mock)


def test_slab_interleaved_alloc_dealloc_multiple_types():
    slab_a, mock_a = make(48, 16)
    slab_b, mock_b = make(64, 32)
    ptrs_a, ptrs_b = [], []
    for i in range(20):
        if i % 2 == 0:
            ptrs_a.append(slab_a.alloc())
        else:
            ptrs_b.append(slab_b.alloc())
    for a, b in zip(ptrs_a, ptrs_b):
        slab_a.dealloc(a)
        slab_b.dealloc(b)
    assert_all_released(mock_a)
    assert_all_released(mock_b)


def test_slab_stress_many_pages():
    slab, mock = make(32, 8)
    total = PAGE_SIZE // 32 * 50
    ptrs = [slab.alloc() for _ in range(total)]
    assert len({p.address() for p in ptrs}) == total
    for p in ptrs:
        slab.dealloc(p)
    assert_all_released(mock)


def test_slab_repeated_alloc_dealloc_cycles():
    slab, mock = make(48, 16)
    rng = random.Random(7)
    chunks_per_page = PAGE_SIZE // 48
    for _ in range(10):
        ptrs = [slab.alloc() for _ in range(chunks_per_page * 3)]
        rng.shuffle(ptrs)
        for p in ptrs:
            slab.dealloc(p)
        assert mock.pages == []
    assert mock.released_untouched()


def test_slab_double_free_panics():
    slab, mock = make(32, 8)
    ptr = slab.alloc()
    slab.dealloc(ptr)
    with pytest.raises(SlabCorruptionError):
        slab.dealloc(ptr)


def test_slab_double_free_on_live_page():
    slab, mock = make(32, 8)
    keep = slab.alloc()
    ptr = slab.alloc()
    slab.dealloc(ptr)
    with pytest.raises(SlabCorruptionError):
        slab.dealloc(ptr)
    slab.dealloc(keep)
    assert mock.pages == []


def test_slab_alloc_dealloc_pattern_with_gaps():
    slab, mock = make(24, 8)
    ptrs = [slab.alloc() for _ in range(30)]
    freed = ptrs[::3]
    for p in freed:
        slab.dealloc(p)
    new_ptrs = [slab.alloc() for _ in range(10)]
    assert {p.address() for p in new_ptrs} == {p.address() for p in freed}
    for i, p in enumerate(ptrs):
        if i % 3:
            slab.dealloc(p)
    for p in new_ptrs:
        slab.dealloc(p)
    assert_all_released(mock)


def test_slab_fragmentation_and_reuse():
    slab, mock = make(40, 8)
    ptrs = [slab.alloc() for _ in range(100)]
    pages_before = len(mock.pages)
    for p in ptrs[::2]:
        slab.dealloc(p)
    reused = [slab.alloc() for _ in range(50)]
    assert mock.max_live == pages_before
    for p in ptrs[1::2]:
        slab.dealloc(p)
    for p in reused:
        slab.dealloc(p)
    assert_all_released(mock)


@pytest.mark.parametrize("size, align, count", [(64, 8, PAGE_SIZE // 64 * 3), (128, 16, PAGE_SIZE // 128 * 5)])
def test_slab_old_multiple_pages_unique(size, align, count):
    slab, mock = make(size, align)
    ptrs = [slab.alloc() for _ in range(count)]
    assert len({p.address() for p in ptrs}) == count
    for p in ptrs:
        slab.dealloc(p)
    assert_all_released(mock)
    assert slab.alloc() is not None


def test_slab_old_random_allocation_and_deallocation_sequencial():
    slab, mock = make(64, 8)
    rng = random.Random(15936561931664768008)
    ptrs = [slab.alloc() for _ in range(PAGE_SIZE // 64 * 4)]
    rng.shuffle(ptrs)
    for p in ptrs:
        slab.dealloc(p)
    assert_all_released(mock)
    assert slab.alloc() is not None


def test_slab_old_random_allocation_and_deallocation_interleaved():
    slab, mock = make(64, 8)
    rng = random.Random(7734348131707548111)
    ptrs = []
    repeat = PAGE_SIZE // 64 * 4
    for i in range(repeat):
        if rng.random() < i / repeat and ptrs:
            idx = rng.randrange(len(ptrs))
            ptrs[idx], ptrs[-1] = ptrs[-1], ptrs[idx]
            slab.dealloc(ptrs.pop())
        else:
            ptrs.append(slab.alloc())
    for p in ptrs:
        slab.dealloc(p)
    assert_all_released(mock)
    assert slab.alloc() is not None


@pytest.mark.parametrize("size, align, rounds, every", [(64, 8, 100, 3), (256, 32, 1000, 5)])
def test_slab_old_interleaved_and_stress(size, align, rounds, every):
    slab, mock = make(size, align)
    ptrs = []
    for i in range(rounds):
        if i % every == 0 and ptrs:
            slab.dealloc(ptrs.pop())
        else:
            ptrs.append(slab.alloc())
    assert len({p.address() for p in ptrs}) == len(ptrs)
    for p in ptrs:
        slab.dealloc(p)
    assert_all_released(mock)
    assert slab.alloc() is not None


def test_slab_old_fragmentation_handling():
    slab, mock = make(128, 16)
    kept = []
    for i in range(50):
        ptr = slab.alloc()
        if i % 2 == 0:
            slab.dealloc(ptr)
        else:
            kept.append(ptr)
    for p in kept:
        slab.dealloc(p)
    assert_all_released(mock)
    assert slab.alloc() is not None


def test_slab_redzone_detection_on_overflow():
    slab, mock = make(32, 8)
    ptr = slab.alloc()
    ptr.page.data[ptr.offset + 32] = 0xAA
    with pytest.raises(SlabCorruptionError, match="redzone"):
        slab.dealloc(ptr)


def test_slab_redzone_detection_on_underflow():
    slab, mock = make(32, 8)
    ptr = slab.alloc()
    ptr.page.data[ptr.offset - 1] = 0xBB
    with pytest.raises(SlabCorruptionError, match="redzone"):
        slab.dealloc(ptr)


def test_slab_poisoned_free_object_detected():
    layout = ObjectLayout(32, 8)
    slab = SlabAllocator(layout, MockPageAllocator())
    first = slab.alloc()
    first.page.data[first.offset + layout.slot_size()] = 0
    with pytest.raises(SlabCorruptionError, match="poisoned"):
        slab.alloc()


def test_slab_redzone_integrity_on_normal_use():
    slab, mock = make(32, 8)
    ptr = slab.alloc()
    ptr.page.data[ptr.offset:ptr.offset + 32] = bytes(range(32))
    slab.dealloc(ptr)
    assert_all_released(mock)


def test_slab_alloc_dealloc_full_page_cycle():
    layout = ObjectLayout(32, 8)
    mock = MockPageAllocator()
    slab = SlabAllocator(layout, mock)
    chunks_per_page = (PAGE_SIZE - layout.object_offset()) // layout.slot_size()
    ptrs = [slab.alloc() for _ in range(chunks_per_page)]
    assert mock.max_live == 1
    for p in ptrs:
        slab.dealloc(p)
    again = [slab.alloc() for _ in range(chunks_per_page)]
    assert all(p is not None for p in again)
    assert mock.max_live == 1


def test_slab_alloc_dealloc_interleaved_pages():
    layout = ObjectLayout(64, 8)
    mock = MockPageAllocator()
    slab = SlabAllocator(layout, mock)
    chunks_per_page = (PAGE_SIZE - layout.object_offset()) // layout.slot_size()
    ptrs = [slab.alloc() for _ in range(chunks_per_page * 2)]
    for p in ptrs[::2]:
        slab.dealloc(p)
    again = [slab.alloc() for _ in range(chunks_per_page)]
    assert all(p is not None for p in again)
    assert mock.max_live <= 2
    assert mock.deallocated == []


def test_slab_alloc_dealloc_zero_sized_type():
    slab, mock = make(0, 8)
    ptr1 = slab.alloc()
    ptr2 = slab.alloc()
    assert ptr1.address() != ptr2.address()
    slab.dealloc(ptr1)
    slab.dealloc(ptr2)
    assert_all_released(mock)


def test_slab_alloc_dealloc_with_minimum_size():
    slab, mock = make(1, 1)
    ptr = slab.alloc()
    assert bytes(ptr.payload()) == b"\x00"
    slab.dealloc(ptr)
    assert_all_released(mock)


def test_slab_alloc_dealloc_with_multiple_allocators():
    pairs = [make(32, 8) for _ in range(4)]
    ptrs = [slab.alloc() for slab, _ in pairs]
    for (slab, mock), ptr in zip(pairs, ptrs):
        slab.dealloc(ptr)
        assert_all_released(mock)


def test_slab_dealloc_foreign_allocation():
    slab_a, _ = make(32, 8)
    slab_b, _ = make(32, 8)
    ptr = slab_a.alloc()
    with pytest.raises(SlabCorruptionError):
        slab_b.dealloc(ptr)


def test_heap_page_allocator_pages_are_aligned_and_distinct():
    heap = HeapPageAllocator(0x400000)
    first = heap.allocate()
    second = heap.allocate()
    assert first.address == 0x400000
    assert second.address == 0x400000 + PAGE_SIZE
    assert first.data == bytes(PAGE_SIZE)


def test_heap_page_allocator_reuses_and_rejects():
    heap = HeapPageAllocator(0x400000)
    page = heap.allocate()
    heap.deallocate(page)
    with pytest.raises(ValueError):
        heap.deallocate(page)
    assert heap.allocate().address == page.address


def test_heap_page_allocator_unaligned_base():
    with pytest.raises(ValueError):
        HeapPageAllocator(0x1001)