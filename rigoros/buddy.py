"""Buddy-system block allocator over a contiguous address range."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass

UNIT_SIZE = 4096

# Each level keeps a bitmap header (bit pointer and free count) in the metadata area.
_BITMAP_HEADER_SIZE = 16


def _div_ceil(value: int, divisor: int) -> int:
    return -(-value // divisor)


def _bitmap_bytes(block_count: int) -> int:
    return (block_count - 1) // 8 + 1


def _level_for_size(size: int) -> int:
    level = 0
    while (UNIT_SIZE << level) < size:
        level += 1
    return level


@dataclass(frozen=True)
class BuddyBlockInfo:
    """Layout of a managed region: metadata first, then unit-aligned data."""

    raw_addr: int = 0
    total_len: int = 0
    metadata_len: int = 0
    data_offset: int = 0
    units: int = 0
    levels: int = 0

    @classmethod
    def empty(cls) -> BuddyBlockInfo:
        return cls()

    @classmethod
    def _from_chunk(cls, addr: int, length: int) -> BuddyBlockInfo:
        if length <= UNIT_SIZE:
            raise ValueError(f"region of {length} bytes is too small")

        units = _div_ceil(length, UNIT_SIZE)
        levels = 0
        bits = 0
        block_count = units
        while True:
            levels += 1
            bits += _bitmap_bytes(block_count)
            if block_count == 1:
                break
            block_count //= 2

        metadata_len = levels * _BITMAP_HEADER_SIZE + bits
        if metadata_len >= length:
            raise ValueError("metadata does not fit in the region")

        return cls(
            raw_addr=addr,
            total_len=length,
            metadata_len=metadata_len,
            data_offset=0,
            units=units,
            levels=levels,
        )

    @classmethod
    def create(cls, raw_addr: int, total_len: int) -> BuddyBlockInfo:
        """Compute the layout of a region starting at raw_addr."""
        first = cls._from_chunk(raw_addr, total_len)
        data_offset = _div_ceil(first.metadata_len, UNIT_SIZE) * UNIT_SIZE

        info = cls._from_chunk(raw_addr + data_offset, total_len - data_offset)
        if info.metadata_len >= data_offset:
            raise ValueError("metadata does not fit before the data area")

        return dataclasses.replace(
            info, raw_addr=raw_addr, total_len=total_len, data_offset=data_offset
        )

    def data_addr(self) -> int:
        return self.raw_addr + self.data_offset

    def data_len(self) -> int:
        return self.total_len - self.data_offset


class BuddyBlock:
    """Allocator handing out power-of-two multiples of UNIT_SIZE."""

    def __init__(self, raw_addr: int, total_len: int) -> None:
        info = BuddyBlockInfo.create(raw_addr, total_len)

        bitmaps: list[int] = []
        block_count = info.units
        while block_count:
            # An odd trailing block has no buddy and starts out free.
            bitmaps.append(1 << (block_count - 1) if block_count % 2 else 0)
            block_count //= 2

        self._info = info
        self._used = 0
        self._bitmaps = bitmaps

    @classmethod
    def empty(cls) -> BuddyBlock:
        block = cls.__new__(cls)
        block._info = BuddyBlockInfo.empty()
        block._used = 0
        block._bitmaps = []
        return block

    def info(self) -> BuddyBlockInfo:
        return self._info

    def used(self) -> int:
        return self._used

    def left(self) -> int:
        return self._info.data_len() - self._used

    def alloc(self, length: int) -> int | None:
        """Return the address of a free block of at least length bytes, or None."""
        if length <= 0:
            raise ValueError("allocation length must be positive")

        aligned_len = _div_ceil(length, UNIT_SIZE) * UNIT_SIZE
        fit = _level_for_size(aligned_len)

        for level in range(fit, len(self._bitmaps)):
            bitmap = self._bitmaps[level]
            if not bitmap:
                continue

            block = (bitmap & -bitmap).bit_length() - 1
            self._bitmaps[level] = bitmap & ~(1 << block)

            below_block = block
            for below in range(level - 1, fit - 1, -1):
                below_block *= 2
                self._bitmaps[below] |= 1 << (below_block + 1)

            self._used += aligned_len
            return self._info.data_addr() + block * (UNIT_SIZE << level)

        return None

    def dealloc(self, addr: int, length: int) -> None:
        """Return the block covering [addr, addr + length) to the free pool."""
        if length == 0:
            return

        data_addr = self._info.data_addr()
        data_end = data_addr + self._info.data_len()

        aligned_addr = addr // UNIT_SIZE * UNIT_SIZE
        aligned_end = _div_ceil(addr + length, UNIT_SIZE) * UNIT_SIZE
        aligned_len = aligned_end - aligned_addr

        if not (data_addr <= aligned_addr < data_end and data_addr < aligned_end <= data_end):
            raise ValueError(f"range [{addr:#x}, {addr + length:#x}) is outside the data area")

        fit = _level_for_size(aligned_len)
        levels = len(self._bitmaps)
        if fit >= levels:
            raise ValueError(f"deallocation of {length} bytes is too large")

        block = (aligned_addr - data_addr) // (UNIT_SIZE << fit)
        level = fit
        while True:
            mask = 1 << block
            if self._bitmaps[level] & mask:
                raise ValueError(f"block at {aligned_addr:#x} is already free")
            self._bitmaps[level] |= mask

            buddy = 1 << (block ^ 1)
            if not self._bitmaps[level] & buddy:
                break
            if level + 1 >= levels:
                break

            self._bitmaps[level] &= ~(mask | buddy)
            block //= 2
            level += 1

        self._used -= aligned_len