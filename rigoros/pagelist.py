"""Intrusive doubly linked list of slab pages."""

from __future__ import annotations

from collections.abc import Iterator


class PageLink:
    """Link node; objects kept in a PageList inherit from it."""

    def __init__(self) -> None:
        self.next: PageLink | None = None
        self.prev: PageLink | None = None


class PageList:
    """Doubly linked list threaded through PageLink nodes."""

    def __init__(self) -> None:
        self.head: PageLink | None = None
        self.tail: PageLink | None = None

    def assign_singleton(self, link: PageLink) -> None:
        """Make link the only element of the list."""
        link.next = None
        link.prev = None
        self.head = link
        self.tail = link

    def push_back(self, link: PageLink) -> None:
        link.next = None
        link.prev = self.tail
        if self.tail is not None:
            self.tail.next = link
        elif self.head is None:
            self.head = link
        self.tail = link

    def remove(self, link: PageLink) -> None:
        """Unlink a node that belongs to this list."""
        if link.prev is None:
            self.head = link.next
        else:
            link.prev.next = link.next

        if link.next is None:
            self.tail = link.prev
        else:
            link.next.prev = link.prev

        link.next = None
        link.prev = None

    def __iter__(self) -> Iterator[PageLink]:
        current = self.head
        while current is not None:
            following = current.next
            yield current
            current = following

    def __reversed__(self) -> Iterator[PageLink]:
        current = self.tail
        while current is not None:
            preceding = current.prev
            yield current
            current = preceding

    def __bool__(self) -> bool:
        return self.head is not None