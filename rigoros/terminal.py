"""Text-mode terminal: scrollback buffer, VGA-style display and status lines."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import ClassVar, TextIO

from .ring_buffer import RingBuffer

VIDEO_HEIGHT = 25
VIDEO_WIDTH = 80

INPUT_MAXSIZE = 512
BUFFER_HEIGHT = 256

_MAX_ROW = 3 * BUFFER_HEIGHT
_NEWLINE = ord("\n")


class Color(enum.IntEnum):
    """The sixteen text-mode colours."""

    BLACK = 0
    BLUE = 1
    GREEN = 2
    CYAN = 3
    RED = 4
    MAGENTA = 5
    BROWN = 6
    LIGHT_GREY = 7
    DARK_GREY = 8
    LIGHT_BLUE = 9
    LIGHT_GREEN = 10
    LIGHT_CYAN = 11
    LIGHT_RED = 12
    PINK = 13
    YELLOW = 14
    WHITE = 15


@dataclass(frozen=True)
class ColorCode:
    """Attribute byte: background in the high nibble, foreground in the low one."""

    value: int

    DEFAULT: ClassVar[ColorCode]
    LOG: ClassVar[ColorCode]
    STATUS: ClassVar[ColorCode]
    INPUT: ClassVar[ColorCode]
    PANIC: ClassVar[ColorCode]
    ERROR: ClassVar[ColorCode]

    @classmethod
    def new(cls, fg: Color, bg: Color) -> ColorCode:
        return cls((int(bg) << 4) | int(fg))


ColorCode.DEFAULT = ColorCode.new(Color.LIGHT_GREY, Color.BLACK)
ColorCode.LOG = ColorCode.new(Color.LIGHT_GREEN, Color.BLACK)
ColorCode.STATUS = ColorCode.new(Color.WHITE, Color.LIGHT_GREY)
ColorCode.INPUT = ColorCode.new(Color.WHITE, Color.BLACK)
ColorCode.PANIC = ColorCode.new(Color.RED, Color.WHITE)
ColorCode.ERROR = ColorCode.new(Color.LIGHT_RED, Color.BLACK)


@dataclass(frozen=True)
class VideoChar:
    """One screen cell: a character byte and its colour."""

    character: int
    color: ColorCode


EMPTY_CHAR = VideoChar(0, ColorCode.DEFAULT)


def _empty_row() -> list[VideoChar]:
    return [EMPTY_CHAR] * VIDEO_WIDTH


class StatusLineKind(enum.Enum):
    FRONT = "front"
    BACK = "back"


@dataclass(frozen=True)
class LineInfo:
    cur_col: int
    cur_row: int
    screen: int
    width: int
    height: int
    total: int


class VideoDisplay:
    """Screen memory of VIDEO_HEIGHT rows by VIDEO_WIDTH cells plus a hardware cursor."""

    def __init__(self) -> None:
        self._rows = [_empty_row() for _ in range(VIDEO_HEIGHT)]
        self._cursor = 0
        self.cursor_enabled = False

    def write_row(self, row: int, chars: list[VideoChar]) -> None:
        if len(chars) != VIDEO_WIDTH:
            raise ValueError("a row must hold exactly one screen width of cells")
        self._rows[row] = list(chars)

    def write_char(self, row: int, col: int, char: VideoChar) -> None:
        self._rows[row][col] = char

    def char_at(self, row: int, col: int) -> VideoChar:
        return self._rows[row][col]

    def row_text(self, row: int) -> str:
        """Text shown on a row, blank cells as spaces, trailing spaces removed."""
        text = "".join(" " if cell.character == 0 else chr(cell.character) for cell in self._rows[row])
        return text.rstrip(" ")

    def set_cursor(self, pos: int) -> None:
        self._cursor = pos & 0xFFFF

    def enable_cursor(self, enable: bool) -> None:
        self.cursor_enabled = enable

    def cursor(self) -> int:
        """Cursor position as row * VIDEO_WIDTH + column."""
        return self._cursor


class Terminal:
    """Scrolling terminal writing through a scrollback buffer onto a display."""

    def __init__(self, display: VideoDisplay | None = None) -> None:
        self.display = display if display is not None else VideoDisplay()
        self.serial: TextIO | None = None

        self.cur_col = 0
        self.cur_row = 0
        self.scr_row = 0
        self.status_front_len = 0
        self.status_back_len = 0
        self.buffer: RingBuffer[list[VideoChar]] = RingBuffer(BUFFER_HEIGHT, _empty_row())

        self._redraw_status_lines()
        self.clear()
        self.display.enable_cursor(True)

    # public interface

    def clear(self) -> None:
        """Start a fresh line at the bottom of the scrollback and show it."""
        self.buffer.push_force(_empty_row())
        self.cur_col = 0
        self.cur_row = len(self.buffer) - 1
        self.scr_row = self.cur_row
        self._scroll_to_cursor()
        self._update_cursor()

    def write_string(self, color: ColorCode, text: str) -> None:
        for ch in text.encode("utf-8"):
            self._write_char(color, ch)
        self._scroll_to_cursor()
        self._update_cursor()

    def write_string_at(self, color: ColorCode, row: int, col: int, text: str) -> tuple[int, int]:
        """Write text at a buffer position without moving the cursor; return the end position."""
        if row < 0 or col < 0:
            raise ValueError("invalid position")
        r = row + col // VIDEO_WIDTH
        c = col % VIDEO_WIDTH
        if r > _MAX_ROW:
            raise ValueError("invalid position")

        pos = (r, c)
        for ch in text.encode("utf-8"):
            pos = self._write_char_at(color, pos[0], pos[1], ch)
        return pos

    def write_status_line(self, kind: StatusLineKind, line: int, text: str, cur: int) -> int:
        """Write text on a status line from column cur; return the next column."""
        row = self._status_line_row(kind, line)
        pos = cur
        for ch in text.encode("utf-8"):
            if pos >= VIDEO_WIDTH:
                break
            self.display.write_char(row, pos, VideoChar(ch, ColorCode.STATUS))
            pos += 1
        return min(pos, VIDEO_WIDTH)

    def clear_status_line(self, kind: StatusLineKind, line: int, cur: int) -> None:
        row = self._status_line_row(kind, line)
        for pos in range(cur, VIDEO_WIDTH):
            self.display.write_char(row, pos, VideoChar(0, ColorCode.STATUS))

    def print_status(self, kind: StatusLineKind, line: int, text: str) -> None:
        """Replace the contents of a status line with text."""
        cur = self.write_status_line(kind, line, text, 0)
        self.clear_status_line(kind, line, cur)

    def set_status_lines(self, kind: StatusLineKind, lines: int) -> None:
        front = lines if kind is StatusLineKind.FRONT else self.status_front_len
        back = lines if kind is StatusLineKind.BACK else self.status_back_len
        if lines < 0 or front + back > VIDEO_HEIGHT:
            raise ValueError("status lines do not fit on the screen")
        self.status_front_len = front
        self.status_back_len = back
        self._redraw_status_lines()
        self._redraw_screen()

    def scroll_page(self, page: int) -> None:
        buflen = len(self.buffer)
        to = self.scr_row + page * self._screen_height()
        self._scroll_to(max(0, min(to, buflen - 1)))

    def line_info(self) -> LineInfo:
        return LineInfo(
            cur_col=self.cur_col,
            cur_row=self.cur_row,
            screen=self.scr_row,
            width=VIDEO_WIDTH,
            height=self._screen_height(),
            total=len(self.buffer),
        )

    def print(self, text: str, color: ColorCode | None = None) -> None:
        self.write_string(color if color is not None else ColorCode.DEFAULT, text)

    def log(self, text: str, color: ColorCode | None = None, newline: bool = True) -> None:
        """Write text to the serial sink (if any) and to the screen."""
        line = text + "\n" if newline else text
        if self.serial is not None:
            self.serial.write(line)
        self.write_string(color if color is not None else ColorCode.LOG, line)

    def show_panic(self, message: str) -> None:
        self.write_string(ColorCode.PANIC, f"[PANIC] {message}")

    # status reporting used while editing input

    def _print_line_status(self) -> None:
        if self.status_back_len > 0:
            screen = self.scr_row
            height = self._screen_height()
            total = len(self.buffer)
            scr_page = (screen + height - 1) // height
            remainder = screen % height
            total_page = (total - remainder + height - 1) // height + (1 if remainder > 0 else 0)
            self.print_status(
                StatusLineKind.BACK,
                0,
                f"page {scr_page + 1} / {total_page}, line {screen + 1} / {total}",
            )

    def _print_cursor_status(self) -> None:
        if self.status_back_len > 0:
            total = len(self.buffer)
            self.print_status(
                StatusLineKind.BACK,
                0,
                f"row {self.cur_row + 1} / {total}, col {self.cur_col + 1} / {VIDEO_WIDTH}",
            )

    def _clear_cur_line_status(self) -> None:
        if self.status_back_len > 0:
            self.clear_status_line(StatusLineKind.BACK, 0, 0)

    # internals

    def _status_line_row(self, kind: StatusLineKind, line: int) -> int:
        limit = self.status_front_len if kind is StatusLineKind.FRONT else self.status_back_len
        if line < 0 or line >= limit:
            raise ValueError("Invalid status line number")
        return line if kind is StatusLineKind.FRONT else VIDEO_HEIGHT - line - 1

    def _redraw_status_lines(self) -> None:
        line = [VideoChar(0, ColorCode.STATUS)] * VIDEO_WIDTH
        for row in range(self.status_front_len):
            self.display.write_row(row, line)
        for row in range(VIDEO_HEIGHT - self.status_back_len, VIDEO_HEIGHT):
            self.display.write_row(row, line)

    def _redraw_screen(self) -> None:
        for row in range(self._screen_height()):
            line = self.buffer.get(self.scr_row + row)
            self.display.write_row(self._screen_start() + row, line if line is not None else _empty_row())

    def _screen_start(self) -> int:
        return self.status_front_len

    def _screen_height(self) -> int:
        return VIDEO_HEIGHT - self.status_front_len - self.status_back_len

    def _write_char(self, color: ColorCode, ch: int) -> None:
        if ch == _NEWLINE:
            self._new_line()
            return

        cell = VideoChar(ch, color)
        self.buffer[self.cur_row][self.cur_col] = cell
        if self._cursor_visible():
            screen_row = self._screen_start() + self.cur_row - self.scr_row
            self.display.write_char(screen_row, self.cur_col, cell)

        self.cur_col += 1
        if self.cur_col >= VIDEO_WIDTH:
            self._new_line()

    def _write_char_at(self, color: ColorCode, row: int, col: int, ch: int) -> tuple[int, int]:
        if ch == _NEWLINE:
            self._new_line_at(row + 1)
            return row + 1, 0

        cell = VideoChar(ch, color)
        if row >= len(self.buffer):
            self._new_line_at(row)

        self.buffer[row][col] = cell
        if self._row_visible(row):
            self.display.write_char(self._screen_start() + row - self.scr_row, col, cell)

        next_col = col + 1
        return (row + 1, 0) if next_col >= VIDEO_WIDTH else (row, next_col)

    def _new_line(self) -> None:
        self._new_line_at(self.cur_row + 1)
        self.cur_row += 1
        self.cur_col = 0

    def _new_line_at(self, row: int) -> None:
        if row <= len(self.buffer):
            forced = self.buffer.insert_force(row, _empty_row())
            if forced:
                if 1 <= self.cur_row <= row:
                    self.cur_row -= 1
                if 1 <= self.scr_row <= row:
                    self.scr_row -= 1
            else:
                if self.cur_row > row:
                    self.cur_row += 1
                if self.scr_row > row:
                    self.scr_row += 1
        else:
            for _ in range(row - len(self.buffer)):
                self._new_line_at(len(self.buffer))

    def _cursor_visible(self) -> bool:
        return self._row_visible(self.cur_row)

    def _row_visible(self, row: int) -> bool:
        return self.scr_row <= row < self.scr_row + self._screen_height()

    def _scroll_to_cursor(self) -> None:
        height = self._screen_height()
        if self.cur_row < self.scr_row:
            self._scroll_to(self.cur_row)
        elif self.cur_row >= self.scr_row + height:
            self._scroll_to(self.cur_row - height + 1)

    def _scroll_to(self, row: int) -> None:
        self.scr_row = row
        self._redraw_screen()
        self._update_cursor()

    def _update_cursor(self) -> None:
        if self._cursor_visible():
            pos = (self._screen_start() + self.cur_row - self.scr_row) * VIDEO_WIDTH + self.cur_col
        else:
            pos = VIDEO_HEIGHT * VIDEO_WIDTH
        self.display.set_cursor(pos)