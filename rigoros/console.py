"""Line-editing console on top of the scrolling terminal."""

from __future__ import annotations

import enum
from collections.abc import Callable

from .terminal import INPUT_MAXSIZE, VIDEO_WIDTH, ColorCode, Terminal, VideoDisplay

_NEWLINE = ord("\n")


class InputStatus(enum.Enum):
    INPUTTING = "inputting"
    WAITING = "waiting"


class KeyCode(enum.Enum):
    """Non-character keys the console reacts to."""

    PAGE_UP = "page_up"
    PAGE_DOWN = "page_down"
    ARROW_LEFT = "arrow_left"
    ARROW_RIGHT = "arrow_right"
    ARROW_UP = "arrow_up"
    ARROW_DOWN = "arrow_down"


class LineTooLongError(Exception):
    """Raised when a completed input line does not fit the requested size."""

    def __init__(self, length: int) -> None:
        super().__init__(f"input line of {length} bytes does not fit")
        self.length = length


class Console(Terminal):
    """Terminal that also collects and edits keyboard input lines."""

    def __init__(self, display: VideoDisplay | None = None) -> None:
        self.input_status = InputStatus.WAITING
        self._input = bytearray()
        self._history = bytearray()
        self._input_begin = 0
        self._input_idx = 0
        super().__init__(display)

    def start_inputting(self) -> None:
        self.input_status = InputStatus.INPUTTING

    def has_input(self) -> bool:
        return self._input_idx > 0

    def has_input_line(self) -> bool:
        return self._input_begin > 0

    def getline(self, maxsize: int = INPUT_MAXSIZE) -> str | None:
        """Take the oldest completed line, or None if there is none yet."""
        if self._input_begin == 0:
            return None

        newline = self._input.find(_NEWLINE)
        size = newline if newline >= 0 else self._input_begin
        if size > maxsize:
            raise LineTooLongError(size)

        line = bytes(self._input[:size])
        del self._input[:size]
        self._history = bytearray(line)

        if size < self._input_begin:
            # drop the line terminator
            del self._input[0]
            self._input_begin -= 1
            self._input_idx -= 1

        self._input_begin -= size
        self._input_idx -= size
        return line.decode("ascii")

    def process_input(self, key: str | KeyCode) -> None:
        """Handle one decoded key: a one-character string or a KeyCode."""
        if key is KeyCode.PAGE_UP:
            self.scroll_page(-1)
            self._print_line_status()
            return
        if key is KeyCode.PAGE_DOWN:
            self.scroll_page(1)
            self._print_line_status()
            return

        if self.input_status is not InputStatus.INPUTTING:
            return

        if key == "\n":
            self._complete_input()
            self._clear_cur_line_status()
            self._scroll_to_cursor()
            self._update_cursor()
            return

        actions: dict[object, Callable[[], None]] = {
            "\x7f": self._delete_char,
            "\x08": self._backspace,
            KeyCode.ARROW_LEFT: self._input_move_backward,
            KeyCode.ARROW_RIGHT: self._input_move_forward,
            KeyCode.ARROW_UP: self._recover_history,
        }
        action = actions.get(key)
        if action is None:
            if not (isinstance(key, str) and len(key) == 1 and " " <= key <= "~"):
                return
            code = ord(key)

            def action() -> None:
                self._put_char(code, True)

        action()
        self._print_cursor_status()
        self._scroll_to_cursor()
        self._update_cursor()

    def _complete_input(self) -> None:
        while self._input_idx < len(self._input):
            self._input_move_forward()

        self._put_char(_NEWLINE, False)
        self.input_status = InputStatus.WAITING
        self._input_begin = len(self._input)
        self._input_idx = self._input_begin

    def _put_char(self, ch: int, keep_last: bool) -> None:
        end = INPUT_MAXSIZE - (2 if keep_last else 1)
        if self._input_idx <= end and len(self._input) < INPUT_MAXSIZE:
            self._input.insert(self._input_idx, ch)
            self._write_char(ColorCode.DEFAULT, ch)
            self._input_idx += 1
            if self._input_idx < len(self._input):
                self._redraw_input_from_cursor()

    def _delete_char(self) -> None:
        if self._input_idx < len(self._input):
            del self._input[self._input_idx]
            self._input.append(ord(" "))
            self._redraw_input_from_cursor()
            self._input.pop()

    def _backspace(self) -> None:
        if self._input_idx > self._input_begin:
            self._input_move_backward()
            self._delete_char()

    def _input_move_forward(self) -> None:
        if self._input_idx < len(self._input):
            self._input_idx += 1
            self.cur_col += 1
            if self.cur_col >= VIDEO_WIDTH:
                self.cur_col = 0
                self.cur_row += 1

    def _input_move_backward(self) -> None:
        if self._input_idx > self._input_begin:
            self._input_idx -= 1
            if self.cur_col == 0:
                if self.cur_row > 0:
                    self.cur_col = VIDEO_WIDTH - 1
                    self.cur_row -= 1
            else:
                self.cur_col -= 1

    def _recover_history(self) -> None:
        if len(self._history) < INPUT_MAXSIZE - self._input_begin:
            while self._input_idx > self._input_begin:
                self._input_move_backward()
            while self._input_idx < len(self._input):
                self._delete_char()
            for ch in bytes(self._history):
                self._put_char(ch, True)

    def _redraw_input_from_cursor(self) -> None:
        text = self._input[self._input_idx:].decode("ascii")
        self.write_string_at(ColorCode.DEFAULT, self.cur_row, self.cur_col, text)