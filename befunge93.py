#!/usr/bin/env python3
"""befunge93.py

A Befunge-93 interpreter: a two-dimensional, stack-based language whose
program lives on a fixed 80x25 toroidal grid and may rewrite itself.

Key features:
- Fixed-size wraparound grid with bounds-checked self-modification (g/p).
- Tolerant stack: popping an empty stack yields 0 instead of failing.
- Optional extension instructions (hex literals a-f, ' fetch).
- Pluggable console and random source for reproducible runs.
- Step tracing through the standard logging machinery.

Run:
  python befunge93.py hello.bf
  python befunge93.py --extensions=true hex.bf --extensions=false other.bf
  python befunge93.py --seed 7 -vv maze.bf
  python befunge93.py --help
"""

from __future__ import annotations

import argparse
import enum
import io
import logging
import random
import sys
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from typing import BinaryIO, Protocol

logger = logging.getLogger("befunge93")

PROGRAM_ROWS = 25
PROGRAM_COLS = 80
# Each row keeps one extra blank column that the cursor walks through when
# wrapping horizontally but that g/p can never address.
GUTTER = 1
BLANK = 0


# -------------------------
# Errors / Validation
# -------------------------


class Befunge93Error(Exception):
    pass


class ConfigError(Befunge93Error, ValueError):
    pass


class StepLimitExceeded(Befunge93Error, RuntimeError):
    def __init__(self, steps: int) -> None:
        super().__init__(f"program did not halt within {steps} steps")
        self.steps = steps


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigError(msg)


def _as_int32(v: int) -> int:
    return ((v + 0x80000000) & 0xFFFFFFFF) - 0x80000000


def _as_cell(v: int) -> int:
    # Cells hold signed chars: 200 reads back as -56.
    return ((v + 0x80) & 0xFF) - 0x80


# -------------------------
# Grid
# -------------------------


class Grid:
    """Fixed-size toroidal program buffer.

    ``rows`` x ``cols`` is the nominal program area that ``g`` and ``p``
    address. The cursor moves on a slightly wider torus of
    ``height`` x ``width`` cells, where ``width = cols + gutter``.
    """

    def __init__(
        self, rows: int = PROGRAM_ROWS, cols: int = PROGRAM_COLS, gutter: int = GUTTER
    ) -> None:
        _require(rows > 0 and cols > 0, "grid rows and cols must be > 0")
        _require(gutter >= 0, "grid gutter must be >= 0")
        self.rows = rows
        self.cols = cols
        self.height = rows
        self.width = cols + gutter
        self._cells: list[list[int]] = [
            [BLANK] * self.width for _ in range(self.height)
        ]

    @classmethod
    def from_text(
        cls,
        text: str,
        *,
        rows: int = PROGRAM_ROWS,
        cols: int = PROGRAM_COLS,
        gutter: int = GUTTER,
    ) -> Grid:
        return parse_program(text.encode("utf-8"), rows=rows, cols=cols, gutter=gutter)

    def read(self, x: int, y: int) -> int:
        return self._cells[y % self.height][x % self.width]

    def contains(self, x: int, y: int) -> bool:
        return 0 <= x < self.cols and 0 <= y < self.rows

    def write(self, x: int, y: int, value: int) -> bool:
        """Store ``value`` at unwrapped (x, y); discard writes outside the program area."""
        if not self.contains(x, y):
            return False
        self._cells[y][x] = _as_cell(value)
        return True

    def advance(self, x: int, y: int, direction: Direction) -> tuple[int, int]:
        dx, dy = direction.value
        return (x + dx) % self.width, (y + dy) % self.height

    def row_text(self, y: int) -> str:
        row = self._cells[y % self.height][: self.cols]
        return "".join(" " if v == BLANK else chr(v & 0xFF) for v in row).rstrip()

    def __str__(self) -> str:
        lines = [self.row_text(y) for y in range(self.rows)]
        while lines and not lines[-1]:
            lines.pop()
        return "\n".join(lines)


# -------------------------
# Machine state
# -------------------------


class Direction(enum.Enum):
    EAST = (1, 0)
    WEST = (-1, 0)
    NORTH = (0, -1)
    SOUTH = (0, 1)


# Order in which ``?`` draws; any uniform choice is equivalent.
_RANDOM_DIRECTIONS = (Direction.SOUTH, Direction.NORTH, Direction.WEST, Direction.EAST)


class Stack:
    """LIFO of signed 32-bit values where an empty pop reads as zero."""

    def __init__(self, values: Sequence[int] = ()) -> None:
        self._items: list[int] = [_as_int32(v) for v in values]

    def push(self, v: int) -> None:
        self._items.append(_as_int32(v))

    def pop(self) -> int:
        return self._items.pop() if self._items else 0

    def peek(self) -> int:
        return self._items[-1] if self._items else 0

    def duplicate(self) -> None:
        self.push(self.peek())

    def swap(self) -> None:
        if not self._items:
            return
        if len(self._items) == 1:
            self._items.insert(0, 0)
        self._items[-1], self._items[-2] = self._items[-2], self._items[-1]

    def as_list(self) -> list[int]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[int]:
        return iter(self._items)

    def __repr__(self) -> str:
        return f"Stack({self._items!r})"


@dataclass
class Cursor:
    x: int = 0
    y: int = 0
    direction: Direction = Direction.EAST

    def move(self, grid: Grid) -> None:
        self.x, self.y = grid.advance(self.x, self.y, self.direction)

    @property
    def position(self) -> tuple[int, int]:
        return (self.x, self.y)


@dataclass(frozen=True)
class RunResult:
    steps: int
    stack: tuple[int, ...]
    position: tuple[int, int]


# -------------------------
# Console I/O
# -------------------------


class Console(Protocol):
    def write_char(self, value: int) -> None: ...

    def write_int(self, value: int) -> None: ...

    def read_char(self) -> int: ...

    def read_int(self) -> int: ...

    def flush(self) -> None: ...


_WHITESPACE = b" \t\n\r\v\f"
_DIGITS = "0123456789abcdef"
EOF = -1


class StreamConsole:
    """Console over binary streams, defaulting to the process stdin/stdout.

    Reads follow C stdio conventions: ``read_char`` returns ``EOF`` (-1) when
    input is exhausted and ``read_int`` parses like ``scanf("%i")``.
    """

    def __init__(
        self, stdin: BinaryIO | None = None, stdout: BinaryIO | None = None
    ) -> None:
        self._stdin = stdin
        self._stdout = stdout
        self._pending: list[int] = []

    @property
    def stdin(self) -> BinaryIO:
        return self._stdin if self._stdin is not None else sys.stdin.buffer

    @property
    def stdout(self) -> BinaryIO:
        return self._stdout if self._stdout is not None else sys.stdout.buffer

    def write_char(self, value: int) -> None:
        self.stdout.write(bytes([value & 0xFF]))

    def write_int(self, value: int) -> None:
        self.stdout.write(f"{value} ".encode("ascii"))

    def flush(self) -> None:
        self.stdout.flush()

    def _getc(self) -> int | None:
        if self._pending:
            return self._pending.pop()
        data = self.stdin.read(1)
        return data[0] if data else None

    def _ungetc(self, byte: int | None) -> None:
        if byte is not None:
            self._pending.append(byte)

    def read_char(self) -> int:
        self.flush()
        byte = self._getc()
        return EOF if byte is None else _as_cell(byte)

    def read_int(self) -> int:
        """Parse an optionally signed decimal, ``0x`` hex or ``0`` octal integer.

        Returns 0 when no digits could be read; the byte that stopped the
        parse is left for the next read.
        """
        self.flush()
        byte = self._getc()
        while byte is not None and byte in _WHITESPACE:
            byte = self._getc()

        sign = 1
        if byte is not None and byte in b"+-":
            if byte == ord("-"):
                sign = -1
            byte = self._getc()

        base = 10
        value = 0
        seen_digit = False
        if byte == ord("0"):
            seen_digit = True
            byte = self._getc()
            if byte is not None and byte in b"xX":
                base = 16
                byte = self._getc()
            else:
                base = 8

        while byte is not None:
            digit = _DIGITS.find(chr(byte).lower())
            if digit < 0 or digit >= base:
                break
            value = value * base + digit
            seen_digit = True
            byte = self._getc()
        self._ungetc(byte)

        if not seen_digit:
            return 0
        return _as_int32(sign * value)


# -------------------------
# Dispatcher
# -------------------------


def _c_div(b: int, a: int) -> int:
    # Truncates toward zero; a == 0 raises ZeroDivisionError.
    q = abs(b) // abs(a)
    return q if (b < 0) == (a < 0) else -q


def _c_mod(b: int, a: int) -> int:
    return b - a * _c_div(b, a)


class Interpreter:
    """Fetch-decode-execute loop over a populated :class:`Grid`.

    The grid is mutated in place by ``p``. Stack, cursor and step count
    remain inspectable after the run finishes.
    """

    def __init__(
        self,
        grid: Grid,
        *,
        extensions: bool = False,
        console: Console | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.grid = grid
        self.extensions = extensions
        self.console: Console = console if console is not None else StreamConsole()
        self.rng = rng if rng is not None else random.Random()
        self.stack = Stack()
        self.cursor = Cursor()
        self.halted = False
        self.steps = 0

    def result(self) -> RunResult:
        return RunResult(
            steps=self.steps,
            stack=tuple(self.stack),
            position=self.cursor.position,
        )

    def run(self, max_steps: int | None = None) -> RunResult:
        _require(max_steps is None or max_steps >= 0, "max_steps must be >= 0")
        logger.debug("Run started (extensions=%s)", self.extensions)
        executed = 0
        try:
            while not self.halted:
                if max_steps is not None and executed >= max_steps:
                    raise StepLimitExceeded(max_steps)
                self.step()
                executed += 1
        finally:
            self.console.flush()
        logger.debug("Halted at %s after %d steps", self.cursor.position, self.steps)
        return self.result()

    def step(self) -> None:
        if self.halted:
            return

        cur = self.cursor
        instr = self.grid.read(cur.x, cur.y)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "(%02d,%02d) %r stack=%s",
                cur.x,
                cur.y,
                chr(instr & 0xFF),
                self.stack.as_list()[-8:],
            )
        self.steps += 1

        self._execute(instr)
        if not self.halted:
            cur.move(self.grid)

    def _execute(self, instr: int) -> None:
        ch = chr(instr & 0xFF)
        stack = self.stack
        cur = self.cursor

        if "0" <= ch <= "9":
            stack.push(ord(ch) - ord("0"))
        elif "a" <= ch <= "f":
            if self.extensions:
                stack.push(ord(ch) - ord("a") + 10)
        elif ch == "+":
            stack.push(stack.pop() + stack.pop())
        elif ch == "-":
            a, b = stack.pop(), stack.pop()
            stack.push(b - a)
        elif ch == "*":
            stack.push(stack.pop() * stack.pop())
        elif ch == "/":
            a, b = stack.pop(), stack.pop()
            stack.push(_c_div(b, a))
        elif ch == "%":
            a, b = stack.pop(), stack.pop()
            stack.push(_c_mod(b, a))
        elif ch == "!":
            stack.push(0 if stack.pop() else 1)
        elif ch == "`":
            a, b = stack.pop(), stack.pop()
            stack.push(1 if b > a else 0)
        elif ch == ">":
            cur.direction = Direction.EAST
        elif ch == "<":
            cur.direction = Direction.WEST
        elif ch == "^":
            cur.direction = Direction.NORTH
        elif ch == "v":
            cur.direction = Direction.SOUTH
        elif ch == "?":
            cur.direction = self.rng.choice(_RANDOM_DIRECTIONS)
        elif ch == "_":
            cur.direction = Direction.WEST if stack.pop() != 0 else Direction.EAST
        elif ch == "|":
            cur.direction = Direction.NORTH if stack.pop() != 0 else Direction.SOUTH
        elif ch == '"':
            # String mode: leaves the cursor on the closing quote, which the
            # post-instruction advance then steps past.
            cur.move(self.grid)
            value = self.grid.read(cur.x, cur.y)
            while value != ord('"'):
                stack.push(value)
                cur.move(self.grid)
                value = self.grid.read(cur.x, cur.y)
        elif ch == ":":
            stack.duplicate()
        elif ch == "\\":
            stack.swap()
        elif ch == "$":
            stack.pop()
        elif ch == ".":
            self.console.write_int(stack.pop())
        elif ch == ",":
            self.console.write_char(stack.pop())
        elif ch == "#":
            cur.move(self.grid)
        elif ch == "g":
            y, x = stack.pop(), stack.pop()
            stack.push(self.grid.read(x, y) if self.grid.contains(x, y) else 0)
        elif ch == "p":
            y, x, v = stack.pop(), stack.pop(), stack.pop()
            self.grid.write(x, y, v)
        elif ch == "&":
            stack.push(self.console.read_int())
        elif ch == "~":
            stack.push(self.console.read_char())
        elif ch == "'":
            if self.extensions:
                cur.move(self.grid)
                stack.push(self.grid.read(cur.x, cur.y))
        elif ch == "@":
            self.halted = True
        # Anything else, blanks included, is a no-op.


def run_source(
    source: str | bytes,
    *,
    extensions: bool = False,
    stdin: bytes = b"",
    seed: int | None = None,
    max_steps: int | None = None,
) -> tuple[bytes, RunResult]:
    """Run program text against in-memory input; return (output, result)."""
    data = source.encode("utf-8") if isinstance(source, str) else source
    out = io.BytesIO()
    interp = Interpreter(
        parse_program(data),
        extensions=extensions,
        console=StreamConsole(io.BytesIO(stdin), out),
        rng=random.Random(seed),
    )
    result = interp.run(max_steps=max_steps)
    return out.getvalue(), result


# -------------------------
# Program loading
# -------------------------


def parse_program(
    data: bytes,
    *,
    rows: int = PROGRAM_ROWS,
    cols: int = PROGRAM_COLS,
    gutter: int = GUTTER,
) -> Grid:
    """Lay source bytes out on a fresh grid.

    At most ``rows * cols`` bytes are considered, newlines included. UTF-8
    continuation bytes are skipped so each code point takes one cell; bytes
    past the end of a row and rows past the bottom are dropped.
    """
    grid = Grid(rows, cols, gutter)
    x = y = 0
    for byte in data[: rows * cols]:
        if byte & 0xC0 == 0x80:
            continue
        if byte == 0x0A:
            x = 0
            y += 1
            if y >= rows:
                break
            continue
        grid.write(x, y, byte)
        x += 1
    return grid


def load_program(
    path: str, *, rows: int = PROGRAM_ROWS, cols: int = PROGRAM_COLS
) -> Grid:
    with open(path, "rb") as f:
        data = f.read(rows * cols)
    grid = parse_program(data, rows=rows, cols=cols)
    logger.info("Loaded %s (%d bytes)", path, len(data))
    return grid


# -------------------------
# Logging
# -------------------------


def setup_logging(level: int = logging.WARNING, log_file: str | None = None) -> None:
    """
    Configures the 'befunge93' logger.

    Args:
        level: Logging level (e.g. logging.DEBUG for a per-step trace)
        log_file: Optional path to also save logs to a file.
    """
    logger.setLevel(level)

    # Drop handlers from an earlier call so repeated main() runs don't duplicate
    if logger.hasHandlers():
        logger.handlers.clear()

    # stdout carries program output, so the console log goes to stderr
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%H:%M:%S"
    )
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode="w", encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.debug("Logging initialized.")


# -------------------------
# Configuration
# -------------------------


@dataclass(frozen=True)
class Invocation:
    path: str
    extensions: bool = False


@dataclass(frozen=True)
class RunOptions:
    seed: int | None
    max_steps: int | None


def parse_options(seed: int | None, max_steps: int | None) -> RunOptions:
    _require(max_steps is None or max_steps > 0, "--max-steps must be > 0")
    return RunOptions(seed=seed, max_steps=max_steps)


_EXTENSIONS_FLAG = "--extensions"


def parse_invocations(args: Sequence[str]) -> list[Invocation]:
    """Group ``[--extensions=VALUE] FILE`` pairs in command-line order.

    A flag applies only to the file right after it; files without one run
    with extensions disabled.
    """
    invocations: list[Invocation] = []
    extensions: bool | None = None
    i = 0
    while i < len(args):
        arg = args[i]
        if arg.startswith(_EXTENSIONS_FLAG):
            value = arg[len(_EXTENSIONS_FLAG) :]
            if value.startswith("="):
                value = value[1:]
            elif not value:
                i += 1
                _require(i < len(args), "--extensions expects 'true' or 'false'")
                value = args[i]
            _require(
                value in ("true", "false"),
                f"invalid --extensions value {value!r}; expected 'true' or 'false'",
            )
            extensions = value == "true"
        elif arg.startswith("-"):
            raise ConfigError(f"unrecognized argument {arg!r}")
        else:
            invocations.append(Invocation(path=arg, extensions=bool(extensions)))
            extensions = None
        i += 1

    _require(extensions is None, "expected a program file after --extensions")
    _require(bool(invocations), "expected at least one program file")
    return invocations


# -------------------------
# CLI / Help
# -------------------------

HELP_EPILOG = r"""
PROGRAMS

Each FILE is laid out on an 80x25 grid: one byte per cell, a newline starts
the next row, short rows are padded with blank (NUL) cells and anything past
column 80 or row 25 is ignored. The cursor starts at the top-left corner
moving east and wraps around every edge.

Files run one after another, each with a fresh stack. Put
--extensions=true in front of a file to enable the extension instructions
for that file only.

INSTRUCTIONS

  0-9       push the digit
  a-f       push 10-15 (extension)
  + - * / % pop a, pop b, push b OP a (/ and % truncate toward zero)
  !         logical not
  `         pop a, pop b, push 1 if b > a else 0
  > < ^ v   move east / west / north / south
  ?         move in a random direction
  _         pop; move west if nonzero, else east
  |         pop; move north if nonzero, else south
  "         string mode: push every cell up to the next "
  :         duplicate the top value
  \         swap the top two values
  $         pop and discard
  .         pop and print as an integer followed by a space
  ,         pop and print as a character
  #         skip the next cell
  g         pop y, pop x, push the cell at (x, y) (0 if outside the grid)
  p         pop y, pop x, pop v, store v at (x, y) (ignored outside the grid)
  &         read an integer (decimal, 0x hex or 0 octal)
  ~         read a character (-1 at end of input)
  '         push the next cell and skip it (extension)
  @         halt

Popping an empty stack yields 0. Every other character is a no-op.

EXIT STATUS

  0  all programs halted
  1  runtime fault (division by zero, --max-steps exceeded)
  2  bad arguments or unreadable program file
"""


def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="befunge93",
        usage=(
            "%(prog)s [options] [--extensions={true,false}] FILE "
            "[[--extensions={true,false}] FILE ...]"
        ),
        description="Befunge-93 interpreter.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=HELP_EPILOG,
    )
    p.add_argument(
        "--seed", type=int, default=None, help="Seed for the ? instruction."
    )
    p.add_argument(
        "--max-steps",
        type=int,
        default=None,
        help="Abort a program that has not halted after this many steps.",
    )
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Log program loading (-v) or trace every step (-vv) to stderr.",
    )
    p.add_argument("--log-file", default=None, help="Also write the log to this file.")
    return p


# -------------------------
# Commands
# -------------------------


def cmd_run(
    invocation: Invocation,
    options: RunOptions,
    console: Console,
    rng: random.Random,
) -> RunResult:
    grid = load_program(invocation.path)
    interp = Interpreter(
        grid, extensions=invocation.extensions, console=console, rng=rng
    )
    result = interp.run(max_steps=options.max_steps)
    logger.info("%s halted after %d steps", invocation.path, result.steps)
    return result


def main(argv: list[str] | None = None) -> int:
    ap = build_argparser()
    args, rest = ap.parse_known_args(argv)

    level = {0: logging.WARNING, 1: logging.INFO}.get(args.verbose, logging.DEBUG)
    setup_logging(level, args.log_file)

    try:
        invocations = parse_invocations(rest)
        options = parse_options(args.seed, args.max_steps)
        # Every program shares one console so unread input carries over.
        console = StreamConsole()
        rng = random.Random(options.seed)
        for invocation in invocations:
            cmd_run(invocation, options, console, rng)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2
    except OSError as e:
        print(f"File error: {e}", file=sys.stderr)
        return 2
    except (ZeroDivisionError, StepLimitExceeded) as e:
        print(f"Runtime error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
