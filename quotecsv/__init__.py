"""
quotecsv: quote-aware CSV-family reader/writer with lazily typed cells (stdlib-only).

Contract (v0):
- Dialect: configurable separator (any non-empty string, e.g. "," ";" "\\t" "::"),
  quote character is always '"', rows are terminated by "\\n" on write.
- A field containing the separator, a quote or a newline is wrapped in quotes on
  write; embedded quotes are doubled. Readers accept quoting anywhere.
- A logical row spans several physical lines only inside an open quoted field;
  the line breaks become literal "\\n" in the cell value.
- Blank line -> one empty-string cell. Trailing separator -> trailing empty cell.
- End of input inside a quoted field closes the field (lenient, logged) unless
  strict=True, which raises UnterminatedQuoteError.
- Cells keep the raw text (None = null cell, distinct from ""). Numeric parsing
  is lazy and cached once per cell: is_number / get_number / get_number_or.
- Writers flush after every write; write_row is the exact-column-count path,
  write_cell/write_row_ending the incremental one. One lock per logical write.

API:
- reader(f, ...) / CsvReader -> next_row() or iteration, yields Row objects
- writer(f, ...) / CsvWriter -> write_cell, write_row_ending, write_row, write_rows
- read(f, func, ...) / write(f, func, ...) -> run func with a reader/writer, always close
- quote(value, separator) -> the escaping rule used by writers

Python: 3.10+
"""

from __future__ import annotations

import io
import logging
import re
import threading
from dataclasses import dataclass, field, replace
from decimal import Decimal
from functools import cached_property
from typing import Any, Callable, Iterable, Iterator, List, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

__version__ = "0.1.0"


# ----------------------------
# Exceptions
# ----------------------------

class QuoteCSVError(ValueError):
    """Raised when input cannot be tokenized under the active dialect."""


class UnterminatedQuoteError(QuoteCSVError):
    """Raised by strict readers when input ends inside a quoted field."""

    def __init__(self, *, line: int, partial: str) -> None:
        super().__init__(
            f"UnterminatedQuoteError(line={line}, partial={partial!r}): "
            "end of input inside a quoted field"
        )
        self.line = line        # 1-based physical line where the row started
        self.partial = partial  # text of the open field read so far


class CellNumberFormatError(ValueError):
    """Raised by Cell.get_number() when a non-null cell is not a number."""

    def __init__(self, value: str) -> None:
        super().__init__(f"Cell value is not a number: {value!r}")
        self.value = value


# ----------------------------
# Dialect
# ----------------------------

@dataclass(frozen=True)
class Dialect:
    separator: str = ","
    quotechar: str = '"'
    lineterminator: str = "\n"
    encoding: str = "utf-8"
    # raise on end of input inside a quoted field instead of closing it
    strict: bool = False

    def __post_init__(self) -> None:
        if self.quotechar != '"':
            raise ValueError(f"Unsupported quotechar: {self.quotechar!r} (only '\"')")
        if not self.separator:
            raise ValueError("Separator must be a non-empty string")
        if self.quotechar in self.separator or "\n" in self.separator:
            raise ValueError(f"Separator may not contain a quote or newline: {self.separator!r}")


DEFAULT = Dialect()


def _resolve_dialect(dialect: Dialect, separator: Optional[str], fmtparams: dict) -> Dialect:
    if separator is not None:
        fmtparams = dict(fmtparams, separator=separator)
    if not fmtparams:
        return dialect
    return replace(dialect, **fmtparams)


# ----------------------------
# Cells and rows
# ----------------------------

class _NotANumber:
    def __repr__(self) -> str:
        return "NOT_A_NUMBER"


NOT_A_NUMBER = _NotANumber()

# Plain decimal literals: no whitespace, underscores, NaN or Infinity.
_NUMBER_RE = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")

Number = Union[int, float, Decimal]


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("bool is not a numeric default")
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(repr(value))
    raise TypeError(f"Unsupported numeric default: {type(value).__name__}")


@dataclass(frozen=True)
class Cell:
    """
    One field value. `raw` is None for a null cell, which is not the same as "".
    The numeric interpretation is computed on first request and kept. The cache
    is unlocked: threads racing on a fresh cell may each parse, with equal results.
    """

    raw: Optional[str]

    @cached_property
    def _numeric(self) -> Union[Decimal, _NotANumber]:
        if self.raw is None or _NUMBER_RE.fullmatch(self.raw) is None:
            return NOT_A_NUMBER
        return Decimal(self.raw)

    def is_null(self) -> bool:
        return self.raw is None

    def is_empty(self) -> bool:
        return self.raw is not None and self.raw == ""

    def is_number(self) -> bool:
        if self.raw is None:
            return False
        return self._numeric is not NOT_A_NUMBER

    def get_number(self) -> Optional[Decimal]:
        """Decimal value, None for a null cell; CellNumberFormatError if not numeric."""
        if self.raw is None:
            return None
        if not self.is_number():
            raise CellNumberFormatError(self.raw)
        return self._numeric  # type: ignore[return-value]

    def get_number_or(self, default: Number) -> Decimal:
        """Decimal value, or `default` (as Decimal) when null or not numeric."""
        fallback = _to_decimal(default)
        if self.raw is None or not self.is_number():
            return fallback
        return self._numeric  # type: ignore[return-value]

    def get_string(self) -> Optional[str]:
        return self.raw

    def __str__(self) -> str:
        return "" if self.raw is None else self.raw


@dataclass
class Row:
    cells: List[Cell] = field(default_factory=list)

    def add_cell(self, cell: Cell) -> "Row":
        self.cells.append(cell)
        return self

    def get_cell(self, i: int) -> Cell:
        if not 0 <= i < len(self.cells):
            raise IndexError(f"Cell index {i} out of range for row of size {len(self.cells)}")
        return self.cells[i]

    def size(self) -> int:
        return len(self.cells)

    def values(self) -> List[Optional[str]]:
        return [c.raw for c in self.cells]

    def __len__(self) -> int:
        return len(self.cells)

    def __iter__(self) -> Iterator[Cell]:
        return iter(self.cells)


# ----------------------------
# Reader
# ----------------------------

# Tokenizer modes
_UNQUOTED = 0       # outside any quoted span
_IN_QUOTES = 1      # inside a quoted span
_QUOTE_CLOSED = 2   # just saw a quote inside a span; next quote is an escape


def _open_source(f: Any, encoding: str) -> Any:
    if isinstance(f, (str, bytes)):
        raise TypeError("Expected a stream or an iterable of lines, not a string")
    if isinstance(f, io.RawIOBase):
        f = io.BufferedReader(f)
    if isinstance(f, io.BufferedIOBase):
        # split on "\n" only; "\r" stays cell content
        return io.TextIOWrapper(f, encoding=encoding, newline="\n")
    return f


class CsvReader:
    """
    Pull-model reader over physical lines. Each next_row() call consumes one or
    more lines and returns one logical Row, or None at end of input.
    Not safe for concurrent use.
    """

    def __init__(
        self,
        f: Any,
        separator: Optional[str] = None,
        *,
        dialect: Dialect = DEFAULT,
        **fmtparams: Any,
    ) -> None:
        self.dialect = _resolve_dialect(dialect, separator, fmtparams)
        self._source = _open_source(f, self.dialect.encoding)
        self._lines = iter(self._source)
        self.line_num = 0  # physical lines consumed so far

    def _readline(self) -> Optional[str]:
        try:
            line = next(self._lines)
        except StopIteration:
            return None
        self.line_num += 1
        if line.endswith("\n"):
            line = line[:-1]
        return line

    def next_row(self) -> Optional[Row]:
        line = self._readline()
        if line is None:
            return None

        start_line = self.line_num
        sep = self.dialect.separator
        quote_char = self.dialect.quotechar
        row = Row()
        buf: List[str] = []
        mode = _UNQUOTED

        while True:
            i, n = 0, len(line)
            while i < n:
                ch = line[i]
                if ch == quote_char:
                    if mode == _UNQUOTED:
                        mode = _IN_QUOTES
                    elif mode == _IN_QUOTES:
                        mode = _QUOTE_CLOSED
                    else:
                        buf.append(quote_char)
                        mode = _IN_QUOTES
                    i += 1
                elif line.startswith(sep, i):
                    if mode == _IN_QUOTES:
                        buf.append(sep)
                    else:
                        row.add_cell(Cell("".join(buf)))
                        buf = []
                        mode = _UNQUOTED
                    i += len(sep)
                else:
                    buf.append(ch)
                    i += 1

            if mode != _IN_QUOTES:
                break

            following = self._readline()
            if following is None:
                partial = "".join(buf)
                if self.dialect.strict:
                    raise UnterminatedQuoteError(line=start_line, partial=partial)
                logger.warning(
                    "Input ended inside a quoted field (row starting at line %d); closing it",
                    start_line,
                )
                break
            logger.debug("Quoted field continues onto line %d", self.line_num)
            buf.append("\n")
            line = following

        row.add_cell(Cell("".join(buf)))
        return row

    def __iter__(self) -> "CsvReader":
        return self

    def __next__(self) -> Row:
        row = self.next_row()
        if row is None:
            raise StopIteration
        return row

    def close(self) -> None:
        close = getattr(self._source, "close", None)
        if close is not None:
            logger.debug("Closing reader source after %d lines", self.line_num)
            close()

    def __enter__(self) -> "CsvReader":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


# ----------------------------
# Writer
# ----------------------------

def quote(value: Any, separator: str = ",") -> str:
    """
    Escape one cell value: None -> "". Values containing '"', a newline or the
    separator are wrapped in quotes with embedded quotes doubled. With a
    multi-character separator, any of its characters also triggers quoting.
    """
    s = "" if value is None else str(value)
    needs_quotes = '"' in s or "\n" in s or separator in s
    if not needs_quotes and len(separator) > 1:
        needs_quotes = any(c in s for c in separator)
    if needs_quotes:
        return '"' + s.replace('"', '""') + '"'
    return s


class CsvWriter:
    """
    Writer over a byte sink (text is encoded with dialect.encoding) or a text
    sink (io.TextIOBase). Nothing is buffered: every write is flushed.
    """

    def __init__(
        self,
        f: Any,
        separator: Optional[str] = None,
        *,
        dialect: Dialect = DEFAULT,
        **fmtparams: Any,
    ) -> None:
        self.dialect = _resolve_dialect(dialect, separator, fmtparams)
        self._sink = f
        self._text_sink = isinstance(f, io.TextIOBase)
        self._lock = threading.Lock()
        self._at_line_start = True

    def _emit(self, text: str) -> None:
        if self._text_sink:
            self._sink.write(text)
        else:
            self._sink.write(text.encode(self.dialect.encoding))
        flush = getattr(self._sink, "flush", None)
        if flush is not None:
            flush()

    def quote(self, value: Optional[str]) -> str:
        return quote(value, self.dialect.separator)

    def write_cell(self, value: Optional[str]) -> None:
        """
        Write one cell followed by the separator. A row written this way ends
        with an extra separator; use write_row for an exact column count.
        """
        with self._lock:
            self._emit(self.quote(value) + self.dialect.separator)
            self._at_line_start = False

    def write_row_ending(self) -> None:
        with self._lock:
            self._emit(self.dialect.lineterminator)
            self._at_line_start = True

    def write_row(self, values: Iterable[Optional[str]]) -> None:
        """Write one whole row, first ending any row left open by write_cell."""
        line = self.dialect.separator.join(self.quote(v) for v in values)
        with self._lock:
            if not self._at_line_start:
                self._emit(self.dialect.lineterminator)
                self._at_line_start = True
            self._emit(line + self.dialect.lineterminator)
            self._at_line_start = True

    def write_rows(self, rows: Iterable[Iterable[Optional[str]]]) -> None:
        for r in rows:
            self.write_row(r)

    def close(self) -> None:
        logger.debug("Closing writer sink")
        self._sink.close()

    def __enter__(self) -> "CsvWriter":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


# ----------------------------
# Helpers
# ----------------------------

T = TypeVar("T")


def reader(
    f: Any,
    separator: Optional[str] = None,
    *,
    dialect: Dialect = DEFAULT,
    **fmtparams: Any,
) -> CsvReader:
    return CsvReader(f, separator, dialect=dialect, **fmtparams)


def writer(
    f: Any,
    separator: Optional[str] = None,
    *,
    dialect: Dialect = DEFAULT,
    **fmtparams: Any,
) -> CsvWriter:
    return CsvWriter(f, separator, dialect=dialect, **fmtparams)


def read(
    f: Any,
    func: Callable[[CsvReader], T],
    separator: Optional[str] = None,
    *,
    dialect: Dialect = DEFAULT,
    **fmtparams: Any,
) -> T:
    """Run func with a reader over f; the reader (and f) is closed on every exit path."""
    with CsvReader(f, separator, dialect=dialect, **fmtparams) as r:
        return func(r)


def write(
    f: Any,
    func: Callable[[CsvWriter], T],
    separator: Optional[str] = None,
    *,
    dialect: Dialect = DEFAULT,
    **fmtparams: Any,
) -> T:
    """Run func with a writer over f; the writer (and f) is closed on every exit path."""
    with CsvWriter(f, separator, dialect=dialect, **fmtparams) as w:
        return func(w)


__all__ = [
    "QuoteCSVError",
    "UnterminatedQuoteError",
    "CellNumberFormatError",
    "Dialect",
    "DEFAULT",
    "NOT_A_NUMBER",
    "Cell",
    "Row",
    "CsvReader",
    "CsvWriter",
    "quote",
    "reader",
    "writer",
    "read",
    "write",
    "__version__",
]
