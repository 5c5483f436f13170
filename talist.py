#!/usr/bin/env python3
# talist: terminal ticket boards backed by a local SQLite file
#
# Hotkeys
#   h/l  switch to the previous/next board (wraps around)
#   j/k  select the next/previous ticket on the active board (wraps around)
#   a    add a ticket to the active board (type the title, Enter=save, Esc=cancel)
#   t    tickets view
#   q    quit
#
# Config highlights
# - Optional YAML file (~/.talist.yaml or --config PATH):
#     db_path: ./data/talist.db
#     tick_rate_ms: 200
#     log_level: INFO
#     log_path: ./data/talist.log
# - CLI flags override the file: --db, --tick-ms, --log-level.
#
# Notes
# - The database must already contain the `lists` and `items` tables.
# - Every redraw re-reads the active board, so rows added by another process
#   show up on the next tick.
# - Logs go to a rotating file next to the database; nothing is printed while
#   the dashboard owns the terminal.

from __future__ import annotations

import argparse
import datetime as dt
import logging
import os
import queue
import re
import select
import sqlite3
import sys
import threading
import time
from contextlib import closing
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from logging.handlers import RotatingFileHandler
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import yaml
from prompt_toolkit import Application
from prompt_toolkit.application import set_app
from prompt_toolkit.data_structures import Size
from prompt_toolkit.filters import Condition
from prompt_toolkit.formatted_text import StyleAndTextTuples
from prompt_toolkit.input import DummyInput, Input, create_input
from prompt_toolkit.key_binding import KeyBindings, KeyPress
from prompt_toolkit.key_binding.key_processor import KeyProcessor
from prompt_toolkit.keys import Keys
from prompt_toolkit.layout import HSplit, Layout, VSplit, Window
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.layout.dimension import Dimension
from prompt_toolkit.output import DummyOutput, Output, create_output
from prompt_toolkit.styles import Style
from prompt_toolkit.widgets import Frame


logger = logging.getLogger('talist')

DEFAULT_DB_PATH = "./data/talist.db"
DEFAULT_CONFIG_PATH = os.path.expanduser("~/.talist.yaml")
DEFAULT_TICK_RATE = 0.2  # seconds
DEFAULT_LOG_LEVEL = "ERROR"


# -----------------------------
# Errors
# -----------------------------
class TalistError(Exception):
    """Base class for errors that end a talist run."""


class StorageError(TalistError):
    """The ticket database could not be opened or queried."""


class TerminalError(TalistError):
    """Raw mode, drawing or key polling failed."""


class PreconditionViolation(TalistError):
    """An invariant the session relies on does not hold (e.g. no boards)."""


class ConfigError(TalistError):
    """The config file or a command line override is invalid."""


# -----------------------------
# Config
# -----------------------------
@dataclass
class Config:
    db_path: str = DEFAULT_DB_PATH
    tick_rate: float = DEFAULT_TICK_RATE
    log_level: str = DEFAULT_LOG_LEVEL
    log_path: Optional[str] = None

    def resolved_log_path(self) -> str:
        if self.log_path:
            return self.log_path
        return os.path.join(os.path.dirname(os.path.abspath(self.db_path)), "talist.log")


def _config_str(raw: dict, key: str) -> str:
    value = raw[key]
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Config: '{key}' must be a non-empty string.")
    return value.strip()


def load_config(path: Optional[str]) -> Config:
    """Read the optional YAML config. ``None`` means built-in defaults."""
    cfg = Config()
    if not path:
        return cfg
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except OSError as exc:
        raise ConfigError(f"Config: cannot read {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config: invalid YAML in {path}: {exc}") from exc
    if raw is None:
        return cfg
    if not isinstance(raw, dict):
        raise ConfigError(f"Config: {path} must contain a mapping.")
    if "db_path" in raw:
        cfg.db_path = os.path.expanduser(_config_str(raw, "db_path"))
    if "log_path" in raw:
        cfg.log_path = os.path.expanduser(_config_str(raw, "log_path"))
    if "log_level" in raw:
        cfg.log_level = _config_str(raw, "log_level").upper()
    if raw.get("tick_rate_ms") is not None:
        try:
            tick_ms = float(raw["tick_rate_ms"])
        except (TypeError, ValueError):
            raise ConfigError("Config: 'tick_rate_ms' must be a number.") from None
        if tick_ms <= 0:
            raise ConfigError("Config: 'tick_rate_ms' must be positive.")
        cfg.tick_rate = tick_ms / 1000.0
    return cfg


def setup_logging(log_path: str, log_level: str = DEFAULT_LOG_LEVEL) -> None:
    """Send the 'talist' logger to a rotating file; the terminal stays clean."""
    # Always reset handlers so repeated runs (and tests) do not stack them.
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.setLevel(logging.DEBUG)
    lvl = getattr(logging, str(log_level).upper(), None)
    if not isinstance(lvl, int):
        lvl = logging.ERROR
    try:
        d = os.path.dirname(os.path.abspath(log_path))
        os.makedirs(d, exist_ok=True)
        fh = RotatingFileHandler(log_path, maxBytes=2000000, backupCount=2, encoding='utf-8')
    except OSError as exc:
        print(f"talist: logging disabled ({exc})", file=sys.stderr)
        logger.addHandler(logging.NullHandler())
        return
    fh.setLevel(lvl)
    fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s'))
    logger.addHandler(fh)


# -----------------------------
# DB
# -----------------------------
# Timestamps written by older builds of the tool look like
# "2021-06-01 17:03:12.123456789 UTC".
_LEGACY_TS_RE = re.compile(r"^(\d{4}-\d{2}-\d{2}) (\d{2}:\d{2}:\d{2})(?:\.(\d+))? UTC$")
_HMS_RE = re.compile(r"^(?:(\d+):)?(\d{1,2}):(\d{2})$")
_SECONDS_RE = re.compile(r"^(-?)(\d+)(?:\.(\d+))?$")


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def format_timestamp(value: Optional[dt.datetime]) -> str:
    return value.isoformat() if value is not None else ""


def parse_timestamp(text: Optional[str]) -> Optional[dt.datetime]:
    raw = (text or "").strip()
    if not raw:
        return None
    m = _LEGACY_TS_RE.match(raw)
    if m:
        day, clock, frac = m.groups()
        # fromisoformat only understands microseconds; nanoseconds are cut.
        raw = f"{day}T{clock}" + (f".{frac[:6].ljust(6, '0')}" if frac else "") + "+00:00"
    try:
        value = dt.datetime.fromisoformat(raw)
    except ValueError:
        try:
            value = dt.datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Unparseable timestamp %r; showing it as empty", text)
            return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value


def format_duration(value: Optional[dt.timedelta]) -> str:
    """Whole seconds, plus a six digit fraction when there are microseconds."""
    if value is None:
        return ""
    if value < dt.timedelta(0):
        return "-" + format_duration(-value)
    seconds = value // dt.timedelta(seconds=1)
    if value.microseconds:
        return f"{seconds}.{value.microseconds:06d}"
    return str(seconds)


def parse_duration(text: Optional[str]) -> Optional[dt.timedelta]:
    raw = (text or "").strip()
    if not raw:
        return None
    try:
        m = _SECONDS_RE.match(raw)
        if m:
            sign, whole, frac = m.groups()
            value = dt.timedelta(seconds=int(whole), microseconds=int((frac or "0")[:6].ljust(6, "0")))
            return -value if sign else value
        m = _HMS_RE.match(raw)
        if m:
            h, mins, secs = m.groups()
            return dt.timedelta(hours=int(h or 0), minutes=int(mins), seconds=int(secs))
        return dt.timedelta(seconds=float(raw))
    except (ValueError, OverflowError):
        logger.warning("Unparseable duration %r; showing it as empty", text)
        return None


@dataclass
class Ticket:
    task: str = ""
    description: str = ""
    category: str = ""
    priority: str = ""
    board: str = ""
    created_date: Optional[dt.datetime] = None
    due_date: Optional[dt.datetime] = None
    finished_date: Optional[dt.datetime] = None
    duration: Optional[dt.timedelta] = None
    placeholder: bool = field(default=False, compare=False, repr=False)  # synthetic row for an empty board

    @classmethod
    def blank(cls, board: str) -> "Ticket":
        return cls(board=board, placeholder=True)

    @classmethod
    def from_row(cls, row: Sequence[Optional[str]]) -> "Ticket":
        task, description, category, priority, board, created, due, finished, duration = row
        return cls(
            task=task or "",
            description=description or "",
            category=category or "",
            priority=priority or "",
            board=board or "",
            created_date=parse_timestamp(created),
            due_date=parse_timestamp(due),
            finished_date=parse_timestamp(finished),
            duration=parse_duration(duration),
        )

    def to_row(self) -> Tuple[str, ...]:
        return (
            self.task,
            self.description,
            self.category,
            self.priority,
            self.board,
            format_timestamp(self.created_date),
            format_timestamp(self.due_date),
            format_timestamp(self.finished_date),
            format_duration(self.duration),
        )


class TicketStore:
    """Reads and appends tickets. Every call opens (and closes) its own connection."""

    COLUMNS = [
        "task", "description", "category", "priority", "board",
        "created_date", "due_date", "finished_date", "duration",
    ]
    # Columns are listed explicitly so extra columns in the file do not matter.
    SELECT_TICKETS_SQL = """
        SELECT task, description, category, priority, board,
               created_date, due_date, finished_date, duration
        FROM items
        WHERE board = ?
        ORDER BY rowid
    """
    SELECT_BOARDS_SQL = "SELECT name FROM lists ORDER BY rowid"
    INSERT_TICKET_SQL = (
        f"INSERT INTO items ({', '.join(COLUMNS)}) "
        f"VALUES ({', '.join('?' for _ in COLUMNS)})"
    )

    def __init__(self, path: str):
        self.path = path

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path)

    def fetch_tickets(self, board: str) -> List[Ticket]:
        """All tickets of ``board``; a single placeholder when it has none."""
        try:
            with closing(self._connect()) as conn:
                rows = conn.execute(self.SELECT_TICKETS_SQL, (board,)).fetchall()
        except sqlite3.Error as exc:
            logger.error("Fetching tickets for board %r from %s failed", board, self.path, exc_info=True)
            raise StorageError(f"cannot fetch tickets for board {board!r}: {exc}") from exc
        tickets = [Ticket.from_row(r) for r in rows]
        if not tickets:
            # Callers index into the list, so it is never empty.
            tickets.append(Ticket.blank(board))
        return tickets

    def fetch_boards(self) -> List[str]:
        try:
            with closing(self._connect()) as conn:
                rows = conn.execute(self.SELECT_BOARDS_SQL).fetchall()
        except sqlite3.Error as exc:
            logger.error("Fetching boards from %s failed", self.path, exc_info=True)
            raise StorageError(f"cannot fetch boards: {exc}") from exc
        return [r[0] for r in rows]

    def insert_ticket(self, ticket: Ticket) -> None:
        try:
            with closing(self._connect()) as conn:
                conn.execute(self.INSERT_TICKET_SQL, ticket.to_row())
                conn.commit()
        except sqlite3.Error as exc:
            logger.error("Inserting ticket %r into board %r failed", ticket.task, ticket.board, exc_info=True)
            raise StorageError(f"cannot save ticket: {exc}") from exc
        logger.info("Inserted ticket %r into board %r", ticket.task, ticket.board)


# -----------------------------
# Events
# -----------------------------
@dataclass(frozen=True)
class InputEvent:
    key: str


@dataclass(frozen=True)
class Tick:
    pass


@dataclass(frozen=True)
class SourceFailed:
    error: BaseException


TICK = Tick()
Event = Union[InputEvent, Tick, SourceFailed]
PollFn = Callable[[float], Sequence[str]]


class EventSource(threading.Thread):
    """Merges key presses and a fixed-rate tick into one ordered channel.

    ``poll(timeout)`` waits at most ``timeout`` seconds and returns the keys
    that arrived (possibly none). Each key becomes its own ``InputEvent`` as
    soon as it is seen; ``TICK`` is emitted whenever ``tick_rate`` seconds have
    passed since the previous one, whether or not keys arrived in between.
    """

    def __init__(
        self,
        channel: "queue.Queue[Event]",
        poll: PollFn,
        tick_rate: float = DEFAULT_TICK_RATE,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(name="talist-events", daemon=True)
        self.channel = channel
        self.tick_rate = tick_rate
        self._poll = poll
        self._clock = clock
        self._stopped = threading.Event()

    def stop(self) -> None:
        self._stopped.set()

    def run(self) -> None:
        last_tick = self._clock()
        try:
            while not self._stopped.is_set():
                timeout = max(0.0, self.tick_rate - (self._clock() - last_tick))
                for key in self._poll(timeout):
                    self.channel.put(InputEvent(key))
                if self._clock() - last_tick >= self.tick_rate:
                    self.channel.put(TICK)
                    last_tick = self._clock()
        except Exception as exc:
            # The consumer blocks on the channel; make sure it hears about this.
            logger.exception("Event source stopped")
            self.channel.put(SourceFailed(exc))


class TerminalKeys:
    """Poll function over a prompt_toolkit ``Input`` (POSIX file descriptor)."""

    def __init__(self, term_input: Input):
        self.input = term_input

    def __call__(self, timeout: float) -> List[str]:
        if self.input.closed:
            raise TerminalError("terminal input closed")
        try:
            ready, _, _ = select.select([self.input.fileno()], [], [], timeout)
        except (OSError, ValueError) as exc:
            raise TerminalError(f"cannot poll terminal input: {exc}") from exc
        # On timeout, flush_keys releases a lone Escape held by the parser.
        presses = self.input.read_keys() if ready else self.input.flush_keys()
        return [kp.key for kp in presses]


# -----------------------------
# Session state
# -----------------------------
class ViewMode(Enum):
    TICKETS = 0


@dataclass(frozen=True)
class Browsing:
    pass


@dataclass(frozen=True)
class Entering:
    buffer: str = ""


@dataclass
class SessionState:
    boards: Tuple[str, ...]
    active_board_index: int = 0
    selected_ticket_index: int = 0
    view_mode: ViewMode = ViewMode.TICKETS
    mode: Union[Browsing, Entering] = field(default_factory=Browsing)
    notice: Optional[str] = None
    notice_error: bool = False
    running: bool = True

    def __post_init__(self) -> None:
        self.boards = tuple(self.boards)
        if not self.boards:
            raise PreconditionViolation("no boards found; add a row to the 'lists' table first")
        self.active_board_index %= len(self.boards)

    @property
    def active_board(self) -> str:
        return self.boards[self.active_board_index]

    @property
    def entering(self) -> bool:
        return isinstance(self.mode, Entering)

    def next_board(self) -> None:
        self.active_board_index = (self.active_board_index + 1) % len(self.boards)
        self.selected_ticket_index = 0

    def previous_board(self) -> None:
        self.active_board_index = (self.active_board_index - 1) % len(self.boards)
        self.selected_ticket_index = 0

    def clamp_selection(self, count: int) -> None:
        if count <= 0:
            raise PreconditionViolation("ticket list is empty")
        self.selected_ticket_index = min(max(self.selected_ticket_index, 0), count - 1)

    def select_next(self, count: int) -> None:
        self.clamp_selection(count)
        if self.selected_ticket_index >= count - 1:
            self.selected_ticket_index = 0
        else:
            self.selected_ticket_index += 1

    def select_previous(self, count: int) -> None:
        self.clamp_selection(count)
        if self.selected_ticket_index == 0:
            self.selected_ticket_index = count - 1
        else:
            self.selected_ticket_index -= 1

    def show_notice(self, text: str, error: bool = False) -> None:
        self.notice = text
        self.notice_error = error

    def clear_notice(self) -> None:
        self.notice = None
        self.notice_error = False


# -----------------------------
# Dispatcher
# -----------------------------
class Dispatcher:
    """Routes events to state changes and ticket inserts through prompt_toolkit key bindings.

    Keys go through a ``KeyProcessor`` like they do inside a running
    ``Application``; the headless ``app`` only gives handlers their context.
    """

    def __init__(self, state: SessionState, store: TicketStore, now: Callable[[], dt.datetime] = _utcnow):
        self.state = state
        self.store = store
        self.now = now
        self.key_bindings = self._build_key_bindings()
        self.key_processor = KeyProcessor(self.key_bindings)
        self.app: Application = Application(input=DummyInput(), output=DummyOutput())
        # Every binding is a single key, so nothing is ever held back waiting for more.
        self.app.timeoutlen = None

    def _build_key_bindings(self) -> KeyBindings:
        state = self.state
        store = self.store
        kb = KeyBindings()
        is_browsing = Condition(lambda: not state.entering)
        is_entering = Condition(lambda: state.entering)

        @kb.add('q', filter=is_browsing)
        def _(event):
            logger.info("Quit requested")
            state.running = False

        @kb.add('t', filter=is_browsing)
        def _(event):
            state.view_mode = ViewMode.TICKETS

        @kb.add('a', filter=is_browsing)
        def _(event):
            state.mode = Entering("")

        @kb.add('l', filter=is_browsing)
        def _(event):
            state.next_board()
            logger.debug("Board -> %s", state.active_board)

        @kb.add('h', filter=is_browsing)
        def _(event):
            state.previous_board()
            logger.debug("Board -> %s", state.active_board)

        # The list can grow between draws, so its length is read fresh here.
        @kb.add('j', filter=is_browsing)
        def _(event):
            state.select_next(len(store.fetch_tickets(state.active_board)))

        @kb.add('k', filter=is_browsing)
        def _(event):
            state.select_previous(len(store.fetch_tickets(state.active_board)))

        @kb.add('enter', filter=is_entering)
        def _(event):
            self._commit_entry()

        @kb.add('backspace', filter=is_entering)
        def _(event):
            state.mode = Entering(state.mode.buffer[:-1])

        @kb.add('escape', filter=is_entering)
        def _(event):
            state.mode = Browsing()
            state.show_notice("Cancelled")

        @kb.add(Keys.Any, filter=is_entering)
        def _(event):
            ch = event.data
            if len(ch) == 1 and ch.isprintable():
                state.mode = Entering(state.mode.buffer + ch)

        return kb

    def _commit_entry(self) -> None:
        state = self.state
        board = state.active_board
        ticket = Ticket(task=state.mode.buffer, board=board, created_date=self.now())
        state.mode = Browsing()
        try:
            self.store.insert_ticket(ticket)
        except StorageError as exc:
            state.show_notice(f"Could not save ticket: {exc}", error=True)
            return
        state.show_notice(f"Added ticket to {board}")

    def dispatch(self, event: Event) -> None:
        if isinstance(event, SourceFailed):
            raise TerminalError(f"input polling failed: {event.error}") from event.error
        if not isinstance(event, InputEvent):
            return
        self.state.clear_notice()
        key = event.key
        if not isinstance(key, Keys) and len(key) != 1:
            logger.debug("Ignoring unknown key %r", key)
            return
        self.key_processor.feed(KeyPress(key))
        with set_app(self.app):
            self.key_processor.process_keys()


# -----------------------------
# Rendering
# -----------------------------
HELP_HEIGHT = 3
LIST_PANE_PERCENT = 25
COLUMN_SPACING = 2
HELP_LEGEND: Tuple[Tuple[str, str], ...] = (
    ("h/l", "Switch Board"),
    ("j/k", "Select Ticket"),
    ("a", "Add Ticket"),
    ("t", "Tickets"),
    ("q", "Quit"),
)
DETAIL_COLUMNS: Tuple[Tuple[str, int], ...] = (
    ("Task", 20),
    ("Desc", 20),
    ("Category", 20),
    ("Duration", 13),
    ("Created At", 13),
    ("Finished At", 13),
)

BASE_STYLE: Dict[str, str] = {
    'frame.border': '#5f5f5f',
    'frame.label': 'bold #f0f0f0',
    'ticket': '#f0f0f0',
    'ticket.selected': 'bold',
    'cursor-line': 'nounderline bg:ansiyellow ansiblack',
    'legend.key': 'ansiyellow',
    'legend.desc': '#f0f0f0',
    'legend.sep': '#5f5f5f',
    'detail.header': 'bold',
    'detail.value': '#f0f0f0',
    'entry.label': 'bold #87d7ff',
    'entry.text': '#ffffff bg:#303030',
    'entry.cursor': 'reverse',
    'entry.hint': '#5fd7af',
    'notice': '#ffd787',
    'notice.error': 'bold #ff8787',
}


def _sanitize_cell_text(s: Optional[str]) -> str:
    return (s or "").replace("\n", " ").replace("\r", " ").replace("\t", " ")


def _fmt_hms(total_seconds: int) -> str:
    s = int(max(0, total_seconds))
    h, r = divmod(s, 3600)
    m, s = divmod(r, 60)
    if h:
        return f"{h:d}:{m:02d}:{s:02d}"
    return f"{m:02d}:{s:02d}"


def _fmt_when(value: Optional[dt.datetime]) -> str:
    return value.astimezone().strftime("%Y-%m-%d %H:%M") if value is not None else ""


def detail_values(ticket: Ticket) -> List[str]:
    """The detail row for ``ticket``, in ``DETAIL_COLUMNS`` order."""
    return [
        ticket.task,
        ticket.description,
        ticket.category,
        _fmt_hms(int(ticket.duration.total_seconds())) if ticket.duration is not None else "",
        _fmt_when(ticket.created_date),
        _fmt_when(ticket.finished_date),
    ]


class BoardView:
    """The dashboard layout: help strip on top, ticket list left, detail right.

    ``show(state, tickets)`` hands over what the next render displays; the
    controls read it back through their text callables, so each render sees
    the latest values. Widths come from ``Dimension`` weights, and the list
    window scrolls to keep the selected row (the cursor line) visible.
    """

    def __init__(self) -> None:
        self.state: Optional[SessionState] = None
        self.tickets: List[Ticket] = []
        self.selected = 0

        self.help_control = FormattedTextControl(text=lambda: self.help_fragments())
        self.list_control = FormattedTextControl(text=lambda: self.list_fragments())
        self.detail_controls = [
            FormattedTextControl(text=partial(self.detail_fragments, column))
            for column in range(len(DETAIL_COLUMNS))
        ]

        help_window = Window(height=1, content=self.help_control, wrap_lines=False, always_hide_cursor=True)
        list_window = Window(content=self.list_control, wrap_lines=False, cursorline=True, always_hide_cursor=True)
        detail_table = VSplit(
            [
                Window(
                    width=Dimension(weight=weight, preferred=0),
                    content=control,
                    wrap_lines=False,
                    always_hide_cursor=True,
                )
                for control, (_, weight) in zip(self.detail_controls, DETAIL_COLUMNS)
            ],
            padding=COLUMN_SPACING,
        )
        self.list_frame = Frame(body=list_window, title="", width=Dimension(weight=LIST_PANE_PERCENT))
        self.detail_frame = Frame(body=detail_table, title="Detail", width=Dimension(weight=100 - LIST_PANE_PERCENT))
        self.container = HSplit([
            Frame(body=help_window, title="Help", height=HELP_HEIGHT),
            VSplit([self.list_frame, self.detail_frame]),
        ])
        self.layout = Layout(self.container)

    def show(self, state: SessionState, tickets: Sequence[Ticket]) -> None:
        if not tickets:
            raise PreconditionViolation("ticket list is empty")
        self.state = state
        self.tickets = list(tickets)
        self.selected = min(max(state.selected_ticket_index, 0), len(self.tickets) - 1)
        self.list_frame.title = self.current.board or state.active_board

    @property
    def current(self) -> Ticket:
        return self.tickets[self.selected]

    def help_fragments(self) -> StyleAndTextTuples:
        state = self.state
        if state is None:
            return []
        if isinstance(state.mode, Entering):
            # The window scrolls to the cursor, so a long title shows its tail.
            return [
                ('class:entry.label', "New ticket: "),
                ('class:entry.text', _sanitize_cell_text(state.mode.buffer)),
                ('[SetCursorPosition]', ""),
                ('class:entry.cursor', " "),
                ('class:entry.hint', "  (Enter=save, Esc=cancel)"),
            ]
        if state.notice:
            return [('class:notice.error' if state.notice_error else 'class:notice', state.notice)]
        frags: StyleAndTextTuples = []
        for i, (key, desc) in enumerate(HELP_LEGEND):
            if i:
                frags.append(('class:legend.sep', " │ "))
            frags.append(('class:legend.key', key))
            frags.append(('class:legend.desc', f" {desc}"))
        return frags

    def list_fragments(self) -> StyleAndTextTuples:
        frags: StyleAndTextTuples = []
        for idx, t in enumerate(self.tickets):
            if idx:
                frags.append(("", "\n"))
            if idx == self.selected:
                frags.append(('[SetCursorPosition]', ""))
                frags.append(('class:ticket.selected', _sanitize_cell_text(t.task)))
            else:
                frags.append(('class:ticket', _sanitize_cell_text(t.task)))
        return frags

    def detail_fragments(self, column: int) -> StyleAndTextTuples:
        name, _ = DETAIL_COLUMNS[column]
        value = detail_values(self.current)[column] if self.tickets else ""
        # Header, one blank line, then the value.
        return [
            ('class:detail.header', name),
            ("", "\n\n"),
            ('class:detail.value', _sanitize_cell_text(value)),
        ]


class TerminalSurface:
    """The terminal seen through prompt_toolkit: raw input plus a full-screen ``Application``.

    Use as a context manager; leaving it always shows the cursor, leaves the
    alternate screen and restores the original terminal mode. The
    application is never run: the session loop calls its renderer directly.
    """

    def __init__(self, term_input: Optional[Input] = None, output: Optional[Output] = None, style: Optional[Style] = None):
        self.input = term_input if term_input is not None else create_input()
        self.output = output if output is not None else create_output()
        self.style = style if style is not None else Style.from_dict(BASE_STYLE)
        self.view = BoardView()
        self.app: Optional[Application] = None
        self._raw = None

    def __enter__(self) -> "TerminalSurface":
        try:
            self._raw = self.input.raw_mode()
            self._raw.__enter__()
            self.app = Application(
                layout=self.view.layout,
                style=self.style,
                include_default_pygments_style=False,
                full_screen=True,
                input=self.input,
                output=self.output,
            )
        except OSError as exc:
            self._restore()
            raise TerminalError(f"cannot take over the terminal: {exc}") from exc
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._restore()

    def _restore(self) -> None:
        try:
            if self.app is not None:
                # Leaves the alternate screen, shows the cursor and flushes.
                self.app.renderer.reset(leave_alternate_screen=True)
        finally:
            raw, self._raw = self._raw, None
            if raw is not None:
                raw.__exit__(None, None, None)

    def get_size(self) -> Size:
        return self.output.get_size()

    def draw(self, state: SessionState, tickets: Sequence[Ticket]) -> None:
        if self.app is None:
            raise TerminalError("terminal surface used outside its 'with' block")
        self.view.show(state, tickets)
        app = self.app
        try:
            with set_app(app):
                # Controls cache their text per render; a new count means fresh text.
                app.render_counter += 1
                app.renderer.render(app, app.layout)
        except OSError as exc:
            raise TerminalError(f"terminal draw failed: {exc}") from exc


# -----------------------------
# Session loop
# -----------------------------
class Session:
    """Single consumer of the event channel: receive, dispatch, redraw."""

    def __init__(
        self,
        state: SessionState,
        store: TicketStore,
        channel: "queue.Queue[Event]",
        surface: TerminalSurface,
        now: Callable[[], dt.datetime] = _utcnow,
    ):
        self.state = state
        self.store = store
        self.channel = channel
        self.surface = surface
        self.dispatcher = Dispatcher(state, store, now=now)

    def render(self) -> None:
        tickets = self.store.fetch_tickets(self.state.active_board)
        self.state.clamp_selection(len(tickets))
        self.surface.draw(self.state, tickets)

    def run(self) -> None:
        logger.info("Session started on board %r (%d boards)", self.state.active_board, len(self.state.boards))
        while True:
            self.render()
            event = self.channel.get()
            self.dispatcher.dispatch(event)
            if not self.state.running:
                break
        logger.info("Session ended")


def run_session(store: TicketStore, cfg: Config, surface: Optional[TerminalSurface] = None) -> None:
    """Run the dashboard until 'q'. Storage/terminal failures propagate after the terminal is restored."""
    state = SessionState(boards=tuple(store.fetch_boards()))
    channel: "queue.Queue[Event]" = queue.Queue()
    surface = surface if surface is not None else TerminalSurface()
    with surface:
        source = EventSource(channel, TerminalKeys(surface.input), tick_rate=cfg.tick_rate)
        source.start()
        try:
            Session(state, store, channel, surface).run()
        finally:
            source.stop()
            source.join(timeout=max(1.0, cfg.tick_rate * 2))


def print_summary(store: TicketStore) -> None:
    for board in store.fetch_boards():
        count = sum(1 for t in store.fetch_tickets(board) if not t.placeholder)
        print(f"{board}: {count} tickets")


def main(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="Terminal ticket boards")
    ap.add_argument("--config", help=f"Path to YAML config (default {DEFAULT_CONFIG_PATH} when present)")
    ap.add_argument("--db", help=f"Path to sqlite DB (default {DEFAULT_DB_PATH})")
    ap.add_argument("--tick-ms", type=int, help="Redraw interval in milliseconds (default 200)")
    ap.add_argument("--log-level", help="File log level (DEBUG, INFO, WARNING, ERROR)")
    ap.add_argument("--no-ui", action="store_true", help="Print tickets per board and exit")
    args = ap.parse_args(argv)

    config_path = args.config
    if config_path is None and os.path.exists(DEFAULT_CONFIG_PATH):
        config_path = DEFAULT_CONFIG_PATH
    try:
        cfg = load_config(config_path)
        if args.db:
            cfg.db_path = args.db
        if args.tick_ms is not None:
            if args.tick_ms <= 0:
                raise ConfigError("--tick-ms must be positive")
            cfg.tick_rate = args.tick_ms / 1000.0
        if args.log_level:
            cfg.log_level = args.log_level.upper()
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        sys.exit(2)

    setup_logging(cfg.resolved_log_path(), cfg.log_level)
    store = TicketStore(cfg.db_path)
    try:
        if args.no_ui:
            print_summary(store)
            return
        run_session(store, cfg)
    except TalistError as e:
        logger.error("Aborted: %s", e, exc_info=True)
        print(f"talist: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
