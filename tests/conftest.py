import os
import sqlite3
import sys
from typing import Dict, List

import pytest
from prompt_toolkit.data_structures import Size
from prompt_toolkit.output import DummyOutput

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import talist  # noqa: E402


SCHEMA_SQL = """
CREATE TABLE lists (name TEXT);
CREATE TABLE items (
    task TEXT,
    description TEXT,
    category TEXT,
    priority TEXT,
    board TEXT,
    created_date TEXT,
    due_date TEXT,
    finished_date TEXT,
    duration TEXT
);
"""


def create_schema(path) -> None:
    with sqlite3.connect(str(path)) as conn:
        conn.executescript(SCHEMA_SQL)


def seed(path, boards: List[str], tickets: Dict[str, List[str]]) -> None:
    """Insert board names and ticket titles (other columns left empty)."""
    with sqlite3.connect(str(path)) as conn:
        conn.executemany("INSERT INTO lists(name) VALUES (?)", [(b,) for b in boards])
        for board, titles in tickets.items():
            conn.executemany(
                "INSERT INTO items(task, description, category, priority, board, created_date, due_date, finished_date, duration) "
                "VALUES (?, '', '', '', ?, '', '', '', '')",
                [(title, board) for title in titles],
            )
        conn.commit()


def item_rows(path) -> List[tuple]:
    with sqlite3.connect(str(path)) as conn:
        return conn.execute(
            "SELECT task, description, category, priority, board, created_date, due_date, finished_date, duration "
            "FROM items ORDER BY rowid"
        ).fetchall()


class RecordingOutput(DummyOutput):
    """DummyOutput that remembers terminal-mode calls and written text."""

    def __init__(self, rows: int = 12, columns: int = 60):
        self.size = Size(rows=rows, columns=columns)
        self.calls: List[str] = []
        self.written: List[str] = []

    def get_size(self) -> Size:
        return self.size

    def write(self, data: str) -> None:
        self.written.append(data)

    def write_raw(self, data: str) -> None:
        self.written.append(data)

    def enter_alternate_screen(self) -> None:
        self.calls.append('enter_alternate_screen')

    def quit_alternate_screen(self) -> None:
        self.calls.append('quit_alternate_screen')

    def hide_cursor(self) -> None:
        self.calls.append('hide_cursor')

    def show_cursor(self) -> None:
        self.calls.append('show_cursor')

    def text(self) -> str:
        return "".join(self.written)

    def restored(self) -> bool:
        """True when the alternate screen was left and the cursor is visible again."""
        screen_calls = [c for c in self.calls if c.endswith("alternate_screen")]
        cursor_calls = [c for c in self.calls if c.endswith("_cursor")]
        return (
            screen_calls[-1:] in ([], ["quit_alternate_screen"])
            and cursor_calls[-1:] in ([], ["show_cursor"])
        )


def fragment_text(fragments) -> str:
    return "".join(text for style, text in fragments if not style.startswith("["))


class FakeSurface:
    """Stands in for TerminalSurface in session tests; snapshots every draw."""

    def __init__(self):
        self.view = talist.BoardView()
        self.frames: List[dict] = []

    def draw(self, state, tickets) -> None:
        self.view.show(state, tickets)
        self.frames.append({
            "board": self.view.list_frame.title,
            "tickets": [t.task for t in self.view.tickets],
            "selected": self.view.current.task,
            "help": fragment_text(self.view.help_fragments()),
        })


def screen_lines(surface) -> List[str]:
    """Rows of the last screen the surface's renderer produced."""
    screen = surface.app.renderer.last_rendered_screen
    size = surface.get_size()
    return [
        "".join(screen.data_buffer[y][x].char for x in range(size.columns))
        for y in range(size.rows)
    ]


def screen_styles(surface, row: int) -> List[str]:
    screen = surface.app.renderer.last_rendered_screen
    return [screen.data_buffer[row][x].style for x in range(surface.get_size().columns)]


@pytest.fixture
def temp_db_path(tmp_path):
    """Return a unique SQLite path per test to avoid cross-test contamination."""
    path = tmp_path / "talist.db"
    create_schema(path)
    return path


@pytest.fixture
def make_store(temp_db_path):
    """Seed the temp database and return a TicketStore over it."""
    def _make(boards: List[str], tickets: Dict[str, List[str]] = None) -> talist.TicketStore:
        seed(temp_db_path, boards, tickets or {})
        return talist.TicketStore(str(temp_db_path))
    return _make


@pytest.fixture
def fixed_now():
    return talist.dt.datetime(2024, 3, 1, 9, 30, tzinfo=talist.dt.timezone.utc)
