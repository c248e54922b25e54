from __future__ import annotations

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, VerticalScroll
from textual.widgets import DataTable, Footer, Header, Markdown

from savant.history import HistoryStore
from savant.transcript import render_markdown


_EMPTY_TEXT = "_No stored conversations._"


class TranscriptApp(App[None]):
    """Browse conversations saved by the history store."""

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
    ]
    CSS = """
    #keys-table {
        width: 40;
        border: round $boost;
    }
    #transcript-scroll {
        border: round $accent;
        padding: 0 1;
    }
    """

    def __init__(self, store: HistoryStore) -> None:
        super().__init__()
        self._store = store
        self._keys: tuple[str, ...] = ()
        self._selected: str | None = None

    @property
    def selected_key(self) -> str | None:
        return self._selected

    def compose(self) -> ComposeResult:
        yield Header()
        with Horizontal():
            yield DataTable(id="keys-table", cursor_type="row")
            with VerticalScroll(id="transcript-scroll"):
                yield Markdown(_EMPTY_TEXT, id="transcript")
        yield Footer()

    def on_mount(self) -> None:
        table = self.query_one("#keys-table", DataTable)
        table.add_columns("Task", "Turns")
        self.refresh_data()
        table.focus()

    def action_refresh(self) -> None:
        self.refresh_data()

    def refresh_data(self) -> None:
        table = self.query_one("#keys-table", DataTable)
        table.clear()
        self._keys = self._store.keys()
        for key in self._keys:
            history = self._store.load(key)
            table.add_row(key, str(len(history.turns)) if history is not None else "-")
        if self._keys:
            keep = self._selected if self._selected in self._keys else self._keys[0]
            table.move_cursor(row=self._keys.index(keep), animate=False)
            self.show_transcript(keep)
        else:
            self._selected = None
            self.query_one("#transcript", Markdown).update(_EMPTY_TEXT)

    def show_transcript(self, key: str) -> None:
        self._selected = key
        history = self._store.load(key)
        text = (
            render_markdown(history, title=key)
            if history is not None
            else f"_Conversation {key} is no longer stored._"
        )
        self.query_one("#transcript", Markdown).update(text)

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        if event.data_table.id != "keys-table":
            return
        if 0 <= event.cursor_row < len(self._keys):
            key = self._keys[event.cursor_row]
            if key != self._selected:
                self.show_transcript(key)


def run_transcript_tui(store: HistoryStore) -> None:
    TranscriptApp(store).run()
