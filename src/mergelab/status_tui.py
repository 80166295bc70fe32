from __future__ import annotations

from pathlib import Path

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import DataTable, Footer, Header, Static

from mergelab.status_queries import (
    HeadStatusRow,
    PassStatusRow,
    StatusOverview,
    load_head_status,
    load_pass_status,
    summarize,
)


_ERROR_MAX_CHARS = 48
_SHORT_SHA_CHARS = 10


class StatusApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("f", "cycle_source_filter", "Source Filter"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    .panel-title {
        text-style: bold;
        padding-left: 1;
    }
    #summary {
        height: 2;
        padding: 0 1;
    }
    DataTable {
        height: 1fr;
    }
    """

    def __init__(self, *, db_path: Path, refresh_seconds: int = 5, row_limit: int | None = 200) -> None:
        super().__init__()
        self._db_path = db_path
        self._refresh_seconds = refresh_seconds
        self._row_limit = row_limit
        self._source_filter: str | None = None
        self._available_sources: tuple[str, ...] = ()
        self.summary_text = ""

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield Static("Discovery Passes", classes="panel-title")
            yield DataTable(id="passes-table")
            yield Static("Discovered Heads", classes="panel-title")
            yield DataTable(id="heads-table")
        yield Footer()

    def on_mount(self) -> None:
        passes = self.query_one("#passes-table", DataTable)
        passes.add_columns("Source", "Mode", "Status", "Heads", "Finished", "Error")
        heads = self.query_one("#heads-table", DataTable)
        heads.add_columns("Source", "Job", "Kind", "Commit", "Built From", "Observed")
        self.refresh_data()
        self.set_interval(self._refresh_seconds, self.refresh_data)

    def action_refresh(self) -> None:
        self.refresh_data()

    def action_cycle_source_filter(self) -> None:
        self._source_filter = _next_source_filter(self._source_filter, self._available_sources)
        self.refresh_data()

    def refresh_data(self) -> None:
        pass_rows = load_pass_status(self._db_path)
        head_rows = load_head_status(
            self._db_path, source_filter=self._source_filter, limit=self._row_limit
        )
        self._available_sources = tuple(row.source_id for row in pass_rows)

        passes = self.query_one("#passes-table", DataTable)
        passes.clear(columns=False)
        _fill_passes(passes, pass_rows)
        heads = self.query_one("#heads-table", DataTable)
        heads.clear(columns=False)
        _fill_heads(heads, head_rows)

        self.summary_text = _summary_text(summarize(pass_rows, head_rows), self._source_filter)
        self.query_one("#summary", Static).update(self.summary_text)


def run_status_tui(*, db_path: Path, refresh_seconds: int, row_limit: int | None = 200) -> None:
    app = StatusApp(db_path=db_path, refresh_seconds=refresh_seconds, row_limit=row_limit)
    app.run()


def _fill_passes(table: DataTable, rows: tuple[PassStatusRow, ...]) -> None:
    if not rows:
        table.add_row("-", "-", "-", "-", "-", "No discovery passes recorded")
        return
    for row in rows:
        table.add_row(
            row.source_id,
            row.mode,
            row.status,
            str(row.emitted_count),
            row.finished_at or "running",
            _truncate(row.error, _ERROR_MAX_CHARS),
        )


def _fill_heads(table: DataTable, rows: tuple[HeadStatusRow, ...]) -> None:
    if not rows:
        table.add_row("-", "-", "-", "-", "-", "No heads discovered")
        return
    for row in rows:
        built_from = _short_sha(row.metadata_commit_hash) if row.metadata_commit_hash else "-"
        if row.drifted:
            built_from = f"{built_from}*"
        table.add_row(
            row.source_id,
            row.job_id,
            row.kind,
            _short_sha(row.commit_hash),
            built_from,
            row.observed_at,
        )


def _summary_text(overview: StatusOverview, source_filter: str | None) -> str:
    scope = source_filter or "all"
    return (
        f"source={scope} sources={overview.sources} failing={overview.failing_sources} "
        f"heads={overview.heads} drifted={overview.drifted_heads}"
    )


def _next_source_filter(current: str | None, available: tuple[str, ...]) -> str | None:
    if not available:
        return None
    if current is None:
        return available[0]
    if current not in available:
        return None
    idx = available.index(current)
    if idx + 1 >= len(available):
        return None
    return available[idx + 1]


def _short_sha(value: str | None) -> str:
    if not value:
        return "-"
    return value[:_SHORT_SHA_CHARS]


def _truncate(value: str | None, limit: int) -> str:
    if not value:
        return "-"
    first_line = value.strip().splitlines()[0] if value.strip() else ""
    if not first_line:
        return "-"
    if len(first_line) <= limit:
        return first_line
    return f"{first_line[: limit - 3]}..."
