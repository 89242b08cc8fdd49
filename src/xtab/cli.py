"""Typer CLI application: top-level commands and subcommand groups."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Optional

import portalocker
import typer

import xtab
from xtab.config import EditorConfig
from xtab.contracts.common import ResponseEnvelope, Target, WarningDetail, XtabError
from xtab.contracts.responses import DocumentMeta
from xtab.engine.context import SessionContext
from xtab.engine.dispatcher import (
    envelope_from_exception,
    exit_code_for,
    print_response,
    success_envelope,
)
from xtab.engine.grid import parse_ref
from xtab.engine.session import EditSession
from xtab.engine.sync import SyncEngine
from xtab.io.documents import FileDocument, MemoryDocument
from xtab.io.fileops import fingerprint, read_text_safe
from xtab.observe.events import EventEmitter, Timer, TraceRecorder
from xtab.tree.codec import parse
from xtab.tree.nodes import root_element

# ---------------------------------------------------------------------------
# App & subcommand groups
# ---------------------------------------------------------------------------

_MAIN_HELP = """\
Edit the tables inside XML documents as a spreadsheet grid, without touching markup.

**Workflow:**  inspect → edit → inspect

1. `xtab inspect -f data.xml`: discovered tables, columns, row counts, fingerprint
2. `xtab cell set -f data.xml -t Item --ref B2 --value 42`
3. `xtab col add -f data.xml -t Item --count 2 --dry-run`: preview without writing

**Every command** returns a JSON `ResponseEnvelope`:
`{"ok": bool, "command": "...", "result": {...}, "errors": [...], "sync": {...}, "metrics": {"duration_ms": N}}`

**Tables** are repeated elements whose items are elements themselves; `-t` names the
repeated tag (as shown by `xtab table ls`). **Cells** use spreadsheet refs: `B2` is the
second column of the second row.

**Safety rails:** all mutating commands support `--dry-run` and `--backup`.
Documents in the Office spreadsheet XML format are detected and never edited.

**Exit codes:** 0=success, 10=validation, 40=conflict, 50=io, 60=parse, 70=incompatible, 90=internal

Run `xtab serve` to drive a live editing session over JSON lines.
"""

_TABLE_EPILOG = """\
**Examples:**

`xtab table ls -f data.xml`

`xtab table add -f data.xml --container Concepts --row-name Concept`

`xtab table rename -f data.xml -t Concept --to Term`
"""

_ROW_EPILOG = """\
**Examples:**

`xtab row add -f data.xml -t Item --count 3`

`xtab row move -f data.xml -t Item --from 1 --to 4 --position after`

Row numbers are 1-based, as in cell refs.
"""

_COL_EPILOG = """\
**Examples:**

`xtab col add -f data.xml -t Item --count 1`: adds NewColumn1 to every row

`xtab col rename -f data.xml -t Item --name NewColumn1 --to Price`

`xtab col move -f data.xml -t Item --name Price --target Name --position after`

Columns may be given by key (`Price`) or by letter (`C`).
"""


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(xtab.__version__)
        raise typer.Exit()


app = typer.Typer(
    name="xtab",
    help=_MAIN_HELP,
    no_args_is_help=True,
    rich_markup_mode="markdown",
)

table_app = typer.Typer(
    name="table", help="Discovered tables: list, add, rename, delete.",
    epilog=_TABLE_EPILOG,
    no_args_is_help=True, rich_markup_mode="markdown",
)
cell_app = typer.Typer(
    name="cell", help="Read and write individual cell values.",
    no_args_is_help=True, rich_markup_mode="markdown",
)
row_app = typer.Typer(
    name="row", help="Add, delete and move rows.",
    epilog=_ROW_EPILOG,
    no_args_is_help=True, rich_markup_mode="markdown",
)
col_app = typer.Typer(
    name="col", help="Add, delete, rename and move columns.",
    epilog=_COL_EPILOG,
    no_args_is_help=True, rich_markup_mode="markdown",
)

app.add_typer(table_app)
app.add_typer(cell_app)
app.add_typer(row_app)
app.add_typer(col_app)


@app.callback(invoke_without_command=True)
def main(
    version: Annotated[
        bool, typer.Option("--version", "-V", help="Print version and exit.", is_eager=True)
    ] = False,
) -> None:
    if version:
        _version_callback(True)


# Type aliases for common options
FilePath = Annotated[str, typer.Option("--file", "-f", help="Path to the XML document")]
TableOpt = Annotated[Optional[str], typer.Option("--table", "-t", help="Table name (as shown by 'xtab table ls'); defaults to the first table")]
ConfigOpt = Annotated[Optional[str], typer.Option("--config", help="Path to xtab.yaml (default: xtab.yaml next to the document)")]
EventsFlag = Annotated[bool, typer.Option("--events", help="Emit NDJSON lifecycle events on stderr")]
DryRunFlag = Annotated[bool, typer.Option("--dry-run", help="Preview changes without writing to disk")]
BackupFlag = Annotated[bool, typer.Option("--backup", help="Create timestamped .bak copy before writing")]
PositionOpt = Annotated[str, typer.Option("--position", help="'before' or 'after' the target")]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _emit(envelope: ResponseEnvelope, code: int | None = None):
    print_response(envelope)
    raise typer.Exit(code if code is not None else exit_code_for(envelope))


def _run(
    cmd: str,
    file: str,
    command: str,
    args: dict[str, Any],
    *,
    table: str | None = None,
    ref: str | None = None,
    mutating: bool = False,
    dry_run: bool = False,
    backup: bool = False,
    config: str | None = None,
    events: bool = False,
) -> None:
    """Open ``file`` in an edit session, run one session command, emit the envelope."""
    target = Target(file=file, table=table, ref=ref)
    store: FileDocument | MemoryDocument | None = None
    with Timer() as t:
        try:
            cfg = EditorConfig.resolve(config, near=file)
            if mutating and not dry_run:
                store = FileDocument(file, make_backup=backup)
            else:
                if not Path(file).exists():
                    raise FileNotFoundError(f"Document not found: {file}")
                store = MemoryDocument(read_text_safe(file), echo=False)
            engine = SyncEngine(
                store,
                doc_id=file,
                config=cfg,
                events=EventEmitter(events or cfg.emit_events),
            )
            engine.open()
            session = EditSession(engine)
            if table is not None:
                switched = session.dispatch("table.switch", {"name": table})
                if not switched.ok:
                    switched.command = cmd
                    switched.target = target
                    _emit(switched)
            env = session.dispatch(command, args)
        except (XtabError, OSError, portalocker.LockException) as e:
            _emit(envelope_from_exception(cmd, e, target=target))

    env.command = cmd
    env.target = Target(file=file, doc=file, table=env.target.table or table, ref=ref)
    env.metrics.duration_ms = t.elapsed_ms
    if mutating and env.ok:
        result = env.result if isinstance(env.result, dict) else {"value": env.result}
        written = isinstance(store, FileDocument) and store.write_count > 0
        env.result = {
            **result,
            "dry_run": dry_run,
            "written": written,
            "backup_path": store.backup_path if isinstance(store, FileDocument) else None,
        }
        if dry_run and isinstance(store, MemoryDocument) and store.writes:
            env.result["preview"] = store.writes[-1][0]
    _emit(env)


# ---------------------------------------------------------------------------
# xtab version
# ---------------------------------------------------------------------------
@app.command()
def version():
    """Print the xtab version.

    Example: `xtab version`
    """
    env = success_envelope("version", {"version": xtab.__version__})
    _emit(env)


# ---------------------------------------------------------------------------
# xtab inspect
# ---------------------------------------------------------------------------
@app.command("inspect")
def inspect_cmd(
    file: FilePath,
    config: ConfigOpt = None,
):
    """Inspect a document: root element, discovered tables, compatibility status.

    Read-only. Tables are listed in document order with their path, columns
    and row count. A document in the Office spreadsheet XML format reports
    `status.state = "incompatible"` and lists the markers that matched.

    Example: `xtab inspect -f data.xml`
    """
    with Timer() as t:
        try:
            cfg = EditorConfig.resolve(config, near=file)
            text = read_text_safe(file)
            ctx = SessionContext(file, config=cfg)
            ctx.tree = parse(text)
            ctx.rediscover(preserve=False)
            root = root_element(ctx.tree)
            meta = DocumentMeta(
                path=str(Path(file).resolve()),
                fingerprint=fingerprint(file),
                root=root[0] if root is not None else None,
                status=ctx.status,
                tables=ctx.table_meta(),
            )
        except (XtabError, OSError) as e:
            _emit(envelope_from_exception("inspect", e, target=Target(file=file)))

    warnings: list[WarningDetail] = []
    if meta.status.editable and not meta.tables:
        msg = f"No tables found; the first edit writes a blank {cfg.placeholder_name} table"
        meta.warnings.append(msg)
        warnings.append(WarningDetail(code="NO_TABLES", message=msg))
    env = success_envelope(
        "inspect",
        meta.model_dump(mode="json"),
        target=Target(file=file),
        warnings=warnings,
        duration_ms=t.elapsed_ms,
    )
    _emit(env)


# ---------------------------------------------------------------------------
# xtab table
# ---------------------------------------------------------------------------
@table_app.command("ls")
def table_ls(
    file: FilePath,
    config: ConfigOpt = None,
):
    """List discovered tables with path, columns and row counts.

    Example: `xtab table ls -f data.xml`
    """
    _run("table.ls", file, "table.list", {}, config=config)


@table_app.command("add")
def table_add(
    file: FilePath,
    container: Annotated[str, typer.Option("--container", help="New section element under the root")],
    row_name: Annotated[str, typer.Option("--row-name", help="Element name of each row")] = "Item",
    dry_run: DryRunFlag = False,
    backup: BackupFlag = False,
    config: ConfigOpt = None,
    events: EventsFlag = False,
):
    """Add a table: a new section under the root with two seed rows. Mutating.

    Example: `xtab table add -f data.xml --container Concepts --row-name Concept`
    """
    _run("table.add", file, "table.add", {"container": container, "row_name": row_name},
         mutating=True, dry_run=dry_run, backup=backup, config=config, events=events)


@table_app.command("rename")
def table_rename(
    file: FilePath,
    table: Annotated[str, typer.Option("--table", "-t", help="Table to rename")],
    to: Annotated[str, typer.Option("--to", help="New element name for the rows")],
    dry_run: DryRunFlag = False,
    backup: BackupFlag = False,
    config: ConfigOpt = None,
    events: EventsFlag = False,
):
    """Rename a table (the repeated row element). Mutating.

    Example: `xtab table rename -f data.xml -t Item --to Product`
    """
    _run("table.rename", file, "table.rename", {"name": table, "new_name": to},
         mutating=True, dry_run=dry_run, backup=backup, config=config, events=events)


@table_app.command("delete")
def table_delete(
    file: FilePath,
    table: Annotated[str, typer.Option("--table", "-t", help="Table to delete")],
    dry_run: DryRunFlag = False,
    backup: BackupFlag = False,
    config: ConfigOpt = None,
    events: EventsFlag = False,
):
    """Delete a table and, when it leaves it empty, its section. Mutating.

    Example: `xtab table delete -f data.xml -t Item --backup`
    """
    _run("table.delete", file, "table.delete", {"name": table},
         mutating=True, dry_run=dry_run, backup=backup, config=config, events=events)


# ---------------------------------------------------------------------------
# xtab cell
# ---------------------------------------------------------------------------
@cell_app.command("get")
def cell_get(
    file: FilePath,
    ref: Annotated[str, typer.Option("--ref", help="Cell reference, e.g. B2")],
    table: TableOpt = None,
    config: ConfigOpt = None,
):
    """Read one cell. Attribute-carrying cells report their text.

    Example: `xtab cell get -f data.xml -t Item --ref B2`
    """
    try:
        row, col = parse_ref(ref)
    except XtabError as e:
        _emit(envelope_from_exception("cell.get", e, target=Target(file=file, ref=ref)))
    _run("cell.get", file, "cell.get", {"row": row, "col": col}, table=table, ref=ref, config=config)


@cell_app.command("set")
def cell_set(
    file: FilePath,
    ref: Annotated[str, typer.Option("--ref", help="Cell reference, e.g. B2")],
    value: Annotated[str, typer.Option("--value", help="Text to write")],
    table: TableOpt = None,
    dry_run: DryRunFlag = False,
    backup: BackupFlag = False,
    config: ConfigOpt = None,
    events: EventsFlag = False,
):
    """Set one cell's text. Mutating.

    Example: `xtab cell set -f data.xml -t Item --ref B2 --value 42 --backup`
    """
    try:
        row, col = parse_ref(ref)
    except XtabError as e:
        _emit(envelope_from_exception("cell.set", e, target=Target(file=file, ref=ref)))
    _run("cell.set", file, "cell.set", {"row": row, "col": col, "value": value},
         table=table, ref=ref, mutating=True, dry_run=dry_run, backup=backup,
         config=config, events=events)


# ---------------------------------------------------------------------------
# xtab row
# ---------------------------------------------------------------------------
@row_app.command("add")
def row_add(
    file: FilePath,
    table: TableOpt = None,
    count: Annotated[int, typer.Option("--count", "-n", help="Number of rows to append")] = 1,
    dry_run: DryRunFlag = False,
    backup: BackupFlag = False,
    config: ConfigOpt = None,
    events: EventsFlag = False,
):
    """Append blank rows with the first row's columns. Mutating."""
    _run("row.add", file, "row.add", {"count": count}, table=table,
         mutating=True, dry_run=dry_run, backup=backup, config=config, events=events)


@row_app.command("delete")
def row_delete(
    file: FilePath,
    row: Annotated[int, typer.Option("--row", help="1-based row number")],
    table: TableOpt = None,
    dry_run: DryRunFlag = False,
    backup: BackupFlag = False,
    config: ConfigOpt = None,
    events: EventsFlag = False,
):
    """Delete one row. Mutating."""
    _run("row.delete", file, "row.delete", {"row": row - 1}, table=table,
         mutating=True, dry_run=dry_run, backup=backup, config=config, events=events)


@row_app.command("move")
def row_move(
    file: FilePath,
    frm: Annotated[int, typer.Option("--from", help="1-based row to move")],
    to: Annotated[int, typer.Option("--to", help="1-based target row")],
    position: PositionOpt = "before",
    table: TableOpt = None,
    dry_run: DryRunFlag = False,
    backup: BackupFlag = False,
    config: ConfigOpt = None,
    events: EventsFlag = False,
):
    """Move a row before or after another row. Mutating."""
    _run("row.move", file, "row.move", {"from": frm - 1, "target": to - 1, "position": position},
         table=table, mutating=True, dry_run=dry_run, backup=backup, config=config, events=events)


# ---------------------------------------------------------------------------
# xtab col
# ---------------------------------------------------------------------------
@col_app.command("add")
def col_add(
    file: FilePath,
    table: TableOpt = None,
    count: Annotated[int, typer.Option("--count", "-n", help="Number of columns to add")] = 1,
    dry_run: DryRunFlag = False,
    backup: BackupFlag = False,
    config: ConfigOpt = None,
    events: EventsFlag = False,
):
    """Add uniquely named empty columns to every row. Mutating."""
    _run("col.add", file, "col.add", {"count": count}, table=table,
         mutating=True, dry_run=dry_run, backup=backup, config=config, events=events)


@col_app.command("delete")
def col_delete(
    file: FilePath,
    name: Annotated[str, typer.Option("--name", help="Column key or letter")],
    table: TableOpt = None,
    dry_run: DryRunFlag = False,
    backup: BackupFlag = False,
    config: ConfigOpt = None,
    events: EventsFlag = False,
):
    """Delete a column from every row. Mutating."""
    _run("col.delete", file, "col.delete", {"key": name}, table=table,
         mutating=True, dry_run=dry_run, backup=backup, config=config, events=events)


@col_app.command("rename")
def col_rename(
    file: FilePath,
    name: Annotated[str, typer.Option("--name", help="Column key or letter")],
    to: Annotated[str, typer.Option("--to", help="New column key")],
    table: TableOpt = None,
    dry_run: DryRunFlag = False,
    backup: BackupFlag = False,
    config: ConfigOpt = None,
    events: EventsFlag = False,
):
    """Rename a column in every row, keeping values and order. Mutating."""
    _run("col.rename", file, "col.rename", {"old": name, "new": to}, table=table,
         mutating=True, dry_run=dry_run, backup=backup, config=config, events=events)


@col_app.command("move")
def col_move(
    file: FilePath,
    name: Annotated[str, typer.Option("--name", help="Column key or letter to move")],
    target: Annotated[str, typer.Option("--target", help="Column key or letter to move next to")],
    position: PositionOpt = "before",
    table: TableOpt = None,
    dry_run: DryRunFlag = False,
    backup: BackupFlag = False,
    config: ConfigOpt = None,
    events: EventsFlag = False,
):
    """Move a column before or after another one. Mutating."""
    _run("col.move", file, "col.move",
         {"key": name, "target": target, "position": position},
         table=table, mutating=True, dry_run=dry_run, backup=backup, config=config, events=events)


# ---------------------------------------------------------------------------
# xtab serve
# ---------------------------------------------------------------------------
@app.command("serve")
def serve_cmd(
    config: ConfigOpt = None,
    events: EventsFlag = False,
    clipboard: Annotated[str, typer.Option("--clipboard", help="'memory' or 'system' (OS clipboard via pyperclip)")] = "memory",
    trace: Annotated[Optional[str], typer.Option("--trace", help="Write the sync decision trace to this JSON file on exit")] = None,
):
    """Start the JSON-lines stdio server for an editor host.

    Requests are `{"id", "command", "args"}` lines; `doc.open` starts a
    session, `doc.changed` reports document changes, every other command is
    a session command. Document writes are emitted as `document.replace`
    event lines.

    Example: `xtab serve --events`
    """
    from xtab.io.clipboard import MemoryClipboard, SystemClipboard
    from xtab.server.stdio import StdioServer

    cfg = EditorConfig.load(config) if config else EditorConfig()
    factory = SystemClipboard if clipboard == "system" else MemoryClipboard
    recorder = TraceRecorder()
    server = StdioServer(
        config=cfg,
        clipboard_factory=factory,
        events=EventEmitter(events or cfg.emit_events),
        trace=recorder,
    )
    server.run()
    if trace:
        recorder.save(trace)
