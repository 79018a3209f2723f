"""
Schemata CLI — inspect and evolve a store from the shell.

    schemata init
    schemata models
    schemata describe User
    schemata register user.json
    schemata apply impacts.json
    schemata query User --where age:gte:30 --order name --limit 10
    schemata history User
    schemata drop User | --all
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from schemata.core import DEFAULT_DB
from schemata.errors import SchemataError, ValidationError
from schemata.types import Combinator, Filter, QueryRequest


def _setup_logging(verbose: bool):
    from rich.logging import RichHandler
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=False, show_path=verbose)],
        force=True,
    )


def _store(args):
    from schemata.store import Store
    return Store(args.db, table_prefix=args.prefix)


def _load_json(path: str):
    try:
        return json.loads(Path(path).read_text())
    except FileNotFoundError as e:
        raise ValidationError(f"No such file: {path}") from e
    except json.JSONDecodeError as e:
        raise ValidationError(f"{path} is not valid JSON: {e}") from e


def _parse_value(text: str):
    """JSON scalars where they parse ("30", "true", "null"), strings otherwise."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def parse_where(text: str) -> Filter:
    """'field:op:value' -> Filter. 'field:value' means eq."""
    parts = text.split(':', 2)
    if len(parts) == 2:
        return Filter(parts[0], 'eq', _parse_value(parts[1]))
    if len(parts) == 3:
        return Filter(parts[0], parts[1], _parse_value(parts[2]))
    raise ValidationError(f"Bad --where {text!r}; expected field:op:value")


def _print_report(console, report):
    from rich.panel import Panel
    from rich.text import Text
    body = Text()
    body.append(f"{report.model}\n", style="bold")
    if report.created:
        body.append("  table created\n", style="green")
    if report.rebuilt:
        body.append("  rebuilt as typed-only\n", style="green")
    for name in report.added_columns:
        body.append(f"  + {name}\n", style="green")
    for old, new in report.renamed.items():
        body.append(f"  ~ {old} -> {new}\n", style="cyan")
    for idx in report.indexes:
        body.append(f"  index {idx}\n", style="cyan")
    for w in report.warnings:
        body.append(f"  ! {w}\n", style="yellow")
    if not report.changed and not report.warnings:
        body.append("  no physical change\n", style="dim")
    console.print(Panel(body, padding=(0, 1)))


# ═══════════════════════════════════════════════════════════════════════════════
# COMMANDS
# ═══════════════════════════════════════════════════════════════════════════════

def cmd_init(args, console):
    store = _store(args).init()
    console.print(f"[green]ready[/green] {store.db_path}")


def cmd_models(args, console):
    from rich.markup import escape
    from rich.table import Table
    store = _store(args)
    definitions = store.list_definitions()
    if args.json:
        print(json.dumps([d.to_dict() for d in definitions], indent=2, default=str))
        return
    if not definitions:
        console.print("No models registered.")
        return
    table = Table(title=f"models in {store.db_path}")
    table.add_column("model", style="bold")
    table.add_column("module")
    table.add_column("fields", justify="right")
    table.add_column("storage")
    table.add_column("table")
    for d in definitions:
        cols = store.columns(d.name)
        table.add_row(d.name, escape(d.module), str(len(d.fields)),
                      store.schema.storage_mode(d),
                      store.schema.table_name(d.name) if cols else "[dim]-[/dim]")
    console.print(table)


def cmd_describe(args, console):
    from rich.markup import escape
    from rich.table import Table
    from schemata.graph import dependents
    store = _store(args)
    definition = store.get_model(args.model)
    if definition is None:
        console.print(f"[red]Unknown model:[/red] {escape(args.model)}")
        return 1
    cols = store.columns(args.model)
    if args.json:
        print(json.dumps({**definition.to_dict(), 'columns': sorted(cols.values())},
                         indent=2, default=str))
        return
    table = Table(title=f"{definition.name} ({store.schema.storage_mode(definition)})")
    for col in ("field", "type", "required", "length", "default", "relation", "column"):
        table.add_column(col)
    for f in definition.fields:
        rel = f.relation.model if f.relation else ""
        table.add_row(f.name, f.type.label, "yes" if f.required else "",
                      "" if f.length is None else str(f.length),
                      "" if f.default is None else escape(repr(f.default)), rel,
                      "yes" if f.name.lower() in cols else "[dim]document[/dim]")
    console.print(table)
    enums = definition.metadata.get('enums') or {}
    for name, values in enums.items():
        console.print(f"  enum [bold]{escape(name)}[/bold]: {escape(', '.join(map(str, values)))}")
    if definition.indexes:
        console.print(f"  indexes: {', '.join(definition.indexes)}")
    refs = dependents(store.list_definitions(), definition.name)
    if refs:
        console.print(f"  referenced by: {', '.join(refs)}")


def cmd_register(args, console):
    store = _store(args)
    payload = _load_json(args.file)
    items = payload if isinstance(payload, list) else [payload]
    for item in items:
        if not isinstance(item, dict):
            raise ValidationError(f"Expected a model definition object, got {item!r}")
        item = dict(item)
        renames = item.pop('renames', None)
        _print_report(console, store.register_model(item, renames=renames))


def cmd_apply(args, console):
    store = _store(args)
    payload = _load_json(args.file)
    items = payload if isinstance(payload, list) else [payload]
    with store.transaction():
        reports = [store.apply_impact(item) for item in items]
    for report in reports:
        _print_report(console, report)


def cmd_query(args, console):
    from rich.markup import escape
    from rich.table import Table
    store = _store(args)
    request = QueryRequest(
        where=[parse_where(w) for w in args.where or []],
        combinator=Combinator.OR if args.any else Combinator.AND,
        group_by=list(args.group_by or []),
        order_by=args.order,
        order_desc=args.desc,
        limit=args.limit,
        offset=args.offset,
    )
    records = store.get_records(args.model, request)
    if args.json:
        print(json.dumps([r.to_dict() for r in records], indent=2, default=str))
        return
    keys = []
    for r in records:
        keys.extend(k for k in r.data if k not in keys)
    table = Table(title=f"{args.model} ({len(records)})")
    if not request.group_by:
        table.add_column("id", style="dim")
    for k in keys:
        table.add_column(k)
    for r in records:
        cells = [("" if r.data.get(k) is None else escape(str(r.data.get(k)))) for k in keys]
        table.add_row(*([r.id] if not request.group_by else []), *cells)
    console.print(table)


def cmd_history(args, console):
    from rich.markup import escape
    from rich.table import Table
    rows = _store(args).history(args.model)
    if args.json:
        print(json.dumps(rows, indent=2, default=str))
        return
    table = Table(title="schema history")
    for col in ("id", "model", "operation", "applied_at", "change"):
        table.add_column(col)
    for r in rows:
        change = r['change'] if isinstance(r['change'], str) else json.dumps(r['change'])
        table.add_row(str(r['id']), r['model_name'], r['operation'], r['applied_at'],
                      escape(change[:80]))
    console.print(table)


def cmd_drop(args, console):
    store = _store(args)
    if args.all:
        dropped = store.drop_all_model_tables()
        console.print(f"dropped {len(dropped)} models: {', '.join(dropped) or '-'}")
        return
    if not args.model:
        console.print("[red]Give a model name or --all[/red]")
        return 2
    if store.drop_model_table(args.model):
        console.print(f"dropped {args.model}")
    else:
        console.print(f"[yellow]nothing to drop for {args.model}[/yellow]")


_COMMANDS = {
    'init': cmd_init,
    'models': cmd_models,
    'describe': cmd_describe,
    'register': cmd_register,
    'apply': cmd_apply,
    'query': cmd_query,
    'history': cmd_history,
    'drop': cmd_drop,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="schemata",
        description="Runtime-defined models on SQLite.",
    )
    parser.add_argument("--db", default=str(DEFAULT_DB), help=f"Store path (default: {DEFAULT_DB})")
    parser.add_argument("--prefix", default=None, help="Model table prefix (default: records_)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log schema changes")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("init", help="Create the catalog tables")

    models_p = sub.add_parser("models", help="List registered models")
    models_p.add_argument("--json", action="store_true", help="Output raw JSON")

    describe_p = sub.add_parser("describe", help="Show a model's fields and table")
    describe_p.add_argument("model")
    describe_p.add_argument("--json", action="store_true", help="Output raw JSON")

    register_p = sub.add_parser("register", help="Register model definition(s) from JSON")
    register_p.add_argument("file")

    apply_p = sub.add_parser("apply", help="Apply impact(s) from JSON, in one transaction")
    apply_p.add_argument("file")

    query_p = sub.add_parser("query", help="Query a model's records")
    query_p.add_argument("model")
    query_p.add_argument("--where", action="append", metavar="FIELD:OP:VALUE",
                         help="Filter (repeatable); op is eq/neq/gt/gte/lt/lte/contains")
    query_p.add_argument("--or", dest="any", action="store_true", help="OR the filters instead of AND")
    query_p.add_argument("--order", help="Order by field")
    query_p.add_argument("--desc", action="store_true", help="Descending order")
    query_p.add_argument("--limit", type=int)
    query_p.add_argument("--offset", type=int)
    query_p.add_argument("--group-by", action="append", help="Group by field (repeatable)")
    query_p.add_argument("--json", action="store_true", help="Output raw JSON")

    history_p = sub.add_parser("history", help="Schema change history")
    history_p.add_argument("model", nargs="?")
    history_p.add_argument("--json", action="store_true", help="Output raw JSON")

    drop_p = sub.add_parser("drop", help="Drop a model's table and catalog entry")
    drop_p.add_argument("model", nargs="?")
    drop_p.add_argument("--all", action="store_true", help="Drop every registered model")

    return parser


def main(argv: list[str] = None) -> int:
    from rich.console import Console
    parser = build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)
    handler = _COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 0
    console = Console()
    try:
        return handler(args, console) or 0
    except SchemataError as e:
        from rich.markup import escape
        Console(stderr=True).print(f"[red]{type(e).__name__}:[/red] {escape(str(e))}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
