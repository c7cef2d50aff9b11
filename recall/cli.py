"""
CLI interface for the page memory.

Usage:
    recall capture --url https://example.com/ --text "..."
    recall search "query text"
    recall ask "what did I read about raft?"
"""

import json
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import Recall
from .config import (
    get_default_store_path,
    load_or_create_config,
    save_config,
    set_config_value,
)
from .errors import RecallError
from .logging_config import configure_quiet_mode, enable_debug_mode
from .types import CaptureMessage, SearchHit, local_date, now_ms

# Seconds the capture command waits for ingestion to finish
CAPTURE_WAIT_SECONDS = 600.0


# Configure quiet mode by default (suppress verbose library output)
# Set RECALL_VERBOSE=1 to enable debug mode via environment
if os.environ.get("RECALL_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    if value is not None:
        _store_override = value


def _get_store_override() -> Optional[Path]:
    return _store_override


app = typer.Typer(
    name="recall",
    help="Local semantic memory of the web pages you read.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="RECALL_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Local semantic memory of the web pages you read."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

StoreOption = Annotated[
    Optional[Path],
    typer.Option(
        "--store", "-s",
        envvar="RECALL_STORE_PATH",
        help="Path to the store directory (default: ~/.recall/)"
    )
]


LimitOption = Annotated[
    int,
    typer.Option(
        "--limit", "-n",
        help="Maximum results to return"
    )
]


def _get_recall(store: Optional[Path]) -> Recall:
    """Open the store, handling errors gracefully."""
    import atexit

    actual_store = store if store is not None else _get_store_override()
    try:
        rc = Recall(actual_store)
    except (RecallError, ValueError, RuntimeError, OSError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(rc.close)
    return rc


def _read_json(source: str):
    """Parse JSON from a file path or '-' for stdin."""
    if source == "-":
        return json.loads(sys.stdin.read())
    path = Path(source)
    if not path.exists():
        typer.echo(f"Error: file not found: {source}", err=True)
        raise typer.Exit(1)
    return json.loads(path.read_text(encoding="utf-8"))


def _format_hit(hit: SearchHit) -> str:
    score = hit.calibrated if hit.calibrated is not None else round(hit.weighted_score * 100)
    chunk = f"#{hit.chunk_index}" if hit.chunk_index is not None else ""
    return f"{score:>3}  {hit.title or hit.url}{chunk}\n     {hit.url}\n     {hit.snippet}"


# -----------------------------------------------------------------------------
# Capture
# -----------------------------------------------------------------------------

@app.command()
def capture(
    file: Annotated[Optional[str], typer.Argument(
        help="JSON capture message file ('-' for stdin)"
    )] = None,
    url: Annotated[Optional[str], typer.Option("--url", "-u", help="Page URL")] = None,
    title: Annotated[str, typer.Option("--title", "-t", help="Page title")] = "",
    text: Annotated[Optional[str], typer.Option("--text", help="Page text")] = None,
    force: Annotated[bool, typer.Option(
        "--force", "-f", help="Capture even when paused or excluded by domain rules"
    )] = False,
    wait: Annotated[bool, typer.Option(
        "--wait/--no-wait", help="Wait for ingestion to finish"
    )] = True,
    store: StoreOption = None,
):
    """
    Capture a page into memory.

    \b
    Examples:
        recall capture page.json
        recall capture --url https://example.com/ --title Example --text "..."
    """
    if file and url:
        typer.echo("Error: Specify either a message file or --url, not both", err=True)
        raise typer.Exit(1)
    if file:
        data = _read_json(file)
        if not isinstance(data, dict):
            typer.echo("Error: capture message must be a JSON object", err=True)
            raise typer.Exit(1)
        if force:
            data["force"] = True
        message = CaptureMessage.from_dict(data)
    elif url:
        if text is None and not sys.stdin.isatty():
            text = sys.stdin.read()
        message = CaptureMessage(url=url, title=title, text=text or "", force=force)
    else:
        typer.echo("Error: Specify a message file or --url", err=True)
        raise typer.Exit(1)

    rc = _get_recall(store)
    if not rc.capture(message):
        typer.echo(f"Skipped: {message.url} (capture paused or excluded by rules)", err=True)
        raise typer.Exit(1)
    if not wait:
        typer.echo(f"Queued {message.url}", err=True)
        return
    if not rc.drain(CAPTURE_WAIT_SECONDS):
        typer.echo(f"Still processing {message.url}; check 'recall processing'", err=True)
        return

    failed = [e for e in rc.processing() if e.url == message.url]
    if failed:
        entry = failed[0]
        if _get_json_output():
            typer.echo(json.dumps(asdict(entry), indent=2))
        typer.echo(f"Capture failed ({entry.status}): {entry.last_error}", err=True)
        raise typer.Exit(1)
    pages = [p for p in rc.list_pages() if p["url"] == message.url]
    if _get_json_output():
        typer.echo(json.dumps(pages[0] if pages else {}, indent=2))
    else:
        typer.echo(f"Captured {message.url}", err=True)


@app.command("processing")
def processing_cmd(
    failed: Annotated[bool, typer.Option(
        "--failed", help="Only list captures that exhausted their attempts"
    )] = False,
    stats: Annotated[bool, typer.Option(
        "--stats", help="Show counts by status instead of entries"
    )] = False,
    store: StoreOption = None,
):
    """List captures that are in flight, retrying or failed."""
    rc = _get_recall(store)
    if stats:
        counts = rc.processing_stats()
        if _get_json_output():
            typer.echo(json.dumps(counts, indent=2))
            return
        for key, value in counts.items():
            typer.echo(f"{key}: {value}")
        return
    entries = rc.failed_captures() if failed else rc.processing()
    if _get_json_output():
        typer.echo(json.dumps([asdict(e) for e in entries], indent=2))
        return
    if not entries:
        typer.echo("Nothing processing.", err=True)
        return
    for e in entries:
        line = f"{e.status:<10} {e.attempts}  {e.url}"
        if e.last_error:
            line += f"  ({e.last_error})"
        typer.echo(line)


@app.command()
def retry(
    url: Annotated[str, typer.Argument(help="URL of the capture to retry")],
    store: StoreOption = None,
):
    """Retry a failed capture from its saved payload."""
    rc = _get_recall(store)
    try:
        rc.retry_capture(url)
    except RecallError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    rc.drain(CAPTURE_WAIT_SECONDS)
    typer.echo(f"Retried {url}", err=True)


@app.command()
def cancel(
    url: Annotated[str, typer.Argument(help="URL of the capture to cancel")],
    store: StoreOption = None,
):
    """Cancel a queued or failed capture and forget its payload."""
    rc = _get_recall(store)
    rc.cancel_capture(url)
    typer.echo(f"Cancelled {url}", err=True)


# -----------------------------------------------------------------------------
# Retrieval
# -----------------------------------------------------------------------------

@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Search query text")],
    limit: LimitOption = 10,
    quick: Annotated[bool, typer.Option(
        "--quick", "-q", help="Skip LLM reranking"
    )] = False,
    store: StoreOption = None,
):
    """
    Search captured pages.

    \b
    Examples:
        recall search "raft leader election"
        recall search "raft" --quick -n 5
    """
    rc = _get_recall(store)
    try:
        hits = rc.quick_search(query, limit) if quick else rc.search(query, limit)
    except RecallError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if _get_json_output():
        typer.echo(json.dumps([h.to_dict() for h in hits], indent=2, ensure_ascii=False))
        return
    if not hits:
        typer.echo("No results.", err=True)
        return
    typer.echo("\n".join(_format_hit(h) for h in hits))


@app.command()
def ask(
    question: Annotated[str, typer.Argument(help="Question to answer from memory")],
    detailed: Annotated[Optional[bool], typer.Option(
        "--detailed/--concise", help="Answer length (default from config)"
    )] = None,
    explain: Annotated[bool, typer.Option(
        "--explain", "-e", help="Show retrieval scores of the sources"
    )] = False,
    store: StoreOption = None,
):
    """Answer a question from captured pages, with numbered sources."""
    rc = _get_recall(store)
    if detailed is not None:
        rc.config.ask.answer_mode = "detailed" if detailed else "concise"
    result = rc.ask(question)
    if _get_json_output():
        typer.echo(json.dumps(asdict(result), indent=2, ensure_ascii=False))
        return
    typer.echo(result.answer)
    if explain and result.explanations:
        typer.echo("")
        for ex in result.explanations:
            rerank = f" rerank={ex.rerank_score:.1f}" if ex.rerank_score is not None else ""
            typer.echo(f"[{ex.index}] score={ex.score:.3f} weighted={ex.weighted_score:.3f}{rerank}")


# -----------------------------------------------------------------------------
# Pages and highlights
# -----------------------------------------------------------------------------

@app.command()
def pages(
    limit: LimitOption = 50,
    store: StoreOption = None,
):
    """List captured pages, newest first."""
    rc = _get_recall(store)
    listing = rc.list_pages()[:limit]
    if _get_json_output():
        typer.echo(json.dumps(listing, indent=2, ensure_ascii=False))
        return
    for p in listing:
        typer.echo(f"{p['id']:>5}  {local_date(p['timestamp'])}  {p['title'] or p['url']}")


@app.command()
def delete(
    target: Annotated[str, typer.Argument(help="Page id or URL")],
    store: StoreOption = None,
):
    """Delete a page by id, or every page with a URL."""
    rc = _get_recall(store)
    if target.isdigit():
        removed = 1 if rc.delete_page(int(target)) else 0
    else:
        removed = rc.delete_by_url(target)
    if not removed:
        typer.echo(f"Not found: {target}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Deleted {removed} page(s)", err=True)


@app.command()
def highlights(
    date: Annotated[Optional[str], typer.Argument(help="Date (YYYY-MM-DD), default today")] = None,
    store: StoreOption = None,
):
    """Show the digest of pages captured on a date."""
    rc = _get_recall(store)
    day = date or local_date(now_ms())
    try:
        text = rc.highlights(day)
    except ValueError:
        typer.echo(f"Error: invalid date '{date}' (expected YYYY-MM-DD)", err=True)
        raise typer.Exit(1)
    if _get_json_output():
        typer.echo(json.dumps({"date": day, "text": text}, indent=2, ensure_ascii=False))
    else:
        typer.echo(text)


@app.command()
def dates(
    date_from: Annotated[Optional[str], typer.Option("--from", help="Earliest date")] = None,
    date_to: Annotated[Optional[str], typer.Option("--to", help="Latest date")] = None,
    offset: Annotated[int, typer.Option("--offset", help="Skip this many dates")] = 0,
    limit: LimitOption = 30,
    store: StoreOption = None,
):
    """List dates with captured pages, newest first."""
    rc = _get_recall(store)
    try:
        days, total = rc.highlight_dates(date_from, date_to, offset, limit)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if _get_json_output():
        typer.echo(json.dumps({"dates": [asdict(d) for d in days], "total": total}, indent=2))
        return
    for d in days:
        typer.echo(f"{d.date}  {d.count}")
    typer.echo(f"{len(days)} of {total} dates", err=True)


@app.command()
def backfill(store: StoreOption = None):
    """Fill in missing embeddings, centroids and summaries of stored pages."""
    rc = _get_recall(store)
    done = rc.backfill()
    typer.echo(f"Backfilled {done} pages", err=True)


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------

@app.command()
def config(
    key: Annotated[Optional[str], typer.Argument(
        help="Setting to show or change (e.g. 'search.rerank', 'chat.model')"
    )] = None,
    value: Annotated[Optional[str], typer.Argument(help="New value")] = None,
    store: StoreOption = None,
):
    """
    Show or change configuration.

    \b
    Examples:
        recall config                     # Show all config
        recall config ask.answer_mode     # Show one value
        recall config chat.name ollama    # Enable the chat model
        recall config capture.blacklist "bank.com,*.internal"
    """
    actual_store = store if store is not None else _get_store_override()
    store_path = Path(actual_store).resolve() if actual_store else get_default_store_path()
    cfg = load_or_create_config(store_path)

    if key and value is not None:
        try:
            set_config_value(cfg, key, value)
        except (KeyError, ValueError) as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1)
        save_config(cfg)
        typer.echo(f"Set {key} = {value}", err=True)
        return

    data = {
        "file": str(cfg.config_path),
        "store": str(store_path),
        "embedding": {"name": cfg.embedding.name, **cfg.embedding.params},
        "chat": {"name": cfg.chat.name, **cfg.chat.params},
    }
    for section in ("versioning", "search", "calibration", "ask", "tools", "capture"):
        data[section] = asdict(getattr(cfg, section))

    if key:
        section, _, name = key.partition(".")
        if section not in data or (name and name not in data[section]):
            typer.echo(f"Error: unknown setting '{key}'", err=True)
            raise typer.Exit(1)
        result = data[section][name] if name else data[section]
        if _get_json_output():
            typer.echo(json.dumps({key: result}, indent=2))
        elif isinstance(result, (list, dict)):
            typer.echo(json.dumps(result))
        else:
            typer.echo(result)
        return

    typer.echo(json.dumps(data, indent=2))


@app.command()
def models(
    pull: Annotated[bool, typer.Option(
        "--pull", help="Pull the configured models if they are missing"
    )] = False,
    store: StoreOption = None,
):
    """List locally installed Ollama models."""
    from .providers.ollama_utils import (
        ollama_base_url,
        ollama_ensure_model,
        ollama_list_models,
    )

    actual_store = store if store is not None else _get_store_override()
    store_path = Path(actual_store).resolve() if actual_store else get_default_store_path()
    cfg = load_or_create_config(store_path)
    base_url = ollama_base_url(cfg.embedding.params.get("base_url"))
    try:
        if pull:
            wanted = [cfg.embedding.params.get("model")]
            if cfg.chat.name == "ollama":
                wanted += [cfg.chat.params.get("model"), cfg.chat.params.get("summary_model")]
            for model in dict.fromkeys(m for m in wanted if m):
                ollama_ensure_model(base_url, model)
        names = ollama_list_models(base_url)
    except RuntimeError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if _get_json_output():
        typer.echo(json.dumps(names, indent=2))
    else:
        typer.echo("\n".join(names))


# -----------------------------------------------------------------------------
# Data Management
# -----------------------------------------------------------------------------

data_app = typer.Typer(
    name="data",
    help="Data management: export, import.",
    rich_markup_mode=None,
)
app.add_typer(data_app)


@data_app.command("export")
def data_export(
    output: Annotated[str, typer.Argument(
        help="Output file path (use '-' for stdout)"
    )],
    store: StoreOption = None,
):
    """Export all pages (with embeddings) to JSON."""
    rc = _get_recall(store)
    it = rc.export_iter()
    header = next(it)

    dest = sys.stdout if output == "-" else open(output, "w", encoding="utf-8")
    count = 0
    try:
        # Streaming JSON: header fields, then the pages array
        dest.write("{\n")
        for key, value in header.items():
            dest.write(f"  {json.dumps(key)}: {json.dumps(value, ensure_ascii=False)},\n")
        dest.write('  "pages": [\n')
        for page in it:
            if count:
                dest.write(",\n")
            dest.write("    " + json.dumps(page, ensure_ascii=False))
            count += 1
        dest.write("\n  ]\n}\n")
    finally:
        if dest is not sys.stdout:
            dest.close()

    if output != "-":
        typer.echo(f"Exported {count} pages to {output}", err=True)


@data_app.command("import")
def data_import(
    file: Annotated[str, typer.Argument(help="JSON export file to import ('-' for stdin)")],
    store: StoreOption = None,
):
    """Import pages from a JSON export, merging versions into existing pages."""
    data = _read_json(file)
    rc = _get_recall(store)
    try:
        result = rc.import_data(data)
    except RecallError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if _get_json_output():
        typer.echo(json.dumps(asdict(result), indent=2))
        return
    typer.echo(
        f"Imported {result.imported} pages, "
        f"skipped {result.skipped_incompatible} incompatible versions, "
        f"{result.failed} failed.",
        err=True,
    )


# -----------------------------------------------------------------------------
# Entry point
# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="recall CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
