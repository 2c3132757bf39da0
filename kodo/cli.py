"""
Kodo command line interface.

Every command is a complete-and-exit invocation; all state lives in the
project's .kodo directory. Hook invocations (``reflect --hook``,
``reflect --auto``, ``context generate --hook``) are fail-open: a runtime
failure is logged and the command still exits 0 so the assistant session is
never interrupted.

Exit codes: 0 success, 1 general error, 2 invalid arguments,
3 configuration error, 4 store not initialized.
"""

import argparse
import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

from . import __version__
from .common.config import KodoConfig, load_config, resolve_store_root, save_config
from .common.errors import EXIT_GENERAL, EXIT_OK, KodoError, UsageError
from .common.schemas import (
    Category,
    Confidence,
    ContextEntry,
    DetailLevel,
    HookEvent,
    Learning,
    Status,
    render_compact,
    render_full,
)
from .common.store import RecordStore
from .retriever.context import ContextGenerator
from .retriever.index import RelevanceIndex
from .scribe.curator import ConfidenceCurator
from .scribe.pipeline import ReflectPipeline

logger = logging.getLogger("kodo.cli")

LOG_FILENAME = "kodo.log"
LOG_MAX_BYTES = 1024 * 1024
LOG_BACKUPS = 3
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


# ============================================================================
# Wiring
# ============================================================================

class Workspace:
    """Lazily wired components for one invocation"""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root) if root else resolve_store_root()
        self.config: KodoConfig = load_config(self.root)
        self.store = RecordStore.from_config(self.config)
        self._index: Optional[RelevanceIndex] = None

    @property
    def index(self) -> RelevanceIndex:
        if self._index is None:
            self._index = RelevanceIndex.from_config(self.config, self.store)
        return self._index

    def lexical_index(self) -> RelevanceIndex:
        """Index without an embedding provider (keeps hooks fast)"""
        if self._index is None:
            self._index = RelevanceIndex(self.store, self.config)
        return self._index

    def curator(self, index: Optional[RelevanceIndex] = None) -> ConfidenceCurator:
        return ConfidenceCurator(self.store, self.config, index=index or self.lexical_index())

    def context_generator(self) -> ContextGenerator:
        return ContextGenerator(
            self.index,
            self.store,
            max_items=self.config.retriever.max_context_items,
            min_score=self.config.retriever.min_score,
        )


def setup_logging(verbose: bool = False, quiet: bool = False, log_dir: Optional[Path] = None) -> None:
    """Configure the ``kodo`` logger: stderr plus a rotating file once the store exists"""
    root_logger = logging.getLogger("kodo")
    root_logger.setLevel(logging.DEBUG)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    stderr = logging.StreamHandler(sys.stderr)
    if quiet:
        stderr.setLevel(logging.CRITICAL + 1)
    else:
        stderr.setLevel(logging.INFO if verbose else logging.WARNING)
    stderr.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    root_logger.addHandler(stderr)

    if log_dir is not None and log_dir.is_dir():
        file_handler = RotatingFileHandler(
            log_dir / LOG_FILENAME, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(file_handler)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _read_hook_payload() -> dict:
    """Hook payload JSON from stdin; empty when stdin is a terminal or blank"""
    if sys.stdin is None or sys.stdin.isatty():
        return {}
    raw = sys.stdin.read()
    if not raw.strip():
        return {}
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("hook payload must be a JSON object")
    return payload


def _learning_line(learning: Learning) -> str:
    flags = "" if learning.status == Status.ACTIVE else f" [{learning.status.value}]"
    return (
        f"{learning.id}  {learning.confidence.value.upper():6} {learning.category.value:10}"
        f"{flags} {learning.title}"
    )


def _context_line(entry: ContextEntry) -> str:
    return f"{entry.id}  {entry.confidence.value.upper():6} {entry.domain}/{entry.topic} {entry.title}"


def _record_line(record) -> str:
    if isinstance(record, Learning):
        return _learning_line(record)
    return _context_line(record)


# ============================================================================
# Commands
# ============================================================================

def cmd_init(args, ws: Workspace) -> int:
    created = not ws.store.is_initialized
    ws.store.init()
    if not ws.config.config_path.exists():
        save_config(ws.config)
    setup_logging(args.verbose, args.quiet, ws.store.logs_dir)
    logger.info("Store ready at %s", ws.root)
    if not args.quiet:
        print(f"{'Initialized' if created else 'Already initialized'} kodo store at {ws.root}")
    return EXIT_OK


def cmd_reflect(args, ws: Workspace) -> int:
    hook_mode = bool(args.hook or args.auto)
    try:
        return _reflect(args, ws)
    except Exception as e:
        if not hook_mode:
            raise
        # hooks must never break the assistant session
        logger.warning("Reflect hook failed (ignored): %s", e)
        return EXIT_OK


def _reflect(args, ws: Workspace) -> int:
    payload = {}
    # a threshold check never needs a transcript, so stdin is left alone
    needs_transcript = not args.check_threshold and not args.transcript
    if not args.session_id or needs_transcript:
        payload = _read_hook_payload()
    session_id = args.session_id or payload.get("session_id")
    transcript = args.transcript or payload.get("transcript_path")
    if not session_id:
        raise UsageError("A session id is required (--session-id or hook payload)")

    ws.store.require_initialized()
    pipeline = ReflectPipeline(ws.config, ws.store, index=ws.lexical_index())

    if args.check_threshold:
        decision = pipeline.check_threshold(session_id)
        if args.format == "json":
            _print_json(decision.to_dict())
        elif not args.quiet:
            state = "would fire" if decision.fired else "would not fire"
            print(f"Session {session_id}: {state} ({decision.reason}, "
                  f"{decision.message_count} messages, {decision.elapsed_minutes:.1f} min)")
        return EXIT_OK

    if args.hook:
        result = pipeline.handle_hook(HookEvent(args.hook), session_id, transcript)
    elif args.auto:
        result = pipeline.handle_hook(HookEvent.PROMPT_SUBMIT, session_id, transcript)
    else:
        if not transcript:
            raise UsageError("A transcript path is required (--transcript or hook payload)")
        if args.force:
            pipeline.trigger.force(session_id)
        result = pipeline.reflect(session_id, transcript, reason="forced" if args.force else "manual")

    if args.format == "json":
        _print_json(result.to_dict())
    elif not args.quiet and not args.hook:
        print(result.summary())
    return EXIT_OK


def cmd_curate(args, ws: Workspace) -> int:
    ws.store.require_initialized()
    curator = ws.curator()

    if args.id:
        try:
            entry = curator.update_context(
                args.id,
                title=args.title,
                body=args.body,
                tags=args.tag,
                subtopic=args.subtopic,
                source_ref=args.source,
            )
        except ValueError as e:
            raise UsageError(f"Invalid edit for {args.id}: {e}") from e
        if args.format == "json":
            _print_json({"action": "updated", "record": entry.model_dump(mode="json")})
        elif not args.quiet:
            print(f"updated: {entry.id}")
        return EXIT_OK

    confidence = Confidence(args.confidence)

    if args.category:
        result = curator.curate_learning(
            Category(args.category),
            args.statement,
            confidence=confidence,
            status=Status.PENDING if args.pending else Status.ACTIVE,
            agent_scope=args.scope,
        )
        if args.format == "json":
            _print_json({"action": result.action, "record": result.record.model_dump(mode="json")})
        elif not args.quiet:
            print(f"{result.action}: {result.record.id}")
            for archived in result.archived:
                print(f"superseded: {archived.id}")
        return EXIT_OK

    entry = curator.add_context(
        domain=args.domain,
        topic=args.topic,
        title=args.title,
        body=args.body or "",
        tags=args.tag or [],
        confidence=confidence,
        subtopic=args.subtopic,
        source_ref=args.source,
    )
    if args.format == "json":
        _print_json({"action": "created", "record": entry.model_dump(mode="json")})
    elif not args.quiet:
        print(f"created: {entry.id}")
    return EXIT_OK


def _load_import_rows(path: Path) -> List[dict]:
    text = path.read_text(encoding="utf-8")
    stripped = text.lstrip()
    if stripped.startswith("["):
        rows = json.loads(text)
    else:
        rows = [json.loads(line) for line in text.splitlines() if line.strip()]
    if not isinstance(rows, list):
        raise ValueError("import file must hold a JSON array or JSON lines")
    return rows


def cmd_import(args, ws: Workspace) -> int:
    ws.store.require_initialized()
    path = Path(args.file)
    try:
        rows = _load_import_rows(path)
    except (OSError, ValueError) as e:
        raise KodoError(f"Cannot read import file {path}: {e}") from e

    curator = ws.curator()
    source = f"import:{path.name}"
    counts = {"created": 0, "merged": 0, "contradicted": 0, "context": 0, "failed": 0}

    for line_no, row in enumerate(rows, 1):
        try:
            if not isinstance(row, dict):
                raise ValueError("record must be an object")
            confidence = Confidence(row.get("confidence", Confidence.MEDIUM.value))
            if "category" in row:
                result = curator.curate_learning(
                    Category(row["category"]),
                    row["statement"],
                    confidence=confidence,
                    status=Status(row.get("status", Status.ACTIVE.value)),
                    agent_scope=row.get("agent_scope"),
                    source=source,
                )
                counts[result.action] += 1
            else:
                curator.add_context(
                    domain=row["domain"],
                    topic=row["topic"],
                    title=row["title"],
                    body=row.get("body", ""),
                    tags=row.get("tags", []),
                    confidence=confidence,
                    subtopic=row.get("subtopic"),
                    source_ref=row.get("source_ref", source),
                )
                counts["context"] += 1
        except (KeyError, TypeError, ValueError) as e:
            counts["failed"] += 1
            logger.warning("Skipping import record %d: %s", line_no, e)

    if args.format == "json":
        _print_json(counts)
    elif not args.quiet:
        print(", ".join(f"{v} {k}" for k, v in counts.items()))
    return EXIT_OK


def cmd_query(args, ws: Workspace) -> int:
    ws.store.require_initialized()
    text = " ".join(args.text)
    if not text.strip() and not args.files:
        raise UsageError("Nothing to query: give text or --files")

    generator = ws.context_generator()
    bundle = generator.generate(
        prompt=text,
        files=args.files,
        max_items=args.limit if args.limit is not None else ws.config.retriever.limit,
        min_score=args.min_score,
        detail=DetailLevel.FULL if args.full else DetailLevel.COMPACT,
        include_pending=args.include_pending,
    )

    if args.format == "json":
        _print_json(bundle.to_dict())
    elif args.format == "markdown":
        print(bundle.render() or "_No relevant records._")
    else:
        if bundle.is_empty:
            print("No relevant records.")
        for item in bundle.items:
            if args.full:
                print(item.text)
                print()
            else:
                print(f"{item.result.score:.3f}  {item.text[2:]}")
    return EXIT_OK


def cmd_learn(args, ws: Workspace) -> int:
    ws.store.require_initialized()
    curator = ws.curator()
    action = args.learn_action

    if action == "list":
        learnings = curator.list(
            category=Category(args.category) if args.category else None,
            status=Status(args.status) if args.status else None,
            confidence=Confidence(args.confidence) if args.confidence else None,
        )
        if args.format == "json":
            _print_json([l.model_dump(mode="json") for l in learnings])
        elif args.format == "markdown":
            print("\n".join(render_compact(l) for l in learnings) or "_No learnings._")
        else:
            for learning in learnings:
                print(_learning_line(learning))
            if not learnings:
                print("No learnings.")
        return EXIT_OK

    if action == "show":
        record = ws.store.get(args.id)
        if args.format == "json":
            data = record.model_dump(mode="json")
            data["transitions"] = [t.model_dump(mode="json") for t in ws.store.read_transitions(args.id)]
            _print_json(data)
        else:
            print(render_full(record))
        return EXIT_OK

    if action == "promote":
        record = curator.promote(args.id)
    elif action == "demote":
        record = curator.demote(args.id)
    elif action == "review":
        record = curator.review(args.id, accept=args.accept)
    else:
        record = curator.delete(args.id, hard=args.hard)

    if args.format == "json":
        _print_json(record.model_dump(mode="json"))
    elif not args.quiet:
        if action == "delete" and not isinstance(record, Learning):
            print(f"removed: {record.id}")
        else:
            print(_record_line(record))
    return EXIT_OK


def cmd_index(args, ws: Workspace) -> int:
    ws.store.require_initialized()
    index = ws.index
    action = args.index_action

    if action == "rebuild":
        count = index.rebuild()
        data = {"indexed": count}
    elif action == "embeddings":
        if not index.embeddings_available:
            raise KodoError(
                "No embedding provider available. Install kodo[embeddings] and set embedding.enabled"
            )
        data = {"embedded": index.embed_all()}
    else:
        data = index.status()
        data["store"] = ws.store.stats()

    if args.format == "json":
        _print_json(data)
    elif not args.quiet:
        for key, value in data.items():
            if isinstance(value, list):
                value = ", ".join(value) if value else "-"
            elif isinstance(value, dict):
                value = ", ".join(f"{k}={v}" for k, v in value.items())
            print(f"{key}: {value}")
    return EXIT_OK


def cmd_context(args, ws: Workspace) -> int:
    if args.hook:
        try:
            return _context_hook(args, ws)
        except Exception as e:
            # hooks must never break the assistant session
            logger.warning("Context hook failed (ignored): %s", e)
            return EXIT_OK

    ws.store.require_initialized()
    bundle = ws.context_generator().generate(
        prompt=args.prompt,
        files=args.files,
        max_items=args.max_learnings,
        min_score=args.min_score,
        detail=DetailLevel(args.detail),
        max_tokens=args.max_tokens,
    )
    if args.format == "json":
        _print_json(bundle.to_dict())
    else:
        print(bundle.render())
    return EXIT_OK


def _context_hook(args, ws: Workspace) -> int:
    """Emit generated context as hook output for the prompt in the payload"""
    payload = _read_hook_payload()
    if not ws.store.is_initialized:
        return EXIT_OK
    bundle = ws.context_generator().generate(
        prompt=args.prompt or payload.get("prompt"),
        files=args.files,
        max_items=args.max_learnings,
        min_score=args.min_score,
        detail=DetailLevel(args.detail),
        max_tokens=args.max_tokens,
    )
    if bundle.is_empty:
        return EXIT_OK
    _print_json({
        "hookSpecificOutput": {
            "hookEventName": payload.get("hook_event_name", "UserPromptSubmit"),
            "additionalContext": bundle.render(),
        }
    })
    return EXIT_OK


def cmd_serve(args, ws: Workspace) -> int:
    from .server.mcp_server import KodoMCPServer

    ws.store.require_initialized()
    KodoMCPServer(ws.config, ws.store, index=ws.index).run()
    return EXIT_OK


# ============================================================================
# Parser
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kodo",
        description="Capture, curate and serve project learnings for coding assistants",
    )
    parser.add_argument("--version", action="version", version=f"kodo {__version__}")
    parser.add_argument("--dir", help="Path to the .kodo store (default: nearest .kodo or $KODO_DIR)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log progress to stderr")
    parser.add_argument("--quiet", "-q", action="store_true", help="Suppress output and warnings")

    fmt = argparse.ArgumentParser(add_help=False)
    fmt.add_argument("--format", "-f", choices=["text", "json", "markdown"], default="text")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # init
    p_init = subparsers.add_parser("init", help="Create the store in this project")
    p_init.set_defaults(func=cmd_init)

    # reflect
    p_reflect = subparsers.add_parser("reflect", parents=[fmt], help="Capture learnings from a transcript")
    p_reflect.add_argument("--hook", choices=[e.value for e in HookEvent], help="Invoked from this hook")
    p_reflect.add_argument("--session-id", help="Session identifier (default: hook payload)")
    p_reflect.add_argument("--transcript", help="Transcript JSONL path (default: hook payload)")
    p_reflect.add_argument("--check-threshold", action="store_true",
                           help="Only report whether the trigger would fire")
    p_reflect.add_argument("--force", action="store_true", help="Reflect regardless of the trigger")
    p_reflect.add_argument("--auto", action="store_true", help="Count one message; reflect only if the trigger fires")
    p_reflect.set_defaults(func=cmd_reflect)

    # curate
    p_curate = subparsers.add_parser("curate", parents=[fmt], help="Add a learning or context entry, or edit a context entry")
    p_curate.add_argument("--id", help="Context entry to edit (ctx_...)")
    p_curate.add_argument("--category", choices=[c.value for c in Category])
    p_curate.add_argument("--statement")
    p_curate.add_argument("--scope", help="Agent scope for the learning")
    p_curate.add_argument("--pending", action="store_true", help="Add the learning as pending review")
    p_curate.add_argument("--domain")
    p_curate.add_argument("--topic")
    p_curate.add_argument("--subtopic")
    p_curate.add_argument("--title")
    p_curate.add_argument("--body")
    p_curate.add_argument("--tag", action="append", help="Tag (repeatable; replaces the tags when editing)")
    p_curate.add_argument("--source", help="Source reference for a context entry")
    p_curate.add_argument("--confidence", choices=[c.value for c in Confidence], default="medium")
    p_curate.set_defaults(func=cmd_curate)

    # import
    p_import = subparsers.add_parser("import", parents=[fmt], help="Import records from JSON or JSONL")
    p_import.add_argument("file", help="JSON array or JSON lines of learnings/context entries")
    p_import.set_defaults(func=cmd_import)

    # query
    p_query = subparsers.add_parser("query", parents=[fmt], help="Rank records against text")
    p_query.add_argument("text", nargs="*", help="Query text")
    p_query.add_argument("--files", nargs="*", default=None, help="File paths in play")
    p_query.add_argument("--limit", "-n", type=int, help="Maximum results")
    p_query.add_argument("--min-score", type=float, help="Minimum score")
    p_query.add_argument("--full", action="store_true", help="Show complete records")
    p_query.add_argument("--include-pending", action="store_true", help="Include pending learnings")
    p_query.set_defaults(func=cmd_query)

    # learn
    p_learn = subparsers.add_parser("learn", help="Inspect and curate learnings")
    learn_sub = p_learn.add_subparsers(dest="learn_action", required=True)

    l_list = learn_sub.add_parser("list", parents=[fmt], help="List learnings")
    l_list.add_argument("--category", choices=[c.value for c in Category])
    l_list.add_argument("--status", choices=[s.value for s in Status])
    l_list.add_argument("--confidence", choices=[c.value for c in Confidence])

    for name, help_text in (
        ("show", "Show one record with its evidence"),
        ("promote", "Raise confidence one level"),
        ("demote", "Lower confidence one level (archives at LOW)"),
    ):
        p = learn_sub.add_parser(name, parents=[fmt], help=help_text)
        p.add_argument("id")

    l_review = learn_sub.add_parser("review", parents=[fmt], help="Accept or reject a pending learning")
    l_review.add_argument("id")
    decision = l_review.add_mutually_exclusive_group(required=True)
    decision.add_argument("--accept", action="store_true", default=None)
    decision.add_argument("--reject", dest="accept", action="store_false")

    l_delete = learn_sub.add_parser("delete", parents=[fmt], help="Archive (or remove) a record")
    l_delete.add_argument("id")
    l_delete.add_argument("--hard", action="store_true", help="Remove instead of archiving")
    p_learn.set_defaults(func=cmd_learn)

    # index
    p_index = subparsers.add_parser("index", help="Relevance index maintenance")
    index_sub = p_index.add_subparsers(dest="index_action", required=True)
    index_sub.add_parser("rebuild", parents=[fmt], help="Rebuild from the store")
    index_sub.add_parser("status", parents=[fmt], help="Show index health")
    index_sub.add_parser("embeddings", parents=[fmt], help="Backfill embeddings")
    p_index.set_defaults(func=cmd_index)

    # context
    p_context = subparsers.add_parser("context", help="Generate prompt context")
    context_sub = p_context.add_subparsers(dest="context_action", required=True)
    c_gen = context_sub.add_parser("generate", parents=[fmt], help="Render a context block")
    c_gen.add_argument("--prompt", help="Prompt text")
    c_gen.add_argument("--files", nargs="*", default=None, help="File paths in play")
    c_gen.add_argument("--max-learnings", type=int, help="Maximum records")
    c_gen.add_argument("--min-score", type=float, help="Minimum score")
    c_gen.add_argument("--detail", choices=[d.value for d in DetailLevel], default=DetailLevel.COMPACT.value)
    c_gen.add_argument("--max-tokens", type=int, help="Token budget")
    c_gen.add_argument("--hook", action="store_true", help="Read the prompt hook payload and emit hook output")
    p_context.set_defaults(func=cmd_context)

    # serve
    p_serve = subparsers.add_parser("serve", help="Run the MCP server over stdio")
    p_serve.set_defaults(func=cmd_serve)

    return parser


def _validate(parser: argparse.ArgumentParser, args) -> None:
    if args.command == "curate" and args.id:
        if args.category or args.statement or args.domain or args.topic:
            parser.error("curate --id edits a context entry; --category/--statement/--domain/--topic do not apply")
        if all(getattr(args, name) is None for name in ("title", "body", "tag", "subtopic", "source")):
            parser.error("curate --id needs at least one of --title/--body/--tag/--subtopic/--source")
    elif args.command == "curate":
        if args.category and not args.statement:
            parser.error("curate --category requires --statement")
        if not args.category and not (args.domain and args.topic and args.title):
            parser.error("curate needs --category/--statement or --domain/--topic/--title")
    if args.command == "reflect" and args.hook and args.check_threshold:
        parser.error("--hook and --check-threshold are mutually exclusive")
    for name in ("limit", "max_learnings", "max_tokens"):
        value = getattr(args, name, None)
        if value is not None and value < 0:
            parser.error(f"--{name.replace('_', '-')} must not be negative")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _validate(parser, args)

    setup_logging(args.verbose, args.quiet)
    hook_mode = bool(getattr(args, "hook", None) or getattr(args, "auto", False))

    try:
        ws = Workspace(args.dir)
        if ws.store.is_initialized:
            setup_logging(args.verbose, args.quiet, ws.store.logs_dir)
        return args.func(args, ws)
    except KodoError as e:
        if hook_mode:
            logger.warning("Hook failed (ignored): %s", e)
            return EXIT_OK
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code
    except KeyboardInterrupt:
        return EXIT_GENERAL
    except Exception as e:
        if hook_mode:
            logger.warning("Hook failed (ignored): %s", e)
            return EXIT_OK
        logger.exception("Unexpected error")
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_GENERAL


if __name__ == "__main__":
    sys.exit(main())
