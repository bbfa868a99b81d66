"""
CLI main entry point.
"""

import argparse
import json
import logging
import signal
import sys
import uuid
from dataclasses import asdict
from pathlib import Path

import yaml

from ..audit import AuditLog
from ..config import Config, ConfigValidationError, create_default_config, load_config
from ..extractors import HttpExtractionClient
from ..mapping import RuleBasedMapper
from ..pipeline import DocumentProcessor, ReprocessError, ReprocessService, WorkerPool
from ..rules import RuleEngine
from ..schemas.rules import AISuggestion, LineItemData, Rule, RuleConditions
from ..services.job_queue import JobQueueService
from ..state_store import StateStore

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="ledgerpost",
        description="Process financial documents into GL-coded accounting records",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init-config command
    subparsers.add_parser("init-config", help="Write a default config file")

    # enqueue command
    enqueue_parser = subparsers.add_parser("enqueue", help="Register a document and queue it")
    enqueue_parser.add_argument("file_reference", help="Stored file reference (URL or path)")
    enqueue_parser.add_argument("--owner", required=True, help="Owner (tenant) ID")
    enqueue_parser.add_argument("--filename", help="Display filename (default: from reference)")
    enqueue_parser.add_argument("--document-id", help="Document ID (default: random UUID)")

    # worker command
    worker_parser = subparsers.add_parser("worker", help="Process queued documents")
    worker_parser.add_argument(
        "--once",
        action="store_true",
        help="Drain the queue in the foreground and exit",
    )
    worker_parser.add_argument(
        "--concurrency",
        type=int,
        help="Override worker.concurrency",
    )

    # status command
    subparsers.add_parser("status", help="Show document and queue status")

    # rules command group
    rules_parser = subparsers.add_parser("rules", help="Manage and try GL rules")
    rules_sub = rules_parser.add_subparsers(dest="rules_command", help="Rules command")

    import_parser = rules_sub.add_parser("import", help="Import rules from a YAML/JSON file")
    import_parser.add_argument("file", type=Path, help="File with a list of rules")
    import_parser.add_argument("--owner", help="Force owner ID for all rules")

    test_parser = rules_sub.add_parser("test", help="Preview conditions against a line item")
    test_parser.add_argument("conditions", help="Conditions as JSON")
    _add_line_item_args(test_parser)

    evaluate_parser = rules_sub.add_parser("evaluate", help="Evaluate an owner's active rules")
    evaluate_parser.add_argument("--owner", required=True, help="Owner (tenant) ID")
    evaluate_parser.add_argument("--ai-code", help="External AI GL suggestion")
    evaluate_parser.add_argument(
        "--ai-confidence", type=float, default=0.5, help="Confidence of --ai-code"
    )
    _add_line_item_args(evaluate_parser)

    stats_parser = rules_sub.add_parser("stats", help="Show application stats for a rule")
    stats_parser.add_argument("rule_id", help="Rule ID")

    # reprocess command
    reprocess_parser = subparsers.add_parser("reprocess", help="Rerun mapping for a document")
    reprocess_parser.add_argument("document_id", help="Document ID")
    reprocess_parser.add_argument("--field", help="Only reprocess this accounting field")

    # retry command
    retry_parser = subparsers.add_parser("retry", help="Requeue a failed document")
    retry_parser.add_argument("document_id", help="Document ID")

    # audit command
    audit_parser = subparsers.add_parser("audit", help="Show the audit trail")
    audit_parser.add_argument("document_id", nargs="?", help="Document ID")
    audit_parser.add_argument("--field", help="Show trail for one field across documents")
    audit_parser.add_argument("--stats", action="store_true", help="Show summary statistics")
    audit_parser.add_argument("--limit", type=int, default=100, help="Maximum entries")

    return parser


def _add_line_item_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--description", default="", help="Line item description")
    parser.add_argument("--amount", type=float, default=0.0, help="Line item amount")
    parser.add_argument("--vendor", help="Vendor name")
    parser.add_argument("--date", help="Line item date (YYYY-MM-DD)")
    parser.add_argument("--category", help="Line item category")


def _line_item(parsed: argparse.Namespace) -> LineItemData:
    return LineItemData(
        description=parsed.description,
        amount=parsed.amount,
        vendor_name=parsed.vendor,
        date=parsed.date,
        category=parsed.category,
    )


def build_services(config: Config, store: StateStore) -> dict:
    """Wire the engine, mapper, audit log, queue and processor."""
    engine = RuleEngine(store, config.rules)
    mapper = RuleBasedMapper(engine, config.mapping)
    audit_log = AuditLog(store)
    queue = JobQueueService(store, max_attempts=config.worker.max_attempts)
    extractor = HttpExtractionClient(
        base_url=config.extraction.base_url,
        token=config.extraction.token,
        timeout=config.extraction.timeout_seconds,
        max_retries=config.extraction.max_retries,
    )
    processor = DocumentProcessor(
        store,
        extractor,
        mapper,
        audit_log,
        ready_for_export_threshold=config.worker.ready_for_export_threshold,
    )
    reprocess = ReprocessService(
        store,
        mapper,
        audit_log,
        queue,
        rule_engine=engine,
        ready_for_export_threshold=config.worker.ready_for_export_threshold,
    )
    return {
        "engine": engine,
        "mapper": mapper,
        "audit_log": audit_log,
        "queue": queue,
        "processor": processor,
        "reprocess": reprocess,
    }


def cmd_init_config(config_path: Path) -> int:
    """Write a default config file."""
    if config_path.exists():
        print(f"❌ {config_path} already exists")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote default config to {config_path}")
    return 0


def cmd_enqueue(
    config: Config,
    file_reference: str,
    owner_id: str,
    filename: str | None,
    document_id: str | None,
) -> int:
    """Register a document and queue it for processing."""
    store = StateStore(config.state_db_path)
    queue = JobQueueService(store, max_attempts=config.worker.max_attempts)

    document_id = document_id or str(uuid.uuid4())
    filename = filename or file_reference.rstrip("/").rsplit("/", 1)[-1]

    document = store.get_document(document_id)
    if document is None:
        document = store.create_document(document_id, owner_id, file_reference, filename)

    job_id = queue.enqueue_document(document)
    if job_id is None:
        print(f"⚠️  Document {document_id} already has an active job")
        return 1

    print(f"✓ Queued document {document_id} as job {job_id}")
    return 0


def cmd_worker(config: Config, once: bool, concurrency: int | None) -> int:
    """Run the worker pool."""
    store = StateStore(config.state_db_path)
    services = build_services(config, store)

    pool = WorkerPool(
        services["queue"],
        services["processor"],
        concurrency=concurrency or config.worker.concurrency,
        poll_interval=config.worker.poll_interval_seconds,
    )

    if once:
        handled = pool.run_until_empty()
        print(f"✓ Handled {handled} jobs ({pool.processed} succeeded, {pool.failed} failed)")
        return 0 if pool.failed == 0 else 1

    def _graceful_stop(signum, frame):
        logger.info("Received signal %d, finishing in-flight jobs", signum)
        pool.stop()

    signal.signal(signal.SIGINT, _graceful_stop)
    signal.signal(signal.SIGTERM, _graceful_stop)

    pool.start()
    print(f"🔄 Worker running with {pool.concurrency} slots (Ctrl+C to stop)")
    while pool.running:
        pool.join(timeout=1.0)

    print(f"✓ Worker stopped ({pool.processed} succeeded, {pool.failed} failed)")
    return 0


def cmd_status(config: Config) -> int:
    """Show document and queue status."""
    store = StateStore(config.state_db_path)
    documents = store.get_document_stats()
    queue = store.get_queue_stats()

    print("\n📊 LedgerPost Status")
    print("=" * 40)
    print(f"  Documents total:        {documents['total']}")
    print(f"  Pending:                {documents['pending']}")
    print(f"  Processing:             {documents['processing']}")
    print(f"  Completed:              {documents['completed']}")
    print(f"  Failed:                 {documents['failed']}")
    print()
    print(f"  Jobs pending:           {queue['PENDING']}")
    print(f"  Jobs in flight:         {queue['PROCESSING']}")
    print(f"  Jobs completed:         {queue['COMPLETED']}")
    print(f"  Jobs dead-lettered:     {queue['FAILED']}")
    print()

    return 0


def cmd_rules_import(config: Config, path: Path, owner_id: str | None) -> int:
    """Import rules from a YAML or JSON file (JSON is valid YAML)."""
    if not path.exists():
        print(f"❌ File not found: {path}")
        return 1

    with open(path) as f:
        data = yaml.safe_load(f) or []
    if isinstance(data, dict):
        data = data.get("rules", [])

    # Validate everything before the first write
    rules = []
    for item in data:
        if not isinstance(item, dict):
            print(f"❌ Invalid rule entry: {item!r}")
            return 1
        if owner_id:
            item["owner_id"] = owner_id
        item.setdefault("id", str(uuid.uuid4()))
        try:
            rule = Rule.from_dict(item)
        except (KeyError, TypeError, ValueError) as e:
            print(f"❌ Invalid rule {item.get('name', item['id'])}: {e}")
            print("No rules were imported")
            return 1
        if not rule.conditions.configured_kinds():
            print(f"⚠️  Rule {rule.name} has no conditions and will never match")
        rules.append(rule)

    store = StateStore(config.state_db_path)
    for rule in rules:
        store.save_rule(rule)

    print(f"✓ Imported {len(rules)} rules")
    return 0


def cmd_rules_test(config: Config, conditions_json: str, line_item: LineItemData) -> int:
    """Preview conditions against a sample line item."""
    try:
        conditions = RuleConditions.from_dict(json.loads(conditions_json))
    except (json.JSONDecodeError, TypeError, ValueError) as e:
        print(f"❌ Invalid conditions: {e}")
        return 1

    store = StateStore(config.state_db_path)
    result = RuleEngine(store, config.rules).test_rule(conditions, line_item)
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.matched else 1


def cmd_rules_evaluate(
    config: Config,
    owner_id: str,
    line_item: LineItemData,
    ai_code: str | None,
    ai_confidence: float,
) -> int:
    """Evaluate an owner's active rules against a line item."""
    store = StateStore(config.state_db_path)
    ai_suggestion = AISuggestion(gl_code=ai_code, confidence=ai_confidence) if ai_code else None
    result = RuleEngine(store, config.rules).evaluate_line_item(owner_id, line_item, ai_suggestion)
    print(json.dumps(result.to_dict(), indent=2))
    return 0


def cmd_rules_stats(config: Config, rule_id: str) -> int:
    store = StateStore(config.state_db_path)
    if store.get_rule(rule_id) is None:
        print(f"❌ Rule {rule_id} not found")
        return 1
    stats = RuleEngine(store, config.rules).get_rule_stats(rule_id)
    print(json.dumps(asdict(stats), indent=2))
    return 0


def cmd_reprocess(config: Config, document_id: str, field_name: str | None) -> int:
    """Rerun mapping for a completed document."""
    store = StateStore(config.state_db_path)
    service = build_services(config, store)["reprocess"]

    try:
        if field_name:
            mapped = service.reprocess_field(document_id, field_name)
            print(f"✓ {field_name} = {mapped.value!r} ({mapped.confidence:.0%})")
        else:
            result = service.reprocess_document(document_id)
            print(
                f"✓ Reprocessed {document_id}: confidence {result.overall_confidence:.0%}, "
                f"review {'required' if result.requires_review else 'not required'}"
            )
    except ReprocessError as e:
        print(f"❌ {e}")
        return 1
    return 0


def cmd_retry(config: Config, document_id: str) -> int:
    """Requeue a failed document."""
    store = StateStore(config.state_db_path)
    service = build_services(config, store)["reprocess"]

    try:
        job_id = service.retry_document(document_id)
    except ReprocessError as e:
        print(f"❌ {e}")
        return 1
    print(f"✓ Document {document_id} queued for retry as job {job_id}")
    return 0


def cmd_audit(
    config: Config,
    document_id: str | None,
    field_name: str | None,
    stats: bool,
    limit: int,
) -> int:
    """Show audit trail entries or statistics."""
    audit_log = AuditLog(StateStore(config.state_db_path))

    if stats:
        print(json.dumps(audit_log.get_stats(), indent=2))
        return 0

    if document_id:
        entries = audit_log.get_document_trail(document_id)
        if field_name:
            entries = [entry for entry in entries if entry.field_name == field_name]
        entries = entries[:limit]
    elif field_name:
        entries = audit_log.get_field_trail(field_name, limit)
    else:
        print("❌ Specify a document ID, --field or --stats")
        return 1

    for entry in entries:
        print(
            f"{entry.created_at}  {entry.document_id}  {entry.field_name:<36} "
            f"{entry.input_value!s:>16} -> {entry.output_value!s:<20} "
            f"{entry.confidence_score:>5.0%}  {entry.mapping_source.value}"
        )
    if not entries:
        print("No audit entries found")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config)

    # Load config
    try:
        config = load_config(parsed.config)
        errors = config.validate()
        if errors:
            raise ConfigValidationError("; ".join(errors))
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    # Route to command
    if parsed.command == "enqueue":
        return cmd_enqueue(
            config, parsed.file_reference, parsed.owner, parsed.filename, parsed.document_id
        )
    elif parsed.command == "worker":
        return cmd_worker(config, parsed.once, parsed.concurrency)
    elif parsed.command == "status":
        return cmd_status(config)
    elif parsed.command == "rules":
        if parsed.rules_command == "import":
            return cmd_rules_import(config, parsed.file, parsed.owner)
        elif parsed.rules_command == "test":
            return cmd_rules_test(config, parsed.conditions, _line_item(parsed))
        elif parsed.rules_command == "evaluate":
            return cmd_rules_evaluate(
                config, parsed.owner, _line_item(parsed), parsed.ai_code, parsed.ai_confidence
            )
        elif parsed.rules_command == "stats":
            return cmd_rules_stats(config, parsed.rule_id)
        parser.print_help()
        return 1
    elif parsed.command == "reprocess":
        return cmd_reprocess(config, parsed.document_id, parsed.field)
    elif parsed.command == "retry":
        return cmd_retry(config, parsed.document_id)
    elif parsed.command == "audit":
        return cmd_audit(config, parsed.document_id, parsed.field, parsed.stats, parsed.limit)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
