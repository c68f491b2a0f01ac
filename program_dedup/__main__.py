"""
CLI entry point for program-dedup.

Usage:
    python -m program_dedup --input candidates.json
    python -m program_dedup --input candidates.jsonl --output-format jsonl
    python -m program_dedup --input new.json --store canonical.json
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import structlog

from .core.models import CandidateRecord, CandidateValidationError, CanonicalRecord

# Log level mapping
LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def setup_logging(level: str = "INFO", json_output: bool = False):
    """Configure structured logging."""
    log_level = LOG_LEVELS.get(level.upper(), logging.INFO)

    if json_output:
        renderer = structlog.processors.JSONRenderer()
        timestamper = structlog.processors.TimeStamper(fmt="iso")
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
        timestamper = structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S")

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            timestamper,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def parse_args(argv: Optional[list[str]] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Deduplicate funding-program candidates into canonical records",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Deduplicate a JSON array of candidates, print canonical records
  python -m program_dedup --input candidates.json

  # Write JSONL output
  python -m program_dedup --input candidates.jsonl --output out.jsonl --output-format jsonl

  # Incremental run against a stored canonical set
  python -m program_dedup --input new.json --store canonical.json

  # Override configuration
  python -m program_dedup --input candidates.json --config overrides.yml
        """,
    )

    parser.add_argument(
        "--input",
        type=str,
        help="Candidate records: JSON array or JSONL file",
    )

    parser.add_argument(
        "--output",
        type=str,
        help="Output file (default: stdout)",
    )

    parser.add_argument(
        "--output-format",
        choices=["json", "jsonl"],
        default="json",
        help="Output format (default: json)",
    )

    parser.add_argument(
        "--config",
        type=str,
        help="Path to a YAML file overriding the default configuration",
    )

    parser.add_argument(
        "--store",
        type=str,
        help="JSON canonical store for incremental runs (created if missing)",
    )

    parser.add_argument(
        "--families",
        type=str,
        help="Comma-separated extra source families to load from the store",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)",
    )

    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs as JSON (for production)",
    )

    parser.add_argument(
        "--version",
        action="store_true",
        help="Show version and exit",
    )

    return parser.parse_args(argv)


def load_candidates(path: str) -> list[CandidateRecord]:
    """
    Load candidate records from a JSON array or JSONL file.

    Invalid rows are logged and skipped.
    """
    logger = structlog.get_logger(__name__)

    with open(path, "r", encoding="utf-8") as f:
        content = f.read()

    stripped = content.lstrip()
    if stripped.startswith("["):
        rows = json.loads(content)
    else:
        rows = [json.loads(line) for line in content.splitlines() if line.strip()]

    candidates = []
    for index, row in enumerate(rows):
        try:
            candidates.append(CandidateRecord.from_dict(row))
        except CandidateValidationError as e:
            logger.warning("candidate_rejected", index=index, error=str(e))

    logger.info("candidates_loaded", path=path, loaded=len(candidates), rows=len(rows))
    return candidates


def write_records(records: list[CanonicalRecord], output: Optional[str], fmt: str) -> None:
    """Write canonical records as JSON or JSONL to a file or stdout."""
    data = [r.to_dict() for r in records]

    if fmt == "jsonl":
        text = "\n".join(json.dumps(d, ensure_ascii=False) for d in data) + "\n"
    else:
        text = json.dumps(data, ensure_ascii=False, indent=2) + "\n"

    if output:
        Path(output).parent.mkdir(parents=True, exist_ok=True)
        with open(output, "w", encoding="utf-8") as f:
            f.write(text)
    else:
        sys.stdout.write(text)


def run(args) -> list[CanonicalRecord]:
    """Run one deduplication pass from parsed arguments."""
    from .config.loader import load_config
    from .engine import DeduplicationEngine
    from .storage import JsonFileStore

    logger = structlog.get_logger(__name__)

    config = load_config(args.config)
    engine = DeduplicationEngine(config=config)
    candidates = load_candidates(args.input)

    if args.store:
        store = JsonFileStore(args.store)
        families = [f.strip() for f in (args.families or "").split(",") if f.strip()]
        records = engine.run_incremental(candidates, store, families=families)
        store.save()
    else:
        records = engine.deduplicate(candidates)

    write_records(records, args.output, args.output_format)
    logger.info("run_complete", canonical=len(records), output=args.output or "stdout")
    return records


def main(argv: Optional[list[str]] = None):
    """Main entry point."""
    args = parse_args(argv)

    # Version check
    if args.version:
        from . import __version__
        print(f"program-dedup {__version__}")
        sys.exit(0)

    if not args.input:
        print("error: --input is required", file=sys.stderr)
        sys.exit(2)

    setup_logging(args.log_level, args.json_logs)

    try:
        run(args)
        sys.exit(0)
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        sys.exit(130)
    except Exception as e:
        logger = structlog.get_logger(__name__)
        logger.exception("fatal_error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
