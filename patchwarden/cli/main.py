"""PatchWarden CLI: local repository scanner.

Usage:
    patchwarden scan <path>         Scan a repository and index it into a session
    patchwarden config              Show current configuration
    patchwarden --version           Print version

Examples:
    patchwarden scan ./service/
    patchwarden scan ./service/ --session nightly --format json
    patchwarden scan ./service/ --no-embeddings
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import uuid
from pathlib import Path

from patchwarden.context.embeddings import EmbeddingGateway, HashingEmbedder
from patchwarden.context.session_store import SessionContextStore
from patchwarden.core.config import Settings, get_settings
from patchwarden.core.errors import ConfigurationError, FatalIOError
from patchwarden.core.events import LoggingSink
from patchwarden.core.logging import SessionLogFilter, setup_logging
from patchwarden.scanner.patterns import PATTERNS_BY_CATEGORY
from patchwarden.scanner.streaming import RepositoryScanner, ScanSummary

VERSION = "0.3.0"

# ── Coloured output helpers ──────────────────────────────────────────────────

_RESET = "\033[0m"
_BOLD = "\033[1m"
_RED = "\033[91m"
_YELLOW = "\033[93m"
_GREEN = "\033[92m"
_CYAN = "\033[96m"
_DIM = "\033[2m"

_SEV_COLOR = {
    "critical": _RED,
    "high": "\033[38;5;208m",  # orange
    "medium": _YELLOW,
    "low": _CYAN,
    "informational": _DIM,
}
_SEV_ORDER = ["critical", "high", "medium", "low", "informational"]
_SECRET_SUFFIXES = ("_key", "password", "secret", "_token")


def _c(text: str, code: str) -> str:
    return f"{code}{text}{_RESET}"


# ── CLI argument parser ─────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="patchwarden",
        description="PatchWarden: vulnerability scanning and fix synthesis",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    parser.add_argument("--quiet", "-q", action="store_true", help="Minimal output")

    sub = parser.add_subparsers(dest="command")

    # ── scan ─────────────────────────────────────────────────────────────────
    scan_p = sub.add_parser("scan", help="Scan a repository directory")
    scan_p.add_argument("path", help="Repository root directory")
    scan_p.add_argument("--session", "-s", help="Session id (default: random)")
    scan_p.add_argument(
        "--format",
        "-f",
        default="table",
        choices=["table", "json"],
        help="Output format (default: table)",
    )
    scan_p.add_argument(
        "--no-embeddings",
        action="store_true",
        help="Index with the local hashing embedder instead of the embedding service",
    )

    # ── config ───────────────────────────────────────────────────────────────
    sub.add_parser("config", help="Show current configuration")

    return parser


# ── Scan command ─────────────────────────────────────────────────────────────


def _severity_of(category: str) -> str:
    pattern = PATTERNS_BY_CATEGORY.get(category)
    return pattern.severity.value if pattern else "informational"


def _print_table(summary: ScanSummary, quiet: bool = False) -> None:
    """Pretty-print category counts and hits as a coloured table."""
    if not quiet:
        print(f"\n{_BOLD}Scan complete{_RESET}: session {summary.session_id}")
        print(
            f"  Files: {summary.analyzed_files}/{summary.total_files}"
            f"  |  Failed: {len(summary.failed_files)}"
            f"  |  Duration: {summary.duration_ms / 1000:.1f}s\n"
        )
        if summary.error_message:
            print(_c(f"  ! {summary.error_message}", _YELLOW))
            for path in summary.failed_files:
                print(f"    {_DIM}{path}{_RESET}")
            print()

    if not summary.category_counts:
        print(_c("  ✓ No heuristic findings.", _GREEN))
        return

    ordered = sorted(summary.category_counts, key=lambda cat: (_SEV_ORDER.index(_severity_of(cat)), cat))
    parts = [
        f"{_SEV_COLOR.get(_severity_of(cat), '')}{summary.category_counts[cat]} {cat}{_RESET}"
        for cat in ordered
    ]
    print(f"  {' · '.join(parts)}\n")

    i = 0
    for category in ordered:
        sev = _severity_of(category)
        badge = _c(f" {sev.upper()} ", _SEV_COLOR.get(sev, "") + _BOLD)
        for file_path, hit in summary.hits_for(category):
            i += 1
            print(f"  {_DIM}{i:>3}.{_RESET} {badge} {_c(category, _BOLD)}  {_c(f'{file_path}:{hit.line_number}', _DIM)}")
            if not quiet:
                snippet = hit.snippet[:200] + ("…" if len(hit.snippet) > 200 else "")
                print(f"       {_DIM}{snippet}{_RESET}")
    print()


async def _run_scan(args: argparse.Namespace, settings: Settings) -> int:
    """Execute a scan and print results."""
    path = Path(args.path).resolve()
    session_id = args.session or f"cli-{uuid.uuid4().hex[:8]}"

    session_filter = SessionLogFilter(session_id=session_id)
    for handler in _root_handlers():
        handler.addFilter(session_filter)

    gateway = None if args.no_embeddings else EmbeddingGateway(settings)
    embedder = gateway or HashingEmbedder()
    try:
        store = SessionContextStore(embedder, settings=settings)
    except ConfigurationError as exc:
        print(_c(f"Error: {exc.message}", _RED), file=sys.stderr)
        return 2

    scanner = RepositoryScanner(store, settings=settings, event_sink=None if args.quiet else LoggingSink())
    if not args.quiet and args.format == "table":
        print(f"  Scanning {_c(str(path), _CYAN)}…", file=sys.stderr)

    try:
        summary = await scanner.scan_repository(path, session_id)
    except FatalIOError as exc:
        print(_c(f"Error: {exc.message}", _RED), file=sys.stderr)
        return 2
    finally:
        if gateway is not None:
            await gateway.aclose()
        for handler in _root_handlers():
            handler.removeFilter(session_filter)

    if args.format == "json":
        payload = summary.model_dump(mode="json")
        payload["context"] = store.session_summary(session_id)
        print(json.dumps(payload, indent=2))
    else:
        _print_table(summary, quiet=args.quiet)

    # Exit code: 1 if any critical/high findings
    has_critical = any(_severity_of(cat) in ("critical", "high") for cat in summary.category_counts)
    return 1 if has_critical else 0


def _root_handlers() -> list[logging.Handler]:
    return list(logging.getLogger().handlers)


# ── Config command ───────────────────────────────────────────────────────────


def _run_config(settings: Settings) -> int:
    """Print current settings (redacted)."""
    print(f"\n{_BOLD}PatchWarden Configuration{_RESET}\n")
    for name, value in masked_settings(settings).items():
        print(f"  {_DIM}{name}:{_RESET}  {value}")
    print()
    return 0


def masked_settings(settings: Settings) -> dict[str, object]:
    out: dict[str, object] = {}
    for field_name in sorted(type(settings).model_fields):
        val = getattr(settings, field_name, "")
        if field_name.endswith(_SECRET_SUFFIXES):
            val = "****" if val else "(not set)"
        out[field_name] = val
    return out


# ── Entrypoint ───────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"patchwarden {VERSION}")
        return 0

    if not args.command:
        parser.print_help()
        return 0

    settings = get_settings()
    setup_logging(settings.app_env, "WARNING" if args.quiet else settings.log_level)

    if args.command == "config":
        return _run_config(settings)

    if args.command == "scan":
        return asyncio.run(_run_scan(args, settings))

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
