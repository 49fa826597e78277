"""Command-line interface for usage telemetry."""

import argparse
import json
import logging
import math
import threading

from usage_telemetry import catalog
from usage_telemetry.controller import UsageController

# Formatter registry: list of (predicate, formatter) tuples
# Each predicate checks if this formatter can handle the data
# Order matters - first match wins
_FORMATTERS: list[tuple[callable, callable]] = []

RULE = "─"


def _register_formatter(predicate: callable):
    """Decorator to register a formatter with its predicate."""

    def decorator(formatter: callable):
        _FORMATTERS.append((predicate, formatter))
        return formatter

    return decorator


def _pct(part: int, whole: int) -> int:
    return math.floor(part / whole * 100 + 0.5) if whole > 0 else 0


def format_trend_table(title: str, rows: list[dict]) -> list[str]:
    """Render date/input/output/cache rows as a fixed-width table.

    Each row has ``date``, ``input`` (fresh + cached), ``output`` and
    ``cache`` (cached input) token counts.
    """
    lines = ["", title, RULE * 65]
    lines.append(f"{'Date':<12} | {'Input':>12} | {'Output':>12} | {'Cache':>7}%")
    lines.append(RULE * 65)

    total_in = total_out = total_cache = 0
    for row in rows:
        total_in += row["input"]
        total_out += row["output"]
        total_cache += row["cache"]
        lines.append(
            f"{row['date']:<12} | {row['input']:>12,} | {row['output']:>12,} | "
            f"{_pct(row['cache'], row['input']):>7}%"
        )

    lines.append(RULE * 65)
    lines.append(
        f"{'TOTAL':<12} | {total_in:>12,} | {total_out:>12,} | {_pct(total_cache, total_in):>7}%"
    )
    lines.append("═" * 65)
    return lines


_FAILURE_MESSAGES = {
    "not_found": "Error: backend not found. Is the editor running?",
    "no_sessions": "No sessions found.",
}


@_register_formatter(lambda d: "status" in d and d["status"] not in ("ok", "stale", "connected"))
def _format_failure(data: dict) -> list[str]:
    message = _FAILURE_MESSAGES.get(data["status"])
    return [message or f"Error: {data.get('error') or data['status']}"]


@_register_formatter(lambda d: "diagnostics" in d and "port" in d)
def _format_discovery(data: dict) -> list[str]:
    lines = [f"Connected on port {data['port']}"]
    diagnostics = data.get("diagnostics") or {}
    if diagnostics:
        lines.append(
            f"Scan: {diagnostics.get('scan_method')} ({diagnostics.get('target_process')}), "
            f"{diagnostics.get('found_candidates', 0)} candidate(s), "
            f"{diagnostics.get('verified_candidates', 0)} verified"
        )
    return lines


@_register_formatter(lambda d: "sessions" in d)
def _format_sessions(data: dict) -> list[str]:
    sessions = data["sessions"]
    lines = [
        f"Found {len(sessions)} sessions (newest first):",
        "",
        f"{'Time':<25} | {'Steps':>5} | {'Session ID':<38} | Summary",
        RULE * 110,
    ]
    for s in sessions:
        time_str = s["last_modified"][:23] if s["last_modified"] else "N/A"
        lines.append(
            f"{time_str:<25} | {s['step_count']:>5} | {s['session_id']:<38} | {s['summary'][:30]}"
        )
    return lines


@_register_formatter(lambda d: "stats" in d and "mode" in d)
def _format_session_stats(data: dict) -> list[str]:
    stats = data["stats"]
    session = data.get("session") or {}
    lines = []
    if data["status"] == "stale":
        lines.append(f"Warning: showing cached data ({data.get('error')})")
    lines += [
        f"Session: {session.get('session_id', 'unknown')} ({session.get('step_count', 0)} steps)",
        f"Backend requests: {data.get('call_count', 0)} ({data.get('mode') or 'cached'})",
        f"Model calls: {stats['total_calls']}",
        f"Context size: {stats['last_context_size']:,}",
        "",
        "Token usage by model:",
        RULE * 80,
        f"{'Model':<35} | {'Calls':>6} | {'Input':>10} | {'Output':>10} | {'Cache':>8}",
        RULE * 80,
    ]
    for model in stats["model_breakdown"]:
        observed = model["input"] + model["cache_read"]
        lines.append(
            f"{model['display_name'][:34]:<35} | {model['calls']:>6} | {observed:>10,} | "
            f"{model['output']:>10,} | {_pct(model['cache_read'], observed):>7}%"
        )
    lines.append(RULE * 80)
    observed = stats["total_input"] + stats["total_cache_read"]
    lines.append(
        f"{'TOTAL':<35} | {stats['total_calls']:>6} | {observed:>10,} | "
        f"{stats['total_output']:>10,} | {_pct(stats['total_cache_read'], observed):>7}%"
    )
    return lines


@_register_formatter(lambda d: "days" in d and "day_window" in d)
def _format_daily(data: dict) -> list[str]:
    days = data["days"]
    lines = [
        f"Daily usage (last {data['day_window']} days)",
        f"Sessions: {data['sessions_processed']} processed, {data['sessions_failed']} failed",
        f"Backend requests: {data['call_count']}",
    ]
    if data.get("totals"):
        lines.append(f"Model calls: {data['totals']['total_calls']}")

    model_names = catalog.sort_display_names({name for day in days for name in day["models"]})
    for name in model_names:
        rows = [
            {
                "date": day["date"],
                "input": day["models"][name]["input_tokens"]
                + day["models"][name]["cache_read_tokens"],
                "output": day["models"][name]["output_tokens"],
                "cache": day["models"][name]["cache_read_tokens"],
            }
            for day in days
            if name in day["models"]
        ]
        lines += format_trend_table(f"Model: {name}", rows)

    totals = [
        {
            "date": day["date"],
            "input": day["totals"]["input_tokens"] + day["totals"]["cache_read_tokens"],
            "output": day["totals"]["output_tokens"],
            "cache": day["totals"]["cache_read_tokens"],
        }
        for day in days
    ]
    lines += format_trend_table("DAILY TOTALS (Aggregated)", totals)
    return lines


def format_output(data: dict, json_output: bool = False) -> str:
    """Format output as JSON or human-readable."""
    if json_output:
        return json.dumps(data, indent=2, default=str)

    # Find matching formatter from registry
    for predicate, formatter in _FORMATTERS:
        if predicate(data):
            return "\n".join(formatter(data))

    # Fallback to JSON if no formatter matches
    return json.dumps(data, indent=2, default=str)


def cmd_discover(args):
    """Discover the backend and show the connection."""
    controller = UsageController()
    result = controller.discover()
    print(format_output(result.to_dict(), args.json))


def cmd_list(args):
    """List sessions."""
    controller = UsageController()
    result = controller.list_sessions().to_dict()
    if args.latest and result["sessions"]:
        result["sessions"] = result["sessions"][:1]
    print(format_output(result, args.json))


def cmd_stats(args):
    """Show token statistics for one session."""
    controller = UsageController()
    report = controller.refresh_session(session_id=args.id, force=args.force)
    print(format_output(report.to_dict(), args.json))


def cmd_daily(args):
    """Show daily token usage."""
    controller = UsageController()
    report = controller.get_daily_report(day_window=args.days)
    print(format_output(report.to_dict(), args.json))


def _format_watch_line(report) -> str:
    if report.stats is None:
        return f"[{report.status}] {report.error or 'no data'}"
    stats = report.stats
    return (
        f"[{report.status}/{report.mode or 'cached'}] {report.session.session_id[:8]}: "
        f"{stats.total_calls} calls, {stats.total_input:,} in, {stats.total_output:,} out, "
        f"cache {stats.cache_efficiency}%, context {stats.last_context_size:,}"
    )


def cmd_watch(args):
    """Poll the most recent session until interrupted."""
    controller = UsageController()
    stop = threading.Event()

    def on_update(report):
        if args.json:
            print(json.dumps(report.to_dict(), default=str), flush=True)
        else:
            print(_format_watch_line(report), flush=True)

    try:
        controller.run_poller(
            stop, on_update=on_update, interval=args.interval, max_iterations=args.count
        )
    except KeyboardInterrupt:
        stop.set()
    finally:
        controller.close()


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="usage-telemetry",
        description="Token usage telemetry for a locally running language server",
        epilog=(
            "Examples:\n"
            "  usage-telemetry list --latest\n"
            "  usage-telemetry stats --id <session-id>\n"
            "  usage-telemetry daily --days 14"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--json", action="store_true", help="Output as JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # discover
    sub = subparsers.add_parser("discover", help="Discover the backend process")
    sub.set_defaults(func=cmd_discover)

    # list
    sub = subparsers.add_parser("list", help="List sessions, newest first")
    sub.add_argument("--latest", action="store_true", help="Show only the latest session")
    sub.set_defaults(func=cmd_list)

    # stats
    sub = subparsers.add_parser("stats", help="Show token usage for a session")
    target = sub.add_mutually_exclusive_group()
    target.add_argument("--id", help="Session ID (default: most recent)")
    target.add_argument(
        "--latest", action="store_true", help="Use the most recent session (default)"
    )
    sub.add_argument("--force", action="store_true", help="Refetch even if unchanged")
    sub.set_defaults(func=cmd_stats)

    # daily
    sub = subparsers.add_parser("daily", help="Show daily token usage")
    sub.add_argument(
        "--days", type=int, default=None, help="Days to include (default: 8)"
    )
    sub.set_defaults(func=cmd_daily)

    # watch
    sub = subparsers.add_parser("watch", help="Poll the most recent session")
    sub.add_argument(
        "--interval", type=float, default=None, help="Seconds between polls (default: 60)"
    )
    sub.add_argument("--count", type=int, default=None, help="Stop after N polls")
    sub.set_defaults(func=cmd_watch)

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    args.func(args)


if __name__ == "__main__":
    main()
