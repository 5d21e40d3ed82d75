"""Terminal view: one-shot or continuously refreshing quota report."""

import argparse
import logging
import sys
import time

from rich.console import Console
from rich.text import Text

from .client import QuotaClient
from .config import (
    API_KEY_ENV,
    DEFAULT_LOG_FILE,
    TERMINAL_DEFAULT_INTERVAL_S,
    load_settings,
    setup_logging,
)
from .engine import EngineView, RefreshEngine
from .eventlog import RESET_EVENTS, QuotaLog
from .parser import QUOTA_WINDOW_S
from .timeutil import format_duration_compact, format_timestamp, truncate_for_display

lib_logger = logging.getLogger("firmware_quota")

ERROR_DISPLAY_LEN = 300
MIN_BAR_WIDTH = 20
MAX_BAR_WIDTH = 50


def usage_color(pct: float) -> str:
    if pct < 50.0:
        return "green"
    if pct < 80.0:
        return "yellow"
    return "red"


def bar_width_for(terminal_width: int, fixed_width: int) -> int:
    return max(MIN_BAR_WIDTH, min(MAX_BAR_WIDTH, terminal_width - fixed_width))


def render_bar(label: str, fill_pct: float, width: int, color: str, suffix: str) -> Text:
    fill_pct = max(0.0, min(100.0, fill_pct))
    filled = int(fill_pct / 100.0 * width)
    return Text.assemble(
        f"{label}: [",
        ("█" * filled, color),
        ("░" * (width - filled), "dim"),
        f"] {suffix}",
    )


def build_report(
    view: EngineView,
    text_mode: bool = False,
    terminal_width: int = 80,
    now: float | None = None,
) -> Text:
    """Multi-line report of the engine view; never shows a fabricated zero."""
    if now is None:
        now = time.time()
    lines: list[Text] = [
        Text("Firmware API Quota Details:", style="bold"),
        Text("=========================="),
    ]

    snap = view.snapshot
    if snap is None:
        if view.last_error:
            lines.append(Text(f"No data: {truncate_for_display(view.last_error, ERROR_DISPLAY_LEN)}", style="red"))
        else:
            lines.append(Text("No data yet", style="dim"))
        return Text("\n").join(lines)

    stale_mark = " (stale)" if view.is_stale else ""
    pct = snap.percentage
    if text_mode:
        lines.append(Text(f"Used: {pct:.2f}% ({snap.used_fraction:.4f}){stale_mark}"))
    else:
        lines.append(render_bar(
            "Usage", pct, bar_width_for(terminal_width, 17), usage_color(pct), f"{pct:.2f}%{stale_mark}"
        ))

    remaining = snap.seconds_until_reset(now)
    if remaining is not None:
        if text_mode:
            lines.append(Text(f"Reset in: {format_duration_compact(remaining)} (of 5h)"))
        else:
            remaining_pct = min(remaining, QUOTA_WINDOW_S) * 100.0 / QUOTA_WINDOW_S
            lines.append(render_bar(
                "Reset",
                remaining_pct,
                bar_width_for(terminal_width, 34),
                usage_color(100.0 - remaining_pct),
                f"{format_duration_compact(remaining)} left (of 5h)",
            ))
        lines.append(Text(f"Resets at: {format_timestamp(snap.reset_time)}"))
    elif snap.has_reset:
        lines.append(Text(f"Reset: {format_timestamp(snap.reset_time)}"))
    else:
        lines.append(Text("Reset: No active window (quota not used recently)"))

    if view.delta_pp is not None:
        lines.append(Text(f"Delta: {view.delta_pp:+.1f}pp"))
    if view.recent_deltas:
        deltas = ", ".join(f"{d.delta_pp:+.1f}" for d in view.recent_deltas)
        lines.append(Text(f"Recent deltas (old->new): {deltas} pp"))
    if view.last_success_age is not None:
        lines.append(Text(f"Last OK: {format_duration_compact(view.last_success_age)} ago"))
    if view.window_reset_age is not None:
        lines.append(Text(f"Window reset: {format_duration_compact(view.window_reset_age)} ago"))

    if view.is_stale:
        lines.append(Text(
            f"Error: {truncate_for_display(view.last_error, ERROR_DISPLAY_LEN)} "
            f"(failures: {view.consecutive_failures})",
            style="red",
        ))
    return Text("\n").join(lines)


def build_tiny(view: EngineView) -> str:
    if view.percentage is None:
        return "--"
    pct = max(0.0, min(100.0, view.percentage))
    return f"{pct:.0f}%{'*' if view.is_stale else ''}"


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="firmware-quota",
        description="Show Firmware API quota usage.",
        epilog=(
            f"The API key can also be set via {API_KEY_ENV} or "
            "~/.config/firmware-quota/env. Log events: FIRST_RUN, UPDATE, "
            "QUOTA_RESET, POSSIBLE_RESET, HIGH_USAGE."
        ),
    )
    parser.add_argument("api_key", nargs="?", help="API key (fw_api_...)")
    parser.add_argument(
        "-r", "--refresh", type=int, metavar="SECONDS",
        help=f"refresh continuously every N seconds (default: {TERMINAL_DEFAULT_INTERVAL_S})",
    )
    parser.add_argument("-1", dest="single", action="store_true", help="single run, no refresh loop")
    parser.add_argument("-t", "--text", action="store_true", help="plain text output, no bars")
    parser.add_argument("--tiny", action="store_true", help="single-line output: XX%%")
    parser.add_argument(
        "-l", "--log", default=DEFAULT_LOG_FILE, metavar="FILE",
        help=f"log quota changes to CSV file (default: ./{DEFAULT_LOG_FILE})",
    )
    parser.add_argument("--no-log", action="store_true", help="disable CSV logging")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging to stderr")
    return parser.parse_args(argv)


def _show(console: Console, engine: RefreshEngine, args: argparse.Namespace, log: QuotaLog | None) -> None:
    view = engine.view()
    if args.tiny:
        console.print(build_tiny(view), highlight=False)
        return
    if log is not None and log.last_event in RESET_EVENTS:
        console.print(f"*** {log.last_event} DETECTED ***", style="yellow", highlight=False)
    console.print(build_report(view, text_mode=args.text, terminal_width=console.width), highlight=False)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    setup_logging(args.verbose)

    settings = load_settings(
        api_key=args.api_key,
        refresh_interval=args.refresh,
        log_file=None if args.no_log else args.log,
    )
    console = Console()
    if not settings.api_key:
        console.print(f"Error: API key not provided (argument or {API_KEY_ENV}).", style="red")
        return 1

    engine = RefreshEngine(
        QuotaClient(settings.quota_url, settings.request_timeout),
        api_key=settings.api_key,
        refresh_interval=settings.refresh_interval,
    )
    lib_logger.debug(f"Polling {settings.quota_url} every {settings.refresh_interval}s")
    log = QuotaLog(settings.log_file) if settings.log_file else None
    if log is not None:
        engine.add_listener(log)

    try:
        if args.single:
            outcome = engine.refresh()
            _show(console, engine, args, log)
            return 0 if outcome is not None and outcome.ok else 1

        while True:
            if log is not None:
                log.last_event = None
            engine.refresh()
            engine.schedule_next()
            if console.is_terminal and not args.tiny:
                console.clear()
            _show(console, engine, args, log)
            if not args.tiny:
                console.print(
                    f"\nRefreshing every {engine.refresh_interval} seconds (Ctrl+C to stop)...",
                    style="dim",
                    highlight=False,
                )
            time.sleep(engine.refresh_interval)
    except KeyboardInterrupt:
        lib_logger.debug("Interrupted, stopping refresh loop")
        return 0
    finally:
        engine.teardown()
        engine.close()


if __name__ == "__main__":
    sys.exit(main())
