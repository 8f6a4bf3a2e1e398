"""
Wiretap — listen in on a run.

Two parts:
  1. WireLog: an event-stream listener that writes one structured JSONL
     entry per event (streaming deltas are skipped, the finalized message
     carries the full text)
  2. live_tap(): reads the JSONL and renders a color-coded live view

The wire log is separate from the debug log. It is a clean record of what
the model said, which tools ran, and what the servers asked for.
"""

import json
import time
import logging
from datetime import datetime, timezone
from pathlib import Path

from switchboard.events import Event, EventType

logger = logging.getLogger(__name__)

# ANSI colors
C_RESET = "\033[0m"
C_BOLD = "\033[1m"
C_DIM = "\033[2m"
C_ASSISTANT = "\033[93m"  # yellow
C_SYSTEM = "\033[90m"     # gray
C_SERVER = "\033[95m"     # magenta
C_TIME = "\033[90m"       # gray
C_BORDER = "\033[90m"     # gray
C_TOOL = "\033[92m"       # green
C_ERROR = "\033[91m"      # red

SKIPPED = {EventType.CONTENT_DELTA, EventType.REASONING_DELTA}

# Display channel for each event type
CHANNELS = {
    EventType.RUN_STARTED: "run",
    EventType.MESSAGE_FINALIZED: "assistant",
    EventType.TOOL_CALL_STARTED: "tool",
    EventType.TOOL_CALL_FINISHED: "tool",
    EventType.NOTIFICATION_FLUSHED: "server",
    EventType.SAMPLING_REQUEST_PENDING: "server",
    EventType.ELICITATION_REQUEST_PENDING: "server",
    EventType.AUTH_REQUIRED: "server",
    EventType.RUN_COMPLETE: "run",
    EventType.RUN_MAX_ITERATIONS: "run",
    EventType.RUN_CANCELLED: "run",
    EventType.RUN_ERROR: "error",
}

CHANNEL_COLORS = {
    "assistant": C_ASSISTANT,
    "tool": C_TOOL,
    "server": C_SERVER,
    "run": C_SYSTEM,
    "error": C_ERROR,
}

CHANNEL_ICONS = {
    "assistant": "◀",
    "tool": "⚡",
    "server": "☎",
    "run": "●",
    "error": "✗",
}


def _summary(event: Event) -> str:
    """The one piece of text worth showing for an event."""
    t = event.type
    if t is EventType.MESSAGE_FINALIZED:
        return event.get("content") or ""
    if t is EventType.TOOL_CALL_STARTED:
        return event.get("arguments") or ""
    if t is EventType.TOOL_CALL_FINISHED:
        return event.get("content") or ""
    if t is EventType.NOTIFICATION_FLUSHED:
        return json.dumps(event.get("params") or {}, ensure_ascii=False)
    if t is EventType.SAMPLING_REQUEST_PENDING:
        return json.dumps((event.get("params") or {}).get("messages", []), ensure_ascii=False)
    if t is EventType.ELICITATION_REQUEST_PENDING:
        return event.get("url") or event.get("message") or ""
    if t is EventType.RUN_ERROR:
        return event.get("error") or ""
    return ""


class WireLog:
    """
    Structured JSONL logger for run events. Attach with
    events.add_listener(wire.record).

    Format:
        {"ts": "...", "event": "...", "channel": "...", "conv": "...",
         "name": "...", "server": "...", "len": 123, "content": "..."}
    """

    def __init__(self, log_path: str, conversation_id: str = ""):
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.conversation_id = conversation_id
        self._file = None

    def _ensure_open(self):
        if self._file is None:
            self._file = open(self.log_path, "a", buffering=1)  # line-buffered

    def record(self, event: Event):
        if event.type in SKIPPED:
            return
        content = _summary(event)
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event.type.value,
            "channel": CHANNELS.get(event.type, "run"),
            "conv": (event.get("conversation_id") or self.conversation_id)[:16],
            "len": len(content),
        }
        if event.get("name"):
            entry["name"] = event["name"]
        if event.get("server_name"):
            entry["server"] = event["server_name"]
        if event.type is EventType.TOOL_CALL_FINISHED:
            entry["is_error"] = event.get("is_error", False)
            entry["latency_ms"] = event.get("latency_ms")
            entry["origin"] = event.get("origin", "loop")

        # Truncate for sanity but keep full for short content
        if len(content) <= 2000:
            entry["content"] = content
        else:
            entry["content"] = content[:1000] + f"\n\n[... {len(content) - 2000} chars truncated ...]\n\n" + content[-1000:]

        self._ensure_open()
        self._file.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def close(self):
        if self._file:
            self._file.close()
            self._file = None


def _format_entry(entry: dict, raw: bool = False) -> str:
    """Format a single wire log entry for display."""
    if raw:
        return json.dumps(entry, ensure_ascii=False)

    ts = entry.get("ts", "")
    try:
        time_str = datetime.fromisoformat(ts).strftime("%H:%M:%S")
    except (ValueError, TypeError):
        time_str = ts[:8] if ts else "??:??:??"

    channel = entry.get("channel", "run")
    color = CHANNEL_COLORS.get(channel, C_RESET)
    icon = CHANNEL_ICONS.get(channel, "?")
    content = entry.get("content", "")

    lines = []
    header = f"  {C_TIME}{time_str}{C_RESET} {color}{C_BOLD}{icon} {entry.get('event', '?').upper()}{C_RESET}"
    if entry.get("name"):
        header += f"  {C_TOOL}⚡{entry['name']}{C_RESET}"
    if entry.get("server"):
        header += f"  {C_SERVER}[{entry['server']}]{C_RESET}"
    if entry.get("is_error"):
        header += f"  {C_ERROR}failed{C_RESET}"
    if entry.get("latency_ms") is not None:
        header += f"  {C_DIM}{entry['latency_ms']}ms{C_RESET}"
    if entry.get("conv"):
        header += f"  {C_DIM}conv:{entry['conv']}{C_RESET}"
    lines.append(header)

    if content:
        display = content
        if len(display) > 500:
            display = display[:500] + f"\n      {C_DIM}[... truncated]{C_RESET}"
        for cline in display.split("\n")[:15]:
            lines.append(f"      {cline}")
        if display.count("\n") > 15:
            lines.append(f"      {C_DIM}[... {display.count(chr(10)) - 15} more lines]{C_RESET}")

    lines.append(f"  {C_BORDER}{'─' * 60}{C_RESET}")
    return "\n".join(lines)


def _show(line: str, channel_filter: str | None, raw: bool):
    line = line.strip()
    if not line:
        return
    try:
        entry = json.loads(line)
    except json.JSONDecodeError:
        return
    if channel_filter and entry.get("channel") != channel_filter:
        return
    print(_format_entry(entry, raw=raw))


def live_tap(
    log_path: str | None = None,
    follow: bool = True,
    last_n: int = 20,
    channel_filter: str | None = None,
    raw: bool = False,
):
    """
    Live tail of the wire log.

    Args:
        log_path: Path to wire.jsonl. If None, reads from config.
        follow: If True, keep watching for new entries (tail -f behavior).
        last_n: Show this many recent entries before following.
        channel_filter: Only show entries on this channel (assistant, tool, server, run, error).
        raw: Output raw JSONL instead of formatted.
    """
    if log_path is None:
        from switchboard.config import get_config
        log_path = get_config().get("wiretap", {}).get("path", "./data/wire.jsonl")

    wire_path = Path(log_path)
    if not wire_path.exists():
        print(f"  ✗  No wire log found at {wire_path}")
        print("     Run a conversation first: switchboard patch")
        return

    if not raw:
        print(f"  ☎  Tapping into {wire_path}")
        print(f"  {C_BORDER}{'═' * 60}{C_RESET}")

    with open(wire_path) as f:
        all_lines = f.readlines()
    for line in all_lines[max(0, len(all_lines) - last_n):]:
        _show(line, channel_filter, raw)

    if not follow:
        return

    if not raw:
        print(f"\n  {C_DIM}[listening for new traffic... Ctrl+C to hang up]{C_RESET}\n")

    try:
        with open(wire_path) as f:
            f.seek(0, 2)
            while True:
                line = f.readline()
                if not line:
                    time.sleep(0.1)
                    continue
                _show(line, channel_filter, raw)
    except KeyboardInterrupt:
        if not raw:
            print(f"\n  {C_DIM}[line disconnected]{C_RESET}")
