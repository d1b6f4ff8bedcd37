"""
Wiretap — a structured record of every exchange with the providers.

Two parts:
  1. WireLog: appends one JSONL entry per request sent, response received,
     failure, and routing decision (provider selection, degradation, failover)
  2. live_tap(): tails the JSONL and renders a color-coded view

Separate from the debug log: this is what went over the line, to which
provider, in which round.
"""

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

# ANSI colors
C_RESET = "\033[0m"
C_BOLD = "\033[1m"
C_DIM = "\033[2m"
C_USER = "\033[96m"       # cyan
C_ASSISTANT = "\033[93m"  # yellow
C_ROUTE = "\033[90m"      # gray
C_PROVIDER = "\033[95m"   # magenta
C_ERROR = "\033[91m"      # red
C_BORDER = "\033[90m"

KIND_COLORS = {
    "request": C_USER,
    "response": C_ASSISTANT,
    "route": C_ROUTE,
    "error": C_ERROR,
}

KIND_ICONS = {
    "request": "▶",
    "response": "◀",
    "route": "●",
    "error": "✗",
}

MAX_CONTENT = 2000


class WireLog:
    """
    Structured JSONL logger for provider traffic.

    Format:
        {"ts": "...", "kind": "request|response|route|error", "provider": "...",
         "model": "...", "round": 0, "len": 123, "content": "...", ...extra}
    """

    def __init__(self, log_path: str):
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = None

    def _ensure_open(self):
        if self._file is None:
            self._file = open(self.log_path, "a", buffering=1)  # line-buffered

    def log(
        self,
        kind: str,
        content: str = "",
        provider: str = "",
        model: str = "",
        round_index: int | None = None,
        **extra,
    ):
        """Write a wire log entry."""
        self._ensure_open()
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "kind": kind,
            "provider": provider,
            "model": model,
            "len": len(content),
        }
        if round_index is not None:
            entry["round"] = round_index
        entry.update({k: v for k, v in extra.items() if v not in (None, "")})

        # Base64 frames make requests huge; keep head and tail only
        if len(content) <= MAX_CONTENT:
            entry["content"] = content
        else:
            entry["content"] = (
                content[:1000]
                + f"\n\n[... {len(content) - MAX_CONTENT} chars truncated ...]\n\n"
                + content[-1000:]
            )

        self._file.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def close(self):
        if self._file:
            self._file.close()
            self._file = None


def _format_entry(entry: dict, raw: bool = False) -> str:
    if raw:
        return json.dumps(entry, ensure_ascii=False)

    try:
        time_str = datetime.fromisoformat(entry.get("ts", "")).strftime("%H:%M:%S")
    except (ValueError, TypeError):
        time_str = "??:??:??"

    kind = entry.get("kind", "?")
    color = KIND_COLORS.get(kind, C_RESET)
    icon = KIND_ICONS.get(kind, "?")

    header = f"  {C_DIM}{time_str}{C_RESET} {color}{C_BOLD}{icon} {kind.upper()}{C_RESET}"
    if entry.get("provider"):
        header += f"  {C_PROVIDER}[{entry['provider']}"
        if entry.get("model"):
            header += f" {entry['model']}"
        header += f"]{C_RESET}"
    if "round" in entry:
        header += f"  {C_DIM}round {entry['round']}{C_RESET}"
    if entry.get("status"):
        header += f"  {C_DIM}HTTP {entry['status']}{C_RESET}"
    if entry.get("latency_ms"):
        header += f"  {C_DIM}{entry['latency_ms']:.0f}ms{C_RESET}"
    header += f"  {C_DIM}({entry.get('len', 0)} chars){C_RESET}"

    lines = [header]
    content = entry.get("content", "")
    if content:
        if len(content) > 500:
            content = content[:500] + f"\n{C_DIM}[... truncated]{C_RESET}"
        for cline in content.split("\n")[:15]:
            lines.append(f"      {cline}")
    lines.append(f"  {C_BORDER}{'─' * 60}{C_RESET}")
    return "\n".join(lines)


def _print_line(line: str, kind_filter: str | None, raw: bool):
    line = line.strip()
    if not line:
        return
    try:
        entry = json.loads(line)
    except json.JSONDecodeError:
        return
    if kind_filter and entry.get("kind") != kind_filter:
        return
    print(_format_entry(entry, raw=raw))


def live_tap(
    log_path: str | None = None,
    follow: bool = True,
    last_n: int = 20,
    kind_filter: str | None = None,
    raw: bool = False,
):
    """
    Tail the wire log.

    Args:
        log_path: Path to wire.jsonl. If None, reads from config.
        follow: Keep watching for new entries (tail -f).
        last_n: Show this many recent entries first.
        kind_filter: Only show entries of this kind (request/response/route/error).
        raw: Print raw JSONL.
    """
    if log_path is None:
        from vidchat.config import get_config
        log_path = get_config().get("wiretap", {}).get("path", "./data/wire.jsonl")

    wire_path = Path(log_path)
    if not wire_path.exists():
        print(f"  ✗  No wire log found at {wire_path}")
        return

    with open(wire_path) as f:
        all_lines = f.readlines()
    for line in all_lines[max(0, len(all_lines) - last_n):]:
        _print_line(line, kind_filter, raw)

    if not follow:
        return

    try:
        with open(wire_path) as f:
            f.seek(0, 2)
            while True:
                line = f.readline()
                if not line:
                    time.sleep(0.1)
                    continue
                _print_line(line, kind_filter, raw)
    except KeyboardInterrupt:
        if not raw:
            print(f"\n  {C_DIM}[tap closed]{C_RESET}")
