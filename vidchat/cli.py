#!/usr/bin/env python3
"""
vidchat CLI — talk to a video through two providers.

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    chat            talk            Interactive chat session
    ask             query           One-shot question (optionally with frames)
    relay           serve, proxy    Start the local relay server
    tap             log, tail       Live wiretap — watch the wire log
    info            status          Show config and provider status

Inside `chat`:
    /use primary|secondary|auto   pin a provider or go back to automatic
    /frames <file> [file ...]     ask about the video using key frames
    /clear                        start a fresh conversation
    /status                       show round and provider state
    /quit                         leave
"""

import argparse
import asyncio
import base64
import json
import mimetypes
import shlex
import sys
from pathlib import Path

from vidchat import __version__

DEFAULT_FRAMES_PROMPT = "Describe what happens in this video."


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def load_image(path: str) -> str:
    """Read an image file into a data URL."""
    mime = mimetypes.guess_type(path)[0] or "image/jpeg"
    data = base64.b64encode(Path(path).read_bytes()).decode("ascii")
    return f"data:{mime};base64,{data}"


def load_subtitles(path: str):
    """JSON list of {start, end, text} cues, times in seconds."""
    from vidchat.media import Subtitle

    cues = json.loads(Path(path).read_text(encoding="utf-8"))
    return [Subtitle(float(c["start"]), float(c["end"]), str(c["text"])) for c in cues]


def _build_orchestrator(args):
    from vidchat.config import get_config, load_config
    from vidchat.orchestrator import ConversationOrchestrator, OrchestratorContext
    from vidchat.relay import setup_logging

    cfg = load_config(Path(args.config)) if getattr(args, "config", None) else get_config()
    setup_logging(cfg)
    orch = ConversationOrchestrator(OrchestratorContext.from_config(cfg))
    orch.initialize()
    if getattr(args, "subtitles", None):
        orch.set_subtitles(load_subtitles(args.subtitles))
    return orch


def _printer():
    """
    on_chunk callback that writes deltas to stdout as they arrive.
    on_chunk.printed tells whether the current attempt's text is already on screen.
    """
    def on_chunk(chunk):
        if chunk.error:
            on_chunk.printed = False
            print(f"\n  [{chunk.error}; retrying on the other provider]\n  ", end="", flush=True)
        elif chunk.delta_text:
            on_chunk.printed = True
            print(chunk.delta_text, end="", flush=True)
    on_chunk.printed = False
    return on_chunk


def _print_result(turn, streamed: bool):
    if not streamed:
        print(turn.text, end="")
    notes = [turn.provider]
    if turn.failed_over:
        notes.append("failover")
    if turn.degraded:
        notes.append("text only")
    print(f"\n  ({', '.join(notes)}, {turn.latency_ms:.0f}ms)\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_chat(args):
    """Interactive chat session."""
    from vidchat.errors import VidChatError

    try:
        orch = _build_orchestrator(args)
        if args.provider:
            orch.pin_provider(args.provider)
    except VidChatError as e:
        print(f"  ✗  {e}")
        sys.exit(1)

    print(f"  vidchat {__version__}: /quit to leave, /use, /frames, /clear, /status")
    print()
    stream = not args.no_stream
    try:
        while True:
            try:
                line = input("  you> ").strip()
            except EOFError:
                break
            if not line:
                continue

            if line.startswith("/"):
                parts = shlex.split(line)
                command, rest = parts[0].lower(), parts[1:]
                if command in ("/quit", "/exit", "/q"):
                    break
                if command == "/clear":
                    orch.clear_history()
                    print("  [conversation cleared]")
                    continue
                if command == "/status":
                    for key, value in orch.status().items():
                        print(f"  {key:20} {value}")
                    continue
                if command == "/use":
                    target = rest[0] if rest else "auto"
                    try:
                        orch.pin_provider(None if target == "auto" else target)
                        print(f"  [provider: {target}]")
                    except (VidChatError, ValueError) as e:
                        print(f"  ✗  {e}")
                    continue
                if command == "/frames":
                    if not rest:
                        print("  usage: /frames <file> [file ...]")
                        continue
                    prompt = input("  prompt> ").strip() or DEFAULT_FRAMES_PROMPT
                    try:
                        frames = [load_image(p) for p in rest]
                    except OSError as e:
                        print(f"  ✗  {e}")
                        continue
                    printer = _printer()
                    _run_turn(orch.understand_video_frames(frames, prompt, on_chunk=printer, stream=stream), printer)
                    continue
                print(f"  unknown command: {command}")
                continue

            printer = _printer()
            _run_turn(orch.chat(line, on_chunk=printer, stream=stream), printer)
    except KeyboardInterrupt:
        pass
    finally:
        orch.close()
        print("\n  [session closed]")


def _run_turn(coro, printer):
    from vidchat.errors import VidChatError

    print("  ai>  ", end="", flush=True)
    try:
        turn = asyncio.run(coro)
    except KeyboardInterrupt:
        print("\n  [cancelled]\n")
        return
    except VidChatError as e:
        print(f"\n  ✗  {type(e).__name__}: {e}\n")
        return
    _print_result(turn, streamed=printer.printed)


def cmd_ask(args):
    """One-shot question."""
    from vidchat.errors import VidChatError
    from vidchat.media import MediaBundle

    question = " ".join(args.question)
    try:
        orch = _build_orchestrator(args)
        if args.provider:
            orch.pin_provider(args.provider)
        frames = [load_image(p) for p in args.frames or []]
        images = [load_image(p) for p in args.image or []]
    except (VidChatError, OSError) as e:
        print(f"  ✗  {e}")
        sys.exit(1)

    stream = not args.no_stream
    printer = _printer()
    if frames:
        coro = orch.understand_video_frames(frames, question, on_chunk=printer, stream=stream)
    else:
        coro = orch.send(MediaBundle(text=question, images=images), on_chunk=printer, stream=stream)

    try:
        turn = asyncio.run(coro)
    except VidChatError as e:
        print(f"\n  ✗  {type(e).__name__}: {e}")
        sys.exit(1)
    finally:
        orch.close()
    _print_result(turn, streamed=printer.printed)


def cmd_relay(args):
    """Start the local relay server."""
    import uvicorn
    from vidchat.config import get_config
    from vidchat.relay import setup_logging

    cfg = get_config()
    setup_logging(cfg)
    relay_cfg = cfg.get("relay", {})
    host = args.host or relay_cfg.get("host", "127.0.0.1")
    port = args.port or relay_cfg.get("port", 8767)

    print(f"  Relay listening on {host}:{port}")
    print(f"  Allowed hosts: {', '.join(relay_cfg.get('allowed_hosts') or []) or 'any'}")
    print()

    uvicorn.run(
        "vidchat.relay:create_app",
        factory=True,
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def cmd_tap(args):
    """Tail the wire log."""
    from vidchat.wiretap import live_tap
    live_tap(
        log_path=args.log,
        follow=not args.no_follow,
        last_n=args.last,
        kind_filter=args.kind,
        raw=args.raw,
    )


def cmd_info(args):
    """Show config and whether each provider initializes."""
    from vidchat.backends import ADAPTERS
    from vidchat.config import get_config, load_config

    cfg = load_config(Path(args.config)) if args.config else get_config()
    conv = cfg.get("conversation", {})
    relay_cfg = cfg.get("relay", {})

    print(f"  vidchat {__version__}")
    print()
    print("  Providers")
    for tag, adapter_cls in ADAPTERS.items():
        p_cfg = cfg.get("providers", {}).get(tag, {})
        adapter = adapter_cls(
            name=tag,
            url=p_cfg.get("url", ""),
            api_key=p_cfg.get("api_key", ""),
            model=p_cfg.get("model", ""),
        )
        ready = "ready" if adapter.initialize() else "not configured"
        print(f"  ├─ {tag:10} {adapter.model or '?':28} {ready}")
        print(f"  │  {'':10} {adapter.url}")
    print()
    print("  Conversation")
    print(f"  ├─ Streaming:        {conv.get('stream', True)}")
    print(f"  ├─ Round switching:  {conv.get('auto_switch_by_round', True)}")
    print(f"  ├─ Auto failover:    {conv.get('auto_failover', True)}")
    print(f"  ├─ Failure limit:    {conv.get('secondary_failure_limit', 2)}")
    print(f"  └─ Turn timeout:     {conv.get('turn_timeout') or 'none'}")
    print()
    print(f"  Relay:   {'enabled → ' + relay_cfg.get('url', '') if relay_cfg.get('enabled') else 'disabled'}")
    print(f"  Wiretap: {cfg.get('wiretap', {}).get('path') if cfg.get('wiretap', {}).get('enabled') else 'disabled'}")


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under its name and aliases."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vidchat",
        description="vidchat — video-understanding chat with provider failover.",
        epilog="Run 'vidchat <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"vidchat {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_session(p):
        p.add_argument("--config", "-c", default=None, help="Path to config.yaml")
        p.add_argument("--provider", "-p", choices=["primary", "secondary"], default=None,
                       help="Pin a provider instead of automatic selection")
        p.add_argument("--subtitles", "-s", default=None, help="JSON file of {start, end, text} cues")
        p.add_argument("--no-stream", action="store_true", help="Wait for the full answer")

    _add_command(sub, ["chat", "talk"], "Interactive chat session", cmd_chat, setup_session)

    def setup_ask(p):
        setup_session(p)
        p.add_argument("question", nargs="+", help="Question to ask")
        p.add_argument("--frames", "-f", nargs="+", default=None,
                       help="Key frame images standing in for the video (at least 4)")
        p.add_argument("--image", "-i", action="append", default=None, help="Attach an image")

    _add_command(sub, ["ask", "query"], "One-shot question", cmd_ask, setup_ask)

    def setup_relay(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["relay", "serve", "proxy"], "Start the local relay server", cmd_relay, setup_relay)

    def setup_tap(p):
        p.add_argument("--log", default=None, help="Path to wire.jsonl (default: from config)")
        p.add_argument("--last", "-n", type=int, default=20, help="Show last N entries before following")
        p.add_argument("--kind", "-k", choices=["request", "response", "route", "error"], default=None,
                       help="Filter by entry kind")
        p.add_argument("--no-follow", action="store_true", help="Don't follow, just show last entries")
        p.add_argument("--raw", action="store_true", help="Raw JSONL output, no formatting")

    _add_command(sub, ["tap", "log", "tail"], "Live wiretap — watch the wire log", cmd_tap, setup_tap)

    def setup_info(p):
        p.add_argument("--config", "-c", default=None, help="Path to config.yaml")

    _add_command(sub, ["info", "status"], "Show config and provider status", cmd_info, setup_info)
    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
