#!/usr/bin/env python3
"""
Switchboard CLI — patch the model through to your tool servers.

Every command has an operator name and a standard alias:

    OPERATOR        STANDARD        WHAT IT DOES
    --------        --------        ----------------------------------
    patch           chat            Interactive agentic chat
    jacks           servers, ls     List, add or remove tool servers
    login           auth            Authorize a server over OAuth
    tap             log, tail       Live wiretap of run events
    dump            export          Export conversations to JSON
    tone            banner          Print the Switchboard banner
"""

import argparse
import asyncio
import contextlib
import logging
import signal
import sys

from switchboard import __version__

BANNER = r"""
    ╔══════════════════════════════════════════════════╗
    ║                                                  ║
    ║   ╔═╗ ╦ ╦ ╦ ╔╦╗ ╔═╗ ╦ ╦ ╔╗  ╔═╗ ╔═╗ ╦═╗ ╔╦╗       ║
    ║   ╚═╗ ║║║ ║  ║  ║   ╠═╣ ╠╩╗ ║ ║ ╠═╣ ╠╦╝  ║║       ║
    ║   ╚═╝ ╚╩╝ ╩  ╩  ╚═╝ ╩ ╩ ╚═╝ ╚═╝ ╩ ╩ ╩╚═ ═╩╝       ║
    ║                                                  ║
    ║   Patch the model through.            v""" + __version__ + r"""    ║
    ║                                                  ║
    ╚══════════════════════════════════════════════════╝
"""

C_RESET = "\033[0m"
C_DIM = "\033[2m"
C_ASSISTANT = "\033[93m"
C_TOOL = "\033[92m"
C_SERVER = "\033[95m"
C_ERROR = "\033[91m"


def setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        from pathlib import Path
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def _open_store(cfg: dict):
    from switchboard.storage.sqlite_store import SQLiteStore
    return SQLiteStore(cfg.get("storage", {}).get("sqlite_path", "./data/switchboard.db"))


def _all_servers(cfg: dict, store) -> list:
    """Stored servers first, then config-file servers not already stored."""
    from switchboard.models import ToolServer

    servers = store.list_servers()
    known = {s.id for s in servers}
    for entry in cfg.get("mcp", {}).get("servers") or []:
        server = ToolServer.from_config(entry)
        if server.id not in known:
            server.tokens = store.load_tokens(server.id)
            servers.append(server)
    return servers


def _token_manager(cfg: dict, store):
    from switchboard.auth.oauth import TokenLifecycleManager

    oauth_cfg = cfg.get("oauth", {})
    return TokenLifecycleManager(
        store=store,
        client_id=oauth_cfg.get("client_id", "switchboard"),
        redirect_uri=oauth_cfg.get("redirect_uri", "http://127.0.0.1:8765/oauth/callback"),
    )


async def _ask(prompt: str) -> str:
    return (await asyncio.to_thread(input, prompt)).strip()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_patch(args):
    """Interactive agentic chat."""
    from switchboard.config import get_config

    cfg = get_config()
    setup_logging(cfg)
    print(BANNER)
    try:
        asyncio.run(_patch(cfg, args))
    except KeyboardInterrupt:
        print("\n  [line disconnected]")


def _print_event(event):
    from switchboard.events import EventType

    t = event.type
    if t is EventType.CONTENT_DELTA:
        print(f"{C_ASSISTANT}{event['text']}{C_RESET}", end="", flush=True)
    elif t is EventType.REASONING_DELTA:
        print(f"{C_DIM}{event['text']}{C_RESET}", end="", flush=True)
    elif t is EventType.MESSAGE_FINALIZED:
        print()
    elif t is EventType.TOOL_CALL_STARTED:
        print(f"  {C_TOOL}⚡ {event['name']}{C_RESET} {C_DIM}{event['arguments']}{C_RESET}")
    elif t is EventType.TOOL_CALL_FINISHED:
        mark = f"{C_ERROR}✗{C_RESET}" if event["is_error"] else f"{C_TOOL}✓{C_RESET}"
        print(f"  {mark} {event['name']} {C_DIM}({event['latency_ms']}ms){C_RESET}")
    elif t is EventType.NOTIFICATION_FLUSHED:
        print(f"  {C_SERVER}☎ {event['server_name']}: {event['method']}{C_RESET}")
    elif t is EventType.AUTH_REQUIRED:
        print(f"  {C_ERROR}✗ {event['server_name']} needs authorization: switchboard login {event['server_id']}{C_RESET}")
    elif t is EventType.RUN_MAX_ITERATIONS:
        print(f"  {C_DIM}[iteration cap reached, /continue to keep going]{C_RESET}")
    elif t is EventType.RUN_CANCELLED:
        print(f"  {C_DIM}[cancelled]{C_RESET}")
    elif t is EventType.RUN_ERROR:
        print(f"  {C_ERROR}✗ {event['error']}{C_RESET}")


async def _answer_sampling(session, event):
    from switchboard.agents.sampling import SamplingDecision

    params = event["params"]
    print(f"\n  {C_SERVER}☎ {event['server_name']} wants a completion:{C_RESET}")
    for m in params.get("messages") or []:
        content = m.get("content")
        text = content.get("text", "") if isinstance(content, dict) else content
        print(f"      {m.get('role', '?')}: {text}")
    answer = await _ask("  approve? [y/N] ")
    decision = SamplingDecision.approve() if answer.lower() in ("y", "yes") else SamplingDecision.reject()
    session.resolve_sampling(event["key"], decision)


async def _answer_elicitation(session, event):
    from switchboard.mcp.elicitation import ElicitationRequest, ElicitationResponse

    print(f"\n  {C_SERVER}☎ {event['server_name']} asks: {event['message']}{C_RESET}")
    if event["url"]:
        print(f"      open: {event['url']}")
        answer = await _ask("  done? [y/N/c] ")
        if answer.lower() in ("y", "yes"):
            session.resolve_elicitation(event["key"], ElicitationResponse.accept())
        elif answer.lower() == "c":
            session.resolve_elicitation(event["key"], ElicitationResponse.cancel())
        else:
            session.resolve_elicitation(event["key"], ElicitationResponse.decline())
        return

    form = ElicitationRequest.from_params(event["request_id"], {
        "message": event["message"],
        "requestedSchema": event["requested_schema"],
    }).form()
    while True:
        values = form.defaults()
        for f in form.fields:
            hint = f" [{f.default}]" if f.default is not None else ""
            raw = await _ask(f"  {f.label}{hint}: ")
            if raw == "":
                continue
            values[f.name] = f.coerce(raw)
        answer = await _ask("  send? [Y/n/c] ")
        if answer.lower() in ("n", "no"):
            session.resolve_elicitation(event["key"], ElicitationResponse.decline())
            return
        if answer.lower() == "c":
            session.resolve_elicitation(event["key"], ElicitationResponse.cancel())
            return
        try:
            session.resolve_elicitation(event["key"], ElicitationResponse.accept(values))
            return
        except ValueError as e:
            for name, error in e.args[0].items():
                print(f"  {C_ERROR}✗ {name}: {error}{C_RESET}")


async def _patch(cfg: dict, args):
    from switchboard.backends import create_backend
    from switchboard.events import EventType
    from switchboard.models import Conversation
    from switchboard.session import ChatSession
    from switchboard.wiretap import WireLog

    store = _open_store(cfg)
    tokens = _token_manager(cfg, store)
    backend = create_backend(cfg.get("backend", {}))

    conversation = None
    if args.conversation:
        conversation = store.load_conversation(args.conversation)
        if conversation is None:
            print(f"  ✗  No conversation {args.conversation}")
            return
    if conversation is None:
        conversation = Conversation(
            model=args.model or cfg.get("backend", {}).get("default_model", ""),
            server_ids=args.server or [],
        )

    session = ChatSession(conversation, _all_servers(cfg, store), backend, store=store, token_manager=tokens, cfg=cfg)
    session.events.add_listener(_print_event)

    wire_cfg = cfg.get("wiretap", {})
    wire = None
    if wire_cfg.get("enabled", True):
        wire = WireLog(wire_cfg.get("path", "./data/wire.jsonl"), conversation.id)
        session.events.add_listener(wire.record)

    background: set[asyncio.Task] = set()

    def on_pending(event):
        if event.type is EventType.SAMPLING_REQUEST_PENDING:
            task = asyncio.get_running_loop().create_task(_answer_sampling(session, event))
        elif event.type is EventType.ELICITATION_REQUEST_PENDING:
            task = asyncio.get_running_loop().create_task(_answer_elicitation(session, event))
        else:
            return
        background.add(task)
        task.add_done_callback(background.discard)

    session.events.add_listener(on_pending)

    print(f"  Conversation {conversation.id[:16]}  model: {conversation.model}")
    outcomes = await session.connect()
    for server_id, error in outcomes.items():
        status = "✓" if error is None else f"✗ {error}"
        print(f"  {status}  {server_id}")
    print(f"  {len(session.router.tools())} tools on the board. Type 'exit' to hang up.\n")

    loop = asyncio.get_running_loop()
    try:
        while True:
            try:
                text = await _ask("  > ")
            except EOFError:
                break
            if not text:
                continue
            if text.lower() in ("exit", "quit", "q", "hangup"):
                break
            if text.startswith("/"):
                await _slash(session, text)
                continue

            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(signal.SIGINT, session.cancel)
            try:
                await session.send(text)
            finally:
                with contextlib.suppress(NotImplementedError):
                    loop.remove_signal_handler(signal.SIGINT)
            print()
    finally:
        await session.close()
        await tokens.close()
        if wire is not None:
            wire.close()
        print("  [line disconnected]")


async def _slash(session, text: str):
    parts = text[1:].split()
    command, rest = (parts[0], parts[1:]) if parts else ("", [])
    if command == "tools":
        for tool in session.router.tools():
            print(f"    ⚡ {tool.name}  {C_DIM}{tool.server_id}{C_RESET}  {tool.description[:60]}")
    elif command == "prompts":
        for server_id, client in session.router.clients.items():
            for prompt in await client.list_prompts():
                print(f"    ✎ {server_id} {prompt['name']}  {C_DIM}{prompt.get('description', '')}{C_RESET}")
    elif command == "prompt" and len(rest) >= 2:
        arguments = dict(a.split("=", 1) for a in rest[2:] if "=" in a)
        added = await session.apply_prompt(rest[0], rest[1], arguments)
        print(f"  ✓  {len(added)} prompt messages added")
    elif command == "continue":
        await session.resume()
    elif command == "reconnect" and rest:
        error = await session.reconnect(rest[0])
        print(f"  {'✓' if error is None else '✗ ' + str(error)}  {rest[0]}")
    else:
        print("  /tools  /prompts  /prompt <server> <name> [k=v ...]  /continue  /reconnect <server>")


def cmd_jacks(args):
    """List, add or remove tool servers."""
    from switchboard.config import get_config
    from switchboard.models import ToolServer

    cfg = get_config()
    store = _open_store(cfg)

    if args.action == "add":
        if not args.url:
            print("  ✗  --url is required")
            sys.exit(1)
        headers = dict(h.split("=", 1) for h in args.header or [] if "=" in h)
        server = ToolServer.from_config({
            "id": args.id,
            "name": args.name,
            "url": args.url,
            "headers": headers,
            "oauth_client_id": args.client_id,
            "oauth_scope": args.scope,
        })
        store.add_server(server)
        print(f"  ✓  Patched in {server.id} → {server.url}")
        return

    if args.action == "remove":
        if not args.id:
            print("  ✗  --id is required")
            sys.exit(1)
        if store.remove_server(args.id):
            print(f"  ✓  Unplugged {args.id}")
        else:
            print(f"  ✗  No server {args.id}")
        return

    servers = _all_servers(cfg, store)
    if not servers:
        print("  No servers. Add one: switchboard jacks add --url https://example.com/mcp")
        return
    for i, s in enumerate(servers):
        prefix = "└─" if i == len(servers) - 1 else "├─"
        state = "on " if s.enabled else "off"
        print(f"  {prefix} [{state}] {s.id:<20} {s.url}  {C_DIM}oauth: {s.oauth_status.value}{C_RESET}")


def cmd_login(args):
    """Authorize a tool server over OAuth with the loopback callback."""
    from switchboard.config import get_config

    cfg = get_config()
    setup_logging(cfg)
    try:
        asyncio.run(_login(cfg, args.server_id, args.timeout))
    except KeyboardInterrupt:
        print("\n  [line disconnected]")


async def _login(cfg: dict, server_id: str, timeout: float):
    from switchboard.auth.callback import start_callback_server
    from switchboard.errors import OAuthError

    store = _open_store(cfg)
    server = next((s for s in _all_servers(cfg, store) if s.id == server_id), None)
    if server is None:
        print(f"  ✗  No server {server_id}")
        return
    if store.get_server(server.id) is None:
        store.add_server(server)

    manager = _token_manager(cfg, store)
    oauth_cfg = cfg.get("oauth", {})
    receiver, serve_task = await start_callback_server(
        manager,
        host=oauth_cfg.get("callback_host", "127.0.0.1"),
        port=oauth_cfg.get("callback_port", 8765),
    )
    try:
        metadata = await manager.discover(server.url)
        if metadata is None:
            print(f"  ✓  {server.name} does not require authorization")
            return
        url, pending = await manager.begin_authorization(server, metadata)
        waiter = asyncio.create_task(manager.wait_for_callback(pending.state, timeout))
        print(f"  Open this URL to authorize {server.name}:\n\n      {url}\n")
        try:
            await waiter
        except OAuthError as e:
            print(f"  ✗  Authorization failed: {e}")
            return
        except asyncio.TimeoutError:
            print("  ✗  Timed out waiting for the callback")
            return
        print(f"  ✓  {server.name} authorized")
    except OAuthError as e:
        print(f"  ✗  {e}")
    finally:
        receiver.should_exit = True
        await serve_task
        await manager.close()


def cmd_tap(args):
    """Live wiretap — watch run events."""
    from switchboard.wiretap import live_tap
    live_tap(
        log_path=args.log,
        follow=not args.no_follow,
        last_n=args.last,
        channel_filter=args.channel,
        raw=args.raw,
    )


def cmd_dump(args):
    """Export conversations to JSON."""
    import json
    from switchboard.config import get_config

    cfg = get_config()
    store = _open_store(cfg)
    data = store.export_all_json()
    indent = 2 if args.pretty else None
    with open(args.output, "w") as f:
        json.dump(data, f, indent=indent, ensure_ascii=False)
    print(f"  📦 Dumped {len(data)} conversations to {args.output}")


def cmd_tone(args):
    """Print the banner."""
    print(BANNER)


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names (operator + standard)."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="switchboard",
        description="Switchboard — patch the model through to your tool servers.",
        epilog=(
            "Each command has an operator name and standard aliases.\n"
            "Example: 'switchboard patch' and 'switchboard chat' do the same thing.\n"
            "Run 'switchboard <command> --help' for command-specific options."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"switchboard {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    # patch / chat
    def setup_patch(p):
        p.add_argument("--model", "-m", default=None, help="Model id (default: from config)")
        p.add_argument("--conversation", "-c", default=None, help="Resume a stored conversation")
        p.add_argument("--server", "-s", action="append", default=None,
                       help="Limit to this server id (can specify multiple times)")

    _add_command(sub, ["patch", "chat"], "Interactive agentic chat", cmd_patch, setup_patch)

    # jacks / servers / ls
    def setup_jacks(p):
        p.add_argument("action", nargs="?", choices=["list", "add", "remove"], default="list")
        p.add_argument("--id", default=None, help="Server id (default: name)")
        p.add_argument("--name", default=None, help="Display name (default: url)")
        p.add_argument("--url", default=None, help="Tool server endpoint")
        p.add_argument("--header", action="append", default=None, help="Static header KEY=VALUE")
        p.add_argument("--client-id", default=None, help="OAuth client id for this server")
        p.add_argument("--scope", default=None, help="OAuth scope to request")

    _add_command(sub, ["jacks", "servers", "ls"], "List, add or remove tool servers", cmd_jacks, setup_jacks)

    # login / auth
    def setup_login(p):
        p.add_argument("server_id", help="Server to authorize")
        p.add_argument("--timeout", type=float, default=600, help="Seconds to wait for the callback")

    _add_command(sub, ["login", "auth"], "Authorize a tool server over OAuth", cmd_login, setup_login)

    # tap / log / tail
    def setup_tap(p):
        p.add_argument("--log", default=None, help="Path to wire.jsonl (default: from config)")
        p.add_argument("--last", "-n", type=int, default=20, help="Show last N entries before following")
        p.add_argument("--channel", "-r", choices=["assistant", "tool", "server", "run", "error"],
                       default=None, help="Filter by channel")
        p.add_argument("--no-follow", action="store_true", help="Don't follow, just show last entries")
        p.add_argument("--raw", action="store_true", help="Raw JSONL output, no formatting")

    _add_command(sub, ["tap", "log", "tail"], "Live wiretap — watch run events", cmd_tap, setup_tap)

    # dump / export
    def setup_dump(p):
        p.add_argument("--output", "-o", default="conversations_export.json", help="Output file")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON")

    _add_command(sub, ["dump", "export"], "Export conversations to JSON", cmd_dump, setup_dump)

    # tone / banner
    _add_command(sub, ["tone", "banner"], "Print the Switchboard banner", cmd_tone)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        cmd_tone(args)
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
