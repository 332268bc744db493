import argparse
import asyncio
import json
import logging
import os
from typing import Any, Dict

from aiohttp import web

from . import crypto
from .auth import issue_token
from .client import ApiClient, CallClient, IncomingCallPoller
from .config import Settings
from .errors import ParleyError
from .keystore import identity_path, load_or_create_identity
from .server import create_app

"""
run.py — single entry point for the parley server and a small test client.

What you can do here:
- server:   run the HTTP API (key exchange + call signaling)
- token:    mint a bearer token for a user id (dev / scripting)
- keygen:   create or load a user's identity key and print its public half
- cli:      one-shot call commands against a running server, plus `watch`
            to sit on the incoming-call poll loop

"""

logger = logging.getLogger("parley")


# -------------------------
# Process runners (thin wrappers)
# -------------------------

def run_server(settings: Settings) -> None:
    """Build the app and serve forever on settings.host:settings.port."""
    app = create_app(settings)
    logger.info("parley listening on %s:%s", settings.host, settings.port)
    web.run_app(app, host=settings.host, port=settings.port, print=None)


def _show(obj: Any) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True))


async def run_cli(args: argparse.Namespace, settings: Settings) -> None:
    """
    Minimal CLI client for quick testing:
      - initiate:  ring someone (--to bob --type video)
      - incoming:  list calls ringing for us right now
      - accept / reject / end / status CALL_ID
      - watch:     poll for incoming calls until Ctrl-C
    """
    if not args.token:
        raise SystemExit("--token (or PARLEY_TOKEN) is required for cli mode")

    async with ApiClient(args.url, args.token) as api:
        calls = CallClient(api)

        if args.command == "initiate":
            _show(await calls.initiate(args.to, args.type))

        elif args.command == "incoming":
            _show(await calls.incoming())

        elif args.command == "accept":
            _show(await calls.accept(args.call_id))

        elif args.command == "reject":
            await calls.reject(args.call_id)
            print(f"Rejected {args.call_id}")

        elif args.command == "end":
            await calls.end(args.call_id)
            print(f"Ended {args.call_id}")

        elif args.command == "status":
            _show(await calls.status(args.call_id))

        elif args.command == "watch":
            def announce(call: Dict[str, Any]) -> None:
                print(f"[INCOMING] {call.get('callType')} call from {call.get('callerId')} id={call.get('callId')}")

            poller = IncomingCallPoller(calls, announce, interval=settings.poll_interval)
            poller.start()
            try:
                await asyncio.Event().wait()
            finally:
                await poller.stop()

        else:
            raise SystemExit("cli mode needs a command (initiate, incoming, accept, reject, end, status, watch)")


# -------------------------
# Argument parsing
# -------------------------

def parse_args(argv=None) -> argparse.Namespace:
    """
    Parse modes and subcommands.

    Quick examples:
      Server:   python -m parley.run --mode server --port 8080
      Token:    python -m parley.run --mode token --id alice
      Keygen:   python -m parley.run --mode keygen --id alice
      Call:     python -m parley.run --mode cli --token T initiate --to bob --type audio
      Watch:    python -m parley.run --mode cli --token T watch
    """
    p = argparse.ArgumentParser(prog="parley")
    p.add_argument("--mode", choices=["server", "token", "keygen", "cli"], required=True)
    p.add_argument("--host")
    p.add_argument("--port", type=int)
    p.add_argument("--id", dest="ident")
    p.add_argument("--url", default="http://127.0.0.1:8080")
    p.add_argument("--token")
    p.add_argument("--log-level")

    sub = p.add_subparsers(dest="command")
    sub.required = False

    sp = sub.add_parser("initiate")
    sp.add_argument("--to", required=True)
    sp.add_argument("--type", choices=["video", "audio"], default="video")

    sub.add_parser("incoming")
    sub.add_parser("watch")

    for name in ("accept", "reject", "end", "status"):
        sp = sub.add_parser(name)
        sp.add_argument("call_id")

    return p.parse_args(argv)


# -------------------------
# Main entrypoint
# -------------------------

def main(argv=None) -> None:
    """Dispatch into the chosen mode; keep top-level code very small."""
    args = parse_args(argv)
    settings = Settings.from_env()
    if args.host:
        settings.host = args.host
    if args.port:
        settings.port = args.port
    if args.log_level:
        settings.log_level = args.log_level.upper()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.mode == "server":
        run_server(settings)

    elif args.mode == "token":
        if not args.ident:
            raise SystemExit("--id is required for token mode")
        settings.warn_if_insecure()
        print(issue_token(args.ident, settings.secret_key))

    elif args.mode == "keygen":
        if not args.ident:
            raise SystemExit("--id is required for keygen mode")
        priv = load_or_create_identity(identity_path(args.ident, settings.home))
        print(crypto.export_public_key(priv.public_key()))

    elif args.mode == "cli":
        args.token = args.token or os.environ.get("PARLEY_TOKEN")
        try:
            asyncio.run(run_cli(args, settings))
        except KeyboardInterrupt:
            pass
        except ParleyError as exc:
            raise SystemExit(f"{exc.kind}: {exc}")


if __name__ == "__main__":
    main()
