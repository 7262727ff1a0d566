"""
llmws - command-line entry point.

  llmws ask "prompt" [--model M] [--session-file F] [--session-id ID]
  llmws scan [--timeout S] [--json] [URL ...]

``ask`` loads config.yaml, runs one call through :func:`run_llmws_agent`
and prints the reply.  ``scan`` probes LLMWS endpoints (the ones given, or
those in ``LLMWS_SERVERS`` / ``LLMWS_SERVER``) and prints what each serves.
"""

import argparse
import asyncio
import json
import logging
import logging.handlers
import os
import sys
import uuid
from pathlib import Path
from typing import Optional

import yaml

from llmws.backends import probe
from llmws.core import targets as target_resolver
from llmws.core.types import FailoverError
from llmws.runner import run_llmws_agent

CONFIG_FILE = Path("config.yaml")
LOG_DIR = Path("logs")
SESSIONS_DIR = Path("data") / "sessions"

logger = logging.getLogger("main")


# ---------------------------------------------------------------------------
# Configuration loading
# ---------------------------------------------------------------------------

def load_config(path: Path = CONFIG_FILE) -> dict:
    if not path.exists():
        print(f"ERROR: {path} not found. Copy config.yaml.example and fill in your settings.")
        sys.exit(1)
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def setup_logging(cfg: dict, log_dir: Path = LOG_DIR) -> None:
    log_dir.mkdir(parents=True, exist_ok=True)
    level_name = (cfg.get("logging") or {}).get("level", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = logging.Formatter(
        "%(asctime)s %(levelname)-8s %(name)-20s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    # Console goes to stderr so stdout carries only the reply / scan output.
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(fmt)
    console.setLevel(level)

    fh = logging.handlers.TimedRotatingFileHandler(
        log_dir / "llmws.log",
        when="midnight",
        backupCount=14,
        encoding="utf-8",
    )
    fh.setFormatter(fmt)
    fh.setLevel(logging.DEBUG)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.addHandler(console)
    root.addHandler(fh)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def cmd_ask(args: argparse.Namespace) -> int:
    cfg = load_config(Path(args.config))
    setup_logging(cfg)

    session_id = args.session_id or str(uuid.uuid4())
    session_file = Path(args.session_file) if args.session_file \
        else SESSIONS_DIR / f"{session_id}.jsonl"
    try:
        reply = await run_llmws_agent(
            prompt=args.prompt,
            session_id=session_id,
            session_file=session_file,
            workspace_dir=os.getcwd(),
            config=cfg,
            model=args.model,
            timeout=args.timeout,
            remote_session_id=args.remote_session_id,
        )
    except FailoverError as exc:
        print(f"ERROR [{exc.reason}]: {exc}", file=sys.stderr)
        return 1
    print(reply.text)
    logger.debug("Reply from %s (remote session %s)", reply.target, reply.session_id)
    return 0


async def cmd_scan(args: argparse.Namespace) -> int:
    setup_logging({"logging": {"level": "WARNING"}})
    if args.urls:
        urls = [target_resolver.to_ws_url(u) for u in args.urls]
    else:
        urls = [t.url for t in target_resolver.parse_env_targets(os.environ)]
    urls = [u for u in urls if u]
    if not urls:
        print("No endpoints given and LLMWS_SERVERS / LLMWS_SERVER are unset.",
              file=sys.stderr)
        return 2

    results = await probe.probe_targets(urls, timeout=args.timeout)
    if args.json:
        print(json.dumps([r.to_dict() for r in results], indent=2))
    else:
        print(probe.format_table(results))
    return 0 if any(r.reachable for r in results) else 1


def _positive_float(raw: str) -> float:
    value = float(raw)
    if value <= 0:
        raise argparse.ArgumentTypeError("must be positive")
    return value


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="llmws", description="LLMWS inference client")
    sub = p.add_subparsers(dest="command", required=True)

    ask = sub.add_parser("ask", help="send one prompt and print the reply")
    ask.add_argument("prompt")
    ask.add_argument("--config", default=str(CONFIG_FILE))
    ask.add_argument("--model", default=None)
    ask.add_argument("--session-file", default=None)
    ask.add_argument("--session-id", default=None)
    ask.add_argument("--remote-session-id", default=None)
    ask.add_argument("--timeout", type=_positive_float, default=120.0,
                     help="call timeout in seconds")
    ask.set_defaults(handler=cmd_ask)

    scan = sub.add_parser("scan", help="probe LLMWS endpoints")
    scan.add_argument("urls", nargs="*")
    scan.add_argument("--timeout", type=_positive_float, default=probe.DEFAULT_PROBE_TIMEOUT,
                      help="per-endpoint timeout in seconds")
    scan.add_argument("--json", action="store_true")
    scan.set_defaults(handler=cmd_scan)

    return p.parse_args(argv)


async def main(argv: Optional[list[str]] = None) -> int:
    args = _parse_args(argv)
    return await args.handler(args)


def run() -> None:
    """Entry point for the `llmws` console script."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
