import argparse
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="relay", description="Relay chat channels to Claude Code sessions")
    parser.add_argument(
        "-w",
        "--work-dir",
        default=os.environ.get("WORK_DIR"),
        help="Root directory for per-channel folders and session state (default: $WORK_DIR or cwd)",
    )
    parser.add_argument(
        "-m",
        "--model",
        default=os.environ.get("CLAUDE_MODEL"),
        help="Model passed to claude --model (default: $CLAUDE_MODEL or the stored setting)",
    )
    parser.add_argument("--startup-timeout", type=float, default=None, help="Seconds to wait for the first event (default: 30)")
    parser.add_argument("--activity-timeout", type=float, default=None, help="Seconds of silence before a task is aborted (default: 300)")
    parser.add_argument("--send-timeout", type=float, default=None, help="WebSocket send timeout in seconds (default: 120)")
    parser.add_argument("--host", default="127.0.0.1", help="Host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8422, help="Port (default: 8422)")
    return parser


def main():
    # Existing environment variables win over .env entries.
    if load_dotenv(Path.cwd() / ".env", override=False):
        print("Loaded configuration from .env file")
    args = build_parser().parse_args()
    log = logging.getLogger("relay")
    log.setLevel(logging.DEBUG)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logging.INFO)
    handler.setFormatter(fmt)
    log.addHandler(handler)

    import uvicorn
    from .agents.claude import ClaudeClient
    from .server.app import create_app
    from .server.settings import SettingsStore

    work_dir = Path(args.work_dir).expanduser() if args.work_dir else Path.cwd()
    work_dir.mkdir(parents=True, exist_ok=True)
    settings = SettingsStore()
    app = create_app(
        work_dir=work_dir,
        client=ClaudeClient(executable=os.environ.get("CLAUDE_PATH") or "claude"),
        settings_store=settings,
        cli_overrides={
            "claude.model": args.model,
            "timeouts.startup": args.startup_timeout,
            "timeouts.activity": args.activity_timeout,
            "delivery.send_timeout": args.send_timeout,
        },
    )
    print(f"  Local:   http://localhost:{args.port}")
    print()
    log.info(
        "starting relay work_dir=%s model=%s claude=%s",
        work_dir,
        args.model or "default",
        os.environ.get("CLAUDE_PATH") or "claude",
    )
    uvicorn.run(app, host=args.host, port=args.port, log_level="warning", log_config=None)


if __name__ == "__main__":
    main()
