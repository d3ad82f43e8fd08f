"""
CLI entry point for the assistant gateway.

Run:  python -m web [--port 3001] [--host 127.0.0.1]
"""

import argparse
import logging
import os

from config import ConfigError, GatewayConfig


def main():
    import uvicorn

    config = GatewayConfig()
    parser = argparse.ArgumentParser(description="Assistant gateway: browser terminal and chat over WebSockets")
    parser.add_argument("--port", type=int, default=config.port, help=f"Server port (default: {config.port})")
    parser.add_argument("--host", default=config.host, help=f"Server host (default: {config.host})")
    parser.add_argument("--projects-dir", default=config.projects_dir,
                        help="Assistant projects folder to watch for changes")
    parser.add_argument("--no-watch", action="store_true", help="Do not watch the projects folder")
    args = parser.parse_args()

    config.host = args.host
    config.port = args.port
    config.projects_dir = os.path.abspath(os.path.expanduser(args.projects_dir))
    if args.no_watch:
        config.watch_projects = False

    # Ensure our app logs are visible; uvicorn's log_level only affects its own loggers
    for name in ("web", "assistant_cli", "pty_backend"):
        log = logging.getLogger(name)
        log.setLevel(config.log_level.upper())
        if not log.handlers:
            h = logging.StreamHandler()
            h.setFormatter(logging.Formatter(f"%(asctime)s %(levelname)s [{name}] %(message)s"))
            log.addHandler(h)

    from web import create_app
    try:
        app = create_app(config)
    except ConfigError as e:
        print(f"\n  FATAL: {e}\n")
        raise SystemExit(1)

    print(f"\n  Assistant gateway")
    print(f"  http://{config.host}:{config.port}")
    print(f"  Shell: {config.shell_route}   Chat: {config.chat_route}")
    if config.watch_projects:
        print(f"  Watching: {config.projects_dir}")
    print()

    uvicorn.run(app, host=config.host, port=config.port, log_level="warning")


if __name__ == "__main__":
    main()
