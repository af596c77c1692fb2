"""codeagent command-line entry point."""
from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from codeagent.engine.config import EngineConfig

logger = logging.getLogger(__name__)


def configure_logging(config: EngineConfig) -> Path:
    """Route root logging to a rotating file under the data dir and stderr."""
    log_dir = config.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "codeagent.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="codeagent",
        description="Coding-agent session engine with an HTTP + SSE control API",
    )
    parser.add_argument(
        "--port", type=int, default=0,
        help="Server port (0=random available port)",
    )
    parser.add_argument(
        "--host", default="127.0.0.1",
        help="Interface to bind (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file for providers, models, agents and commands",
    )
    parser.add_argument(
        "--directory", metavar="DIR", default=None,
        help="Project directory (default: current directory)",
    )
    parser.add_argument(
        "--list", action="store_true",
        help="List sessions of the project and exit",
    )
    args = parser.parse_args()

    config = EngineConfig.from_env()
    if args.config:
        config.config_path = args.config
    directory = Path(args.directory or os.getcwd())

    from codeagent.engine.instance import ProjectContext

    log_file = configure_logging(config)
    if args.list:
        logger.info("listing sessions cwd=%s", directory)
        ctx = ProjectContext(directory, config=config)
        sessions = ctx.store.list()
        if not sessions:
            print("No sessions.")
        else:
            for info in sessions:
                print(f"  {info.id}  {info.title}")
        sys.exit(0)

    logger.info(
        "Starting codeagent server cwd=%s port=%s config=%s log=%s",
        directory,
        args.port,
        config.config_path or "<auto>",
        log_file,
    )

    from codeagent.server.server import CodeAgentServer

    ctx = ProjectContext(directory, config=config)
    server = CodeAgentServer(ctx, host=args.host, port=args.port)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
