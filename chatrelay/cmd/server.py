from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from chatrelay.server.runtime import RelayRuntime

log = logging.getLogger("chatrelay.cmd.server")


def load_config(config_path: Optional[Path], env: Mapping[str, str] = os.environ) -> Dict[str, Any]:
    """Read the YAML config and apply ``PORT`` / ``BACKEND_URL`` overrides."""

    config: Dict[str, Any] = {}
    if config_path is not None:
        config = yaml.safe_load(config_path.read_text()) or {}
    if env.get("PORT"):
        host = str(config.get("listen", "0.0.0.0:8080")).rsplit(":", 1)[0]
        config["listen"] = f"{host}:{int(env['PORT'])}"
    if env.get("BACKEND_URL"):
        config["backend_url"] = env["BACKEND_URL"]
    return config


async def _run(config: Dict[str, Any]) -> None:
    runtime = RelayRuntime(config)
    await runtime.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except NotImplementedError:
        pass

    log.info("Relay running. Press Ctrl+C to stop.")
    try:
        await stop_event.wait()
    finally:
        await runtime.stop()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Chat relay between WebSocket clients and the backend of record")
    parser.add_argument("--config", type=Path, help="Path to relay YAML config")
    parser.add_argument("--log-level", help="Override log_level from the config")
    args = parser.parse_args(argv)

    if args.config is not None and not args.config.is_file():
        parser.error(f"config file not found: {args.config}")
    config = load_config(args.config)

    level = (args.log_level or config.get("log_level") or "INFO").upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    asyncio.run(_run(config))


if __name__ == "__main__":
    main()
