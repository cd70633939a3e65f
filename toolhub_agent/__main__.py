"""ToolHub device agent entry point.

Usage:
    python -m toolhub_agent [--config CONFIG_PATH]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path

from toolhub.watermark import BroadcastWatermark

from .agent import DeviceAgent
from .config import AgentConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = Path.home() / ".toolhub-agent" / "config.json"


async def _run_once(config: AgentConfig, watermark: BroadcastWatermark) -> bool:
    agent = DeviceAgent(config, watermark=watermark)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, agent.request_stop)
    return await agent.run()


def main() -> None:
    parser = argparse.ArgumentParser(description="ToolHub Device Agent")
    parser.add_argument(
        "--config", "-c",
        default=str(DEFAULT_CONFIG),
        help="Path to config.json (default: ~/.toolhub-agent/config.json)",
    )
    parser.add_argument("--server", default=None, help="ToolHub server URL (overrides config)")
    parser.add_argument("--store", default=None, help="Shared store URL (overrides config)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    config = AgentConfig.load(args.config)

    # Generate and persist the ID once so it stays stable.
    if not config.device_id:
        config.device_id = config.generate_id()
        config.save(args.config)
        logger.info("Generated device ID, saved to %s", args.config)

    if args.server:
        config.server_url = args.server
    if args.store:
        config.store_url = args.store

    # One watermark for every restart: the file may not be writable.
    watermark = BroadcastWatermark(config.watermark_path)
    try:
        while asyncio.run(_run_once(config, watermark)):
            logger.info("Restarting agent")
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
