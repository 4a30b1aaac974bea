"""Main entry point - wires the engine and serves the control API."""

import asyncio
import logging
import os
from pathlib import Path

import yaml
import uvicorn

from .engine import ConsoleEngine
from .server import create_app

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "CONSOLE_MANAGER_CONFIG"


def load_config(config_path: str = "config.yaml") -> dict:
    """Load configuration from YAML file."""
    path = Path(config_path).expanduser()

    if not path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


class ConsoleManagerApp:
    """Main application orchestrator."""

    def __init__(self, config: dict):
        self.config = config

        # Server config
        self.host = config.get("server", {}).get("host", "127.0.0.1")
        self.port = config.get("server", {}).get("port", 8430)

        self.engine = ConsoleEngine(config)
        self.app = create_app(engine=self.engine, config=config)

    async def start(self):
        """Start the engine and serve until shutdown."""
        logger.info("Starting Console Manager...")
        await self.engine.start()

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        server = uvicorn.Server(config)

        logger.info(f"Starting server on http://{self.host}:{self.port}")
        await server.serve()

    async def stop(self):
        """Stop all components."""
        logger.info("Stopping Console Manager...")
        await self.engine.stop()
        logger.info("Shutdown complete")


async def main():
    """Main entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    config = load_config(os.environ.get(CONFIG_ENV_VAR, "config.yaml"))

    app = ConsoleManagerApp(config)
    try:
        await app.start()
    finally:
        await app.stop()


def run():
    """Entry point for console script."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
