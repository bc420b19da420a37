"""homedash entrypoint."""

from __future__ import annotations

import logging
import signal
import threading
from pathlib import Path

from dotenv import load_dotenv

from homedash.config import settings
from homedash.infrastructure.api import create_app
from homedash.infrastructure.api_server import ApiServer
from homedash.integrations.homeassistant.adapter import HomeAssistantBackend
from homedash.senses.clock import ClockSense
from homedash.senses.homeassistant import HomeAssistantSense
from homedash.services import build_services


def load_env() -> None:
    env_path = Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(env_path)


def main() -> None:
    load_env()
    log_level = settings.get_log_level()
    logging.basicConfig(level=getattr(logging, log_level, logging.INFO))

    services = build_services()
    loaded = services.evaluator.load_all()
    logging.info("Automations loaded enabled=%s", loaded)
    services.evaluator.start()

    clock = ClockSense(services.evaluator.submit)
    clock.start()
    ha_sense: HomeAssistantSense | None = None
    if isinstance(services.backend, HomeAssistantBackend):
        ha_sense = HomeAssistantSense(services.backend, services.evaluator.submit)
        ha_sense.start()

    api_server = ApiServer(create_app(services), host=settings.get_api_host(), port=settings.get_api_port())
    api_server.start()

    shutdown = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: shutdown.set())
    try:
        while not shutdown.wait(timeout=1.0):
            pass
    except KeyboardInterrupt:
        logging.info("Shutdown requested (KeyboardInterrupt).")
    finally:
        api_server.stop()
        clock.stop()
        if ha_sense:
            ha_sense.stop()
        services.close()


if __name__ == "__main__":
    main()
