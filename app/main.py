# app/main.py
import logging
import os
import pathlib

from dotenv import load_dotenv

from app.utils.shortname import ShortNameFilter

# Automatically load .env from project root
load_dotenv(dotenv_path=pathlib.Path(__file__).parent.parent / ".env")

log = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="[%(levelname)s] %(shortname)s: %(message)s",
    )
    for handler in logging.getLogger().handlers:
        handler.addFilter(ShortNameFilter())


def main():
    configure_logging()
    from app.sources.volume_pipeline.cli import app
    app()


if __name__ == "__main__":
    main()
