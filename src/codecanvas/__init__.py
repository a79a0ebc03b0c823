# CodeCanvas package init
import logging
import os


def _configure_logging() -> None:
    level_name = (os.getenv("CODECANVAS_LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("codecanvas")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[CODECANVAS][%(levelname)s] %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(level)

    build_level_name = (os.getenv("CODECANVAS_BUILD_LOG_LEVEL") or level_name).upper()
    build_level = getattr(logging, build_level_name, level)
    logging.getLogger("codecanvas.bundler").setLevel(build_level)
    logging.getLogger("codecanvas.installer").setLevel(build_level)


_configure_logging()
