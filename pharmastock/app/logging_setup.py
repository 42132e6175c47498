from __future__ import annotations

import logging
import logging.handlers

from pharmastock.app.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def setup_logging(settings: Settings) -> None:
    """Logging racine : console + fichier rotatif optionnel (PHARMASTOCK_LOG_FILE)."""
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    fmt = logging.Formatter(LOG_FORMAT)
    root = logging.getLogger()
    root.setLevel(level)

    # évite les handlers en double (reload uvicorn, appels répétés)
    if not any(getattr(h, "_pharmastock", False) for h in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(fmt)
        console._pharmastock = True
        root.addHandler(console)

        if settings.log_file is not None:
            log_path = settings.log_file.expanduser()
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.handlers.RotatingFileHandler(
                log_path, maxBytes=5_000_000, backupCount=3, encoding="utf-8"
            )
            handler.setFormatter(fmt)
            handler._pharmastock = True
            root.addHandler(handler)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        logging.getLogger(name).setLevel(level)

    # SQL trop bavard hors debug
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING if level > logging.DEBUG else logging.INFO)
