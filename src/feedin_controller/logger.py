import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Library loggers that are too chatty at INFO/DEBUG
QUIET_LOGGERS = ("aiohttp.access", "pymodbus", "aioesphomeapi.connection")


def setup_logger(debug_level: str = "INFO") -> None:
    log_level = getattr(logging, debug_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    if not root_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.info("Logger configured with level %s", debug_level.upper())
