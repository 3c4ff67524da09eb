import logging.config


def configure_logging(level: str = "INFO"):
    """Send application and server logs to stdout with one format"""
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
            },
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
                "formatter": "default",
            },
        },
        "loggers": {
            "reconciler": {"handlers": ["stdout"], "level": level.upper(), "propagate": False},
        },
        "root": {"handlers": ["stdout"], "level": "WARNING"},
    })
