from logging.config import dictConfig

from ecommerce.config import settings


def configure_logging(service_name: str, level: str | None = None) -> None:
    """
    Install a console logging configuration for *service_name*.

    Called once from each application's lifespan before anything else
    logs, so every record carries the service that emitted it.
    """
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": f"%(asctime)s %(levelname)s [{service_name}] %(name)s: %(message)s",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                },
            },
            "root": {
                "handlers": ["console"],
                "level": (level or settings.LOG_LEVEL).upper(),
            },
            # Engine echo is driven by settings.DEBUG; keep it out of INFO logs.
            "loggers": {
                "sqlalchemy.engine": {"level": "WARNING"},
                "aio_pika": {"level": "WARNING"},
                "aiormq": {"level": "WARNING"},
            },
        }
    )
