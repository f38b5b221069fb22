import logging

import notifiers.logging

from kubevalidator import config

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s - %(message)s"


def get_log_handlers(logger):
    """Forward warnings and errors to Telegram when a bot token is configured."""
    if config.TELEGRAM_TOKEN is None:
        return []
    handler = notifiers.logging.NotificationHandler(
        "telegram",
        defaults={
            "token": config.TELEGRAM_TOKEN,
            "chat_id": config.TELEGRAM_CHAT_ID,
        },
    )
    handler.setLevel(logging.WARNING)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    return [handler]


def configure_logging(*loggers: logging.Logger) -> None:
    logging.basicConfig(format=LOG_FORMAT, level=logging.INFO)
    logging.getLogger().setLevel(config.OVERRIDE_LOGGING)
    for logger in loggers:
        logger.setLevel(config.OVERRIDE_LOGGING)
        get_log_handlers(logger)
