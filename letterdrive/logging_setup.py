import logging

LOGGER_NAME = "letterdrive"


def configure_logging(level="INFO"):
    """Attach a console handler to the package logger, once."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Suppress harmless file_cache warning from google-api-python-client
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)

    if logger.handlers:
        return logger

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(
        logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    )
    logger.addHandler(console_handler)
    return logger
