import logging

from rich.logging import RichHandler

HTTP_LOGGERS = ["httpx", "httpcore"]


def setup_logging(debug=False):
    """
    Configures logging for the tool based on the debug flag.
    In debug mode:
        - Sets up logging with DEBUG level for all loggers, including 'httpx' and 'httpcore'.
        - Uses a rich handler for enhanced log output formatting.
    In non-debug mode:
        - Sets up logging with INFO level for the tool only.
        - Restricts 'httpx' and 'httpcore' loggers to WARNING level to reduce verbosity.
    Secrets never reach these loggers: API parameters carrying credentials are
    redacted by the clients before they log a call.
    """

    logging.basicConfig(
        format="[ %(name)s ]: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[RichHandler()],
        force=True,
    )
    for logger_name in HTTP_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.DEBUG if debug else logging.WARNING)
