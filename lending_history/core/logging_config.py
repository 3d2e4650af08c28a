import logging
import sys

def setup_logging(level: str = "INFO"):
    """Configure console logging for the history engine"""

    formatter = logging.Formatter(
        fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    # Replace handlers installed by an earlier call (reloads, tests)
    for handler in list(root_logger.handlers):
        if getattr(handler, "_lending_history", False):
            root_logger.removeHandler(handler)
    console_handler._lending_history = True
    root_logger.addHandler(console_handler)

    # Silence noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return root_logger
