import logging

FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str = "INFO"):
    """Install a console handler on the package logger (idempotent)."""
    root = logging.getLogger("dmchat")
    root.setLevel(level.upper())

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root.addHandler(console_handler)
    return root
