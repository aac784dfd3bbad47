import logging
import time


def configure_logging(level='INFO'):
    """Root stream handler with UTC timestamps; replaces any existing handlers."""
    formatter = logging.Formatter('%(asctime)s %(name)s %(levelname)s: %(message)s')
    formatter.converter = time.gmtime

    root = logging.getLogger()
    root.setLevel(level)
    if root.handlers:
        root.handlers.clear()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    root.addHandler(handler)

    # httpx logs every request at INFO
    logging.getLogger('httpx').setLevel(logging.WARNING)
