import logging

import pytest


@pytest.fixture(autouse=True)
def _reset_cfc_logger():
    """Drop handlers bound to a previous test's (now closed) captured stdout."""
    logger = logging.getLogger("cfc")
    saved = list(logger.handlers)
    for handler in saved:
        logger.removeHandler(handler)
    yield
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        if isinstance(handler, logging.FileHandler):
            handler.close()
    for handler in saved:
        logger.addHandler(handler)
