from __future__ import annotations

import logging

from stereocalib.logging_utils import setup_logging


def test_setup_logging_replaces_handlers_and_writes_file(tmp_path):
    log_file = tmp_path / "logs" / "run.log"
    setup_logging()
    logger = setup_logging(debug=True, log_file=log_file)
    assert logger.name == "stereocalib"
    assert logger.level == logging.DEBUG
    assert len(logger.handlers) == 2

    logging.getLogger("stereocalib.core.levenberg_marquardt").debug("iteration %d", 7)
    for handler in logger.handlers:
        handler.flush()
    assert "stereocalib.core.levenberg_marquardt - DEBUG - iteration 7" in log_file.read_text(encoding="utf-8")

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()


def test_setup_logging_closes_replaced_file_handler(tmp_path):
    logger = setup_logging(log_file=tmp_path / "first.log")
    first = next(h for h in logger.handlers if isinstance(h, logging.FileHandler))
    logger.info("opened")
    assert first.stream is not None

    logger = setup_logging(log_file=tmp_path / "second.log")
    assert first not in logger.handlers
    assert first.stream is None

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()
