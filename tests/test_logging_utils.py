import logging

from aruco_localization.logging_utils import add_file_handler, setup_logger


def _cleanup(logger):
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def test_setup_logger_is_idempotent_and_accepts_level_names():
    logger = setup_logger("log-a", "debug")
    try:
        assert setup_logger("log-a", "debug") is logger
        assert len(logger.handlers) == 1
        assert logger.level == logging.DEBUG
    finally:
        _cleanup(logger)


def test_file_handler_prefixes_camera_id(tmp_path):
    logger = setup_logger("log-b")
    path = tmp_path / "cam.log"
    try:
        first = add_file_handler(logger, "log-b", str(path))
        assert add_file_handler(logger, "log-b", str(path)) is first
        logger.info("frame=%d markers=%d", 3, 1)
        first.flush()
    finally:
        _cleanup(logger)

    line = path.read_text().strip()
    assert line.endswith("INFO cam=log-b frame=3 markers=1")
