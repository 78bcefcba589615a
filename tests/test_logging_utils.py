import logging
from pathlib import Path

import pytest

from bootimage.logging_utils import CONSOLE_HANDLER, FILE_HANDLER, configure_logging


@pytest.fixture
def root_logger():
    root = logging.getLogger()
    saved = list(root.handlers)
    level = root.level
    for h in saved:
        root.removeHandler(h)
    yield root
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()
    for h in saved:
        root.addHandler(h)
    root.setLevel(level)


def named(root, name):
    return [h for h in root.handlers if h.get_name() == name]


def test_repeated_setup_keeps_one_handler_each(tmp_path: Path, root_logger):
    log = tmp_path / "target" / "bootimage.log"

    assert configure_logging(str(log)) == str(log)
    configure_logging(str(log), level=logging.DEBUG)

    assert len(named(root_logger, FILE_HANDLER)) == 1
    assert len(named(root_logger, CONSOLE_HANDLER)) == 1
    assert root_logger.level == logging.DEBUG

    logging.getLogger("bootimage.test").info("hello")
    assert "hello" in log.read_text()


def test_new_path_moves_the_file_handler(tmp_path: Path, root_logger):
    first, second = tmp_path / "a.log", tmp_path / "b" / "b.log"
    configure_logging(str(first), also_console=False)

    assert configure_logging(str(second), also_console=False) == str(second)

    logging.getLogger("bootimage.test").info("second run")
    assert "second run" in second.read_text()
    assert "second run" not in first.read_text()
    assert len(named(root_logger, FILE_HANDLER)) == 1
    assert named(root_logger, CONSOLE_HANDLER) == []
