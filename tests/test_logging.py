import logging

from nfce_tracker.logging import ROOT_NAME, get_logger, set_level


def test_loggers_share_the_package_handlers():
    log = get_logger("unit")
    assert log.name == f"{ROOT_NAME}.unit"
    assert log.handlers == []
    assert logging.getLogger(ROOT_NAME).handlers
    assert get_logger("unit") is log


def test_set_level_applies_to_every_logger():
    root = logging.getLogger(ROOT_NAME)
    previous = root.level
    try:
        set_level("debug")
        assert get_logger("a").isEnabledFor(logging.DEBUG)
        set_level("WARNING")
        assert not get_logger("b").isEnabledFor(logging.INFO)
        set_level("nonsense")
        assert root.level == logging.INFO
    finally:
        root.setLevel(previous)
