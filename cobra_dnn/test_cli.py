import logging

from cobra_dnn.cli import PARITY_TOLERANCE, backend_parity, check_installation, configure_logging


def test_backend_parity():
    assert backend_parity() <= PARITY_TOLERANCE


def test_check_installation(capsys):
    check_installation()
    output = capsys.readouterr().out
    assert "NumPy version:" in output
    assert "Worker threads:" in output
    assert "Backend parity: OK" in output
    assert "CuPy" in output or "GPU check failed" in output


def test_configure_logging_reads_level(monkeypatch):
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    monkeypatch.setenv('LOG_LEVEL', 'debug')
    try:
        root.handlers = []
        configure_logging()
        assert root.level == logging.DEBUG
    finally:
        for handler in root.handlers:
            if handler not in handlers:
                handler.close()
        root.handlers = handlers
        root.setLevel(level)


def test_configure_logging_unknown_level(monkeypatch):
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    monkeypatch.setenv('LOG_LEVEL', 'verbose')
    try:
        root.handlers = []
        configure_logging()
        assert root.level == logging.INFO
    finally:
        for handler in root.handlers:
            if handler not in handlers:
                handler.close()
        root.handlers = handlers
        root.setLevel(level)
