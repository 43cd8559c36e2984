"""
Tests for command-line parsing and logging setup.

Run with:  pytest tests/test_cli.py -v
"""
import logging
import os

import pytest

import kaleido_miner
from kaleido_miner import main, setup_logging


class RecordingCoordinator:
    """Captures constructor arguments instead of mining"""

    instances = []

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        RecordingCoordinator.instances.append(self)

    async def run(self):
        return 0.0


@pytest.fixture(autouse=True)
def clean_logger():
    """Leave the module logger without handlers between tests"""
    def drop_handlers():
        for handler in list(kaleido_miner.logger.handlers):
            kaleido_miner.logger.removeHandler(handler)
            handler.close()

    drop_handlers()
    yield
    drop_handlers()


@pytest.fixture
def recorder(monkeypatch):
    RecordingCoordinator.instances = []
    monkeypatch.setattr(kaleido_miner, "MiningCoordinator", RecordingCoordinator)
    return RecordingCoordinator


class TestMain:

    def test_flags_reach_the_coordinator(self, tmp_path, recorder):
        log_file = os.path.join(str(tmp_path), "miner.log")
        argv = ["kaleido-miner",
                "--wallets-file", "my_wallets.txt",
                "--session-dir", str(tmp_path),
                "--log-file", log_file,
                "--api-base", "https://example.invalid/api",
                "--max-init-attempts", "4"]

        assert main(argv) == 0

        kwargs = recorder.instances[0].kwargs
        assert kwargs == {
            'wallets_file': "my_wallets.txt",
            'session_dir': str(tmp_path),
            'api_base': "https://example.invalid/api",
            'max_init_attempts': 4,
        }
        assert os.path.exists(log_file)

    def test_zero_init_attempts_means_unbounded(self, tmp_path, recorder):
        argv = ["kaleido-miner", "--log-file", os.path.join(str(tmp_path), "miner.log"),
                "--max-init-attempts", "0"]

        assert main(argv) == 0
        assert recorder.instances[0].kwargs['max_init_attempts'] is None

    @pytest.mark.parametrize("value", ["ten", "-1"])
    def test_bad_init_attempts_exit_with_error(self, recorder, capsys, value):
        assert main(["kaleido-miner", "--max-init-attempts", value]) == 1
        assert recorder.instances == []
        assert "--max-init-attempts" in capsys.readouterr().out


class TestSetupLogging:

    def test_second_call_adds_no_handlers(self, tmp_path):
        log_file = os.path.join(str(tmp_path), "miner.log")

        first = setup_logging(log_file)
        count = len(first.handlers)
        second = setup_logging(log_file)

        assert first is second
        assert count == 2
        assert len(second.handlers) == 2
        assert second.level == logging.INFO

    def test_file_gets_plain_lines(self, tmp_path):
        log_file = os.path.join(str(tmp_path), "miner.log")
        logger = setup_logging(log_file)

        logger.warning("[Wallet 1] Entering maintenance mode")
        for handler in logger.handlers:
            handler.flush()

        with open(log_file) as f:
            content = f.read()
        assert "WARNING - [Wallet 1] Entering maintenance mode" in content
        assert "\033[" not in content
