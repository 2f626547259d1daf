"""Tests for the command-line entry point."""

import pytest

from crypto_tracker_indexer import __version__
from crypto_tracker_indexer.__main__ import main


def test_missing_configuration_exits_with_2(clean_env: pytest.MonkeyPatch) -> None:
    assert main([]) == 2


def test_version(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc_info:
        main(["--version"])

    assert exc_info.value.code == 0
    assert __version__ in capsys.readouterr().out
