"""Tests for the command line entry point."""

import io

import pytest

from leaklab import cli
from leaklab.detector import detector


class TestCli:
    def test_list(self, capsys) -> None:
        assert cli.main(["list"]) == 0
        out = capsys.readouterr().out
        assert " 1  static-collection" in out
        assert " -  weak-cache" in out

    def test_run_known_demo(self, capsys) -> None:
        detector.track("ExpensiveObject")
        assert cli.main(["run", "mutable-key"]) == 0
        out = capsys.readouterr().out
        assert "Set size before modification: 5" in out
        assert "Object counts:" in out
        assert "ExpensiveObject: " in out
        detector.untrack("ExpensiveObject")

    def test_run_unknown_demo(self, capsys) -> None:
        assert cli.main(["run", "nope"]) == 2
        err = capsys.readouterr().err
        assert "unknown demo: nope" in err
        assert "static-collection" in err

    def test_menu_is_default(self, monkeypatch, capsys) -> None:
        monkeypatch.setattr("sys.stdin", io.StringIO("0\n"))
        assert cli.main([]) == 0
        assert "Choose an example to run:" in capsys.readouterr().out

    def test_hold(self, monkeypatch) -> None:
        monkeypatch.setattr("sys.stdin", io.StringIO("exit\n"))
        assert cli.main(["hold"]) == 0

    def test_serve_passes_host_and_port(self, monkeypatch) -> None:
        seen = {}
        monkeypatch.setattr("uvicorn.run", lambda app, **kwargs: seen.update(app=app, **kwargs))
        assert cli.main(["serve", "--host", "0.0.0.0", "--port", "9000"]) == 0
        assert seen["app"] == "leaklab.main:app"
        assert seen["host"] == "0.0.0.0"
        assert seen["port"] == 9000

    def test_bad_arguments_exit(self) -> None:
        with pytest.raises(SystemExit):
            cli.main(["run"])
