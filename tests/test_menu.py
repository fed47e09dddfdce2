"""Tests for the console menu and the hold loop."""

import io

import pytest

from leaklab.demos import Demo
from leaklab.menu import hold, run_menu
from leaklab.schemas import DemoReport


@pytest.fixture
def calls():
    return []


@pytest.fixture
def options(calls):
    def fake(emit, config=None):
        calls.append(config)
        emit("fake demo ran")
        return DemoReport(name="fake", title="Fake")

    return {"1": Demo("fake", "Fake Demo", fake, "1")}


def run(text: str, **kwargs) -> str:
    stdout = io.StringIO()
    assert run_menu(stdin=io.StringIO(text), stdout=stdout, **kwargs) == 0
    return stdout.getvalue()


class TestRunMenu:
    def test_runs_selected_demo_then_exits(self, options, calls) -> None:
        out = run("1\n\n0\n", options=options, config="cfg")
        assert calls == ["cfg"]
        assert "fake demo ran" in out
        assert "Press Enter to continue..." in out
        assert out.count("Choose an example to run:") == 2

    def test_lists_options(self, options) -> None:
        out = run("0\n", options=options)
        assert out.startswith("Memory Leak Examples in Python\n")
        assert "1. Fake Demo\n" in out
        assert "0. Exit\n" in out

    @pytest.mark.parametrize("choice", ["7", "exit", " 1", "1 ", "one", ""])
    def test_invalid_options(self, options, calls, choice) -> None:
        out = run(f"{choice}\n\n0\n", options=options)
        assert "Invalid option, please try again" in out
        assert calls == []

    def test_end_of_input_exits(self, options, calls) -> None:
        out = run("", options=options)
        assert out.count("Choose an example to run:") == 1
        assert calls == []

    def test_end_of_input_after_selection(self, options, calls) -> None:
        run("1\n", options=options)
        assert len(calls) == 1

    def test_windows_line_endings(self, options, calls) -> None:
        run("1\r\n\r\n0\r\n", options=options)
        assert len(calls) == 1

    def test_default_options_run_real_demo(self, small_settings) -> None:
        out = run("1\n\n0\n", config=small_settings)
        assert "1. Static Collection Leak" in out
        assert "6. Proper Resource Management" in out
        assert "Added object 3, collection size: 4" in out


class TestHold:
    def test_returns_on_exit_line(self) -> None:
        stdin = io.StringIO("hello\nEXIT\nexit\nleftover\n")
        stdout = io.StringIO()
        assert hold(stdin, stdout) == 0
        assert stdin.readline() == "leftover\n"
        assert '"exit"' in stdout.getvalue()

    def test_returns_on_end_of_input(self) -> None:
        assert hold(io.StringIO("a\nb\n"), io.StringIO()) == 0
