import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from name_version import NameVersion, parse, render, split_extension


def test_parse_versioned_name() -> None:
    assert parse("report__2.txt") == NameVersion("report", 2)


def test_parse_plain_name_falls_back_to_zero() -> None:
    assert parse("plain.txt") == ("plain", 0)


def test_parse_plain_name_without_fallback_returns_none() -> None:
    assert parse("plain.txt", fallback_to_zero=False) is None


def test_parse_is_greedy_on_base_name() -> None:
    assert parse("x__1__2.log") == ("x__1", 2)


def test_parse_ignores_directories_and_extension() -> None:
    assert parse("backups/2024/db__15.sqlite") == ("db", 15)


def test_parse_without_extension() -> None:
    assert parse("notes__7") == ("notes", 7)


def test_parse_keeps_leading_dot_files_whole() -> None:
    assert parse(".bashrc") == (".bashrc", 0)


def test_parse_ignores_text_after_version_digits() -> None:
    assert parse("world__3.tar.gz") == ("world", 3)
    assert parse("report__2b.txt") == ("report", 2)


def test_parse_requires_digits_after_separator() -> None:
    assert parse("draft__final.doc") == ("draft__final", 0)
    assert parse("draft__final.doc", fallback_to_zero=False) is None


def test_render_version_zero_has_no_tag() -> None:
    assert render("report", 0, ".txt") == "report.txt"


def test_render_adds_version_tag() -> None:
    assert render("report", 3, ".txt") == "report__3.txt"
    assert render("report", 12) == "report__12"


@pytest.mark.parametrize(
    "base, version, extension",
    [
        ("report", 1, ".txt"),
        ("My Backup", 42, ".zip"),
        ("save-game", 1000, ""),
    ],
)
def test_render_then_parse_round_trips(base: str, version: int, extension: str) -> None:
    assert parse(render(base, version, extension)) == (base, version)


def test_split_extension() -> None:
    assert split_extension("dir/report__2.txt") == ("report__2", ".txt")
    assert split_extension("report") == ("report", "")
