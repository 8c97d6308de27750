import subprocess
from unittest import mock

import pytest

from taskconsole.options import (
    ColorToggles,
    Palette,
    RetainFor,
    ViewOptions,
    format_duration,
    parse_duration,
    parse_true_color,
)


@pytest.mark.parametrize("name", ["8", "16", "256", "all", "off"])
def test_palette_parse_round_trip(name):
    assert Palette.parse(name).value == name


def test_palette_parse_tolerates_whitespace_and_rejects_unknown():
    assert Palette.parse("256\n") is Palette.ANSI256
    with pytest.raises(ValueError):
        Palette.parse("88")


def test_parse_duration_documented_example():
    assert parse_duration("5days 2min 2s") == 5 * 86400 + 2 * 60 + 2


@pytest.mark.parametrize(
    "text, seconds",
    [("2s", 2), ("3min", 3 * 60), ("1h", 3600), ("1M", 30.44 * 86400), ("1y", 365.25 * 86400)],
)
def test_parse_duration_units(text, seconds):
    assert parse_duration(text) == pytest.approx(seconds)


@pytest.mark.parametrize("text", ["", "5", "5 parsecs", "abc", "-3s"])
def test_parse_duration_errors(text):
    with pytest.raises(ValueError):
        parse_duration(text)


@pytest.mark.parametrize("text", ["6s", "1.5s", "500ms", "1.5ms", "250us", "7ns"])
def test_format_and_parse_round_trip(text):
    formatted = format_duration(parse_duration(text))
    assert parse_duration(formatted.replace("µs", "us")) == pytest.approx(parse_duration(text))


def test_format_duration_pins():
    assert format_duration(6) == "6s"
    assert format_duration(0.5) == "500ms"
    assert format_duration(0) == "0ns"


def test_format_duration_rejects_negative():
    with pytest.raises(ValueError):
        format_duration(-1)


def test_retain_for_default_and_none():
    assert RetainFor().duration == 6
    assert str(RetainFor()) == format_duration(6)
    assert RetainFor.parse("NONE").duration is None
    assert str(RetainFor.parse("none")) == ""


def test_retain_for_parse_duration():
    assert RetainFor.parse("2min").duration == 120
    with pytest.raises(ValueError):
        RetainFor.parse("forever")


@pytest.mark.parametrize(
    "text, expected",
    [("truecolor", True), (" 24BIT ", True), ("TrueColor", True), ("256", False), ("", False)],
)
def test_parse_true_color(text, expected):
    assert parse_true_color(text) is expected


def test_color_toggles():
    assert ColorToggles().color_durations() is True
    assert ColorToggles(durations=True).color_durations() is False
    assert ColorToggles(durations=False).color_durations() is True
    # the terminated switch follows the durations switch
    assert ColorToggles(durations=True, terminated=False).color_terminated() is False
    assert ColorToggles(durations=None, terminated=True).color_terminated() is True


def test_is_utf8():
    assert ViewOptions(lang="en_US.UTF-8").is_utf8() is True
    assert ViewOptions(lang="en_US.UTF-8", ascii_only=True).is_utf8() is False
    assert ViewOptions(lang="C").is_utf8() is False
    assert ViewOptions().is_utf8() is False
    assert ViewOptions.defaults().is_utf8() is True


def test_determine_palette_prefers_explicit_settings():
    assert ViewOptions(no_colors=True, palette=Palette.ALL).determine_palette() is Palette.NO_COLORS
    assert ViewOptions(palette=Palette.ANSI16, truecolor=True).determine_palette() is Palette.ANSI16
    assert ViewOptions(truecolor=True).determine_palette() is Palette.ALL


@mock.patch("taskconsole.options.subprocess.run")
def test_determine_palette_asks_tput(run):
    run.return_value = subprocess.CompletedProcess(["tput", "colors"], 0, stdout=b"256\n")
    assert ViewOptions().determine_palette() is Palette.ANSI256
    assert run.call_args.args[0] == ["tput", "colors"]


@mock.patch("taskconsole.options.subprocess.run")
def test_determine_palette_bad_tput_output(run):
    run.return_value = subprocess.CompletedProcess(["tput", "colors"], 0, stdout=b"-1\n")
    assert ViewOptions().determine_palette() is Palette.NO_COLORS


@mock.patch("taskconsole.options.subprocess.run", side_effect=FileNotFoundError)
def test_determine_palette_without_tput(run):
    assert ViewOptions().determine_palette() is Palette.NO_COLORS


def test_merge_with_prefers_command_line():
    base = ViewOptions.defaults()
    command_line = ViewOptions(lang="C", palette=Palette.ANSI8, toggles=ColorToggles(terminated=False))
    merged = base.merge_with(command_line)
    assert merged.lang == "C"
    assert merged.palette is Palette.ANSI8
    assert merged.ascii_only == base.ascii_only
    assert merged.truecolor == base.truecolor
    assert merged.toggles == ColorToggles(durations=True, terminated=False)
    assert merged.no_colors is False


def test_merge_with_no_colors_is_sticky():
    assert ViewOptions(no_colors=True).merge_with(ViewOptions()).no_colors is True
    assert ViewOptions().merge_with(ViewOptions(no_colors=True)).no_colors is True


def test_merge_with_empty_is_identity():
    base = ViewOptions.defaults()
    assert base.merge_with(ViewOptions()) == base