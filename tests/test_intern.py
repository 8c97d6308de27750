import gc

from taskconsole.intern import InternedStr, Strings


def test_same_string_returns_same_object():
    strings = Strings()
    first = strings.string("hello")
    second = strings.string("hel" + "lo")
    assert first is second
    assert len(strings) == 1


def test_interned_behaves_like_str():
    strings = Strings()
    value = strings.string("tokio::task")
    assert isinstance(value, InternedStr)
    assert value == "tokio::task"
    assert value.startswith("tokio")
    assert f"{value}" == "tokio::task"
    assert {value: 1}["tokio::task"] == 1


def test_repr_names_type():
    strings = Strings()
    assert repr(strings.string("abc")) == "InternedStr('abc')"


def test_distinct_strings_are_distinct():
    strings = Strings()
    a = strings.string("a")
    b = strings.string("b")
    assert a is not b
    assert len(strings) == 2
    assert "a" in strings and "b" in strings


def test_retain_referenced_drops_unreferenced():
    strings = Strings()
    kept = strings.string("kept")
    strings.string("gone")
    gc.collect()
    dropped = strings.retain_referenced()
    assert dropped == 1
    assert "kept" in strings
    assert "gone" not in strings
    assert strings.string("kept") is kept


def test_retain_referenced_keeps_all_when_referenced():
    strings = Strings()
    held = [strings.string(name) for name in ("x", "y", "z")]
    assert strings.retain_referenced() == 0
    assert len(strings) == len(held)
    assert sorted(strings) == ["x", "y", "z"]


def test_reinsert_after_drop_gives_new_instance():
    strings = Strings()
    strings.string("temp")
    gc.collect()
    strings.retain_referenced()
    assert len(strings) == 0
    again = strings.string("temp")
    assert again == "temp"
    assert len(strings) == 1