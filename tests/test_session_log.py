"""Session log and rolling history on a temporary SQLite file."""

import pytest

from conftest import WordTokenizer
from memory import session_log
from memory.history import RollingHistory
from memory.short_term import Memory, Role

count_words = WordTokenizer().count_tokens


@pytest.fixture
def db(tmp_path):
    path = tmp_path / "sessions.db"
    session_log.init_db(path)
    return path


def test_append_and_fetch_in_order(db):
    session_log.append_turn("s1", Role.USER, "first", db)
    session_log.append_turn("s1", Role.ASSISTANT, "second", db)
    session_log.append_turn("s2", Role.USER, "elsewhere", db)

    turns = session_log.fetch_history("s1", db)
    assert [(t.role, t.content) for t in turns] == [(Role.USER, "first"), (Role.ASSISTANT, "second")]
    assert turns[0].id < turns[1].id
    assert session_log.list_sessions(db) == ["s1", "s2"]


def test_remove_oldest_pair(db):
    for role, text in [(Role.USER, "a"), (Role.ASSISTANT, "b"), (Role.USER, "c")]:
        session_log.append_turn("s", role, text, db)
    removed = session_log.remove_oldest_pair("s", db)
    assert [t.content for t in removed] == ["a", "b"]
    assert [t.content for t in session_log.fetch_history("s", db)] == ["c"]
    assert [t.content for t in session_log.remove_oldest_pair("s", db)] == ["c"]
    assert session_log.remove_oldest_pair("s", db) == []


def test_delete_session(db):
    session_log.append_turn("gone", Role.USER, "x", db)
    session_log.append_turn("kept", Role.USER, "y", db)
    session_log.delete_session("gone", db)
    assert session_log.fetch_history("gone", db) == []
    assert session_log.list_sessions(db) == ["kept"]
    session_log.delete_session("never-existed", db)


def test_history_reloads_from_log(db):
    history = RollingHistory.load("chat", 100, count_words, db)
    history.append(Memory(Role.USER, "hello there"))
    history.append(Memory(Role.ASSISTANT, "hi"))

    reloaded = RollingHistory.load("chat", 100, count_words, db)
    assert reloaded.turns == history.turns


def test_history_token_budget():
    history = RollingHistory(5, count_words)
    preamble = [Memory(Role.SYSTEM, "be nice")]
    history.append(Memory(Role.USER, "one two"))
    assert history.total_tokens(preamble) == 4
    assert not history.should_eject(preamble)
    history.append(Memory(Role.ASSISTANT, "three four"))
    assert history.should_eject(preamble)


def test_pop_oldest_pair_takes_user_and_reply(db):
    history = RollingHistory.load("pairs", 100, count_words, db)
    for role, text in [(Role.USER, "q1"), (Role.ASSISTANT, "a1"), (Role.USER, "q2"), (Role.ASSISTANT, "a2")]:
        history.append(Memory(role, text))

    first, second = history.pop_oldest_pair()
    assert (first.content, second.content) == ("q1", "a1")
    assert [t.content for t in session_log.fetch_history("pairs", db)] == ["q2", "a2"]


def test_pop_oldest_pair_lone_turn(db):
    history = RollingHistory.load("lone", 100, count_words, db)
    history.append(Memory(Role.ASSISTANT, "orphan reply"))
    history.append(Memory(Role.USER, "q"))

    first, second = history.pop_oldest_pair()
    assert first.content == "orphan reply"
    assert second is None
    assert [t.content for t in session_log.fetch_history("lone", db)] == ["q"]

    first, second = history.pop_oldest_pair()
    assert (first.content, second) == ("q", None)
    with pytest.raises(IndexError):
        history.pop_oldest_pair()
