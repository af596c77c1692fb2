from __future__ import annotations

from codeagent.tools import wildcard


def test_star_matches_across_spaces_and_newlines():
    assert wildcard.match("git push origin main", "git push *")
    assert wildcard.match("echo a\necho b", "echo *")
    assert not wildcard.match("git status", "git push *")


def test_question_mark_matches_one_character():
    assert wildcard.match("ls -a", "ls -?")
    assert not wildcard.match("ls -al", "ls -?")


def test_regex_metacharacters_are_literal():
    assert wildcard.match("a+b (c)", "a+b (c)")
    assert not wildcard.match("aab (c)", "a+b (c)")


def test_resolve_prefers_most_specific_pattern():
    rules = {"*": "allow", "git push *": "ask", "git *": "deny"}
    assert wildcard.resolve("git push origin", rules) == "ask"
    assert wildcard.resolve("git log", rules) == "deny"
    assert wildcard.resolve("ls", rules) == "allow"


def test_resolve_without_match_returns_none():
    assert wildcard.resolve("ls", {"git *": "deny"}) is None
