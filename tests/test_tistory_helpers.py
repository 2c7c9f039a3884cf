"""
tests/test_tistory_helpers.py
"""
from __future__ import annotations

import pytest

from inkwell.tistory import (
    make_excerpt,
    parse_source_date,
    parse_tags,
    pick_hero_image,
    slugify,
)


@pytest.mark.parametrize(
    "title, slug",
    [
        ("Hello World!", "hello-world"),
        ("  Next.js & React_Hooks  ", "nextjs-react-hooks"),
        ("a -- b __ c", "a-b-c"),
        ("리액트 시작하기", "리액트-시작하기"),
        ("!!!", ""),
        ("", ""),
    ],
)
def test_slugify(title, slug):
    assert slugify(title) == slug


def test_slugify_is_idempotent():
    once = slugify("Some  Title -- with_stuff")
    assert slugify(once) == once


def test_excerpt_short_text_untouched():
    assert make_excerpt("<p>Hello   <b>world</b></p>\n") == "Hello world"


def test_excerpt_truncates_long_text():
    text = "<p>" + "word " * 100 + "</p>"
    out = make_excerpt(text)
    assert out.endswith("...")
    assert len(out) == 155 + 3
    assert "<" not in out


def test_excerpt_exactly_at_limit():
    assert make_excerpt("x" * 155) == "x" * 155


@pytest.mark.parametrize(
    "raw, tags",
    [
        ("#react#nextjs", ["react", "nextjs"]),
        ("# react # #nextjs ", ["react", "nextjs"]),
        ("react#nextjs", ["react", "nextjs"]),
        ("", []),
        ("#", []),
        (None, []),
    ],
)
def test_parse_tags(raw, tags):
    assert parse_tags(raw) == tags


def test_parse_source_date_is_field_by_field():
    dt = parse_source_date("2021-04-05 00:18:25")
    assert (dt.year, dt.month, dt.day) == (2021, 4, 5)
    assert (dt.hour, dt.minute, dt.second) == (0, 18, 25)
    assert dt.tzinfo is None


def test_parse_source_date_without_time():
    dt = parse_source_date("2020-12-31")
    assert (dt.month, dt.day, dt.hour) == (12, 31, 0)


@pytest.mark.parametrize("raw", ["", "yesterday", "05/04/2021", "2021-13-01 00:00:00"])
def test_parse_source_date_rejects_garbage(raw):
    with pytest.raises(ValueError):
        parse_source_date(raw)


def test_pick_hero_image():
    assert pick_hero_image(3, []) is None
    assert pick_hero_image(3, ["a.png"]) == "/images/3/a.png"
    assert pick_hero_image(3, ["a.png", "Cover.jpg"]) == "/images/3/Cover.jpg"
    assert pick_hero_image(3, ["a.png", "b.png"]) == "/images/3/a.png"
