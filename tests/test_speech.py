from __future__ import annotations

import datetime as dt
import random

import pytest

from hellwatch.schedule import Category
from hellwatch.speech import (
    APPROXIMATION_WORDS,
    announcement,
    clean_for_tts,
    format_remaining_speech,
    spoken_event_name,
)

from conftest import T0, occ


class FirstChoice(random.Random):
    def choice(self, seq):
        return seq[0]


@pytest.mark.parametrize(
    "seconds,expected",
    [
        (20, "20 seconds"),
        (1, "1 second"),
        (297, "about 5 minutes"),
        (60, "about 1 minute"),
        (75, "about 1 minute 15 seconds"),
        (3600, "about 1 hour"),
        (3600 + 120, "about 1 hour 2 minutes"),
        (2 * 3600 + 60, "about 2 hours 1 minute"),
    ],
)
def test_format_remaining_speech(seconds, expected):
    assert format_remaining_speech(dt.timedelta(seconds=seconds), FirstChoice()) == expected


def test_approximation_word_varies():
    text = format_remaining_speech(dt.timedelta(minutes=10), random.Random(3))
    assert text.split()[0] in APPROXIMATION_WORDS
    assert text.endswith("10 minutes")


def test_spoken_event_names():
    boss = occ("1", Category.WORLD_BOSS, T0, boss="Ashava")
    assert spoken_event_name(Category.HELLTIDE, None) == "Helltide"
    assert spoken_event_name(Category.LEGION, None) == "Legion event"
    assert spoken_event_name(Category.WORLD_BOSS, boss) == "World boss Ashava"
    assert spoken_event_name(Category.WORLD_BOSS, boss, "{boss} is coming") == "Ashava is coming"
    assert spoken_event_name(Category.WORLD_BOSS, None, "Boss {boss} soon") == "Boss soon"
    assert spoken_event_name(Category.HELLTIDE, None, "  The tide  ") == "The tide"


def test_announcement():
    text = announcement(Category.LEGION, occ("1", Category.LEGION, T0), dt.timedelta(minutes=5), rng=FirstChoice())
    assert text == "Legion event in about 5 minutes"


def test_clean_for_tts():
    assert clean_for_tts("See  https://example.com {now}\r\n\r\n*bold*") == "See now\nbold"
    assert clean_for_tts("") == ""
