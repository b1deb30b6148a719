import time
from datetime import timedelta

import pytest

from conftest import T0
from timebox import resolver
from timebox.resolver import Resolved, resolve


def seconds_until(text, reference=T0):
    result = resolve(text, reference)
    return result.duration if result else None


class TestDurations:

    def test_relative_minutes(self):
        result = resolve("in 30 minutes", T0)

        assert result.duration == 1800
        assert result.ends_at == T0 + timedelta(seconds=1800)

    @pytest.mark.parametrize("text,expected", [
        ("2h", 7200),
        ("30min", 1800),
        ("1 day", 86400),
        ("  45MIN ", 2700),
    ])
    def test_shorthand_table(self, text, expected):
        assert seconds_until(text) == expected

    @pytest.mark.parametrize("text,expected", [
        ("1.5h", 5400),
        ("90 minutes", 5400),
        ("2.5 mins", 150),
        ("3 hrs", 10800),
        ("90s", 90),
    ])
    def test_unit_patterns(self, text, expected):
        assert seconds_until(text) == expected

    def test_decimal_seconds_are_not_a_duration(self):
        assert seconds_until("1.5s") is None

    @pytest.mark.parametrize("text,expected", [
        ("in 2 hours", 7200),
        ("in 2 days", 172800),
        ("3 hours from now", 10800),
        ("20 min from now", 1200),
    ])
    def test_relative_phrases(self, text, expected):
        assert seconds_until(text) == expected

    def test_bare_number_means_minutes(self):
        assert seconds_until("45") == 2700
        assert seconds_until("1440") == 86400
        assert seconds_until("2000") is None
        assert seconds_until("0") is None

    def test_short_durations_are_returned_for_the_caller_to_reject(self):
        assert seconds_until("30s") == 30


class TestAbsoluteTimes:
    # T0 is Monday 09:00 UTC

    def test_time_later_today(self):
        assert resolve("10am", T0).ends_at == T0 + timedelta(hours=1)

    def test_time_already_passed_rolls_to_tomorrow(self):
        assert resolve("8am", T0).ends_at == T0 + timedelta(hours=23)

    def test_tomorrow_with_time(self):
        assert resolve("tomorrow 9am", T0).ends_at == T0 + timedelta(days=1)

    def test_tomorrow_without_time_means_noon(self):
        assert resolve("tomorrow", T0).ends_at == T0 + timedelta(days=1, hours=3)

    def test_weekday_later_this_week(self):
        assert resolve("next friday 2pm", T0).ends_at == T0 + timedelta(days=4, hours=5)

    def test_same_weekday_still_ahead_is_today(self):
        assert resolve("monday 5pm", T0).ends_at == T0 + timedelta(hours=8)

    def test_same_weekday_already_passed_rolls_a_week(self):
        assert resolve("monday 8am", T0).ends_at == T0 + timedelta(days=7, hours=-1)

    def test_time_before_weekday_rolls_a_week_once_passed(self):
        friday_evening = T0 + timedelta(days=4, hours=9)

        result = resolve("5pm friday", friday_evening)

        assert result.ends_at == T0 + timedelta(days=11, hours=8)
        assert resolve("5pm friday", T0).ends_at == T0 + timedelta(days=4, hours=8)

    def test_explicit_future_date(self):
        result = resolve("2026-03-05 14:30", T0)

        assert result.ends_at == T0 + timedelta(days=3, hours=5, minutes=30)
        assert result.duration == int(timedelta(days=3, hours=5, minutes=30).total_seconds())

    def test_past_dates_are_rejected(self):
        assert resolve("2020-01-01 10:00", T0) is None


class TestChain:

    @pytest.mark.parametrize("text", ["garbage text", "", "   ", "in a while"])
    def test_not_parseable(self, text):
        assert resolve(text, T0) is None

    @pytest.mark.parametrize("text", ["99999999999h", "in 99999999999 hours", "in 99999999999 days"])
    def test_huge_numbers_are_not_parseable(self, text):
        assert resolve(text, T0) is None

    def test_first_matching_step_wins(self):
        calls = []

        def never(text, reference):
            calls.append(text)
            return None

        def always(text, reference):
            return Resolved(reference + timedelta(minutes=5), 300)

        assert resolve("Whatever", T0, steps=[never, always, never]).duration == 300
        assert calls == ["whatever"]

    def test_slow_grammar_gives_up(self, monkeypatch):
        def slow(text, reference):
            time.sleep(0.3)
            return T0 + timedelta(hours=1)

        monkeypatch.setattr(resolver, "_parse_absolute", slow)
        monkeypatch.setattr(resolver, "GRAMMAR_TIMEOUT_SECONDS", 0.01)

        assert resolver.from_grammar("sometime soon", T0) is None
