"""Tests for event model validation."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from luach.models import NewRecurringEvent, RecurrenceRule, RecurringEvent, UserTokens
from tests.fakes import make_event

pytestmark = pytest.mark.unit


class TestNewRecurringEvent:
    def test_valid_payload(self):
        payload = NewRecurringEvent(
            title="  Yahrzeit  ", hebrew_day=14, hebrew_month=13, hebrew_year=5784
        )
        assert payload.title == "Yahrzeit"
        assert payload.recurrence_rule == RecurrenceRule.YEARLY

    def test_adar_ii_in_common_year_is_rejected(self):
        with pytest.raises(ValidationError):
            NewRecurringEvent(title="x", hebrew_day=14, hebrew_month=13, hebrew_year=5785)

    def test_day_past_month_end_is_rejected(self):
        # Iyar always has 29 days.
        with pytest.raises(ValidationError):
            NewRecurringEvent(title="x", hebrew_day=30, hebrew_month=2, hebrew_year=5785)

    @pytest.mark.parametrize("field,value", [("hebrew_month", 14), ("hebrew_day", 0)])
    def test_component_ranges(self, field, value):
        data = {"title": "x", "hebrew_day": 1, "hebrew_month": 7, "hebrew_year": 5785}
        data[field] = value
        with pytest.raises(ValidationError):
            NewRecurringEvent(**data)

    def test_blank_title_rejected(self):
        with pytest.raises(ValidationError):
            NewRecurringEvent(title="   ", hebrew_day=1, hebrew_month=7, hebrew_year=5785)

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValidationError):
            NewRecurringEvent(
                title="x", hebrew_day=1, hebrew_month=7, hebrew_year=5785, color="red"
            )


class TestRecurringEvent:
    def test_watermark_defaults_to_origin(self):
        event = make_event(year=5780)
        assert event.last_synced_hebrew_year is None
        assert event.watermark == 5780

    def test_watermark_before_origin_rejected(self):
        event = make_event(year=5780)
        with pytest.raises(ValidationError):
            RecurringEvent.model_validate(
                {**event.model_dump(), "last_synced_hebrew_year": 5779}
            )

    def test_from_new_assigns_id_and_owner(self):
        event = make_event(user_id="user-9", watermark=5790)
        assert event.id
        assert event.user_id == "user-9"
        assert event.watermark == 5790
        assert event.is_yearly


class TestUserTokens:
    def test_repr_redacts_tokens(self):
        tokens = UserTokens(access_token="ya29.secret", refresh_token="1//refresh")
        assert "ya29.secret" not in repr(tokens)
        assert "1//refresh" not in str(tokens)
