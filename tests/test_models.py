"""Tests for timeframe parsing, timestamp helpers and queue payloads."""

import pytest

from backfill.exceptions import ValidationError
from backfill.models import JobRequest, SaveResult, Timeframe, ms_to_iso, parse_iso_ms


class TestTimeframe:
    @pytest.mark.parametrize(
        ("code", "interval_ms"),
        [("1m", 60_000), ("4h", 14_400_000), ("1d", 86_400_000), ("1w", 604_800_000)],
    )
    def test_interval(self, code: str, interval_ms: int) -> None:
        assert Timeframe.parse(code).interval_ms == interval_ms

    def test_unknown_code(self) -> None:
        with pytest.raises(ValidationError):
            Timeframe.parse("1M")


class TestTimestamps:
    def test_parse_with_and_without_zone(self) -> None:
        assert parse_iso_ms("2024-01-01T00:00:00Z") == 1_704_067_200_000
        assert parse_iso_ms("2024-01-01T00:00:00") == 1_704_067_200_000
        assert parse_iso_ms("2024-01-01T02:00:00+02:00") == 1_704_067_200_000

    def test_format(self) -> None:
        assert ms_to_iso(1_704_067_200_123) == "2024-01-01T00:00:00.123Z"
        assert ms_to_iso(None) is None

    def test_invalid(self) -> None:
        with pytest.raises(ValidationError):
            parse_iso_ms("yesterday")


class TestJobRequest:
    def test_from_payload(self) -> None:
        request = JobRequest.from_payload(
            {
                "jobId": "abc",
                "symbol": "ethusdt",
                "timeframe": "15m",
                "startDate": "2024-01-01T00:00:00Z",
                "endDate": "2024-01-02T00:00:00Z",
            }
        )

        assert request == JobRequest("abc", "ETHUSDT", Timeframe.M15, 1_704_067_200_000, 1_704_153_600_000)

    def test_missing_field(self) -> None:
        with pytest.raises(ValidationError, match="endDate"):
            JobRequest.from_payload(
                {"jobId": "abc", "symbol": "X", "timeframe": "1h", "startDate": "2024-01-01"}
            )


def test_save_results_add_up() -> None:
    total = SaveResult(1, 2, 0) + SaveResult(3, 0, 1)
    assert total == SaveResult(4, 2, 1)
