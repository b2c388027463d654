import pytest

from reportsync.config import get_settings, parse_dataset_types
from reportsync.schemas import Aggregation, EntityType


def test_parse_dataset_types_keeps_order_and_drops_duplicates() -> None:
    parsed = parse_dataset_types(" hourly:product, daily:target,hourly:product,")

    assert parsed == ((Aggregation.HOURLY, EntityType.PRODUCT), (Aggregation.DAILY, EntityType.TARGET))


@pytest.mark.parametrize("raw", ["", "daily", "weekly:target", "daily:campaign"])
def test_parse_dataset_types_rejects_bad_values(raw) -> None:
    with pytest.raises(ValueError):
        parse_dataset_types(raw)


def test_get_settings_reads_environment(monkeypatch) -> None:
    monkeypatch.setenv("MAX_CONCURRENT_REPORTS", "9")
    monkeypatch.setenv("DATASET_TYPES", "daily:product")

    settings = get_settings()

    assert settings.max_concurrent_reports == 9
    assert settings.dataset_types == ((Aggregation.DAILY, EntityType.PRODUCT),)
    assert settings.retention_limit(Aggregation.HOURLY) == settings.hourly_retention_days
    assert settings.retention_limit(Aggregation.DAILY) == settings.daily_retention_months
