from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


def utc_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class AdvertiserAccount(Base):
    __tablename__ = "advertiser_accounts"
    __table_args__ = (UniqueConstraint("account_id", "country_code", name="uq_account_country"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(128), index=True)
    country_code: Mapped[str] = mapped_column(String(8))
    profile_id: Mapped[str] = mapped_column(String(64))
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class DatasetPeriod(Base):
    __tablename__ = "dataset_periods"
    __table_args__ = (
        UniqueConstraint(
            "account_id",
            "country_code",
            "period_start",
            "aggregation",
            "entity_type",
            name="uq_dataset_period_key",
        ),
        Index("ix_dataset_periods_due", "account_id", "aggregation", "entity_type", "next_refresh_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(128))
    country_code: Mapped[str] = mapped_column(String(8))
    period_start: Mapped[datetime] = mapped_column(DateTime)
    aggregation: Mapped[str] = mapped_column(String(16))
    entity_type: Mapped[str] = mapped_column(String(16))
    status: Mapped[str] = mapped_column(String(32), default="missing")
    report_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_report_created_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_processed_report_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    next_refresh_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    refreshing: Mapped[bool] = mapped_column(Boolean, default=False)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_records: Mapped[int] = mapped_column(Integer, default=0)
    success_records: Mapped[int] = mapped_column(Integer, default=0)
    error_records: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    parse_errors: Mapped[list["ParseErrorRecord"]] = relationship(back_populates="dataset", cascade="all, delete-orphan")


class ParseErrorRecord(Base):
    __tablename__ = "parse_error_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    dataset_id: Mapped[int] = mapped_column(ForeignKey("dataset_periods.id", ondelete="CASCADE"), index=True)
    report_id: Mapped[str] = mapped_column(String(128))
    record_index: Mapped[int] = mapped_column(Integer)
    raw_record: Mapped[str] = mapped_column(Text)
    reason: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    dataset: Mapped[DatasetPeriod] = relationship(back_populates="parse_errors")


class Target(Base):
    __tablename__ = "targets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    target_id: Mapped[str] = mapped_column(String(64), unique=True)
    ad_group_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    keyword: Mapped[str | None] = mapped_column(String(512), nullable=True)
    asin: Mapped[str | None] = mapped_column(String(32), nullable=True)
    match_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    target_type: Mapped[str] = mapped_column(String(32), default="MANUAL")


class PerformanceRecord(Base):
    __tablename__ = "performance_records"
    __table_args__ = (
        UniqueConstraint(
            "account_id",
            "aggregation",
            "bucket_start",
            "ad_id",
            "entity_type",
            "entity_id",
            name="uq_performance_bucket_entity",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(128), index=True)
    aggregation: Mapped[str] = mapped_column(String(16))
    bucket_start: Mapped[datetime] = mapped_column(DateTime)
    bucket_date: Mapped[str] = mapped_column(String(10))
    bucket_hour: Mapped[int | None] = mapped_column(Integer, nullable=True)
    campaign_id: Mapped[str] = mapped_column(String(64))
    ad_group_id: Mapped[str] = mapped_column(String(64))
    ad_id: Mapped[str] = mapped_column(String(64))
    entity_type: Mapped[str] = mapped_column(String(16))
    entity_id: Mapped[str] = mapped_column(String(64))
    target_match_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    impressions: Mapped[int] = mapped_column(Integer, default=0)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    spend: Mapped[float] = mapped_column(Float, default=0.0)
    sales: Mapped[float] = mapped_column(Float, default=0.0)
    orders: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
