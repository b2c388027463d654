from typing import Annotated, ClassVar

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, TypeAdapter, ValidationError

from reportsync.errors import PayloadValidationError
from reportsync.schemas import Aggregation, EntityType


MAX_REPORTED_ERRORS = 5


def _coerce_id(value: object) -> object:
    # Ids arrive as JSON numbers or strings depending on the export.
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(int(value)) if float(value).is_integer() else str(value)
    return value


ExternalId = Annotated[str, BeforeValidator(_coerce_id)]


class ReportRow(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    aggregation: ClassVar[Aggregation]
    entity_type: ClassVar[EntityType]

    budget_currency: str = Field(alias="budgetCurrency.value")
    campaign_id: ExternalId = Field(alias="campaign.id")
    campaign_name: str = Field(alias="campaign.name")
    ad_group_id: ExternalId = Field(alias="adGroup.id")
    ad_id: ExternalId = Field(alias="ad.id")
    # Blank or null on rows attributed only through the search term.
    target_value: str | None = Field(default=None, alias="target.value")
    target_match_type: str | None = Field(default=None, alias="target.matchType")
    impressions: int = Field(alias="metric.impressions")
    clicks: int = Field(alias="metric.clicks")
    purchases: int = Field(alias="metric.purchases")
    sales: float = Field(alias="metric.sales")
    total_cost: float = Field(alias="metric.totalCost")


class HourlyTargetRow(ReportRow):
    aggregation = Aggregation.HOURLY
    entity_type = EntityType.TARGET

    hour_value: ExternalId = Field(alias="hour.value")
    date_value: str | None = Field(default=None, alias="date.value")
    ad_group_name: ExternalId = Field(alias="adGroup.name")
    search_term: str = Field(alias="searchTerm.value")
    matched_target: str = Field(alias="matchedTarget.value")


class DailyTargetRow(ReportRow):
    aggregation = Aggregation.DAILY
    entity_type = EntityType.TARGET

    date_value: str = Field(alias="date.value")
    ad_group_name: ExternalId = Field(alias="adGroup.name")
    search_term: str = Field(alias="searchTerm.value")


class HourlyProductRow(ReportRow):
    aggregation = Aggregation.HOURLY
    entity_type = EntityType.PRODUCT

    hour_value: ExternalId = Field(alias="hour.value")
    date_value: str | None = Field(default=None, alias="date.value")
    advertised_product_id: str | None = Field(default=None, alias="advertisedProduct.id")
    advertised_product_marketplace: str | None = Field(default=None, alias="advertisedProduct.marketplace")
    search_term: str | None = Field(default=None, alias="searchTerm.value")
    matched_target: str | None = Field(default=None, alias="matchedTarget.value")


class DailyProductRow(ReportRow):
    aggregation = Aggregation.DAILY
    entity_type = EntityType.PRODUCT

    date_value: str = Field(alias="date.value")
    advertised_product_id: str | None = Field(default=None, alias="advertisedProduct.id")
    advertised_product_marketplace: str | None = Field(default=None, alias="advertisedProduct.marketplace")


ROW_MODELS: dict[tuple[Aggregation, EntityType], type[ReportRow]] = {
    (model.aggregation, model.entity_type): model
    for model in (HourlyTargetRow, DailyTargetRow, HourlyProductRow, DailyProductRow)
}


def row_model_for(aggregation: Aggregation, entity_type: EntityType) -> type[ReportRow]:
    return ROW_MODELS[(Aggregation(aggregation), EntityType(entity_type))]


def export_fields(row_model: type[ReportRow]) -> list[str]:
    """Dotted column names to request from the export API."""
    return [field.alias or name for name, field in row_model.model_fields.items()]


def validate_payload(row_model: type[ReportRow], raw: object) -> list[ReportRow]:
    if not isinstance(raw, list):
        raise PayloadValidationError(
            f"{row_model.__name__} payload must be a JSON array, got {type(raw).__name__}"
        )
    try:
        return TypeAdapter(list[row_model]).validate_python(raw)
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()[:MAX_REPORTED_ERRORS]
        )
        raise PayloadValidationError(
            f"{row_model.__name__} payload failed validation ({exc.error_count()} errors): {details}"
        ) from exc
