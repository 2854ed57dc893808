import json
from datetime import datetime

from pydantic import BaseModel, Field, field_validator


def decode_json_list(value) -> list:
    """Gamma returns some list fields as JSON-encoded strings."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            return []
        return parsed if isinstance(parsed, list) else []
    return []


class PricePoint(BaseModel):
    ts: datetime
    price: float


class ClosedMarket(BaseModel):
    market_id: str = ""
    question: str | None = None
    slug: str | None = None
    group_item_title: str | None = None
    closed: bool = False
    active: bool = True
    winning_outcome: str | None = None
    outcomes: list = Field(default_factory=list)
    outcome_prices: list[float] = Field(default_factory=list)
    tokens: list = Field(default_factory=list)

    @field_validator("outcomes", "tokens", mode="before")
    @classmethod
    def _decode_list(cls, value):
        return decode_json_list(value)

    @field_validator("outcome_prices", mode="before")
    @classmethod
    def _decode_prices(cls, value):
        prices = []
        for raw in decode_json_list(value):
            try:
                prices.append(float(raw))
            except (TypeError, ValueError):
                prices.append(0.0)
        return prices

    @property
    def display_title(self) -> str | None:
        return self.group_item_title or self.slug or self.question


class ClosedEvent(BaseModel):
    event_id: str
    title: str | None = None
    slug: str | None = None
    closed: bool = False
    active: bool = True
    markets: list[ClosedMarket] = Field(default_factory=list)

    @property
    def is_settled_upstream(self) -> bool:
        return self.closed and not self.active
