from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict


class QuoteCategory(str, Enum):
    FUND = "fund"
    STOCK = "stock"


class Quote(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    name: str
    category: QuoteCategory
    current_value: float
    change_percent: float
    change_amount: float
    open_value: float
    previous_close_value: float
    timestamp: str
    source: str


class FetchError(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    kind: Literal["network", "parse", "rate_limit"]
    message: str


class SuggestionEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    label: str
    category: QuoteCategory
