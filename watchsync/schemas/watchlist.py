from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class SortMode(str, Enum):
    NORMAL = "NORMAL"
    CHANGE_DESC = "CHANGE_DESC"
    CHANGE_ASC = "CHANGE_ASC"


class WatchListEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    pinned: bool = False
    insertion_order: int


class WatchListAdd(BaseModel):
    code: str


class VisibilityUpdate(BaseModel):
    visible: bool
