from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from self_control.utils.time import check_start_before_end, format_time, validate_days


class Mode(str, Enum):
    NORMAL = "normal"
    STRICT = "strict"


class TimeRange(BaseModel):
    """A daily window during which schedule-driven blocking applies."""

    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def _normalise_time(cls, value: str) -> str:
        return format_time(value)

    @model_validator(mode="after")
    def _start_before_end(self):
        check_start_before_end(self.start, self.end)
        return self


class CurrentStatus(BaseModel):
    mode: Mode = Mode.NORMAL
    block_on_restart: bool = False
    block_custom_time: bool = False
    started_at: str = ""
    ended_at: str = ""

    @field_validator("mode", mode="before")
    @classmethod
    def _default_mode(cls, value):
        return value or Mode.NORMAL

    @field_validator("block_on_restart", "block_custom_time", mode="before")
    @classmethod
    def _empty_is_false(cls, value):
        # Older documents stored "true"/"false" strings and left them blank
        return False if value in (None, "") else value

    @field_validator("started_at", "ended_at", mode="before")
    @classmethod
    def _none_is_empty(cls, value):
        return value or ""


class Config(BaseModel):
    """The strict-mode document: sites, weekly ranges and the current status."""

    sites: list[str] = Field(default_factory=list)
    schedules: dict[str, list[TimeRange]] = Field(default_factory=dict)
    current_status: CurrentStatus = Field(default_factory=CurrentStatus)

    @field_validator("sites", mode="before")
    @classmethod
    def _none_is_empty_list(cls, value):
        return value or []

    @field_validator("schedules", mode="before")
    @classmethod
    def _none_is_empty_dict(cls, value):
        return value or {}

    @field_validator("schedules")
    @classmethod
    def _valid_days(cls, value: dict[str, list[TimeRange]]):
        if value:
            validate_days(list(value))
        return value


class Site(BaseModel):
    """A normal-mode block entry keyed by its formatted URL."""

    name: str
    url: str
    duration: str = ""  # absolute expiry timestamp
    currently_blocked: bool = Field(default=False, alias="currentlyBlocked")

    model_config = ConfigDict(populate_by_name=True)


class Schedule(BaseModel):
    """A named weekly schedule."""

    name: str
    days: list[str]
    start_time: str = Field(alias="startTime")
    end_time: str = Field(alias="endTime")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("days")
    @classmethod
    def _valid_days(cls, value: list[str]) -> list[str]:
        return validate_days(value)

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalise_time(cls, value: str) -> str:
        return format_time(value)

    @model_validator(mode="after")
    def _start_before_end(self):
        check_start_before_end(self.start_time, self.end_time)
        return self
