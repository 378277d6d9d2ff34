from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator

from hostsync.enums import ChangeOperation


class ChangeEventEnvelope(BaseModel):
    identity: str
    operation: ChangeOperation
    previous_value: str | None = None
    new_value: str | None = None

    @model_validator(mode="after")
    def _check_values(self) -> "ChangeEventEnvelope":
        if self.previous_value is not None and self.operation != ChangeOperation.MODIFIED:
            raise ValueError("previous_value is only valid for modified events")
        if self.new_value is not None and self.operation == ChangeOperation.DELETED:
            raise ValueError("deleted events carry no new_value")
        return self


class ChangeEventResponse(BaseModel):
    accepted: bool
    message: str


class AgentHealthResponse(BaseModel):
    status: str
    startup_direction: str
    features: dict[str, bool]


class SetCurrentDatetimeRequest(BaseModel):
    current_datetime: str


class RpcResponse(BaseModel):
    accepted: bool
    message: str


class PlatformState(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    os_name: str = Field(alias="os-name")
    os_release: str = Field(alias="os-release")
    os_version: str = Field(alias="os-version")
    machine: str


class ClockState(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_datetime: str = Field(alias="current-datetime")
    boot_datetime: str = Field(alias="boot-datetime")


class SystemStateResponse(BaseModel):
    platform: PlatformState
    clock: ClockState
