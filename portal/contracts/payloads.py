from __future__ import annotations

from pydantic import BaseModel, Field, model_validator


class AssignContract(BaseModel):
    assigned_to: str | None = None
    assign_all: bool = False
    note: str = Field(default="")

    @model_validator(mode="after")
    def _one_target(self) -> "AssignContract":
        if self.assign_all and self.assigned_to:
            raise ValueError("Choose either a single officer or assign to all, not both")
        return self


class NotifyContract(BaseModel):
    note: str = Field(default="")


class ReassignContract(BaseModel):
    note: str = Field(default="")
    assigned_to: str | None = None
    assign_all: bool = False

    @model_validator(mode="after")
    def _one_target(self) -> "ReassignContract":
        if self.assign_all and self.assigned_to:
            raise ValueError("Choose either a single officer or assign to all, not both")
        return self


class CloseContract(BaseModel):
    note: str = Field(default="")


class ReopenContract(BaseModel):
    note: str = Field(default="")
