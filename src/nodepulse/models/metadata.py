from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

_EXTRA_ALLOW = ConfigDict(extra="allow")


class DiskInfo(BaseModel):
    model_config = _EXTRA_ALLOW

    id: int
    name: str | None = None
    device: str | None = None
    model: str | None = None
    type: str | None = None


class DiskList(BaseModel):
    model_config = _EXTRA_ALLOW

    disks: list[DiskInfo] = Field(default_factory=list)
