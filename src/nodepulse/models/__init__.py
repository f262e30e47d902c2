from __future__ import annotations

from nodepulse.models.config import AppSettings, StreamOptions
from nodepulse.models.metadata import DiskInfo, DiskList

__all__ = [
    # config
    "AppSettings",
    "StreamOptions",
    # metadata
    "DiskInfo",
    "DiskList",
]
