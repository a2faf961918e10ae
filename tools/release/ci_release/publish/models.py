"""Data models used during release publishing."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional


@dataclass(slots=True)
class UploadRequest:
    path: Path
    name: str
    tag: str
    provider: str

    @classmethod
    def for_file(cls, path: Path, *, tag: str, provider: str) -> "UploadRequest":
        return cls(path=path, name=path.name, tag=tag, provider=provider)


@dataclass(slots=True)
class UploadResult:
    adapter: str
    status: str
    name: str
    url: Optional[str] = None
    attempts: int = 1
    details: Dict[str, object] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "adapter": self.adapter,
            "status": self.status,
            "name": self.name,
            "url": self.url,
            "attempts": self.attempts,
            "details": self.details,
            "logs": self.logs,
        }
