"""
Panes: the independently recorded surfaces of a session.
"""
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from dataclasses import dataclass, field

PANE_KINDS = ("browser", "terminal")


class PageAttachable(ABC):
    """Anything backed by a Playwright page (panes, actors, process terminals)."""

    @abstractmethod
    def attached_page(self):
        """The page this object drives or displays."""


@dataclass
class Pane(PageAttachable):
    """
    One recorded surface.

    created_at_ms is the wall-clock time its recording started; the
    compositor pads later panes by their distance from the earliest one.
    """
    id: str
    kind: str
    label: str
    viewport: dict
    created_at_ms: float
    context: object
    page: object
    raw_video_path: Optional[Path] = None
    actor: Optional[object] = None
    terminal: Optional[object] = None
    actors: list = field(default_factory=list)

    def attached_page(self):
        return self.page

    def summary(self) -> dict:
        return {"id": self.id, "type": self.kind, "label": self.label}
