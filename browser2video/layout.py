"""
Pane layouts for composition and terminal grids.
"""
import json
import math
from dataclasses import dataclass
from typing import Optional, Union

LAYOUT_KINDS = ("auto", "row", "column", "grid", "template")


@dataclass(frozen=True)
class CellBox:
    """Inclusive row/column span of one pane inside a grid template."""
    min_row: int
    max_row: int
    min_col: int
    max_col: int

    @property
    def row_span(self) -> int:
        return self.max_row - self.min_row + 1

    @property
    def col_span(self) -> int:
        return self.max_col - self.min_col + 1


@dataclass(frozen=True)
class Layout:
    """
    How several pane recordings are arranged in the output video.

    Build one with the classmethods; `parse` accepts the loose forms used in
    options and on the command line ("row", "grid:3", "[[0,1],[0,2]]").
    """
    kind: str = "auto"
    cols: Optional[int] = None
    template: Optional[tuple] = None

    @classmethod
    def auto(cls) -> "Layout":
        return cls("auto")

    @classmethod
    def row(cls) -> "Layout":
        return cls("row")

    @classmethod
    def column(cls) -> "Layout":
        return cls("column")

    @classmethod
    def grid(cls, cols: Optional[int] = None) -> "Layout":
        if cols is not None and cols < 1:
            raise ValueError("Grid layout needs at least one column")
        return cls("grid", cols=cols)

    @classmethod
    def from_template(cls, rows: list) -> "Layout":
        if not rows or not all(rows):
            raise ValueError("Grid template must be a non-empty 2D list")
        return cls("template", template=tuple(tuple(int(i) for i in row) for row in rows))

    @classmethod
    def parse(cls, value: Union["Layout", str, list, dict, None]) -> "Layout":
        if value is None:
            return cls.auto()
        if isinstance(value, Layout):
            return value
        if isinstance(value, list):
            return cls.from_template(value)
        if isinstance(value, dict) and "cols" in value:
            return cls.grid(int(value["cols"]))

        text = str(value).strip()
        if text.startswith("["):
            return cls.from_template(json.loads(text))
        if text.startswith("grid:"):
            return cls.grid(int(text.split(":", 1)[1]))
        if text in ("auto", "row", "column", "grid"):
            return cls(text)
        raise ValueError(f"Unknown layout: {value!r}")

    def columns_for(self, count: int) -> int:
        """Column count of an auto/grid arrangement for count panes."""
        if self.cols:
            return self.cols
        return math.ceil(math.sqrt(count))


def pane_boxes(grid) -> dict[int, CellBox]:
    """Bounding box of every pane index appearing in a grid template."""
    boxes: dict[int, CellBox] = {}
    for r, row in enumerate(grid):
        for c, idx in enumerate(row):
            box = boxes.get(idx)
            if box is None:
                boxes[idx] = CellBox(r, r, c, c)
            else:
                boxes[idx] = CellBox(
                    min(box.min_row, r), max(box.max_row, r),
                    min(box.min_col, c), max(box.max_col, c),
                )
    return boxes
