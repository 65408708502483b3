"""
Tests for layout parsing and grid templates
"""

import pytest

from browser2video.layout import CellBox, Layout, pane_boxes
from browser2video.pty_bridge import grid_areas


def test_parse_loose_forms():
    assert Layout.parse(None) == Layout.auto()
    assert Layout.parse("row").kind == "row"
    assert Layout.parse("column").kind == "column"
    assert Layout.parse("grid:3") == Layout.grid(3)
    assert Layout.parse({"cols": 2}) == Layout.grid(2)
    assert Layout.parse([[0, 1], [0, 2]]).template == ((0, 1), (0, 2))
    assert Layout.parse("[[0, 1], [0, 2]]").kind == "template"


def test_parse_returns_layout_unchanged():
    layout = Layout.row()
    assert Layout.parse(layout) is layout


def test_invalid_layouts_raise():
    with pytest.raises(ValueError):
        Layout.parse("diagonal")
    with pytest.raises(ValueError):
        Layout.from_template([])
    with pytest.raises(ValueError):
        Layout.grid(0)


def test_columns_for_auto_grid():
    assert Layout.auto().columns_for(1) == 1
    assert Layout.auto().columns_for(2) == 2
    assert Layout.auto().columns_for(4) == 2
    assert Layout.auto().columns_for(5) == 3
    assert Layout.grid(4).columns_for(2) == 4


def test_pane_boxes_for_spanning_template():
    boxes = pane_boxes([[0, 1], [0, 2]])
    assert boxes[0] == CellBox(0, 1, 0, 0)
    assert boxes[0].row_span == 2
    assert boxes[0].col_span == 1
    assert boxes[1] == CellBox(0, 0, 1, 1)
    assert boxes[2] == CellBox(1, 1, 1, 1)


def test_grid_areas_from_template():
    cols, rows, areas = grid_areas([[0, 1], [0, 2]], 3)
    assert (cols, rows) == (2, 2)
    assert areas == '"p0 p1" "p0 p2"'


def test_grid_areas_auto_fills_last_row():
    cols, rows, areas = grid_areas(None, 3)
    assert (cols, rows) == (2, 2)
    assert areas == '"p0 p1" "p2 p2"'
