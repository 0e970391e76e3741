"""Grid document operations.

Every function takes a GridDocument and returns a new one; the argument is
never mutated, so callers can keep old documents around for undo/redo.
Formula text is never rewritten here: inserting or deleting rows/columns
moves cells, not the references inside other cells' formulas.
"""

import logging
from typing import Dict, List, Optional, Tuple, TypeVar, Union

from sheetopia.formula import SheetValues, evaluate_formula, format_result, index_to_col
from sheetopia.models import (
    DEFAULT_COLS,
    DEFAULT_ROWS,
    Cell,
    CellFormat,
    GridDocument,
    Scalar,
    SpreadsheetSnapshot,
)

logger = logging.getLogger(__name__)

DEFAULT_COLUMN_WIDTH = 64
DEFAULT_ROW_HEIGHT = 24

_V = TypeVar("_V")


# ── Construction / lookup ─────────────────────────────────────────

def create_empty(rows: int = DEFAULT_ROWS, cols: int = DEFAULT_COLS) -> GridDocument:
    return GridDocument(num_rows=max(1, rows), num_cols=max(1, cols))


def _check_bounds(doc: GridDocument, row: int, col: int) -> None:
    if not (0 <= row < doc.num_rows and 0 <= col < doc.num_cols):
        raise IndexError(f"Cell ({row}, {col}) outside {doc.num_rows}x{doc.num_cols} grid")


def get_cell(doc: GridDocument, row: int, col: int) -> Cell:
    cell = doc.cells.get((row, col))
    return cell if cell is not None else Cell()


def set_cell(doc: GridDocument, row: int, col: int, value: Scalar,
             formula: Optional[str] = None) -> GridDocument:
    """Store value (and formula) at (row, col), keeping the cell's format."""
    _check_bounds(doc, row, col)
    existing = doc.cells.get((row, col))
    cells = dict(doc.cells)
    cells[(row, col)] = Cell(value=value, formula=formula,
                             format=existing.format if existing else None)
    return doc.model_copy(update={"cells": cells})


def commit_input(doc: GridDocument, row: int, col: int, raw: Scalar) -> GridDocument:
    """Apply what the user typed into a cell.

    Text starting with '=' becomes the cell's formula and is evaluated in
    place; anything else is stored literally and clears the formula.
    """
    if isinstance(raw, str) and raw.startswith('='):
        result = evaluate_formula(raw, snapshot_values(doc), row, col)
        return set_cell(doc, row, col, result, raw)
    return set_cell(doc, row, col, raw)


def set_cell_format(doc: GridDocument, row: int, col: int,
                    fmt: Union[CellFormat, dict]) -> GridDocument:
    """Merge *fmt* into the cell's format; unset fields keep their value."""
    _check_bounds(doc, row, col)
    if isinstance(fmt, CellFormat):
        update = fmt.model_dump(exclude_none=True)
    else:
        update = CellFormat.model_validate(fmt).model_dump(exclude_none=True)
    existing = get_cell(doc, row, col)
    merged = existing.format.model_dump() if existing.format else {}
    merged.update(update)
    cells = dict(doc.cells)
    cells[(row, col)] = existing.model_copy(update={"format": CellFormat(**merged)})
    return doc.model_copy(update={"cells": cells})


def clear_range(doc: GridDocument, top: int, left: int, bottom: int, right: int) -> GridDocument:
    """Drop value, formula and format of every cell in the inclusive rectangle."""
    top, bottom = min(top, bottom), max(top, bottom)
    left, right = min(left, right), max(left, right)
    cells = {
        (r, c): cell for (r, c), cell in doc.cells.items()
        if not (top <= r <= bottom and left <= c <= right)
    }
    return doc.model_copy(update={"cells": cells})


def set_column_width(doc: GridDocument, col: int, width: float) -> GridDocument:
    if not 0 <= col < doc.num_cols:
        raise IndexError(f"Column {col} outside grid")
    widths = dict(doc.column_widths)
    widths[col] = width
    return doc.model_copy(update={"column_widths": widths})


def set_row_height(doc: GridDocument, row: int, height: float) -> GridDocument:
    if not 0 <= row < doc.num_rows:
        raise IndexError(f"Row {row} outside grid")
    heights = dict(doc.row_heights)
    heights[row] = height
    return doc.model_copy(update={"row_heights": heights})


def column_width(doc: GridDocument, col: int) -> float:
    return doc.column_widths.get(col, DEFAULT_COLUMN_WIDTH)


def row_height(doc: GridDocument, row: int) -> float:
    return doc.row_heights.get(row, DEFAULT_ROW_HEIGHT)


# ── Structural edits ──────────────────────────────────────────────

def _shift_cells(cells: Dict[Tuple[int, int], Cell], axis: str, index: int,
                 delta: int) -> Dict[Tuple[int, int], Cell]:
    """Re-key cells on insert (delta=+1) or delete (delta=-1).
    axis: 'row' or 'col'."""
    new = {}
    for (r, c), cell in cells.items():
        pos = r if axis == 'row' else c
        if delta == -1 and pos == index:
            continue  # cell in the deleted row/column is dropped
        if delta == -1 and pos > index:
            pos -= 1
        elif delta == 1 and pos >= index:
            pos += 1
        if axis == 'row':
            r = pos
        else:
            c = pos
        new[(r, c)] = cell
    return new


def _shift_sizes(sizes: Dict[int, _V], index: int, delta: int) -> Dict[int, _V]:
    new = {}
    for pos, size in sizes.items():
        if delta == -1 and pos == index:
            continue
        if delta == -1 and pos > index:
            pos -= 1
        elif delta == 1 and pos >= index:
            pos += 1
        new[pos] = size
    return new


def add_row(doc: GridDocument, at_index: int) -> GridDocument:
    """Insert a blank row before *at_index* (== num_rows appends)."""
    if not 0 <= at_index <= doc.num_rows:
        raise IndexError(f"Row {at_index} outside grid")
    logger.debug("Inserting row at %d", at_index)
    return doc.model_copy(update={
        "cells": _shift_cells(doc.cells, 'row', at_index, +1),
        "row_heights": _shift_sizes(doc.row_heights, at_index, +1),
        "num_rows": doc.num_rows + 1,
    })


def add_column(doc: GridDocument, at_index: int) -> GridDocument:
    """Insert a blank column before *at_index* (== num_cols appends)."""
    if not 0 <= at_index <= doc.num_cols:
        raise IndexError(f"Column {at_index} outside grid")
    logger.debug("Inserting column at %d", at_index)
    return doc.model_copy(update={
        "cells": _shift_cells(doc.cells, 'col', at_index, +1),
        "column_widths": _shift_sizes(doc.column_widths, at_index, +1),
        "num_cols": doc.num_cols + 1,
    })


def delete_row(doc: GridDocument, at_index: int) -> GridDocument:
    if not 0 <= at_index < doc.num_rows:
        raise IndexError(f"Row {at_index} outside grid")
    if doc.num_rows == 1:
        raise ValueError("Cannot delete the last row")
    logger.debug("Deleting row %d", at_index)
    return doc.model_copy(update={
        "cells": _shift_cells(doc.cells, 'row', at_index, -1),
        "row_heights": _shift_sizes(doc.row_heights, at_index, -1),
        "num_rows": doc.num_rows - 1,
    })


def delete_column(doc: GridDocument, at_index: int) -> GridDocument:
    if not 0 <= at_index < doc.num_cols:
        raise IndexError(f"Column {at_index} outside grid")
    if doc.num_cols == 1:
        raise ValueError("Cannot delete the last column")
    logger.debug("Deleting column %d", at_index)
    return doc.model_copy(update={
        "cells": _shift_cells(doc.cells, 'col', at_index, -1),
        "column_widths": _shift_sizes(doc.column_widths, at_index, -1),
        "num_cols": doc.num_cols - 1,
    })


# ── Evaluation ────────────────────────────────────────────────────

def snapshot_values(doc: GridDocument) -> SheetValues:
    return SheetValues(
        {key: cell.value for key, cell in doc.cells.items() if cell.value is not None},
        doc.num_rows,
        doc.num_cols,
    )


def values_as_matrix(doc: GridDocument) -> List[List[Scalar]]:
    """Row-major num_rows x num_cols list of values (None for empty)."""
    matrix: List[List[Scalar]] = [[None] * doc.num_cols for _ in range(doc.num_rows)]
    for (r, c), cell in doc.cells.items():
        if r < doc.num_rows and c < doc.num_cols:
            matrix[r][c] = cell.value
    return matrix


def recalculate(doc: GridDocument) -> GridDocument:
    """Re-evaluate every formula cell in one pass.

    All formulas read the values as they were before the pass, so a formula
    that reads another formula cell may see that cell's previous result.
    """
    values = snapshot_values(doc)
    cells = dict(doc.cells)
    count = 0
    for (r, c), cell in doc.cells.items():
        if not cell.formula:
            continue
        cells[(r, c)] = cell.model_copy(update={"value": evaluate_formula(cell.formula, values, r, c)})
        count += 1
    logger.debug("Recalculated %d formula cells", count)
    return doc.model_copy(update={"cells": cells})


# ── Snapshots ─────────────────────────────────────────────────────

def cell_key(row: int, col: int) -> str:
    return f"{row},{col}"


def parse_cell_key(key: str) -> Tuple[int, int]:
    """'3,4' -> (3, 4). Raises ValueError on malformed keys."""
    parts = key.split(',')
    if len(parts) != 2:
        raise ValueError(f"Bad cell key: {key!r}")
    r, c = int(parts[0]), int(parts[1])
    if r < 0 or c < 0:
        raise ValueError(f"Bad cell key: {key!r}")
    return r, c


def to_snapshot(doc: GridDocument) -> SpreadsheetSnapshot:
    return SpreadsheetSnapshot(
        cells={cell_key(r, c): cell for (r, c), cell in doc.cells.items()},
        column_widths=dict(doc.column_widths),
        row_heights=dict(doc.row_heights),
        num_rows=doc.num_rows,
        num_cols=doc.num_cols,
    )


def from_snapshot(snapshot: SpreadsheetSnapshot) -> GridDocument:
    """Inverse of to_snapshot(). Cells outside the stated dimensions are dropped."""
    cells = {}
    for key, cell in snapshot.cells.items():
        r, c = parse_cell_key(key)
        if r >= snapshot.num_rows or c >= snapshot.num_cols:
            logger.warning("Dropping cell %s outside %dx%d grid", key, snapshot.num_rows, snapshot.num_cols)
            continue
        cells[(r, c)] = cell
    return GridDocument(
        cells=cells,
        column_widths=dict(snapshot.column_widths),
        row_heights=dict(snapshot.row_heights),
        num_rows=snapshot.num_rows,
        num_cols=snapshot.num_cols,
    )


# ── Display ───────────────────────────────────────────────────────

def display_value(cell: Cell) -> str:
    if cell.value is None:
        return ""
    if isinstance(cell.value, (int, float)) and not isinstance(cell.value, bool):
        return format_result(cell.value)
    return str(cell.value)


def column_headers(num_cols: int) -> List[str]:
    return [index_to_col(i) for i in range(num_cols)]


def row_headers(num_rows: int) -> List[int]:
    return [i + 1 for i in range(num_rows)]


# ── Range utilities ───────────────────────────────────────────────

def find_and_replace(doc: GridDocument, find: str, replace: str,
                     bounds: Optional[Tuple[int, int, int, int]] = None) -> GridDocument:
    """Replace *find* with *replace* in the text of literal cells.

    bounds: optional inclusive (top, left, bottom, right). Formula cells are skipped.
    """
    if not find:
        raise ValueError("Nothing to find")
    cells = dict(doc.cells)
    changed = 0
    for (r, c), cell in doc.cells.items():
        if bounds is not None:
            top, left, bottom, right = bounds
            if not (top <= r <= bottom and left <= c <= right):
                continue
        if cell.formula or not isinstance(cell.value, str) or find not in cell.value:
            continue
        cells[(r, c)] = cell.model_copy(update={"value": cell.value.replace(find, replace)})
        changed += 1
    logger.debug("find_and_replace changed %d cells", changed)
    return doc.model_copy(update={"cells": cells})


def remove_duplicates(doc: GridDocument, top: int, left: int, bottom: int, right: int) -> GridDocument:
    """Drop repeated rows inside the rectangle, keeping first occurrences.

    Kept rows move up to close the gaps; rows freed at the bottom are cleared.
    Only cells inside the rectangle are touched.
    """
    top, bottom = max(0, min(top, bottom)), min(doc.num_rows - 1, max(top, bottom))
    left, right = max(0, min(left, right)), min(doc.num_cols - 1, max(left, right))
    seen = set()
    kept: List[List[Optional[Cell]]] = []
    for r in range(top, bottom + 1):
        row_cells = [doc.cells.get((r, c)) for c in range(left, right + 1)]
        signature = tuple(cell.value if cell else None for cell in row_cells)
        if signature in seen:
            continue
        seen.add(signature)
        kept.append(row_cells)

    cells = {
        (r, c): cell for (r, c), cell in doc.cells.items()
        if not (top <= r <= bottom and left <= c <= right)
    }
    for offset, row_cells in enumerate(kept):
        for c_offset, cell in enumerate(row_cells):
            if cell is not None:
                cells[(top + offset, left + c_offset)] = cell
    logger.debug("remove_duplicates kept %d of %d rows", len(kept), bottom - top + 1)
    return doc.model_copy(update={"cells": cells})
