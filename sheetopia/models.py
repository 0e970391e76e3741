from typing import Dict, List, Optional, Tuple, Union
from pydantic import BaseModel, ConfigDict, Field

Scalar = Optional[Union[int, float, str]]

DEFAULT_ROWS = 50
DEFAULT_COLS = 26


class CellFormat(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    bold: Optional[bool] = None
    italic: Optional[bool] = None
    color: Optional[str] = None
    bg_color: Optional[str] = Field(default=None, alias="bgColor")
    font_size: Optional[float] = Field(default=None, alias="fontSize")


class Cell(BaseModel):
    """A stored cell. `value` caches the last result when `formula` is set."""
    model_config = ConfigDict(frozen=True)

    value: Scalar = None
    formula: Optional[str] = None
    format: Optional[CellFormat] = None


class GridDocument(BaseModel):
    """Sparse grid: absent (row, col) keys are empty cells.

    Treated as an immutable value; grid.py functions return new instances.
    """
    model_config = ConfigDict(frozen=True)

    cells: Dict[Tuple[int, int], Cell] = Field(default_factory=dict)
    column_widths: Dict[int, float] = Field(default_factory=dict)
    row_heights: Dict[int, float] = Field(default_factory=dict)
    num_rows: int = Field(default=DEFAULT_ROWS, ge=1)
    num_cols: int = Field(default=DEFAULT_COLS, ge=1)


class SpreadsheetSnapshot(BaseModel):
    """Serializable form of a GridDocument; cell keys are "row,col"."""
    model_config = ConfigDict(populate_by_name=True)

    cells: Dict[str, Cell] = Field(default_factory=dict)
    column_widths: Dict[int, float] = Field(default_factory=dict, alias="columnWidths")
    row_heights: Dict[int, float] = Field(default_factory=dict, alias="rowHeights")
    num_rows: int = Field(default=DEFAULT_ROWS, ge=1, alias="numRows")
    num_cols: int = Field(default=DEFAULT_COLS, ge=1, alias="numCols")


class Spreadsheet(BaseModel):
    id: Optional[str] = Field(default=None)
    title: str = "Untitled Spreadsheet"
    data: SpreadsheetSnapshot = Field(default_factory=SpreadsheetSnapshot)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class SpreadsheetCreate(BaseModel):
    title: str = "Untitled Spreadsheet"
    num_rows: Optional[int] = Field(default=None, ge=1)
    num_cols: Optional[int] = Field(default=None, ge=1)


class SpreadsheetUpdateCell(BaseModel):
    row_index: int
    col_index: int
    value: Scalar = None


class SpreadsheetUpdateFormat(BaseModel):
    row_index: int
    col_index: int
    format: CellFormat


class SpreadsheetUpdateSizes(BaseModel):
    column_widths: Dict[int, float] = Field(default_factory=dict)
    row_heights: Dict[int, float] = Field(default_factory=dict)


class SpreadsheetRange(BaseModel):
    """Inclusive rectangle of zero-based coordinates."""
    top: int = Field(ge=0)
    left: int = Field(ge=0)
    bottom: int = Field(ge=0)
    right: int = Field(ge=0)


class SpreadsheetInsertRow(BaseModel):
    row_index: int


class SpreadsheetDeleteRow(BaseModel):
    row_index: int


class SpreadsheetInsertColumn(BaseModel):
    col_index: int


class SpreadsheetDeleteColumn(BaseModel):
    col_index: int


class SpreadsheetFindReplace(BaseModel):
    find: str = Field(min_length=1)
    replace: str = ""
    range: Optional[SpreadsheetRange] = None


class FormulaEvaluateRequest(BaseModel):
    formula: str
    row_index: int = 0
    col_index: int = 0


class FormulaEvaluateResponse(BaseModel):
    value: Scalar = None
    display: str = ""


class SpreadsheetView(BaseModel):
    column_headers: List[str]
    row_headers: List[int]
    column_widths: List[float]
    row_heights: List[float]
    cells: Dict[str, str]
