import sys
import os
import logging
from typing import List
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

def get_app_data_dir() -> str:
    """Return a user-writable data directory for Sheetopia (created if absent)."""
    override = os.environ.get("SHEETOPIA_DATA_DIR")
    if override:
        os.makedirs(override, exist_ok=True)
        return override
    if sys.platform == "win32":
        base = os.environ.get("APPDATA") or os.path.expanduser("~")
    elif sys.platform == "darwin":
        base = os.path.expanduser("~/Library/Application Support")
    else:
        base = os.environ.get("XDG_DATA_HOME") or os.path.expanduser("~/.local/share")
    app_dir = os.path.join(base, "Sheetopia")
    os.makedirs(app_dir, exist_ok=True)
    return app_dir

# Load .env from app-data dir first, then fall back to CWD (dev)
load_dotenv(os.path.join(get_app_data_dir(), ".env"))
load_dotenv()

from sheetopia import grid
from sheetopia.formula import evaluate_formula
from sheetopia.models import (
    Cell, FormulaEvaluateRequest, FormulaEvaluateResponse, Scalar, Spreadsheet, SpreadsheetCreate,
    SpreadsheetDeleteColumn, SpreadsheetDeleteRow, SpreadsheetFindReplace, SpreadsheetInsertColumn,
    SpreadsheetInsertRow, SpreadsheetRange, SpreadsheetSnapshot, SpreadsheetUpdateCell,
    SpreadsheetUpdateFormat, SpreadsheetUpdateSizes, SpreadsheetView,
)
from sheetopia.storage import DatabaseManager, SpreadsheetRepository

logger = logging.getLogger(__name__)

DB_NAME = os.getenv("SHEETOPIA_DB_NAME", "sheetopia.db")
# New sheets never start smaller than the editor's 50x26 minimum
DEFAULT_ROWS = max(grid.DEFAULT_ROWS, int(os.getenv("SHEETOPIA_DEFAULT_ROWS", str(grid.DEFAULT_ROWS))))
DEFAULT_COLS = max(grid.DEFAULT_COLS, int(os.getenv("SHEETOPIA_DEFAULT_COLS", str(grid.DEFAULT_COLS))))
CORS_ORIGINS = [o.strip() for o in os.getenv("SHEETOPIA_CORS_ORIGINS", "*").split(",") if o.strip()]


app = FastAPI(title="Sheetopia")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

db = DatabaseManager(os.path.join(get_app_data_dir(), DB_NAME))
db.initialize_schema()

spreadsheet_repo = SpreadsheetRepository(db)


def _found(sheet, detail: str = "Spreadsheet not found") -> Spreadsheet:
    if not sheet:
        raise HTTPException(status_code=404, detail=detail)
    return sheet


# ── Spreadsheets ──────────────────────────────────────────────────

@app.post("/spreadsheets", response_model=Spreadsheet)
async def create_spreadsheet(req: SpreadsheetCreate):
    return spreadsheet_repo.create(
        title=req.title,
        num_rows=max(req.num_rows or DEFAULT_ROWS, grid.DEFAULT_ROWS),
        num_cols=max(req.num_cols or DEFAULT_COLS, grid.DEFAULT_COLS),
    )

@app.get("/spreadsheets", response_model=List[Spreadsheet])
async def list_spreadsheets():
    return spreadsheet_repo.get_all()

@app.get("/spreadsheets/{sheet_id}", response_model=Spreadsheet)
async def get_spreadsheet(sheet_id: str):
    return _found(spreadsheet_repo.get_by_id(sheet_id))

@app.delete("/spreadsheets/{sheet_id}")
async def delete_spreadsheet(sheet_id: str):
    _found(spreadsheet_repo.get_by_id(sheet_id))
    spreadsheet_repo.delete(sheet_id)
    logger.info("Deleted spreadsheet %s", sheet_id)
    return {"ok": True}

@app.post("/spreadsheets/{sheet_id}/duplicate", response_model=Spreadsheet)
async def duplicate_spreadsheet(sheet_id: str):
    return _found(spreadsheet_repo.duplicate(sheet_id))

@app.put("/spreadsheets/{sheet_id}/title", response_model=Spreadsheet)
async def update_spreadsheet_title(sheet_id: str, body: dict):
    title = str(body.get("title", "")).strip()
    if not title:
        raise HTTPException(status_code=400, detail="Title is required")
    return _found(spreadsheet_repo.update_title(sheet_id, title))

@app.get("/spreadsheets/{sheet_id}/data", response_model=SpreadsheetSnapshot, response_model_by_alias=True)
async def export_spreadsheet_data(sheet_id: str):
    return _found(spreadsheet_repo.get_by_id(sheet_id)).data

@app.put("/spreadsheets/{sheet_id}/data", response_model=Spreadsheet)
async def restore_spreadsheet_data(sheet_id: str, snapshot: SpreadsheetSnapshot):
    """Wholesale replace the grid (load, undo/redo)."""
    try:
        sheet = spreadsheet_repo.restore_data(sheet_id, snapshot)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _found(sheet)

@app.get("/spreadsheets/{sheet_id}/view", response_model=SpreadsheetView)
async def view_spreadsheet(sheet_id: str):
    """Headers, sizes and display strings for the grid renderer."""
    doc = spreadsheet_repo.get_document(sheet_id)
    if doc is None:
        raise HTTPException(status_code=404, detail="Spreadsheet not found")
    return SpreadsheetView(
        column_headers=grid.column_headers(doc.num_cols),
        row_headers=grid.row_headers(doc.num_rows),
        column_widths=[grid.column_width(doc, c) for c in range(doc.num_cols)],
        row_heights=[grid.row_height(doc, r) for r in range(doc.num_rows)],
        cells={grid.cell_key(r, c): grid.display_value(cell) for (r, c), cell in doc.cells.items()},
    )

@app.get("/spreadsheets/{sheet_id}/values", response_model=List[List[Scalar]])
async def export_spreadsheet_values(sheet_id: str):
    """Row-major value matrix (None for empty cells), e.g. for CSV export."""
    doc = spreadsheet_repo.get_document(sheet_id)
    if doc is None:
        raise HTTPException(status_code=404, detail="Spreadsheet not found")
    return grid.values_as_matrix(doc)

# ── Cells ─────────────────────────────────────────────────────────

@app.put("/spreadsheets/{sheet_id}/cell", response_model=Spreadsheet)
async def update_spreadsheet_cell(sheet_id: str, req: SpreadsheetUpdateCell):
    sheet = spreadsheet_repo.update_cell(sheet_id, req.row_index, req.col_index, req.value)
    return _found(sheet, "Spreadsheet not found or invalid indices")

@app.put("/spreadsheets/{sheet_id}/format", response_model=Spreadsheet)
async def update_spreadsheet_format(sheet_id: str, req: SpreadsheetUpdateFormat):
    sheet = spreadsheet_repo.update_format(sheet_id, req.row_index, req.col_index, req.format)
    return _found(sheet, "Spreadsheet not found or invalid indices")

@app.put("/spreadsheets/{sheet_id}/clear-range", response_model=Spreadsheet)
async def clear_spreadsheet_range(sheet_id: str, req: SpreadsheetRange):
    return _found(spreadsheet_repo.clear_range(sheet_id, req.top, req.left, req.bottom, req.right))

@app.put("/spreadsheets/{sheet_id}/sizes", response_model=Spreadsheet)
async def update_spreadsheet_sizes(sheet_id: str, req: SpreadsheetUpdateSizes):
    try:
        sheet = spreadsheet_repo.update_sizes(sheet_id, req.column_widths, req.row_heights)
    except IndexError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _found(sheet)

@app.post("/spreadsheets/{sheet_id}/evaluate", response_model=FormulaEvaluateResponse)
async def evaluate_spreadsheet_formula(sheet_id: str, req: FormulaEvaluateRequest):
    """Evaluate a formula at an anchor cell without storing it."""
    doc = spreadsheet_repo.get_document(sheet_id)
    if doc is None:
        raise HTTPException(status_code=404, detail="Spreadsheet not found")
    value = evaluate_formula(req.formula, grid.snapshot_values(doc), req.row_index, req.col_index)
    return FormulaEvaluateResponse(value=value, display=grid.display_value(Cell(value=value)))

@app.post("/spreadsheets/{sheet_id}/recalculate", response_model=Spreadsheet)
async def recalculate_spreadsheet(sheet_id: str):
    return _found(spreadsheet_repo.recalculate(sheet_id))

# ── Rows / columns ────────────────────────────────────────────────

@app.post("/spreadsheets/{sheet_id}/rows/insert", response_model=Spreadsheet)
async def insert_spreadsheet_row(sheet_id: str, req: SpreadsheetInsertRow):
    sheet = spreadsheet_repo.insert_row(sheet_id, req.row_index)
    return _found(sheet, "Spreadsheet not found or invalid row index")

@app.delete("/spreadsheets/{sheet_id}/rows", response_model=Spreadsheet)
async def delete_spreadsheet_row(sheet_id: str, req: SpreadsheetDeleteRow):
    try:
        sheet = spreadsheet_repo.delete_row(sheet_id, req.row_index)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _found(sheet, "Spreadsheet not found or invalid row index")

@app.post("/spreadsheets/{sheet_id}/columns/insert", response_model=Spreadsheet)
async def insert_spreadsheet_column(sheet_id: str, req: SpreadsheetInsertColumn):
    sheet = spreadsheet_repo.insert_column(sheet_id, req.col_index)
    return _found(sheet, "Spreadsheet not found or invalid column index")

@app.delete("/spreadsheets/{sheet_id}/columns", response_model=Spreadsheet)
async def delete_spreadsheet_column(sheet_id: str, req: SpreadsheetDeleteColumn):
    try:
        sheet = spreadsheet_repo.delete_column(sheet_id, req.col_index)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _found(sheet, "Spreadsheet not found or invalid column index")

# ── Range operations ──────────────────────────────────────────────

@app.put("/spreadsheets/{sheet_id}/find-replace", response_model=Spreadsheet)
async def find_replace_spreadsheet(sheet_id: str, req: SpreadsheetFindReplace):
    bounds = None
    if req.range is not None:
        bounds = (req.range.top, req.range.left, req.range.bottom, req.range.right)
    return _found(spreadsheet_repo.find_replace(sheet_id, req.find, req.replace, bounds))

@app.put("/spreadsheets/{sheet_id}/remove-duplicates", response_model=Spreadsheet)
async def remove_spreadsheet_duplicates(sheet_id: str, req: SpreadsheetRange):
    return _found(spreadsheet_repo.remove_duplicates(sheet_id, req.top, req.left, req.bottom, req.right))


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=os.getenv("SHEETOPIA_LOG_LEVEL", "INFO").upper())
    host = os.getenv("SHEETOPIA_HOST", "127.0.0.1")
    port = int(os.getenv("SHEETOPIA_PORT", "8000"))
    print(f"[STARTUP] Sheetopia on {host}:{port}, data in {get_app_data_dir()}")
    uvicorn.run(app, host=host, port=port, timeout_keep_alive=5)
