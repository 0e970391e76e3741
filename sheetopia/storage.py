import sqlite3
import json
import logging
import uuid
from typing import Callable, List, Optional, Tuple

from sheetopia import grid
from sheetopia.models import CellFormat, GridDocument, Scalar, Spreadsheet, SpreadsheetSnapshot

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS spreadsheets (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT 'Untitled Spreadsheet',
    data_json TEXT NOT NULL DEFAULT '{}',
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);
"""


class DatabaseManager:
    def __init__(self, db_path: str):
        self.db_path = db_path

    def get_connection(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def initialize_schema(self):
        with self.get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()


class SpreadsheetRepository:
    """Stores each spreadsheet as one JSON snapshot.

    Every mutation loads the document, applies a pure grid transform,
    recalculates all formulas and writes the new snapshot back.
    Methods return None when the spreadsheet does not exist.
    """

    def __init__(self, db: DatabaseManager):
        self.db = db

    def _row_to_spreadsheet(self, row) -> Spreadsheet:
        d = dict(row)
        data = json.loads(d.pop("data_json", "{}"))
        return Spreadsheet(**d, data=SpreadsheetSnapshot.model_validate(data))

    @staticmethod
    def _dump(doc: GridDocument) -> str:
        snapshot = grid.to_snapshot(doc)
        return json.dumps(snapshot.model_dump(mode="json", by_alias=True, exclude_none=True))

    def create(self, title: str = "Untitled Spreadsheet", num_rows: int = grid.DEFAULT_ROWS,
               num_cols: int = grid.DEFAULT_COLS, snapshot: SpreadsheetSnapshot = None) -> Spreadsheet:
        sheet_id = str(uuid.uuid4())
        if snapshot is not None:
            doc = grid.recalculate(grid.from_snapshot(snapshot))
        else:
            doc = grid.create_empty(num_rows, num_cols)
        with self.db.get_connection() as conn:
            conn.execute(
                "INSERT INTO spreadsheets (id, title, data_json) VALUES (?, ?, ?)",
                (sheet_id, title, self._dump(doc)),
            )
            conn.commit()
        logger.info("Created spreadsheet %s (%dx%d)", sheet_id, doc.num_rows, doc.num_cols)
        return self.get_by_id(sheet_id)

    def get_by_id(self, sheet_id: str) -> Optional[Spreadsheet]:
        with self.db.get_connection() as conn:
            row = conn.execute("SELECT * FROM spreadsheets WHERE id = ?", (sheet_id,)).fetchone()
            return self._row_to_spreadsheet(row) if row else None

    def get_all(self) -> List[Spreadsheet]:
        with self.db.get_connection() as conn:
            rows = conn.execute("SELECT * FROM spreadsheets ORDER BY updated_at DESC").fetchall()
            return [self._row_to_spreadsheet(r) for r in rows]

    def get_document(self, sheet_id: str) -> Optional[GridDocument]:
        sheet = self.get_by_id(sheet_id)
        return grid.from_snapshot(sheet.data) if sheet else None

    def _save(self, conn, sheet_id: str, doc: GridDocument):
        """Recalculate formulas and persist the snapshot."""
        doc = grid.recalculate(doc)
        conn.execute(
            "UPDATE spreadsheets SET data_json = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (self._dump(doc), sheet_id),
        )
        conn.commit()

    def _apply(self, sheet_id: str, transform: Callable[[GridDocument], GridDocument]) -> Optional[Spreadsheet]:
        with self.db.get_connection() as conn:
            doc = self.get_document(sheet_id)
            if doc is None:
                return None
            self._save(conn, sheet_id, transform(doc))
            return self.get_by_id(sheet_id)

    # ── Cell edits ────────────────────────────────────────────────

    def update_cell(self, sheet_id: str, row_index: int, col_index: int, value: Scalar) -> Optional[Spreadsheet]:
        doc = self.get_document(sheet_id)
        if doc is None:
            return None
        if not (0 <= row_index < doc.num_rows and 0 <= col_index < doc.num_cols):
            return None
        return self._apply(sheet_id, lambda d: grid.commit_input(d, row_index, col_index, value))

    def update_format(self, sheet_id: str, row_index: int, col_index: int, fmt: CellFormat) -> Optional[Spreadsheet]:
        doc = self.get_document(sheet_id)
        if doc is None:
            return None
        if not (0 <= row_index < doc.num_rows and 0 <= col_index < doc.num_cols):
            return None
        return self._apply(sheet_id, lambda d: grid.set_cell_format(d, row_index, col_index, fmt))

    def clear_range(self, sheet_id: str, top: int, left: int, bottom: int, right: int) -> Optional[Spreadsheet]:
        return self._apply(sheet_id, lambda d: grid.clear_range(d, top, left, bottom, right))

    def update_sizes(self, sheet_id: str, column_widths: dict = None, row_heights: dict = None) -> Optional[Spreadsheet]:
        """Set column widths / row heights. Raises IndexError for indices outside the grid."""
        def _resize(doc: GridDocument) -> GridDocument:
            for col, width in (column_widths or {}).items():
                doc = grid.set_column_width(doc, int(col), width)
            for row, height in (row_heights or {}).items():
                doc = grid.set_row_height(doc, int(row), height)
            return doc
        return self._apply(sheet_id, _resize)

    # ── Row / column mutations ────────────────────────────────────

    def insert_row(self, sheet_id: str, row_index: int) -> Optional[Spreadsheet]:
        doc = self.get_document(sheet_id)
        if doc is None or not 0 <= row_index <= doc.num_rows:
            return None
        return self._apply(sheet_id, lambda d: grid.add_row(d, row_index))

    def insert_column(self, sheet_id: str, col_index: int) -> Optional[Spreadsheet]:
        doc = self.get_document(sheet_id)
        if doc is None or not 0 <= col_index <= doc.num_cols:
            return None
        return self._apply(sheet_id, lambda d: grid.add_column(d, col_index))

    def delete_row(self, sheet_id: str, row_index: int) -> Optional[Spreadsheet]:
        """Raises ValueError when the row is the last one left."""
        doc = self.get_document(sheet_id)
        if doc is None or not 0 <= row_index < doc.num_rows:
            return None
        return self._apply(sheet_id, lambda d: grid.delete_row(d, row_index))

    def delete_column(self, sheet_id: str, col_index: int) -> Optional[Spreadsheet]:
        """Raises ValueError when the column is the last one left."""
        doc = self.get_document(sheet_id)
        if doc is None or not 0 <= col_index < doc.num_cols:
            return None
        return self._apply(sheet_id, lambda d: grid.delete_column(d, col_index))

    # ── Range operations ──────────────────────────────────────────

    def find_replace(self, sheet_id: str, find: str, replace: str,
                     bounds: Optional[Tuple[int, int, int, int]] = None) -> Optional[Spreadsheet]:
        return self._apply(sheet_id, lambda d: grid.find_and_replace(d, find, replace, bounds))

    def remove_duplicates(self, sheet_id: str, top: int, left: int, bottom: int, right: int) -> Optional[Spreadsheet]:
        return self._apply(sheet_id, lambda d: grid.remove_duplicates(d, top, left, bottom, right))

    def recalculate(self, sheet_id: str) -> Optional[Spreadsheet]:
        return self._apply(sheet_id, lambda d: d)

    # ── Whole-sheet operations ────────────────────────────────────

    def update_title(self, sheet_id: str, title: str) -> Optional[Spreadsheet]:
        with self.db.get_connection() as conn:
            conn.execute("UPDATE spreadsheets SET title = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?", (title, sheet_id))
            conn.commit()
            return self.get_by_id(sheet_id)

    def restore_data(self, sheet_id: str, snapshot: SpreadsheetSnapshot) -> Optional[Spreadsheet]:
        """Wholesale replace the grid (used by load and undo/redo)."""
        with self.db.get_connection() as conn:
            existing = conn.execute("SELECT id FROM spreadsheets WHERE id = ?", (sheet_id,)).fetchone()
            if not existing:
                return None
            self._save(conn, sheet_id, grid.from_snapshot(snapshot))
            return self.get_by_id(sheet_id)

    def duplicate(self, sheet_id: str) -> Optional[Spreadsheet]:
        sheet = self.get_by_id(sheet_id)
        if not sheet:
            return None
        return self.create(title=f"{sheet.title} (copy)", snapshot=sheet.data)

    def delete(self, sheet_id: str) -> bool:
        with self.db.get_connection() as conn:
            conn.execute("DELETE FROM spreadsheets WHERE id = ?", (sheet_id,))
            conn.commit()
            return True
