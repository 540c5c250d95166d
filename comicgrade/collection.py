from __future__ import annotations

import re
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd
from loguru import logger

from .config import COLLECTION_PATH
from .constants import CGC_GRADE_LABELS, ITEM_STATUSES
from .normalize import basic_clean, normalize_defects
from .pipeline_types import GradableItem
from .utils.numbers import round_to_tenth


# ---------------------------
# Column detection / standardization
# ---------------------------

# Collections come from spreadsheets kept by hand, so several headers map
# onto each canonical column.
COLUMN_CANDIDATES: Dict[str, List[str]] = {
    "item_id": ["item_id", "id", "ID", "Item ID", "sku", "SKU"],
    "title": ["title", "Title", "Series", "Comic", "Book", "Name"],
    "issue": ["issue", "Issue", "Issue #", "Issue No", "issue_number", "Number", "#"],
    "publisher": ["publisher", "Publisher", "Pub"],
    "year": ["year", "Year", "Cover Year", "Published", "cover_date"],
    "key_issue_raw": ["key_issue", "Key Issue", "Key", "is_key"],
    "known_defects_raw": ["known_defects", "Known Defects", "Defects", "Notes"],
    "grade_raw": ["grade", "Grade", "CGC", "CGC Grade"],
    "estimated_value_raw": ["estimated_value", "Value", "Estimated Value", "FMV"],
    "confidence_raw": ["consensus_confidence", "Confidence"],
    "status_raw": ["status", "Status"],
}

CANONICAL_COLUMNS = [
    "item_id",
    "title",
    "issue",
    "publisher",
    "year",
    "key_issue",
    "known_defects",
    "grade",
    "estimated_value",
    "consensus_confidence",
    "status",
]


def _standardize_columns(df: pd.DataFrame) -> pd.DataFrame:
    col_map: Dict[str, str] = {}
    lower_to_original = {str(c).lower(): c for c in df.columns}

    for canon, candidates in COLUMN_CANDIDATES.items():
        for candidate in candidates:
            if candidate in df.columns and candidate not in col_map:
                col_map[candidate] = canon
                break
            original = lower_to_original.get(candidate.lower())
            if original is not None and original not in col_map:
                col_map[original] = canon
                break

    logger.info("Standardizing collection columns with map: {}", col_map)
    df_std = df.rename(columns=col_map)

    missing = [c for c in ("title", "issue") if c not in df_std.columns]
    if missing:
        logger.warning("Collection is missing required columns: {}", missing)
    return df_std


# ---------------------------
# Field parsing helpers
# ---------------------------

def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, float) and pd.isna(value))


def _parse_year(value: Any) -> Optional[int]:
    if _is_missing(value):
        return None
    m = re.search(r"\b(1[89]\d\d|20\d\d)\b", str(value))
    return int(m.group(1)) if m else None


def _parse_flag(value: Any) -> bool:
    if _is_missing(value):
        return False
    if isinstance(value, str):
        return value.strip().lower() in {"yes", "y", "true", "1", "key", "x"}
    return bool(value)


def _parse_optional_number(value: Any) -> Optional[float]:
    if _is_missing(value):
        return None
    m = re.search(r"-?\d[\d,]*(?:\.\d+)?", str(value))
    if not m:
        return None
    return float(m.group(0).replace(",", ""))


def _parse_status(value: Any, has_grade: bool) -> str:
    if not _is_missing(value):
        s = str(value).strip().lower().replace(" ", "_")
        if s == "pending":
            s = "pending_review"
        if s in ITEM_STATUSES:
            return s
    return "graded" if has_grade else "ungraded"


# ---------------------------
# Collection normalization
# ---------------------------

def normalize_collection_df(df_raw: pd.DataFrame) -> pd.DataFrame:
    """
    Raw spreadsheet -> canonical collection frame.

    Rows without a title are dropped; issue numbers lose their leading "#".
    Missing ids are generated so every row can be addressed later.
    """
    logger.info("Normalizing collection dataframe with {} raw rows", len(df_raw))
    df = _standardize_columns(df_raw.copy())

    if "title" not in df.columns:
        logger.error("No title column found after standardization; resulting collection will be empty.")
        return pd.DataFrame(columns=CANONICAL_COLUMNS)

    df["title"] = df["title"].fillna("").astype(str).map(basic_clean)
    df = df[df["title"] != ""].reset_index(drop=True)

    if "issue" in df.columns:
        df["issue"] = df["issue"].map(lambda v: "" if _is_missing(v) else str(v).strip().lstrip("#").strip())
        # "12.0" from numeric spreadsheet cells
        df["issue"] = df["issue"].str.replace(r"^(\d+)\.0$", r"\1", regex=True)
    else:
        df["issue"] = ""

    df["publisher"] = df.get("publisher", pd.Series([""] * len(df))).fillna("").astype(str).str.strip()
    df["year"] = df.get("year", pd.Series([None] * len(df))).map(_parse_year)
    df["key_issue"] = df.get("key_issue_raw", pd.Series([False] * len(df))).map(_parse_flag)
    df["known_defects"] = df.get("known_defects_raw", pd.Series([None] * len(df))).map(
        lambda v: [] if _is_missing(v) else normalize_defects(str(v))
    )

    grades = df.get("grade_raw", pd.Series([None] * len(df))).map(_parse_optional_number)
    df["grade"] = grades.map(lambda g: round_to_tenth(g) if g is not None and 0.5 <= g <= 10.0 else None)
    df["estimated_value"] = df.get("estimated_value_raw", pd.Series([None] * len(df))).map(
        lambda v: None if _parse_optional_number(v) is None else int(round(_parse_optional_number(v)))
    )
    df["consensus_confidence"] = df.get("confidence_raw", pd.Series([None] * len(df))).map(
        lambda v: None if _parse_optional_number(v) is None else int(round(_parse_optional_number(v)))
    )
    df["status"] = [
        _parse_status(s, not _is_missing(g))
        for s, g in zip(df.get("status_raw", pd.Series([None] * len(df))), df["grade"])
    ]

    if "item_id" in df.columns:
        df["item_id"] = df["item_id"].map(lambda v: "" if _is_missing(v) else str(v).strip())
    else:
        df["item_id"] = ""
    df["item_id"] = [iid or uuid.uuid4().hex[:12] for iid in df["item_id"]]

    df_out = df[CANONICAL_COLUMNS].copy()
    logger.info("Collection normalization complete. Final rows: {}", len(df_out))
    return df_out


# ---------------------------
# IO helpers
# ---------------------------

def load_collection(path: Optional[Path] = None) -> pd.DataFrame:
    """Load a CSV or XLSX collection export and normalize it."""
    path = Path(path or COLLECTION_PATH)
    if not path.exists():
        raise FileNotFoundError(f"Collection file not found: {path}")

    logger.info("Loading collection from {}", path)
    if path.suffix.lower() in {".xlsx", ".xls"}:
        df = pd.read_excel(path)
    else:
        df = pd.read_csv(path)
    logger.info("Loaded {} rows from collection", len(df))
    return normalize_collection_df(df)


def items_from_df(df: pd.DataFrame) -> List[GradableItem]:
    items: List[GradableItem] = []
    for row in df.to_dict(orient="records"):
        items.append(
            GradableItem(
                item_id=str(row["item_id"]),
                title=row["title"],
                issue=row["issue"],
                publisher=row.get("publisher") or "",
                year=None if _is_missing(row.get("year")) else int(row["year"]),
                key_issue=bool(row.get("key_issue")),
                known_defects=list(row.get("known_defects") or []),
                grade=None if _is_missing(row.get("grade")) else float(row["grade"]),
                estimated_value=None if _is_missing(row.get("estimated_value")) else int(row["estimated_value"]),
                consensus_confidence=(
                    None if _is_missing(row.get("consensus_confidence")) else int(row["consensus_confidence"])
                ),
                status=row.get("status") or "ungraded",
            )
        )
    return items


def items_to_df(items: Iterable[GradableItem]) -> pd.DataFrame:
    rows = []
    for it in items:
        rows.append(
            {
                "item_id": it.item_id,
                "title": it.title,
                "issue": it.issue,
                "publisher": it.publisher,
                "year": it.year,
                "key_issue": it.key_issue,
                "grade": it.grade,
                "grade_label": grade_label(it.grade) if it.grade is not None else "",
                "estimated_value": it.estimated_value,
                "consensus_confidence": it.consensus_confidence,
                "defects": ", ".join(it.defects),
                "status": it.status,
                "graded_at": it.graded_at.isoformat() if it.graded_at else None,
            }
        )
    return pd.DataFrame(rows)


# ---------------------------
# Queries
# ---------------------------

def grade_label(grade: float) -> str:
    """Nearest CGC label; a tie goes to the higher grade."""
    closest = min(sorted(CGC_GRADE_LABELS, reverse=True), key=lambda g: abs(g - float(grade)))
    return CGC_GRADE_LABELS[closest]


def filter_items(
    items: Iterable[GradableItem],
    query: str = "",
    status: str = "all",
) -> List[GradableItem]:
    """Substring search over title, issue and publisher plus an exact status filter."""
    q = (query or "").strip().lower()
    out = []
    for it in items:
        haystack = f"{it.title} {it.issue} {it.publisher}".lower()
        if q and q not in haystack:
            continue
        if status and status != "all" and it.status != status:
            continue
        out.append(it)
    return out


def collection_stats(items: Iterable[Any]) -> Dict[str, Any]:
    """
    Totals for a collection view.

    Averages only count items that carry the value; both are 0 for an
    empty selection.
    """
    items = list(items)
    graded = [float(i.grade) for i in items if i.grade is not None]
    confidences = [float(i.consensus_confidence) for i in items if i.consensus_confidence is not None]
    avg_grade = sum(graded) / len(graded) if graded else 0.0

    return {
        "total": len(items),
        "graded": sum(1 for i in items if i.status == "graded"),
        "ungraded": sum(1 for i in items if i.status == "ungraded"),
        "pending": sum(1 for i in items if i.status == "pending_review"),
        "total_value": int(sum(i.estimated_value for i in items if i.estimated_value)),
        "avg_grade": round(avg_grade, 1),
        "avg_grade_label": grade_label(avg_grade) if graded else "",
        "avg_confidence": round(sum(confidences) / len(confidences), 1) if confidences else 0.0,
    }
