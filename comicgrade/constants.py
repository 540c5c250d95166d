from __future__ import annotations

"""Shared grading vocabulary used across the pipeline and the collection tools.

Keeping the CGC label table, defect aliases and canned remarks in one place
lets the parser, the orchestrator and the API agree on the same wording.
"""

CGC_GRADE_LABELS = {
    10.0: "Gem Mint",
    9.9: "Mint",
    9.8: "Near Mint/Mint",
    9.6: "Near Mint+",
    9.4: "Near Mint",
    9.2: "Near Mint-",
    9.0: "VF/NM",
    8.5: "Very Fine+",
    8.0: "Very Fine",
    7.5: "Very Fine-",
    7.0: "Fine/VF",
    6.5: "Fine+",
    6.0: "Fine",
    5.5: "Fine-",
    5.0: "VG/Fine",
    4.5: "Very Good+",
    4.0: "Very Good",
    3.5: "Very Good-",
    3.0: "Good/VG",
    2.5: "Good+",
    2.0: "Good",
    1.8: "Good-",
    1.5: "Fair/Good",
    1.0: "Fair",
    0.5: "Poor",
}

# Free-text spellings models use for the same defect.
DEFECT_ALIASES = {
    "spine stress": "spine_stress",
    "spine stress lines": "spine_stress",
    "stress lines": "spine_stress",
    "spine roll": "spine_roll",
    "rolled spine": "spine_roll",
    "spine split": "spine_split",
    "split spine": "spine_split",
    "cover crease": "cover_crease",
    "creased cover": "cover_crease",
    "cover tear": "cover_tear",
    "detached cover": "cover_detached",
    "cover detached": "cover_detached",
    "page yellowing": "page_yellowing",
    "yellowed pages": "page_yellowing",
    "yellowing": "page_yellowing",
    "brittle pages": "page_brittle",
    "page brittle": "page_brittle",
    "foxing": "page_foxing",
    "staple rust": "staple_rust",
    "rusted staples": "staple_rust",
    "rusty staples": "staple_rust",
    "staple pop": "staple_pop",
    "corner blunt": "corner_blunt",
    "blunted corners": "corner_blunt",
    "blunt corners": "corner_blunt",
    "corner chip": "corner_chip",
    "chipped corner": "corner_chip",
    "edge wear": "edge_wear",
    "edge chip": "edge_chip",
}

CANNED_COMMENTARY = {
    "high": "A stunning copy. Sharp corners, tight spine, and colors that still pop.",
    "mid": "A solid, honest copy. It has been read and loved, but it presents well.",
    "low": "This one has lived a full life. The wear is real, but so is the history.",
}

COMMENTARY_HIGH_MIN = 9.0
COMMENTARY_MID_MIN = 6.0

ITEM_STATUSES = ("ungraded", "grading", "graded", "pending_review")
