"""
Central constants for the evidence registry.
"""
from __future__ import annotations

ELEMENT_NUMBERS = tuple(range(1, 15))

# COR regulatory elements
ELEMENT_NAMES = {
    1: "Health & Safety Policy",
    2: "Hazard Assessment",
    3: "Safe Work Practices",
    4: "Safe Job Procedures",
    5: "Company Safety Rules",
    6: "Personal Protective Equipment",
    7: "Preventative Maintenance",
    8: "Training & Communication",
    9: "Workplace Inspections",
    10: "Incident Investigation",
    11: "Emergency Preparedness",
    12: "Statistics & Records",
    13: "Legislation & Compliance",
    14: "Management Review",
}

DOCUMENT_STATUSES = ("draft", "active", "approved", "under_review", "archived", "obsolete")

# Documents that count as current evidence
EVIDENCE_STATUSES = frozenset({"active", "approved"})

# Document type code -> elements it normally evidences
DOCUMENT_TYPE_ELEMENTS = {
    "POL": (1, 5, 13),  # Policies
    "SWP": (3, 4),  # Safe Work Procedures
    "FRM": (2, 9, 10, 12),  # Forms
    "SJP": (4,),  # Safe Job Procedures
    "MAN": (1, 8),  # Manuals
    "PLN": (11,),  # Plans
    "RPT": (10, 12, 14),  # Reports
    "CHK": (6, 7, 9),  # Checklists
    "REG": (6, 7, 12),  # Registers
    "TRN": (8,),  # Training
    "MIN": (14,),  # Minutes
    "AUD": (9, 14),  # Audit documents
    "CRT": (8, 13),  # Certificates
    "DWG": (4, 7),  # Drawings
    "PRC": (1, 3),  # Processes
    "WI": (3, 4),  # Work Instructions
}

# Review windows the dashboards ask for
REVIEW_WINDOWS_DAYS = (7, 30, 60, 90)
DEFAULT_REVIEW_WINDOW_DAYS = 30

# Months between reviews when a document is created without a review date
DEFAULT_REVIEW_INTERVAL_MONTHS = 12
