# insulinlog/core/csvlog.py
from __future__ import annotations

import csv
import os
from datetime import datetime
from typing import Any, Optional

HEADER = [
    "date_time_utc",
    "patient_id",
    "job",
    "tier",
    "success",
    "message_id",
    "error",
    "cycle",
    "attempts",
]


def csv_append(
    path: str,
    *,
    now: datetime,
    patient_id: Any,
    job: str,
    tier: Optional[str],
    success: bool,
    message_id: Optional[str] = None,
    error: Optional[str] = None,
    cycle: Optional[str] = None,
    attempts: Optional[int] = None,
) -> None:
    """Append one notification outcome row; header is written on first use."""
    log_dir = os.path.dirname(path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    write_header = not os.path.exists(path)
    with open(path, "a", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        if write_header:
            writer.writerow(HEADER)
        writer.writerow(
            [
                now.strftime("%Y-%m-%d %H:%M:%S"),
                patient_id,
                job,
                tier or "",
                int(bool(success)),
                message_id or "",
                error or "",
                cycle or "",
                "" if attempts is None else attempts,
            ]
        )
