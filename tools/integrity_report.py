from __future__ import annotations

import csv
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
OUT_PATH = ROOT / "docs" / "program_integrity_report.csv"
BACKEND_PATH = ROOT / "backend"
if str(BACKEND_PATH) not in sys.path:
    sys.path.insert(0, str(BACKEND_PATH))

from curriculum_studio.db import SessionLocal, init_db, load_state
from curriculum_studio.views import integrity_issues, uncovered_sos


def main() -> None:
    init_db()
    with SessionLocal() as db:
        state = load_state(db)
    issues = sorted(integrity_issues(state), key=lambda x: (x["kind"], x["entity_id"]))
    OUT_PATH.parent.mkdir(parents=True, exist_ok=True)
    with OUT_PATH.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=["kind", "entity_id", "message"])
        writer.writeheader()
        writer.writerows(issues)
    print(
        {
            "courses": len(state.courses),
            "issues": len(issues),
            "uncovered_sos": uncovered_sos(state),
            "path": str(OUT_PATH),
        }
    )


if __name__ == "__main__":
    main()
