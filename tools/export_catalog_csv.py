from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
BACKEND_PATH = ROOT / "backend"
if str(BACKEND_PATH) not in sys.path:
    sys.path.insert(0, str(BACKEND_PATH))

from curriculum_studio.catalog_csv import export_catalog_csv, pi_matrix_csv, so_matrix_csv
from curriculum_studio.db import SessionLocal, init_db, load_state
from curriculum_studio.views import filter_courses


def parse_args():
    p = argparse.ArgumentParser(description="Write the course catalog (and optionally the SO/PI matrices) as CSV.")
    p.add_argument("--out-dir", default=str(ROOT / "docs"), help="Directory for the CSV files")
    p.add_argument("--area", help="Only courses of this knowledge area id")
    p.add_argument("--abet-only", action="store_true", help="Only courses in ABET scope")
    p.add_argument("--matrices", action="store_true", help="Also write so-matrix.csv and pi-matrix.csv")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    out_dir = Path(args.out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    init_db()
    with SessionLocal() as db:
        state = load_state(db)
    courses = filter_courses(state, area_id=args.area, abet_only=args.abet_only)
    written = {"course-catalog.csv": export_catalog_csv(state, courses)}
    if args.matrices:
        written["so-matrix.csv"] = so_matrix_csv(state, courses)
        written["pi-matrix.csv"] = pi_matrix_csv(state, courses)
    for name, body in written.items():
        # BOM is part of the body already
        (out_dir / name).write_text(body, encoding="utf-8", newline="")
    print(
        {
            "courses": len(courses),
            "files": sorted(written),
            "path": str(out_dir),
        }
    )


if __name__ == "__main__":
    main()
