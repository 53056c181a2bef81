from __future__ import annotations

import argparse
import json
import sys
from collections import Counter
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
BACKEND_PATH = ROOT / "backend"
if str(BACKEND_PATH) not in sys.path:
    sys.path.insert(0, str(BACKEND_PATH))

from curriculum_studio.consistency import normalize_state
from curriculum_studio.db import SessionLocal, init_db, load_state, save_state, write_audit
from curriculum_studio.models import ProgramState
from curriculum_studio.views import integrity_issues


def parse_args():
    p = argparse.ArgumentParser(description="Drop dangling references and duplicate placements from a program tree.")
    p.add_argument("--file", help="Normalize a saved JSON tree instead of the database copy")
    p.add_argument("--out", help="Where to write the normalized JSON (defaults to --file)")
    p.add_argument("--apply", action="store_true", help="Actually write the result (default is dry-run)")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    if args.file:
        state = ProgramState.model_validate_json(Path(args.file).read_text(encoding="utf-8"))
    else:
        init_db()
        with SessionLocal() as db:
            state = load_state(db)

    before = Counter(i["kind"] for i in integrity_issues(state))
    normalized = normalize_state(state)
    after = Counter(i["kind"] for i in integrity_issues(normalized))

    if args.apply:
        if args.file:
            out = Path(args.out or args.file)
            out.write_text(json.dumps(normalized.to_json_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
        else:
            with SessionLocal() as db:
                save_state(db, normalized)
                write_audit(db, "STATE_NORMALIZE", "ProgramState", "current", json.dumps(dict(before)))
    print(
        {
            "applied": bool(args.apply),
            "issues_before": dict(before),
            "issues_after": dict(after),
        }
    )


if __name__ == "__main__":
    main()
