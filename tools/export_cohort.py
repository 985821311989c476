from __future__ import annotations
import argparse, json
from pathlib import Path
from style_core import config
from style_core.aggregate import aggregate
from style_core.catalog import InstrumentCatalog
from style_core.errors import InsufficientData
from style_core.export import to_csv, to_json
from api.storage import AssignmentStore

def main():
    ap = argparse.ArgumentParser(description="Export a cohort's completed results and aggregate profile.")
    ap.add_argument("cohort")
    ap.add_argument("--instrument", default="CSI")
    ap.add_argument("--db", default=config.DATABASE_URL)
    ap.add_argument("--out", default="reports")
    args = ap.parse_args()

    store = AssignmentStore(args.db)
    defn = InstrumentCatalog.bundled().get(args.instrument)
    results = store.completed_scores(args.cohort, defn.type)
    out = Path(args.out); out.mkdir(parents=True, exist_ok=True)
    stem = f"{args.cohort}_{defn.type}"

    (out / f"{stem}.csv").write_text(to_csv(results, defn.categories), encoding="utf-8")
    payload = to_json(results)
    try:
        prof = aggregate(results, defn, cohort_id=args.cohort)
        payload["aggregate"] = {
            "total_students": prof.total_students,
            "total_completed_tests": prof.total_completed_tests,
            "per_category": {c: vars(s) for c, s in prof.per_category.items()},
            "dominant_style_counts": prof.dominant_style_counts,
            "most_common_style": prof.most_common_style,
            "diversity_index": prof.diversity_index,
            "flagged_results": prof.flagged_results,
        }
    except InsufficientData as exc:
        print(f"Aggregate skipped: {exc.detail}")
    (out / f"{stem}.json").write_text(json.dumps(payload, indent=2), encoding="utf-8")
    print(f"Wrote {len(results)} results to {out / stem}.csv / .json")

if __name__ == "__main__":
    main()
