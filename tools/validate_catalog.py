from __future__ import annotations
from collections import Counter
import json, sys
from pathlib import Path
from style_core.catalog import InstrumentCatalog, definition_from_dict, load_definitions
from style_core.errors import CatalogError
from style_core.types import Polarity

def _load(path: str | None):
    if not path:
        return load_definitions()
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    return [definition_from_dict(r) for r in raw]

def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    try:
        defs = _load(argv[0] if argv else None)
        InstrumentCatalog(defs)
    except CatalogError as exc:
        print(f"✗ {exc.detail}")
        return 1

    for d in defs:
        per_cat = Counter(q.category for q in d.questions)
        neg = Counter(q.category for q in d.questions if q.polarity == Polarity.NEGATIVE)
        print(f"{d.type} {d.version} ({d.name}): {len(d.questions)} questions, min {d.config.min_questions}")
        for cat in d.categories:
            n = per_cat.get(cat, 0)
            print(f"  {cat:<20} {n:2d} questions ({neg.get(cat, 0)} reverse-keyed)")
            if n == 0:
                print("    → category has no questions; it will never be scored")
        print("  ✓ Valid\n")
    return 0

if __name__ == "__main__":
    raise SystemExit(main())
