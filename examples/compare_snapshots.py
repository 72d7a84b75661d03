"""Example: compare offsets.json files from two builds of the same binary."""

import sys

from revoffsets.snapshot.differ import diff
from revoffsets.snapshot.store import load_snapshot


def main():
    if len(sys.argv) != 3:
        print("usage: compare_snapshots.py <old offsets.json> <new offsets.json>")
        return

    old = load_snapshot(sys.argv[1])
    new = load_snapshot(sys.argv[2])
    report = diff(old, new)

    print(f"Schema {report.old_version} -> {report.new_version}")
    if report.is_empty:
        print("  No changes.")
        return

    for change in report.changes():
        delta = change.address_delta
        moved = f"{delta:+#x}" if delta else ""
        print(f"  {change.status:<8} {change.name:<24} {moved:>10}  conf {change.confidence_delta:+.3f}")

    for change in report.structure_changes():
        print(f"  {change.status:<8} {change.structure}.{change.field}: {change.old_offset} -> {change.new_offset}")

    # Moves resolved with weak evidence need a manual look
    suspicious = [
        c for c in report.changes()
        if c.address_delta and (c.new_confidence or 0.0) < 0.5
    ]
    if suspicious:
        print(f"\nLow-confidence moves ({len(suspicious)}):")
        for c in suspicious:
            print(f"  {c.name}")


if __name__ == "__main__":
    main()
