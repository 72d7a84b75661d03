"""RevOffsets Quickstart — resolve the bundled catalog against one binary."""

import sys
from pathlib import Path

from revoffsets import RevOffsetsContext
from revoffsets.config.loader import load_config
from revoffsets.image.accessor import open_file
from revoffsets.pipeline import OffsetPipeline
from revoffsets.snapshot.store import save_snapshot
from revoffsets.utils.logging import setup_logging


def main():
    if len(sys.argv) != 2:
        print("usage: quickstart.py <arm64 mach-o binary>")
        return

    # 1. Load configuration and the bundled catalog
    setup_logging(level="INFO")
    ctx = RevOffsetsContext()
    ctx.config = load_config()
    catalog = ctx.ensure_catalog()

    # 2. Open the image
    image = open_file(Path(sys.argv[1]))

    # 3. Run the pipeline
    result = OffsetPipeline(ctx.config, catalog).run(image)
    for issue in result.issues:
        print(f"  warning: {issue}")

    # 4. Show what was found
    snapshot = result.snapshot
    for record in snapshot.records:
        where = hex(record.address) if record.resolved else "-"
        print(f"  {record.name:<24} {where:>14}  {record.confidence:.3f}  {record.method}")
    for struct, fields in snapshot.primary_offsets().items():
        for name, offset in fields.items():
            print(f"  {struct}.{name} = {hex(offset.offset)} ({offset.confidence:.2f})")

    # 5. Persist
    path = save_snapshot(snapshot, ctx.config.output.path)
    print(f"\nSnapshot written to {path}")


if __name__ == "__main__":
    main()
