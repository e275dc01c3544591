#!/usr/bin/env python3
"""
Migrate Azure Monitor queries in a Grafana dashboard JSON file.

Upgrades every Azure Monitor panel target to the current query schema:
- timeGrain + timeGrainUnit → ISO-8601 duration (5 + minute → PT5M)
- legacy timeGrains lists → allowedTimeGrainsMs
- $__from / $__to → $__timeFrom() / $__timeTo() in Log Analytics queries
- old Application Insights keys (xaxis, groupBy, ...) → current names
- single dimension/dimensionFilter → dimensionFilters list

Usage:
    python scripts/migrate_dashboard.py input.json output.json
    python scripts/migrate_dashboard.py input.json --dry-run
"""

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

# Allow running from a checkout without installing
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from api.logging_config import setup_logging
from config_loader import load_config
from migration.dashboard import migrate_dashboard
from migration.engine import QueryMigrationEngine

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Migrate Azure Monitor queries in a Grafana dashboard")
    parser.add_argument("input", help="Dashboard JSON file to read")
    parser.add_argument("output", nargs="?", help="Where to write the migrated dashboard (default: overwrite input)")
    parser.add_argument("--dry-run", action="store_true", help="Report changes without writing")
    parser.add_argument("--config", help="Path to regrain.conf")
    parser.add_argument("--log-level", default="WARNING", help="Log level (default: WARNING)")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(service_name="regrain-cli", level=args.log_level, structured=False)

    input_file = Path(args.input)
    output_file = Path(args.output) if args.output else input_file

    if not input_file.exists():
        print(f"Error: Input file not found: {input_file}")
        return 1

    try:
        with open(input_file, 'r', encoding='utf-8') as f:
            dashboard = json.load(f)
    except json.JSONDecodeError as e:
        print(f"Error: {input_file} is not valid JSON: {e}")
        return 1

    if not isinstance(dashboard, dict):
        print(f"Error: {input_file} does not contain a dashboard object")
        return 1

    config = load_config(args.config)
    engine = QueryMigrationEngine(
        namespace_placeholder=config.get("migration", "namespace_placeholder", default="select")
    )

    print(f"Reading dashboard from: {input_file}")
    migrated, report = migrate_dashboard(dashboard, engine=engine)

    print("=" * 80)
    for target_key, steps in report.changes.items():
        print(f"  {target_key}: {', '.join(steps)}")
    for target_key, fields in report.remaining_legacy_fields.items():
        print(f"  {target_key}: could not migrate {', '.join(fields)}")
    print("=" * 80)
    print(f"Azure Monitor targets: {report.targets_seen}, migrated: {report.targets_migrated}")

    if args.dry_run:
        print("Dry run: nothing written")
        return 0

    with open(output_file, 'w', encoding='utf-8') as f:
        json.dump(migrated, f, indent=2)

    print(f"Wrote migrated dashboard to: {output_file}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
