#!/usr/bin/env python3
"""
Load a bot flow YAML file into the database.
Usage: python scripts/load_flow.py flows/property_enquiry.yaml --activate <phone_number_id>
"""

import argparse
import sys
from pathlib import Path
from uuid import UUID

from enquirybot.database import SessionLocal, init_db
from enquirybot.services.flow_loader import FlowLoadError, load_flow_file


def main():
    parser = argparse.ArgumentParser(description="Load a bot flow definition.")
    parser.add_argument("path", help="Path to the flow YAML file")
    parser.add_argument("--waba-account-id", type=UUID, default=None, help="Owning WABA account id")
    parser.add_argument(
        "--activate",
        action="append",
        default=[],
        help="Business phone number id to switch to this flow (repeatable)",
    )
    args = parser.parse_args()

    init_db()
    db = SessionLocal()
    try:
        flow = load_flow_file(
            db,
            Path(args.path),
            waba_account_id=args.waba_account_id,
            activate_for=args.activate,
        )
        flow_name, flow_id = flow.name, flow.id
    except FlowLoadError as exc:
        print(f"❌ {exc}", file=sys.stderr)
        for problem in exc.problems:
            print(f"  - {problem}", file=sys.stderr)
        sys.exit(1)
    finally:
        db.close()

    print(f"✅ Flow '{flow_name}' loaded ({flow_id})")
    if args.activate:
        print(f"✓ Activated for: {', '.join(args.activate)}")


if __name__ == "__main__":
    main()
