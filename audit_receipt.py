#!/usr/bin/env python3
"""
Audit a local receipt photo against a claimed purchase using the same prompt
and decision rules as the API.

Usage:
    python audit_receipt.py <image> --product ANSIOLIFE --quantity 2 --stars 50

Prints the award decision as JSON ({"starsAwarded": ..., "reason": ...}).
"""

import argparse
import json
import mimetypes
import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import ValidationError

load_dotenv()

sys.path.append(str(Path(__file__).parent))

from app.graph.nodes.audit import process_receipt
from app.graph.state import ReceiptClaim
from app.uploads import to_data_url


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Audit a receipt photo for StarCart stars.")
    parser.add_argument("image", help="path to the receipt photo")
    parser.add_argument("--product", required=True, help="product name the user claims to have bought")
    parser.add_argument("--quantity", type=int, default=1, help="units claimed (default 1)")
    parser.add_argument("--stars", type=int, required=True, help="stars per unit for the product")
    args = parser.parse_args(argv)

    path = Path(args.image)
    if not path.exists():
        print(f"❌ Error: file not found: {path}")
        return 1

    mime = mimetypes.guess_type(path.name)[0] or "image/jpeg"
    try:
        claim = ReceiptClaim(
            photo=to_data_url(path.read_bytes(), mime),
            product_name=args.product,
            quantity=args.quantity,
            stars_per_unit=args.stars,
        )
    except ValidationError as e:
        print(f"❌ Invalid claim: {e}")
        return 1

    print(f"🧾 Auditing {path.name}: {claim.quantity} x {claim.product_name} @ {claim.stars_per_unit} stars")
    decision = process_receipt(claim)
    print(json.dumps(decision.model_dump(by_alias=True), indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    if not os.getenv("GOOGLE_API_KEY"):
        print("❌ Error: GOOGLE_API_KEY not found in environment!")
        print("Please set your Google API key in the .env file")
        sys.exit(1)

    sys.exit(main())
