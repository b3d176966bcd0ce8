#!/usr/bin/env python3
"""Helper script to print-ready marker images.

Renders markers of a dictionary (the same bit tables the detector decodes)
as PNG files, e.g. to print and mount them at the surveyed positions.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

import cv2

from aruco_localization.strategies.marker_dictionary import MarkerDictionary


def main():
    parser = argparse.ArgumentParser(description="Generate ArUco marker images")
    parser.add_argument(
        "--output-dir",
        type=str,
        default="markers",
        help="Output directory for the images (default: markers)"
    )
    parser.add_argument(
        "--marker-ids",
        type=int,
        nargs="+",
        required=True,
        help="Marker IDs to generate (e.g., 0 1 2 3)"
    )
    parser.add_argument(
        "--dict",
        type=str,
        default="4x4_50",
        help="ArUco dictionary (default: 4x4_50)"
    )
    parser.add_argument(
        "--size",
        type=int,
        default=400,
        help="Image size in pixels (default: 400)"
    )
    parser.add_argument(
        "--border-bits",
        type=int,
        default=1,
        help="Border size in bits (default: 1)"
    )
    parser.add_argument(
        "--quiet-zone",
        type=int,
        default=40,
        help="White margin around the marker in pixels (default: 40)"
    )

    args = parser.parse_args()

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    try:
        dictionary = MarkerDictionary.from_opencv(args.dict)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    for marker_id in args.marker_ids:
        try:
            image = dictionary.marker_image(marker_id, args.size, args.border_bits)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        if args.quiet_zone > 0:
            q = args.quiet_zone
            image = cv2.copyMakeBorder(image, q, q, q, q, cv2.BORDER_CONSTANT, value=255)

        output_path = output_dir / f"{dictionary.name}_id_{marker_id}.png"
        cv2.imwrite(str(output_path), image)
        print(f"Created marker: {output_path}")

    print(f"Generated {len(args.marker_ids)} markers from {dictionary.name}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
