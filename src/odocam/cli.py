"""
Read the mileage from an odometer photo.

Usage:
    odocam cluster.jpg
    odocam cluster.jpg --prior 32000 --json
    odocam cluster.jpg --methods contrast,binarized --region 0.2,0.4,0.6,0.3
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from odocam.errors import OCRError
from odocam.inference import BoundingBox, EasyOCRRecognizer, Orientation, TextRecognizer
from odocam.pipeline import OdometerPipeline
from odocam.preprocessing import PreprocessingMethod, PreprocessingPlanner


def parse_methods(value: str) -> List[PreprocessingMethod]:
    methods = []
    for name in value.split(","):
        name = name.strip()
        if not name:
            continue
        try:
            methods.append(PreprocessingMethod(name))
        except ValueError:
            choices = ", ".join(m.value for m in PreprocessingMethod)
            raise argparse.ArgumentTypeError(f"unknown method '{name}' (choose from {choices})")
    return methods


def parse_region(value: str) -> BoundingBox:
    parts = value.split(",")
    if len(parts) != 4:
        raise argparse.ArgumentTypeError("region must be x,y,width,height")
    try:
        x, y, w, h = (float(p) for p in parts)
    except ValueError:
        raise argparse.ArgumentTypeError("region values must be numbers")
    if w <= 0 or h <= 0:
        raise argparse.ArgumentTypeError("region width and height must be positive")
    return BoundingBox(x=x, y=y, width=w, height=h)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="odocam",
        description="Read the mileage from an odometer photo",
    )
    parser.add_argument("image", type=str, help="Path to the odometer photo")
    parser.add_argument(
        "--prior",
        type=int,
        default=None,
        help="Last known mileage, used to favour plausible forward progress",
    )
    parser.add_argument(
        "--methods",
        type=parse_methods,
        default=None,
        help="Extra preprocessing methods, comma separated (default: contrast)",
    )
    parser.add_argument(
        "--region",
        type=parse_region,
        default=None,
        help="Normalized crop region x,y,width,height",
    )
    parser.add_argument(
        "--orientation",
        choices=[o.value for o in Orientation],
        default=Orientation.UP.value,
        help="Direction the top of the scene points in the photo",
    )
    parser.add_argument(
        "--languages",
        type=str,
        default="en",
        help="EasyOCR language codes, comma separated",
    )
    parser.add_argument("--gpu", action="store_true", help="Run EasyOCR on GPU")
    parser.add_argument("--json", action="store_true", help="Print the reading as JSON")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser


def main(argv: Optional[List[str]] = None, recognizer: Optional[TextRecognizer] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if recognizer is None:
        languages = [lang.strip() for lang in args.languages.split(",") if lang.strip()]
        recognizer = EasyOCRRecognizer(languages=languages, gpu=args.gpu)

    planner = PreprocessingPlanner(methods=args.methods) if args.methods else None
    pipeline = OdometerPipeline(recognizer, planner=planner)

    try:
        reading = pipeline.recognize(
            args.image,
            prior_mileage=args.prior,
            orientation=Orientation(args.orientation),
            region=args.region,
        )
    except OCRError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(reading.to_dict(), indent=2))
        return 0

    unit = reading.detected_unit.abbreviation if reading.detected_unit else "(unit unknown)"
    print(f"Mileage: {reading.mileage} {unit}")
    print(f"Confidence: {reading.confidence:.3f} ({reading.confidence_level.value})")
    print(f"Raw text: {reading.raw_text}")
    if reading.needs_review:
        print("Review suggested before saving")
    return 0


if __name__ == "__main__":
    sys.exit(main())
