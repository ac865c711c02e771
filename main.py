#!/usr/bin/env python3
"""
Rental Estimate Auditor — Entry Point
======================================

Audits a photographed move-in cost estimate against the listing flyer.

Usage:
    python main.py --estimate quote.jpg                           # Estimate only
    python main.py --flyer flyer.png --estimate p1.jpg p2.jpg     # Full audit
    python main.py --flyer flyer.png --estimate quote.jpg --json  # Machine-readable

Without OPENAI_API_KEY every fact degrades to null and the report says so.
"""

from __future__ import annotations

import argparse
import logging
import mimetypes
import sys
from pathlib import Path

from dotenv import load_dotenv

from estimate_auditor.exceptions import DiagnosisTimeoutError
from estimate_auditor.models import DiagnosisResult, DiagnosisStatus, ImageInput
from estimate_auditor.pipeline import DiagnosisPipeline

load_dotenv()


# ─── ANSI Color Constants ───────────────────────────────────────────

_RED = "\033[91m"
_YELLOW = "\033[93m"
_GREEN = "\033[92m"
_CYAN = "\033[96m"
_DIM = "\033[2m"
_BOLD = "\033[1m"
_RESET = "\033[0m"
_WIDTH = 72

_STATUS_STYLE = {
    DiagnosisStatus.CUT: (_RED, "CUT"),
    DiagnosisStatus.NEGOTIABLE: (_YELLOW, "NEGOTIABLE"),
    DiagnosisStatus.REQUIRES_CONFIRMATION: (_CYAN, "CHECK"),
    DiagnosisStatus.FAIR: (_GREEN, "FAIR"),
}


# ─── Input ───────────────────────────────────────────────────────────


def load_images(paths: list[str]) -> list[ImageInput]:
    """Read image files in the order given. The MIME type is guessed from the name.

    Empty files are skipped, as empty uploads are in the API.
    """
    images = []
    for raw in paths:
        path = Path(raw)
        data = path.read_bytes()
        if not data:
            logging.getLogger(__name__).warning("Skipping empty image file %s", path)
            continue
        mime_type, _ = mimetypes.guess_type(path.name)
        images.append(ImageInput(data=data, mime_type=mime_type or "image/jpeg"))
    return images


# ─── Pretty Printer Helpers ─────────────────────────────────────────


def _yen(amount: int | None) -> str:
    return "-" if amount is None else f"¥{amount:,}"


def _print_items(result: DiagnosisResult) -> None:
    """Print every billed line with its verdict."""
    for item in result.items:
        color, label = _STATUS_STYLE[item.status]
        print(f"  {color}{_BOLD}[{label:<10}]{_RESET} {item.name}")
        print(f"    {_yen(item.price_original)} {_DIM}→{_RESET} {_BOLD}{_yen(item.price_fair)}{_RESET}")
        print(f"    {item.reason}")
        print(f"      {_DIM}{item.evidence.source_description}{_RESET}")
        print()


def _print_extraction_log(result: DiagnosisResult) -> None:
    log = result.extraction_log
    if log is None:
        return
    print(f"  {_CYAN}EXTRACTION{_RESET}")
    print(f"    flyer read:     {log.flyer_extracted}")
    print(f"    estimate read:  {log.estimate_extracted}")
    if log.conflicts_detected:
        print(f"    conflicts:      {', '.join(log.conflicts_detected)}")
    if log.verification_performed:
        print(f"    re-verified:    {', '.join(log.verification_performed)}")
    if log.final_null_fields:
        print(f"    {_DIM}unread: {', '.join(log.final_null_fields)}{_RESET}")
    print()


# ─── Pretty Printer ─────────────────────────────────────────────────


def exit_code_for(result: DiagnosisResult) -> int:
    """0 if nothing can be cut or negotiated, 1 otherwise."""
    actionable = {DiagnosisStatus.CUT, DiagnosisStatus.NEGOTIABLE}
    return 1 if any(item.status in actionable for item in result.items) else 0


def print_report(result: DiagnosisResult) -> int:
    """Pretty-print the diagnosis with ANSI color codes.

    Returns:
        0 if the estimate looks fair, 1 if there is something to negotiate.
    """
    print(f"\n{'=' * _WIDTH}")
    print(f"{_BOLD}{_CYAN}  ESTIMATE DIAGNOSIS{_RESET}")
    print(f"{'=' * _WIDTH}")
    print(f"  Property:    {result.property_name} {result.room_number}")
    print(f"  Quality:     {result.extraction_quality.value}")
    print(f"{'─' * _WIDTH}\n")

    _print_items(result)

    print(f"{'─' * _WIDTH}")
    print(f"  Original:    {_yen(result.total_original)}")
    print(f"  Fair:        {_BOLD}{_yen(result.total_fair)}{_RESET}")
    print(f"  Savings:     {_GREEN}{_BOLD}{_yen(result.discount_amount)}{_RESET}")
    print(f"  Risk score:  {result.risk_score}/100")
    print(f"{'─' * _WIDTH}\n")

    for line in result.pro_review.splitlines():
        print(f"  {line}")
    print()
    _print_extraction_log(result)

    exit_code = exit_code_for(result)
    print(f"{'=' * _WIDTH}")
    if exit_code == 0:
        print(f"  {_GREEN}{_BOLD}NOTHING TO NEGOTIATE{_RESET}")
    else:
        print(f"  {_YELLOW}{_BOLD}NEGOTIATE  --  about {_yen(result.discount_amount)} at stake{_RESET}")
    if result.has_unconfirmed_items:
        print(f"  {_CYAN}Check by hand: {', '.join(result.unconfirmed_item_names)}{_RESET}")
    print(f"{'=' * _WIDTH}\n")

    return exit_code


# ─── Main ────────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Audit a rental move-in cost estimate against its listing flyer."
    )
    parser.add_argument("--flyer", nargs="*", default=[], metavar="IMAGE",
                        help="Listing flyer (マイソク) image(s), in page order")
    parser.add_argument("--estimate", nargs="+", required=True, metavar="IMAGE",
                        help="Estimate (見積書) image(s), in page order")
    parser.add_argument("--json", action="store_true",
                        help="Print the raw DiagnosisResult as JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable INFO logging")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Run the full audit pipeline and print the report."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        flyer_images = load_images(args.flyer)
        estimate_images = load_images(args.estimate)
    except OSError as e:
        print(f"{_RED}Cannot read image: {e}{_RESET}", file=sys.stderr)
        sys.exit(2)
    if not estimate_images:
        print(f"{_RED}Every estimate image is empty{_RESET}", file=sys.stderr)
        sys.exit(2)

    if not args.json:
        print("\n  Starting Rental Estimate Auditor...")
        print(f"  Reading {len(flyer_images)} flyer / {len(estimate_images)} estimate image(s)...\n")

    pipeline = DiagnosisPipeline()
    try:
        result = pipeline.run(flyer_images, estimate_images)
    except DiagnosisTimeoutError as e:
        print(f"{_RED}[{e.code}] {e}{_RESET}", file=sys.stderr)
        sys.exit(2)

    if args.json:
        print(result.model_dump_json(indent=2))
        sys.exit(exit_code_for(result))
    sys.exit(print_report(result))


if __name__ == "__main__":
    main()
