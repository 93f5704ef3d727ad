from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .normalization import FileError
from .pipeline import run_reconciliation
from .quota import QuotaExceeded, QuotaGate, QuotaStoreError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Conciliación de pagos de WhatsApp contra el estado de cuenta")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", help="Reconcile the bot export against the bank statement")
    run_parser.add_argument(
        "--primary-file",
        type=Path,
        default=Path("data/Bot_Finanzas.csv"),
        help="CSV exported by the WhatsApp finance bot.",
    )
    run_parser.add_argument(
        "--counterparty-file",
        type=Path,
        default=Path("data/movimientos_cheque.csv"),
        help="Bank statement CSV.",
    )
    run_parser.add_argument(
        "--out-dir",
        type=Path,
        default=Path("out"),
        help="Directory that will receive the reconciliation artefacts.",
    )
    run_parser.add_argument(
        "--local",
        action="store_true",
        help="Use the deterministic local matcher instead of the model.",
    )

    subparsers.add_parser("quota", help="Show this month's reconciliation usage")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "run":
        try:
            result = run_reconciliation(
                primary_path=args.primary_file,
                counterparty_path=args.counterparty_file,
                out_dir=args.out_dir,
                use_local=args.local,
            )
        except (FileError, FileNotFoundError, QuotaExceeded, QuotaStoreError) as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 2
        summary = result.summary
        print(
            f"Procesados: {summary.processed}  Conciliados: {summary.matched}  "
            f"No conciliados: {summary.unmatched}"
        )
        if summary.error:
            print(summary.error, file=sys.stderr)
        return 0

    if args.command == "quota":
        try:
            state = QuotaGate.from_env().status()
        except QuotaStoreError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 2
        print(f"{state.period}: {state.used}/{state.limit} usadas, {state.remaining} restantes")
        return 1 if state.limit_reached else 0

    parser.error("Unknown command")
    return 1


if __name__ == "__main__":  # pragma: no cover - exercised via CLI entry point
    raise SystemExit(main())
