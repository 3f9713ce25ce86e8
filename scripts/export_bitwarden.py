import argparse
import contextlib
import csv
import logging
import os
import sys
from pathlib import Path

from pass_gpg import KeyUnlockError
from pass_pipeline import CancelToken, ExportCancelled, WalkError, run_export

DEFAULT_STORE = os.environ.get("PASSWORD_STORE_DIR", str(Path.home() / ".password-store"))
DEFAULT_GPG = os.environ.get("PASSWORD_STORE_GPG", "gpg")


def store_dir(value: str) -> Path:
    path = Path(value).expanduser()
    if not path.is_dir():
        raise argparse.ArgumentTypeError(f"password store not found: {path}")
    return path


def positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return number


@contextlib.contextmanager
def open_output(path):
    if path is None:
        yield sys.stdout
        return
    with open(path, "w", encoding="utf-8", newline="") as f:
        yield f


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Export a pass password store to a Bitwarden CSV file.")
    parser.add_argument(
        "-s",
        "--password-store",
        type=store_dir,
        default=DEFAULT_STORE,
        help=f"Password store location (default: {DEFAULT_STORE})",
    )
    parser.add_argument("-o", "--output", help="Output CSV file (stdout if omitted)")
    parser.add_argument("--gpg", default=DEFAULT_GPG, help=f"gpg binary to use (default: {DEFAULT_GPG})")
    parser.add_argument(
        "--gpg-opt",
        action="append",
        default=[],
        metavar="OPT",
        help="Extra option passed to gpg (repeatable)",
    )
    parser.add_argument(
        "-j",
        "--workers",
        type=positive_int,
        default=1,
        help="Number of entries decrypted in parallel (default: 1)",
    )
    parser.add_argument("--no-unlock", action="store_true", help="Do not unlock the gpg key before exporting")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every entry processed")
    return parser


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    cancel = CancelToken()
    try:
        with open_output(args.output) as out:
            summary = run_export(
                str(args.password_store),
                out,
                gpg=args.gpg,
                gpg_opts=args.gpg_opt,
                workers=args.workers,
                cancel=cancel,
                unlock=not args.no_unlock,
            )
    except KeyUnlockError as exc:
        raise SystemExit(f"Failed to unlock gpg key: {exc}")
    except WalkError as exc:
        raise SystemExit(f"Could not read password store: {exc}")
    except (ExportCancelled, KeyboardInterrupt):
        cancel.cancel()
        raise SystemExit("Export aborted.")
    except (OSError, csv.Error) as exc:
        raise SystemExit(f"Could not write output: {exc}")

    if args.output:
        print(f"Exported {summary.written} entries to {args.output}", file=sys.stderr)
    if summary.problems:
        degraded = len({p.name for p in summary.problems})
        print(f"{degraded} entries exported with missing data, see warnings above.", file=sys.stderr)


if __name__ == "__main__":
    main()
