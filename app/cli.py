# cli.py
# Batch entry points for operators and schedulers:
#   reimbursement import-catalog [catalog.csv]
#   reimbursement process-dossiers <dossiers.json>
import argparse
import logging
import sys

from sqlalchemy.exc import SQLAlchemyError

from app.config import get_log_level
from app.reimbursement_database import SessionLocal
from app.services.catalog_importer import import_catalog
from app.services.dossier_ingestion import load_dossier_submissions, run_dossier_batch


def _print_run(run) -> None:
    print(f"Run {run.id} ({run.job_name}): {run.status}")
    print(f"  read: {run.read_count}  processed: {run.processed_count}  failed: {run.failed_count}"
          f"  written: {run.written_count}  skipped: {run.skipped_count}")
    for error in run.errors or []:
        print(f"  - {error}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="reimbursement", description="Claim reimbursement batch jobs")
    sub = parser.add_subparsers(dest="command", required=True)

    catalog = sub.add_parser("import-catalog", help="Import the reference medication catalog")
    catalog.add_argument("path", nargs="?", default=None, help="Catalog file (defaults to CATALOG_FILE)")

    dossiers = sub.add_parser("process-dossiers", help="Compute reimbursements for a JSON file of dossiers")
    dossiers.add_argument("path", help="JSON array of dossier submissions")
    dossiers.add_argument("--chunk-size", type=int, default=None)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=get_log_level(), format="%(asctime)s | %(levelname)s | %(message)s")

    db = SessionLocal()
    try:
        if args.command == "import-catalog":
            run = import_catalog(db, path=args.path)
        else:
            submissions = load_dossier_submissions(args.path)
            run = run_dossier_batch(db, submissions, chunk_size=args.chunk_size)
        _print_run(run)
    except ValueError as exc:
        print(f"Invalid input {args.path}: {exc}", file=sys.stderr)
        return 2
    except (OSError, SQLAlchemyError) as exc:
        print(f"Batch job failed. Error: {exc}", file=sys.stderr)
        return 1
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
