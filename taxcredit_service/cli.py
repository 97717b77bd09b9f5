from __future__ import annotations

import argparse


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="taxcredit-worker",
        description="Run the document and consolidation worker pools",
    )
    p.add_argument(
        "--concurrency",
        type=int,
        default=0,
        help="Document workers (override TC_DOCUMENT_CONCURRENCY)",
    )
    p.add_argument(
        "--consolidation-concurrency",
        type=int,
        default=0,
        help="Consolidation workers (override TC_CONSOLIDATION_CONCURRENCY)",
    )
    p.add_argument(
        "--grace-seconds",
        type=float,
        default=30.0,
        help="How long to let in-flight jobs finish on shutdown",
    )
    p.add_argument("--no-clean", action="store_true", help="Disable the periodic retention sweep")
    p.add_argument("--log-level", default="INFO", help="Python logging level (INFO, DEBUG, ...)")
    return p
