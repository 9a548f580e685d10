#!/usr/bin/env python3
"""
Stand-in for innobackupex that produces a fake xbstream and log.

Accepts the same command line the orchestrator builds, writes a small
payload to stdout and an innobackupex-style log to stderr, so a backup run
can be exercised end to end without a MySQL server. Failure modes are
selected through environment variables:

    MOCK_INNOBACKUPEX_EXIT          exit status to return (default 0)
    MOCK_INNOBACKUPEX_ERROR         line to log before failing
    MOCK_INNOBACKUPEX_NO_MARKER     set to skip the final "completed OK!" line
    MOCK_INNOBACKUPEX_NO_CHECKPOINT set to leave out the checkpoint line
"""
from __future__ import annotations

import argparse
import os
import sys
from datetime import datetime
from typing import Iterable, List, Optional, Tuple


BASE_LSN = 1626007
INCREMENTAL_LSN_STEP = 4096
LOG_TIME_FORMAT = "%y%m%d %H:%M:%S"


def parse_args(argv: Optional[Iterable[str]] = None) -> Tuple[argparse.Namespace, List[str]]:
    parser = argparse.ArgumentParser(
        description="Emulate innobackupex --stream=xbstream for testing."
    )
    parser.add_argument("--incremental", action="store_true")
    parser.add_argument("--incremental-lsn", type=int)
    parser.add_argument("--parallel", type=int, default=1)
    parser.add_argument("--user")
    parser.add_argument("--password")
    return parser.parse_known_args(argv)


def next_lsn(args: argparse.Namespace) -> int:
    if args.incremental and args.incremental_lsn is not None:
        return args.incremental_lsn + INCREMENTAL_LSN_STEP
    return BASE_LSN


def log_lines(args: argparse.Namespace, lsn: int) -> List[str]:
    stamp = datetime.now().strftime(LOG_TIME_FORMAT)
    lines = [
        f"{stamp} innobackupex: Starting the backup operation",
        f"{stamp} [01] Streaming ./ibdata1 with {args.parallel} thread(s)",
    ]
    if args.incremental:
        lines.append(f"incremental backup from {args.incremental_lsn} is enabled.")
    if not os.environ.get("MOCK_INNOBACKUPEX_NO_CHECKPOINT"):
        lines.append(f"xtrabackup: The latest check point (for incremental): '{lsn}'")
    return lines


def main(argv: Optional[Iterable[str]] = None) -> int:
    args, _ = parse_args(argv)
    exit_code = int(os.environ.get("MOCK_INNOBACKUPEX_EXIT", "0"))
    error_line = os.environ.get("MOCK_INNOBACKUPEX_ERROR")
    lsn = next_lsn(args)

    if args.user is not None and not args.user:
        error_line = error_line or "innobackupex: Option user requires an argument"
        exit_code = exit_code or 2

    if exit_code == 0:
        sys.stdout.buffer.write(b"XBSTCK01" + f"mock payload lsn={lsn}\n".encode("utf-8"))
        sys.stdout.flush()

    for line in log_lines(args, lsn):
        print(line, file=sys.stderr)
    if error_line:
        print(error_line, file=sys.stderr)
    if exit_code == 0 and not os.environ.get("MOCK_INNOBACKUPEX_NO_MARKER"):
        print(f"{datetime.now().strftime(LOG_TIME_FORMAT)} completed OK!", file=sys.stderr)
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
