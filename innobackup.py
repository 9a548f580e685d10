#!/usr/bin/env python3
"""
MySQL backup orchestrator.

Runs innobackupex once per invocation, taking a full backup the first time it
runs on a given day and incremental backups against the latest recorded
checkpoint afterwards. The xbstream output is uploaded to S3 with an expiry
taken from the retention pyramid, and the chain state is only recorded when
both the backup and the upload succeeded.
"""
from __future__ import annotations

import argparse
import calendar
import json
import logging
import math
import os
import socket
import subprocess
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

import backup_state
from backup_state import (
    PROCESS_FAILURE_PATTERNS,
    UPLOAD_FAILURE_PATTERNS,
    BackupType,
    StateRecord,
    StateStore,
)


PROGRAM_NAME = "innobackup"
DEFAULT_CONFIG_PATH = Path("/etc/mysql/innobackupex.json")
DEFAULT_BACKUP_BIN = Path("/usr/bin/innobackupex")
DEFAULT_EXPECTED_FULL_SIZE = 1_600_000_000
RUN_ID_FORMAT = "%Y%m%d%H%M%S"
S3_MAX_PARTS = 10_000
MIN_MULTIPART_CHUNK = 8 * 1024 * 1024
SECRET_FLAGS = ("--password=", "--encrypt-key=")
NOISY_LOGGERS = ("boto", "boto3", "botocore", "urllib3", "s3transfer")


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""


class BackupBlockedError(Exception):
    """Raised when the backups this run could take are already running."""


class NoStateError(Exception):
    """Raised when the incremental chain has no usable baseline."""


@dataclass
class BackupConfig:
    bucket: str
    backup_bin: Path = DEFAULT_BACKUP_BIN
    backup_parallel: int = 4
    backup_compress_threads: int = 4
    backup_target_dir: Path = Path("/tmp/sql")
    sql_backup_user: Optional[str] = None
    sql_backup_password: Optional[str] = None
    encrypt_key: Optional[str] = None
    encrypt_threads: int = 4
    aws_profile: Optional[str] = None
    aws_region: Optional[str] = None
    upload_threads: int = 10
    expected_full_size: Optional[int] = None
    hostname: Optional[str] = None
    state_dir: Path = Path("/tmp")
    backup_timeout: Optional[int] = None
    upload_timeout: Optional[int] = None
    dry_run: bool = False


@dataclass
class BackupPlan:
    backup_type: BackupType
    baseline: Optional[str] = None


@dataclass
class BackupRun:
    started: datetime
    run_id: str
    backup_type: Optional[BackupType] = None
    artifact_path: Optional[Path] = None
    process_log: Optional[Path] = None
    upload_log: Optional[Path] = None
    storage_key: Optional[str] = None
    expires: Optional[datetime] = None
    command: List[str] = field(default_factory=list)
    missing_binaries: List[str] = field(default_factory=list)
    process_completed: bool = False
    upload_completed: bool = False
    log_success: bool = False
    recorded: bool = False
    dry_run: bool = False
    fatal_error: Optional[str] = None
    record_error: Optional[str] = None
    failure_tags: Set[str] = field(default_factory=set)

    @property
    def backup_completed(self) -> bool:
        return self.log_success and self.process_completed and self.upload_completed

    @property
    def succeeded(self) -> bool:
        return self.backup_completed and self.record_error is None

    def failure_reasons(self) -> List[str]:
        reasons: List[str] = []
        if self.fatal_error:
            reasons.append(self.fatal_error)
        if self.missing_binaries:
            reasons.append("missing binaries: " + ", ".join(self.missing_binaries))
        if self.command and not self.process_completed:
            reasons.append("process failure")
        if self.process_completed and not self.upload_completed:
            reasons.append("upload failure")
        if self.process_completed and self.upload_completed and not self.log_success:
            reasons.append("backup log lacks success marker")
        if self.record_error:
            reasons.append(self.record_error)
        return reasons

    def summary(self) -> Dict[str, object]:
        return {
            "type": self.backup_type.value if self.backup_type else None,
            "started": self.started.isoformat(),
            "storage_key": self.storage_key,
            "expires": self.expires.isoformat() if self.expires else None,
            "process_completed": self.process_completed,
            "upload_completed": self.upload_completed,
            "success": self.succeeded,
            "recorded": self.recorded,
            "dry_run": self.dry_run,
            "reasons": [] if self.succeeded else self.failure_reasons(),
            "diagnostics": sorted(self.failure_tags),
        }


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run a full or incremental innobackupex backup and upload it to S3."
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to the JSON config file (default: {DEFAULT_CONFIG_PATH}).",
    )
    parser.add_argument(
        "--state-dir",
        type=Path,
        help="Directory holding state records, lock files and logs (default: /tmp).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging verbosity (default: INFO).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Plan the backup and show the command without running or uploading anything.",
    )
    parser.add_argument(
        "--report-json",
        type=Path,
        help="Write a JSON summary of the run to this path.",
    )
    return parser.parse_args(argv)


def read_config_file(config_path: Path) -> Dict[str, object]:
    try:
        text = config_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logging.debug("Config file %s not found, using defaults.", config_path)
        return {}
    try:
        data = json.loads(text)
    except ValueError as error:
        raise ConfigurationError(f"Config file {config_path} is not valid JSON: {error}") from error
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {config_path} must contain a JSON object.")
    return data


def parse_int(value: object, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be an integer.")
    try:
        number = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as error:
        raise ConfigurationError(f"{name} must be an integer.") from error
    if number <= 0:
        raise ConfigurationError(f"{name} must be a positive integer.")
    return number


def _optional_int(file_cfg: Dict[str, object], name: str) -> Optional[int]:
    value = file_cfg.get(name)
    if value is None:
        return None
    return parse_int(value, name)


def _optional_str(file_cfg: Dict[str, object], name: str) -> Optional[str]:
    value = file_cfg.get(name)
    if value is None:
        return None
    return str(value)


def merge_config(
    args: argparse.Namespace, file_config: Optional[Dict[str, object]]
) -> BackupConfig:
    file_cfg = file_config or {}

    bucket = file_cfg.get("aws_bucket")
    if not bucket:
        raise ConfigurationError("aws_bucket not provided")

    state_dir_value = args.state_dir or file_cfg.get("state_dir") or "/tmp"

    return BackupConfig(
        bucket=str(bucket),
        backup_bin=Path(str(file_cfg.get("backup_bin") or DEFAULT_BACKUP_BIN)),
        backup_parallel=parse_int(file_cfg.get("backup_parallel", 4), "backup_parallel"),
        backup_compress_threads=parse_int(
            file_cfg.get("backup_compress_threads", 4), "backup_compress_threads"
        ),
        backup_target_dir=Path(str(file_cfg.get("backup_target_dir") or "/tmp/sql")),
        sql_backup_user=_optional_str(file_cfg, "sql_backup_user"),
        sql_backup_password=_optional_str(file_cfg, "sql_backup_password"),
        encrypt_key=_optional_str(file_cfg, "encrypt_key") or None,
        encrypt_threads=parse_int(file_cfg.get("encrypt_threads", 4), "encrypt_threads"),
        aws_profile=_optional_str(file_cfg, "aws_profile"),
        aws_region=_optional_str(file_cfg, "aws_region"),
        upload_threads=parse_int(file_cfg.get("aws_threads", 10), "aws_threads"),
        expected_full_size=_optional_int(file_cfg, "expected_full_size"),
        hostname=_optional_str(file_cfg, "hostname") or None,
        state_dir=Path(str(state_dir_value)).expanduser(),
        backup_timeout=_optional_int(file_cfg, "backup_timeout"),
        upload_timeout=_optional_int(file_cfg, "upload_timeout"),
        dry_run=args.dry_run,
    )


def _quiet_external_loggers() -> None:
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def configure_logging(log_level: str) -> None:
    level = getattr(logging, log_level.upper(), None)
    if level is None:
        raise ValueError(f"Invalid log level: {log_level}")
    logging.basicConfig(level=level)
    _quiet_external_loggers()


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping to the last day of short months."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def expires_date(now: datetime, backup_type: BackupType) -> datetime:
    # Keep incrementals for 2 days
    if backup_type is BackupType.INCREMENTAL:
        return now + timedelta(days=2)
    today = now.date()
    # Keep first backup of month for 6 months
    if (today - timedelta(days=1)).month != today.month:
        return add_months(now, 6)
    # Keep first backup of week (monday) for a month
    if today.isoweekday() == 1:
        return add_months(now, 1)
    # Keep daily backups for 2 weeks
    return now + timedelta(weeks=2)


def fully_backed_up_today(store: StateStore, now: datetime) -> bool:
    record = store.read_state(BackupType.FULL)
    if record is None:
        logging.info("No usable full backup state; assuming no full backup today.")
        return False
    return record.date.astimezone(now.tzinfo).date() == now.date()


def resolve_incremental_checkpoint(store: StateStore) -> str:
    full = store.read_state(BackupType.FULL)
    if full is None:
        raise NoStateError("no state file for incremental backup")
    incremental = store.read_state(BackupType.INCREMENTAL)
    source = full if incremental is None or full.date > incremental.date else incremental
    if not source.checkpoint:
        raise NoStateError("no state file for incremental backup")
    return source.checkpoint


def plan_backup(store: StateStore, now: datetime) -> BackupPlan:
    if not fully_backed_up_today(store, now) and not store.is_lock_held(BackupType.FULL):
        return BackupPlan(BackupType.FULL)
    if not store.is_lock_held(BackupType.INCREMENTAL):
        return BackupPlan(
            BackupType.INCREMENTAL, baseline=resolve_incremental_checkpoint(store)
        )
    raise BackupBlockedError("Unable to backup as backups are running")


def resolve_hostname(config: BackupConfig) -> str:
    if config.hostname:
        return config.hostname
    try:
        hostname = socket.getfqdn(socket.gethostname())
    except OSError as error:
        raise ConfigurationError(f"Unable to resolve hostname: {error}") from error
    if not hostname:
        raise ConfigurationError("Unable to resolve hostname.")
    return hostname


def _timestamp(moment: datetime) -> str:
    return moment.isoformat(timespec="seconds")


def storage_key_for(
    backup_type: BackupType, *, hostname: str, now: datetime, store: StateStore
) -> str:
    if backup_type is BackupType.FULL:
        return f"{hostname}/{_timestamp(now)}/full_backup"
    full = store.read_state(BackupType.FULL)
    if full is None:
        raise NoStateError("incremental state missing or corrupt")
    return f"{hostname}/{_timestamp(full.date)}/incremental_{_timestamp(now)}"


def expected_full_size(config: BackupConfig, store: StateStore) -> int:
    previous = store.read_state(BackupType.FULL)
    if previous is not None and previous.size:
        return previous.size
    if config.expected_full_size:
        return config.expected_full_size
    return DEFAULT_EXPECTED_FULL_SIZE


def build_backup_command(
    config: BackupConfig, backup_type: BackupType, baseline: Optional[str] = None
) -> List[str]:
    command = [str(config.backup_bin)]
    if config.sql_backup_user is not None:
        command.append(f"--user={config.sql_backup_user}")
    if config.sql_backup_password is not None:
        command.append(f"--password={config.sql_backup_password}")
    if backup_type is BackupType.INCREMENTAL:
        if not baseline:
            raise NoStateError("no state file for incremental backup")
        command.extend(["--incremental", f"--incremental-lsn={baseline}"])
    command.extend(
        [
            f"--parallel={config.backup_parallel}",
            f"--compress-threads={config.backup_compress_threads}",
        ]
    )
    if config.encrypt_key:
        command.extend(
            [
                "--encrypt=AES256",
                f"--encrypt-key={config.encrypt_key}",
                f"--encrypt-threads={config.encrypt_threads}",
            ]
        )
    command.extend(["--stream=xbstream", "--compress", str(config.backup_target_dir)])
    return command


def redact_command(command: Iterable[str]) -> List[str]:
    redacted: List[str] = []
    for argument in command:
        for flag in SECRET_FLAGS:
            if argument.startswith(flag):
                argument = flag + "****"
                break
        redacted.append(argument)
    return redacted


def _storage_client_available() -> bool:
    try:
        import boto3  # noqa: F401
    except ModuleNotFoundError:
        return False
    return True


def find_missing_binaries(config: BackupConfig) -> List[str]:
    missing: List[str] = []
    if not (config.backup_bin.is_file() and os.access(config.backup_bin, os.X_OK)):
        missing.append(str(config.backup_bin))
    if not _storage_client_available():
        missing.append("boto3")
    return missing


def run_backup_process(
    command: List[str], *, artifact_path: Path, log_path: Path, timeout: Optional[int]
) -> bool:
    artifact_path.parent.mkdir(parents=True, exist_ok=True)
    with artifact_path.open("wb") as stream, log_path.open("wb") as log:
        try:
            completed = subprocess.run(
                command, stdout=stream, stderr=log, timeout=timeout, check=False
            )
        except subprocess.TimeoutExpired:
            logging.error("%s did not finish within %d seconds", command[0], timeout)
            return False
        except OSError as error:
            logging.error("Unable to start %s: %s", command[0], error)
            return False
    if completed.returncode != 0:
        logging.error("%s exited with status %d", command[0], completed.returncode)
        return False
    return True


def create_s3_client(
    *, aws_profile: Optional[str], aws_region: Optional[str], timeout: Optional[int] = None
):
    try:
        import boto3
    except ModuleNotFoundError as exc:
        raise RuntimeError(
            "boto3 is required for S3 operations. Install with `pip install boto3`."
        ) from exc
    _quiet_external_loggers()
    session_kwargs = {}
    if aws_profile:
        session_kwargs["profile_name"] = aws_profile
    if aws_region:
        session_kwargs["region_name"] = aws_region
    client_kwargs = {}
    if timeout:
        from botocore.config import Config

        client_kwargs["config"] = Config(connect_timeout=timeout, read_timeout=timeout)
    session = boto3.Session(**session_kwargs)
    return session.client("s3", **client_kwargs)


def multipart_chunk_size(expected_size: Optional[int]) -> int:
    if not expected_size:
        return MIN_MULTIPART_CHUNK
    return max(MIN_MULTIPART_CHUNK, math.ceil(expected_size / S3_MAX_PARTS))


def _append_log(log_path: Path, message: str) -> None:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as log:
        log.write(message.rstrip("\n") + "\n")


def upload_to_s3(
    artifact_path: Path,
    *,
    bucket: str,
    key: str,
    expires: datetime,
    expected_size: Optional[int],
    threads: int,
    log_path: Path,
    aws_profile: Optional[str],
    aws_region: Optional[str],
    timeout: Optional[int] = None,
) -> bool:
    logging.info(
        "Uploading %s to s3://%s/%s (expires %s)",
        artifact_path.name,
        bucket,
        key,
        _timestamp(expires),
    )
    try:
        from boto3.s3.transfer import TransferConfig

        client = create_s3_client(
            aws_profile=aws_profile, aws_region=aws_region, timeout=timeout
        )
        transfer_config = TransferConfig(
            max_concurrency=threads,
            multipart_chunksize=multipart_chunk_size(expected_size),
        )
        client.upload_file(
            str(artifact_path),
            bucket,
            key,
            ExtraArgs={"Expires": expires},
            Config=transfer_config,
        )
    except Exception as error:  # any storage error is an upload failure
        logging.error("Failed to upload s3://%s/%s: %s", bucket, key, error)
        _append_log(log_path, f"upload failed: {error}")
        return False
    _append_log(log_path, f"upload: s3://{bucket}/{key} completed")
    return True


def delete_from_s3(
    *, bucket: str, key: str, aws_profile: Optional[str], aws_region: Optional[str]
) -> None:
    logging.info("Removing s3://%s/%s", bucket, key)
    client = create_s3_client(aws_profile=aws_profile, aws_region=aws_region)
    client.delete_object(Bucket=bucket, Key=key)


def record_state(store: StateStore, run: BackupRun) -> None:
    checkpoint = backup_state.extract_checkpoint(run.process_log)
    if checkpoint is None:
        # Without a checkpoint the next incremental has no baseline.
        run.record_error = "state not recorded: no checkpoint in backup log"
        logging.error(
            "No checkpoint found in %s; not recording %s backup state",
            run.process_log,
            run.backup_type.value,
        )
        return
    size: Optional[int] = None
    if run.artifact_path is not None and run.artifact_path.exists():
        size = run.artifact_path.stat().st_size
    try:
        store.write_state(
            run.backup_type,
            StateRecord(
                date=run.started,
                checkpoint=checkpoint,
                storage_key=run.storage_key,
                size=size,
            ),
        )
    except OSError as error:
        run.record_error = f"state not recorded: {error}"
        logging.error("Unable to record %s backup state: %s", run.backup_type.value, error)
        return
    run.recorded = True
    logging.info(
        "Recorded %s backup state (checkpoint %s)", run.backup_type.value, checkpoint
    )


def rollback_upload(config: BackupConfig, run: BackupRun) -> None:
    if not run.storage_key:
        return
    try:
        delete_from_s3(
            bucket=config.bucket,
            key=run.storage_key,
            aws_profile=config.aws_profile,
            aws_region=config.aws_region,
        )
    except Exception as error:  # rollback is best effort
        logging.warning(
            "Unable to remove s3://%s/%s: %s", config.bucket, run.storage_key, error
        )


def cleanup_artifact(run: BackupRun) -> None:
    if run.artifact_path is None:
        return
    try:
        run.artifact_path.unlink(missing_ok=True)
    except OSError as error:
        logging.warning("Unable to remove %s: %s", run.artifact_path, error)


def _execute(config: BackupConfig, store: StateStore, run: BackupRun) -> None:
    plan = plan_backup(store, run.started)
    backup_type = plan.backup_type
    run.backup_type = backup_type
    run.process_log = store.process_log(backup_type)
    run.upload_log = store.upload_log(backup_type)
    logging.info("Planned %s backup", backup_type.value)

    hostname = resolve_hostname(config)
    run.storage_key = storage_key_for(
        backup_type, hostname=hostname, now=run.started, store=store
    )
    run.expires = expires_date(run.started, backup_type)
    expected_size = (
        expected_full_size(config, store) if backup_type is BackupType.FULL else None
    )
    command = build_backup_command(config, backup_type, plan.baseline)

    if not store.try_acquire_lock(backup_type):
        raise BackupBlockedError(f"{backup_type.value} backup already running")

    if config.dry_run:
        run.dry_run = True
        logging.info("Would run: %s", " ".join(redact_command(command)))
        logging.info(
            "Would upload to s3://%s/%s expiring %s",
            config.bucket,
            run.storage_key,
            _timestamp(run.expires),
        )
        return

    run.missing_binaries = find_missing_binaries(config)
    if run.missing_binaries:
        logging.error("Missing binaries: %s", ", ".join(run.missing_binaries))
        return

    run.artifact_path = store.artifact_path(backup_type, run.run_id)
    run.upload_log.parent.mkdir(parents=True, exist_ok=True)
    run.upload_log.write_text("", encoding="utf-8")
    run.command = redact_command(command)
    logging.info("Starting %s backup: %s", backup_type.value, " ".join(run.command))

    run.process_completed = run_backup_process(
        command,
        artifact_path=run.artifact_path,
        log_path=run.process_log,
        timeout=config.backup_timeout,
    )
    if run.process_completed:
        run.upload_completed = upload_to_s3(
            run.artifact_path,
            bucket=config.bucket,
            key=run.storage_key,
            expires=run.expires,
            expected_size=expected_size,
            threads=config.upload_threads,
            log_path=run.upload_log,
            aws_profile=config.aws_profile,
            aws_region=config.aws_region,
            timeout=config.upload_timeout,
        )
    run.log_success = backup_state.indicates_success(run.process_log)

    if run.backup_completed:
        record_state(store, run)
    if not run.succeeded:
        rollback_upload(config, run)


def report(run: BackupRun) -> None:
    if run.dry_run:
        logging.info(
            "%s: dry run: planned %s backup",
            PROGRAM_NAME,
            run.backup_type.value if run.backup_type else "no",
        )
        return
    if run.succeeded:
        logging.info(
            "%s: success: completed %s backup", PROGRAM_NAME, run.backup_type.value
        )
        return
    logging.error("%s: failed", PROGRAM_NAME)
    for reason in run.failure_reasons():
        logging.error("%s", reason)
    # Logs left by an earlier run are only inspected once this run wrote them.
    if run.command and run.process_log is not None:
        run.failure_tags |= backup_state.classify_failure(
            run.process_log, PROCESS_FAILURE_PATTERNS
        )
    if run.process_completed and run.upload_log is not None:
        run.failure_tags |= backup_state.classify_failure(
            run.upload_log, UPLOAD_FAILURE_PATTERNS
        )
    for tag in sorted(run.failure_tags):
        logging.error("%s", tag)


def new_run(now: Optional[datetime] = None) -> BackupRun:
    started = now or datetime.now().astimezone()
    return BackupRun(
        started=started, run_id=f"{started.strftime(RUN_ID_FORMAT)}-{os.getpid()}"
    )


def run_backup(
    config: BackupConfig,
    *,
    now: Optional[datetime] = None,
    store: Optional[StateStore] = None,
) -> BackupRun:
    run = new_run(now)
    store = store or StateStore(config.state_dir)
    try:
        _execute(config, store, run)
    except (ConfigurationError, BackupBlockedError, NoStateError) as error:
        run.fatal_error = str(error)
        logging.error("%s", error)
    finally:
        cleanup_artifact(run)
        report(run)
    return run


def write_report(path: Path, run: BackupRun) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(run.summary(), indent=2) + "\n", encoding="utf-8")


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    try:
        configure_logging(args.log_level)
    except ValueError as error:
        logging.error("%s", error)
        return 2

    try:
        file_config = read_config_file(args.config)
        config = merge_config(args, file_config)
    except ConfigurationError as error:
        logging.error("%s: %s", PROGRAM_NAME, error)
        run = new_run()
        run.fatal_error = str(error)
        report(run)
        if args.report_json:
            write_report(args.report_json, run)
        return 2

    run = run_backup(config)
    if args.report_json:
        write_report(args.report_json, run)
    if run.dry_run or run.succeeded:
        return 0
    return 1


if __name__ == "__main__":
    sys.exit(main())
