#!/usr/bin/env python3
"""
GitHub organization mirror backup to AWS S3 with retention tiers
"""

import argparse
import inspect
import json
import logging
import signal
import sys
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv
from loguru import logger
from rich_argparse import ArgumentDefaultsRichHelpFormatter
from tqdm import tqdm

from .base import RepositoryManager, RepositoryRef, RepositoryResult, RunSummary
from .config import API_CHOICES, BackupConfig, build_config
from .credentials import CredentialBroker, get_github_token
from .errors import (
    BackupError,
    ConfigurationError,
    CredentialFailure,
    EnumerationFailure,
    PerRepositoryFailure,
)
from .github_manager import GitHubManager
from .policies import render_all
from .retention import TIER_CHOICES, RetentionTier, resolve_tier
from .s3_uploader import S3Uploader
from .snapshot import SnapshotProducer, format_timestamp

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_FATAL = 2
EXIT_INTERRUPTED = 130


class InterceptHandler(logging.Handler):
    """Forward standard logging records from the library classes to loguru"""

    def emit(self, record: logging.LogRecord):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = inspect.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(verbose: bool = False, log_file: str = "org-backup.log"):
    """Setup console and file logging with loguru"""

    # Remove default loguru handler
    logger.remove()

    # Create logs directory
    log_dir = Path("logs")
    log_dir.mkdir(exist_ok=True)
    log_file_path = log_dir / log_file

    log_level = "DEBUG" if verbose else "INFO"

    console_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<level>{message}</level>"
    )

    logger.add(sys.stdout, format=console_format, level=log_level, colorize=True)

    # Configure file handler with detailed format
    file_format = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} | {message}"

    logger.add(
        log_file_path,
        format=file_format,
        level=log_level,
        rotation="10 MB",
        retention="30 days",
        compression="zip",
        encoding="utf-8",
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    # botocore and urllib3 are chatty at DEBUG
    for noisy in ("botocore", "boto3", "s3transfer", "urllib3", "github"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logger.info("[CONFIG] Logging configured")
    logger.debug(f"Log file: {log_file_path}")

    return logger


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OrgBackupOrchestrator:
    """
    Runs one backup: enumerate, obtain storage credentials, then
    snapshot and upload each repository.

    Collaborators are built from the configuration unless injected.
    A failing repository is recorded and skipped; enumeration and
    credential failures abort the run.
    """

    def __init__(
        self,
        config: BackupConfig,
        manager: Optional[RepositoryManager] = None,
        producer: Optional[SnapshotProducer] = None,
        uploader: Optional[S3Uploader] = None,
        broker: Optional[CredentialBroker] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.manager = manager
        self.producer = producer
        self.uploader = uploader
        self.broker = broker
        self.clock = clock
        # Set on interrupt or fatal error; workers check it before cloning and uploading
        self.stop_requested = threading.Event()

    def get_manager(self) -> RepositoryManager:
        if self.manager is None:
            self.manager = GitHubManager(
                token=self.config.github_token,
                organization=self.config.organization,
                api=self.config.api,
                graphql_url=self.config.graphql_url,
                page_size=self.config.page_size,
            )
        return self.manager

    def get_uploader(self, show_progress: bool = False) -> S3Uploader:
        if self.uploader is None:
            broker = self.broker or CredentialBroker(
                region=self.config.region,
                role_arn=self.config.role_arn,
                session_name=self.config.session_name,
                profile=self.config.profile,
            )
            self.uploader = S3Uploader(
                bucket_name=self.config.bucket,
                session=broker.session(),
                region=self.config.region,
                key_prefix=self.config.key_prefix,
                organization=self.config.organization,
                max_attempts=self.config.upload_attempts,
                backoff_base=self.config.upload_backoff,
                server_side_encryption=self.config.server_side_encryption,
                show_progress=show_progress,
            )
            logger.info(f"[CONFIG] S3 uploader configured for bucket: {self.config.bucket}")
        return self.uploader

    def get_producer(self) -> SnapshotProducer:
        if self.producer is None:
            self.producer = SnapshotProducer(
                organization=self.config.organization,
                token=self.config.github_token,
                work_dir=self.config.work_dir,
                git_host=self.config.git_host,
            )
        return self.producer

    def get_repositories(self) -> List[RepositoryRef]:
        logger.info(
            f"[DISCOVER] Discovering repositories of {self.config.organization}..."
        )
        return self.get_manager().get_repositories()

    def select_repositories(
        self, repos: List[RepositoryRef], names: Optional[List[str]]
    ) -> tuple:
        """Split requested names into (matching repositories, unknown names)"""
        if not names:
            return repos, []

        by_name = {r.name.lower(): r for r in repos}
        selected = []
        missing = []
        for name in names:
            repo = by_name.get(name.lower())
            if repo is None:
                missing.append(name)
            elif repo not in selected:
                selected.append(repo)
        return selected, missing

    def backup_repository(
        self, repo: RepositoryRef, tier: RetentionTier, timestamp: str
    ) -> RepositoryResult:
        """Snapshot and upload a single repository; never leaves local files behind"""
        producer = self.get_producer()
        archive = None
        try:
            if self.stop_requested.is_set():
                return self._stopped(repo)
            logger.info(f"[BACKUP] Backing up {repo.full_name}")
            archive = producer.produce(repo, timestamp)
            if self.stop_requested.is_set():
                return self._stopped(repo)
            key = self.get_uploader().upload_snapshot(archive, tier, repository=repo.name)
            logger.info(f"[SUCCESS] {repo.name} stored as {key}")
            return RepositoryResult(name=repo.name, succeeded=True, key=key)
        except CredentialFailure:
            raise
        except PerRepositoryFailure as e:
            logger.error(f"[FAIL] {e}")
            return RepositoryResult(name=repo.name, succeeded=False, error=str(e))
        except Exception as e:
            logger.exception(
                f"[ERROR] Unexpected error while backing up {repo.name}: {type(e).__name__}: {e}"
            )
            return RepositoryResult(
                name=repo.name, succeeded=False, error=f"{type(e).__name__}: {e}"
            )
        finally:
            if archive is not None:
                producer.discard(archive)

    def _stopped(self, repo: RepositoryRef) -> RepositoryResult:
        logger.warning(f"[ABORT] {repo.name} skipped, run is stopping")
        return RepositoryResult(name=repo.name, succeeded=False, error="run stopped")

    def run_backup(
        self,
        parallel: bool = True,
        max_workers: Optional[int] = None,
        repo_names: Optional[List[str]] = None,
    ) -> RunSummary:
        """Run the backup process"""
        now = self.clock()
        tier = resolve_tier(self.config.tier, now.date())
        timestamp = format_timestamp(now)
        summary = RunSummary(tier=str(tier), timestamp=timestamp)
        self.stop_requested.clear()

        logger.info(f"[START] Backup of {self.config.organization} at {timestamp} UTC, tier {tier}")

        try:
            # Enumeration failures abort here, before credentials or clones
            repos = self.get_repositories()
            repos, missing = self.select_repositories(repos, repo_names)
            for name in missing:
                logger.error(
                    f"[NO_MATCH] Repository '{name}' not found in {self.config.organization}"
                )
                summary.record(
                    RepositoryResult(name=name, succeeded=False, error="repository not found")
                )

            if not repos:
                logger.warning("[WARN] No repositories found to backup")
                self.log_summary(summary)
                return summary

            max_workers = max_workers or self.config.workers
            parallel = parallel and max_workers > 1 and len(repos) > 1

            self.get_uploader(show_progress=not parallel)
            self.get_producer().prepare()

            logger.info(f"[TOTAL] Total repositories to backup: {len(repos)}")
            logger.info(
                f"[PROCESS] Using {'parallel' if parallel else 'sequential'} processing"
                f"{' with ' + str(max_workers) + ' workers' if parallel else ''}..."
            )

            if parallel:
                self._run_parallel(repos, tier, timestamp, max_workers, summary)
            else:
                with tqdm(repos, desc="Backing up", unit="repo") as pbar:
                    for repo in pbar:
                        pbar.set_description(f"[BACKUP] {repo.name}")
                        summary.record(self.backup_repository(repo, tier, timestamp))
                        pbar.set_postfix({"OK": len(summary.succeeded), "FAIL": len(summary.failed)})
        finally:
            if self.producer is not None:
                logger.info("[CLEANUP] Cleaning up temporary files...")
                self.producer.cleanup_temp()

        self.log_summary(summary)
        return summary

    def _run_parallel(
        self,
        repos: List[RepositoryRef],
        tier: RetentionTier,
        timestamp: str,
        max_workers: int,
        summary: RunSummary,
    ):
        executor = ThreadPoolExecutor(max_workers=max_workers)
        try:
            futures = {
                executor.submit(self.backup_repository, repo, tier, timestamp): repo
                for repo in repos
            }
            with tqdm(total=len(repos), desc="Backing up", unit="repo") as pbar:
                for future in as_completed(futures):
                    # CredentialFailure from a worker is re-raised here
                    summary.record(future.result())
                    pbar.update(1)
                    pbar.set_postfix({"OK": len(summary.succeeded), "FAIL": len(summary.failed)})
        except BaseException:
            # Interrupt or fatal error: pending work is cancelled and in-flight
            # workers finish before the caller removes the temporary files
            self.stop_requested.set()
            logger.warning("[ABORT] Stopping, waiting for running repositories to finish")
            executor.shutdown(wait=True, cancel_futures=True)
            raise
        executor.shutdown(wait=True)

    def log_summary(self, summary: RunSummary):
        succeeded = summary.succeeded
        failed = summary.failed
        total = len(summary.results)

        logger.info("=" * 60)
        logger.info("[SUMMARY] BACKUP SUMMARY")
        logger.info("=" * 60)
        logger.info(f"[TIER] {summary.tier} ({summary.timestamp})")
        logger.info(
            f"[SUCCESS] Successful backups: {len(succeeded)}"
            f"{' - ' + ', '.join(succeeded) if succeeded else ''}"
        )
        logger.info(
            f"[FAIL] Failed backups: {len(failed)}{' - ' + ', '.join(failed) if failed else ''}"
        )
        logger.info(f"[TOTAL] Total repositories: {total}")

        if failed:
            logger.error(
                f"[WARN] {len(failed)} repositories failed to backup: {', '.join(failed)}"
            )
        else:
            logger.info("[COMPLETE] All repositories backed up successfully!")

    def list_backups(self, tier: Optional[RetentionTier] = None):
        """List existing snapshots in S3"""
        backups = self.get_uploader().list_backups(tier)

        if not backups:
            logger.info("No backups found")
            return backups

        logger.info(f"Found {len(backups)} backups:")
        for backup in backups:
            logger.info(
                f"  - {backup['key']} ({backup['size_mb']:.2f} MB) - {backup['last_modified']}"
            )
        return backups


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt(f"received signal {signum}")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="org-backup",
        description="[bold blue]GitHub Organization Backup[/bold blue] - Mirror every repository of an organization to AWS S3",
        epilog="""
[bold green]Examples:[/bold green]
  [dim]# Nightly run, tier chosen from the date[/dim]
  [yellow]%(prog)s[/yellow] [cyan]--org[/cyan] my-org [cyan]--bucket[/cyan] my-backups [cyan]--role-arn[/cyan] arn:aws:iam::123456789012:role/github-backup

  [dim]# Force the monthly tier for two repositories[/dim]
  [yellow]%(prog)s[/yellow] [cyan]--org[/cyan] my-org [cyan]--bucket[/cyan] my-backups [cyan]--tier[/cyan] monthly [cyan]--repos[/cyan] api,web

  [dim]# Print lifecycle and IAM documents for the one-time AWS setup[/dim]
  [yellow]%(prog)s[/yellow] [cyan]--org[/cyan] my-org [cyan]--bucket[/cyan] my-backups [cyan]--print-policies[/cyan] [cyan]--account-id[/cyan] 123456789012

[bold blue]Retention:[/bold blue]
  • monthly on the 1st, weekly on Sundays, daily otherwise
  • expiry is enforced by the bucket lifecycle rules (7 / 28 / 365 days)
        """,
        formatter_class=ArgumentDefaultsRichHelpFormatter,
    )

    target_group = parser.add_argument_group("Backup Target")
    target_group.add_argument(
        "--org", dest="organization", metavar="ORG", help="GitHub organization (env: GITHUB_ORG)"
    )
    target_group.add_argument(
        "--bucket", metavar="NAME", help="Destination S3 bucket (env: AWS_S3_BUCKET)"
    )
    target_group.add_argument(
        "--tier",
        "--prefix",
        dest="tier",
        type=str.lower,
        choices=TIER_CHOICES,
        help="Retention tier prefix; 'auto' picks it from the UTC date (env: BACKUP_TIER)",
    )
    target_group.add_argument(
        "--key-prefix", metavar="PREFIX", help="Extra key prefix before the tier (env: S3_PREFIX)"
    )
    target_group.add_argument(
        "--config", metavar="FILE", help="YAML file with configuration defaults"
    )

    aws_group = parser.add_argument_group("AWS Credentials")
    aws_group.add_argument(
        "--region", metavar="REGION", help="AWS region (env: AWS_REGION, default: eu-west-1)"
    )
    aws_group.add_argument(
        "--role-arn",
        "--role-to-assume",
        dest="role_arn",
        metavar="ARN",
        help="IAM role assumed with the OIDC web identity token (env: AWS_ROLE_ARN)",
    )
    aws_group.add_argument(
        "--profile",
        metavar="PROFILE",
        help="AWS profile used when no role is given (env: AWS_PROFILE)",
    )

    github_group = parser.add_argument_group("GitHub")
    github_group.add_argument(
        "--api",
        choices=API_CHOICES,
        help="Repository listing backend (env: GITHUB_API, default: graphql)",
    )
    github_group.add_argument(
        "--repos",
        metavar="NAMES",
        help="Comma-separated repository names to back up instead of the whole organization",
    )

    ops_group = parser.add_argument_group("Operations")
    ops_group.add_argument("--list", action="store_true", help="List existing backups")
    ops_group.add_argument(
        "--list-repos",
        action="store_true",
        help="List the repositories that would be backed up and exit",
    )
    ops_group.add_argument(
        "--print-policies",
        action="store_true",
        help="Print bucket lifecycle, encryption and IAM policy documents as JSON",
    )
    ops_group.add_argument(
        "--account-id", metavar="ID", help="AWS account ID for the OIDC trust policy"
    )
    ops_group.add_argument(
        "--backup-repo",
        default="git-backup",
        metavar="REPO",
        help="Repository whose workflow may assume the backup role",
    )

    perf_group = parser.add_argument_group("Performance Options")
    perf_group.add_argument(
        "--sequential",
        action="store_true",
        help="Back up one repository at a time",
    )
    perf_group.add_argument(
        "--workers",
        type=int,
        metavar="N",
        help="Number of parallel workers (env: PARALLEL_WORKERS, default: 4)",
    )
    perf_group.add_argument(
        "--work-dir",
        metavar="DIR",
        help="Parent directory for temporary clones (env: WORK_DIR, default: system temp)",
    )

    log_group = parser.add_argument_group("Logging Options")
    log_group.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )
    log_group.add_argument(
        "--log-file",
        default="org-backup.log",
        metavar="FILE",
        help="Log file name under logs/",
    )

    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None):
    # Load environment variables first (before parsing args)
    load_dotenv()

    args = parse_args(argv)
    setup_logging(verbose=args.verbose, log_file=args.log_file)
    signal.signal(signal.SIGTERM, _raise_interrupt)

    sys.exit(run(args))


def run(args: argparse.Namespace) -> int:
    """Execute the requested operation and return the process exit code"""
    try:
        config = build_config(
            overrides={
                "organization": args.organization,
                "bucket": args.bucket,
                "tier": args.tier,
                "region": args.region,
                "role_arn": args.role_arn,
                "profile": args.profile,
                "api": args.api,
                "key_prefix": args.key_prefix,
                "workers": args.workers,
                "work_dir": args.work_dir,
            },
            config_path=args.config,
        )

        if args.print_policies:
            config.validate(require_token=False)
            documents = render_all(
                bucket_name=config.bucket,
                organization=config.organization,
                account_id=args.account_id,
                backup_repo=args.backup_repo,
                key_prefix=config.key_prefix,
            )
            if not args.account_id:
                logger.warning("[CONFIG] --account-id not given, trust policy omitted")
            print(json.dumps(documents, indent=2))
            return EXIT_OK

        if args.list:
            config.validate(require_organization=False, require_token=False)
            tier = None if config.tier == "auto" else RetentionTier(config.tier)
            OrgBackupOrchestrator(config).list_backups(tier)
            return EXIT_OK

        config.github_token = config.github_token or get_github_token()

        if args.list_repos:
            config.validate(require_bucket=False)
            repos = OrgBackupOrchestrator(config).get_repositories()
            for repo in repos:
                print(repo.name)
            logger.info(f"[DISCOVER] {len(repos)} repositories")
            return EXIT_OK

        config.validate()
        repo_names = None
        if args.repos:
            repo_names = [r.strip() for r in args.repos.split(",") if r.strip()]

        orchestrator = OrgBackupOrchestrator(config)
        summary = orchestrator.run_backup(
            parallel=not args.sequential,
            max_workers=config.workers,
            repo_names=repo_names,
        )
        return EXIT_PARTIAL if summary.exit_code else EXIT_OK

    except ConfigurationError as e:
        logger.error(f"[CONFIG] {e}")
        return EXIT_FATAL
    except EnumerationFailure as e:
        logger.error(f"[ERROR] Repository enumeration failed, nothing was backed up: {e}")
        return EXIT_FATAL
    except CredentialFailure as e:
        logger.error(f"[ERROR] AWS credentials unavailable, run aborted: {e}")
        return EXIT_FATAL
    except BackupError as e:
        logger.error(f"[ERROR] {e}")
        return EXIT_FATAL
    except (ClientError, BotoCoreError) as e:
        logger.error(f"[ERROR] AWS request failed: {e}")
        return EXIT_FATAL
    except KeyboardInterrupt:
        logger.error("[ABORT] Interrupted, temporary files removed")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    main()
