"""CLI entry point for borrg."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import yaml

from borrg import __version__
from borrg.backend import BackendError, Borg
from borrg.commands import BackendSettings, CommandError
from borrg.config import (
    DEFAULT_CONFIG_PATH,
    Config,
    ConfigError,
    append_backup,
    load_config,
)
from borrg.executor import ExecutorError
from borrg.models import Encryption, InfoError, PassCommand, RateLimit
from borrg.repo import RepoAddress
from borrg.util import format_bytes, parse_byte_size, resolve_path

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s][%(levelname)s][%(name)s] %(message)s"


def _verbosity(args) -> int:
    return args.verbose - args.quiet


def setup_logging(verbosity: int) -> None:
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    elif verbosity == 0:
        level = logging.WARNING
    else:
        level = logging.ERROR
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)


def _borg_log_level(verbosity: int) -> str:
    if verbosity >= 2:
        return "debug"
    if verbosity == 1:
        return "info"
    if verbosity == 0:
        return "warning"
    return "error"


def _make_borg(args) -> Borg:
    settings = BackendSettings(
        binary=args.borg,
        dry_run=args.dry_run,
        rate_limit=RateLimit(up=args.upload_ratelimit, down=args.download_ratelimit),
        log_level=_borg_log_level(_verbosity(args)),
    )
    return Borg(settings)


def _load(args, missing_ok: bool = False) -> Config | None:
    """Load the config file, printing the error and returning None on failure."""
    if missing_ok and not _config_exists(args.config):
        return Config()
    logger.debug("Loading config from %s", args.config)
    try:
        return load_config(args.config)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return None


def _config_exists(path: str) -> bool:
    return Path(resolve_path(path)).exists()


def _jobs(config: Config):
    try:
        return config.jobs()
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return None


def cmd_run(args) -> int:
    from borrg.run import run_jobs

    config = _load(args)
    if config is None:
        return 1
    jobs = _jobs(config)
    if jobs is None:
        return 1
    if not jobs:
        print("No backups configured.")
        return 0

    failed = run_jobs(_make_borg(args), jobs)

    prefix = "[dry-run] " if args.dry_run else ""
    print(f"{prefix}{len(jobs) - len(failed)} of {len(jobs)} backup(s) completed.")
    for index in failed:
        print(f"  failed: {jobs[index].label}", file=sys.stderr)
    return 0


def _print_event(event) -> None:
    text = str(event)
    if text:
        print(text)


def cmd_init(args) -> int:
    config = _load(args, missing_ok=True)
    if config is None:
        return 1
    try:
        repo = RepoAddress.parse(args.repository)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.passcommand is not None:
        repo = repo.with_passphrase(PassCommand(args.passcommand))
    else:
        jobs = _jobs(config)
        if jobs is None:
            return 1
        match = next((job for job in jobs if job.repo == repo), None)
        if match is not None:
            repo = repo.with_passphrase(match.repo.passphrase)

    borg = _make_borg(args)
    try:
        borg.init_repository(
            repo,
            Encryption(args.encryption),
            append_only=args.append_only,
            make_parent_dirs=args.make_parent_dirs,
            storage_quota=args.storage_quota,
            on_event=_print_event,
        )
    except (BackendError, CommandError, ExecutorError) as e:
        print(f"Failed to initialize repository: {e}", file=sys.stderr)
        return 1

    if args.save:
        try:
            changed = append_backup(args.config, repo)
        except (ConfigError, OSError) as e:
            print(f"Config error: {e}", file=sys.stderr)
            return 1
        if changed:
            print(f"Added {repo} to {args.config}")
    return 0


def cmd_list(args) -> int:
    """List configured backups and the paths they cover."""
    config = _load(args)
    if config is None:
        return 1
    jobs = _jobs(config)
    if jobs is None:
        return 1

    print(f"{'#':>3}  {'Repository':<50} {'Paths'}")
    print("-" * 80)
    for i, job in enumerate(jobs):
        print(f"{i:>3}  {str(job.repo):<50} {', '.join(job.archive.paths)}")
    return 0


def _select_job(jobs, selector: str):
    if selector.isdigit():
        index = int(selector)
        return jobs[index] if index < len(jobs) else None
    try:
        wanted = RepoAddress.parse(selector)
    except ValueError:
        return None
    return next((job for job in jobs if job.repo == wanted), None)


def cmd_info(args) -> int:
    """Show repository statistics for one configured backup."""
    config = _load(args)
    if config is None:
        return 1
    jobs = _jobs(config)
    if jobs is None:
        return 1
    job = _select_job(jobs, args.backup)
    if job is None:
        print(f"No configured backup matches {args.backup!r}", file=sys.stderr)
        return 1

    try:
        info = _make_borg(args).repo_info(job.repo)
    except ExecutorError as e:
        if e.stderr:
            sys.stderr.write(e.stderr)
        else:
            print(f"Error: {e}", file=sys.stderr)
        return 1
    except (BackendError, InfoError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Repository ID: {info.id}")
    print(f"Location:      {info.location}")
    print(f"Encryption:    {info.encryption}")
    if info.last_modified:
        print(f"Last modified: {info.last_modified}")
    print(f"Cache:         {info.cache_path}")
    print(f"Security dir:  {info.security_dir}")
    print()
    print(f"{'':<16}{'Original size':>16}{'Compressed size':>18}{'Deduplicated':>16}")
    print(
        f"{'All archives:':<16}{format_bytes(info.total_size):>16}"
        f"{format_bytes(info.total_csize):>18}{format_bytes(info.unique_csize):>16}"
    )
    print(f"{'Unique chunks:':<16}{info.total_unique_chunks:>16}")
    print(f"{'Total chunks:':<16}{info.total_chunks:>16}")
    return 0


def _secret_kind(secret) -> str | None:
    return None if secret is None else type(secret).__name__


def dump_config(config: Config, borg: Borg) -> dict:
    """Plain-data view of the parsed config, with secrets redacted."""
    jobs = []
    for job in config.jobs():
        archive = job.archive
        jobs.append({
            "repository": str(job.repo),
            "passphrase": _secret_kind(job.repo.passphrase),
            "archive": archive.name,
            "paths": list(archive.paths),
            "compression": str(archive.compression) if archive.compression else None,
            "pattern_file": archive.pattern_file,
            "exclude_file": archive.exclude_file,
            "comment": archive.comment,
        })
    settings = borg.settings
    return {
        "templates": sorted(config.templates),
        "backups": jobs,
        "backend": {
            "binary": settings.binary,
            "dry_run": settings.dry_run,
            "upload_ratelimit": settings.rate_limit.up,
            "download_ratelimit": settings.rate_limit.down,
            "log_level": settings.log_level,
        },
    }


def cmd_debug(args) -> int:
    """Print the parsed configuration without running anything."""
    config = _load(args)
    if config is None:
        return 1
    try:
        data = dump_config(config, _make_borg(args))
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 1
    print(yaml.safe_dump(data, sort_keys=False), end="")
    return 0


def _byte_size(text: str) -> int:
    try:
        return parse_byte_size(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(
        prog="borrg",
        description="Run borg backups described by a config file",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", default=DEFAULT_CONFIG_PATH,
                        help=f"Path to config file (default: {DEFAULT_CONFIG_PATH})")
    parser.add_argument("--dry-run", "-n", action="store_true",
                        help="Run borg in dry-run mode")
    parser.add_argument("--verbose", "-v", action="count", default=0,
                        help="More log output (repeat for debug)")
    parser.add_argument("--quiet", "-q", action="count", default=0,
                        help="Only log errors")
    parser.add_argument("--borg", default="borg", help="borg executable to run")
    parser.add_argument("--upload-ratelimit", type=int, metavar="KIB",
                        help="Upload rate limit in kiB/s")
    parser.add_argument("--download-ratelimit", type=int, metavar="KIB",
                        help="Download rate limit in kiB/s")
    sub = parser.add_subparsers(dest="command", required=True)

    p_run = sub.add_parser("run", help="Run all configured backups")
    p_run.add_argument("--dry-run", "-n", action="store_true", default=argparse.SUPPRESS,
                       help="Run borg in dry-run mode")
    p_run.set_defaults(func=cmd_run)

    p_init = sub.add_parser("init", help="Initialize a new repository")
    p_init.add_argument("repository", help="Location of the new repository")
    p_init.add_argument("--encryption", "-e", required=True,
                        choices=[e.value for e in Encryption],
                        help="Encryption key mode")
    p_init.add_argument("--append-only", action="store_true",
                        help="Create an append-only repository")
    p_init.add_argument("--storage-quota", type=_byte_size, metavar="SIZE",
                        help="Storage quota, e.g. 5G or 1T (default: none)")
    p_init.add_argument("--make-parent-dirs", action="store_true",
                        help="Create missing parent directories of the repository")
    p_init.add_argument("--passcommand",
                        help="Command printing the passphrase for the new repository")
    p_init.add_argument("--save", action="store_true",
                        help="Add the repository to the config file if not listed")
    p_init.set_defaults(func=cmd_init)

    p_list = sub.add_parser("list", help="List configured backups")
    p_list.set_defaults(func=cmd_list)

    p_info = sub.add_parser("info", help="Show information about a backup repository")
    p_info.add_argument("backup", help="Backup index (see 'list') or repository location")
    p_info.set_defaults(func=cmd_info)

    p_debug = sub.add_parser("debug", help="Print the parsed configuration")
    p_debug.set_defaults(func=cmd_debug)

    args = parser.parse_args(argv)
    setup_logging(_verbosity(args))
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
