"""
Command line entry point used by the CI workflow.

    drawio-pipeline process [--file PATH] [--cleanup]
    drawio-pipeline upload [--test-mode] [--file PATH]
    drawio-pipeline notify --status success|failure
    drawio-pipeline run [--cleanup] [--skip-upload]
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .clients.sharepoint import SharePointClient, SharePointError
from .clients.teams import TeamsNotifier
from .config import AppConfig, ConfigurationError
from .pipelines.processing import ChangeDetectionError, DiagramProcessor, RunSummary
from .pipelines.summary import log_summary, render_markdown, write_step_summary
from .store import PersistenceError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


def setup_logging(level: str = "INFO"):
    """Setup comprehensive logging configuration"""
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("msal").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)


def _process(config: AppConfig, cleanup: bool = False) -> Optional[RunSummary]:
    """Returns None when the run could not start at all."""
    processor = DiagramProcessor(config)
    try:
        summary = processor.run(cleanup=cleanup)
    except ChangeDetectionError as e:
        logger.error(f"Change detection failed: {e}")
        return None
    except PersistenceError as e:
        logger.error(f"Could not initialize pipeline state: {e}")
        return None

    log_summary(summary, config)
    write_step_summary(render_markdown(summary, config, processor.changelog.tail(5)), config)
    return summary


def cmd_process(args, config: AppConfig) -> int:
    if args.file:
        config.pipeline.specific_file = args.file
    summary = _process(config, cleanup=args.cleanup)
    if summary is None or not summary.success:
        return EXIT_FAILURE
    return EXIT_OK


def _upload(config: AppConfig, test_mode: bool = False, file: Optional[str] = None) -> int:
    changelog = Path(file) if file else config.pipeline.changelog_file
    if not test_mode and not changelog.exists():
        logger.warning(f"Changelog file not found: {changelog}. Nothing to upload.")
        return EXIT_OK

    try:
        client = SharePointClient(config.sharepoint)
        if test_mode:
            site = client.verify_connection()
            logger.info(f"✓ SharePoint connection test passed ({site.get('displayName', site.get('id'))})")
            return EXIT_OK
        result = client.upload_file(changelog)
    except ConfigurationError as e:
        logger.error(f"SharePoint upload not configured: {e}")
        return EXIT_FAILURE
    except SharePointError as e:
        logger.error(f"✗ SharePoint upload failed: {e} (status={e.status}, code={e.code})")
        return EXIT_FAILURE

    logger.info(f"✓ Changelog uploaded to {result.web_url or result.remote_path}")
    return EXIT_OK


def cmd_upload(args, config: AppConfig) -> int:
    return _upload(config, test_mode=args.test_mode, file=args.file)


def cmd_notify(args, config: AppConfig) -> int:
    TeamsNotifier(config.teams).notify_run(args.status == "success", config.ci)
    return EXIT_OK


def cmd_run(args, config: AppConfig) -> int:
    summary = _process(config, cleanup=args.cleanup)
    exit_code = EXIT_OK if summary is not None and summary.success else EXIT_FAILURE

    if summary is not None and not args.skip_upload:
        # Processed files stay committed even when publishing fails.
        if _upload(config) != EXIT_OK:
            exit_code = EXIT_FAILURE

    processed = [o.name for o in summary.processed] if summary else []
    failed = [o.name for o in summary.failed] if summary else []
    TeamsNotifier(config.teams).notify_run(exit_code == EXIT_OK, config.ci, processed, failed)
    return exit_code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="drawio-pipeline",
        description="Convert Draw.io diagrams to PNG, version them and publish the changelog.",
    )
    parser.add_argument("--env-file", default=".env", help="dotenv file to load (default: .env)")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("process", help="Assign IDs, render PNGs and update the changelog")
    p.add_argument("--file", help="Process only this diagram (overrides change detection)")
    p.add_argument("--cleanup", action="store_true", help="Remove duplicates and render missing PNGs first")
    p.set_defaults(func=cmd_process)

    u = sub.add_parser("upload", help="Upload the changelog to SharePoint")
    u.add_argument("--test-mode", action="store_true", help="Only verify credentials and site access")
    u.add_argument("--file", help="File to upload instead of the configured changelog")
    u.set_defaults(func=cmd_upload)

    n = sub.add_parser("notify", help="Send a Teams notification for the workflow run")
    n.add_argument("--status", choices=["success", "failure"], required=True)
    n.set_defaults(func=cmd_notify)

    r = sub.add_parser("run", help="process, upload and notify in one go")
    r.add_argument("--cleanup", action="store_true")
    r.add_argument("--skip-upload", action="store_true")
    r.set_defaults(func=cmd_run)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = AppConfig.from_env(args.env_file)
    except ValueError as e:
        # pydantic ValidationError is a ValueError
        logging.basicConfig(level=logging.ERROR)
        logger.error(f"Invalid configuration: {e}")
        return EXIT_FAILURE

    setup_logging(args.log_level or config.pipeline.LOG_LEVEL)
    return args.func(args, config)


if __name__ == "__main__":
    sys.exit(main())
