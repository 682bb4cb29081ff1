"""Command line interface for bundle-fixer."""

import argparse
import logging
import pathlib
import sys

from bundle_fixer.audit import AuditError, AuditReport, audit_paths
from bundle_fixer.config import (
    MODE_ADVISORY,
    MODE_STRICT,
    MODES,
    ConfigError,
    FixerConfig,
    exit_code_for,
    resolve_fixer_config,
)
from bundle_fixer.fixer import FixReport, fix_bundle
from bundle_fixer.layout import BundleError

DEFAULT_BUNDLE: str = "build/HelloWorld.app"
EXIT_UNUSABLE_INPUT: int = 2


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the ``bundle_fixer`` logger that carries the progress report.

    The report (pass headings, copies, rewrites, rpath additions, audit
    findings) is written to stdout so it can be redirected to a log file.
    ``-q`` keeps only warnings, ``-qq`` only errors.

    :param verbose: Verbosity count (0+).
    :param quiet: Quietness count (0+).
    :returns: Configured logger.
    """

    level: int = logging.INFO
    if quiet >= 2:
        level = logging.ERROR
    elif quiet >= 1:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG

    logger: logging.Logger = logging.getLogger("bundle_fixer")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def _add_common_arguments(p: argparse.ArgumentParser, *, default_mode: str) -> None:
    """Add the options shared by every subcommand.

    :param p: Subcommand parser.
    :param default_mode: Default for ``--mode``.
    """

    p.add_argument(
        "--trusted-prefix",
        action="append",
        default=[],
        help=(
            "Extra absolute prefix of libraries guaranteed by the OS "
            "(in addition to /usr/lib/ and /System/Library/). Repeatable."
        ),
    )
    p.add_argument(
        "--mode",
        choices=MODES,
        default=default_mode,
        help="strict: non-zero exit when problems remain; advisory: report only.",
    )
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging. Pass multiple times for more detail.",
    )
    p.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass multiple times to suppress more output.",
    )


def main(argv: list[str] | None = None) -> int:
    """Run the bundle-fixer CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="bundle-fixer",
        description="Make a macOS .app bundle self-contained and audit the result.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_fix = subparsers.add_parser(
        "fix",
        help="Copy foreign libraries into the bundle and rewrite references to @rpath.",
    )
    p_fix.add_argument(
        "bundle",
        nargs="?",
        type=pathlib.Path,
        default=pathlib.Path(DEFAULT_BUNDLE),
        help=f"Path to the .app bundle (default: {DEFAULT_BUNDLE}).",
    )
    p_fix.add_argument(
        "--max-passes",
        type=int,
        default=None,
        help="Give up after this many passes (default: 10).",
    )
    p_fix.add_argument(
        "--source-root",
        type=str,
        default=None,
        help="Build-store root stripped from .prl files (default: /nix/store).",
    )
    p_fix.add_argument(
        "--adhoc-sign",
        action="store_true",
        help="Re-sign every binary with an ad-hoc identity after rewriting.",
    )
    _add_common_arguments(p_fix, default_mode=MODE_STRICT)

    p_check = subparsers.add_parser(
        "check",
        help="Scan bundles, disk images or binaries for non-portable paths.",
    )
    p_check.add_argument(
        "paths",
        nargs="*",
        type=pathlib.Path,
        help=f"Directories, .app bundles, .dmg images or binaries (default: {DEFAULT_BUNDLE}).",
    )
    p_check.add_argument(
        "--needle",
        type=str,
        default=None,
        help="Only report values containing this substring (e.g. /nix/).",
    )
    p_check.add_argument(
        "--pattern",
        action="append",
        default=[],
        help="Regex for suspicious embedded strings; replaces the defaults. Repeatable.",
    )
    _add_common_arguments(p_check, default_mode=MODE_STRICT)

    ns = parser.parse_args(argv)
    logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)

    if ns.command == "fix":
        try:
            config: FixerConfig = resolve_fixer_config(
                max_passes=ns.max_passes,
                extra_trusted_prefixes=ns.trusted_prefix,
                source_root=ns.source_root,
                mode=ns.mode,
                adhoc_sign=ns.adhoc_sign,
            )
            report: FixReport = fix_bundle(bundle_path=ns.bundle, config=config, logger=logger)
        except (BundleError, ConfigError) as e:
            logger.error(f"bundle-fixer: error: {e}")
            return EXIT_UNUSABLE_INPUT
        return exit_code_for(clean=report.ok, mode=config.mode)

    if ns.command == "check":
        paths: list[pathlib.Path] = ns.paths or [pathlib.Path(DEFAULT_BUNDLE)]
        try:
            config = resolve_fixer_config(
                extra_trusted_prefixes=ns.trusted_prefix,
                mode=ns.mode,
                patterns=ns.pattern,
                needle=ns.needle,
            )
            audit: AuditReport = audit_paths(paths, config=config, logger=logger)
        except (AuditError, ConfigError) as e:
            logger.error(f"bundle-fixer: error: {e}")
            return EXIT_UNUSABLE_INPUT
        if config.mode == MODE_ADVISORY and len(audit.findings) > 0:
            logger.warning("bundle-fixer: advisory mode, not failing.")
        return audit.exit_code(config.mode)

    raise AssertionError(f"Unhandled command: {ns.command}")
