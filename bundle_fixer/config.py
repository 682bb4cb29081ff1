"""Configuration helpers.

This module is intentionally small:

- It turns raw command line values into a frozen :class:`FixerConfig`.
- It owns the defaults shared by the fixer and the auditor (pass cap, trusted
  system prefixes, the build-store root that must not leak into a bundle).
"""

from dataclasses import dataclass
import re


class ConfigError(ValueError):
    """Raised when user-supplied options cannot be turned into a config."""


MODE_STRICT: str = "strict"
MODE_ADVISORY: str = "advisory"
MODES: tuple[str, ...] = (MODE_STRICT, MODE_ADVISORY)

DEFAULT_MAX_PASSES: int = 10
DEFAULT_TRUSTED_PREFIXES: tuple[str, ...] = ("/usr/lib/", "/System/Library/")
DEFAULT_SOURCE_ROOT: str = "/nix/store"
DEFAULT_SUSPICIOUS_PATTERNS: tuple[str, ...] = (
    r"^/usr/local/",
    r"^/opt/homebrew/",
    r"^/opt/local/",
    r"^/nix/store/",
    r"^/Users/[^/]+/(lib|include|Qt|\.nix)",
    r"^/build/",
)


@dataclass(frozen=True, slots=True)
class FixerConfig:
    """Options shared by ``fix`` and ``check``.

    :ivar max_passes: Upper bound on closure passes before giving up.
    :ivar trusted_prefixes: Absolute prefixes of libraries guaranteed by the OS.
    :ivar source_root: Build-store root stripped from sidecar metadata files.
    :ivar mode: ``strict`` or ``advisory``; decides the exit status.
    :ivar adhoc_sign: Re-sign every binary with an ad-hoc identity after fixing.
    :ivar suspicious_patterns: Regexes matched against strings found in binaries.
    :ivar needle: Optional substring; when set the auditor only reports values containing it.
    """

    max_passes: int = DEFAULT_MAX_PASSES
    trusted_prefixes: tuple[str, ...] = DEFAULT_TRUSTED_PREFIXES
    source_root: str = DEFAULT_SOURCE_ROOT
    mode: str = MODE_STRICT
    adhoc_sign: bool = False
    suspicious_patterns: tuple[str, ...] = DEFAULT_SUSPICIOUS_PATTERNS
    needle: str | None = None


def resolve_fixer_config(
    *,
    max_passes: int | None = None,
    extra_trusted_prefixes: list[str] | None = None,
    source_root: str | None = None,
    mode: str | None = None,
    adhoc_sign: bool = False,
    patterns: list[str] | None = None,
    needle: str | None = None,
) -> FixerConfig:
    """Resolve user-supplied options into a :class:`FixerConfig`.

    :param max_passes: Optional pass cap override.
    :param extra_trusted_prefixes: Prefixes added to the default trusted set.
    :param source_root: Optional build-store root override.
    :param mode: Optional ``strict``/``advisory`` override.
    :param adhoc_sign: Whether to ad-hoc sign binaries after fixing.
    :param patterns: Optional replacement for the suspicious string patterns.
    :param needle: Optional substring filter for the auditor.
    :returns: Resolved config.
    :raises ConfigError: If any option is invalid.
    """

    resolved_passes: int = DEFAULT_MAX_PASSES
    if max_passes is not None:
        if max_passes < 1:
            raise ConfigError(f"Invalid --max-passes {max_passes}; expected a positive integer.")
        resolved_passes = max_passes

    trusted: tuple[str, ...] = DEFAULT_TRUSTED_PREFIXES
    if extra_trusted_prefixes:
        trusted = trusted + tuple(_normalize_prefix(p) for p in extra_trusted_prefixes)

    resolved_root: str = DEFAULT_SOURCE_ROOT
    if source_root is not None:
        if source_root.startswith("/") is False:
            raise ConfigError(f"Invalid --source-root {source_root!r}; expected an absolute path.")
        resolved_root = source_root.rstrip("/") or "/"

    resolved_mode: str = MODE_STRICT
    if mode is not None:
        if mode not in MODES:
            raise ConfigError(f"Invalid --mode {mode!r}; expected one of {', '.join(MODES)}.")
        resolved_mode = mode

    resolved_patterns: tuple[str, ...] = DEFAULT_SUSPICIOUS_PATTERNS
    if patterns:
        for p in patterns:
            try:
                re.compile(p)
            except re.error as e:
                raise ConfigError(f"Invalid --pattern {p!r}: {e}") from e
        resolved_patterns = tuple(patterns)

    if needle is not None and len(needle) == 0:
        raise ConfigError("--needle must not be empty.")

    return FixerConfig(
        max_passes=resolved_passes,
        trusted_prefixes=trusted,
        source_root=resolved_root,
        mode=resolved_mode,
        adhoc_sign=adhoc_sign,
        suspicious_patterns=resolved_patterns,
        needle=needle,
    )


def exit_code_for(*, clean: bool, mode: str) -> int:
    """Map an outcome to a process exit status.

    :param clean: ``True`` when the run found nothing left to fix.
    :param mode: ``strict`` or ``advisory``.
    :returns: ``0`` on success or in advisory mode, ``1`` otherwise.
    """

    if clean is True or mode == MODE_ADVISORY:
        return 0
    return 1


def _normalize_prefix(prefix: str) -> str:
    """Normalize a trusted prefix so it always names a directory.

    :param prefix: Absolute directory prefix.
    :returns: Prefix ending in ``/``.
    :raises ConfigError: If the prefix is not absolute.
    """

    if prefix.startswith("/") is False:
        raise ConfigError(f"Invalid --trusted-prefix {prefix!r}; expected an absolute path.")
    # "/opt/sdk" must not match "/opt/sdkfoo/lib.dylib".
    if prefix.endswith("/") is False:
        return prefix + "/"
    return prefix
