"""Bundle auditor.

Re-scans a fixed bundle (or a disk image containing one) for anything that
would break on a machine without the build environment: foreign library
references, foreign rpaths and install names, and suspicious absolute paths
embedded in binary data.
"""

from dataclasses import dataclass
import contextlib
import logging
import pathlib
import re
import shutil
import subprocess
import tempfile

from bundle_fixer.classify import is_foreign
from bundle_fixer.closure import MetadataTool
from bundle_fixer.config import FixerConfig, exit_code_for
from bundle_fixer.layout import find_binaries
from bundle_fixer.macho import BinaryInfo, MachOTool, MetadataReadError


class AuditError(RuntimeError):
    """Raised when an audit target cannot be opened."""


CATEGORY_DEPENDENCY: str = "dependency"
CATEGORY_RPATH: str = "rpath"
CATEGORY_INSTALL_NAME: str = "install_name"
CATEGORY_STRINGS: str = "strings"

_MAX_STRINGS_PER_FILE: int = 20
_PRINTABLE_RUN_RE: re.Pattern[bytes] = re.compile(rb"[\x20-\x7e]{4,}")


@dataclass(frozen=True, slots=True)
class Finding:
    """One non-portable value found in a binary.

    :ivar path: Binary the value was found in.
    :ivar category: ``dependency``, ``rpath``, ``install_name`` or ``strings``.
    :ivar value: The offending value.
    """

    path: pathlib.Path
    category: str
    value: str


@dataclass(frozen=True, slots=True)
class AuditReport:
    """Result of :func:`audit_paths`.

    :ivar scanned: Number of binaries scanned.
    :ivar findings: Non-portable values found.
    """

    scanned: int
    findings: tuple[Finding, ...]

    def exit_code(self, mode: str) -> int:
        return exit_code_for(clean=len(self.findings) == 0, mode=mode)


def audit_paths(
    targets: list[pathlib.Path],
    *,
    config: FixerConfig,
    tool: MetadataTool | None = None,
    logger: logging.Logger | None = None,
) -> AuditReport:
    """Scan directories, bundles, disk images or single binaries.

    Disk images are mounted (or extracted) into temporary directories that
    are always released before returning, including when a scan fails.

    :param targets: Paths to scan.
    :param config: Config providing trusted prefixes, patterns and needle.
    :param tool: Optional metadata tool (defaults to :class:`MachOTool`).
    :param logger: Optional logger for the report.
    :returns: Audit report.
    :raises AuditError: If a target does not exist or a disk image cannot be opened.
    """

    if logger is None:
        logger = logging.getLogger("bundle_fixer")
    if tool is None:
        tool = MachOTool(logger=logger)

    for target in targets:
        if target.exists() is False:
            raise AuditError(f"'{target}' does not exist.")

    patterns: list[re.Pattern[str]] = [re.compile(p) for p in config.suspicious_patterns]
    scanned: int = 0
    findings: list[Finding] = []

    logger.info("Checking for non-portable hardcoded paths")
    if config.needle is not None:
        logger.info(f"Only reporting values containing {config.needle!r}")
    logger.info("")

    with contextlib.ExitStack() as stack:
        for target in targets:
            logger.info(f"Scanning '{target}'...")
            logger.info("=======================================================")
            logger.info("")

            binaries: list[pathlib.Path]
            if target.is_dir() is True:
                binaries = find_binaries(target, tool)
            elif target.suffix == ".dmg":
                root: pathlib.Path = _open_disk_image(target, stack=stack, logger=logger)
                binaries = find_binaries(root, tool)
            elif tool.is_binary(target) is True:
                binaries = [target]
            else:
                logger.warning(f"Warning: '{target}' is not a Mach-O binary")
                logger.info("")
                continue

            for binary in binaries:
                found: list[Finding] = _scan_binary(
                    binary,
                    tool=tool,
                    config=config,
                    patterns=patterns,
                )
                _log_findings(binary, found, logger=logger)
                findings.extend(found)
            scanned += len(binaries)

            if len(binaries) == 0:
                logger.info(f"(no Mach-O binaries found under {target})")
            else:
                logger.info(f"Scanned {len(binaries)} binaries under {target}")
            logger.info("")

    logger.info("=======================================================")
    if len(findings) == 0:
        logger.info("OK: No non-portable hardcoded paths found. Bundle looks self-contained.")
    else:
        logger.warning("WARNING: Non-portable paths found (see above).")
        logger.warning("These will cause issues on machines without matching installations.")

    return AuditReport(scanned=scanned, findings=tuple(findings))


def _scan_binary(
    binary: pathlib.Path,
    *,
    tool: MetadataTool,
    config: FixerConfig,
    patterns: list[re.Pattern[str]],
) -> list[Finding]:
    """Collect findings for a single binary.

    :param binary: Binary to scan.
    :param tool: Metadata tool.
    :param config: Audit config.
    :param patterns: Compiled suspicious string patterns.
    :returns: Findings, in category order.
    """

    def flagged(value: str) -> bool:
        if config.needle is not None and config.needle not in value:
            return False
        return is_foreign(value, trusted_prefixes=config.trusted_prefixes)

    findings: list[Finding] = []
    try:
        info: BinaryInfo | None = tool.inspect(binary)
    except MetadataReadError:
        info = None

    if info is not None:
        for dep in info.dependencies:
            if dep != info.install_name and flagged(dep) is True:
                findings.append(Finding(path=binary, category=CATEGORY_DEPENDENCY, value=dep))
        for rp in info.rpaths:
            if flagged(rp) is True:
                findings.append(Finding(path=binary, category=CATEGORY_RPATH, value=rp))
        if info.install_name is not None and flagged(info.install_name) is True:
            findings.append(Finding(path=binary, category=CATEGORY_INSTALL_NAME, value=info.install_name))

    for s in _suspicious_strings(binary, patterns=patterns, needle=config.needle):
        findings.append(Finding(path=binary, category=CATEGORY_STRINGS, value=s))
    return findings


def _suspicious_strings(
    binary: pathlib.Path,
    *,
    patterns: list[re.Pattern[str]],
    needle: str | None,
) -> list[str]:
    """Find printable strings in a binary that look like build-host paths.

    :param binary: File to read.
    :param patterns: Patterns a string must match (ignored when ``needle`` is set).
    :param needle: Optional substring that alone decides a match.
    :returns: Up to 20 distinct matches, sorted.
    """

    data: bytes = binary.read_bytes()
    matches: set[str] = set()
    for m in _PRINTABLE_RUN_RE.finditer(data):
        s: str = m.group(0).decode("ascii")
        if needle is not None:
            if needle in s:
                matches.add(s)
            continue
        for p in patterns:
            if p.search(s) is not None:
                matches.add(s)
                break
    return sorted(matches)[:_MAX_STRINGS_PER_FILE]


def _log_findings(binary: pathlib.Path, findings: list[Finding], *, logger: logging.Logger) -> None:
    """Print one block per binary, grouped by category."""

    if len(findings) == 0:
        return

    headings: dict[str, str] = {
        CATEGORY_DEPENDENCY: "[dependencies] Non-portable library references:",
        CATEGORY_RPATH: "[rpaths] Non-portable RPATHs:",
        CATEGORY_INSTALL_NAME: "[install name] Non-portable install name:",
        CATEGORY_STRINGS: "[strings] Suspicious hardcoded paths in binary data:",
    }
    logger.warning(f"--- {binary} ---")
    for category, heading in headings.items():
        values: list[str] = [f.value for f in findings if f.category == category]
        if len(values) == 0:
            continue
        logger.warning(heading)
        for v in values:
            logger.warning(f"  {v}")
    logger.warning("")


def _open_disk_image(dmg: pathlib.Path, *, stack: contextlib.ExitStack, logger: logging.Logger) -> pathlib.Path:
    """Make a disk image's contents available as a directory.

    Uses ``hdiutil`` on macOS and falls back to ``7z`` extraction elsewhere.
    Cleanup callbacks are registered on ``stack``.

    :param dmg: Disk image path.
    :param stack: Exit stack owning the temporary resources.
    :param logger: Logger.
    :returns: Directory holding the image contents.
    :raises AuditError: If no tool can open the image.
    """

    if shutil.which("hdiutil") is not None:
        mountpoint: pathlib.Path = pathlib.Path(stack.enter_context(tempfile.TemporaryDirectory(prefix="bundle_fixer_dmg_")))
        logger.info(f"Mounting DMG: {dmg} -> {mountpoint} ...")
        proc = subprocess.run(
            ["hdiutil", "attach", str(dmg), "-nobrowse", "-readonly", "-mountpoint", str(mountpoint)],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            check=False,
        )
        if proc.returncode != 0:
            raise AuditError(f"Failed to mount '{dmg}':\n{proc.stdout}")
        # Registered after the temp dir so the detach runs before its removal.
        stack.callback(_detach, mountpoint, logger)
        logger.info(f"Mounted at: {mountpoint}")
        logger.info("")
        return mountpoint

    if shutil.which("7z") is not None:
        logger.info(f"Extracting DMG with 7z: {dmg} ...")
        outer: pathlib.Path = pathlib.Path(stack.enter_context(tempfile.TemporaryDirectory(prefix="bundle_fixer_dmg_")))
        _extract_7z(dmg, outer)

        inner_images: list[pathlib.Path] = sorted(
            p
            for p in outer.glob("**/*")
            if p.is_file() is True
            and len(p.relative_to(outer).parts) <= 2
            and (p.suffix in (".hfs", ".hfsx") or re.search(r"[0-9]\.dmg$", p.name) is not None)
        )
        if len(inner_images) > 0:
            inner: pathlib.Path = pathlib.Path(stack.enter_context(tempfile.TemporaryDirectory(prefix="bundle_fixer_hfs_")))
            logger.info("  Found inner HFS image, extracting...")
            try:
                _extract_7z(inner_images[0], inner)
            except AuditError as e:
                logger.warning(f"  {e}")
            logger.info(f"  Extracted to: {inner}")
            logger.info("")
            return inner

        logger.info(f"  Extracted to: {outer}")
        logger.info("")
        return outer

    raise AuditError(
        "Cannot open DMG files on this system: hdiutil (macOS) or 7z (install p7zip) is required."
    )


def _extract_7z(archive: pathlib.Path, dest: pathlib.Path) -> None:
    """Extract an archive with ``7z``.

    :raises AuditError: If extraction fails.
    """

    proc = subprocess.run(
        ["7z", "x", f"-o{dest}", str(archive), "-y"],
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        check=False,
    )
    if proc.returncode != 0:
        raise AuditError(f"7z failed to extract '{archive}'")


def _detach(mountpoint: pathlib.Path, logger: logging.Logger) -> None:
    """Detach a mounted disk image; failures are logged, not raised."""

    logger.info("")
    logger.info(f"Unmounting {mountpoint}...")
    proc = subprocess.run(
        ["hdiutil", "detach", str(mountpoint), "-quiet"],
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        check=False,
    )
    if proc.returncode != 0:
        logger.warning(f"Warning: failed to detach {mountpoint}: {proc.stdout.strip()}")
