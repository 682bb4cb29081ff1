"""Dependency closure.

This module implements the fixed-point loop that makes a bundle
self-contained:

- Each pass scans every binary in the bundle and collects the foreign
  library references (absolute paths outside the trusted OS set).
- Every foreign reference is resolved through a depth-first worklist: the
  library (or the whole ``.framework`` unit) is copied into
  ``Contents/Frameworks`` and its install name is set to ``@rpath/...``.
  Newly copied libraries are inspected in turn.
- Every binary then gets one batched rewrite replacing its resolvable foreign
  references with the ``@rpath`` form.
- Passes repeat until no foreign reference is left or the pass cap is hit.

Failures never abort the run. They are collected as :class:`Issue` records,
logged, and returned to the caller.
"""

from dataclasses import dataclass
import enum
import itertools
import logging
import pathlib
import shutil
import stat
from typing import Protocol

from bundle_fixer.classify import (
    framework_subpath,
    framework_unit_root,
    is_foreign,
    is_framework_reference,
    rpath_replacement,
)
from bundle_fixer.config import FixerConfig
from bundle_fixer.layout import Bundle, iter_binaries, make_writable, required_rpath
from bundle_fixer.macho import BinaryInfo, MetadataReadError, MetadataRewriteError


class MetadataTool(Protocol):
    def is_binary(self, path: pathlib.Path) -> bool: ...

    def inspect(self, path: pathlib.Path) -> BinaryInfo: ...

    def rewrite(
        self,
        path: pathlib.Path,
        *,
        install_name: str | None = None,
        changes: tuple[tuple[str, str], ...] | list[tuple[str, str]] = (),
        add_rpaths: tuple[str, ...] | list[str] = (),
    ) -> None: ...

    def adhoc_sign(self, path: pathlib.Path) -> None: ...


class IssueKind(enum.Enum):
    """Recoverable problems reported by the fixer."""

    MISSING_SOURCE_LIBRARY = "missing-source-library"
    COPY_FAILURE = "copy-failure"
    METADATA_READ_FAILURE = "metadata-read-failure"
    METADATA_REWRITE_FAILURE = "metadata-rewrite-failure"
    NON_CONVERGENCE = "non-convergence"


@dataclass(frozen=True, slots=True)
class Issue:
    """A recoverable problem.

    :ivar kind: Problem category.
    :ivar path: Reference or bundle-relative file the problem is about.
    :ivar detail: Human-readable explanation.
    """

    kind: IssueKind
    path: str
    detail: str


@dataclass(frozen=True, slots=True)
class ClosureResult:
    """Outcome of :func:`close_dependencies`.

    :ivar converged: ``True`` if no foreign reference is left.
    :ivar passes: Number of passes that did work.
    :ivar copied: Bundle-relative paths copied into the bundle.
    :ivar rewritten: Bundle-relative paths whose metadata was changed.
    :ivar unresolved: Foreign references still present at the end.
    :ivar issues: Recoverable problems met along the way.
    """

    converged: bool
    passes: int
    copied: tuple[str, ...]
    rewritten: tuple[str, ...]
    unresolved: tuple[str, ...]
    issues: tuple[Issue, ...]


class ClosureSession:
    """State for one closure run over one bundle.

    The ``processed`` set is the cycle guard: a foreign source path is
    resolved at most once per session, so libraries that depend on each
    other cannot recurse forever. Parsed metadata is cached per file and
    dropped whenever the file is copied or rewritten.
    """

    def __init__(
        self,
        *,
        bundle: Bundle,
        tool: MetadataTool,
        config: FixerConfig,
        logger: logging.Logger,
    ) -> None:
        self.bundle: Bundle = bundle
        self.tool: MetadataTool = tool
        self.config: FixerConfig = config
        self.logger: logging.Logger = logger
        self.processed: set[str] = set()
        self.issues: list[Issue] = []
        self.copied: list[str] = []
        self.rewritten: list[str] = []
        self._cache: dict[pathlib.Path, BinaryInfo | None] = {}

    def run(self) -> ClosureResult:
        """Iterate until the bundle is closed or the pass cap is reached.

        :returns: Closure result.
        """

        passes: int = 0
        foreign: dict[str, list[pathlib.Path]] = {}
        for pass_num in itertools.count(1):
            foreign = self.scan(iter_binaries(self.bundle, self.tool))
            if len(foreign) == 0:
                self.logger.info("  No foreign references remaining. Done!")
                break

            if pass_num > self.config.max_passes:
                self.logger.warning(
                    f"bundle-fixer: WARNING: giving up after {self.config.max_passes} passes, "
                    f"{len(foreign)} references are unresolved:"
                )
                for ref in sorted(foreign):
                    self.logger.warning(f"  {ref}")
                    for binary in foreign[ref]:
                        self.logger.warning(f"    referenced by: {self.bundle.relpath(binary)}")
                self.issues.append(
                    Issue(
                        kind=IssueKind.NON_CONVERGENCE,
                        path=str(self.bundle.root),
                        detail=f"unresolved after {self.config.max_passes} passes: {', '.join(sorted(foreign))}",
                    )
                )
                break

            passes = pass_num
            self.logger.info("")
            self.logger.info(f"--- Pass {pass_num}: found {len(foreign)} references ---")
            for ref in sorted(foreign):
                self.logger.info(f"  {ref}")
            self.logger.info("")

            for ref in sorted(foreign):
                self.resolve(ref)

            self.logger.info("")
            self.logger.info("  Rewriting load commands...")
            self.rewrite_references(iter_binaries(self.bundle, self.tool))

        return ClosureResult(
            converged=len(foreign) == 0,
            passes=passes,
            copied=tuple(self.copied),
            rewritten=tuple(self.rewritten),
            unresolved=tuple(sorted(foreign)),
            issues=tuple(self.issues),
        )

    def info(self, path: pathlib.Path) -> BinaryInfo | None:
        """Return (cached) metadata for ``path``, or ``None`` if unreadable."""

        if path in self._cache:
            return self._cache[path]

        info: BinaryInfo | None
        try:
            info = self.tool.inspect(path)
        except MetadataReadError as e:
            self._issue(IssueKind.METADATA_READ_FAILURE, self.bundle.relpath(path), str(e))
            info = None
        self._cache[path] = info
        return info

    def foreign_references(self, path: pathlib.Path) -> list[str]:
        """List the foreign dependencies declared by one binary."""

        info: BinaryInfo | None = self.info(path)
        if info is None:
            return []
        return [
            dep
            for dep in info.dependencies
            if dep != info.install_name and is_foreign(dep, trusted_prefixes=self.config.trusted_prefixes) is True
        ]

    def scan(self, binaries: list[pathlib.Path]) -> dict[str, list[pathlib.Path]]:
        """Collect foreign references across binaries.

        :param binaries: Binaries to inspect.
        :returns: Mapping of foreign reference to the binaries declaring it.
        """

        found: dict[str, list[pathlib.Path]] = {}
        for binary in binaries:
            for ref in self.foreign_references(binary):
                found.setdefault(ref, []).append(binary)
        return found

    def target_for(self, ref: str) -> pathlib.Path:
        """Compute where the in-bundle copy of a foreign reference lives."""

        if is_framework_reference(ref) is True:
            return self.bundle.library_dir / framework_subpath(ref)
        return self.bundle.library_dir / pathlib.PurePosixPath(ref).name

    def resolve(self, ref: str) -> None:
        """Bring a foreign reference and its transitive foreign dependencies in.

        Depth-first: the dependencies of a newly ensured library are handled
        before the next sibling reference.

        :param ref: Foreign reference to resolve.
        """

        worklist: list[str] = [ref]
        while len(worklist) > 0:
            current: str = worklist.pop()
            if current in self.processed:
                if self.logger.isEnabledFor(logging.DEBUG) is True:
                    self.logger.debug(f"bundle-fixer: already handled {current}")
                continue
            self.processed.add(current)

            target: pathlib.Path | None = self._ensure_present(current)
            if target is None:
                continue

            info: BinaryInfo | None = self.info(target)
            if info is None:
                continue

            desired_id: str = rpath_replacement(current)
            if info.install_name is not None and info.install_name != desired_id:
                self._rewrite(target, install_name=desired_id)

            pending: list[str] = [dep for dep in self.foreign_references(target) if dep not in self.processed]
            worklist.extend(reversed(pending))

    def rewrite_references(self, binaries: list[pathlib.Path]) -> None:
        """Rewrite every resolvable foreign reference, one tool call per file.

        References whose in-bundle target does not exist are left as they are
        so the binary never points at a missing file.

        :param binaries: Binaries to update.
        """

        for binary in binaries:
            info: BinaryInfo | None = self.info(binary)
            if info is None:
                continue

            changes: list[tuple[str, str]] = []
            for ref in self.foreign_references(binary):
                if self.target_for(ref).is_file() is True:
                    changes.append((ref, rpath_replacement(ref)))

            install_name: str | None = None
            if (
                info.install_name is not None
                and is_foreign(info.install_name, trusted_prefixes=self.config.trusted_prefixes) is True
            ):
                install_name = self._own_install_name(binary)

            if len(changes) == 0 and install_name is None:
                continue
            self.logger.info(f"  Rewriting: {self.bundle.relpath(binary)}")
            self._rewrite(binary, install_name=install_name, changes=changes)

    def _own_install_name(self, binary: pathlib.Path) -> str:
        """Relocatable install name for a binary based on where it sits."""

        if binary.is_relative_to(self.bundle.library_dir) is True:
            return f"@rpath/{binary.relative_to(self.bundle.library_dir).as_posix()}"
        return f"@loader_path/{binary.name}"

    def _ensure_present(self, ref: str) -> pathlib.Path | None:
        """Make sure the library behind ``ref`` exists inside the bundle.

        :param ref: Foreign reference.
        :returns: In-bundle path, or ``None`` if it could not be provided.
        """

        target: pathlib.Path = self.target_for(ref)
        if is_framework_reference(ref) is True:
            self.logger.info(f"--- Framework: {framework_subpath(ref)} ---")
            if target.is_file() is False:
                self._copy_framework_unit(ref)
        else:
            self.logger.info(f"--- Library: {target.name} ---")
            if target.is_file() is False:
                self._copy_library(ref, target)

        if target.is_file() is False:
            return None
        return target

    def _copy_library(self, ref: str, target: pathlib.Path) -> None:
        """Copy a plain library into the library directory."""

        source: pathlib.Path = pathlib.Path(ref)
        if source.is_file() is False:
            self._issue(IssueKind.MISSING_SOURCE_LIBRARY, ref, f"{ref} not found on this host, skipping")
            return

        self.logger.info(f"  Copying: {target.name}")
        try:
            shutil.copy2(source, target)
            mode: int = target.stat().st_mode
            target.chmod(mode | stat.S_IRUSR | stat.S_IWUSR | stat.S_IRGRP | stat.S_IROTH)
        except OSError as e:
            self._issue(IssueKind.COPY_FAILURE, ref, f"failed to copy {ref}: {e}")
            return
        self._cache.pop(target, None)
        self.copied.append(self.bundle.relpath(target))

    def _copy_framework_unit(self, ref: str) -> None:
        """Copy the whole ``.framework`` directory a reference points into."""

        source_unit: pathlib.Path = pathlib.Path(framework_unit_root(ref))
        target_unit: pathlib.Path = self.bundle.library_dir / framework_unit_root(framework_subpath(ref))

        if target_unit.exists() is True:
            self._issue(
                IssueKind.MISSING_SOURCE_LIBRARY,
                ref,
                f"{self.bundle.relpath(self.target_for(ref))} not found inside existing {target_unit.name}, skipping",
            )
            return
        if source_unit.is_dir() is False:
            self._issue(IssueKind.MISSING_SOURCE_LIBRARY, ref, f"{source_unit} not found on this host, skipping")
            return

        self.logger.info(f"  Copying: {target_unit.name}")
        try:
            shutil.copytree(source_unit, target_unit, symlinks=True)
            make_writable(target_unit)
        except (OSError, shutil.Error) as e:
            self._issue(IssueKind.COPY_FAILURE, ref, f"failed to copy {source_unit}: {e}")
            return
        for path in list(self._cache):
            if path.is_relative_to(target_unit) is True:
                del self._cache[path]
        self.copied.append(self.bundle.relpath(target_unit))

    def _rewrite(
        self,
        path: pathlib.Path,
        *,
        install_name: str | None = None,
        changes: list[tuple[str, str]] | None = None,
        add_rpaths: list[str] | None = None,
    ) -> bool:
        """Run one metadata rewrite, turning failures into issues.

        :returns: ``True`` if the rewrite succeeded.
        """

        try:
            self.tool.rewrite(
                path,
                install_name=install_name,
                changes=changes or [],
                add_rpaths=add_rpaths or [],
            )
        except MetadataRewriteError as e:
            self._issue(IssueKind.METADATA_REWRITE_FAILURE, self.bundle.relpath(path), str(e))
            return False
        finally:
            self._cache.pop(path, None)

        rel: str = self.bundle.relpath(path)
        if rel not in self.rewritten:
            self.rewritten.append(rel)
        return True

    def _issue(self, kind: IssueKind, path: str, detail: str) -> None:
        self.logger.warning(f"  WARNING: {detail}")
        self.issues.append(Issue(kind=kind, path=path, detail=detail))


def close_dependencies(
    bundle: Bundle,
    *,
    tool: MetadataTool,
    config: FixerConfig,
    logger: logging.Logger | None = None,
) -> ClosureResult:
    """Copy in and rewrite foreign library references until none are left.

    :param bundle: Bundle to fix in place.
    :param tool: Metadata inspection/rewrite implementation.
    :param config: Fixer config (pass cap, trusted prefixes).
    :param logger: Optional logger for progress output.
    :returns: Closure result.
    """

    if logger is None:
        logger = logging.getLogger("bundle_fixer")

    session: ClosureSession = ClosureSession(bundle=bundle, tool=tool, config=config, logger=logger)
    return session.run()


def add_required_rpaths(
    bundle: Bundle,
    *,
    tool: MetadataTool,
    logger: logging.Logger | None = None,
) -> tuple[list[str], list[Issue]]:
    """Declare the rpath each binary needs for its ``@rpath`` references.

    Only adds an entry when the binary does not already declare it.

    :param bundle: Bundle to update in place.
    :param tool: Metadata inspection/rewrite implementation.
    :param logger: Optional logger.
    :returns: ``(added, issues)`` where ``added`` holds ``"<relpath> -> <rpath>"`` lines.
    """

    if logger is None:
        logger = logging.getLogger("bundle_fixer")

    added: list[str] = []
    issues: list[Issue] = []
    for binary in iter_binaries(bundle, tool):
        rp: str | None = required_rpath(bundle, binary)
        if rp is None:
            continue

        rel: str = bundle.relpath(binary)
        try:
            info: BinaryInfo = tool.inspect(binary)
        except MetadataReadError as e:
            logger.warning(f"  WARNING: {e}")
            issues.append(Issue(kind=IssueKind.METADATA_READ_FAILURE, path=rel, detail=str(e)))
            continue
        if rp in info.rpaths:
            continue

        logger.info(f"  {rel} -> {rp}")
        try:
            tool.rewrite(binary, add_rpaths=[rp])
        except MetadataRewriteError as e:
            logger.warning(f"  WARNING: {e}")
            issues.append(Issue(kind=IssueKind.METADATA_REWRITE_FAILURE, path=rel, detail=str(e)))
            continue
        added.append(f"{rel} -> {rp}")
    return added, issues
