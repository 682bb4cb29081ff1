"""Bundle fixer.

Runs the whole post-build pipeline on an ``.app`` bundle:

1. make the bundle writable and create ``Contents/Frameworks``;
2. repair ``.framework`` symlinks;
3. move non-library files out of ``Contents/PlugIns``;
4. close the library dependency graph (copy + rewrite to ``@rpath``);
5. add the rpath entries each binary needs;
6. strip build-store paths from ``.prl`` sidecar files;
7. optionally re-sign every binary with an ad-hoc identity.

Steps 5-7 run even when step 4 gives up, so the operator always gets the
most complete bundle possible plus a list of what is still wrong.
"""

from dataclasses import dataclass
import logging
import pathlib
import time

from bundle_fixer.closure import (
    ClosureResult,
    Issue,
    IssueKind,
    MetadataTool,
    add_required_rpaths,
    close_dependencies,
)
from bundle_fixer.config import FixerConfig
from bundle_fixer.layout import (
    Bundle,
    clean_sidecar_files,
    iter_binaries,
    normalize_framework_symlinks,
    open_bundle,
    prepare_bundle,
    relocate_plugin_resources,
)
from bundle_fixer.macho import MachOTool, MetadataRewriteError


@dataclass(frozen=True, slots=True)
class FixReport:
    """Everything :func:`fix_bundle` did.

    :ivar bundle: Bundle that was fixed.
    :ivar symlink_fixes: Framework symlinks restored.
    :ivar moved_plugin_files: Files moved out of ``Contents/PlugIns``.
    :ivar closure: Dependency closure result.
    :ivar rpaths_added: ``"<relpath> -> <rpath>"`` entries added.
    :ivar cleaned_sidecars: ``.prl`` files scrubbed.
    :ivar signed: Binaries re-signed.
    :ivar issues: Recoverable problems from every step.
    """

    bundle: Bundle
    symlink_fixes: tuple[str, ...]
    moved_plugin_files: tuple[str, ...]
    closure: ClosureResult
    rpaths_added: tuple[str, ...]
    cleaned_sidecars: tuple[str, ...]
    signed: tuple[str, ...]
    issues: tuple[Issue, ...]

    @property
    def ok(self) -> bool:
        return self.closure.converged


def fix_bundle(
    *,
    bundle_path: pathlib.Path,
    config: FixerConfig,
    tool: MetadataTool | None = None,
    logger: logging.Logger | None = None,
) -> FixReport:
    """Make a bundle self-contained.

    :param bundle_path: ``.app`` directory produced by the build.
    :param config: Fixer config.
    :param tool: Optional metadata tool (defaults to :class:`MachOTool`).
    :param logger: Optional logger for progress output.
    :returns: Report of the changes made and the problems left.
    :raises BundleError: If ``bundle_path`` is not a usable bundle.
    """

    if logger is None:
        logger = logging.getLogger("bundle_fixer")
    if tool is None:
        tool = MachOTool(logger=logger)

    bundle: Bundle = open_bundle(bundle_path)
    t0: float = time.perf_counter()
    logger.info(f"bundle-fixer: bundle={bundle.root}")
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"bundle-fixer: config={config}")

    logger.info("=== 1. Fixing framework symlinks ===")
    prepare_bundle(bundle)
    symlink_fixes: list[str] = normalize_framework_symlinks(bundle, logger=logger)

    logger.info("")
    logger.info("=== 2. Fixing PlugIns ===")
    moved: list[str] = relocate_plugin_resources(bundle, logger=logger)

    logger.info("")
    logger.info("=== 3. Fixing foreign library references ===")
    closure: ClosureResult = close_dependencies(bundle, tool=tool, config=config, logger=logger)

    logger.info("")
    logger.info("=== 4. Adding rpaths ===")
    rpaths_added, rpath_issues = add_required_rpaths(bundle, tool=tool, logger=logger)

    logger.info("")
    logger.info("=== 5. Fixing .prl files ===")
    cleaned: list[str] = clean_sidecar_files(bundle, source_root=config.source_root, logger=logger)

    signed: list[str] = []
    sign_issues: list[Issue] = []
    if config.adhoc_sign is True:
        logger.info("")
        logger.info("=== 6. Ad-hoc signing ===")
        signed, sign_issues = _adhoc_sign_all(bundle, tool=tool, logger=logger)

    t1: float = time.perf_counter()
    logger.info("")
    if closure.converged is True:
        logger.info(
            f"bundle-fixer: bundle is self-contained ({len(closure.copied)} copied, "
            f"{len(closure.rewritten)} rewritten) in {t1 - t0:.2f}s"
        )
    else:
        logger.warning(
            f"bundle-fixer: {len(closure.unresolved)} foreign references remain after "
            f"{closure.passes} passes (see warnings above)"
        )

    return FixReport(
        bundle=bundle,
        symlink_fixes=tuple(symlink_fixes),
        moved_plugin_files=tuple(moved),
        closure=closure,
        rpaths_added=tuple(rpaths_added),
        cleaned_sidecars=tuple(cleaned),
        signed=tuple(signed),
        issues=closure.issues + tuple(rpath_issues) + tuple(sign_issues),
    )


def _adhoc_sign_all(
    bundle: Bundle,
    *,
    tool: MetadataTool,
    logger: logging.Logger,
) -> tuple[list[str], list[Issue]]:
    """Re-sign every binary; rewriting load commands invalidates signatures.

    :returns: ``(signed, issues)``.
    """

    signed: list[str] = []
    issues: list[Issue] = []
    for binary in iter_binaries(bundle, tool):
        rel: str = bundle.relpath(binary)
        try:
            tool.adhoc_sign(binary)
        except MetadataRewriteError as e:
            logger.warning(f"  WARNING: {e}")
            issues.append(Issue(kind=IssueKind.METADATA_REWRITE_FAILURE, path=rel, detail=str(e)))
            continue
        logger.info(f"  Signed: {rel}")
        signed.append(rel)
    return signed, issues
