"""Bundle layout helpers.

Everything here is plain filesystem work on an ``.app`` directory: locating
its standard subdirectories, finding the binaries inside it, repairing the
symlink structure of ``.framework`` units, moving stray plugin files and
scrubbing build paths from ``.prl`` sidecar files.
"""

from dataclasses import dataclass
import logging
import os
import pathlib
import re
import shutil
import stat
from typing import Protocol


class BundleError(RuntimeError):
    """Raised when a path cannot be used as an application bundle."""


class BinaryDetector(Protocol):
    def is_binary(self, path: pathlib.Path) -> bool: ...


@dataclass(frozen=True, slots=True)
class Bundle:
    """An application bundle on disk.

    :ivar root: The ``.app`` directory.
    """

    root: pathlib.Path

    @property
    def contents(self) -> pathlib.Path:
        return self.root / "Contents"

    @property
    def executable_dir(self) -> pathlib.Path:
        return self.contents / "MacOS"

    @property
    def library_dir(self) -> pathlib.Path:
        return self.contents / "Frameworks"

    @property
    def plugin_dir(self) -> pathlib.Path:
        return self.contents / "PlugIns"

    @property
    def resource_dir(self) -> pathlib.Path:
        return self.contents / "Resources"

    def relpath(self, path: pathlib.Path) -> str:
        """Render ``path`` relative to the bundle root for log output."""

        try:
            return path.relative_to(self.root).as_posix()
        except ValueError:
            return str(path)


def open_bundle(path: pathlib.Path) -> Bundle:
    """Validate ``path`` and return it as a :class:`Bundle`.

    Nothing on disk is changed here; see :func:`prepare_bundle`.

    :param path: Bundle root.
    :returns: Bundle.
    :raises BundleError: If the path is missing or lacks ``Contents``.
    """

    if path.exists() is False:
        raise BundleError(f"Bundle does not exist: {path}")
    if path.is_dir() is False:
        raise BundleError(f"Bundle is not a directory: {path}")

    bundle: Bundle = Bundle(root=path.resolve())
    if bundle.contents.is_dir() is False:
        raise BundleError(f"Bundle has no Contents directory: {path}")
    return bundle


def prepare_bundle(bundle: Bundle) -> None:
    """Make the bundle writable and create the library directory.

    Bundles copied out of a read-only build store arrive without write
    permission, so this must run before anything is created inside them.

    :param bundle: Bundle to prepare.
    :raises BundleError: If the bundle cannot be made writable.
    """

    try:
        make_writable(bundle.root)
        bundle.library_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise BundleError(f"Bundle is not writable: {bundle.root}: {e}") from e


def iter_binaries(bundle: Bundle, detector: BinaryDetector) -> list[pathlib.Path]:
    """List every regular, non-symlink binary file below ``Contents``.

    :param bundle: Bundle to scan.
    :param detector: Object deciding whether a file is a loadable binary.
    :returns: Sorted binary paths.
    """

    return find_binaries(bundle.contents, detector)


def find_binaries(root: pathlib.Path, detector: BinaryDetector) -> list[pathlib.Path]:
    """List every regular, non-symlink binary file below ``root``.

    :param root: Directory to scan.
    :param detector: Object deciding whether a file is a loadable binary.
    :returns: Sorted binary paths.
    """

    found: list[pathlib.Path] = []
    for root_str, _dirs, files in os.walk(root):
        root_path: pathlib.Path = pathlib.Path(root_str)
        for name in files:
            p: pathlib.Path = root_path / name
            if p.is_symlink() is True or p.is_file() is False:
                continue
            if detector.is_binary(p) is True:
                found.append(p)
    return sorted(found)


def make_writable(root: pathlib.Path) -> None:
    """Add owner write permission to everything below ``root``.

    Build outputs copied out of a read-only store keep their ``r-x`` modes.
    """

    for root_str, dirs, files in os.walk(root):
        for name in [*dirs, *files]:
            p: pathlib.Path = pathlib.Path(root_str) / name
            if p.is_symlink() is True:
                continue
            mode: int = p.stat().st_mode
            if not (mode & stat.S_IWUSR):
                p.chmod(mode | stat.S_IWUSR)


def normalize_framework_symlinks(bundle: Bundle, *, logger: logging.Logger | None = None) -> list[str]:
    """Restore the symlink structure of every ``.framework`` in the bundle.

    A framework's ``Versions/Current`` must be a symlink to the real version
    directory and its top-level ``Resources``, ``Headers`` and binary must be
    symlinks through ``Versions/Current``. Naive copies (``cp -RL``) turn these
    into real files, which breaks code signing and the loader's expectations.

    :param bundle: Bundle to repair in place.
    :param logger: Optional logger.
    :returns: Human-readable descriptions of the fixes made.
    """

    if logger is None:
        logger = logging.getLogger("bundle_fixer")

    fixes: list[str] = []
    if bundle.library_dir.is_dir() is False:
        return fixes

    for framework in sorted(bundle.library_dir.glob("*.framework")):
        if framework.is_dir() is False or framework.is_symlink() is True:
            continue
        name: str = framework.name[: -len(".framework")]
        versions: pathlib.Path = framework / "Versions"
        current: pathlib.Path = versions / "Current"

        if current.exists() is True and current.is_symlink() is False:
            version: str | None = _canonical_version(versions)
            if version is not None:
                _replace_with_symlink(current, version)
                fixes.append(f"{name} Versions/Current")
                logger.info(f"  Fixed: {name} Versions/Current -> {version}")

        for sub in ("Resources", "Headers"):
            top: pathlib.Path = framework / sub
            if top.is_dir() is True and top.is_symlink() is False and (current / sub).exists() is True:
                _replace_with_symlink(top, f"Versions/Current/{sub}")
                fixes.append(f"{name} {sub}")
                logger.info(f"  Fixed: {name} {sub}")

        top_binary: pathlib.Path = framework / name
        if top_binary.is_file() is True and top_binary.is_symlink() is False and (current / name).exists() is True:
            _replace_with_symlink(top_binary, f"Versions/Current/{name}")
            fixes.append(f"{name} top-level binary")
            logger.info(f"  Fixed: {name} top-level binary")

    return fixes


def _canonical_version(versions: pathlib.Path) -> str | None:
    """Pick the version directory ``Versions/Current`` should point at.

    :param versions: A framework's ``Versions`` directory.
    :returns: ``A`` when present, else the only real version directory, else ``None``.
    """

    if (versions / "A").is_dir() is True:
        return "A"
    candidates: list[str] = [
        p.name
        for p in versions.iterdir()
        if p.name != "Current" and p.is_dir() is True and p.is_symlink() is False
    ]
    if len(candidates) == 1:
        return candidates[0]
    return None


def _replace_with_symlink(path: pathlib.Path, target: str) -> None:
    """Replace a real file or directory with a relative symlink.

    :param path: Path to replace.
    :param target: Symlink target, relative to ``path.parent``.
    """

    if path.is_dir() is True and path.is_symlink() is False:
        shutil.rmtree(path)
    else:
        path.unlink()
    path.symlink_to(target)


def relocate_plugin_resources(bundle: Bundle, *, logger: logging.Logger | None = None) -> list[str]:
    """Move non-library files out of ``Contents/PlugIns``.

    Code signing rejects plain data files inside the plug-ins directory, so
    they are moved to ``Contents/Resources/plugin-resources`` keeping their
    relative layout.

    :param bundle: Bundle to update in place.
    :param logger: Optional logger.
    :returns: Moved paths, relative to ``Contents/PlugIns``.
    """

    if logger is None:
        logger = logging.getLogger("bundle_fixer")

    moved: list[str] = []
    if bundle.plugin_dir.is_dir() is False:
        return moved

    target_root: pathlib.Path = bundle.resource_dir / "plugin-resources"
    candidates: list[pathlib.Path] = []
    for root_str, _dirs, files in os.walk(bundle.plugin_dir):
        for name in files:
            p: pathlib.Path = pathlib.Path(root_str) / name
            if p.is_symlink() is True or p.is_file() is False:
                continue
            if p.suffix == ".dylib":
                continue
            candidates.append(p)

    for p in sorted(candidates):
        rel: pathlib.Path = p.relative_to(bundle.plugin_dir)
        dest: pathlib.Path = target_root / rel
        dest.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"  Moving: {rel.as_posix()}")
        shutil.move(str(p), str(dest))
        moved.append(rel.as_posix())
    return moved


def required_rpath(bundle: Bundle, binary: pathlib.Path) -> str | None:
    """Compute the rpath entry a binary needs for ``@rpath`` to resolve.

    - ``Contents/MacOS/...``: ``@executable_path/../Frameworks``.
    - Files under ``Contents/Frameworks`` (loose or inside a ``.framework``)
      and under ``Contents/PlugIns``: ``@loader_path`` plus the relative path
      from the binary's directory to ``Contents/Frameworks``.

    :param bundle: Bundle the binary lives in.
    :param binary: Binary path.
    :returns: Rpath string, or ``None`` when the location needs none.
    """

    if binary.is_relative_to(bundle.executable_dir) is True:
        return "@executable_path/../Frameworks"

    if binary.is_relative_to(bundle.library_dir) is False and binary.is_relative_to(bundle.plugin_dir) is False:
        return None

    rel: str = os.path.relpath(bundle.library_dir, binary.parent)
    if rel == ".":
        return "@loader_path"
    return f"@loader_path/{pathlib.PurePath(rel).as_posix()}"


def clean_sidecar_files(
    bundle: Bundle,
    *,
    source_root: str,
    logger: logging.Logger | None = None,
) -> list[str]:
    """Strip build-store paths from ``.prl`` files in the library directory.

    :param bundle: Bundle to update in place.
    :param source_root: Absolute prefix (e.g. ``/nix/store``) to remove.
    :param logger: Optional logger.
    :returns: Bundle-relative paths of the files that were changed.
    """

    if logger is None:
        logger = logging.getLogger("bundle_fixer")

    cleaned: list[str] = []
    if bundle.library_dir.is_dir() is False:
        return cleaned

    token_re: re.Pattern[str] = re.compile(re.escape(source_root) + r"[^\s]*")
    candidates: list[pathlib.Path] = []
    for root_str, _dirs, files in os.walk(bundle.library_dir):
        for name in files:
            if name.endswith(".prl") is True:
                candidates.append(pathlib.Path(root_str) / name)

    for prl in sorted(candidates):
        if prl.is_symlink() is True or prl.is_file() is False:
            continue
        text: str = prl.read_text(encoding="utf-8", errors="surrogateescape")
        if source_root not in text:
            continue
        prl.write_text(token_re.sub("", text), encoding="utf-8", errors="surrogateescape")
        logger.info(f"  {bundle.relpath(prl)}")
        cleaned.append(bundle.relpath(prl))
    return cleaned
