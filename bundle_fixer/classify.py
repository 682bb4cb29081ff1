"""Library reference classification.

A reference is a path string stored in a binary's load commands. It is one of:

- relocatable: resolved by the loader relative to the binary or its rpaths;
- trusted: an absolute path into the base OS, present on every machine;
- foreign: any other absolute path, which this tool exists to eliminate.
"""

import enum
import pathlib

from bundle_fixer.config import DEFAULT_TRUSTED_PREFIXES


class ReferenceKind(enum.Enum):
    """Classification of a single library reference."""

    RELOCATABLE = "relocatable"
    TRUSTED = "trusted"
    FOREIGN = "foreign"


RELOCATABLE_TOKENS: tuple[str, ...] = ("@rpath", "@loader_path", "@executable_path")


def classify_reference(
    ref: str,
    *,
    trusted_prefixes: tuple[str, ...] = DEFAULT_TRUSTED_PREFIXES,
) -> ReferenceKind:
    """Classify a reference string found in binary metadata.

    :param ref: Reference string (dependency, install name or rpath).
    :param trusted_prefixes: Absolute prefixes treated as part of the base OS.
    :returns: The reference kind.
    """

    for token in RELOCATABLE_TOKENS:
        if ref == token or ref.startswith(token + "/") is True:
            return ReferenceKind.RELOCATABLE

    if ref.startswith("/") is False:
        # Bare names (self references) and relative strings carry no host path.
        return ReferenceKind.RELOCATABLE

    for prefix in trusted_prefixes:
        if ref.startswith(prefix) is True:
            return ReferenceKind.TRUSTED
    return ReferenceKind.FOREIGN


def is_foreign(ref: str, *, trusted_prefixes: tuple[str, ...] = DEFAULT_TRUSTED_PREFIXES) -> bool:
    """Shorthand for ``classify_reference(...) is ReferenceKind.FOREIGN``."""

    return classify_reference(ref, trusted_prefixes=trusted_prefixes) is ReferenceKind.FOREIGN


def is_framework_reference(ref: str) -> bool:
    """Check whether a reference points inside a versioned ``.framework`` unit.

    :param ref: Reference string.
    :returns: ``True`` if a path component ends in ``.framework``.
    """

    parts: tuple[str, ...] = pathlib.PurePosixPath(ref).parts
    for part in parts[:-1]:
        if part.endswith(".framework") is True:
            return True
    return False


def framework_subpath(ref: str) -> str:
    """Compute the unit-relative subpath of a framework reference.

    ``/nix/store/xyz-qtbase/lib/QtCore.framework/Versions/A/QtCore`` becomes
    ``QtCore.framework/Versions/A/QtCore``. The part after the last ``/lib/``
    wins; references without a ``lib`` segment are cut at the framework
    component instead.

    :param ref: Framework reference.
    :returns: Subpath relative to the directory that holds the unit.
    :raises ValueError: If ``ref`` is not a framework reference.
    """

    if is_framework_reference(ref) is False:
        raise ValueError(f"Not a framework reference: {ref!r}")

    marker: str = "/lib/"
    idx: int = ref.rfind(marker)
    if idx >= 0:
        tail: str = ref[idx + len(marker):]
        if is_framework_reference(tail) is True:
            return tail

    parts: tuple[str, ...] = pathlib.PurePosixPath(ref).parts
    for i, part in enumerate(parts):
        if part.endswith(".framework") is True:
            return "/".join(parts[i:])
    raise AssertionError(f"unreachable: {ref!r}")


def framework_unit_root(ref: str) -> str:
    """Return the ``X.framework`` directory portion of a framework reference.

    :param ref: Framework reference (absolute or unit-relative).
    :returns: The reference truncated after its ``.framework`` component.
    """

    parts: tuple[str, ...] = pathlib.PurePosixPath(ref).parts
    for i, part in enumerate(parts):
        if part.endswith(".framework") is True:
            return str(pathlib.PurePosixPath(*parts[: i + 1]))
    raise ValueError(f"Not a framework reference: {ref!r}")


def rpath_replacement(ref: str) -> str:
    """Compute the ``@rpath`` form a foreign reference is rewritten to.

    :param ref: Foreign reference.
    :returns: ``@rpath/<basename>`` or ``@rpath/<framework subpath>``.
    """

    if is_framework_reference(ref) is True:
        return f"@rpath/{framework_subpath(ref)}"
    return f"@rpath/{pathlib.PurePosixPath(ref).name}"
