"""Mach-O metadata access.

Reading goes through :mod:`macholib`; writing shells out to Apple's
``install_name_tool`` (and ``codesign`` for optional re-signing), one
batched invocation per file.
"""

from dataclasses import dataclass
import logging
import os
import pathlib
import stat
import struct
import subprocess

from macholib.MachO import MachO
from macholib.mach_o import (
    LC_ID_DYLIB,
    LC_LAZY_LOAD_DYLIB,
    LC_LOAD_DYLIB,
    LC_LOAD_UPWARD_DYLIB,
    LC_LOAD_WEAK_DYLIB,
    LC_REEXPORT_DYLIB,
    LC_RPATH,
)
import macholib.util


class MetadataReadError(RuntimeError):
    """Raised when a binary's load commands cannot be parsed."""


class MetadataRewriteError(RuntimeError):
    """Raised when ``install_name_tool`` (or ``codesign``) rejects a binary.

    :ivar path: Binary that could not be updated.
    :ivar output: Combined tool output.
    """

    def __init__(self, path: pathlib.Path, output: str) -> None:
        super().__init__(f"metadata rewrite failed for {path}: {output.strip()}")
        self.path: pathlib.Path = path
        self.output: str = output


_DEPENDENCY_COMMANDS: frozenset[int] = frozenset(
    {
        LC_LOAD_DYLIB,
        LC_LOAD_WEAK_DYLIB,
        LC_REEXPORT_DYLIB,
        LC_LOAD_UPWARD_DYLIB,
        LC_LAZY_LOAD_DYLIB,
    }
)


@dataclass(frozen=True, slots=True)
class BinaryInfo:
    """Library metadata declared by one binary.

    :ivar install_name: The library's own identifier (``None`` for executables).
    :ivar dependencies: Declared library references, in load-command order.
    :ivar rpaths: Declared relocation search paths.
    """

    install_name: str | None
    dependencies: tuple[str, ...]
    rpaths: tuple[str, ...]


class MachOTool:
    """Inspect and rewrite Mach-O binaries on the host."""

    def __init__(
        self,
        *,
        install_name_tool: str = "install_name_tool",
        codesign: str = "codesign",
        logger: logging.Logger | None = None,
    ) -> None:
        self._install_name_tool: str = install_name_tool
        self._codesign: str = codesign
        self._logger: logging.Logger = logger if logger is not None else logging.getLogger("bundle_fixer")

    def is_binary(self, path: pathlib.Path) -> bool:
        """Check the file signature for a thin or fat Mach-O object."""

        return macholib.util.is_platform_file(str(path))

    def inspect(self, path: pathlib.Path) -> BinaryInfo:
        """Read install name, dependencies and rpaths from every slice.

        :param path: Mach-O file.
        :returns: Parsed metadata, de-duplicated across architectures.
        :raises MetadataReadError: If the file cannot be parsed.
        """

        try:
            binary = MachO(str(path))
        except (OSError, ValueError, struct.error) as e:
            raise MetadataReadError(f"cannot read load commands of {path}: {e}") from e

        install_name: str | None = None
        deps: list[str] = []
        rpaths: list[str] = []
        for header in binary.headers:
            for cmd in header.commands:
                lc_type: int = cmd[0].cmd
                if lc_type not in _DEPENDENCY_COMMANDS and lc_type not in (LC_ID_DYLIB, LC_RPATH):
                    continue

                value: str = _decode_path(cmd[2])
                if lc_type == LC_ID_DYLIB:
                    if install_name is None:
                        install_name = value
                elif lc_type == LC_RPATH:
                    if value not in rpaths:
                        rpaths.append(value)
                elif value not in deps:
                    deps.append(value)

        return BinaryInfo(install_name=install_name, dependencies=tuple(deps), rpaths=tuple(rpaths))

    def rewrite(
        self,
        path: pathlib.Path,
        *,
        install_name: str | None = None,
        changes: tuple[tuple[str, str], ...] | list[tuple[str, str]] = (),
        add_rpaths: tuple[str, ...] | list[str] = (),
    ) -> None:
        """Apply all metadata updates for one file in a single tool call.

        :param path: Mach-O file to update in place.
        :param install_name: New install name, if it should change.
        :param changes: ``(old, new)`` dependency rewrites.
        :param add_rpaths: Rpath entries to append.
        :raises MetadataRewriteError: If ``install_name_tool`` fails.
        """

        args: list[str] = []
        if install_name is not None:
            args += ["-id", install_name]
        for old, new in changes:
            args += ["-change", old, new]
        for rp in add_rpaths:
            args += ["-add_rpath", rp]
        if len(args) == 0:
            return

        self._run([self._install_name_tool, *args, str(path)], path=path)

    def adhoc_sign(self, path: pathlib.Path) -> None:
        """Replace the code signature with an ad-hoc one.

        :param path: Mach-O file.
        :raises MetadataRewriteError: If ``codesign`` fails.
        """

        self._run([self._codesign, "--force", "--sign", "-", str(path)], path=path)

    def _run(self, cmd: list[str], *, path: pathlib.Path) -> None:
        """Run a metadata tool against a temporarily user-writable file.

        :param cmd: Full command line.
        :param path: File being modified.
        :raises MetadataRewriteError: If the tool cannot be run or exits non-zero.
        """

        if self._logger.isEnabledFor(logging.DEBUG) is True:
            self._logger.debug(f"bundle-fixer: running: {' '.join(cmd)}")

        orig_mode: int = os.stat(path).st_mode
        if not (orig_mode & stat.S_IWUSR):
            os.chmod(path, orig_mode | stat.S_IWUSR)
        try:
            proc = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                check=False,
            )
        except OSError as e:
            raise MetadataRewriteError(path, f"{cmd[0]}: {e}") from e
        finally:
            if not (orig_mode & stat.S_IWUSR):
                os.chmod(path, orig_mode)

        if proc.returncode != 0:
            raise MetadataRewriteError(path, f"exit={proc.returncode}: {proc.stdout}")


def _decode_path(data: bytes) -> str:
    """Decode a load-command string, stripping NUL padding.

    :param data: Raw command payload.
    :returns: Decoded path.
    """

    return data.decode("utf-8", errors="replace").rstrip("\x00")
