import json
import pathlib

import pytest

from bundle_fixer.layout import Bundle, open_bundle
from bundle_fixer.macho import BinaryInfo, MetadataReadError, MetadataRewriteError


FAKE_MAGIC = b"FAKE-MACHO\n"


def write_binary(path: pathlib.Path, *, install_name=None, deps=(), rpaths=(), extra: bytes = b"") -> pathlib.Path:
    """Write a fake binary whose load commands live in a JSON payload."""

    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {"id": install_name, "deps": list(deps), "rpaths": list(rpaths)}
    path.write_bytes(FAKE_MAGIC + json.dumps(payload).encode("utf-8") + b"\n" + extra)
    return path


def read_meta(path: pathlib.Path) -> dict:
    head, _, _ = path.read_bytes()[len(FAKE_MAGIC):].partition(b"\n")
    return json.loads(head)


class FakeMachOTool:
    """In-process stand-in for macholib + install_name_tool.

    Copying a fake binary copies its metadata, so the closure logic can be
    exercised end to end on any OS.
    """

    def __init__(self, *, fail_rewrite_for=()):
        self.fail_rewrite_for = set(fail_rewrite_for)
        self.rewrites = []
        self.signed = []

    def is_binary(self, path):
        with open(path, "rb") as f:
            return f.read(len(FAKE_MAGIC)) == FAKE_MAGIC

    def inspect(self, path):
        if self.is_binary(path) is False:
            raise MetadataReadError(f"not a binary: {path}")
        meta = read_meta(path)
        return BinaryInfo(
            install_name=meta["id"],
            dependencies=tuple(meta["deps"]),
            rpaths=tuple(meta["rpaths"]),
        )

    def rewrite(self, path, *, install_name=None, changes=(), add_rpaths=()):
        if install_name is None and len(changes) == 0 and len(add_rpaths) == 0:
            return
        if path.name in self.fail_rewrite_for:
            raise MetadataRewriteError(path, "exit=1: simulated failure")

        raw = path.read_bytes()[len(FAKE_MAGIC):]
        _, _, rest = raw.partition(b"\n")
        meta = read_meta(path)
        if install_name is not None:
            meta["id"] = install_name
        for old, new in changes:
            meta["deps"] = [new if d == old else d for d in meta["deps"]]
        for rp in add_rpaths:
            if rp in meta["rpaths"]:
                raise MetadataRewriteError(path, f"would duplicate path: {rp}")
            meta["rpaths"].append(rp)
        path.write_bytes(FAKE_MAGIC + json.dumps(meta).encode("utf-8") + b"\n" + rest)
        self.rewrites.append(
            (path, {"install_name": install_name, "changes": list(changes), "add_rpaths": list(add_rpaths)})
        )

    def adhoc_sign(self, path):
        self.signed.append(path)


@pytest.fixture
def tool():
    return FakeMachOTool()


@pytest.fixture
def store(tmp_path):
    """Stand-in for a build store outside the bundle (e.g. /nix/store)."""

    root = tmp_path / "store"
    root.mkdir()
    return root


@pytest.fixture
def app(tmp_path) -> pathlib.Path:
    root = tmp_path / "HelloWorld.app"
    (root / "Contents" / "MacOS").mkdir(parents=True)
    (root / "Contents" / "Frameworks").mkdir(parents=True)
    (root / "Contents" / "Resources").mkdir(parents=True)
    return root


@pytest.fixture
def bundle(app) -> Bundle:
    return open_bundle(app)
