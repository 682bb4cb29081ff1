import pytest

from bundle_fixer.layout import (
    BundleError,
    clean_sidecar_files,
    iter_binaries,
    make_writable,
    normalize_framework_symlinks,
    open_bundle,
    prepare_bundle,
    relocate_plugin_resources,
    required_rpath,
)

from conftest import write_binary


def test_open_bundle_rejects_missing_path(tmp_path):
    with pytest.raises(BundleError):
        open_bundle(tmp_path / "Nope.app")


def test_open_bundle_rejects_file(tmp_path):
    f = tmp_path / "file.app"
    f.write_text("x")
    with pytest.raises(BundleError):
        open_bundle(f)


def test_open_bundle_requires_contents(tmp_path):
    (tmp_path / "Empty.app").mkdir()
    with pytest.raises(BundleError):
        open_bundle(tmp_path / "Empty.app")


def test_open_bundle_leaves_bundle_untouched(tmp_path):
    (tmp_path / "A.app" / "Contents").mkdir(parents=True)
    b = open_bundle(tmp_path / "A.app")
    assert not b.library_dir.exists()


def test_prepare_bundle_handles_read_only_contents(tmp_path):
    contents = tmp_path / "A.app" / "Contents"
    (contents / "MacOS").mkdir(parents=True)
    contents.chmod(0o555)
    b = open_bundle(tmp_path / "A.app")

    prepare_bundle(b)

    assert b.library_dir.is_dir()
    assert contents.stat().st_mode & 0o200


def test_prepare_bundle_reports_permission_errors(bundle, monkeypatch):
    def deny(root):
        raise PermissionError(13, "Permission denied", str(root))

    monkeypatch.setattr("bundle_fixer.layout.make_writable", deny)

    with pytest.raises(BundleError):
        prepare_bundle(bundle)


def test_iter_binaries_skips_symlinks_and_data(bundle, tool):
    exe = write_binary(bundle.executable_dir / "HelloWorld")
    lib = write_binary(bundle.library_dir / "libz.1.dylib", install_name="@rpath/libz.1.dylib")
    (bundle.library_dir / "libz.dylib").symlink_to("libz.1.dylib")
    (bundle.resource_dir / "qt.conf").write_text("[Paths]\nPlugins = PlugIns\n")

    assert iter_binaries(bundle, tool) == sorted([exe, lib])


def test_make_writable(bundle):
    f = bundle.resource_dir / "readonly.txt"
    f.write_text("x")
    f.chmod(0o444)
    make_writable(bundle.root)
    assert f.stat().st_mode & 0o200


def _flattened_framework(bundle, name="QtCore"):
    fw = bundle.library_dir / f"{name}.framework"
    for version in ("A", "Current"):
        write_binary(fw / "Versions" / version / name, install_name=f"@rpath/{name}.framework/Versions/A/{name}")
        (fw / "Versions" / version / "Resources").mkdir(parents=True)
        (fw / "Versions" / version / "Resources" / "Info.plist").write_text("<plist/>")
    (fw / "Resources").mkdir()
    (fw / "Resources" / "Info.plist").write_text("<plist/>")
    write_binary(fw / name)
    return fw


def test_normalize_framework_symlinks(bundle):
    fw = _flattened_framework(bundle)

    fixes = normalize_framework_symlinks(bundle)

    assert fixes == ["QtCore Versions/Current", "QtCore Resources", "QtCore top-level binary"]
    assert (fw / "Versions" / "Current").is_symlink()
    assert (fw / "Versions" / "Current").readlink().as_posix() == "A"
    assert (fw / "Resources").readlink().as_posix() == "Versions/Current/Resources"
    assert (fw / "QtCore").readlink().as_posix() == "Versions/Current/QtCore"
    assert (fw / "QtCore").is_file()
    # A second run finds nothing to do.
    assert normalize_framework_symlinks(bundle) == []


def test_normalize_skips_incomplete_framework(bundle):
    fw = bundle.library_dir / "Odd.framework"
    (fw / "Headers").mkdir(parents=True)
    assert normalize_framework_symlinks(bundle) == []
    assert (fw / "Headers").is_dir() and not (fw / "Headers").is_symlink()


def test_relocate_plugin_resources(bundle):
    write_binary(bundle.plugin_dir / "platforms" / "libqcocoa.dylib")
    (bundle.plugin_dir / "platforms" / "README.txt").write_text("docs")
    (bundle.plugin_dir / "styles" / "data").mkdir(parents=True)
    (bundle.plugin_dir / "styles" / "data" / "theme.json").write_text("{}")

    moved = relocate_plugin_resources(bundle)

    assert moved == ["platforms/README.txt", "styles/data/theme.json"]
    assert (bundle.plugin_dir / "platforms" / "libqcocoa.dylib").is_file()
    assert not (bundle.plugin_dir / "platforms" / "README.txt").exists()
    assert (bundle.resource_dir / "plugin-resources" / "platforms" / "README.txt").read_text() == "docs"
    assert (bundle.resource_dir / "plugin-resources" / "styles" / "data" / "theme.json").is_file()


def test_relocate_plugin_resources_without_plugins(bundle):
    assert relocate_plugin_resources(bundle) == []


@pytest.mark.parametrize(
    "relpath, expected",
    [
        ("Contents/MacOS/HelloWorld", "@executable_path/../Frameworks"),
        ("Contents/Frameworks/libz.1.dylib", "@loader_path"),
        ("Contents/Frameworks/QtCore.framework/Versions/A/QtCore", "@loader_path/../../.."),
        ("Contents/PlugIns/platforms/libqcocoa.dylib", "@loader_path/../../Frameworks"),
        ("Contents/Resources/helper", None),
    ],
)
def test_required_rpath(bundle, relpath, expected):
    assert required_rpath(bundle, bundle.root / relpath) == expected


def test_clean_sidecar_files(bundle):
    prl = bundle.library_dir / "QtCore.framework" / "Versions" / "A" / "Resources" / "QtCore.prl"
    prl.parent.mkdir(parents=True)
    prl.write_text(
        "QMAKE_PRL_BUILD_DIR = /nix/store/abc-qtbase-6.5/build\n"
        "QMAKE_PRL_LIBS = -F/nix/store/abc-qtbase-6.5/lib -framework IOKit\n"
    )
    clean = bundle.library_dir / "Other.prl"
    clean.write_text("QMAKE_PRL_LIBS = -framework AppKit\n")

    cleaned = clean_sidecar_files(bundle, source_root="/nix/store")

    assert cleaned == ["Contents/Frameworks/QtCore.framework/Versions/A/Resources/QtCore.prl"]
    assert prl.read_text() == "QMAKE_PRL_BUILD_DIR = \nQMAKE_PRL_LIBS = -F -framework IOKit\n"
    assert clean.read_text() == "QMAKE_PRL_LIBS = -framework AppKit\n"
