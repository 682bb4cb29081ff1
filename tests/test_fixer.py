import pytest

from bundle_fixer.closure import IssueKind
from bundle_fixer.config import FixerConfig
from bundle_fixer.fixer import fix_bundle
from bundle_fixer.layout import BundleError

from conftest import read_meta, write_binary


def _populate(app, store):
    qt_lib = store / "qtbase" / "lib"
    core_ref = str(qt_lib / "QtCore.framework" / "Versions" / "A" / "QtCore")
    write_binary(store / "libpcre2.dylib", install_name=str(store / "libpcre2.dylib"))
    write_binary(store / "libz.dylib", install_name=str(store / "libz.dylib"))

    fw = app / "Contents" / "Frameworks" / "QtCore.framework"
    for version in ("A", "Current"):
        write_binary(fw / "Versions" / version / "QtCore", install_name=core_ref, deps=[str(store / "libpcre2.dylib")])
    prl = fw / "Versions" / "A" / "Resources" / "QtCore.prl"
    prl.parent.mkdir(parents=True)
    prl.write_text("QMAKE_PRL_BUILD_DIR = /nix/store/abc-qtbase/build\n")

    write_binary(
        app / "Contents" / "MacOS" / "HelloWorld",
        deps=[core_ref, str(store / "libz.dylib"), "/usr/lib/libSystem.B.dylib"],
    )
    write_binary(app / "Contents" / "PlugIns" / "platforms" / "libqcocoa.dylib", deps=[core_ref])
    (app / "Contents" / "PlugIns" / "platforms" / "notes.txt").write_text("x")
    return core_ref


def test_fix_bundle_full_pipeline(app, store, tool):
    _populate(app, store)

    report = fix_bundle(bundle_path=app, config=FixerConfig(), tool=tool)

    contents = app / "Contents"
    assert report.ok is True
    assert report.issues == ()
    assert report.symlink_fixes == ("QtCore Versions/Current",)
    assert report.moved_plugin_files == ("platforms/notes.txt",)
    assert sorted(report.closure.copied) == ["Contents/Frameworks/libpcre2.dylib", "Contents/Frameworks/libz.dylib"]
    assert report.cleaned_sidecars == ("Contents/Frameworks/QtCore.framework/Versions/A/Resources/QtCore.prl",)
    assert report.signed == ()

    exe = read_meta(contents / "MacOS" / "HelloWorld")
    assert exe["deps"] == [
        "@rpath/QtCore.framework/Versions/A/QtCore",
        "@rpath/libz.dylib",
        "/usr/lib/libSystem.B.dylib",
    ]
    assert exe["rpaths"] == ["@executable_path/../Frameworks"]

    core = read_meta(contents / "Frameworks" / "QtCore.framework" / "Versions" / "A" / "QtCore")
    assert core["id"] == "@rpath/QtCore.framework/Versions/A/QtCore"
    assert core["deps"] == ["@rpath/libpcre2.dylib"]
    assert core["rpaths"] == ["@loader_path/../../.."]

    plugin = read_meta(contents / "PlugIns" / "platforms" / "libqcocoa.dylib")
    assert plugin["rpaths"] == ["@loader_path/../../Frameworks"]
    assert "/nix/store" not in (
        contents / "Frameworks" / "QtCore.framework" / "Versions" / "A" / "Resources" / "QtCore.prl"
    ).read_text()


def test_fix_bundle_twice_changes_nothing(app, store, tool):
    _populate(app, store)
    fix_bundle(bundle_path=app, config=FixerConfig(), tool=tool)
    rewrites = len(tool.rewrites)

    report = fix_bundle(bundle_path=app, config=FixerConfig(), tool=tool)

    assert report.ok is True
    assert report.closure.passes == 0
    assert report.rpaths_added == ()
    assert report.symlink_fixes == ()
    assert report.cleaned_sidecars == ()
    assert len(tool.rewrites) == rewrites


def test_fix_bundle_degraded_still_runs_later_steps(app, store, tool):
    write_binary(app / "Contents" / "MacOS" / "HelloWorld", deps=[str(store / "libGone.dylib")])

    report = fix_bundle(bundle_path=app, config=FixerConfig(max_passes=2), tool=tool)

    assert report.ok is False
    assert report.closure.unresolved == (str(store / "libGone.dylib"),)
    assert report.rpaths_added == ("Contents/MacOS/HelloWorld -> @executable_path/../Frameworks",)
    assert {i.kind for i in report.issues} == {IssueKind.MISSING_SOURCE_LIBRARY, IssueKind.NON_CONVERGENCE}


def test_fix_bundle_adhoc_sign(app, tool):
    write_binary(app / "Contents" / "MacOS" / "HelloWorld")

    report = fix_bundle(bundle_path=app, config=FixerConfig(adhoc_sign=True), tool=tool)

    assert report.signed == ("Contents/MacOS/HelloWorld",)
    assert [p.name for p in tool.signed] == ["HelloWorld"]


def test_fix_bundle_rejects_missing_bundle(tmp_path, tool):
    with pytest.raises(BundleError):
        fix_bundle(bundle_path=tmp_path / "Missing.app", config=FixerConfig(), tool=tool)


def test_fix_bundle_creates_frameworks_in_read_only_bundle(tmp_path, store, tool):
    app = tmp_path / "Store.app"
    write_binary(store / "libz.dylib", install_name=str(store / "libz.dylib"))
    exe = write_binary(app / "Contents" / "MacOS" / "HelloWorld", deps=[str(store / "libz.dylib")])
    (app / "Contents" / "MacOS").chmod(0o555)
    (app / "Contents").chmod(0o555)

    report = fix_bundle(bundle_path=app, config=FixerConfig(), tool=tool)

    assert report.ok is True
    assert (app / "Contents" / "Frameworks" / "libz.dylib").is_file()
    assert read_meta(exe)["deps"] == ["@rpath/libz.dylib"]
