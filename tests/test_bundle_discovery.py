"""Tests for finding signable bundles in an unpacked payload."""

from pathlib import Path

import pytest

from conftest import APP_ID, EXTENSION_ID, info_plist
from instrusign.src.core.errors import ManifestFormatError, PreflightConfigError
from instrusign.src.ipa.bundle_discovery import (
    BundleKind,
    ComponentBundle,
    ManifestStatus,
    find_bundles,
    main_application,
    partition_bundles,
    read_manifest,
)


def make_bundle(root: Path, relative: str, plist: bytes = None) -> Path:
    bundle = root / relative
    bundle.mkdir(parents=True)
    if plist is not None:
        (bundle / "Info.plist").write_bytes(plist)
    return bundle


@pytest.fixture
def payload(tmp_path):
    root = tmp_path / "Payload"
    make_bundle(root, "MyApp.app", info_plist(APP_ID, "MyApp"))
    make_bundle(
        root, "MyApp.app/PlugIns/ShareExt.appex", info_plist(EXTENSION_ID, "ShareExt")
    )
    return root


class TestReadManifest:
    def test_found(self, payload):
        lookup = read_manifest(payload / "MyApp.app")
        assert lookup.status == ManifestStatus.FOUND
        assert lookup.identifier == APP_ID

    def test_absent_without_plist(self, tmp_path):
        bundle = make_bundle(tmp_path, "NoPlist.app")
        assert read_manifest(bundle).status == ManifestStatus.ABSENT

    def test_absent_without_identifier(self, tmp_path):
        bundle = make_bundle(tmp_path, "NoId.app", info_plist(executable="NoId"))
        lookup = read_manifest(bundle)
        assert lookup.status == ManifestStatus.ABSENT
        assert lookup.identifier is None

    def test_malformed(self, tmp_path):
        bundle = make_bundle(tmp_path, "Broken.app", b"<plist><dict><key>")
        assert read_manifest(bundle).status == ManifestStatus.MALFORMED


class TestFindBundles:
    def test_finds_apps_and_extensions(self, payload):
        bundles = find_bundles(payload)
        found = {b.identifier: b.kind for b in bundles}
        assert found == {
            APP_ID: BundleKind.APPLICATION,
            EXTENSION_ID: BundleKind.EXTENSION,
        }

    def test_executable_from_manifest(self, payload):
        app = next(b for b in find_bundles(payload) if b.identifier == APP_ID)
        assert app.executable == payload / "MyApp.app" / "MyApp"

    def test_skips_bundles_without_identifier(self, payload):
        make_bundle(payload, "MyApp.app/PlugIns/Empty.appex")
        make_bundle(payload, "MyApp.app/PlugIns/Broken.appex", b"garbage")
        make_bundle(payload, "MyApp.app/PlugIns/NoId.appex", info_plist(executable="x"))
        assert len(find_bundles(payload)) == 2

    def test_ignores_plain_directories(self, payload):
        (payload / "MyApp.app" / "Frameworks" / "Foo.framework").mkdir(parents=True)
        assert len(find_bundles(payload)) == 2


class TestPartition:
    def test_extensions_before_apps_deepest_first(self, tmp_path):
        root = tmp_path / "Payload"

        def bundle(rel, kind):
            return ComponentBundle(root / rel, rel, kind)

        top = bundle("A.app", BundleKind.APPLICATION)
        nested_app = bundle("A.app/Watch/W.app", BundleKind.APPLICATION)
        ext = bundle("A.app/PlugIns/E.appex", BundleKind.EXTENSION)
        deep_ext = bundle("A.app/Watch/W.app/PlugIns/WE.appex", BundleKind.EXTENSION)

        extensions, apps = partition_bundles([top, ext, nested_app, deep_ext])

        assert extensions == [deep_ext, ext]
        assert apps == [nested_app, top]


class TestMainApplication:
    def test_single_top_level_app(self, payload):
        app = main_application(payload, find_bundles(payload))
        assert app.identifier == APP_ID

    def test_no_app(self, tmp_path):
        root = tmp_path / "Payload"
        root.mkdir()
        with pytest.raises(PreflightConfigError):
            main_application(root, find_bundles(root))

    def test_unreadable_app_manifest(self, tmp_path):
        root = tmp_path / "Payload"
        make_bundle(root, "MyApp.app", b"not a plist")
        with pytest.raises(ManifestFormatError):
            main_application(root, find_bundles(root))

    def test_more_than_one_app(self, payload):
        make_bundle(payload, "Other.app", info_plist("com.example.other", "Other"))
        with pytest.raises(PreflightConfigError):
            main_application(payload, find_bundles(payload))
