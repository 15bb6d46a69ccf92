"""Tests for fetching and caching the signer and instrumentation library."""

import os
from unittest.mock import MagicMock, patch

import pytest
import requests

from instrusign.src.core.asset_provisioner import (
    LIBRARY_FILENAME,
    RELEASES_URL,
    download_file,
    ensure_assets,
    host_arch,
    signer_filename,
)
from instrusign.src.core.errors import AssetProvisioningError


def fake_response(chunks=(b"data",), status_error=None):
    response = MagicMock()
    response.iter_content.return_value = list(chunks)
    if status_error:
        response.raise_for_status.side_effect = status_error
    return response


class TestHostArch:
    @pytest.mark.parametrize(
        "machine, expected",
        [
            ("arm64", "arm64"),
            ("aarch64", "arm64"),
            ("x86_64", "amd64"),
            ("AMD64", "amd64"),
        ],
    )
    def test_known(self, machine, expected):
        assert host_arch(machine) == expected

    def test_unknown(self):
        with pytest.raises(AssetProvisioningError):
            host_arch("riscv64")


class TestDownload:
    def test_writes_file(self, tmp_path):
        dest = tmp_path / "file"
        with patch("requests.get", return_value=fake_response([b"ab", b"cd"])):
            download_file("https://example.invalid/file", dest)
        assert dest.read_bytes() == b"abcd"
        assert os.listdir(tmp_path) == ["file"]

    def test_http_error_leaves_nothing(self, tmp_path):
        dest = tmp_path / "file"
        error = requests.exceptions.HTTPError("404")
        with patch("requests.get", return_value=fake_response(status_error=error)):
            with pytest.raises(AssetProvisioningError):
                download_file("https://example.invalid/file", dest)
        assert os.listdir(tmp_path) == []

    def test_connection_error(self, tmp_path):
        with patch(
            "requests.get", side_effect=requests.exceptions.ConnectionError("offline")
        ):
            with pytest.raises(AssetProvisioningError):
                download_file("https://example.invalid/file", tmp_path / "file")


class TestEnsureAssets:
    def test_downloads_into_versioned_cache(self, tmp_path):
        with patch("requests.get", return_value=fake_response()) as get:
            assets = ensure_assets("v9.9.9", cache_root=tmp_path, arch="arm64")

        cache_dir = tmp_path / "v9.9.9" / "arm64"
        assert assets.signer_binary_path == cache_dir / signer_filename("arm64")
        assert assets.instrumentation_library_path == cache_dir / LIBRARY_FILENAME
        assert os.access(assets.signer_binary_path, os.X_OK)

        urls = [call.args[0] for call in get.call_args_list]
        assert urls == [
            f"{RELEASES_URL}/v9.9.9/zsign-darwin-arm64",
            f"{RELEASES_URL}/v9.9.9/{LIBRARY_FILENAME}",
        ]

    def test_uses_cache(self, tmp_path):
        cache_dir = tmp_path / "v1" / "amd64"
        cache_dir.mkdir(parents=True)
        (cache_dir / signer_filename("amd64")).write_bytes(b"zsign")
        (cache_dir / LIBRARY_FILENAME).write_bytes(b"dylib")

        with patch("requests.get") as get:
            assets = ensure_assets("v1", cache_root=tmp_path, arch="amd64")

        get.assert_not_called()
        assert assets.instrumentation_library_path.read_bytes() == b"dylib"

    def test_cache_under_home(self, tmp_path, monkeypatch):
        monkeypatch.setenv("INSTRUSIGN_HOME", str(tmp_path))
        with patch("requests.get", return_value=fake_response()):
            assets = ensure_assets("v2", arch="arm64")
        assert assets.signer_binary_path.parent == tmp_path / "assets" / "v2" / "arm64"
