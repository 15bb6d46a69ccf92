import os
import platform
import stat
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import requests

from instrusign.logger import get_console
from instrusign.src.core.errors import AssetProvisioningError
from instrusign.src.core.signing_config import RESIGN_VERSION
from instrusign.src.utils.config_loader import get_home_dir

RELEASES_URL = "https://github.com/qawolf/qawolf-ios-resign/releases/download"
LIBRARY_FILENAME = "instrumentation.dylib"
DOWNLOAD_TIMEOUT = 120


@dataclass(frozen=True)
class SigningAssets:
    """Local copies of the signer and the library it injects"""

    signer_binary_path: Path
    instrumentation_library_path: Path


def host_arch(machine: Optional[str] = None) -> str:
    """Map the host CPU to the architecture suffix used by release assets."""
    machine = (machine or platform.machine()).lower()
    if machine in ("arm64", "aarch64"):
        return "arm64"
    if machine in ("x86_64", "amd64"):
        return "amd64"
    raise AssetProvisioningError(
        f"Unsupported CPU architecture '{machine}' for zsign assets"
    )


def signer_filename(arch: str) -> str:
    return f"zsign-darwin-{arch}"


def download_file(url: str, destination: Path) -> None:
    """Stream url into destination, only ever exposing a complete file."""
    console = get_console()
    console.log(f"[blue]Downloading[/] {url} -> {destination}")

    fd, tmp_name = tempfile.mkstemp(
        dir=destination.parent, prefix=f".{destination.name}."
    )
    try:
        with os.fdopen(fd, "wb") as f:
            response = requests.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT)
            response.raise_for_status()
            for chunk in response.iter_content(chunk_size=1024 * 1024):
                f.write(chunk)
        os.replace(tmp_name, destination)
    except requests.exceptions.RequestException as e:
        raise AssetProvisioningError(f"Failed to download {url}: {e}") from e
    except OSError as e:
        raise AssetProvisioningError(
            f"Failed to store {url} at {destination}: {e}"
        ) from e
    finally:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)


def ensure_assets(
    version: str = RESIGN_VERSION,
    cache_root: Optional[Path] = None,
    arch: Optional[str] = None,
) -> SigningAssets:
    """Return cached signer and library for version, downloading what's missing.

    The cache is keyed by (version, arch) and files only appear once fully
    written, so concurrent runs can share it.
    """
    version = version or RESIGN_VERSION
    arch = arch or host_arch()
    cache_root = Path(cache_root) if cache_root else get_home_dir() / "assets"
    cache_dir = cache_root / version / arch

    try:
        cache_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise AssetProvisioningError(
            f"Cannot create asset cache {cache_dir}: {e}"
        ) from e

    base_url = f"{RELEASES_URL}/{version}"
    signer_path = cache_dir / signer_filename(arch)
    library_path = cache_dir / LIBRARY_FILENAME

    if not signer_path.exists():
        download_file(f"{base_url}/{signer_path.name}", signer_path)
    if not library_path.exists():
        download_file(f"{base_url}/{LIBRARY_FILENAME}", library_path)

    # Make executable
    current = os.stat(signer_path)
    if not current.st_mode & stat.S_IEXEC:
        os.chmod(
            signer_path, current.st_mode | stat.S_IEXEC | stat.S_IXGRP | stat.S_IXOTH
        )

    return SigningAssets(
        signer_binary_path=signer_path, instrumentation_library_path=library_path
    )
