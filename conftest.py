"""Shared fixtures: fake IPAs, provisioning profiles and signing assets."""

import plistlib
import struct
import zipfile
from pathlib import Path

import pytest
from asn1crypto import cms

from instrusign.src.core.asset_provisioner import SigningAssets

APP_ID = "com.example.app"
EXTENSION_ID = "com.example.app.share"

MH_MAGIC_64 = 0xFEEDFACF
CPU_TYPE_ARM64 = 0x0100000C
MH_EXECUTE = 0x2
LC_SEGMENT_64 = 0x19
LC_LOAD_DYLIB = 0xC
LC_CODE_SIGNATURE = 0x1D
LIBSYSTEM = "/usr/lib/libSystem.B.dylib"

TEXT_OFFSET = 0x1000
LINKEDIT_OFFSET = 0x4000
BASE_ADDRESS = 0x100000000
# four arm64 `ret` instructions
TEXT_BYTES = struct.pack("<I", 0xD65F03C0) * 4


def build_ipa(path: Path, files: dict, modes: dict = None) -> Path:
    """Write a zip at path whose entries are {arcname: bytes}."""
    modes = modes or {}
    with zipfile.ZipFile(path, "w", zipfile.ZIP_DEFLATED) as zf:
        for arcname, data in files.items():
            info = zipfile.ZipInfo(arcname)
            info.external_attr = (modes.get(arcname, 0o644) & 0o777) << 16
            zf.writestr(info, data)
    return path


def info_plist(identifier=None, executable=None, **extra) -> bytes:
    info = dict(extra)
    if identifier:
        info["CFBundleIdentifier"] = identifier
    if executable:
        info["CFBundleExecutable"] = executable
    return plistlib.dumps(info)


def sample_ipa_files() -> dict:
    """An app with one share extension, executables are not Mach-O."""
    return {
        "Payload/MyApp.app/Info.plist": info_plist(APP_ID, "MyApp"),
        "Payload/MyApp.app/MyApp": b"app executable",
        "Payload/MyApp.app/PlugIns/ShareExt.appex/Info.plist": info_plist(
            EXTENSION_ID, "ShareExt"
        ),
        "Payload/MyApp.app/PlugIns/ShareExt.appex/ShareExt": b"extension executable",
        "Payload/MyApp.app/Assets.car": b"assets",
    }


def build_profile(
    path: Path,
    entitlements: dict,
    name: str = "Test Profile",
    team_id: str = "TEAM123456",
    certificates=None,
    extra: dict = None,
) -> Path:
    """Write a CMS SignedData .mobileprovision wrapping a profile plist."""
    data = {
        "Name": name,
        "TeamIdentifier": [team_id],
        "Entitlements": entitlements,
        "DeveloperCertificates": certificates or [],
    }
    data.update(extra or {})
    return build_signed_blob(path, plistlib.dumps(data))


def build_signed_blob(path: Path, payload: bytes) -> Path:
    content_info = cms.ContentInfo(
        {
            "content_type": "signed_data",
            "content": cms.SignedData(
                {
                    "version": "v1",
                    "digest_algorithms": [],
                    "encap_content_info": {
                        "content_type": "data",
                        "content": payload,
                    },
                    "signer_infos": [],
                }
            ),
        }
    )
    path.write_bytes(content_info.dump())
    return path


def _segment(name, vmaddr, vmsize, fileoff, filesize, prot, sections=b"", nsects=0):
    return (
        struct.pack(
            "<II16sQQQQiiII",
            LC_SEGMENT_64,
            72 + len(sections),
            name.encode(),
            vmaddr,
            vmsize,
            fileoff,
            filesize,
            prot,
            prot,
            nsects,
            0,
        )
        + sections
    )


def _dylib_command(name: str) -> bytes:
    raw = name.encode() + b"\0"
    size = (24 + len(raw) + 7) & ~7
    header = struct.pack("<IIIIII", LC_LOAD_DYLIB, size, 24, 2, 0x10000, 0x10000)
    return header + raw.ljust(size - 24, b"\0")


def build_macho(path: Path, libraries=(LIBSYSTEM,), signature: bytes = b"") -> Path:
    """Write a small thin arm64 executable with a code section and optional signature.

    Load commands end well before the __text section so there is room to add more.
    """
    linkedit = signature.ljust(max(16, (len(signature) + 15) & ~15), b"\0")
    text_section = struct.pack(
        "<16s16sQQIIIIIIII",
        b"__text",
        b"__TEXT",
        BASE_ADDRESS + TEXT_OFFSET,
        len(TEXT_BYTES),
        TEXT_OFFSET,
        2,
        0,
        0,
        0x80000400,
        0,
        0,
        0,
    )

    commands = [
        _segment("__PAGEZERO", 0, BASE_ADDRESS, 0, 0, 0),
        _segment(
            "__TEXT", BASE_ADDRESS, LINKEDIT_OFFSET, 0, LINKEDIT_OFFSET, 5,
            sections=text_section, nsects=1,
        ),
        _segment(
            "__LINKEDIT", BASE_ADDRESS + LINKEDIT_OFFSET, 0x4000,
            LINKEDIT_OFFSET, len(linkedit), 1,
        ),
    ]
    commands += [_dylib_command(name) for name in libraries]
    if signature:
        commands.append(
            struct.pack(
                "<IIII", LC_CODE_SIGNATURE, 16, LINKEDIT_OFFSET, len(signature)
            )
        )

    load_commands = b"".join(commands)
    header = struct.pack(
        "<IiiIIIII",
        MH_MAGIC_64,
        CPU_TYPE_ARM64,
        0,
        MH_EXECUTE,
        len(commands),
        len(load_commands),
        0x200085,
        0,
    )
    data = (header + load_commands).ljust(TEXT_OFFSET, b"\0") + TEXT_BYTES
    path.write_bytes(data.ljust(LINKEDIT_OFFSET, b"\0") + linkedit)
    return path


@pytest.fixture
def sample_ipa(tmp_path):
    return build_ipa(
        tmp_path / "MyApp.ipa",
        sample_ipa_files(),
        modes={
            "Payload/MyApp.app/MyApp": 0o755,
            "Payload/MyApp.app/PlugIns/ShareExt.appex/ShareExt": 0o755,
        },
    )


@pytest.fixture
def app_profile(tmp_path):
    return build_profile(
        tmp_path / "app.mobileprovision",
        {
            "application-identifier": f"TEAM123456.{APP_ID}",
            "com.apple.developer.team-identifier": "TEAM123456",
            "get-task-allow": True,
            "keychain-access-groups": ["TEAM123456.*"],
        },
        name="App Profile",
    )


@pytest.fixture
def extension_profile(tmp_path):
    return build_profile(
        tmp_path / "extension.mobileprovision",
        {
            "application-identifier": f"TEAM123456.{EXTENSION_ID}",
            "get-task-allow": True,
        },
        name="Extension Profile",
    )


@pytest.fixture
def signing_assets(tmp_path):
    assets_dir = tmp_path / "assets"
    assets_dir.mkdir()
    signer = assets_dir / "zsign-darwin-arm64"
    signer.write_bytes(b"#!/bin/sh\nexit 0\n")
    signer.chmod(0o755)
    library = assets_dir / "instrumentation.dylib"
    library.write_bytes(b"fake dylib")
    return SigningAssets(
        signer_binary_path=signer, instrumentation_library_path=library
    )


@pytest.fixture
def private_key(tmp_path):
    key = tmp_path / "key.p12"
    key.write_bytes(b"fake p12")
    return key
