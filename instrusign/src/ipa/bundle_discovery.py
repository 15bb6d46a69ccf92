import plistlib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from xml.parsers.expat import ExpatError

from instrusign.logger import get_console
from instrusign.src.core.errors import ManifestFormatError, PreflightConfigError

INFO_PLIST = "Info.plist"


class BundleKind(Enum):
    APPLICATION = ".app"
    EXTENSION = ".appex"


BUNDLE_SUFFIXES = tuple(kind.value for kind in BundleKind)


class ManifestStatus(Enum):
    FOUND = "found"
    ABSENT = "absent"  # No Info.plist, or no identifier in it
    MALFORMED = "malformed"  # Info.plist exists but can't be parsed


@dataclass
class ManifestLookup:
    """Outcome of reading a bundle's Info.plist"""

    status: ManifestStatus
    info: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None

    @property
    def identifier(self) -> Optional[str]:
        return self.info.get("CFBundleIdentifier") if self.found else None

    @property
    def found(self) -> bool:
        return self.status == ManifestStatus.FOUND


@dataclass
class ComponentBundle:
    """A signable .app or .appex directory inside the unpacked payload"""

    path: Path
    identifier: str
    kind: BundleKind
    executable_name: Optional[str] = None

    @property
    def executable(self) -> Optional[Path]:
        return self.path / self.executable_name if self.executable_name else None

    @property
    def is_extension(self) -> bool:
        return self.kind == BundleKind.EXTENSION


def read_manifest(bundle_path: Path) -> ManifestLookup:
    """Read Info.plist from a bundle directory without raising."""
    info_plist = bundle_path / INFO_PLIST
    if not info_plist.is_file():
        return ManifestLookup(ManifestStatus.ABSENT, reason=f"no {INFO_PLIST}")

    try:
        with open(info_plist, "rb") as f:
            info = plistlib.load(f)
    except (plistlib.InvalidFileException, ExpatError, ValueError, OSError) as e:
        return ManifestLookup(ManifestStatus.MALFORMED, reason=str(e))

    if not isinstance(info, dict):
        return ManifestLookup(ManifestStatus.MALFORMED, reason="root is not a dict")

    identifier = info.get("CFBundleIdentifier")
    if not isinstance(identifier, str) or not identifier.strip():
        return ManifestLookup(
            ManifestStatus.ABSENT, info=info, reason="no CFBundleIdentifier"
        )

    return ManifestLookup(ManifestStatus.FOUND, info=info)


def find_bundles(payload_dir: Path) -> List[ComponentBundle]:
    """Recursively find .app and .appex bundles that carry a bundle identifier.

    Bundles whose Info.plist is missing, unreadable or has no identifier are
    skipped; they are not signable components.
    """
    console = get_console()
    bundles: List[ComponentBundle] = []

    candidates = [
        p
        for p in sorted(Path(payload_dir).rglob("*"))
        if p.is_dir() and p.suffix in BUNDLE_SUFFIXES
    ]

    for bundle_path in candidates:
        lookup = read_manifest(bundle_path)
        if not lookup.found:
            console.log(
                f"[yellow]Skipping {bundle_path.name}:[/] {lookup.status.value} ({lookup.reason})"
            )
            continue

        executable_name = lookup.info.get("CFBundleExecutable")
        bundles.append(
            ComponentBundle(
                path=bundle_path,
                identifier=lookup.identifier,
                kind=BundleKind(bundle_path.suffix),
                executable_name=(
                    executable_name if isinstance(executable_name, str) else None
                ),
            )
        )

    console.log(f"[blue]Found {len(bundles)} signable bundles in[/] {payload_dir}")
    return bundles


def partition_bundles(
    bundles: List[ComponentBundle],
) -> Tuple[List[ComponentBundle], List[ComponentBundle]]:
    """Split bundles into (extensions, apps) in signing order.

    Within each group the deepest bundle comes first, so the top-level app is
    always the last element of apps.
    """

    def depth_first(group):
        return sorted(group, key=lambda b: len(b.path.parts), reverse=True)

    extensions = depth_first([b for b in bundles if b.is_extension])
    apps = depth_first([b for b in bundles if not b.is_extension])
    return extensions, apps


def main_application(
    payload_dir: Path, bundles: List[ComponentBundle]
) -> ComponentBundle:
    """Return the single .app that sits directly under Payload/."""
    payload_dir = Path(payload_dir)
    top_level = [
        b
        for b in bundles
        if b.kind == BundleKind.APPLICATION and b.path.parent == payload_dir
    ]
    if len(top_level) == 1:
        return top_level[0]

    if not top_level:
        unreadable = [
            p
            for p in payload_dir.glob("*.app")
            if read_manifest(p).status == ManifestStatus.MALFORMED
        ]
        if unreadable:
            raise ManifestFormatError(f"Unreadable {INFO_PLIST} in {unreadable[0]}")
        raise PreflightConfigError(
            f"No .app bundle with a bundle identifier in {payload_dir}"
        )

    names = ", ".join(b.path.name for b in top_level)
    raise PreflightConfigError(
        f"Expected exactly one .app in {payload_dir}, found: {names}"
    )
