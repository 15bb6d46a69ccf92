import hashlib
import plistlib
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
from xml.parsers.expat import ExpatError

from asn1crypto import x509
from asn1crypto.cms import ContentInfo

from instrusign.src.core.errors import ProfileFormatError


@dataclass
class ProvisioningProfile:
    """Decoded contents of a .mobileprovision file"""

    path: Path
    name: Optional[str]
    app_id: Optional[str]
    team_identifiers: List[str]
    entitlements: Dict[str, Any]
    developer_certificates: List[bytes] = field(default_factory=list)
    expiration_date: Optional[datetime] = None


def dump_prov(prov_file: Path) -> dict:
    """Read a provisioning profile without using macOS security command"""
    try:
        with open(prov_file, "rb") as f:
            content_info = ContentInfo.load(f.read())
        signed_data = content_info["content"]
        # The actual plist is the encapsulated content of the SignedData
        plist_data = signed_data["encap_content_info"]["content"].native
    except OSError as e:
        raise ProfileFormatError(
            f"Cannot read provisioning profile {prov_file}: {e}"
        ) from e
    except (ValueError, KeyError, TypeError) as e:
        raise ProfileFormatError(
            f"Provisioning profile {prov_file} is not a CMS signed document: {e}"
        ) from e

    if not isinstance(plist_data, bytes):
        raise ProfileFormatError(
            f"Provisioning profile {prov_file} has no embedded plist"
        )

    try:
        data = plistlib.loads(plist_data)
    except (plistlib.InvalidFileException, ExpatError, ValueError) as e:
        raise ProfileFormatError(
            f"Provisioning profile {prov_file} contains an invalid plist: {e}"
        ) from e

    if not isinstance(data, dict):
        raise ProfileFormatError(
            f"Provisioning profile {prov_file} plist is not a dict"
        )
    return data


def load_profile(prov_file: Path) -> ProvisioningProfile:
    """Decode a provisioning profile and pick out the fields we sign with."""
    prov_file = Path(prov_file)
    data = dump_prov(prov_file)

    entitlements = data.get("Entitlements")
    if not isinstance(entitlements, dict):
        raise ProfileFormatError(
            f"Provisioning profile {prov_file} has no Entitlements"
        )

    team_ids = data.get("TeamIdentifier") or []
    if isinstance(team_ids, str):
        team_ids = [team_ids]

    return ProvisioningProfile(
        path=prov_file,
        name=data.get("Name"),
        app_id=entitlements.get("application-identifier"),
        team_identifiers=list(team_ids),
        entitlements=entitlements,
        developer_certificates=[
            bytes(c)
            for c in data.get("DeveloperCertificates", [])
            if isinstance(c, (bytes, bytearray))
        ],
        expiration_date=data.get("ExpirationDate"),
    )


def _certificate_summary(der: bytes) -> str:
    fingerprint = hashlib.sha1(der).hexdigest().upper()
    try:
        subject = x509.Certificate.load(der).subject.human_friendly
    except ValueError:
        subject = "<unparseable certificate>"
    return f"{subject} (SHA1 {fingerprint})"


def describe_profile(profile: ProvisioningProfile) -> List[str]:
    """Human readable summary lines, used for debug output."""
    lines = [
        f"Profile: {profile.name or '<unnamed>'} ({profile.path})",
        f"Profile AppID: {profile.app_id}",
        f"Profile TeamIdentifier(s): {', '.join(profile.team_identifiers)}",
        f"Profile DeveloperCertificates count: {len(profile.developer_certificates)}",
    ]
    if profile.expiration_date:
        lines.append(f"Profile expires: {profile.expiration_date:%Y-%m-%d}")

    # First few certificates are enough to spot a key/profile mismatch
    for idx, der in enumerate(profile.developer_certificates[:3]):
        lines.append(f"Profile Cert[{idx}] => {_certificate_summary(der)}")
    return lines
