import copy
import plistlib
import struct
from pathlib import Path
from typing import Dict, List, Union
from xml.parsers.expat import ExpatError

from lief import MachO

from instrusign.logger import get_console
from instrusign.src.core.errors import EntitlementsFormatError
from instrusign.src.ipa.bundle_discovery import ComponentBundle
from instrusign.src.ipa.provisioning_profile import ProvisioningProfile

# Plist values an entitlement can hold. Integers show up in a few Apple
# entitlements, so they are treated like any other scalar.
Scalar = Union[bool, str, int]
EntitlementValue = Union[
    Scalar, List["EntitlementValue"], Dict[str, "EntitlementValue"]
]
Entitlements = Dict[str, EntitlementValue]

CSMAGIC_EMBEDDED_SIGNATURE = 0xFADE0CC0
CSMAGIC_EMBEDDED_ENTITLEMENTS = 0xFADE7171
CSSLOT_ENTITLEMENTS = 5


def parse_entitlements_blob(signature: bytes) -> Entitlements:
    """Pull the XML entitlements out of an embedded code signature SuperBlob.

    Returns an empty dict when the signature has no entitlements slot or the
    data does not look like a SuperBlob at all.
    """
    if len(signature) < 12:
        return {}

    magic, length, count = struct.unpack_from(">III", signature, 0)
    if magic != CSMAGIC_EMBEDDED_SIGNATURE:
        return {}

    for i in range(count):
        index_offset = 12 + i * 8
        if index_offset + 8 > len(signature):
            break
        slot_type, blob_offset = struct.unpack_from(">II", signature, index_offset)
        if slot_type != CSSLOT_ENTITLEMENTS or blob_offset + 8 > len(signature):
            continue

        blob_magic, blob_length = struct.unpack_from(">II", signature, blob_offset)
        if blob_magic != CSMAGIC_EMBEDDED_ENTITLEMENTS:
            continue

        payload = signature[blob_offset + 8 : blob_offset + blob_length]
        try:
            entitlements = plistlib.loads(payload)
        except (plistlib.InvalidFileException, ExpatError, ValueError):
            return {}
        return entitlements if isinstance(entitlements, dict) else {}

    return {}


def read_binary_entitlements(executable: Path) -> Entitlements:
    """Entitlements embedded in an executable's current signature.

    Unsigned, missing or non Mach-O executables yield an empty dict so that a
    bundle that was never signed can still be signed with profile entitlements.
    """
    if not executable or not Path(executable).is_file():
        return {}

    try:
        parsed = MachO.parse(str(executable))
    except (RuntimeError, ValueError, TypeError):
        return {}
    if parsed is None:
        return {}

    # Every slice carries the same entitlements
    binary = parsed.at(0) if isinstance(parsed, MachO.FatBinary) else parsed
    if binary is None or not binary.has_code_signature:
        return {}

    return parse_entitlements_blob(bytes(binary.code_signature.content))


def _same_value(a: EntitlementValue, b: EntitlementValue) -> bool:
    # True == 1 in Python, but they are distinct plist values
    return type(a) is type(b) and a == b


def _union(*lists: List[EntitlementValue]) -> List[EntitlementValue]:
    merged: List[EntitlementValue] = []
    for values in lists:
        for item in values:
            if not any(_same_value(item, existing) for existing in merged):
                merged.append(copy.deepcopy(item))
    return merged


def _merge_values(bundle_value: EntitlementValue, profile_value: EntitlementValue):
    if isinstance(bundle_value, list) and isinstance(profile_value, list):
        return _union(bundle_value, profile_value)

    if isinstance(bundle_value, dict) and isinstance(profile_value, dict):
        return merge_entitlements(bundle_value, profile_value)

    # An explicit list is broader than a wildcard placeholder string
    if isinstance(bundle_value, list) and not isinstance(profile_value, (list, dict)):
        return copy.deepcopy(bundle_value)
    if isinstance(profile_value, list) and not isinstance(bundle_value, (list, dict)):
        return copy.deepcopy(profile_value)

    return copy.deepcopy(profile_value)


def merge_entitlements(bundle: Entitlements, profile: Entitlements) -> Entitlements:
    """Deep-merge bundle entitlements with the ones granted by a profile.

    Keys only on one side are kept. Arrays are unioned without duplicates,
    dicts are merged recursively, an array beats a scalar on the other side,
    and for everything else the profile wins.
    """
    merged: Entitlements = {}
    for key, value in bundle.items():
        if key in profile:
            merged[key] = _merge_values(value, profile[key])
        else:
            merged[key] = copy.deepcopy(value)

    for key, value in profile.items():
        if key not in merged:
            merged[key] = copy.deepcopy(value)

    return merged


class EntitlementsResolver:
    """Produces the entitlements file each component is signed with"""

    def __init__(self, scratch_dir: Path):
        self.scratch_dir = Path(scratch_dir)
        self.console = get_console()

    def resolve(
        self, bundle: ComponentBundle, profile: ProvisioningProfile
    ) -> Entitlements:
        bundle_ents = read_binary_entitlements(bundle.executable)
        if not bundle_ents:
            self.console.log(
                f"[yellow]No embedded entitlements in {bundle.path.name}, "
                "using profile entitlements only"
            )
        return merge_entitlements(bundle_ents, profile.entitlements)

    def write(self, bundle: ComponentBundle, entitlements: Entitlements) -> Path:
        """Serialize entitlements for the signer and make sure they read back."""
        ents_file = self.scratch_dir / f"{bundle.identifier}_entitlements.plist"

        try:
            data = plistlib.dumps(entitlements)
        except (TypeError, OverflowError) as e:
            raise EntitlementsFormatError(
                f"Merged entitlements for {bundle.identifier} cannot be serialized: {e}"
            ) from e

        with open(ents_file, "wb") as f:
            f.write(data)

        try:
            with open(ents_file, "rb") as f:
                reread = plistlib.load(f)
        except (plistlib.InvalidFileException, ExpatError, ValueError) as e:
            raise EntitlementsFormatError(
                f"Entitlements written for {bundle.identifier} are not a valid plist: {e}"
            ) from e
        if reread != entitlements:
            raise EntitlementsFormatError(
                f"Entitlements written for {bundle.identifier} did not round-trip: {ents_file}"
            )

        return ents_file

    def resolve_to_file(
        self, bundle: ComponentBundle, profile: ProvisioningProfile
    ) -> Path:
        return self.write(bundle, self.resolve(bundle, profile))
