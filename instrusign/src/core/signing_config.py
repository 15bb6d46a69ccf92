from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from instrusign.src.core.errors import PreflightConfigError
from instrusign.src.core.signer import SigningCredential

# Pinned qawolf-ios-resign release unless overridden
RESIGN_VERSION = "v0.0.3"


class InjectionMode(Enum):
    LIEF = "lief"  # Patch load commands in-process, signer only signs
    SIGNER = "signer"  # Hand the library to zsign with -l and let it inject


class ProfileSelector:
    """Chooses the provisioning profile for a bundle identifier.

    An explicit per-identifier override wins, otherwise the default profile is
    used. Returns None when neither applies.
    """

    def __init__(
        self,
        overrides: Optional[Dict[str, Path]] = None,
        default: Optional[Path] = None,
    ):
        self.overrides = {k: Path(v) for k, v in (overrides or {}).items()}
        self.default = Path(default) if default else None

    def __call__(self, identifier: str) -> Optional[Path]:
        return self.overrides.get(identifier, self.default)


@dataclass
class SigningConfig:
    """Every option a signing run understands, validated once up front"""

    ipa_path: Path
    private_key_path: Path
    password: str
    output_path: Optional[Path] = None
    certificate_path: Optional[Path] = None
    certificate_paths: Dict[str, Path] = field(default_factory=dict)
    provisioning_profile_paths: Dict[str, Path] = field(default_factory=dict)
    default_provisioning_profile: Optional[Path] = None
    version: str = RESIGN_VERSION
    debug: bool = False
    injection: InjectionMode = InjectionMode.LIEF
    signer_timeout: Optional[float] = None

    def __post_init__(self):
        self.ipa_path = Path(self.ipa_path)
        self.private_key_path = Path(self.private_key_path)
        if self.output_path is None:
            self.output_path = self.ipa_path.with_name(
                f"{self.ipa_path.stem}-signed.ipa"
            )
        self.output_path = Path(self.output_path)
        if self.certificate_path:
            self.certificate_path = Path(self.certificate_path)
        if self.default_provisioning_profile:
            self.default_provisioning_profile = Path(self.default_provisioning_profile)
        self.certificate_paths = {k: Path(v) for k, v in self.certificate_paths.items()}
        self.provisioning_profile_paths = {
            k: Path(v) for k, v in self.provisioning_profile_paths.items()
        }
        if isinstance(self.injection, str):
            try:
                self.injection = InjectionMode(self.injection)
            except ValueError:
                raise PreflightConfigError(
                    f"Unknown injection mode {self.injection!r}, expected one of: "
                    + ", ".join(m.value for m in InjectionMode)
                )

    def validate(self) -> "SigningConfig":
        """Raise PreflightConfigError listing every problem found."""
        problems: List[str] = []

        if not self.ipa_path.is_file():
            problems.append(f"Could not find IPA at path {self.ipa_path}")
        if not self.private_key_path.is_file():
            problems.append(
                f"Could not find private key at path {self.private_key_path}"
            )
        if not self.password or not self.password.strip():
            problems.append("Password must be provided and cannot be empty")
        if self.certificate_path and not self.certificate_path.is_file():
            problems.append(
                f"Could not find certificate at path {self.certificate_path}"
            )
        default_profile = self.default_provisioning_profile
        if default_profile and not default_profile.is_file():
            problems.append(
                f"Could not find default provisioning profile at path {default_profile}"
            )
        for bundle_id, path in self.certificate_paths.items():
            if not path.is_file():
                problems.append(
                    f"Could not find certificate at path {path} for bundle {bundle_id}"
                )
        for bundle_id, path in self.provisioning_profile_paths.items():
            if not path.is_file():
                problems.append(
                    f"Could not find mobile provisioning profile at path {path} "
                    f"for bundle {bundle_id}"
                )
        if not (self.provisioning_profile_paths or default_profile):
            problems.append("No provisioning profile configured")
        if self.output_path.resolve() == self.ipa_path.resolve():
            problems.append("Output path must differ from the input IPA")

        if problems:
            raise PreflightConfigError("\n".join(problems))
        return self

    @property
    def credential(self) -> SigningCredential:
        return SigningCredential(
            private_key_path=self.private_key_path,
            password=self.password,
            certificate_path=self.certificate_path,
        )

    @property
    def profile_selector(self) -> ProfileSelector:
        return ProfileSelector(
            self.provisioning_profile_paths, self.default_provisioning_profile
        )

    def certificate_for(self, identifier: str) -> Optional[Path]:
        return self.certificate_paths.get(identifier, self.certificate_path)
