import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from asn1crypto import pem, x509
from cryptography.hazmat.primitives.serialization import Encoding, pkcs12

from instrusign.logger import get_console
from instrusign.src.core.asset_provisioner import SigningAssets, ensure_assets
from instrusign.src.core.errors import (
    BinaryFormatError,
    PreflightConfigError,
    ProfileFormatError,
)
from instrusign.src.core.signer import SigningCredential, ZSigner
from instrusign.src.core.signing_config import InjectionMode, SigningConfig
from instrusign.src.ipa.archive import repack_ipa, unpack_ipa
from instrusign.src.ipa.bundle_discovery import (
    ComponentBundle,
    BundleKind,
    find_bundles,
    main_application,
    partition_bundles,
)
from instrusign.src.ipa.entitlements import EntitlementsResolver
from instrusign.src.ipa.injector import DylibInjector
from instrusign.src.ipa.provisioning_profile import (
    ProvisioningProfile,
    describe_profile,
    load_profile,
)


P12_SUFFIXES = (".p12", ".pfx")


@dataclass
class SignedComponent:
    identifier: str
    kind: BundleKind
    profile_path: Path
    certificate_path: Optional[Path] = None
    injected_reference: Optional[str] = None


@dataclass
class SignResult:
    """What a run produced; hand this to whatever needs the output next"""

    output_path: Path
    components: List[SignedComponent] = field(default_factory=list)

    @property
    def signing_order(self) -> List[str]:
        return [c.identifier for c in self.components]


class SignOrchestrator:
    def __init__(
        self,
        credential: SigningCredential,
        assets: SigningAssets,
        profile_selector: Callable[[str], Optional[Path]],
        certificate_selector: Optional[Callable[[str], Optional[Path]]] = None,
        injection: InjectionMode = InjectionMode.LIEF,
        debug: bool = False,
        signer: Optional[ZSigner] = None,
    ):
        """Set up a run with resolved assets and per-bundle profile selection"""
        self.console = get_console()
        self.credential = credential
        self.assets = assets
        self.profile_selector = profile_selector
        self.certificate_selector = certificate_selector or (
            lambda _: credential.certificate_path
        )
        self.injection = injection
        self.debug = debug
        self.signer = signer or ZSigner(assets.signer_binary_path, debug=debug)

    @classmethod
    def from_config(cls, config: SigningConfig, assets: Optional[SigningAssets] = None):
        """Build an orchestrator from a validated config, fetching assets if needed"""
        config.validate()
        assets = assets or ensure_assets(config.version)
        return cls(
            credential=config.credential,
            assets=assets,
            profile_selector=config.profile_selector,
            certificate_selector=config.certificate_for,
            injection=config.injection,
            debug=config.debug,
            signer=ZSigner(
                assets.signer_binary_path,
                debug=config.debug,
                timeout=config.signer_timeout,
            ),
        )

    def _debug_print_p12(self, key_path: Path) -> None:
        """Report the certificates bundled in a P12, never the key itself"""
        try:
            password = self.credential.password
            _, leaf, extra = pkcs12.load_key_and_certificates(
                Path(key_path).read_bytes(), password.encode() if password else None
            )
        except (OSError, ValueError) as e:
            self.console.print(f"[yellow]Failed to read P12 certificates: {e}")
            return

        certs = [
            x509.Certificate.load(c.public_bytes(Encoding.DER))
            for c in ([leaf] if leaf else []) + list(extra)
        ]
        self.console.print(f"[cyan]P12 certificate count:[/] {len(certs)}")
        for cert in certs:
            self.console.print(f"  subject={cert.subject.human_friendly}")
            self.console.print(f"  issuer={cert.issuer.human_friendly}")

    def _debug_print_credentials(self) -> None:
        """Print information about provided signing materials"""
        key_path = self.credential.private_key_path
        self.console.print(f"[cyan]Private key path:[/] {key_path}")
        if Path(key_path).suffix.lower() in P12_SUFFIXES:
            self._debug_print_p12(key_path)

        cert_path = self.credential.certificate_path
        if not cert_path:
            return
        try:
            data = Path(cert_path).read_bytes()
            if pem.detect(data):
                _, _, data = pem.unarmor(data)
            cert = x509.Certificate.load(data)
            self.console.print(
                f"[cyan]Certificate subject:[/] {cert.subject.human_friendly}"
            )
            self.console.print(
                f"[cyan]Certificate issuer:[/] {cert.issuer.human_friendly}"
            )
            self.console.print(f"[cyan]Certificate serial:[/] {cert.serial_number}")
        except (OSError, ValueError) as e:
            self.console.print(f"[yellow]Failed to inspect certificate: {e}")

    def _plan_components(
        self, bundles: List[ComponentBundle]
    ) -> List[Tuple[ComponentBundle, ProvisioningProfile]]:
        """Resolve every bundle's profile before anything gets modified"""
        missing = [
            b.identifier for b in bundles if not self.profile_selector(b.identifier)
        ]
        if missing:
            raise PreflightConfigError(
                "No provisioning profile path provided for bundle(s): "
                + ", ".join(missing)
            )

        loaded: Dict[Path, ProvisioningProfile] = {}
        plan = []
        for bundle in bundles:
            profile_path = Path(self.profile_selector(bundle.identifier))
            if profile_path not in loaded:
                try:
                    loaded[profile_path] = load_profile(profile_path)
                except ProfileFormatError as e:
                    raise ProfileFormatError(f"{bundle.identifier}: {e}") from e

            profile = loaded[profile_path]
            if self.debug:
                self.console.print(
                    f"\n[bold]Provisioning profile for {bundle.identifier}[/]"
                )
                for line in describe_profile(profile):
                    self.console.print(f"  {line}")
            plan.append((bundle, profile))
        return plan

    def _sign_component(
        self,
        bundle: ComponentBundle,
        profile: ProvisioningProfile,
        resolver: EntitlementsResolver,
        injector: Optional[DylibInjector],
    ) -> SignedComponent:
        """Resolve entitlements, inject, then sign one bundle"""
        kind = "extension" if bundle.is_extension else "app"
        self.console.print(
            f"\n[blue]Signing {kind}:[/] {bundle.path.name} ({bundle.identifier})"
        )

        entitlements_path = resolver.resolve_to_file(bundle, profile)
        if self.debug:
            self.console.print(f"[cyan]Entitlements:[/] {entitlements_path}")

        reference = None
        library_path = None
        if injector:
            if not bundle.executable or not bundle.executable.is_file():
                raise BinaryFormatError(
                    f"Main executable for {bundle.identifier} not found in {bundle.path}"
                )
            reference = injector.inject_into_bundle(bundle.executable)
        else:
            library_path = self.assets.instrumentation_library_path

        certificate_path = self.certificate_selector(bundle.identifier)
        self.signer.sign(
            bundle.path,
            bundle.identifier,
            self.credential,
            profile_path=profile.path,
            entitlements_path=entitlements_path,
            certificate_path=certificate_path,
            library_path=library_path,
        )

        entitlements_path.unlink(missing_ok=True)
        self.console.print(f"[green]Signed {bundle.identifier}[/]")

        return SignedComponent(
            identifier=bundle.identifier,
            kind=bundle.kind,
            profile_path=profile.path,
            certificate_path=certificate_path,
            injected_reference=reference,
        )

    def sign_ipa(self, ipa_path: Path, output_path: Path) -> SignResult:
        """Re-sign every bundle in ipa_path, extensions before apps, into output_path"""
        ipa_path = Path(ipa_path)
        output_path = Path(output_path)
        self.console.print(f"[blue]Signing IPA:[/] {ipa_path}")

        if not ipa_path.is_file():
            raise PreflightConfigError(f"Could not find IPA at path {ipa_path}")

        if self.debug:
            self.console.print(
                "[yellow]Resign debug is enabled. Printing signing assets info…[/]"
            )
            self._debug_print_credentials()

        result = SignResult(output_path=output_path)

        with tempfile.TemporaryDirectory(prefix="instrusign-") as temp_dir:
            temp_path = Path(temp_dir)
            work_dir = temp_path / "ipa"
            scratch_dir = temp_path / "scratch"
            work_dir.mkdir()
            scratch_dir.mkdir()

            payload_dir = unpack_ipa(ipa_path, work_dir)

            bundles = find_bundles(payload_dir)
            main_application(payload_dir, bundles)
            extensions, apps = partition_bundles(bundles)
            self.console.print(
                f"Found {len(apps)} apps and {len(extensions)} extensions to sign"
            )

            plan = self._plan_components(extensions + apps)

            resolver = EntitlementsResolver(scratch_dir)
            injector = None
            if self.injection == InjectionMode.LIEF:
                injector = DylibInjector(self.assets.instrumentation_library_path)

            for bundle, profile in plan:
                result.components.append(
                    self._sign_component(bundle, profile, resolver, injector)
                )

            repack_ipa(work_dir, output_path)

        self.console.print(
            f"[green]Successfully resigned IPA saved at[/] {output_path}"
        )
        return result


def inject_ipa(ipa_path: Path, output_path: Path, library_path: Path) -> Path:
    """Inject the instrumentation library into the app's main executable, unsigned.

    Produces an IPA that still has to go through a signing run before it can
    be installed.
    """
    console = get_console()
    ipa_path = Path(ipa_path)
    if not ipa_path.is_file():
        raise PreflightConfigError(f"Input IPA not found at '{ipa_path}'")

    injector = DylibInjector(library_path)

    with tempfile.TemporaryDirectory(prefix="instrusign-inject-") as temp_dir:
        work_dir = Path(temp_dir)
        payload_dir = unpack_ipa(ipa_path, work_dir)
        app = main_application(payload_dir, find_bundles(payload_dir))

        if not app.executable or not app.executable.is_file():
            raise BinaryFormatError(
                f"App binary for {app.identifier} not found in {app.path}"
            )

        injector.inject_into_bundle(app.executable)
        repack_ipa(work_dir, output_path)

    console.print(f"[green]Successfully created patched IPA at[/] {output_path}")
    return Path(output_path)
