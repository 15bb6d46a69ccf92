import argparse
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from instrusign.src.core.errors import PreflightConfigError
from instrusign.src.core.signing_config import InjectionMode, SigningConfig
from instrusign.src.utils.config_loader import get_signing_section, load_config


def _bundle_mapping(value: str):
    """Parse BUNDLE_ID=PATH."""
    bundle_id, sep, path = value.partition("=")
    if not sep or not bundle_id or not path:
        raise argparse.ArgumentTypeError(f"Expected BUNDLE_ID=PATH, got {value!r}")
    return bundle_id.strip(), Path(path.strip())


def add_signing_arguments(parser):
    """Add all signing-related arguments to an existing parser."""
    # Required argument
    parser.add_argument("ipa_path", type=Path, help="Path to the IPA file to sign")

    parser.add_argument(
        "--output",
        "-o",
        type=Path,
        dest="output_path",
        help="Destination path for the resigned IPA [default: <name>-signed.ipa]",
    )

    parser.add_argument(
        "--private-key",
        "-k",
        type=Path,
        dest="private_key_path",
        help="Path to the private key or P12 file [env: INSTRUSIGN_PRIVATE_KEY]",
    )

    parser.add_argument(
        "--password",
        "-p",
        help="Password for the private key or P12 [env: INSTRUSIGN_PASSWORD]",
    )

    parser.add_argument(
        "--certificate",
        "-c",
        type=Path,
        dest="certificate_path",
        help="Signing certificate when it is separate from the private key",
    )

    parser.add_argument(
        "--certificate-for",
        type=_bundle_mapping,
        action="append",
        default=[],
        metavar="BUNDLE_ID=PATH",
        help="Certificate to use for one bundle identifier (repeatable)",
    )

    parser.add_argument(
        "--profile",
        "-m",
        type=_bundle_mapping,
        action="append",
        default=[],
        metavar="BUNDLE_ID=PATH",
        help="Provisioning profile for one bundle identifier (repeatable)",
    )

    parser.add_argument(
        "--default-profile",
        type=Path,
        dest="default_provisioning_profile",
        help="Provisioning profile for bundles without an explicit --profile",
    )

    parser.add_argument(
        "--version-tag",
        dest="version",
        help="qawolf-ios-resign release version to use [default: pinned release]",
    )

    parser.add_argument(
        "--injection",
        choices=[m.value for m in InjectionMode],
        help="Inject with LIEF before signing, or let the signer inject [default: lief]",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Verbose signer output and signing asset diagnostics [default: disabled]",
    )


def add_inject_arguments(parser):
    """Add arguments for the unsigned injection command."""
    parser.add_argument("ipa_path", type=Path, help="Path to the input IPA")
    parser.add_argument(
        "--output",
        "-o",
        type=Path,
        dest="output_path",
        required=True,
        help="Path where the patched IPA should be written",
    )
    parser.add_argument(
        "--library",
        type=Path,
        dest="library_path",
        help="Instrumentation dylib to inject [default: downloaded release asset]",
    )
    parser.add_argument(
        "--version-tag",
        dest="version",
        help="qawolf-ios-resign release version to fetch the dylib from",
    )


def _first(*values):
    return next((v for v in values if v not in (None, "", [], {})), None)


def create_signing_config(
    args, config: Optional[Dict[str, Any]] = None, env=None
) -> SigningConfig:
    """Merge config file, environment and CLI flags into a SigningConfig.

    CLI flags win over environment variables, which win over config.toml.
    """
    env = os.environ if env is None else env
    try:
        signing = get_signing_section(load_config() if config is None else config)
    except ValueError as e:
        raise PreflightConfigError(str(e))

    profiles: Dict[str, Path] = {k: Path(v) for k, v in signing["profiles"].items()}
    profiles.update(dict(args.profile))
    certificates: Dict[str, Path] = {
        k: Path(v) for k, v in signing["certificates"].items()
    }
    certificates.update(dict(args.certificate_for))

    private_key = _first(
        args.private_key_path,
        env.get("INSTRUSIGN_PRIVATE_KEY"),
        signing.get("private_key"),
    )
    if not private_key:
        raise PreflightConfigError(
            "No private key given. Use --private-key, INSTRUSIGN_PRIVATE_KEY or "
            "private_key under [signing] in config.toml"
        )

    kwargs = dict(
        ipa_path=args.ipa_path,
        output_path=args.output_path,
        private_key_path=Path(private_key).expanduser(),
        password=_first(
            args.password, env.get("INSTRUSIGN_PASSWORD"), signing.get("password")
        )
        or "",
        certificate_path=_first(
            args.certificate_path,
            env.get("INSTRUSIGN_CERTIFICATE"),
            signing.get("certificate"),
        ),
        certificate_paths=certificates,
        provisioning_profile_paths=profiles,
        default_provisioning_profile=_first(
            args.default_provisioning_profile,
            env.get("INSTRUSIGN_DEFAULT_PROFILE"),
            signing.get("default_profile"),
        ),
        debug=bool(args.debug or signing.get("debug", False)),
        signer_timeout=signing.get("signer_timeout"),
    )

    version = _first(
        args.version, env.get("INSTRUSIGN_VERSION"), signing.get("version")
    )
    if version:
        kwargs["version"] = version
    injection = _first(
        args.injection, env.get("INSTRUSIGN_INJECTION"), signing.get("injection")
    )
    if injection:
        kwargs["injection"] = injection

    return SigningConfig(**kwargs)


def format_mapping(mapping: Dict[str, Path]) -> List[str]:
    return [f"{bundle_id} -> {path}" for bundle_id, path in sorted(mapping.items())]
