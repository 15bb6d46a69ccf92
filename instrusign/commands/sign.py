import argparse
import sys

from rich.table import Table

from instrusign.arguments import (
    add_signing_arguments,
    create_signing_config,
    format_mapping,
)
from instrusign.logger import get_console
from instrusign.src.core.errors import ResignError
from instrusign.src.core.sign_orchestrator import SignOrchestrator, SignResult
from instrusign.src.core.signer import MASK
from instrusign.src.core.signing_config import SigningConfig


def print_configuration_summary(console, config: SigningConfig) -> None:
    """Print the configuration summary."""
    console.print("\n[bold blue]Signing Configuration:[/]")
    console.print(f"[cyan]Input IPA:[/] {config.ipa_path}")
    console.print(f"[cyan]Output IPA:[/] {config.output_path}")
    console.print(f"[cyan]Private key:[/] {config.private_key_path}")
    console.print(f"[cyan]Password:[/] {MASK}")
    if config.certificate_path:
        console.print(f"[cyan]Certificate:[/] {config.certificate_path}")
    if config.default_provisioning_profile:
        console.print(
            f"[cyan]Default profile:[/] {config.default_provisioning_profile}"
        )
    if config.provisioning_profile_paths:
        console.print("[cyan]Profiles:[/]")
        for line in format_mapping(config.provisioning_profile_paths):
            console.print(f"  • {line}")
    if config.certificate_paths:
        console.print("[cyan]Certificates:[/]")
        for line in format_mapping(config.certificate_paths):
            console.print(f"  • {line}")
    console.print(f"[cyan]Resign release:[/] {config.version}")
    console.print(f"[cyan]Injection:[/] {config.injection.value}")


def print_result(console, result: SignResult) -> None:
    table = Table(title="Signed components")
    table.add_column("#", justify="right")
    table.add_column("Bundle ID", style="cyan")
    table.add_column("Kind")
    table.add_column("Profile")
    for i, component in enumerate(result.components, 1):
        table.add_row(
            str(i),
            component.identifier,
            component.kind.name.lower(),
            component.profile_path.name,
        )
    console.print(table)


def main(parsed_args=None) -> int:
    """Re-sign an IPA.

    Args:
        parsed_args: Optional pre-parsed arguments (from CLI)
    """
    console = get_console()

    if parsed_args is None:
        parser = argparse.ArgumentParser(
            description="Re-sign an IPA with instrumentation.",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        add_signing_arguments(parser)
        args = parser.parse_args()
    else:
        args = parsed_args

    try:
        config = create_signing_config(args)
        print_configuration_summary(console, config)
        orchestrator = SignOrchestrator.from_config(config)
        result = orchestrator.sign_ipa(config.ipa_path, config.output_path)
    except ResignError as e:
        console.print(f"\n[red]Error during signing:[/] {e}")
        return 1

    print_result(console, result)
    return 0


def run_sign_command(args):
    """Entry point for the sign command from CLI"""
    return main(parsed_args=args)


# For direct script execution - route through the CLI
if __name__ == "__main__":
    from instrusign.cli import main as cli_main

    sys.exit(cli_main())
