import argparse
import sys
from pathlib import Path

from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.text import Text
from rich.theme import Theme
from rich_argparse import RichHelpFormatter

from instrusign.arguments import add_inject_arguments, add_signing_arguments
from instrusign.src.constants.cli_constants import (
    __version__,
    get_banner_text,
    APP_DESCRIPTION,
)


class InstruSignHelpFormatter(RichHelpFormatter):
    """Help formatter with the instrusign colour theme."""

    def __init__(self, prog):
        super().__init__(prog, max_help_position=30, width=100)
        self.console = Console(
            theme=Theme(
                {
                    "command": "bold cyan",
                    "argument": "green",
                    "option": "yellow",
                    "version": "blue",
                    "title": "bold magenta",
                }
            )
        )

    def start_section(self, heading):
        heading_text = Text(heading, style="title")
        super().start_section(str(heading_text))


def display_banner():
    console = Console()
    banner = get_banner_text()

    version_info = Text(f"v{__version__}", style="version")
    tagline = Text(APP_DESCRIPTION, style="italic")

    panel = Panel.fit(
        Text.assemble(banner, "\n", tagline, "\n", version_info),
        border_style="green",
        padding=(1, 2),
    )
    console.print(panel)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="instrusign",
        description=f"instrusign: {APP_DESCRIPTION}",
        formatter_class=InstruSignHelpFormatter,
        add_help=True,
    )

    parser.add_argument(
        "--version", action="version", version=f"instrusign {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command")

    sign_parser = subparsers.add_parser(
        "sign",
        help="Re-sign an IPA file",
        formatter_class=InstruSignHelpFormatter,
        description="Re-sign every app and extension in an IPA, injecting the "
        "instrumentation library into each executable.",
    )
    add_signing_arguments(sign_parser)

    inject_parser = subparsers.add_parser(
        "inject",
        help="Inject the instrumentation library without signing",
        formatter_class=InstruSignHelpFormatter,
        description="Add the instrumentation library to the app's main executable. "
        "The result must be signed before it can be installed.",
    )
    add_inject_arguments(inject_parser)

    profile_parser = subparsers.add_parser(
        "profile",
        help="Inspect provisioning profiles",
        formatter_class=InstruSignHelpFormatter,
        description="Decode .mobileprovision files and print what signing would use.",
    )
    profile_parser.add_argument(
        "profile_paths", type=Path, nargs="+", help="Provisioning profile(s) to inspect"
    )

    return parser


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if not argv or "-h" in argv or "--help" in argv:
        display_banner()

    load_dotenv()

    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command == "sign":
        from instrusign.commands.sign import run_sign_command

        return run_sign_command(args)
    elif args.command == "inject":
        from instrusign.commands.inject import run_inject_command

        return run_inject_command(args)
    elif args.command == "profile":
        from instrusign.commands.profile import run_profile_command

        return run_profile_command(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
