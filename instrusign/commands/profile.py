from rich.panel import Panel

from instrusign.logger import get_console
from instrusign.src.core.errors import ResignError
from instrusign.src.ipa.provisioning_profile import describe_profile, load_profile


def run_profile_command(args) -> int:
    """Print a summary of one or more provisioning profiles."""
    console = get_console()
    status = 0

    for path in args.profile_paths:
        try:
            profile = load_profile(path)
        except ResignError as e:
            console.print(f"[red]Error:[/] {path}: {e}")
            status = 1
            continue
        console.print(
            Panel.fit(
                "\n".join(describe_profile(profile)),
                title=profile.name or path.name,
                border_style="green",
            )
        )

    return status
