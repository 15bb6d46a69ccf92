from instrusign.logger import get_console
from instrusign.src.core.asset_provisioner import ensure_assets
from instrusign.src.core.errors import ResignError
from instrusign.src.core.sign_orchestrator import inject_ipa
from instrusign.src.core.signing_config import RESIGN_VERSION


def run_inject_command(args) -> int:
    """Entry point for the inject command from CLI"""
    console = get_console()

    try:
        library_path = args.library_path
        if library_path is None:
            assets = ensure_assets(args.version or RESIGN_VERSION)
            library_path = assets.instrumentation_library_path
        console.print(f"[blue]Injecting[/] {library_path.name} into {args.ipa_path}")
        inject_ipa(args.ipa_path, args.output_path, library_path)
    except ResignError as e:
        console.print(f"\n[red]Error during injection:[/] {e}")
        return 1
    return 0
