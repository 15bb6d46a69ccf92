from rich.text import Text

__version__ = "0.1.0"

APP_DESCRIPTION = "Re-sign iOS apps with injected instrumentation"


def get_banner_text() -> Text:
    """Return the banner shown above the help output."""
    banner = Text()
    banner.append("instru", style="bold cyan")
    banner.append("sign", style="bold magenta")
    return banner
