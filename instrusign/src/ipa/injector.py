import shutil
from pathlib import Path
from typing import Optional

from lief import MachO

from instrusign.logger import get_console
from instrusign.src.core.errors import BinaryFormatError, PreflightConfigError

FRAMEWORKS_DIR = "Frameworks"


def containing_app(path: Path) -> Optional[Path]:
    """Outermost .app directory that contains path, if any."""
    parts = Path(path).parts
    app_index = next((i for i, part in enumerate(parts) if part.endswith(".app")), -1)
    if app_index == -1:
        return None
    return Path(*parts[: app_index + 1])


def loader_relative_reference(binary_path: Path, dylib_name: str) -> str:
    """Build an @loader_path reference from binary_path to <app>/Frameworks/dylib_name.

    @rpath isn't always set up and @executable_path resolves to the host app's
    executable when loaded from an extension, so @loader_path it is.
    """
    binary_path = Path(binary_path)
    app_dir = containing_app(binary_path)
    if app_dir is None:
        raise BinaryFormatError(f"{binary_path} is not inside an .app bundle")

    frameworks_dir = app_dir / FRAMEWORKS_DIR
    steps_back = len(binary_path.parent.parts) - len(frameworks_dir.parent.parts)
    relative_path = "../" * steps_back + FRAMEWORKS_DIR
    return f"@loader_path/{relative_path}/{dylib_name}"


class DylibInjector:
    """Adds an LC_LOAD_DYLIB for the instrumentation library to executables"""

    def __init__(self, library_path: Path):
        self.library_path = Path(library_path)
        self.console = get_console()

        if not self.library_path.is_file():
            raise PreflightConfigError(
                f"Instrumentation library not found: {self.library_path}"
            )

    def install_library(self, binary_path: Path) -> Path:
        """Copy the library into the Frameworks dir of the app holding binary_path."""
        app_dir = containing_app(binary_path)
        if app_dir is None:
            raise BinaryFormatError(f"{binary_path} is not inside an .app bundle")

        frameworks_dir = app_dir / FRAMEWORKS_DIR
        frameworks_dir.mkdir(exist_ok=True)
        target = frameworks_dir / self.library_path.name
        if not target.exists():
            shutil.copy2(self.library_path, target)
            self.console.log(f"[green]Copied {self.library_path.name} to Frameworks[/]")
        return target

    def inject(self, binary_path: Path, reference: Optional[str] = None) -> str:
        """Inject the library into binary_path and return the load path used.

        Every slice of a fat binary gets the same load command. Calling this
        twice on the same binary adds two load commands.
        """
        binary_path = Path(binary_path)
        dylib_name = self.library_path.name
        reference = reference or loader_relative_reference(binary_path, dylib_name)

        self.console.log(f"[blue]Injecting {dylib_name} into[/] {binary_path}")

        if not binary_path.is_file():
            raise BinaryFormatError(f"Executable not found: {binary_path}")

        try:
            parsed = MachO.parse(str(binary_path))
        except (RuntimeError, ValueError, TypeError) as e:
            raise BinaryFormatError(f"Failed to parse {binary_path}: {e}") from e
        if parsed is None:
            raise BinaryFormatError(f"{binary_path} is not a Mach-O executable")

        if isinstance(parsed, MachO.FatBinary):
            self.console.log("[blue]Found Fat Binary - processing all architectures")
            binaries = [parsed.at(i) for i in range(parsed.size)]
        else:
            binaries = [parsed]

        for binary in binaries:
            if binary.has_encryption_info and binary.encryption_info.crypt_id != 0:
                self.console.log("[red]Error: Binary is encrypted![/]")
                raise BinaryFormatError(
                    f"Cannot modify encrypted binary {binary_path}, decrypt it first"
                )

            try:
                binary.add_library(reference)
            except (RuntimeError, ValueError) as e:
                raise BinaryFormatError(
                    f"Could not add load command to {binary_path}: {e}"
                ) from e

        try:
            parsed.write(str(binary_path))
        except (RuntimeError, OSError) as e:
            raise BinaryFormatError(
                f"Failed to write patched {binary_path}: {e}"
            ) from e

        self.console.log(f"[green]Injected {dylib_name} with path {reference}[/]")
        return reference

    def inject_into_bundle(self, executable: Path) -> str:
        """Patch a bundle's main executable and ship the library alongside it."""
        reference = self.inject(executable)
        self.install_library(executable)
        return reference
