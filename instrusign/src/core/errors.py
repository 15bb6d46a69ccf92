from typing import Optional, Sequence


class ResignError(Exception):
    """Base exception for everything that aborts a resign run."""


class PreflightConfigError(ResignError):
    """Missing or invalid configuration detected before (or instead of) signing."""


class ArchiveIOError(ResignError, OSError):
    """An archive could not be read or written."""


class FormatError(ResignError):
    """Base class for malformed inputs."""


class ManifestFormatError(FormatError):
    """An Info.plist that must be readable is not."""


class ProfileFormatError(FormatError):
    """A provisioning profile could not be decoded."""


class EntitlementsFormatError(FormatError):
    """Merged entitlements could not be serialized back into a valid plist."""


class BinaryFormatError(FormatError):
    """An executable is not a Mach-O image we can patch."""


class AssetProvisioningError(ResignError):
    """Signer binary or instrumentation library could not be provided."""


class ExternalToolError(ResignError):
    """An external tool exited with a non-zero status."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: int,
        output: Optional[str] = None,
        context: Optional[str] = None,
    ):
        self.command = list(command)
        self.returncode = returncode
        self.output = output or ""
        self.context = context

        message = f"{self.command[0]} failed with status {returncode}"
        if context:
            message += f" ({context})"
        if self.output:
            message += f"\n{self.output}"
        super().__init__(message)
