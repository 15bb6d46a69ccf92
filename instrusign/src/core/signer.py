import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from instrusign.logger import get_console
from instrusign.src.core.errors import AssetProvisioningError, ExternalToolError

MASK = "********"


@dataclass(frozen=True)
class SigningCredential:
    """Identity material shared by every component of a run"""

    private_key_path: Path
    password: str
    certificate_path: Optional[Path] = None


class ZSigner:
    """Runs the zsign binary on one bundle at a time"""

    def __init__(
        self, signer_path: Path, debug: bool = False, timeout: Optional[float] = None
    ):
        self.signer_path = Path(signer_path)
        self.debug = debug
        self.timeout = timeout
        self.console = get_console()

    def build_command(
        self,
        bundle_path: Path,
        bundle_id: str,
        credential: SigningCredential,
        profile_path: Path,
        entitlements_path: Path,
        certificate_path: Optional[Path] = None,
        library_path: Optional[Path] = None,
    ) -> List[str]:
        cmd = [str(self.signer_path)]
        if self.debug:
            cmd.append("-d")

        cmd.extend(["-k", str(credential.private_key_path)])
        cmd.extend(["-p", credential.password])
        cmd.extend(["-m", str(profile_path)])

        certificate_path = certificate_path or credential.certificate_path
        if certificate_path:
            cmd.extend(["-c", str(certificate_path)])

        cmd.extend(["-b", bundle_id])
        cmd.extend(["-e", str(entitlements_path)])

        # zsign injects the library itself when handed -l
        if library_path:
            cmd.extend(["-l", str(library_path)])

        cmd.append(str(bundle_path))
        return cmd

    @staticmethod
    def redact(cmd: List[str]) -> List[str]:
        """Copy of cmd with the password argument masked."""
        redacted = list(cmd)
        for i, arg in enumerate(redacted[:-1]):
            if arg == "-p":
                redacted[i + 1] = MASK
        return redacted

    def sign(
        self,
        bundle_path: Path,
        bundle_id: str,
        credential: SigningCredential,
        **kwargs,
    ) -> None:
        """Sign one bundle; any non-zero exit aborts with the tool's own output."""
        cmd = self.build_command(bundle_path, bundle_id, credential, **kwargs)
        shown = self.redact(cmd)

        self.console.log(f"[cyan]Running signer:[/] {' '.join(shown)}")

        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.timeout
            )
        except FileNotFoundError as e:
            raise AssetProvisioningError(
                f"Signer binary not found: {self.signer_path}"
            ) from e
        except PermissionError as e:
            raise AssetProvisioningError(
                f"Signer binary is not executable: {self.signer_path}"
            ) from e
        except subprocess.TimeoutExpired as e:
            raise ExternalToolError(
                shown, -1, f"timed out after {self.timeout}s", context=bundle_id
            ) from e

        if result.returncode != 0:
            output = (result.stdout or "") + (result.stderr or "")
            self.console.log(f"[red]Signing {bundle_id} failed:[/]\n{output}")
            raise ExternalToolError(shown, result.returncode, output, context=bundle_id)

        if result.stdout and self.debug:
            self.console.log(f"[green]Signer output:[/]\n{result.stdout}")
