import os
import stat
import time
import zipfile
from pathlib import Path
from typing import List

from instrusign.logger import get_console
from instrusign.src.core.errors import ArchiveIOError

PAYLOAD_DIR = "Payload"


def _entry_mode(info: zipfile.ZipInfo) -> int:
    """Unix permission bits stored in a zip entry, 0 when none were recorded."""
    return (info.external_attr >> 16) & 0o777


def _entry_mtime(info: zipfile.ZipInfo) -> float:
    """Entry timestamp as a local epoch time, zip stores no timezone."""
    return time.mktime(info.date_time + (0, 0, -1))


def unpack_ipa(ipa_path: Path, destination: Path) -> Path:
    """Extract every entry of the IPA under destination and return the Payload dir.

    Relative paths are kept exactly, parent directories are created as needed
    and permission bits are restored where the archive recorded them, along
    with each entry's modification time.
    """
    console = get_console()
    console.log(f"[blue]Unpacking[/] {ipa_path}")

    destination = Path(destination)
    root = destination.resolve()

    try:
        with zipfile.ZipFile(ipa_path) as zf:
            for info in zf.infolist():
                target = (destination / info.filename).resolve()
                if target != root and root not in target.parents:
                    raise ArchiveIOError(
                        f"Refusing to extract {info.filename!r} outside of {destination}"
                    )

                if info.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue

                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, open(target, "wb") as dst:
                    while chunk := src.read(1024 * 1024):
                        dst.write(chunk)

                mode = _entry_mode(info)
                if mode:
                    os.chmod(target, mode)
                mtime = _entry_mtime(info)
                os.utime(target, (mtime, mtime))
    except zipfile.BadZipFile as e:
        raise ArchiveIOError(f"Not a valid IPA archive: {ipa_path}: {e}") from e
    except ArchiveIOError:
        raise
    except OSError as e:
        raise ArchiveIOError(f"Failed to unpack {ipa_path}: {e}") from e

    return destination / PAYLOAD_DIR


def _regular_files(source_dir: Path) -> List[Path]:
    files = []
    for dirpath, dirnames, filenames in os.walk(source_dir):
        dirnames.sort()
        for name in sorted(filenames):
            path = Path(dirpath) / name
            if stat.S_ISREG(os.lstat(path).st_mode):
                files.append(path)
    return files


def repack_ipa(source_dir: Path, output_path: Path) -> Path:
    """Zip every regular file under source_dir into output_path.

    Entries are stored relative to source_dir and directories are not added as
    entries of their own. The archive is written next to output_path first and
    only renamed into place once complete.
    """
    console = get_console()
    console.log(f"[blue]Repacking[/] {source_dir} -> {output_path}")

    source_dir = Path(source_dir)
    output_path = Path(output_path)
    output_tmp = output_path.with_name(f"{output_path.name}.tmp")

    try:
        output_tmp.unlink(missing_ok=True)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(output_tmp, "w", zipfile.ZIP_DEFLATED) as zf:
            for path in _regular_files(source_dir):
                zf.write(path, path.relative_to(source_dir).as_posix())
        os.replace(output_tmp, output_path)
    except OSError as e:
        output_tmp.unlink(missing_ok=True)
        raise ArchiveIOError(f"Failed to write {output_path}: {e}") from e

    console.log(f"[green]Wrote IPA:[/] {output_path}")
    return output_path
