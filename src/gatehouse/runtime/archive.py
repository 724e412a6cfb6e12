from __future__ import annotations

import logging
import tarfile
import zipfile
from pathlib import Path

from gatehouse.runtime.base import ArchiveError

logger = logging.getLogger(__name__)

TAR_SUFFIXES = (".tar.gz", ".tgz")
ZIP_SUFFIXES = (".zip",)


def archive_kind(name: str) -> str:
    lowered = name.lower()
    if lowered.endswith(TAR_SUFFIXES):
        return "tar"
    if lowered.endswith(ZIP_SUFFIXES):
        return "zip"
    raise ArchiveError(f"Unsupported archive type: {name}")


def extract_archive(
    archive: Path,
    destination: Path,
    *,
    archive_name: str | None = None,
) -> None:
    kind = archive_kind(archive_name or archive.name)
    destination.mkdir(parents=True, exist_ok=True)
    logger.debug("Extracting %s archive %s into %s", kind, archive, destination)
    try:
        if kind == "tar":
            _extract_tar(archive, destination)
        else:
            _extract_zip(archive, destination)
    except ArchiveError:
        raise
    except (tarfile.TarError, zipfile.BadZipFile, EOFError) as exc:
        raise ArchiveError(f"Corrupt archive {archive}: {exc}", path=archive) from exc
    except OSError as exc:
        raise ArchiveError(f"Failed to extract {archive}: {exc}", path=archive) from exc


def _extract_tar(archive: Path, destination: Path) -> None:
    with tarfile.open(archive, "r:gz") as tar:
        tar.extractall(destination, filter="data")


def _extract_zip(archive: Path, destination: Path) -> None:
    with zipfile.ZipFile(archive) as bundle:
        for info in bundle.infolist():
            extracted = Path(bundle.extract(info, destination))
            mode = (info.external_attr >> 16) & 0o777
            if mode and not info.is_dir():
                extracted.chmod(mode)


def make_executable(directory: Path) -> int:
    """Mark every regular file in ``directory`` as 0o755; returns how many were touched."""
    if not directory.is_dir():
        raise ArchiveError(f"Binary directory missing: {directory}", path=directory)
    count = 0
    for entry in directory.iterdir():
        # npx/npm/corepack are symlinks into lib/; chmod follows them
        if not entry.is_file():
            continue
        try:
            entry.chmod(0o755)
        except OSError as exc:
            logger.warning("Could not mark %s executable: %s", entry, exc)
            continue
        count += 1
    return count
