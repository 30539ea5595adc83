"""SHA-256 checksum sidecars in sha256sum format"""

import hashlib
import logging
from enum import Enum
from pathlib import Path

CHECKSUM_SUFFIX = ".sha256"

logger = logging.getLogger("Checksum")


class ChecksumStatus(Enum):
    MATCH = "match"
    MISMATCH = "mismatch"
    NO_CHECKSUM = "no_checksum"


def sidecar_path(file_path: Path) -> Path:
    return file_path.with_name(file_path.name + CHECKSUM_SUFFIX)


def calculate_file_checksum(file_path: Path, algorithm: str = "sha256") -> str:
    """Calculate checksum of a file

    Args:
        file_path: Path to file
        algorithm: Hash algorithm (default: sha256)

    Returns:
        Hexadecimal checksum string
    """
    hash_obj = hashlib.new(algorithm)
    with open(file_path, "rb") as f:
        # Read in chunks to handle large files efficiently
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            hash_obj.update(chunk)
    return hash_obj.hexdigest()


def compute(file_path: Path) -> str:
    """Hash an artifact and write ``{artifact}.sha256`` next to it"""
    digest = calculate_file_checksum(file_path)
    sidecar = sidecar_path(file_path)
    # Two spaces: the layout `sha256sum -c` expects
    sidecar.write_text(f"{digest}  {file_path.name}\n")
    logger.debug(f"Checksum written: {sidecar.name} ({digest[:8]}...)")
    return digest


def read_recorded(file_path: Path) -> str | None:
    sidecar = sidecar_path(file_path)
    if not sidecar.exists():
        return None
    content = sidecar.read_text().split()
    return content[0].lower() if content else None


def verify(file_path: Path) -> ChecksumStatus:
    """Compare an artifact against its recorded checksum"""
    recorded = read_recorded(file_path)
    if recorded is None:
        return ChecksumStatus.NO_CHECKSUM
    if calculate_file_checksum(file_path) == recorded:
        return ChecksumStatus.MATCH
    return ChecksumStatus.MISMATCH
