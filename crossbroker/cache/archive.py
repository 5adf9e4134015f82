"""
tar.gz payloads for cached directory trees
"""
import io
import logging
import tarfile
import zlib
from pathlib import Path, PurePosixPath
from typing import List
from ..errors import CacheCorruptError

logger = logging.getLogger(__name__)


def pack_paths(root: Path, paths: List[str]) -> bytes:
    """Archive the given paths (relative to root); missing paths are skipped"""
    root = Path(root)
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for relative in paths:
            source = root / relative
            if not source.exists():
                logger.debug(f"Cache path {relative} does not exist, skipping")
                continue
            tar.add(str(source), arcname=PurePosixPath(relative).as_posix())
    return buffer.getvalue()


def _safe_destination(root: Path, name: str) -> Path:
    member_path = PurePosixPath(name)
    if member_path.is_absolute() or '..' in member_path.parts:
        raise CacheCorruptError(f"Archive member {name} escapes the restore root")
    destination = (root / Path(*member_path.parts)).resolve()
    if destination != root and root not in destination.parents:
        raise CacheCorruptError(f"Archive member {name} escapes the restore root")
    return destination


def unpack_overlay(payload: bytes, root: Path) -> List[str]:
    """
    Extract payload over root without deleting anything already there.

    Only regular files and directories are restored. Returns the names of the
    extracted files.
    """
    root = Path(root).resolve()
    root.mkdir(parents=True, exist_ok=True)
    extracted = []
    try:
        with tarfile.open(fileobj=io.BytesIO(payload), mode="r:gz") as tar:
            # Validate every member before writing anything
            planned = [(member, _safe_destination(root, member.name)) for member in tar.getmembers()]
            for member, destination in planned:
                if member.isdir():
                    destination.mkdir(parents=True, exist_ok=True)
                elif member.isfile():
                    destination.parent.mkdir(parents=True, exist_ok=True)
                    source = tar.extractfile(member)
                    destination.write_bytes(source.read())
                    extracted.append(member.name)
                else:
                    logger.debug(f"Skipping non-regular archive member {member.name}")
    except (tarfile.TarError, EOFError, zlib.error, OSError) as e:
        raise CacheCorruptError(f"Cache payload could not be extracted: {e}")
    return extracted
