import os
import hashlib
import logging
from pathlib import Path
from typing import Iterable, List, Optional

from .errors import FingerprintError

log = logging.getLogger(__name__)

# Fingerprint of "nothing to hash". Comparable like any digest, never equal to one.
NONE_FINGERPRINT = "none"
_CHUNK_SIZE = 1024 * 1024


def _digest_file(path: Path) -> Optional[str]:
    """
    Returns the SHA-256 hex digest of a file's bytes, or None if it does not exist.

    :raises FingerprintError: On any I/O error other than absence.
    """
    sha = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
                sha.update(chunk)
    except FileNotFoundError:
        return None
    except OSError as e:
        raise FingerprintError(f"Cannot read '{path}' for fingerprinting: {e}") from e
    return sha.hexdigest()


def fingerprint_file(path: Path) -> str:
    """
    Fingerprints a single file, such as the manifest.

    :param path: The file to hash.
    :return str: The hex digest, or NONE_FINGERPRINT if the file is absent.
    """
    return _digest_file(Path(path)) or NONE_FINGERPRINT


def _list_tree(root: Path) -> List[str]:
    """Lists regular files under root as sorted POSIX relative paths. Symlinks are skipped."""
    def _raise(error: OSError) -> None:
        raise FingerprintError(f"Cannot walk '{root}' for fingerprinting: {error}") from error

    relative_paths = []
    for dirpath, _dirnames, filenames in os.walk(root, onerror=_raise):
        for name in filenames:
            full = os.path.join(dirpath, name)
            if os.path.islink(full) or not os.path.isfile(full):
                continue
            relative_paths.append(Path(os.path.relpath(full, root)).as_posix())
    return sorted(relative_paths)


def fingerprint_tree(root: Path) -> str:
    """
    Fingerprints every regular file under a directory.

    Files are ordered by relative path before hashing, so the result does not
    depend on the order the filesystem enumerates them in. Renaming a file
    changes the fingerprint as well as editing it.

    :param root: The directory to hash.
    :return str: The hex digest, or NONE_FINGERPRINT if the tree is absent or empty.
    """
    root = Path(root)
    if not root.is_dir():
        return NONE_FINGERPRINT

    sha = hashlib.sha256()
    count = 0
    for relative in _list_tree(root):
        digest = _digest_file(root / relative)
        if digest is None:  # Deleted between listing and reading
            continue
        sha.update(f"{digest}  {relative}\n".encode("utf-8"))
        count += 1

    if not count:
        return NONE_FINGERPRINT
    log.debug(f"Fingerprinted {count} files under '{root}'.")
    return sha.hexdigest()


def fingerprint(aux_files: Iterable[Path], tree: Optional[Path] = None) -> str:
    """
    Computes a composite fingerprint over an optional source tree and a list of files.

    The tree digest comes first, followed by the digest of each auxiliary file
    that exists, in the given order. Every part is labelled with its name, so
    renaming a file with unchanged bytes still changes the result.

    :param aux_files: Ordered files to include; absent ones are skipped.
    :param tree: An optional directory hashed with fingerprint_tree.
    :return str: The hex digest, or NONE_FINGERPRINT when nothing contributed.
    """
    parts = []
    if tree is not None:
        tree_digest = fingerprint_tree(tree)
        if tree_digest != NONE_FINGERPRINT:
            parts.append(f"{tree_digest}  {tree.name}/\n")

    for path in aux_files:
        path = Path(path)
        digest = _digest_file(path)
        if digest is not None:
            parts.append(f"{digest}  {path.name}\n")

    if not parts:
        return NONE_FINGERPRINT
    return hashlib.sha256("".join(parts).encode("utf-8")).hexdigest()
