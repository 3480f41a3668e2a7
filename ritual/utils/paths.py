"""
Path utilities shared by local storage and archive extraction.

Every filesystem boundary resolves user- or archive-supplied names through
``confine()`` so that nothing can be read or written outside a base directory.
"""

import os
import posixpath


class PathConfinementError(ValueError):
    """Raised when a name resolves outside its base directory."""
    pass


def normalize_key(key: str) -> str:
    """
    Normalize a storage key to forward-slash form.

    Args:
        key: Key possibly containing backslashes

    Returns:
        Key with every backslash replaced by a forward slash
    """
    return key.replace('\\', '/')


def has_parent_reference(name: str) -> bool:
    """Return True if any component of ``name`` is '..'."""
    return '..' in normalize_key(name).split('/')


def is_within(base_dir: str, target_path: str) -> bool:
    """
    Check that target_path is base_dir or lies beneath it.

    Both paths are made absolute and cleaned first; symlinks are not resolved.
    """
    if not base_dir or not target_path:
        return False

    base = os.path.normpath(os.path.abspath(base_dir))
    target = os.path.normpath(os.path.abspath(target_path))

    try:
        return os.path.commonpath([base, target]) == base
    except ValueError:
        # Different drives on Windows
        return False


def confine(base_dir: str, name: str) -> str:
    """
    Resolve ``name`` against ``base_dir``, refusing anything that escapes it.

    Args:
        base_dir: Directory that must contain the result
        name: Relative name (forward or back slashes)

    Returns:
        Absolute, cleaned filesystem path beneath base_dir

    Raises:
        PathConfinementError: If name is absolute, contains '..' or resolves outside base_dir
    """
    key = normalize_key(name)

    if has_parent_reference(key):
        raise PathConfinementError(f"path traversal detected: {name}")
    if posixpath.isabs(key) or os.path.isabs(name):
        raise PathConfinementError(f"absolute path not allowed: {name}")

    target = os.path.normpath(os.path.join(os.path.abspath(base_dir), *key.split('/')))
    if not is_within(base_dir, target):
        raise PathConfinementError(f"path escapes {base_dir}: {name}")

    return target
