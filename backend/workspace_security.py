"""Path confinement for workspace tools.

Every file the edit agent touches must resolve inside the conversation's
workspace folder. Paths are given relative to that folder by the model.
"""

from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)


class WorkspacePathError(ValueError):
    """Raised when a tool path escapes or is invalid for the workspace."""


def validate_path(workspace_root: str, relative_path: str) -> tuple[bool, str, str]:
    """Validate a file path to prevent directory traversal attacks.

    Args:
        workspace_root: Absolute or relative path of the workspace folder.
        relative_path: The path, relative to the workspace, that the agent
            wants to access. "." designates the workspace itself.

    Returns:
        A tuple of (is_valid, error_message, resolved_absolute_path).
        If valid, error_message is empty and resolved_absolute_path contains
        the full validated path.
        If invalid, error_message explains the issue and resolved_absolute_path
        is empty.

    Examples:
        >>> validate_path("/srv/ws/ws_1", "src/index.html")
        (True, "", "/srv/ws/ws_1/src/index.html")
        >>> validate_path("/srv/ws/ws_1", "../ws_2/index.html")
        (False, "Path traversal blocked: contains '..'", "")
        >>> validate_path("/srv/ws/ws_1", "/etc/passwd")
        (False, "Absolute paths not allowed", "")
    """
    if not relative_path:
        return False, "Path cannot be empty", ""

    if relative_path.startswith("/") or relative_path.startswith("\\"):
        return False, "Absolute paths not allowed", ""

    # Names like "file..bak" are fine; only ".." as a component is rejected.
    components = [
        part
        for part in relative_path.replace("\\", "/").split("/")
        if part not in ("", ".")
    ]
    if ".." in components:
        return False, "Path traversal blocked: contains '..'", ""

    try:
        root = Path(workspace_root).resolve()
        resolved = (root / relative_path).resolve()
    except (ValueError, OSError) as e:
        return False, f"Invalid path: {e}", ""

    # Symlinks inside the workspace must not lead out of it either.
    try:
        resolved.relative_to(root)
    except ValueError:
        return False, f"Path traversal blocked: {relative_path}", ""

    return True, "", str(resolved)


def resolve_in_workspace(workspace_root: str, relative_path: str) -> Path:
    """Resolve a workspace-relative path or raise.

    Raises:
        WorkspacePathError: If the path is empty, absolute or escapes the
            workspace.
    """
    is_valid, error, resolved = validate_path(workspace_root, relative_path)
    if not is_valid:
        logger.warning(
            "workspace_path_rejected",
            workspace_root=workspace_root,
            path=relative_path,
            reason=error,
        )
        raise WorkspacePathError(error)
    return Path(resolved)
