"""Failure workspaces: captured environments of failed targets."""

from wellspring.workspace.capture import WorkspaceCapturer, WorkspaceSnapshot

__all__ = ["WorkspaceCapturer", "WorkspaceSnapshot"]
