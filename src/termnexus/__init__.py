"""Agent and shell sessions on pseudo-terminals with worktree isolation."""
