"""Session Orchestrator.

Lets many independent processes (one per human or agent session) work on
the same repository concurrently. Each session is an isolated git worktree
tracked in a shared, lock-guarded registry, and sessions can form short-lived
teams of cooperating agents or fan out staged analysis waves.
"""

__version__ = "0.1.0"
