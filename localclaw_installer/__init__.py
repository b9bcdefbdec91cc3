"""LocalClaw installer: sets up a local model runner and the OpenClaw gateway.

Core design goals:
- Idempotent steps that skip work already done
- Resumable runs backed by a state file
- Live progress from tool output
- Detached runs followed through a status file
- Centralized logging
"""

__all__ = []
