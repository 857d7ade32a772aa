# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class StagingError(Exception):
    """
    Structured staging failure. Every fatal condition in a staging job is
    raised as one of these so the CLI can render it without a traceback.

    kind is one of:
      unsupported_app, compile_failed, release_invalid, fetch_failed,
      install_failed, secure_failed, clone_failed, extension_failed,
      invalid_state
    """
    kind: str
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)
