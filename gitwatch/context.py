"""
gitwatch Context

Cycle-scoped data shared between the trigger, the check and the actions.
Every key lands in the environment of the scripts, so keys carry the GW_
prefix from the start.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional

# Trigger keys
TRIGGER_NAME = "GW_TRIGGER_NAME"
HTTP_METHOD = "GW_HTTP_METHOD"
HTTP_URL = "GW_HTTP_URL"
SCHEDULE_DELAY = "GW_SCHEDULE_DELAY"

# Check keys
CHECK_NAME = "GW_CHECK_NAME"
GIT_BEFORE_COMMIT_SHA = "GW_GIT_BEFORE_COMMIT_SHA"
GIT_BEFORE_COMMIT_SHORT_SHA = "GW_GIT_BEFORE_COMMIT_SHORT_SHA"
GIT_COMMIT_SHA = "GW_GIT_COMMIT_SHA"
GIT_COMMIT_SHORT_SHA = "GW_GIT_COMMIT_SHORT_SHA"
GIT_BRANCH_NAME = "GW_GIT_BRANCH_NAME"
GIT_REF_NAME = "GW_GIT_REF_NAME"
GIT_REF_TYPE = "GW_GIT_REF_TYPE"
GIT_REMOTE_NAME = "GW_GIT_REMOTE_NAME"
GIT_REMOTE_URL = "GW_GIT_REMOTE_URL"
GIT_TAG_NAME = "GW_GIT_TAG_NAME"

# Action keys
ACTION_NAME = "GW_ACTION_NAME"
DIRECTORY = "GW_DIRECTORY"


class ContextError(KeyError):
    """Raised when a context key is overwritten within a cycle."""
    pass


class Context:
    """
    Ordered string-to-string mapping built up during one cycle.

    Keys are write-once: setting a key that already exists raises
    ContextError, even if the value is the same.
    """

    def __init__(self, initial: Optional[dict[str, str]] = None):
        self._values: dict[str, str] = {}
        for key, value in (initial or {}).items():
            self.set(key, value)

    def set(self, key: str, value: str) -> None:
        """Set a key, refusing to overwrite."""
        if key in self._values:
            raise ContextError(f"Context key {key} is already set")
        self._values[key] = str(value)

    def update(self, values: dict[str, str]) -> None:
        """Set several keys, in order."""
        for key, value in values.items():
            self.set(key, value)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self._values.get(key, default)

    def as_dict(self) -> dict[str, str]:
        """Return a copy of the entries in insertion order."""
        return dict(self._values)

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"Context({self._values!r})"


class TriggerOrigin(str, Enum):
    """Where a run request came from. The value is exposed as GW_TRIGGER_NAME."""
    SCHEDULE = "SCHEDULE"
    WEBHOOK = "HTTP"
    ONCE = "ONCE"
    STARTUP = "STARTUP"


@dataclass(frozen=True)
class RunRequest:
    """A request for one check-then-action cycle."""
    origin: TriggerOrigin
    timestamp: float = field(default_factory=time.time)
    # Per-request trigger data, e.g. the HTTP method and URL
    trigger_context: dict[str, str] = field(default_factory=dict)

    def build_context(self) -> Context:
        """Create the cycle context seeded with the trigger's entries."""
        context = Context()
        # STARTUP is how the once trigger syncs, scripts see it as ONCE
        name = TriggerOrigin.ONCE if self.origin == TriggerOrigin.STARTUP else self.origin
        context.set(TRIGGER_NAME, name.value)
        context.update(self.trigger_context)
        return context


class OutcomeKind(str, Enum):
    NO_CHANGE = "no_change"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class CycleOutcome:
    """Result of one cycle, used for logging and the once exit code."""
    kind: OutcomeKind
    stage: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def no_change(cls) -> CycleOutcome:
        return cls(OutcomeKind.NO_CHANGE)

    @classmethod
    def succeeded(cls) -> CycleOutcome:
        return cls(OutcomeKind.SUCCEEDED)

    @classmethod
    def failed(cls, stage: str, reason: str) -> CycleOutcome:
        return cls(OutcomeKind.FAILED, stage=stage, reason=reason)

    @property
    def is_failure(self) -> bool:
        return self.kind == OutcomeKind.FAILED

    @property
    def exit_code(self) -> int:
        """Process exit status for the once trigger."""
        return 1 if self.is_failure else 0

    def __str__(self) -> str:
        if self.is_failure:
            return f"failed during {self.stage}: {self.reason}"
        return self.kind.value.replace("_", " ")
