import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict

import pytest


ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

# Keep the failure log out of the working tree
os.environ.setdefault("FAILURE_LOG_DIR", tempfile.mkdtemp(prefix="orchestrator-failures-"))

from orchestrator_library.clock import Clock
from orchestrator_library.models import (
    GenerationKind,
    ProviderResult,
    TaskStatus,
    TaskStatusResult,
)
from orchestrator_library.providers.provider_interface import ProviderAdapter

# 2026-01-01T00:00:00Z
START_TIME = 1_767_225_600.0


class ManualClock(Clock):
    """Clock that only moves when a test says so."""

    def __init__(self, start: float = START_TIME):
        self.current = start

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


class StubProvider(ProviderAdapter):
    """
    Scripted provider. Each generate() call consumes the next behavior; the
    last one repeats. A behavior is a ProviderResult, an exception to raise,
    or an async callable taking the credential.
    """

    supported_kinds = frozenset(GenerationKind)

    def __init__(
        self,
        provider_id: str = "stub",
        behaviors=None,
        requires_credentials: bool = False,
        public_kinds=(),
        day_offset_hours: float = 0.0,
    ):
        self.provider_id = provider_id
        self.requires_credentials = requires_credentials
        self.public_kinds = frozenset(public_kinds)
        self.day_offset_hours = day_offset_hours
        self.behaviors = list(behaviors or [])
        self.calls = []
        self.status_results: Dict[str, Any] = {}
        self.status_calls = []

    async def generate(self, kind, params, credential, client) -> ProviderResult:
        self.calls.append((kind, credential))
        if not self.behaviors:
            return ProviderResult(url="https://example.test/out.png")
        behavior = self.behaviors.pop(0) if len(self.behaviors) > 1 else self.behaviors[0]
        if isinstance(behavior, BaseException):
            raise behavior
        if callable(behavior):
            return await behavior(credential)
        return behavior

    async def poll_status(self, task_id, credential, client) -> TaskStatusResult:
        self.status_calls.append((task_id, credential))
        result = self.status_results.get(task_id, TaskStatusResult(status=TaskStatus.PROCESSING))
        if isinstance(result, BaseException):
            raise result
        return result


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()

