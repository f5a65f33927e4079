"""The two result documents agent-mux prints, and their JSON form."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, TextIO

from agent_mux.errors import ErrorCode
from agent_mux.types.activity import Activity


@dataclass(frozen=True, slots=True)
class SuccessOutput:
    """Engine finished, or was cancelled (``timed_out=True``)."""

    engine: str
    response: str
    timed_out: bool
    duration_ms: int
    activity: Activity
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "engine": self.engine,
            "response": self.response,
            "timed_out": self.timed_out,
            "duration_ms": self.duration_ms,
            "activity": self.activity.to_dict(),
            "metadata": self.metadata,
        }


@dataclass(frozen=True, slots=True)
class ErrorOutput:
    """Run failed before or during engine execution."""

    engine: str
    error: str
    code: ErrorCode
    duration_ms: int
    activity: Activity

    @property
    def success(self) -> bool:
        return False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "engine": self.engine,
            "error": self.error,
            "code": str(self.code),
            "duration_ms": self.duration_ms,
            "activity": self.activity.to_dict(),
        }


Output = SuccessOutput | ErrorOutput


def output_from_dict(data: dict[str, Any]) -> Output:
    """Rebuild an Output from its JSON object form."""
    activity = Activity.from_dict(data.get("activity", {}))
    if data.get("success"):
        return SuccessOutput(
            engine=data["engine"],
            response=data["response"],
            timed_out=bool(data["timed_out"]),
            duration_ms=data["duration_ms"],
            activity=activity,
            metadata=dict(data.get("metadata", {})),
        )
    return ErrorOutput(
        engine=data["engine"],
        error=data["error"],
        code=ErrorCode(data["code"]),
        duration_ms=data["duration_ms"],
        activity=activity,
    )


def output_to_json(output: Output) -> str:
    return json.dumps(output.to_dict(), indent=2, ensure_ascii=False)


def output_from_json(text: str) -> Output:
    return output_from_dict(json.loads(text))


def exit_code_for(output: Output) -> int:
    """0 for any success (timed out included), 1 for errors."""
    return 0 if output.success else 1


def write_output(output: Output, stream: TextIO) -> None:
    """Print one Output document to the primary channel."""
    stream.write(output_to_json(output) + "\n")
    stream.flush()
